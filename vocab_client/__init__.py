"""
Authenticated HTTP client for the vocabulary manager backend.
"""
from .api_client import ApiClient, RequestState
from .context import ClientContext, create_context
from .errors import ClientError, Err, ErrorKind, Ok, Result
from .notifications import SessionEvent, SessionEvents, SessionEventType
from .token_manager import TokenManager, decode_token_expiry

__all__ = [
    "ApiClient",
    "RequestState",
    "ClientContext",
    "create_context",
    "ClientError",
    "ErrorKind",
    "Ok",
    "Err",
    "Result",
    "SessionEvent",
    "SessionEvents",
    "SessionEventType",
    "TokenManager",
    "decode_token_expiry",
]
