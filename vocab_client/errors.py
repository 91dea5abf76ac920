"""
Error taxonomy shared by every client component.

Failures carry a kind tag instead of living in a class hierarchy, so retry
and classification logic can inspect them as plain data.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class ErrorKind(Enum):
    """Failure categories."""
    VALIDATION = "validation"   # Malformed caller input, never retried
    NETWORK = "network"         # Transport failure other than a timeout
    TIMEOUT = "timeout"         # Request or refresh exceeded its time bound
    API = "api"                 # Non-2xx response, carries the status code
    STORAGE = "storage"         # Credential or key-value store failure


class ClientError(Exception):
    """
    A classified client failure.

    Attributes:
        kind: Failure category
        message: Human-readable message, safe to show to users
        status: HTTP status for API errors
        cause: Lower-level exception kept for diagnostics
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self._kind = kind
        self._message = message
        self._status = status
        self._cause = cause

    @property
    def kind(self) -> ErrorKind:
        return self._kind

    @property
    def message(self) -> str:
        return self._message

    @property
    def status(self) -> Optional[int]:
        return self._status

    @property
    def cause(self) -> Optional[BaseException]:
        return self._cause

    @property
    def is_retryable(self) -> bool:
        """Timeouts, network failures and 5xx responses are worth another attempt."""
        if self._kind in (ErrorKind.TIMEOUT, ErrorKind.NETWORK):
            return True
        if self._kind == ErrorKind.API:
            return self._status is not None and self._status >= 500
        return False

    @property
    def is_auth_failure(self) -> bool:
        return self._kind == ErrorKind.API and self._status in (401, 403)

    def __repr__(self) -> str:
        status = f", status={self._status}" if self._status is not None else ""
        return f"ClientError({self._kind.value}{status}: {self._message!r})"

    # Constructors

    @classmethod
    def validation(cls, message: str) -> "ClientError":
        return cls(ErrorKind.VALIDATION, message)

    @classmethod
    def network(cls, message: str, cause: Optional[BaseException] = None) -> "ClientError":
        return cls(ErrorKind.NETWORK, message, cause=cause)

    @classmethod
    def timeout(cls, message: str, cause: Optional[BaseException] = None) -> "ClientError":
        return cls(ErrorKind.TIMEOUT, message, cause=cause)

    @classmethod
    def api(cls, status: int, message: str) -> "ClientError":
        return cls(ErrorKind.API, message, status=status)

    @classmethod
    def storage(cls, message: str, cause: Optional[BaseException] = None) -> "ClientError":
        return cls(ErrorKind.STORAGE, message, cause=cause)


SESSION_EXPIRED_MESSAGE = "Session expired. Please login again."


def session_expired() -> ClientError:
    """The error returned after a confirmed session failure."""
    return ClientError.api(401, SESSION_EXPIRED_MESSAGE)


# =============================================================================
# Result type
# =============================================================================

@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome."""
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed outcome."""
    error: ClientError

    @property
    def is_ok(self) -> bool:
        return False

    def unwrap(self) -> Any:
        raise self.error


Result = Union[Ok[T], Err]
