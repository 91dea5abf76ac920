"""
Authenticated client for the vocabulary backend API.

Every network call goes through ApiClient, which layers on:
- a TTL read cache for GET requests
- coalescing of concurrent identical requests
- retry with exponential backoff for timeouts, network failures and 5xx
- one transparent token refresh + retry on 401/403
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import requests
from pydantic import BaseModel
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .cache import RequestCoalescer, ResponseCache, request_key
from .errors import ClientError, Err, Ok, Result, session_expired
from .notifications import SessionEvents
from .token_manager import TokenManager
from .validation import validate_endpoint

logger = logging.getLogger("api_client")

AUTH_FAILURE_STATUSES = (401, 403)
BODY_REQUIRED_METHODS = ("POST", "PUT")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ClientError) and exc.is_retryable


def get_auth_headers(token: Optional[str] = None) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


# =============================================================================
# Request state machine
# =============================================================================

class RequestState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    RETRYING = "retrying"
    AUTH_RETRY = "auth_retry"
    SUCCESS = "success"
    FAILED = "failed"


_TRANSITIONS = {
    RequestState.IDLE: {RequestState.SENDING},
    RequestState.SENDING: {
        RequestState.SUCCESS,
        RequestState.RETRYING,
        RequestState.AUTH_RETRY,
        RequestState.FAILED,
    },
    RequestState.RETRYING: {RequestState.SENDING},
    RequestState.AUTH_RETRY: {
        RequestState.SENDING,
        RequestState.RETRYING,
        RequestState.FAILED,
    },
    RequestState.SUCCESS: set(),
    RequestState.FAILED: set(),
}


@dataclass
class RequestRun:
    """Bookkeeping for one logical request across all of its attempts."""
    method: str
    endpoint: str
    state: RequestState = RequestState.IDLE
    attempts: int = 0
    auth_retried: bool = False
    history: List[RequestState] = field(default_factory=lambda: [RequestState.IDLE])

    def transition(self, new_state: RequestState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal request transition {self.state.value} -> {new_state.value}"
            )
        logger.debug(
            f"{self.method} {self.endpoint}: {self.state.value} -> {new_state.value}"
        )
        self.state = new_state
        self.history.append(new_state)


# =============================================================================
# Client
# =============================================================================

class ApiClient:
    """
    The single path for network I/O against the backend.

    Usage:
        client = ApiClient(base_url, token_manager, session, events)
        subjects = client.get("/subjects")
        client.post("/vocabs", {"textSource": "hola", ...})
    """

    def __init__(
        self,
        base_url: str,
        token_manager: TokenManager,
        session: Optional[requests.Session] = None,
        events: Optional[SessionEvents] = None,
        request_timeout: float = 30.0,
        cache_ttl: float = 60.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            base_url: Backend API base URL, e.g. http://localhost:3002/api/v1
            token_manager: Source of access tokens
            session: HTTP session (shared with the token manager)
            events: Receives the logout event on session failure
            request_timeout: requests timeout for each send, applied to connect and to each read
            cache_ttl: Lifetime of cached GET responses in seconds
            max_retries: Retries after the first attempt
            backoff_base: First backoff wait in seconds, doubled per retry
            backoff_max: Upper bound for a single backoff wait
            sleep: Used for backoff waits
            clock: Monotonic time source for the read cache
        """
        self.base_url = base_url.rstrip("/")
        self.token_manager = token_manager
        self.session = session or requests.Session()
        self.events = events or SessionEvents()
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self.cache = ResponseCache(ttl_seconds=cache_ttl, clock=clock)
        self._pending = RequestCoalescer(timeout=self.join_timeout)

    @property
    def join_timeout(self) -> float:
        """
        Upper bound for a caller waiting on an identical in-flight request.

        requests applies its timeout to connect and to each read, so one send
        may take twice the request timeout. An attempt is at most two sends
        plus one refresh, and attempts are separated by capped backoff waits.
        A server trickling bytes can still hold the leader longer; joiners
        then fail with TIMEOUT instead of waiting with it.
        """
        attempts = self.max_retries + 1
        per_attempt = 2 * (2 * self.request_timeout) + 2 * self.token_manager.refresh_timeout
        return attempts * per_attempt + self.max_retries * self.backoff_max

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    def get(
        self,
        endpoint: str,
        use_cache: bool = True,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> Any:
        return self.request(
            "GET", endpoint, use_cache=use_cache, headers=headers, authenticated=authenticated
        )

    def post(
        self,
        endpoint: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> Any:
        return self.request(
            "POST", endpoint, body, headers=headers, authenticated=authenticated
        )

    def put(
        self,
        endpoint: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> Any:
        return self.request(
            "PUT", endpoint, body, headers=headers, authenticated=authenticated
        )

    def delete(
        self,
        endpoint: str,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> Any:
        return self.request(
            "DELETE", endpoint, headers=headers, authenticated=authenticated
        )

    def request(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        use_cache: bool = True,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> Any:
        """
        Perform a request and return the decoded JSON body.

        Raises:
            ClientError: classified failure once retries are exhausted
        """
        return self.request_result(
            method,
            endpoint,
            body,
            use_cache=use_cache,
            headers=headers,
            authenticated=authenticated,
        ).unwrap()

    def request_result(
        self,
        method: str,
        endpoint: str,
        body: Any = None,
        use_cache: bool = True,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
    ) -> Result:
        """
        Perform a request and return Ok(body) or Err(ClientError).

        Args:
            method: HTTP method
            endpoint: Backend path beginning with '/'
            body: JSON-serializable body or pydantic model (required for POST/PUT)
            use_cache: Serve and store GET responses through the read cache
            headers: Extra headers, applied over the defaults
            authenticated: Attach the access token and handle 401/403 by refreshing
        """
        method = method.upper()
        try:
            validate_endpoint(endpoint)
            if method in BODY_REQUIRED_METHODS and body is None:
                raise ClientError.validation(f"{method} {endpoint} requires a request body")
        except ClientError as e:
            return Err(e)

        if isinstance(body, BaseModel):
            body = body.model_dump(by_alias=True, exclude_none=True, mode="json")

        key = request_key(method, endpoint)
        cacheable = method == "GET" and use_cache

        if cacheable:
            hit, data = self.cache.lookup(key)
            if hit:
                return Ok(data)
            logger.info(f"CACHE MISS: {key}")

        def fetch() -> Any:
            data = self._send_with_retry(method, endpoint, body, headers, authenticated)
            if cacheable:
                self.cache.store(key, data)
            return data

        return self._pending.run(key, fetch)

    def clear_cache(self) -> None:
        """Drop every cached response."""
        self.cache.clear()

    def invalidate(self, method: str, endpoint: str) -> bool:
        return self.cache.invalidate(request_key(method, endpoint))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.get_stats(),
            "pending": self._pending.get_stats(),
        }

    # ------------------------------------------------------------------
    # Retry loop
    # ------------------------------------------------------------------

    def _send_with_retry(
        self,
        method: str,
        endpoint: str,
        body: Any,
        headers: Optional[Dict[str, str]],
        authenticated: bool,
    ) -> Any:
        run = RequestRun(method, endpoint)

        def before_sleep(retry_state) -> None:
            run.transition(RequestState.RETRYING)
            error = retry_state.outcome.exception()
            logger.warning(
                f"{method} {endpoint} failed ({error!r}); "
                f"retry {retry_state.attempt_number}/{self.max_retries} "
                f"in {retry_state.next_action.sleep:.1f}s"
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.backoff_base,
                min=self.backoff_base,
                max=self.backoff_max,
            ),
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

        try:
            data = retrying(self._attempt, run, body, headers, authenticated)
        except ClientError as e:
            run.transition(RequestState.FAILED)
            logger.warning(f"{method} {endpoint} failed after {run.attempts} attempt(s): {e!r}")
            raise

        run.transition(RequestState.SUCCESS)
        return data

    def _attempt(
        self,
        run: RequestRun,
        body: Any,
        headers: Optional[Dict[str, str]],
        authenticated: bool,
    ) -> Any:
        run.transition(RequestState.SENDING)
        run.attempts += 1

        token = self.token_manager.get_access_token() if authenticated else None
        response = self._send(run.method, run.endpoint, body, headers, token)

        if authenticated and response.status_code in AUTH_FAILURE_STATUSES:
            if run.auth_retried:
                self._end_session(f"{response.status_code} on {run.endpoint} after re-authentication")
                raise session_expired()

            run.transition(RequestState.AUTH_RETRY)
            logger.info(
                f"{response.status_code} on {run.method} {run.endpoint}; refreshing access token"
            )
            new_token = self.token_manager.refresh_access_token()
            if not new_token:
                self._end_session("Access token could not be refreshed")
                raise session_expired()
            run.auth_retried = True

            run.transition(RequestState.SENDING)
            response = self._send(run.method, run.endpoint, body, headers, new_token)
            if response.status_code in AUTH_FAILURE_STATUSES:
                self._end_session(f"{response.status_code} on {run.endpoint} after re-authentication")
                raise session_expired()

        if not response.ok:
            raise self._api_error(response)

        return self._decode(response)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _send(
        self,
        method: str,
        endpoint: str,
        body: Any,
        headers: Optional[Dict[str, str]],
        token: Optional[str],
    ) -> requests.Response:
        request_headers = get_auth_headers(token)
        if headers:
            request_headers.update(headers)

        try:
            return self.session.request(
                method,
                f"{self.base_url}{endpoint}",
                headers=request_headers,
                json=body,
                timeout=self.request_timeout,
            )
        except requests.Timeout as e:
            raise ClientError.timeout(
                f"Request to {endpoint} timed out after {self.request_timeout}s", e
            ) from e
        except requests.RequestException as e:
            raise ClientError.network(f"Network error: {e}", e) from e

    def _end_session(self, reason: str) -> None:
        """Clear credentials and tell the application the user must sign in again."""
        logger.warning(f"Session ended: {reason}")
        try:
            self.token_manager.clear_tokens()
        finally:
            self.events.emit_logout(reason)

    @staticmethod
    def _api_error(response: requests.Response) -> ClientError:
        message = None
        try:
            payload = response.json()
            if isinstance(payload, dict):
                message = payload.get("message")
        except ValueError:
            pass

        # Validation failures may report one message per field
        if isinstance(message, list):
            message = "; ".join(str(m) for m in message)

        message = message or response.reason or f"API request failed: {response.status_code}"
        return ClientError.api(response.status_code, str(message))

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ClientError.network("Malformed JSON in response", e) from e
