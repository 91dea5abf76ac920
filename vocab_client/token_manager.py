"""
Access token lifecycle: expiry detection, single-flight refresh, invalidation.

Two deployment modes are supported:
- storage: the client keeps both tokens in its credential store and sends the
  refresh token in the body of the refresh call
- cookie: the backend sets and rotates the tokens as cookies; the client only
  reads them back from the session's cookie jar
"""
import base64
import json
import logging
import time
from typing import Callable, Optional

import requests

from .cache import RequestCoalescer
from .errors import ClientError
from .models import TokenPair, unwrap
from .storage import ACCESS_TOKEN, REFRESH_TOKEN, CredentialStore, KeyValueStore
from .validation import is_plausible_token, validate_token

logger = logging.getLogger("token_manager")

REFRESH_ENDPOINT = "/auth/refresh"
USER_KEY = "user"

AUTH_MODE_STORAGE = "storage"
AUTH_MODE_COOKIE = "cookie"

_REFRESH_KEY = "auth:refresh"


def decode_token_expiry(token: str) -> Optional[float]:
    """
    Read the `exp` claim (seconds since epoch) of a JWT without verifying it.

    Returns None when the token is not a well-formed JWT or carries no
    numeric expiry.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None

    payload = parts[1]
    padded = payload + "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, RecursionError):
        return None

    if not isinstance(claims, dict):
        return None
    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    try:
        return float(exp)
    except OverflowError:
        return None


class TokenManager:
    """
    Produces a currently-valid access token for outgoing requests.

    Refreshes are single-flight: concurrent callers that need a new token all
    wait on the same /auth/refresh call and receive its outcome.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        session: requests.Session,
        base_url: str,
        kv_store: Optional[KeyValueStore] = None,
        auth_mode: str = AUTH_MODE_STORAGE,
        refresh_timeout: float = 10.0,
        refresh_threshold: float = 60.0,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            credentials: Origin-scoped token storage
            session: HTTP session used for the refresh call
            base_url: Backend API base URL
            kv_store: App storage holding the cached user identity
            auth_mode: "storage" or "cookie"
            refresh_timeout: Seconds before the refresh call is abandoned
            refresh_threshold: Refresh tokens expiring within this many seconds
            clock: Wall-clock time source (epoch seconds)
        """
        if auth_mode not in (AUTH_MODE_STORAGE, AUTH_MODE_COOKIE):
            raise ClientError.validation(f"Unknown auth mode: {auth_mode}")

        self._credentials = credentials
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._kv_store = kv_store
        self.auth_mode = auth_mode
        self.refresh_timeout = refresh_timeout
        self.refresh_threshold = refresh_threshold
        self._clock = clock
        # requests applies the timeout to connect and to each read separately
        self._refresh = RequestCoalescer(timeout=2 * refresh_timeout)

    @property
    def refresh_in_progress(self) -> bool:
        return self._refresh.is_in_flight(_REFRESH_KEY)

    def refresh_stats(self):
        return self._refresh.get_stats()

    def get_access_token(self) -> Optional[str]:
        """
        Return the stored access token, refreshing it first if it is about to
        expire. Tokens whose expiry cannot be decoded are returned unchanged.
        """
        token = self._credentials.get(ACCESS_TOKEN)
        if not token:
            return None

        expires_at = decode_token_expiry(token)
        if expires_at is None:
            logger.debug("Access token expiry unreadable; using token as-is")
            return token

        remaining = expires_at - self._clock()
        if remaining <= self.refresh_threshold:
            logger.info(f"Access token expires in {remaining:.0f}s; refreshing")
            return self.refresh_access_token()

        return token

    def refresh_access_token(self) -> Optional[str]:
        """
        Obtain a new access token, joining a refresh already in progress.

        Returns:
            The new access token, or None when the session can no longer be
            refreshed (credentials are cleared in that case)

        Raises:
            ClientError: TIMEOUT or NETWORK when the refresh call itself failed
        """
        return self._refresh.get_or_fetch(_REFRESH_KEY, self._do_refresh)

    def _do_refresh(self) -> Optional[str]:
        body = None
        if self.auth_mode == AUTH_MODE_STORAGE:
            refresh_token = self._credentials.get(REFRESH_TOKEN)
            if not refresh_token:
                logger.info("No refresh token stored; cannot refresh")
                return None
            body = {"refreshToken": refresh_token}

        logger.info("Refreshing access token")
        try:
            response = self._session.request(
                "POST",
                f"{self._base_url}{REFRESH_ENDPOINT}",
                headers={"Content-Type": "application/json"},
                json=body,
                timeout=self.refresh_timeout,
            )
        except requests.Timeout as e:
            raise ClientError.timeout(
                f"Token refresh timed out after {self.refresh_timeout}s", e
            ) from e
        except requests.RequestException as e:
            raise ClientError.network(f"Token refresh failed: {e}", e) from e

        if not response.ok:
            logger.warning(
                f"Token refresh rejected ({response.status_code}); clearing credentials"
            )
            self.clear_tokens()
            return None

        if self.auth_mode == AUTH_MODE_STORAGE:
            self._store_refreshed_pair(response)

        token = self._credentials.get(ACCESS_TOKEN)
        if not is_plausible_token(token):
            logger.warning("Refresh succeeded but no usable access token was stored")
            return None

        logger.info("Access token refreshed")
        return token

    def _store_refreshed_pair(self, response: requests.Response) -> None:
        try:
            pair = unwrap(TokenPair, response.json())
        except ValueError as e:
            logger.warning(f"Unreadable refresh response: {e}")
            return

        if not (is_plausible_token(pair.access_token) and is_plausible_token(pair.refresh_token)):
            logger.warning("Refresh response did not contain a valid token pair")
            return

        self._credentials.set(ACCESS_TOKEN, pair.access_token)
        self._credentials.set(REFRESH_TOKEN, pair.refresh_token)

    def set_tokens(self, access_token: str, refresh_token: str) -> None:
        """
        Accept a new token pair after sign-in.

        In cookie mode the backend has already set the cookies, so the pair is
        only validated.
        """
        validate_token(access_token, "Access token")
        validate_token(refresh_token, "Refresh token")

        if self.auth_mode == AUTH_MODE_COOKIE:
            logger.debug("Cookie mode: tokens are managed by the backend")
            return

        self._credentials.set(ACCESS_TOKEN, access_token)
        self._credentials.set(REFRESH_TOKEN, refresh_token)

    def clear_tokens(self) -> None:
        """Delete both tokens and the cached user. Safe to call repeatedly."""
        self._credentials.remove(ACCESS_TOKEN)
        self._credentials.remove(REFRESH_TOKEN)
        if self._kv_store is not None:
            self._kv_store.remove([USER_KEY])
        logger.info("Cleared stored credentials")
