"""
Client context: every collaborator built once at start-up and passed around
explicitly instead of living in module-level singletons.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from dotenv import load_dotenv

from config.settings import Settings, settings as default_settings
from .api_client import ApiClient
from .notifications import SessionEvents
from .storage import (
    CookieCredentialStore,
    CredentialStore,
    KeyValueStore,
    SqliteCredentialStore,
)
from .token_manager import AUTH_MODE_COOKIE, TokenManager
from .vocab import VocabService

load_dotenv()

logger = logging.getLogger("context")


@dataclass
class ClientContext:
    settings: Settings
    session: requests.Session
    credentials: CredentialStore
    kv: KeyValueStore
    events: SessionEvents
    token_manager: TokenManager
    api: ApiClient
    vocab: VocabService

    def close(self) -> None:
        """Release the HTTP session and drop cached responses."""
        self.api.clear_cache()
        self.session.close()
        logger.debug("Client context closed")

    def __enter__(self) -> "ClientContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def create_context(
    settings: Optional[Settings] = None,
    session: Optional[requests.Session] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ClientContext:
    """
    Wire up the client from settings.

    Args:
        settings: Defaults to the settings read from the environment / .env
        session: HTTP session to use (a new requests.Session by default)
        sleep: Backoff sleep, replaceable in tests
    """
    settings = settings or default_settings
    session = session or requests.Session()

    kv = KeyValueStore(settings.storage_path, quota_bytes=settings.kv_quota_bytes)
    if settings.auth_mode == AUTH_MODE_COOKIE:
        credentials = CookieCredentialStore(session.cookies, settings.api_base_url)
    else:
        credentials = SqliteCredentialStore(settings.storage_path, settings.api_base_url)

    events = SessionEvents()
    token_manager = TokenManager(
        credentials,
        session,
        settings.api_base_url,
        kv_store=kv,
        auth_mode=settings.auth_mode,
        refresh_timeout=settings.refresh_timeout_seconds,
        refresh_threshold=settings.token_refresh_threshold_seconds,
    )
    api = ApiClient(
        settings.api_base_url,
        token_manager,
        session=session,
        events=events,
        request_timeout=settings.request_timeout_seconds,
        cache_ttl=settings.cache_ttl_seconds,
        max_retries=settings.max_retries,
        backoff_base=settings.backoff_base_seconds,
        backoff_max=settings.backoff_max_seconds,
        sleep=sleep,
    )

    logger.info(f"Client ready for {credentials.origin} ({settings.auth_mode} auth)")
    return ClientContext(
        settings=settings,
        session=session,
        credentials=credentials,
        kv=kv,
        events=events,
        token_manager=token_manager,
        api=api,
        vocab=VocabService(api, kv),
    )
