"""
Local persistence: origin-scoped credentials and a JSON key-value store.
"""
from .credentials import (
    ACCESS_TOKEN,
    REFRESH_TOKEN,
    CookieCredentialStore,
    CredentialStore,
    SqliteCredentialStore,
)
from .kv import KeyValueStore
from .user_settings import (
    UserSettings,
    cleanup_old_user_settings,
    load_user_settings,
    save_user_settings,
)

__all__ = [
    "ACCESS_TOKEN",
    "REFRESH_TOKEN",
    "CredentialStore",
    "SqliteCredentialStore",
    "CookieCredentialStore",
    "KeyValueStore",
    "UserSettings",
    "load_user_settings",
    "save_user_settings",
    "cleanup_old_user_settings",
]
