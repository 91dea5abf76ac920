"""
Per-user selection of the active folder and subjects.

Settings are stored under "<name>_<user_id>" keys so several accounts can
share one profile. Older versions stored a single subject id; it is migrated
to the list form on first load.
"""
import logging
from dataclasses import dataclass, field
from typing import List

from ..errors import ClientError
from .kv import KeyValueStore, is_quota_error

logger = logging.getLogger("storage.user_settings")

ACTIVE_FOLDER_ID = "activeFolderId"
ACTIVE_SUBJECT_IDS = "activeSubjectIds"
LEGACY_ACTIVE_SUBJECT_ID = "activeSubjectId"

PER_USER_PREFIXES = (f"{ACTIVE_FOLDER_ID}_", f"{ACTIVE_SUBJECT_IDS}_")


@dataclass
class UserSettings:
    folder_id: str = ""
    subject_ids: List[str] = field(default_factory=list)


def get_user_settings_key(user_id: str, key: str) -> str:
    return f"{key}_{user_id}"


def load_user_settings(store: KeyValueStore, user_id: str) -> UserSettings:
    folder_key = get_user_settings_key(user_id, ACTIVE_FOLDER_ID)
    subject_ids_key = get_user_settings_key(user_id, ACTIVE_SUBJECT_IDS)
    legacy_key = get_user_settings_key(user_id, LEGACY_ACTIVE_SUBJECT_ID)

    result = store.get_many([folder_key, subject_ids_key, legacy_key])
    folder_id = result.get(folder_key) or ""
    subject_ids = result.get(subject_ids_key)
    legacy_subject_id = result.get(legacy_key)

    if isinstance(subject_ids, list):
        return UserSettings(folder_id=folder_id, subject_ids=subject_ids)

    if legacy_subject_id:
        try:
            store.set(subject_ids_key, [legacy_subject_id])
            store.remove([legacy_key])
            logger.info(f"Migrated legacy subject setting for user {user_id}")
        except ClientError as e:
            # Still usable from the legacy key; retried on the next load
            logger.error(f"Error migrating legacy subject ID: {e}")
        return UserSettings(folder_id=folder_id, subject_ids=[legacy_subject_id])

    return UserSettings(folder_id=folder_id)


def save_user_settings(
    store: KeyValueStore,
    user_id: str,
    folder_id: str,
    subject_ids: List[str],
) -> None:
    """
    Persist the user's selection.

    On a quota failure, settings belonging to other users are evicted once and
    the write is retried; a second failure is surfaced.
    """
    items = {
        get_user_settings_key(user_id, ACTIVE_FOLDER_ID): folder_id,
        get_user_settings_key(user_id, ACTIVE_SUBJECT_IDS): list(subject_ids),
    }

    try:
        store.set_many(items)
        return
    except ClientError as e:
        if not is_quota_error(e):
            raise

    cleanup_old_user_settings(store, user_id)
    try:
        store.set_many(items)
    except ClientError as e:
        raise ClientError.storage("Unable to save settings. Storage is full.", e) from e


def cleanup_old_user_settings(store: KeyValueStore, current_user_id: str) -> int:
    """
    Best-effort removal of other users' settings.

    Returns:
        Number of keys removed (0 if cleanup failed)
    """
    try:
        all_keys = store.get_all().keys()
    except ClientError as e:
        logger.error(f"Error getting all storage data: {e}")
        return 0

    stale_keys = []
    for key in all_keys:
        if not key.startswith(PER_USER_PREFIXES):
            continue
        _, _, owner = key.partition("_")
        if owner and owner != current_user_id:
            stale_keys.append(key)

    if not stale_keys:
        return 0

    try:
        store.remove(stale_keys)
    except ClientError as e:
        logger.error(f"Error cleaning up old user settings: {e}")
        return 0

    logger.info(f"Removed {len(stale_keys)} settings keys of other users")
    return len(stale_keys)
