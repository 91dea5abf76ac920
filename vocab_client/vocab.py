"""
Vocabulary backend operations used by the extension's popup and context menu.

Reference lists (folders, subjects, word types, languages) are cached in the
key-value store so the UI can render them without waiting on the network.
"""
import logging
from typing import Any, List, Optional

from .api_client import ApiClient
from .errors import ClientError
from .models import (
    CreateTextTargetInput,
    LanguageDto,
    LanguageFolderDto,
    LanguageFolderInput,
    SubjectDto,
    SubjectInput,
    VocabDto,
    VocabInput,
    WordTypeDto,
    unwrap,
)
from .storage import KeyValueStore
from .validation import (
    validate_hex_color,
    validate_language_code,
    validate_name,
    validate_non_empty,
    validate_selected_text,
    validate_uuid,
)

logger = logging.getLogger("vocab")

API_ENDPOINTS = {
    "FOLDERS_MY": "/language-folders/my",
    "FOLDERS_CREATE": "/language-folders",
    "SUBJECTS": "/subjects",
    "WORD_TYPES": "/word-types",
    "VOCABS": "/vocabs",
    "LANGUAGES": "/languages",
}

CACHED_FOLDERS = "cachedFolders"
CACHED_SUBJECTS = "cachedSubjects"
CACHED_WORD_TYPES = "cachedWordTypes"
CACHED_LANGUAGES = "cachedLanguages"

AUTO_LANGUAGE = "auto"


def user_config_endpoint(key: str) -> str:
    return f"/config/user/{key}"


class VocabService:
    """Typed access to the vocabulary endpoints."""

    def __init__(self, api: ApiClient, store: KeyValueStore):
        self.api = api
        self.store = store

    # ===== REFERENCE DATA =====

    def _list(self, endpoint: str, model: type, cache_key: str, use_cache: bool) -> list:
        items = unwrap(List[model], self.api.get(endpoint, use_cache=use_cache))
        self.store.set(cache_key, [item.to_wire() for item in items])
        logger.debug(f"Cached {len(items)} items under {cache_key}")
        return items

    def _cached(self, model: type, cache_key: str) -> list:
        return [model.model_validate(item) for item in self.store.get(cache_key) or []]

    def list_folders(self, use_cache: bool = True) -> List[LanguageFolderDto]:
        return self._list(API_ENDPOINTS["FOLDERS_MY"], LanguageFolderDto, CACHED_FOLDERS, use_cache)

    def list_subjects(self, use_cache: bool = True) -> List[SubjectDto]:
        return self._list(API_ENDPOINTS["SUBJECTS"], SubjectDto, CACHED_SUBJECTS, use_cache)

    def list_word_types(self, use_cache: bool = True) -> List[WordTypeDto]:
        return self._list(API_ENDPOINTS["WORD_TYPES"], WordTypeDto, CACHED_WORD_TYPES, use_cache)

    def list_languages(self, use_cache: bool = True) -> List[LanguageDto]:
        return self._list(API_ENDPOINTS["LANGUAGES"], LanguageDto, CACHED_LANGUAGES, use_cache)

    def cached_folders(self) -> List[LanguageFolderDto]:
        """Folders from the last successful listing, without network I/O."""
        return self._cached(LanguageFolderDto, CACHED_FOLDERS)

    def cached_subjects(self) -> List[SubjectDto]:
        return self._cached(SubjectDto, CACHED_SUBJECTS)

    def create_folder(self, folder: LanguageFolderInput) -> LanguageFolderDto:
        validate_name(folder.name, "Folder name")
        validate_hex_color(folder.folder_color)
        validate_language_code(folder.source_language_code)
        validate_language_code(folder.target_language_code)

        created = unwrap(
            LanguageFolderDto, self.api.post(API_ENDPOINTS["FOLDERS_CREATE"], folder)
        )
        self.api.invalidate("GET", API_ENDPOINTS["FOLDERS_MY"])
        return created

    def create_subject(self, name: str) -> SubjectDto:
        validate_name(name, "Subject name")
        created = unwrap(
            SubjectDto, self.api.post(API_ENDPOINTS["SUBJECTS"], SubjectInput(name=name))
        )
        self.api.invalidate("GET", API_ENDPOINTS["SUBJECTS"])
        return created

    # ===== VOCABS =====

    def build_vocab_input(
        self,
        selected_text: str,
        folder_id: str,
        subject_ids: List[str],
        word_type_id: Optional[str] = None,
    ) -> VocabInput:
        """
        Build the payload for a new vocab from selected page text.

        Language codes come from the cached folder; "auto" lets the backend
        detect them when the folder is unknown locally.
        """
        validate_selected_text(selected_text)
        validate_uuid(folder_id, "Folder ID")
        if not subject_ids:
            raise ClientError.validation("At least one subject is required")
        for subject_id in subject_ids:
            validate_uuid(subject_id, "Subject ID")
        if word_type_id is not None:
            validate_uuid(word_type_id, "Word type ID")

        folder = next((f for f in self.cached_folders() if f.id == folder_id), None)
        return VocabInput(
            text_source=selected_text.strip(),
            source_language_code=folder.source_language_code if folder else AUTO_LANGUAGE,
            target_language_code=folder.target_language_code if folder else AUTO_LANGUAGE,
            language_folder_id=folder_id,
            text_targets=[
                CreateTextTargetInput(word_type_id=word_type_id, subject_ids=list(subject_ids))
            ],
        )

    def save_vocab(
        self,
        selected_text: str,
        folder_id: str,
        subject_ids: List[str],
        word_type_id: Optional[str] = None,
    ) -> VocabDto:
        vocab = self.build_vocab_input(selected_text, folder_id, subject_ids, word_type_id)
        created = unwrap(VocabDto, self.api.post(API_ENDPOINTS["VOCABS"], vocab))
        logger.info(f"Saved vocab {created.id} in folder {folder_id}")
        return created

    # ===== USER CONFIG =====

    def get_user_config(self, key: str) -> Any:
        validate_non_empty(key, "Config key")
        return unwrap(Any, self.api.get(user_config_endpoint(key), use_cache=False))

    def put_user_config(self, key: str, value: Any) -> Any:
        validate_non_empty(key, "Config key")
        return unwrap(Any, self.api.put(user_config_endpoint(key), {"value": value}))
