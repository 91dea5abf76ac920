"""
Pydantic models for backend request/response bodies.

Every backend response is wrapped in the versioned Envelope; callers parse
`Envelope[T]` and never guess at the payload shape.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Generic, List, Optional, TypeVar

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

T = TypeVar("T")

ENVELOPE_VERSION = 1


class ApiModel(BaseModel):
    """Base schema: snake_case in Python, camelCase on the wire."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class Envelope(ApiModel, Generic[T]):
    """Response wrapper guaranteed by the backend contract."""
    version: int = ENVELOPE_VERSION
    data: T
    message: Optional[str] = None


def unwrap(model: type, payload: Any) -> Any:
    """Validate an enveloped payload and return its data."""
    return Envelope[model].model_validate(payload).data


# ===== AUTH SCHEMAS =====

class UserRole(str, Enum):
    ADMIN = "ADMIN"
    STAFF = "STAFF"
    USER = "USER"


class UserDto(ApiModel):
    id: str
    email: str
    name: Optional[str] = None
    role: UserRole = UserRole.USER


class SessionDto(ApiModel):
    user: UserDto


class TokenPair(ApiModel):
    access_token: str
    refresh_token: str


class SignInInput(ApiModel):
    email: str
    password: str


class SignInResponse(ApiModel):
    """Tokens are absent when the backend delivers them as cookies."""
    session: SessionDto
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


# ===== REFERENCE DATA SCHEMAS =====

class LanguageFolderDto(ApiModel):
    id: str
    name: str
    folder_color: str
    source_language_code: str
    target_language_code: str
    user_id: str


class LanguageFolderInput(ApiModel):
    name: str
    folder_color: str
    source_language_code: str
    target_language_code: str


class SubjectDto(ApiModel):
    id: str
    name: str
    order: int = 0


class SubjectInput(ApiModel):
    name: str


class WordTypeDto(ApiModel):
    id: str
    name: str


class LanguageDto(ApiModel):
    code: str
    name: str


# ===== VOCAB SCHEMAS =====

class VocabExampleDto(ApiModel):
    source: str
    target: str


class CreateTextTargetInput(ApiModel):
    word_type_id: Optional[str] = None
    text_target: str = ""
    grammar: str = ""
    explanation_source: str = ""
    explanation_target: str = ""
    subject_ids: List[str]
    vocab_examples: Optional[List[VocabExampleDto]] = None


class VocabInput(ApiModel):
    text_source: str
    source_language_code: str
    target_language_code: str
    language_folder_id: str
    text_targets: List[CreateTextTargetInput]


class VocabDto(ApiModel):
    id: str
    text_source: str
    source_language_code: str
    target_language_code: str
    user_id: str
    language_folder_id: str
    created_at: datetime
    updated_at: datetime
