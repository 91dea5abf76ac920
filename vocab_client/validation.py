"""
Boundary validation helpers.

Each check raises ClientError(VALIDATION) with a message that can be shown
to the user verbatim.
"""
import re
from typing import Optional

from .errors import ClientError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
HEX_COLOR_PATTERN = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")
LANGUAGE_CODE_PATTERN = re.compile(r"^[a-z]{2}(-[A-Z]{2})?$")
UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
UNSAFE_NAME_CHARS = re.compile(r"[<>\"'&]")

MIN_TOKEN_LENGTH = 10
MAX_NAME_LENGTH = 100


def _is_blank(value: Optional[str]) -> bool:
    return not value or not value.strip()


def validate_endpoint(endpoint: Optional[str]) -> None:
    """Endpoints are backend-relative paths such as '/vocabs'."""
    if _is_blank(endpoint):
        raise ClientError.validation("Endpoint cannot be empty")
    if not endpoint.startswith("/"):
        raise ClientError.validation("Endpoint must start with '/'")


def validate_non_empty(value: Optional[str], field_name: str) -> None:
    if _is_blank(value):
        raise ClientError.validation(f"{field_name} is required")


def validate_email(email: Optional[str]) -> None:
    if _is_blank(email):
        raise ClientError.validation("Email is required")
    if not EMAIL_PATTERN.match(email):
        raise ClientError.validation("Invalid email format")


def validate_password(password: Optional[str], min_length: int = 8) -> None:
    if not password:
        raise ClientError.validation("Password is required")
    if len(password) < min_length:
        raise ClientError.validation(
            f"Password must be at least {min_length} characters long"
        )


def validate_name(name: Optional[str], field_name: str) -> None:
    """Display names: non-empty, bounded, and free of markup characters."""
    validate_non_empty(name, field_name)
    if len(name) > MAX_NAME_LENGTH:
        raise ClientError.validation(
            f"{field_name} must be less than {MAX_NAME_LENGTH} characters"
        )
    if UNSAFE_NAME_CHARS.search(name):
        raise ClientError.validation(f"{field_name} contains invalid characters")


def validate_hex_color(color: Optional[str]) -> None:
    if _is_blank(color):
        raise ClientError.validation("Color is required")
    if not HEX_COLOR_PATTERN.match(color):
        raise ClientError.validation("Invalid hex color format")


def validate_language_code(code: Optional[str]) -> None:
    """Accepts 'en' or 'en-US' style codes."""
    if _is_blank(code):
        raise ClientError.validation("Language code is required")
    if len(code) < 2 or len(code) > 5:
        raise ClientError.validation("Language code must be between 2 and 5 characters")
    if not LANGUAGE_CODE_PATTERN.match(code):
        raise ClientError.validation(
            "Invalid language code format (e.g., 'en' or 'en-US')"
        )


def validate_selected_text(
    text: Optional[str],
    min_length: int = 1,
    max_length: int = 1000,
) -> None:
    if _is_blank(text):
        raise ClientError.validation("Selected text cannot be empty")
    trimmed = text.strip()
    if len(trimmed) < min_length:
        raise ClientError.validation(
            f"Selected text must be at least {min_length} character(s) long"
        )
    if len(trimmed) > max_length:
        raise ClientError.validation(
            f"Selected text must be less than {max_length} characters"
        )


def validate_uuid(value: Optional[str], field_name: str) -> None:
    validate_non_empty(value, field_name)
    if not UUID_PATTERN.match(value):
        raise ClientError.validation(f"Invalid {field_name} format")


def validate_token(token: Optional[str], field_name: str) -> None:
    """Basic shape check only; signatures are the backend's concern."""
    validate_non_empty(token, field_name)
    if len(token) < MIN_TOKEN_LENGTH:
        raise ClientError.validation(f"{field_name} appears to be invalid")


def is_plausible_token(token: Optional[str]) -> bool:
    return not _is_blank(token) and len(token) >= MIN_TOKEN_LENGTH
