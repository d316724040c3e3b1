"""Input sanitization and validation helpers."""

import re

import regex

from app.core.errors import ValidationFailed

ALIAS_REGEX = regex.compile(r"^[a-zA-Z0-9_-]{2,50}$")
# Letters in any script, digits, spaces and a few separators
DISPLAY_NAME_REGEX = regex.compile(
    r"^[\p{L}\p{N}\s\'\-_.()\u2013]{1,100}$", regex.UNICODE
)
URL_REGEX = regex.compile(r"^https?://[^\s]{1,490}$", regex.IGNORECASE)


def sanitize_string(value: str, max_length: int = 255) -> str:
    """
    Sanitize string input:
    - Remove null bytes and control characters
    - Strip whitespace
    - Limit length
    """
    if not isinstance(value, str):
        return ""

    value = value.replace("\x00", "")

    value = re.sub(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]", "", value)

    value = value.strip()

    value = value[:max_length]

    return value


def normalize_alias(alias: str) -> str:
    """Trim and lowercase an alias, rejecting anything outside the pattern."""
    alias = (alias or "").strip()
    if not ALIAS_REGEX.match(alias):
        raise ValidationFailed(
            "Alias must be 2-50 characters of letters, numbers, underscores or hyphens"
        )
    return alias.lower()


def clean_display_name(display_name: str | None, fallback: str) -> str:
    if display_name is None:
        return fallback
    display_name = sanitize_string(display_name, max_length=100)
    if not display_name:
        return fallback
    if not DISPLAY_NAME_REGEX.match(display_name):
        raise ValidationFailed("Display name contains invalid characters")
    return display_name


def clean_avatar(avatar: str | None) -> str | None:
    if avatar is None:
        return None
    avatar = sanitize_string(avatar, max_length=500)
    if not avatar:
        return None
    if not URL_REGEX.match(avatar):
        raise ValidationFailed("Avatar must be a valid URL")
    return avatar


def clean_content(content: str | None, max_length: int = 4000) -> str | None:
    if content is None:
        return None
    content = sanitize_string(content, max_length=max_length + 1)
    if len(content) > max_length:
        raise ValidationFailed(f"Message content exceeds {max_length} characters")
    return content
