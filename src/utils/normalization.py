"""Value normalization shared by the match resolvers."""

from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

MAX_NAME_LENGTH = 255

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_WHITESPACE = re.compile(r"\s+")


def normalize_string(value: Any, max_length: int = MAX_NAME_LENGTH) -> str | None:
    """Trim a value to a bounded string; empty or missing becomes None."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_length]


def lookup_key(value: Any, max_length: int = MAX_NAME_LENGTH) -> str | None:
    """Case-insensitive, whitespace-trimmed, length-capped match key."""
    normalized = normalize_string(value, max_length)
    return normalized.casefold() if normalized is not None else None


def normalize_bool(value: Any) -> bool | None:
    """Interpret DB/JSON truthiness; unknown strings yield None."""
    match value:
        case None:
            return None
        case bool():
            return value
        case int():
            return value != 0
        case str():
            lowered = value.strip().lower()
            if lowered in {"1", "true", "yes", "y"}:
                return True
            if lowered in {"0", "false", "no", "n"}:
                return False
            return None
        case _:
            return None


def normalize_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def derive_name_parts(display_name: str | None) -> tuple[str | None, str | None]:
    """Split a Jira display name into (firstname, lastname).

    Handles both "Last, First" and "First Middle Last"; a single token
    cannot be split and yields ``(token, None)``.
    """
    normalized = normalize_string(display_name)
    if normalized is None:
        return None, None

    if "," in normalized:
        last, _, first = normalized.partition(",")
        return normalize_string(first), normalize_string(last)

    parts = _WHITESPACE.split(normalized)
    if len(parts) == 1:
        return parts[0], None
    return parts[0], " ".join(parts[1:])


def sanitize_filename(name: str | None) -> str:
    """Collapse disallowed characters and strip leading/trailing separators."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name or "").strip("._-")
    return cleaned or "attachment"


def merge_notes(current: str | None, addition: str | None) -> str | None:
    if not addition:
        return current
    if not current:
        return addition
    return f"{current} {addition}"


def normalize_timestamp(value: Any) -> str | None:
    """Render a Jira timestamp as a UTC ``YYYY-MM-DD HH:MM:SS`` string.

    Jira sends offsets without a colon (``+0000``), which SQLite's date
    functions do not accept.
    """
    text = normalize_string(value)
    if text is None:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text, "%Y-%m-%dT%H:%M:%S.%f%z")
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC)
    return parsed.strftime("%Y-%m-%d %H:%M:%S")
