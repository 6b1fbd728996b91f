"""Automation hash guard.

The engine stores a SHA-256 of every field it owns next to each mapping
record. When the stored hash no longer matches the fields as they stand, the
record was edited by a human and automation must leave it alone.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping, Sequence
from typing import Any

_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def owned_fields(row: Mapping[str, Any], field_names: Sequence[str]) -> dict[str, Any]:
    """Project a row onto the ordered owned-field set."""
    return {name: row[name] if name in row.keys() else None for name in field_names}  # noqa: SIM118


def compute_owned_hash(fields: Mapping[str, Any]) -> str:
    """Return the canonical hash of the owned fields, in the given order."""
    encoded = json.dumps(dict(fields), ensure_ascii=False, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def normalize_stored_hash(value: Any) -> str | None:
    """Return a lowercase 64-hex hash or None.

    Anything that is not a well-formed digest counts as absent, so a
    corrupted hash column lets automation proceed.
    """
    if value is None:
        return None
    candidate = str(value).strip().lower()
    if not _HASH_PATTERN.match(candidate):
        return None
    return candidate


def is_overridden(stored_hash: Any, current_fields: Mapping[str, Any]) -> bool:
    """True when a valid stored hash disagrees with the record's current fields."""
    stored = normalize_stored_hash(stored_hash)
    if stored is None:
        return False
    return stored != compute_owned_hash(current_fields)
