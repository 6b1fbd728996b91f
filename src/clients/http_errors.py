"""Readable error text for failed HTTP responses.

The mapping tables store this text in ``notes`` so operators can see why a
push failed without digging through logs.
"""

from __future__ import annotations

import json
import re
from typing import Any

from requests import Response

MAX_ERROR_LENGTH = 500
EMPTY_RESPONSE = "[empty response]"

_HTML_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")


def _truncate(text: str, limit: int = MAX_ERROR_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def extract_error_body(response: Response) -> str:
    """Return the server-supplied error text of a response.

    Redmine answers validation failures as ``{"errors": [...]}`` and some
    plugins as ``{"error": "..."}``; anything else is reported as the body
    with HTML tags stripped.
    """
    body = (response.text or "").strip()
    if not body:
        return EMPTY_RESPONSE

    try:
        decoded = json.loads(body)
    except ValueError:
        decoded = None

    if isinstance(decoded, dict):
        errors = decoded.get("errors")
        if isinstance(errors, list) and errors:
            return _truncate("; ".join(_stringify(error) for error in errors))
        error = decoded.get("error")
        if isinstance(error, str) and error.strip():
            return _truncate(error.strip())

    stripped = _WHITESPACE.sub(" ", _HTML_TAG.sub(" ", body)).strip()
    return _truncate(stripped or EMPTY_RESPONSE)


def describe_http_error(response: Response, prefix: str | None = None) -> str:
    """Format ``"<prefix> (HTTP <code>): <text>"`` or ``"HTTP <code>: <text>"``."""
    detail = extract_error_body(response)
    if prefix:
        return f"{prefix} (HTTP {response.status_code}): {detail}"
    return f"HTTP {response.status_code}: {detail}"
