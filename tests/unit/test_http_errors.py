"""Tests for readable HTTP error messages."""

import pytest
from requests import Response

from src.clients.http_errors import EMPTY_RESPONSE, MAX_ERROR_LENGTH, describe_http_error, extract_error_body

pytestmark = pytest.mark.unit


def make_response(status: int, body: str) -> Response:
    response = Response()
    response.status_code = status
    response._content = body.encode("utf-8")  # noqa: SLF001
    response.encoding = "utf-8"
    return response


def test_errors_array_is_joined() -> None:
    response = make_response(422, '{"errors": ["Name has already been taken", "Login is invalid"]}')
    assert extract_error_body(response) == "Name has already been taken; Login is invalid"


def test_error_string_is_used() -> None:
    assert extract_error_body(make_response(403, '{"error": " Forbidden "}')) == "Forbidden"


def test_html_body_is_stripped() -> None:
    body = "<html><body><h1>Internal   Server Error</h1>\n<p>Oops</p></body></html>"
    assert extract_error_body(make_response(500, body)) == "Internal Server Error Oops"


def test_empty_body() -> None:
    assert extract_error_body(make_response(502, "  ")) == EMPTY_RESPONSE


def test_long_body_is_truncated() -> None:
    text = extract_error_body(make_response(500, "x" * 2000))
    assert len(text) == MAX_ERROR_LENGTH
    assert text.endswith("…")


def test_describe_with_and_without_prefix() -> None:
    response = make_response(500, "<p>boom</p>")
    assert describe_http_error(response) == "HTTP 500: boom"
    assert describe_http_error(response, "Failed to create Redmine user") == "Failed to create Redmine user (HTTP 500): boom"
