"""Tests for the Jira client paging, error and download behavior."""

from pathlib import Path
from typing import Any

import pytest
import requests
from requests import Response

from src.clients.exceptions import JsonParseError
from src.clients.jira_client import JiraApiError, JiraClient, JiraConnectionError
from src.utils.retry_manager import RateLimitRetry, RetryConfig

pytestmark = pytest.mark.unit

BASE_URL = "https://jira.example.com"


def make_response(status: int, body: str | bytes = "", headers: dict[str, str] | None = None) -> Response:
    response = Response()
    response.status_code = status
    response._content = body if isinstance(body, bytes) else body.encode("utf-8")  # noqa: SLF001
    response._content_consumed = True  # noqa: SLF001
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response


class ScriptedSession:
    def __init__(self, *responses: Response | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, dict[str, Any] | None, bool]] = []

    def get(self, url: str, params: dict[str, Any] | None = None, stream: bool = False, timeout: int = 0) -> Response:  # noqa: ARG002
        self.calls.append((url, params, stream))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class NoJitter:
    def uniform(self, a: float, b: float) -> float:  # noqa: ARG002
        return 0.0


@pytest.fixture
def sleeps() -> list[float]:
    return []


def make_client(session: ScriptedSession, sleeps: list[float], page_size: int = 2) -> JiraClient:
    retry = RateLimitRetry(RetryConfig(max_retries=3, base_delay=1.0), sleep=sleeps.append, rng=NoJitter())
    return JiraClient({"url": f"{BASE_URL}/", "page_size": page_size}, session=session, retry=retry)  # type: ignore[arg-type]


def test_client_without_session_requires_token() -> None:
    with pytest.raises(ValueError, match="Jira API token is required"):
        JiraClient({"url": BASE_URL, "username": "bot", "api_token": ""})


def test_iter_paged_follows_total(sleeps: list[float]) -> None:
    session = ScriptedSession(
        make_response(200, '{"values": [{"id": 1}, {"id": 2}], "total": 3}'),
        make_response(200, '{"values": [{"id": 3}], "total": 3}'),
    )
    groups = make_client(session, sleeps).get_paged("/rest/api/3/group/bulk")

    assert [group["id"] for group in groups] == [1, 2, 3]
    assert [call[1] for call in session.calls] == [{"startAt": 0, "maxResults": 2}, {"startAt": 2, "maxResults": 2}]
    assert session.calls[0][0] == f"{BASE_URL}/rest/api/3/group/bulk"


def test_iter_paged_reads_bare_list_once(sleeps: list[float]) -> None:
    session = ScriptedSession(make_response(200, '[{"id": "a"}, {"id": "b"}]'))
    assert make_client(session, sleeps).get_paged("/rest/api/3/project/search") == [{"id": "a"}, {"id": "b"}]
    assert len(session.calls) == 1


def test_iter_paged_stops_on_empty_page(sleeps: list[float]) -> None:
    session = ScriptedSession(make_response(200, '{"issues": []}'))
    assert make_client(session, sleeps).get_paged("/rest/api/3/search", "issues") == []


def test_get_users_pages_until_empty(sleeps: list[float]) -> None:
    session = ScriptedSession(
        make_response(200, '[{"accountId": "a"}, {"accountId": "b"}]'),
        make_response(200, '[{"accountId": "c"}]'),
        make_response(200, "[]"),
    )
    users = make_client(session, sleeps).get_users()

    assert [user["accountId"] for user in users] == ["a", "b", "c"]
    assert [call[1]["startAt"] for call in session.calls] == [0, 2, 3]  # type: ignore[index]
    assert session.calls[0][1]["includeInactiveUsers"] == "true"  # type: ignore[index]


def test_search_issues_passes_jql_and_fields(sleeps: list[float]) -> None:
    session = ScriptedSession(make_response(200, '{"issues": [{"id": "10001"}], "total": 1}'))
    issues = make_client(session, sleeps).search_issues("project = PRJ", fields=("labels",))

    assert issues == [{"id": "10001"}]
    assert session.calls[0][1] == {"jql": "project = PRJ", "fields": "labels", "startAt": 0, "maxResults": 2}


def test_get_json_raises_on_http_error(sleeps: list[float]) -> None:
    session = ScriptedSession(make_response(404, '{"errorMessages": []}'))
    with pytest.raises(JiraApiError, match=r"HTTP 404") as excinfo:
        make_client(session, sleeps).get_json("/rest/api/3/status")
    assert excinfo.value.status_code == 404


def test_get_json_raises_on_invalid_body(sleeps: list[float]) -> None:
    session = ScriptedSession(make_response(200, "<html>login</html>"))
    with pytest.raises(JsonParseError, match="Invalid JSON returned by Jira"):
        make_client(session, sleeps).get_json("/rest/api/3/priority")


def test_connection_failure_raises(sleeps: list[float]) -> None:
    session = ScriptedSession(requests.ConnectionError("reset"))
    with pytest.raises(JiraConnectionError, match="Jira request failed for /rest/api/3/status"):
        make_client(session, sleeps).get_statuses()


def test_rate_limit_is_retried(sleeps: list[float]) -> None:
    session = ScriptedSession(
        make_response(429, headers={"Retry-After": "3"}),
        make_response(200, '[{"id": "1", "name": "High"}]'),
    )
    assert make_client(session, sleeps).get_priorities() == [{"id": "1", "name": "High"}]
    assert sleeps == [3.0]


def test_download_writes_body(sleeps: list[float], tmp_path: Path) -> None:
    url = f"{BASE_URL}/secure/attachment/1/report.txt"
    session = ScriptedSession(make_response(200, b"hello world!"))
    target = tmp_path / "nested" / "1__report.txt"

    assert make_client(session, sleeps).download_to(url, target) == 12
    assert target.read_bytes() == b"hello world!"
    assert session.calls == [(url, None, True)]


def test_download_http_error_leaves_no_file(sleeps: list[float], tmp_path: Path) -> None:
    session = ScriptedSession(make_response(404, "Not Found"))
    target = tmp_path / "2__gone.txt"

    with pytest.raises(JiraApiError, match=r"Failed to download attachment \(HTTP 404\): Not Found"):
        make_client(session, sleeps).download_to(f"{BASE_URL}/secure/attachment/2/gone.txt", target)
    assert not target.exists()
