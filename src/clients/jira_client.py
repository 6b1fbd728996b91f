"""Jira API client for the migration project.

Provides a clean, exception-based interface for reading Jira Cloud
resources. Every GET is retried on HTTP 429 with exponential backoff; any
other failure raises immediately.
"""

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import requests
from requests import Response

from jira import JIRA
from src import config
from src.clients.exceptions import ApiError, ClientConnectionError, JsonParseError, RateLimitError
from src.clients.http_errors import describe_http_error
from src.display import configure_logging
from src.utils.retry_manager import RateLimitRetry, RetryConfig, parse_retry_after

HTTP_BAD_REQUEST_MIN = 400
HTTP_TOO_MANY_REQUESTS = 429
DOWNLOAD_CHUNK_SIZE = 8192
DEFAULT_PAGE_SIZE = 100
GROUP_PAGE_SIZE = 50
REQUEST_TIMEOUT = 60

ISSUE_FIELDS = ("summary", "project", "issuetype", "status", "priority", "labels", "issuelinks", "attachment", "created", "updated")

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)


class JiraError(Exception):
    """Base exception for all Jira client errors."""


class JiraConnectionError(JiraError, ClientConnectionError):
    """Error when connection to Jira server fails."""


class JiraApiError(JiraError, ApiError):
    """Error when Jira API returns an error response."""


def _retry_from_config() -> RateLimitRetry:
    rate_limit = config.migration_config.get("rate_limit", {}) or {}
    return RateLimitRetry(
        RetryConfig(
            max_retries=int(rate_limit.get("max_retries", 5)),
            base_delay=float(rate_limit.get("base_delay", 1.0)),
        ),
    )


class JiraClient:
    """Jira client for API interactions.

    Methods return decoded JSON and raise :class:`JiraApiError` (or
    :class:`RateLimitError` once the retry budget is spent) instead of
    returning empty results on failure.

    A ready ``session`` may be injected, in which case no connection to the
    server is attempted; otherwise the session of a ``jira.JIRA`` instance
    authenticated with basic auth is used.
    """

    def __init__(
        self,
        jira_config: dict[str, Any] | None = None,
        *,
        session: requests.Session | None = None,
        retry: RateLimitRetry | None = None,
        verify_ssl: bool | None = None,
    ) -> None:
        """Initialize the Jira client from configuration."""
        settings = jira_config if jira_config is not None else config.jira_config
        self.jira_url: str = str(settings.get("url") or "").rstrip("/")
        self.jira_username: str = str(settings.get("username") or "")
        self.jira_token: str = str(settings.get("api_token") or "")
        self.page_size: int = int(settings.get("page_size") or DEFAULT_PAGE_SIZE)
        self.default_jql: str = str(settings.get("jql") or "order by created ASC")
        if verify_ssl is None:
            verify_ssl = bool(config.migration_config.get("ssl_verify", True))
        self.verify_ssl = verify_ssl
        self.retry = retry or _retry_from_config()
        self.jira: JIRA | None = None

        if session is None:
            if not self.jira_url:
                msg = "Jira URL is required"
                raise ValueError(msg)
            if not self.jira_token:
                msg = "Jira API token is required"
                raise ValueError(msg)
            session = self._connect()
        self.session = session

    def _connect(self) -> requests.Session:
        """Authenticate against Jira and return the underlying HTTP session.

        Raises:
            JiraConnectionError: If connection to Jira server fails

        """
        try:
            self.jira = JIRA(
                server=self.jira_url,
                basic_auth=(self.jira_username, self.jira_token),
                options={"verify": self.verify_ssl},
                get_server_info=False,
            )
        except Exception as e:
            msg = f"Failed to connect to Jira at {self.jira_url}: {e!s}"
            logger.exception(msg)
            raise JiraConnectionError(msg) from e
        logger.debug("Connected to Jira using basic authentication")
        return self.jira._session  # noqa: SLF001

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.jira_url}/{path.lstrip('/')}"

    def _request(self, path: str, params: dict[str, Any] | None = None, *, stream: bool = False) -> Response:
        """Issue one GET; HTTP 429 raises :class:`RateLimitError` for the retry wrapper."""
        url = self._url(path)
        try:
            response = self.session.get(url, params=params, stream=stream, timeout=REQUEST_TIMEOUT)
        except requests.RequestException as e:
            msg = f"Jira request failed for {path}: {e!s}"
            raise JiraConnectionError(msg) from e

        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            response.close()
            msg = f"Jira rate limit exceeded for {path}"
            raise RateLimitError(msg, retry_after=retry_after)
        return response

    def _get(self, path: str, params: dict[str, Any] | None = None, *, stream: bool = False) -> Response:
        return self.retry.execute_with_retry(self._request, path, params, stream=stream, context=path)

    def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a resource and decode its JSON body.

        Raises:
            JiraApiError: On any non-429 HTTP error
            JsonParseError: When the body is not valid JSON

        """
        response = self._get(path, params)
        if response.status_code >= HTTP_BAD_REQUEST_MIN:
            error_msg = describe_http_error(response, f"Jira GET {path} failed")
            raise JiraApiError(error_msg, status_code=response.status_code, body=response.text)
        try:
            return response.json()
        except ValueError as e:
            msg = f"Invalid JSON returned by Jira for {path}"
            raise JsonParseError(msg) from e

    def iter_paged(
        self,
        path: str,
        key: str = "values",
        params: dict[str, Any] | None = None,
        page_size: int | None = None,
    ) -> Iterator[Any]:
        """Yield items from a ``startAt``/``maxResults`` paginated endpoint.

        Items are read from ``key`` or, for endpoints answering with a bare
        list, from the payload itself. Paging continues while ``startAt`` is
        below the reported ``total``; without a total only one page is read.
        """
        size = page_size or self.page_size
        start_at = 0
        while True:
            query = dict(params or {})
            query.update({"startAt": start_at, "maxResults": size})
            payload = self.get_json(path, query)

            if isinstance(payload, list):
                items = payload
                total = len(items)
            else:
                items = payload.get(key) or []
                total = payload.get("total", size)

            yield from items

            if not items:
                break
            start_at += size
            if start_at >= int(total):
                break

    def get_paged(
        self,
        path: str,
        key: str = "values",
        params: dict[str, Any] | None = None,
        page_size: int | None = None,
    ) -> list[Any]:
        """Collect every item of a paginated endpoint into a list."""
        return list(self.iter_paged(path, key, params, page_size))

    def get_users(self) -> list[dict[str, Any]]:
        """Retrieve all Jira users, active and inactive.

        ``users/search`` answers with a bare list and no total, so paging
        stops at the first empty page.
        """
        users: list[dict[str, Any]] = []
        start_at = 0
        while True:
            page = self.get_json(
                "/rest/api/3/users/search",
                {
                    "startAt": start_at,
                    "maxResults": self.page_size,
                    "includeInactiveUsers": "true",
                    "includeActiveUsers": "true",
                },
            )
            if not isinstance(page, list) or not page:
                break
            users.extend(page)
            start_at += len(page)
        logger.info("Retrieved %d Jira users", len(users))
        return users

    def get_groups(self) -> list[dict[str, Any]]:
        """Retrieve all Jira groups."""
        groups = self.get_paged("/rest/api/3/group/bulk", "values", page_size=GROUP_PAGE_SIZE)
        logger.info("Retrieved %d Jira groups", len(groups))
        return groups

    def get_group_members(self, group_id: str) -> list[dict[str, Any]]:
        """Retrieve members of one Jira group, including inactive users."""
        if not group_id:
            return []
        return self.get_paged(
            "/rest/api/3/group/member",
            "values",
            params={"groupId": group_id, "includeInactiveUsers": "true"},
            page_size=GROUP_PAGE_SIZE,
        )

    def get_statuses(self) -> list[dict[str, Any]]:
        """Retrieve all Jira workflow statuses."""
        statuses = self.get_json("/rest/api/3/status")
        return statuses if isinstance(statuses, list) else []

    def get_priorities(self) -> list[dict[str, Any]]:
        """Retrieve all Jira issue priorities."""
        priorities = self.get_json("/rest/api/3/priority")
        return priorities if isinstance(priorities, list) else []

    def search_issues(self, jql: str | None = None, fields: tuple[str, ...] = ISSUE_FIELDS) -> list[dict[str, Any]]:
        """Retrieve all issues matching a JQL query."""
        query = jql or self.default_jql
        issues = self.get_paged(
            "/rest/api/3/search",
            "issues",
            params={"jql": query, "fields": ",".join(fields)},
        )
        logger.info("Retrieved %d Jira issues for JQL: %s", len(issues), query)
        return issues

    def download_to(self, url: str, target: Path) -> int:
        """Stream an attachment body to ``target`` and return the bytes written.

        A partially written file is removed before the error propagates.

        Raises:
            JiraApiError: On any non-429 HTTP error

        """
        response = self._get(url, stream=True)
        try:
            if response.status_code >= HTTP_BAD_REQUEST_MIN:
                error_msg = describe_http_error(response, "Failed to download attachment")
                raise JiraApiError(error_msg, status_code=response.status_code, body=response.text)

            target.parent.mkdir(parents=True, exist_ok=True)
            written = 0
            try:
                with target.open("wb") as handle:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if chunk:
                            handle.write(chunk)
                            written += len(chunk)
            except (OSError, requests.RequestException):
                target.unlink(missing_ok=True)
                raise
            return written
        finally:
            response.close()
