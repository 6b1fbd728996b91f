"""Redmine REST API client.

Reads raise on failure; writes return :class:`~src.models.result.Result` so
the push phases can record a failure on the mapping row and move on. HTTP
429 is the only failure that is retried.
"""

from typing import IO, Any

import requests
from requests import Response

from src import config
from src.clients.exceptions import ApiError, ClientConnectionError, ExtendedApiUnavailableError, JsonParseError, RateLimitError
from src.clients.http_errors import describe_http_error, extract_error_body
from src.display import configure_logging
from src.models.result import Err, ErrorKind, Ok, Result
from src.utils.retry_manager import RateLimitRetry, RetryConfig, parse_retry_after

HTTP_BAD_REQUEST_MIN = 400
HTTP_TOO_MANY_REQUESTS = 429
DEFAULT_PAGE_SIZE = 100
REQUEST_TIMEOUT = 60
EXTENDED_API_HEADER = "X-Redmine-Extended-API"
DEFAULT_EXTENDED_API_PREFIX = "extended_api"

try:
    from src.config import logger
except Exception:  # noqa: BLE001
    logger = configure_logging("INFO", None)


class RedmineApiError(ApiError):
    """Error when a Redmine read request fails."""


def normalize_extended_prefix(prefix: str | None) -> str:
    """Trim slashes from the plugin prefix, defaulting to ``extended_api``."""
    trimmed = (prefix or "").strip().strip("/")
    return trimmed or DEFAULT_EXTENDED_API_PREFIX


def extended_path(prefix: str | None, resource: str) -> str:
    """Join the extended API prefix and a resource with exactly one slash."""
    return f"{normalize_extended_prefix(prefix)}/{resource.lstrip('/')}"


class RedmineClient:
    """Client for the Redmine REST API authenticated by API key."""

    def __init__(
        self,
        redmine_config: dict[str, Any] | None = None,
        *,
        session: requests.Session | None = None,
        retry: RateLimitRetry | None = None,
        verify_ssl: bool | None = None,
    ) -> None:
        """Initialize the Redmine client from configuration."""
        settings = redmine_config if redmine_config is not None else config.redmine_config
        self.base_url: str = str(settings.get("url") or "").rstrip("/")
        self.api_key: str = str(settings.get("api_key") or "")
        extended = settings.get("extended_api") or {}
        self.extended_prefix = normalize_extended_prefix(extended.get("prefix"))

        if session is None:
            if not self.base_url:
                msg = "Redmine URL is required"
                raise ValueError(msg)
            if not self.api_key:
                msg = "Redmine API key is required"
                raise ValueError(msg)
            session = requests.Session()
            if verify_ssl is None:
                verify_ssl = bool(config.migration_config.get("ssl_verify", True))
            session.verify = verify_ssl
        session.headers.update(
            {
                "X-Redmine-API-Key": self.api_key,
                "Accept": "application/json",
            },
        )
        self.session = session

        if retry is None:
            rate_limit = config.migration_config.get("rate_limit", {}) or {}
            retry = RateLimitRetry(
                RetryConfig(
                    max_retries=int(rate_limit.get("max_retries", 5)),
                    base_delay=float(rate_limit.get("base_delay", 1.0)),
                ),
            )
        self.retry = retry

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _send(self, method: str, path: str, **kwargs: Any) -> Response:
        try:
            response = self.session.request(method, self._url(path), timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            msg = f"Redmine {method} {path} failed: {e!s}"
            raise ClientConnectionError(msg) from e
        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            msg = f"Redmine rate limit exceeded for {method} {path}"
            raise RateLimitError(msg, retry_after=parse_retry_after(response.headers.get("Retry-After")))
        return response

    def _request(self, method: str, path: str, **kwargs: Any) -> Response:
        return self.retry.execute_with_retry(self._send, method, path, context=f"{method} {path}", **kwargs)

    def get_json(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET a resource and decode its JSON body.

        Raises:
            RedmineApiError: On any non-429 HTTP error
            JsonParseError: When the body is not valid JSON

        """
        response = self._request("GET", path, params=params)
        if response.status_code >= HTTP_BAD_REQUEST_MIN:
            error_msg = describe_http_error(response, f"Redmine GET {path} failed")
            raise RedmineApiError(error_msg, status_code=response.status_code, body=response.text)
        try:
            return response.json()
        except ValueError as e:
            msg = f"Invalid JSON returned by Redmine for {path}"
            raise JsonParseError(msg) from e

    def get_paged(
        self,
        path: str,
        key: str,
        params: dict[str, Any] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """Collect a collection paginated with ``offset``/``limit``/``total_count``."""
        items: list[dict[str, Any]] = []
        offset = 0
        while True:
            query = dict(params or {})
            query.update({"offset": offset, "limit": page_size})
            payload = self.get_json(path, query) or {}
            page = payload.get(key) or []
            items.extend(page)
            offset += len(page)
            total = payload.get("total_count")
            if not page or total is None or offset >= int(total):
                break
        return items

    def _result_from_response(self, response: Response, prefix: str) -> Result[dict[str, Any]]:
        if response.status_code >= HTTP_BAD_REQUEST_MIN:
            return Err(
                ErrorKind.PERMANENT,
                describe_http_error(response, prefix),
                response.status_code,
                detail=extract_error_body(response),
            )
        if not (response.text or "").strip():
            return Ok({})
        try:
            payload = response.json()
        except ValueError:
            return Err(ErrorKind.PERMANENT, f"{prefix}: invalid JSON response", response.status_code)
        if not isinstance(payload, dict):
            return Err(ErrorKind.PERMANENT, f"{prefix}: unexpected response shape", response.status_code)
        return Ok(payload)

    def post_json(self, path: str, payload: dict[str, Any], *, error_prefix: str | None = None) -> Result[dict[str, Any]]:
        """POST a JSON document.

        Returns ``Ok(decoded body)`` or ``Err`` for connection failures, HTTP
        errors and malformed bodies. Rate limiting is retried and, once the
        budget is spent, raises.
        """
        prefix = error_prefix or f"Redmine POST {path} failed"
        try:
            response = self._request("POST", path, json=payload)
        except ClientConnectionError as e:
            return Err(ErrorKind.PERMANENT, str(e))
        return self._result_from_response(response, prefix)

    def upload(
        self,
        path: str,
        stream: IO[bytes],
        filename: str,
        content_type: str = "application/octet-stream",
        *,
        params: dict[str, Any] | None = None,
        error_prefix: str | None = None,
    ) -> Result[dict[str, Any]]:
        """Stream a binary body to an upload endpoint such as ``uploads.json``.

        ``params`` adds query parameters next to ``filename``.
        """
        prefix = error_prefix or f"Redmine upload to {path} failed"

        def _post() -> Response:
            stream.seek(0)
            return self._send(
                "POST",
                path,
                params={"filename": filename, **(params or {})},
                data=stream,
                headers={"Content-Type": content_type},
            )

        try:
            response = self.retry.execute_with_retry(_post, context=f"POST {path}")
        except ClientConnectionError as e:
            return Err(ErrorKind.PERMANENT, str(e))
        return self._result_from_response(response, prefix)

    def extended_path(self, resource: str, prefix: str | None = None) -> str:
        """Resource path under the extended API prefix."""
        return extended_path(prefix or self.extended_prefix, resource)

    def check_extended_api(self, resource: str = "issue_statuses.json", prefix: str | None = None) -> None:
        """Verify that the extended API plugin answers under the configured prefix.

        Raises:
            ExtendedApiUnavailableError: On an HTTP error or a missing sentinel header

        """
        path = self.extended_path(resource, prefix)
        response = self._request("GET", path)
        if response.status_code >= HTTP_BAD_REQUEST_MIN:
            msg = (
                f"Extended API availability check failed ({self._url(path)}): "
                f"HTTP {response.status_code} {response.reason or ''}".rstrip()
            )
            raise ExtendedApiUnavailableError(msg)
        if not response.headers.get(EXTENDED_API_HEADER):
            msg = f"Extended API response missing {EXTENDED_API_HEADER} header. Verify the plugin installation."
            raise ExtendedApiUnavailableError(msg)
        logger.debug("Extended API available at %s", path)
