"""Common exceptions for all client modules."""


class ClientError(Exception):
    """Base exception for all client errors."""


class ClientConnectionError(ClientError):
    """Error when connection to a service fails."""


class JsonParseError(ClientError):
    """Error when parsing JSON output."""


class ApiError(ClientError):
    """General API error carrying the HTTP status and a readable body."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitError(ApiError):
    """Error when rate limit is exceeded (HTTP 429)."""

    def __init__(self, message: str, retry_after: int | None = None) -> None:
        """Initialize a rate limit error with optional retry-after seconds."""
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class ExtendedApiUnavailableError(ClientError):
    """Error when the Redmine extended API plugin does not answer as expected."""
