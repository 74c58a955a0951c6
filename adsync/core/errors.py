"""AdSync — Error taxonomy shared by the client, store, cache and HTTP layer."""

from typing import Any, Dict, Optional

# Graph API error codes that signal throttling rather than a bad request
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613} | set(range(80000, 80015))


class UpstreamError(Exception):
    """Raised when the Meta Graph API returns an error or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        error_code: int = 0,
        body: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        self.error_code = error_code
        self.body = body or {}
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        # status_code 0 means the request never produced a response
        return self.status_code == 0 or self.status_code == 429 or self.status_code >= 500

    @property
    def is_rate_limit(self) -> bool:
        return self.status_code == 429 or self.error_code in RATE_LIMIT_ERROR_CODES


class StorageError(Exception):
    """Raised when a store read or upsert fails."""


class CacheError(Exception):
    """Raised by the cache backend. Never fatal to a read or write path."""


class ValidationError(Exception):
    """Malformed HTTP input."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class AuthError(Exception):
    """Missing or invalid credentials or webhook signature."""

    def __init__(self, message: str, status_code: int = 401):
        self.status_code = status_code
        super().__init__(message)
