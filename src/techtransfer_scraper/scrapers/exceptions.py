"""
Custom exceptions for the scraping infrastructure.

Every fault the core reports is a ``ScraperError`` tagged with one of the
closed ``ErrorClassification`` values; the classification drives retry policy.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from ..types import ErrorClassification, FATAL_CLASSIFICATIONS


class ScraperError(Exception):
    """Base exception for all scraping-related errors."""

    kind: ErrorClassification = ErrorClassification.PARSE_ERROR

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorClassification] = None,
        context: Optional[Dict[str, Any]] = None,
        retry_attempt: int = 0,
        fatal: bool = False,
    ):
        self.message = message
        if kind is not None:
            self.kind = ErrorClassification(kind)
        self.context: Dict[str, Any] = dict(context or {})
        self.retry_attempt = retry_attempt
        self.fatal = fatal or self.kind in FATAL_CLASSIFICATIONS
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return not self.fatal

    def to_dict(self) -> Dict[str, Any]:
        """Flat record handed to error and metrics sinks."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "context": dict(self.context),
            "retry_attempt": self.retry_attempt,
            "fatal": self.fatal,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(kind='{self.kind.value}', message={self.message!r})>"


class NetworkTimeoutError(ScraperError):
    """Raised when the network times out or the connection fails."""

    kind = ErrorClassification.NETWORK_TIMEOUT

    def __init__(self, message: str, url: str = None, status_code: int = None, **kwargs):
        context = kwargs.pop("context", {}) or {}
        if url:
            context.setdefault("url", url)
        if status_code is not None:
            context.setdefault("status_code", status_code)
        super().__init__(message, context=context, **kwargs)


class RateLimitError(ScraperError):
    """Raised when rate limiting is enforced, locally or by the remote site."""

    kind = ErrorClassification.RATE_LIMITED

    def __init__(self, message: str, delay_ms: int = None, url: str = None, **kwargs):
        self.delay_ms = delay_ms
        context = kwargs.pop("context", {}) or {}
        if url:
            context.setdefault("url", url)
        if delay_ms is not None:
            context.setdefault("retry_after_ms", delay_ms)
        super().__init__(message, context=context, **kwargs)


class ParsingError(ScraperError):
    """Raised when HTML/PDF parsing or data extraction fails."""

    kind = ErrorClassification.PARSE_ERROR

    def __init__(self, message: str, selector: str = None, field: str = None, **kwargs):
        self.selector = selector
        self.field = field
        context = kwargs.pop("context", {}) or {}
        if selector is not None:
            context.setdefault("selector", selector)
        if field is not None:
            context.setdefault("field", field)
        super().__init__(message, context=context, **kwargs)


class AuthenticationError(ScraperError):
    """Raised when the source refuses our credentials. Never retried."""

    kind = ErrorClassification.AUTHENTICATION_ERROR


class ValidationError(ScraperError):
    """Raised when input or scraped data fails validation."""

    kind = ErrorClassification.VALIDATION_ERROR

    def __init__(self, message: str, field: str = None, value: Any = None, **kwargs):
        self.field = field
        self.value = value
        context = kwargs.pop("context", {}) or {}
        if field is not None:
            context.setdefault("field", field)
        super().__init__(message, context=context, **kwargs)


class SecurityError(ScraperError):
    """Raised on a hard policy violation (encrypted or scripted documents)."""

    kind = ErrorClassification.SECURITY_ERROR


class RobotsTxtError(SecurityError):
    """Raised when robots.txt disallows access to a URL."""

    def __init__(self, message: str, robots_url: str = None, **kwargs):
        self.robots_url = robots_url
        context = kwargs.pop("context", {}) or {}
        if robots_url:
            context.setdefault("robots_url", robots_url)
        super().__init__(message, context=context, **kwargs)


class ResourceLimitError(ScraperError):
    """Raised when an engine exceeds its timeout or memory budget."""

    def __init__(self, message: str, kind: ErrorClassification, limit: str = None, **kwargs):
        self.limit = limit
        context = kwargs.pop("context", {}) or {}
        if limit:
            context.setdefault("limit", limit)
        super().__init__(message, kind=kind, context=context, fatal=True, **kwargs)


class StateStoreError(Exception):
    """Raised when the shared rate-limit state store is unreachable."""
