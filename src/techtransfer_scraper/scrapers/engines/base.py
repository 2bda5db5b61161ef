"""
Common fetch-engine behaviour: concurrency ceiling, timeout and payload budget.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

from ...config import EngineProfile
from ...types import EngineType, ErrorClassification
from ...utils.logging import get_logger
from ..exceptions import (
    AuthenticationError,
    NetworkTimeoutError,
    RateLimitError,
    ResourceLimitError,
    ScraperError,
    ValidationError,
)
from ..models import FetchResult

logger = get_logger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Retry-After header (delta-seconds or HTTP date) in milliseconds."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return int(value) * 1000
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0, int((retry_at - datetime.now(timezone.utc)).total_seconds() * 1000))


def classify_http_status(
    status_code: Optional[int], url: str, headers: Optional[Mapping[str, str]] = None
) -> Optional[ScraperError]:
    """
    Map an HTTP status to a classified error.

    Returns:
        None for informational, success and redirect statuses.
    """
    if status_code is None or status_code < 400:
        return None
    headers = headers or {}
    if status_code in (401, 403):
        return AuthenticationError(
            f"Access denied with HTTP {status_code}",
            context={"url": url, "status_code": status_code},
        )
    if status_code == 429:
        retry_after = headers.get("Retry-After") or headers.get("retry-after")
        return RateLimitError(
            "Remote site is rate limiting requests (HTTP 429)",
            delay_ms=parse_retry_after(retry_after),
            url=url,
            context={"status_code": status_code},
        )
    if status_code == 408 or status_code >= 500:
        return NetworkTimeoutError(f"Server error HTTP {status_code}", url=url, status_code=status_code)
    return ValidationError(
        f"Request rejected with HTTP {status_code}",
        context={"url": url, "status_code": status_code},
    )


class FetchEngine(ABC):
    """
    Base class for fetch strategies.

    Subclasses implement ``_fetch``; ``fetch`` wraps it with the engine's
    concurrency ceiling, total timeout and payload budget.
    """

    engine_type: EngineType

    def __init__(self, profile: EngineProfile):
        self.profile = profile
        self._semaphore = asyncio.Semaphore(profile.max_concurrency)
        self._in_flight = 0
        self.stats = {
            'requests': 0,
            'successful': 0,
            'failed': 0,
            'timeouts': 0,
            'bytes': 0,
        }

    @property
    def max_payload_bytes(self) -> int:
        return self.profile.max_payload_bytes

    @property
    def request_headers(self) -> Dict[str, str]:
        headers = dict(self.profile.headers)
        headers['User-Agent'] = self.profile.user_agent
        return headers

    def check_payload_size(self, size: int, url: str) -> None:
        """Raise if ``size`` bytes would exceed the engine's memory budget."""
        if size > self.max_payload_bytes:
            raise ResourceLimitError(
                f"Payload of {size} bytes exceeds the {self.profile.resource_limits.max_memory_mb} MB budget "
                f"of the {self.engine_type.value} engine",
                kind=ErrorClassification.VALIDATION_ERROR,
                limit="memory",
                context={"url": url, "size": size},
            )

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch ``url`` within the engine's concurrency, time and memory budget.

        Raises:
            ScraperError: Classified fetch failure. Budget violations are
                ResourceLimitError and flagged fatal.
        """
        async with self._semaphore:
            self._in_flight += 1
            self.stats['requests'] += 1
            started = time.perf_counter()
            try:
                result = await asyncio.wait_for(self._fetch(url), timeout=self.profile.timeout)
                self.check_payload_size(result.size, url)
            except asyncio.TimeoutError:
                self.stats['failed'] += 1
                self.stats['timeouts'] += 1
                raise ResourceLimitError(
                    f"{self.engine_type.value} engine exceeded its {self.profile.timeout}s timeout",
                    kind=ErrorClassification.NETWORK_TIMEOUT,
                    limit="timeout",
                    context={"url": url, "timeout_s": self.profile.timeout},
                )
            except ScraperError:
                self.stats['failed'] += 1
                raise
            finally:
                self._in_flight -= 1

            result.elapsed_ms = (time.perf_counter() - started) * 1000
            self.stats['successful'] += 1
            self.stats['bytes'] += result.size
            logger.debug(
                "Fetched",
                url=url,
                engine=self.engine_type.value,
                status_code=result.status_code,
                size=result.size,
                elapsed_ms=round(result.elapsed_ms, 2),
            )
            return result

    @abstractmethod
    async def _fetch(self, url: str) -> FetchResult:
        """Perform the fetch; called under the semaphore and timeout."""

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            'engine': self.engine_type.value,
            'in_flight': self._in_flight,
            'max_concurrency': self.profile.max_concurrency,
        }

    async def close(self) -> None:
        """Release engine resources."""
