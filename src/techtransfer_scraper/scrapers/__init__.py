"""
Scrape orchestration and extraction core.

This package provides:
- Distributed, institution-scoped rate limiting
- Error-classified retry policy
- Fetch engines and the engine dispatcher
- HTML and PDF extraction pipelines with validation
"""

from .dispatcher import EngineDispatcher
from .engines import (
    CrawlFrameworkEngine,
    EngineRegistry,
    FetchEngine,
    HeadlessBrowserEngine,
    StaticFetchEngine,
)
from .exceptions import (
    AuthenticationError,
    ErrorClassification,
    NetworkTimeoutError,
    ParsingError,
    RateLimitError,
    ResourceLimitError,
    RobotsTxtError,
    ScraperError,
    SecurityError,
    StateStoreError,
    ValidationError,
)
from .extractors import HtmlExtractor
from .metrics import InMemoryMetricsSink, LoggingMetricsSink, MetricsSink, NullMetricsSink
from .models import (
    CustomTransform,
    DefaultExtract,
    DispatchState,
    ExtractionResult,
    FetchResult,
    MultiValueExtract,
    ScrapeOutcome,
    ScrapeTarget,
)
from .pdf_extractor import PdfExtractionOptions, PdfExtractor
from .rate_limiter import RateLimitDecision, RateLimiter
from .retry import RetryDecision, RetryPolicyEngine
from .state_store import DatabaseStateStore, InMemoryStateStore, StateStore
from .validation import RecordValidator

__all__ = [
    "EngineDispatcher",
    "EngineRegistry",
    "FetchEngine",
    "StaticFetchEngine",
    "HeadlessBrowserEngine",
    "CrawlFrameworkEngine",
    "ScraperError",
    "ErrorClassification",
    "NetworkTimeoutError",
    "RateLimitError",
    "ParsingError",
    "AuthenticationError",
    "ValidationError",
    "SecurityError",
    "RobotsTxtError",
    "ResourceLimitError",
    "StateStoreError",
    "HtmlExtractor",
    "PdfExtractor",
    "PdfExtractionOptions",
    "RecordValidator",
    "MetricsSink",
    "LoggingMetricsSink",
    "InMemoryMetricsSink",
    "NullMetricsSink",
    "ScrapeTarget",
    "ScrapeOutcome",
    "DispatchState",
    "ExtractionResult",
    "FetchResult",
    "DefaultExtract",
    "MultiValueExtract",
    "CustomTransform",
    "RateLimiter",
    "RateLimitDecision",
    "RetryPolicyEngine",
    "RetryDecision",
    "StateStore",
    "InMemoryStateStore",
    "DatabaseStateStore",
]
