"""
Fetch engines: static HTTP, headless browser and crawl framework.
"""

from .base import FetchEngine, classify_http_status, parse_retry_after
from .browser import HeadlessBrowserEngine
from .crawl import CrawlFrameworkEngine
from .registry import EngineRegistry
from .static import StaticFetchEngine

__all__ = [
    'FetchEngine',
    'StaticFetchEngine',
    'HeadlessBrowserEngine',
    'CrawlFrameworkEngine',
    'EngineRegistry',
    'classify_http_status',
    'parse_retry_after',
]
