"""
Crawl-framework fetch engine on a requests middleware stack.

Adds robots.txt obedience, a cookie jar, compression negotiation and a
per-domain download delay on top of a plain requests.Session. Blocking
calls run in a worker thread that stops reading once the fetch times out
or is cancelled.
"""

import asyncio
import threading
import time
from http.cookiejar import DefaultCookiePolicy
from typing import Dict, Optional
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import requests

from ...config import EngineProfile
from ...types import EngineType, ErrorClassification
from ...utils.logging import get_logger
from ..exceptions import NetworkTimeoutError, ResourceLimitError, RobotsTxtError
from ..models import FetchResult
from .base import FetchEngine, classify_http_status

logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


class CrawlFrameworkEngine(FetchEngine):
    """Fetches through robots, cookie, compression and politeness middleware."""

    engine_type = EngineType.CRAWL_FRAMEWORK

    def __init__(self, profile: EngineProfile, session: Optional[requests.Session] = None):
        super().__init__(profile)
        self.settings = profile.crawl
        self.session = session or self._build_session()
        self._robots: Dict[str, RobotFileParser] = {}
        self._last_request: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _build_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(self.request_headers)
        session.headers['Accept-Encoding'] = "gzip, deflate" if self.settings.compression else "identity"
        if not self.settings.cookies_enabled:
            session.cookies.set_policy(DefaultCookiePolicy(allowed_domains=[]))
        session.max_redirects = self.settings.max_redirects
        return session

    async def _fetch(self, url: str) -> FetchResult:
        # Set on timeout or cancellation so the worker thread stops reading.
        abort = threading.Event()
        deadline = time.monotonic() + self.profile.timeout
        try:
            return await asyncio.to_thread(self._fetch_sync, url, deadline, abort)
        finally:
            abort.set()

    def _fetch_sync(self, url: str, deadline: float, abort: threading.Event) -> FetchResult:
        if self.settings.respect_robots_txt:
            self._check_robots(url)
        self._wait_download_delay(url, abort)
        self._check_abort(url, deadline, abort)

        try:
            with self.session.get(url, timeout=self._remaining(deadline), stream=True) as response:
                error = classify_http_status(response.status_code, url, response.headers)
                if error is not None:
                    raise error

                content_length = response.headers.get("Content-Length")
                if content_length and content_length.isdigit():
                    self.check_payload_size(int(content_length), url)

                body = bytearray()
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    self._check_abort(url, deadline, abort)
                    body.extend(chunk)
                    self.check_payload_size(len(body), url)

                result = FetchResult(
                    url=url,
                    final_url=response.url,
                    status_code=response.status_code,
                    content=bytes(body),
                    content_type=response.headers.get("Content-Type", ""),
                    elapsed_ms=0.0,
                    engine=self.engine_type,
                )
                if not result.is_pdf:
                    result.content = self._decode(bytes(body), response.encoding)
                return result
        except requests.RequestException as e:
            raise NetworkTimeoutError(f"Request failed: {e}", url=url) from e

    @staticmethod
    def _remaining(deadline: float) -> float:
        return max(0.001, deadline - time.monotonic())

    def _check_abort(self, url: str, deadline: float, abort: threading.Event) -> None:
        if abort.is_set() or time.monotonic() >= deadline:
            raise ResourceLimitError(
                f"{self.engine_type.value} engine exceeded its {self.profile.timeout}s timeout",
                kind=ErrorClassification.NETWORK_TIMEOUT,
                limit="timeout",
                context={"url": url, "timeout_s": self.profile.timeout},
            )

    @staticmethod
    def _decode(body: bytes, encoding: Optional[str]) -> str:
        try:
            return body.decode(encoding or "utf-8", errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

    def _robots_for(self, url: str) -> RobotFileParser:
        parsed = urlparse(url)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        with self._lock:
            parser = self._robots.get(origin)
        if parser is not None:
            return parser

        robots_url = f"{origin}/robots.txt"
        parser = RobotFileParser(robots_url)
        try:
            response = self.session.get(robots_url, timeout=self.profile.timeout)
        except requests.RequestException as e:
            logger.warning("Failed to fetch robots.txt, allowing crawl", robots_url=robots_url, error=str(e))
            parser.allow_all = True
        else:
            if response.status_code in (401, 403):
                parser.disallow_all = True
            elif response.status_code >= 400:
                parser.allow_all = True
            else:
                parser.parse(response.text.splitlines())

        with self._lock:
            self._robots[origin] = parser
        return parser

    def _check_robots(self, url: str) -> None:
        parser = self._robots_for(url)
        if not parser.can_fetch(self.profile.user_agent, url):
            raise RobotsTxtError(f"robots.txt disallows {url}", robots_url=parser.url, context={"url": url})

    def _wait_download_delay(self, url: str, abort: threading.Event) -> None:
        delay = self.settings.download_delay
        if delay <= 0:
            return
        host = urlparse(url).netloc
        with self._lock:
            now = time.monotonic()
            slot = max(now, self._last_request.get(host, 0.0) + delay)
            self._last_request[host] = slot
        wait = slot - time.monotonic()
        if wait > 0:
            abort.wait(wait)

    async def close(self) -> None:
        self.session.close()
