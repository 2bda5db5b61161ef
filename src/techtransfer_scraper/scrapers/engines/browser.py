"""
Headless-browser fetch engine on Playwright (Chromium).
"""

import asyncio
from typing import Optional
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ...config import EngineProfile
from ...types import EngineType
from ...utils.logging import get_logger
from ..exceptions import NetworkTimeoutError
from ..models import FetchResult
from .base import FetchEngine, classify_http_status

logger = get_logger(__name__)


class HeadlessBrowserEngine(FetchEngine):
    """Renders pages that need JavaScript or navigation waits before extraction."""

    engine_type = EngineType.HEADLESS_BROWSER

    def __init__(self, profile: EngineProfile):
        super().__init__(profile)
        self.settings = profile.browser
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._launch_lock = asyncio.Lock()

    async def _ensure_browser(self) -> Browser:
        async with self._launch_lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(
                    headless=self.settings.headless,
                    args=list(self.settings.args),
                )
                logger.info("Launched headless browser", headless=self.settings.headless)
        return self._browser

    async def _new_context(self) -> BrowserContext:
        browser = await self._ensure_browser()
        headers = {k: v for k, v in self.request_headers.items() if k != 'User-Agent'}
        return await browser.new_context(
            user_agent=self.profile.user_agent,
            viewport={'width': self.settings.viewport_width, 'height': self.settings.viewport_height},
            extra_http_headers=headers,
        )

    async def _fetch(self, url: str) -> FetchResult:
        timeout_ms = self.profile.timeout * 1000
        context = await self._new_context()
        try:
            # Chromium turns PDF navigations into downloads; read those directly.
            if urlparse(url).path.lower().endswith(".pdf"):
                return await self._fetch_document(context, url, timeout_ms)

            page = await context.new_page()
            response = await page.goto(url, wait_until=self.settings.wait_until, timeout=timeout_ms)
            status_code = response.status if response else None
            headers = response.headers if response else {}
            error = classify_http_status(status_code, url, headers)
            if error is not None:
                raise error

            content_type = headers.get("content-type", "")
            if "application/pdf" in content_type.lower():
                return await self._fetch_document(context, url, timeout_ms)

            if self.settings.wait_for_selector:
                await page.wait_for_selector(
                    self.settings.wait_for_selector,
                    timeout=self.settings.wait_timeout * 1000,
                )

            content = await page.content()
            return FetchResult(
                url=url,
                final_url=page.url,
                status_code=status_code,
                content=content,
                content_type=content_type or "text/html",
                elapsed_ms=0.0,
                engine=self.engine_type,
            )
        except PlaywrightTimeoutError as e:
            raise NetworkTimeoutError(f"Browser navigation timed out: {e.message}", url=url) from e
        except PlaywrightError as e:
            raise NetworkTimeoutError(f"Browser navigation failed: {e.message}", url=url) from e
        finally:
            await context.close()

    async def _fetch_document(self, context: BrowserContext, url: str, timeout_ms: float) -> FetchResult:
        response = await context.request.get(url, timeout=timeout_ms)
        error = classify_http_status(response.status, url, response.headers)
        if error is not None:
            raise error
        body = await response.body()
        self.check_payload_size(len(body), url)
        return FetchResult(
            url=url,
            final_url=response.url,
            status_code=response.status,
            content=body,
            content_type=response.headers.get("content-type", ""),
            elapsed_ms=0.0,
            engine=self.engine_type,
        )

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
