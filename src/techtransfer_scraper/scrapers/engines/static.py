"""
Plain HTTP fetch engine on aiohttp.
"""

from typing import Optional

import aiohttp

from ...config import EngineProfile
from ...types import EngineType
from ..exceptions import NetworkTimeoutError
from ..models import FetchResult
from .base import FetchEngine, classify_http_status

CHUNK_SIZE = 64 * 1024


class StaticFetchEngine(FetchEngine):
    """Fetches server-rendered pages and documents without running scripts."""

    engine_type = EngineType.STATIC

    def __init__(self, profile: EngineProfile, session: Optional[aiohttp.ClientSession] = None):
        super().__init__(profile)
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self.profile.max_concurrency,
                ttl_dns_cache=300,
                use_dns_cache=True,
            )
            timeout = aiohttp.ClientTimeout(
                total=self.profile.timeout,
                connect=self.profile.timeout / 2,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers=self.request_headers,
            )
        return self._session

    async def _fetch(self, url: str) -> FetchResult:
        session = self._get_session()
        try:
            async with session.get(url, allow_redirects=True) as response:
                error = classify_http_status(response.status, url, response.headers)
                if error is not None:
                    raise error

                if response.content_length is not None:
                    self.check_payload_size(response.content_length, url)

                body = bytearray()
                async for chunk in response.content.iter_chunked(CHUNK_SIZE):
                    body.extend(chunk)
                    self.check_payload_size(len(body), url)

                content_type = response.headers.get("Content-Type", "")
                result = FetchResult(
                    url=url,
                    final_url=str(response.url),
                    status_code=response.status,
                    content=bytes(body),
                    content_type=content_type,
                    elapsed_ms=0.0,
                    engine=self.engine_type,
                )
                if not result.is_pdf:
                    result.content = self._decode(bytes(body), response.charset)
                return result
        except aiohttp.ClientError as e:
            raise NetworkTimeoutError(f"Request failed: {e}", url=url) from e

    @staticmethod
    def _decode(body: bytes, charset: Optional[str]) -> str:
        try:
            return body.decode(charset or "utf-8", errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
