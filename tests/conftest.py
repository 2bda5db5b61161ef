import asyncio
import io
from typing import List, Optional, Union

import pytest
from pypdf import PdfWriter
from pypdf.annotations import Link
from pypdf.generic import DecodedStreamObject, DictionaryObject, NameObject

from techtransfer_scraper.config import EngineProfile
from techtransfer_scraper.scrapers.engines.base import FetchEngine
from techtransfer_scraper.scrapers.models import FetchResult
from techtransfer_scraper.types import EngineType


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


Step = Union[FetchResult, Exception]


class ScriptedEngine(FetchEngine):
    """Fetch engine that replays a script of results and errors."""

    engine_type = EngineType.STATIC

    def __init__(self, steps: List[Step], profile: Optional[EngineProfile] = None, delay: float = 0.0):
        super().__init__(profile or EngineProfile(type=EngineType.STATIC, max_concurrency=2, timeout=5))
        self.steps = list(steps)
        self.delay = delay
        self.calls: List[str] = []
        self.closed = False

    async def _fetch(self, url: str) -> FetchResult:
        self.calls.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        return step

    async def close(self) -> None:
        self.closed = True


def html_page(body: str, url: str = "https://lab.example.gov/tech/123") -> FetchResult:
    return FetchResult(
        url=url,
        final_url=url,
        status_code=200,
        content=f"<html><head><title>Listing</title></head><body>{body}</body></html>",
        content_type="text/html; charset=utf-8",
        elapsed_ms=0.0,
        engine=EngineType.STATIC,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_retry_policies():
    """Retry table with millisecond delays so dispatcher tests stay quick."""
    return {
        "network_timeout": {"max_retries": 3, "base_delay_ms": 1, "backoff_factor": 2, "max_delay_ms": 10},
        "rate_limited": {"max_retries": 2, "base_delay_ms": 1, "backoff_factor": 2, "max_delay_ms": 10},
        "parse_error": {"max_retries": 2, "base_delay_ms": 1, "backoff_factor": 1.5, "max_delay_ms": 10},
        "validation_error": {"max_retries": 1, "base_delay_ms": 1, "backoff_factor": 1, "max_delay_ms": 10},
    }


def _helvetica() -> DictionaryObject:
    return DictionaryObject({
        NameObject("/Type"): NameObject("/Font"),
        NameObject("/Subtype"): NameObject("/Type1"),
        NameObject("/BaseFont"): NameObject("/Helvetica"),
    })


def build_pdf(pages=("Solar desalination",), metadata=None, javascript=None, link=None, encrypt=False, user_password="") -> bytes:
    writer = PdfWriter()
    for text in pages:
        page = writer.add_blank_page(width=300, height=200)
        page[NameObject("/Resources")] = DictionaryObject({
            NameObject("/Font"): DictionaryObject({NameObject("/F1"): _helvetica()}),
        })
        stream = DecodedStreamObject()
        stream.set_data(f"BT /F1 12 Tf 20 100 Td ({text}) Tj ET".encode("latin-1"))
        page.replace_contents(stream)
    if metadata:
        writer.add_metadata(metadata)
    if javascript:
        writer.add_js(javascript)
    if link:
        writer.add_annotation(page_number=0, annotation=Link(rect=(10, 10, 120, 40), url=link))
    if encrypt:
        writer.encrypt(user_password=user_password, owner_password="owner-secret")
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def pdf_document(data: bytes, url: str = "https://lab.example.gov/tech/123.pdf") -> FetchResult:
    return FetchResult(
        url=url,
        final_url=url,
        status_code=200,
        content=data,
        content_type="application/pdf",
        elapsed_ms=0.0,
        engine=EngineType.STATIC,
    )
