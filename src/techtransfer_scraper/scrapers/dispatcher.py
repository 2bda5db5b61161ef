"""
Engine dispatcher: runs one target through rate limiting, fetch, extraction
and retry until it reaches a terminal state.

State machine::

    pending -> rate_limited (wait) -> fetching -> extracting
            -> succeeded | retrying (-> pending) | failed | cancelled
"""

import asyncio
import time
from typing import Any, Dict, Optional, Union

from ..config import Config, ConfigurationError, RateLimitProfile, get_config
from ..utils.logging import get_logger, log_scraping_activity
from .engines import EngineRegistry
from .exceptions import ParsingError, RateLimitError, ScraperError, ValidationError
from .extractors import HtmlExtractor
from .metrics import LoggingMetricsSink, MetricsSink, emit_safely
from .models import DispatchState, ExtractionResult, FetchResult, ScrapeOutcome, ScrapeTarget
from .pdf_extractor import PdfExtractionOptions, PdfExtractor
from .rate_limiter import RateLimitDecision, RateLimiter
from .retry import RetryPolicyEngine
from .validation import RecordValidator

logger = get_logger(__name__)

_EVENT_NAMES = {
    DispatchState.SUCCEEDED: "scrape_succeeded",
    DispatchState.FAILED: "scrape_failed",
    DispatchState.CANCELLED: "scrape_cancelled",
}


class DispatchCancelled(Exception):
    """Internal signal: the caller's cancel event fired."""


def _blocking_error(result: ExtractionResult) -> ScraperError:
    """The error that decides the attempt's fate: a fatal one if present."""
    for error in result.errors:
        if error.fatal:
            return error
    if result.errors:
        return result.errors[0]
    return ParsingError(
        "Extraction produced no data",
        context={"empty_results": list(result.validation.empty_results)},
    )


class EngineDispatcher:
    """
    Executes a single target's fetch and extract cycle with retries.

    The dispatcher owns no job queue: callers run as many ``dispatch`` calls
    concurrently as they like. Attempts for one target are strictly
    sequential.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_engine: Optional[RetryPolicyEngine] = None,
        registry: Optional[EngineRegistry] = None,
        html_extractor: Optional[HtmlExtractor] = None,
        pdf_extractor: Optional[PdfExtractor] = None,
        validator: Optional[RecordValidator] = None,
        metrics_sink: Optional[MetricsSink] = None,
    ):
        self.config = config or get_config()
        self.rate_limiter = rate_limiter or RateLimiter.from_config(self.config.rate_limiter)
        self.retry_engine = retry_engine or RetryPolicyEngine.from_config(self.config.retry)
        self.registry = registry or EngineRegistry(self.config.engines)
        self.html_extractor = html_extractor or HtmlExtractor(
            parser=self.config.html.parser,
            validate_selectors=self.config.html.validate_selectors,
        )
        self.pdf_extractor = pdf_extractor or PdfExtractor(PdfExtractionOptions.from_config(self.config.pdf))
        self.validator = validator or RecordValidator(self.config.validation)
        self.metrics_sink = metrics_sink or LoggingMetricsSink()
        self.max_rate_limit_wait_ms = self.config.dispatcher.max_rate_limit_wait_ms
        self.skip_failed_requests = self.config.rate_limiter.skip_failed_requests
        self._stats: Dict[str, Dict[str, float]] = {}

    async def __aenter__(self) -> "EngineDispatcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def dispatch(self, target: ScrapeTarget, cancel_event: Optional[asyncio.Event] = None) -> ScrapeOutcome:
        """
        Run ``target`` to a terminal state.

        Args:
            target: What to fetch and how to extract it
            cancel_event: Setting it aborts an in-flight fetch or pending
                wait and ends the dispatch as ``cancelled``

        Returns:
            ScrapeOutcome. ``succeeded`` outcomes carry the extraction result;
            ``failed`` outcomes carry the terminal ScraperError.
        """
        started = time.perf_counter()
        profile = self.config.rate_limit_for(target.institution_class)
        engine_type = target.engine_hint
        outcome = ScrapeOutcome(target=target, state=DispatchState.PENDING, engine=engine_type)
        last_fetch: Optional[FetchResult] = None

        try:
            engine = self.registry.get(engine_type)
        except ConfigurationError as e:
            outcome.state = DispatchState.FAILED
            outcome.error = ValidationError(str(e), field="engine_hint", value=engine_type.value, fatal=True)
            self._finish(outcome, started, last_fetch)
            return outcome

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    outcome.state = DispatchState.CANCELLED
                    break

                outcome.attempts += 1
                outcome.state = DispatchState.PENDING
                charged = False
                try:
                    decision = await self._acquire_slot(target, profile, outcome, cancel_event)
                    charged = not decision.degraded

                    outcome.state = DispatchState.FETCHING
                    last_fetch = await self._run_cancelable(engine.fetch(target.url), cancel_event)

                    outcome.state = DispatchState.EXTRACTING
                    result = await self._extract(target, last_fetch)
                    if not result.success or result.errors:
                        raise _blocking_error(result)

                    outcome.result = result
                    outcome.error = None
                    outcome.state = DispatchState.SUCCEEDED
                    break
                except DispatchCancelled:
                    outcome.state = DispatchState.CANCELLED
                    outcome.error = None
                    break
                except ScraperError as e:
                    e.retry_attempt = outcome.attempts - 1
                    outcome.error = e
                    if charged and self.skip_failed_requests:
                        await asyncio.to_thread(self.rate_limiter.release, target.institution_key)

                    retry = self.retry_engine.decide_for(e, outcome.attempts)
                    if not retry.should_retry:
                        outcome.state = DispatchState.FAILED
                        break

                    delay_ms = retry.delay_ms
                    if isinstance(e, RateLimitError) and e.delay_ms:
                        delay_ms = max(delay_ms, e.delay_ms)
                    outcome.state = DispatchState.RETRYING
                    logger.info(
                        "Retrying scrape",
                        url=target.url,
                        institution_key=target.institution_key,
                        classification=e.kind.value,
                        attempt=outcome.attempts,
                        delay_ms=delay_ms,
                        error=e.message,
                    )
                    if await self._sleep(delay_ms, cancel_event):
                        outcome.state = DispatchState.CANCELLED
                        outcome.error = None
                        break
        except asyncio.CancelledError:
            outcome.state = DispatchState.CANCELLED
            outcome.error = None
            self._finish(outcome, started, last_fetch)
            raise

        self._finish(outcome, started, last_fetch)
        return outcome

    async def _acquire_slot(
        self,
        target: ScrapeTarget,
        profile: RateLimitProfile,
        outcome: ScrapeOutcome,
        cancel_event: Optional[asyncio.Event],
    ) -> RateLimitDecision:
        """Wait until the limiter grants a slot; this wait is not retry backoff."""
        waited_ms = 0
        while True:
            decision = await asyncio.to_thread(self.rate_limiter.acquire, target.institution_key, profile)
            if decision.granted:
                return decision

            if waited_ms + decision.retry_after_ms > self.max_rate_limit_wait_ms:
                raise RateLimitError(
                    f"Rate-limit wait for {target.institution_key} would exceed "
                    f"{self.max_rate_limit_wait_ms}ms",
                    delay_ms=decision.retry_after_ms,
                    url=target.url,
                )

            outcome.state = DispatchState.RATE_LIMITED
            logger.debug(
                "Waiting for rate limit",
                institution_key=target.institution_key,
                retry_after_ms=decision.retry_after_ms,
            )
            if await self._sleep(decision.retry_after_ms, cancel_event):
                raise DispatchCancelled()
            waited_ms += decision.retry_after_ms

    async def _run_cancelable(self, coro, cancel_event: Optional[asyncio.Event]) -> FetchResult:
        if cancel_event is None:
            return await coro

        fetch_task = asyncio.ensure_future(coro)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({fetch_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (fetch_task, cancel_task):
                if not task.done():
                    task.cancel()

        if fetch_task in done:
            return fetch_task.result()
        await asyncio.gather(fetch_task, return_exceptions=True)
        raise DispatchCancelled()

    async def _extract(self, target: ScrapeTarget, fetched: FetchResult) -> ExtractionResult:
        if fetched.is_pdf:
            content = fetched.content
            if isinstance(content, str):
                content = content.encode("latin-1", errors="replace")
            return await asyncio.to_thread(self.pdf_extractor.extract, content)

        html = fetched.content
        if isinstance(html, bytes):
            html = html.decode("utf-8", errors="replace")
        result = await asyncio.to_thread(
            self.html_extractor.extract, html, target.selectors, target.field_rules
        )
        return self.validator.validate(result)

    @staticmethod
    async def _sleep(delay_ms: Union[int, float], cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for ``delay_ms``; True if the cancel event fired first."""
        if cancel_event is None:
            await asyncio.sleep(delay_ms / 1000)
            return False
        if cancel_event.is_set():
            return True
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay_ms / 1000)
            return True
        except asyncio.TimeoutError:
            return False

    def _finish(self, outcome: ScrapeOutcome, started: float, last_fetch: Optional[FetchResult]) -> None:
        outcome.duration_ms = (time.perf_counter() - started) * 1000
        engine_name = outcome.engine.value if outcome.engine else None
        self._record_stats(engine_name, outcome)

        item_count = outcome.result.metrics.get("item_count", 0) if outcome.result else 0
        emit_safely(self.metrics_sink, {
            "event": _EVENT_NAMES[outcome.state],
            "state": outcome.state.value,
            "url": outcome.target.url,
            "institution_key": outcome.target.institution_key,
            "institution_class": outcome.target.institution_class.value,
            "engine": engine_name,
            "attempts": outcome.attempts,
            "duration_ms": round(outcome.duration_ms, 2),
            "classification": outcome.error.kind.value if outcome.error else None,
            "item_count": item_count,
        })

        log_scraping_activity(
            institution_key=outcome.target.institution_key,
            url=outcome.target.url,
            engine=engine_name,
            status_code=last_fetch.status_code if last_fetch else None,
            response_time_ms=outcome.duration_ms,
            success=outcome.succeeded,
            error_message=outcome.error.message if outcome.error else None,
        )

    def _record_stats(self, engine_name: Optional[str], outcome: ScrapeOutcome) -> None:
        stats = self._stats.setdefault(engine_name, {
            'total_jobs': 0,
            'successful_jobs': 0,
            'failed_jobs': 0,
            'cancelled_jobs': 0,
            'total_duration_ms': 0.0,
        })
        stats['total_jobs'] += 1
        stats['total_duration_ms'] += outcome.duration_ms
        if outcome.state == DispatchState.SUCCEEDED:
            stats['successful_jobs'] += 1
        elif outcome.state == DispatchState.FAILED:
            stats['failed_jobs'] += 1
        else:
            stats['cancelled_jobs'] += 1

    def get_stats(self) -> Dict[str, Any]:
        """Per-engine job counters, engine fetch stats and rate-limiter stats."""
        engines = {}
        for engine_name, stats in self._stats.items():
            total = stats['total_jobs']
            engines[engine_name] = {
                'total_jobs': total,
                'successful_jobs': stats['successful_jobs'],
                'failed_jobs': stats['failed_jobs'],
                'cancelled_jobs': stats['cancelled_jobs'],
                'average_duration_ms': stats['total_duration_ms'] / total if total else 0.0,
            }
        return {
            'engines': engines,
            'fetch': self.registry.stats(),
            'rate_limiter': self.rate_limiter.get_stats(),
        }

    async def close(self) -> None:
        """Close engines and the rate-limit store."""
        await self.registry.close()
        self.rate_limiter.close()
