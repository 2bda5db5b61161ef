import asyncio
import time

import pytest

from techtransfer_scraper.config import EngineProfile, build_config
from techtransfer_scraper.scrapers.dispatcher import EngineDispatcher
from techtransfer_scraper.scrapers.engines import EngineRegistry
from techtransfer_scraper.scrapers.exceptions import (
    AuthenticationError,
    NetworkTimeoutError,
    RateLimitError,
)
from techtransfer_scraper.scrapers.metrics import InMemoryMetricsSink
from techtransfer_scraper.scrapers.models import DispatchState, ScrapeTarget
from techtransfer_scraper.scrapers.rate_limiter import RateLimiter
from techtransfer_scraper.scrapers.state_store import InMemoryStateStore
from techtransfer_scraper.types import EngineType, ErrorClassification, InstitutionClass

from conftest import ScriptedEngine, build_pdf, html_page, pdf_document

LISTING = '<h1 class="title">Solar desalination membrane</h1><p class="summary">Low energy water</p>'


def make_config(retry_policies, **sections):
    data = {
        "retry": {"policies": retry_policies},
        "validation": {"required_fields": [], "field_rules": {}},
    }
    data.update(sections)
    return build_config(data)


def make_dispatcher(config, engine, sink=None):
    registry = EngineRegistry(config.engines, engines={EngineType.STATIC: engine})
    return EngineDispatcher(
        config=config,
        rate_limiter=RateLimiter(InMemoryStateStore()),
        registry=registry,
        metrics_sink=sink or InMemoryMetricsSink(),
    )


def make_target(institution_class=InstitutionClass.FEDERAL_LAB, **kwargs):
    return ScrapeTarget(
        url=kwargs.pop("url", "https://lab.example.gov/tech/123"),
        institution_key=kwargs.pop("institution_key", "lab.example.gov"),
        institution_class=institution_class,
        selectors=kwargs.pop("selectors", {"title": "h1.title", "summary": "p.summary"}),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_successful_dispatch_emits_metrics(fast_retry_policies):
    sink = InMemoryMetricsSink()
    engine = ScriptedEngine([html_page(LISTING)])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine, sink)

    outcome = await dispatcher.dispatch(make_target())

    assert outcome.state == DispatchState.SUCCEEDED
    assert outcome.attempts == 1
    assert outcome.error is None
    assert outcome.result.fields == {"title": "Solar desalination membrane", "summary": "Low energy water"}
    outcome.raise_for_error()

    [event] = sink.events
    assert event["event"] == "scrape_succeeded"
    assert event["engine"] == "static"
    assert event["institution_class"] == "federal_lab"
    assert event["attempts"] == 1
    assert event["item_count"] == 2
    assert event["classification"] is None


@pytest.mark.asyncio
async def test_transient_errors_are_retried_until_success(fast_retry_policies):
    engine = ScriptedEngine([
        NetworkTimeoutError("connection reset"),
        NetworkTimeoutError("connection reset"),
        html_page(LISTING),
    ])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine)

    outcome = await dispatcher.dispatch(make_target())

    assert outcome.succeeded
    assert outcome.attempts == 3
    assert len(engine.calls) == 3


@pytest.mark.asyncio
async def test_retries_exhausted_returns_terminal_error(fast_retry_policies):
    sink = InMemoryMetricsSink()
    engine = ScriptedEngine([NetworkTimeoutError("connection reset")])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine, sink)

    outcome = await dispatcher.dispatch(make_target())

    assert outcome.state == DispatchState.FAILED
    assert outcome.attempts == 4
    assert outcome.error.kind == ErrorClassification.NETWORK_TIMEOUT
    assert outcome.error.retry_attempt == 3
    assert sink.events[0]["event"] == "scrape_failed"
    assert sink.events[0]["classification"] == "network_timeout"
    with pytest.raises(NetworkTimeoutError):
        outcome.raise_for_error()


@pytest.mark.asyncio
async def test_authentication_error_is_not_retried(fast_retry_policies):
    engine = ScriptedEngine([AuthenticationError("HTTP 401")])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine)

    outcome = await dispatcher.dispatch(make_target())

    assert outcome.state == DispatchState.FAILED
    assert outcome.attempts == 1
    assert outcome.error.retry_attempt == 0
    assert len(engine.calls) == 1


@pytest.mark.asyncio
async def test_encrypted_pdf_fails_with_security_error_and_no_retries(fast_retry_policies):
    engine = ScriptedEngine([pdf_document(build_pdf(encrypt=True))])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine)

    outcome = await dispatcher.dispatch(make_target(url="https://lab.example.gov/tech/123.pdf"))

    assert outcome.state == DispatchState.FAILED
    assert outcome.error.kind == ErrorClassification.SECURITY_ERROR
    assert outcome.error.retry_attempt == 0
    assert outcome.attempts == 1


@pytest.mark.asyncio
async def test_pdf_payload_routed_to_pdf_pipeline(fast_retry_policies):
    engine = ScriptedEngine([pdf_document(build_pdf(pages=("Licensing brochure",)))])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine)

    outcome = await dispatcher.dispatch(make_target(url="https://lab.example.gov/tech/123.pdf"))

    assert outcome.succeeded
    assert "Licensing brochure" in outcome.result.fields["text"]


@pytest.mark.asyncio
async def test_all_fields_empty_is_retried_as_parse_error(fast_retry_policies):
    engine = ScriptedEngine([html_page("<p>nothing here</p>")])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine)

    outcome = await dispatcher.dispatch(make_target(selectors={"title": "h1.title"}))

    assert outcome.state == DispatchState.FAILED
    assert outcome.error.kind == ErrorClassification.PARSE_ERROR
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_missing_required_field_is_validation_error(fast_retry_policies):
    config = make_config(
        fast_retry_policies,
        validation={"required_fields": ["title", "inventors"], "field_rules": {}},
    )
    engine = ScriptedEngine([html_page(LISTING)])
    dispatcher = make_dispatcher(config, engine)

    outcome = await dispatcher.dispatch(make_target(selectors={"title": "h1.title", "inventors": ".inventor"}))

    assert outcome.state == DispatchState.FAILED
    assert outcome.error.kind == ErrorClassification.VALIDATION_ERROR
    assert outcome.error.field == "inventors"
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_waits_for_rate_limit_window_without_spending_retries(fast_retry_policies):
    config = make_config(fast_retry_policies, rate_limits={
        "default": {"requests_per_second": 1, "burst_limit": 1, "cooldown_seconds": 0.05},
    })
    engine = ScriptedEngine([html_page(LISTING)])
    dispatcher = make_dispatcher(config, engine)
    target = make_target(institution_class=InstitutionClass.DEFAULT, institution_key="slow.example.edu")
    assert dispatcher.rate_limiter.acquire(target.institution_key, config.rate_limit_for(InstitutionClass.DEFAULT)).granted

    started = time.perf_counter()
    outcome = await dispatcher.dispatch(target)

    assert outcome.succeeded
    assert outcome.attempts == 1
    assert time.perf_counter() - started >= 0.03


@pytest.mark.asyncio
async def test_rate_limit_wait_budget_exceeded_is_rate_limited_error(fast_retry_policies):
    policies = dict(fast_retry_policies, rate_limited={"max_retries": 0})
    config = make_config(
        policies,
        rate_limits={"default": {"requests_per_second": 1, "burst_limit": 1, "cooldown_seconds": 60}},
        dispatcher={"max_rate_limit_wait_ms": 0},
    )
    engine = ScriptedEngine([html_page(LISTING)])
    dispatcher = make_dispatcher(config, engine)
    target = make_target(institution_class=InstitutionClass.DEFAULT)
    dispatcher.rate_limiter.acquire(target.institution_key, config.rate_limit_for(InstitutionClass.DEFAULT))

    outcome = await dispatcher.dispatch(target)

    assert outcome.state == DispatchState.FAILED
    assert isinstance(outcome.error, RateLimitError)
    assert outcome.error.delay_ms > 0
    assert engine.calls == []


@pytest.mark.asyncio
async def test_retry_after_from_remote_is_honoured(fast_retry_policies):
    engine = ScriptedEngine([RateLimitError("HTTP 429", delay_ms=40), html_page(LISTING)])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine)

    started = time.perf_counter()
    outcome = await dispatcher.dispatch(make_target())

    assert outcome.succeeded
    assert outcome.attempts == 2
    assert time.perf_counter() - started >= 0.035


@pytest.mark.asyncio
async def test_engine_timeout_is_fatal_resource_error(fast_retry_policies):
    profile = EngineProfile(type=EngineType.STATIC, max_concurrency=1, timeout=0.05)
    engine = ScriptedEngine([html_page(LISTING)], profile=profile, delay=1.0)
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine)

    outcome = await dispatcher.dispatch(make_target())

    assert outcome.state == DispatchState.FAILED
    assert outcome.error.kind == ErrorClassification.NETWORK_TIMEOUT
    assert outcome.error.fatal
    assert outcome.attempts == 1


@pytest.mark.asyncio
async def test_cancel_event_aborts_in_flight_fetch(fast_retry_policies):
    sink = InMemoryMetricsSink()
    engine = ScriptedEngine([html_page(LISTING)], delay=2.0)
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine, sink)
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    started = time.perf_counter()
    outcome = await dispatcher.dispatch(make_target(), cancel_event=cancel)

    assert outcome.state == DispatchState.CANCELLED
    assert outcome.error is None
    assert time.perf_counter() - started < 1.0
    assert sink.events[0]["event"] == "scrape_cancelled"


@pytest.mark.asyncio
async def test_cancel_event_skips_pending_retry(fast_retry_policies):
    policies = dict(fast_retry_policies, network_timeout={
        "max_retries": 3, "base_delay_ms": 10_000, "backoff_factor": 2, "max_delay_ms": 30_000,
    })
    engine = ScriptedEngine([NetworkTimeoutError("connection reset")])
    dispatcher = make_dispatcher(make_config(policies), engine)
    cancel = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, cancel.set)

    outcome = await dispatcher.dispatch(make_target(), cancel_event=cancel)

    assert outcome.state == DispatchState.CANCELLED
    assert outcome.attempts == 1
    assert len(engine.calls) == 1


@pytest.mark.asyncio
async def test_already_cancelled_target_never_fetches(fast_retry_policies):
    engine = ScriptedEngine([html_page(LISTING)])
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine)
    cancel = asyncio.Event()
    cancel.set()

    outcome = await dispatcher.dispatch(make_target(), cancel_event=cancel)

    assert outcome.state == DispatchState.CANCELLED
    assert outcome.attempts == 0
    assert engine.calls == []


@pytest.mark.asyncio
async def test_engine_without_profile_fails_the_target(fast_retry_policies):
    sink = InMemoryMetricsSink()
    config = make_config(fast_retry_policies)
    engine = ScriptedEngine([html_page(LISTING)])
    dispatcher = EngineDispatcher(
        config=config,
        rate_limiter=RateLimiter(InMemoryStateStore()),
        registry=EngineRegistry({EngineType.STATIC: config.engines[EngineType.STATIC]}, engines={EngineType.STATIC: engine}),
        metrics_sink=sink,
    )

    outcome = await dispatcher.dispatch(make_target(engine_hint=EngineType.HEADLESS_BROWSER))

    assert outcome.state == DispatchState.FAILED
    assert outcome.attempts == 0
    assert outcome.error.kind == ErrorClassification.VALIDATION_ERROR
    assert outcome.error.fatal
    assert engine.calls == []
    [event] = sink.events
    assert event["event"] == "scrape_failed"
    assert event["engine"] == "headless_browser"
    assert event["classification"] == "validation_error"


@pytest.mark.asyncio
async def test_task_cancellation_emits_event_and_propagates(fast_retry_policies):
    sink = InMemoryMetricsSink()
    engine = ScriptedEngine([html_page(LISTING)], delay=2.0)
    dispatcher = make_dispatcher(make_config(fast_retry_policies), engine, sink)

    task = asyncio.create_task(dispatcher.dispatch(make_target()))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert sink.events[0]["event"] == "scrape_cancelled"


@pytest.mark.asyncio
@pytest.mark.parametrize("skip_failed, expected_count", [(True, 0), (False, 1)])
async def test_skip_failed_requests_refunds_the_charge(fast_retry_policies, skip_failed, expected_count):
    config = make_config(fast_retry_policies, rate_limiter={"skip_failed_requests": skip_failed})
    engine = ScriptedEngine([AuthenticationError("HTTP 403")])
    dispatcher = make_dispatcher(config, engine)
    target = make_target(institution_class=InstitutionClass.DEFAULT)

    outcome = await dispatcher.dispatch(target)

    profile = config.rate_limit_for(InstitutionClass.DEFAULT)
    assert outcome.state == DispatchState.FAILED
    assert dispatcher.rate_limiter.status(target.institution_key, profile)["count"] == expected_count


@pytest.mark.asyncio
async def test_stats_and_context_manager_close(fast_retry_policies):
    engine = ScriptedEngine([html_page(LISTING)])
    config = make_config(fast_retry_policies)

    async with make_dispatcher(config, engine) as dispatcher:
        await dispatcher.dispatch(make_target())
        stats = dispatcher.get_stats()

    assert stats["engines"]["static"]["total_jobs"] == 1
    assert stats["engines"]["static"]["successful_jobs"] == 1
    assert stats["fetch"]["static"]["successful"] == 1
    assert stats["rate_limiter"]["granted"] == 1
    assert engine.closed


@pytest.mark.asyncio
async def test_broken_metrics_sink_does_not_fail_dispatch(fast_retry_policies):
    class BrokenSink:
        def emit(self, event):
            raise RuntimeError("collector down")

    dispatcher = make_dispatcher(make_config(fast_retry_policies), ScriptedEngine([html_page(LISTING)]), BrokenSink())

    outcome = await dispatcher.dispatch(make_target())

    assert outcome.succeeded

