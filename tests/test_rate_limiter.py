import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from techtransfer_scraper.config import RateLimitProfile, build_config
from techtransfer_scraper.scrapers.exceptions import StateStoreError
from techtransfer_scraper.scrapers.rate_limiter import RateLimiter
from techtransfer_scraper.scrapers.state_store import (
    DatabaseStateStore,
    InMemoryStateStore,
    RateLimitState,
    StateStore,
    create_state_store,
)
from techtransfer_scraper.types import InstitutionClass


class UnreachableStore(StateStore):
    def get_state(self, key):
        raise StateStoreError("connection refused")

    def put_state(self, key, state):
        raise StateStoreError("connection refused")

    def replace_state(self, key, expected, state):
        raise StateStoreError("connection refused")

    def delete_state(self, key):
        raise StateStoreError("connection refused")

    def acquire_lock(self, key, ttl_ms, now_ms):
        raise StateStoreError("connection refused")

    def release_lock(self, key, token):
        raise StateStoreError("connection refused")


class StuckLockStore(InMemoryStateStore):
    """Lock is always held by somebody else."""

    def acquire_lock(self, key, ttl_ms, now_ms):
        return None


def test_federal_lab_allows_ten_then_denies():
    config = build_config()
    profile = config.rate_limit_for(InstitutionClass.FEDERAL_LAB)
    limiter = RateLimiter(InMemoryStateStore())

    decisions = [limiter.acquire("lab.example.gov", profile) for _ in range(11)]

    assert all(d.granted for d in decisions[:10])
    assert decisions[9].remaining == 0
    assert not decisions[10].granted
    assert decisions[10].retry_after_ms > 0
    assert decisions[10].retry_after_ms <= 30_000


def test_never_exceeds_burst_under_concurrent_threads():
    profile = RateLimitProfile(requests_per_second=2, burst_limit=5, cooldown_seconds=60)
    limiter = RateLimiter(InMemoryStateStore())
    start = threading.Barrier(16)

    def worker(_):
        start.wait()
        return [limiter.acquire("mit", profile).granted for _ in range(10)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = [granted for batch in pool.map(worker, range(16)) for granted in batch]

    assert sum(results) == 5
    assert limiter.get_stats()['denied'] == 16 * 10 - 5


def test_window_resets_at_boundary(clock):
    profile = RateLimitProfile(requests_per_second=1, burst_limit=2, cooldown_seconds=300)
    limiter = RateLimiter(InMemoryStateStore(), clock=clock)

    assert limiter.acquire("ox", profile).granted
    clock.advance(1000)
    assert limiter.acquire("ox", profile).granted
    denied = limiter.acquire("ox", profile)
    assert not denied.granted
    assert denied.retry_after_ms == 299_000

    clock.advance(299_000)
    fresh = limiter.acquire("ox", profile)
    assert fresh.granted
    assert fresh.remaining == 1
    assert fresh.reset_at_ms == clock() + 300_000


def test_keys_are_independent():
    profile = RateLimitProfile(requests_per_second=1, burst_limit=1, cooldown_seconds=60)
    limiter = RateLimiter(InMemoryStateStore())

    assert limiter.acquire("a", profile).granted
    assert not limiter.acquire("a", profile).granted
    assert limiter.acquire("b", profile).granted


def test_fails_open_when_store_unreachable():
    profile = RateLimitProfile(requests_per_second=1, burst_limit=1, cooldown_seconds=60)
    limiter = RateLimiter(UnreachableStore())

    decisions = [limiter.acquire("eth", profile) for _ in range(3)]

    assert all(d.granted and d.degraded for d in decisions)
    assert limiter.get_stats()['degraded'] == 3


def test_lock_contention_denies_instead_of_granting(clock):
    profile = RateLimitProfile(requests_per_second=1, burst_limit=1, cooldown_seconds=60)
    limiter = RateLimiter(
        StuckLockStore(),
        lock_ttl_ms=1000,
        lock_wait_ms=2500,
        clock=clock,
        sleep=lambda seconds: clock.advance(int(seconds * 1000) or 1),
    )

    decision = limiter.acquire("eth", profile)

    assert not decision.granted
    assert not decision.degraded
    assert decision.retry_after_ms > 0
    assert limiter.get_stats()['denied'] == 1
    assert limiter.get_stats()['degraded'] == 0


class OverlappingLockStore(InMemoryStateStore):
    """Every caller gets the lock, as if each holder's TTL had lapsed."""

    def acquire_lock(self, key, ttl_ms, now_ms):
        return "shared"

    def release_lock(self, key, token):
        pass


def test_conditional_write_holds_burst_when_locks_overlap():
    profile = RateLimitProfile(requests_per_second=5, burst_limit=5, cooldown_seconds=60)
    limiter = RateLimiter(OverlappingLockStore())
    start = threading.Barrier(16)

    def worker(_):
        start.wait()
        return [limiter.acquire("mit", profile).granted for _ in range(10)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = [granted for batch in pool.map(worker, range(16)) for granted in batch]

    assert sum(results) == 5


def test_replace_state_rejects_stale_expectation():
    store = InMemoryStateStore()
    first = RateLimitState(count=1, window_reset_at_ms=1000)

    assert store.replace_state("k", None, first)
    assert not store.replace_state("k", None, RateLimitState(count=1, window_reset_at_ms=2000))
    assert store.replace_state("k", first, RateLimitState(count=2, window_reset_at_ms=1000))
    assert not store.replace_state("k", first, RateLimitState(count=3, window_reset_at_ms=1000))
    assert store.get_state("k").count == 2


def test_sub_millisecond_cooldown_still_enforces_burst(clock):
    profile = RateLimitProfile(requests_per_second=1, burst_limit=1, cooldown_seconds=0.0005)
    limiter = RateLimiter(InMemoryStateStore(), clock=clock)

    assert profile.window_ms == 1
    assert limiter.acquire("eth", profile).granted
    assert not limiter.acquire("eth", profile).granted
    clock.advance(1)
    assert limiter.acquire("eth", profile).granted


def test_expired_lock_is_reclaimed():
    store = InMemoryStateStore()
    assert store.acquire_lock("k", ttl_ms=1000, now_ms=0) is not None
    assert store.acquire_lock("k", ttl_ms=1000, now_ms=500) is None
    assert store.acquire_lock("k", ttl_ms=1000, now_ms=1000) is not None


def test_release_refunds_one_charge(clock):
    profile = RateLimitProfile(requests_per_second=1, burst_limit=2, cooldown_seconds=60)
    limiter = RateLimiter(InMemoryStateStore(), clock=clock)

    limiter.acquire("nih", profile)
    limiter.acquire("nih", profile)
    assert not limiter.acquire("nih", profile).granted

    assert limiter.release("nih")
    assert limiter.acquire("nih", profile).granted


def test_release_is_ignored_after_window_rollover(clock):
    profile = RateLimitProfile(requests_per_second=1, burst_limit=2, cooldown_seconds=60)
    limiter = RateLimiter(InMemoryStateStore(), clock=clock)

    limiter.acquire("nih", profile)
    clock.advance(60_000)

    assert not limiter.release("nih")
    assert not limiter.release("unknown")


def test_release_never_goes_below_zero(clock):
    store = InMemoryStateStore()
    limiter = RateLimiter(store, clock=clock)
    store.put_state("ratelimit:nih", RateLimitState(count=0, window_reset_at_ms=clock() + 1000))

    assert not limiter.release("nih")
    assert store.get_state("ratelimit:nih").count == 0


@pytest.mark.parametrize("key", ["", "   "])
def test_rejects_empty_key(key):
    profile = RateLimitProfile(requests_per_second=1, burst_limit=1, cooldown_seconds=60)
    with pytest.raises(ValueError):
        RateLimiter(InMemoryStateStore()).acquire(key, profile)


def test_status_and_reset(clock):
    profile = RateLimitProfile(requests_per_second=1, burst_limit=3, cooldown_seconds=60)
    limiter = RateLimiter(InMemoryStateStore(), clock=clock)
    limiter.acquire("ucl", profile)

    status = limiter.status("ucl", profile)
    assert status["count"] == 1
    assert status["remaining"] == 2
    assert status["reset_at_ms"] == clock() + 60_000

    limiter.reset("ucl")
    assert limiter.status("ucl", profile)["count"] == 0


def test_database_store_enforces_burst(tmp_path: Path, clock):
    url = f"sqlite:///{tmp_path / 'ratelimit.db'}"
    profile = RateLimitProfile(requests_per_second=5, burst_limit=3, cooldown_seconds=30)

    first = RateLimiter(DatabaseStateStore(url), clock=clock)
    second = RateLimiter(DatabaseStateStore(url), clock=clock)
    try:
        granted = [first.acquire("lab", profile).granted, second.acquire("lab", profile).granted]
        granted += [first.acquire("lab", profile).granted, second.acquire("lab", profile).granted]

        assert granted == [True, True, True, False]
        denied = first.acquire("lab", profile)
        assert not denied.granted and not denied.degraded

        clock.advance(30_000)
        assert second.acquire("lab", profile).granted
    finally:
        first.close()
        second.close()


def test_database_store_lock_semantics(tmp_path: Path):
    store = DatabaseStateStore(f"sqlite:///{tmp_path / 'locks.db'}")
    try:
        token = store.acquire_lock("lock:k", ttl_ms=1000, now_ms=0)
        assert token is not None
        assert store.acquire_lock("lock:k", ttl_ms=1000, now_ms=10) is None

        store.release_lock("lock:k", "not-the-holder")
        assert store.lock_holder("lock:k") == token

        reclaimed = store.acquire_lock("lock:k", ttl_ms=1000, now_ms=1000)
        assert reclaimed is not None and reclaimed != token

        store.release_lock("lock:k", reclaimed)
        assert store.lock_holder("lock:k") is None
    finally:
        store.close()


def test_database_store_never_exceeds_burst_across_threads(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'ratelimit.db'}"
    profile = RateLimitProfile(requests_per_second=5, burst_limit=5, cooldown_seconds=60)
    limiters = [RateLimiter(DatabaseStateStore(url), lock_wait_ms=5000) for _ in range(4)]
    start = threading.Barrier(24)

    def worker(index):
        limiter = limiters[index % len(limiters)]
        start.wait()
        return [limiter.acquire("lab", profile).granted for _ in range(4)]

    try:
        with ThreadPoolExecutor(max_workers=24) as pool:
            results = [granted for batch in pool.map(worker, range(24)) for granted in batch]

        assert 1 <= sum(results) <= 5
        assert sum(limiter.get_stats()['degraded'] for limiter in limiters) == 0
    finally:
        for limiter in limiters:
            limiter.close()


def test_database_store_replace_state_is_conditional(tmp_path: Path):
    store = DatabaseStateStore(f"sqlite:///{tmp_path / 'ratelimit.db'}")
    first = RateLimitState(count=1, window_reset_at_ms=1000)
    try:
        assert store.replace_state("k", None, first)
        assert not store.replace_state("k", None, first)
        assert store.replace_state("k", first, RateLimitState(count=2, window_reset_at_ms=1000))
        assert not store.replace_state("k", first, RateLimitState(count=3, window_reset_at_ms=1000))
        assert store.get_state("k") == RateLimitState(count=2, window_reset_at_ms=1000)
    finally:
        store.close()


def test_create_state_store_requires_url_for_database():
    assert isinstance(create_state_store("memory"), InMemoryStateStore)
    with pytest.raises(ValueError):
        create_state_store("database")
