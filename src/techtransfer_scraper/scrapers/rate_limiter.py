"""
Distributed fixed-window rate limiting.

Each institution key owns a counter that resets at fixed window boundaries.
Every read-modify-write of a counter runs under the key's store lock, so two
workers can never both observe ``count < burst_limit`` and both increment past
the limit. Counter writes are conditional on the value read, so a holder
whose lock expired mid-update cannot overwrite a newer count. A request
that cannot get the lock within ``lock_wait_ms`` is denied with a short
``retry_after_ms``. If the store is unreachable the limiter fails open and
grants the request with ``degraded=True``.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..config import RateLimiterConfig, RateLimitProfile
from ..utils.logging import get_logger, log_rate_limit_decision
from .exceptions import StateStoreError
from .state_store import RateLimitState, StateStore, create_state_store

logger = get_logger(__name__)

LOCK_RETRY_INTERVAL = 0.005  # seconds between lock attempts
LOCK_CONTENTION_RETRY_MS = 50


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single acquisition."""

    granted: bool
    retry_after_ms: int = 0
    remaining: int = 0
    reset_at_ms: int = 0
    degraded: bool = False


class LockUnavailable(Exception):
    """Raised when a key's lock could not be taken within the wait budget."""


class RateLimiter:
    """Fixed-window limiter keyed by institution, backed by a shared StateStore."""

    def __init__(
        self,
        store: StateStore,
        key_prefix: str = "ratelimit:",
        lock_ttl_ms: int = 1000,
        lock_wait_ms: int = 2500,
        clock: Callable[[], int] = _now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.key_prefix = key_prefix
        self.lock_ttl_ms = lock_ttl_ms
        self.lock_wait_ms = lock_wait_ms
        self._clock = clock
        self._sleep = sleep
        self.stats = {
            'granted': 0,
            'denied': 0,
            'degraded': 0,
            'released': 0,
        }

    @classmethod
    def from_config(cls, config: RateLimiterConfig, store: Optional[StateStore] = None) -> "RateLimiter":
        """Build a limiter and its store from the rate_limiter config section."""
        if store is None:
            store = create_state_store(config.backend, config.database_url)
        return cls(
            store,
            key_prefix=config.key_prefix,
            lock_ttl_ms=config.lock_ttl_ms,
            lock_wait_ms=config.lock_wait_ms,
        )

    def _state_key(self, institution_key: str) -> str:
        return f"{self.key_prefix}{institution_key}"

    def _lock_key(self, institution_key: str) -> str:
        return f"{self.key_prefix}lock:{institution_key}"

    def _take_lock(self, lock_key: str) -> str:
        deadline = self._clock() + self.lock_wait_ms
        while True:
            token = self.store.acquire_lock(lock_key, self.lock_ttl_ms, self._clock())
            if token is not None:
                return token
            if self._clock() >= deadline:
                raise LockUnavailable(lock_key)
            self._sleep(LOCK_RETRY_INTERVAL)

    def _release_lock(self, lock_key: str, token: str) -> None:
        try:
            self.store.release_lock(lock_key, token)
        except StateStoreError as e:
            # The TTL reclaims the lock.
            logger.warning("Failed to release rate-limit lock", lock_key=lock_key, error=str(e))

    @staticmethod
    def _validate(institution_key: str, profile: RateLimitProfile) -> None:
        if not institution_key or not institution_key.strip():
            raise ValueError("institution_key must be a non-empty string")
        if profile.requests_per_second <= 0 or profile.burst_limit <= 0 or profile.cooldown_seconds <= 0:
            raise ValueError("rate-limit profile values must be positive")

    def acquire(self, institution_key: str, profile: RateLimitProfile) -> RateLimitDecision:
        """
        Ask for permission to send one request to ``institution_key``.

        Args:
            institution_key: Source the request is addressed to
            profile: Courtesy limits for the source's institution class

        Returns:
            Decision with ``granted`` and, when denied, ``retry_after_ms``
            until the current window resets.

        Raises:
            ValueError: If the key is empty or the profile is not positive.
        """
        self._validate(institution_key, profile)
        state_key = self._state_key(institution_key)
        lock_key = self._lock_key(institution_key)

        try:
            token = self._take_lock(lock_key)
        except StateStoreError as e:
            return self._fail_open(institution_key, e)
        except LockUnavailable:
            self.stats['denied'] += 1
            logger.info("Rate-limit lock contended, denying", institution_key=institution_key)
            return RateLimitDecision(granted=False, retry_after_ms=LOCK_CONTENTION_RETRY_MS)

        try:
            while True:
                now = self._clock()
                current = self.store.get_state(state_key)
                state = current
                if state is None or now >= state.window_reset_at_ms:
                    state = RateLimitState(count=0, window_reset_at_ms=now + profile.window_ms)

                if state.count >= profile.burst_limit:
                    decision = RateLimitDecision(
                        granted=False,
                        retry_after_ms=max(1, state.window_reset_at_ms - now),
                        remaining=0,
                        reset_at_ms=state.window_reset_at_ms,
                    )
                    self.stats['denied'] += 1
                    break

                updated = RateLimitState(state.count + 1, state.window_reset_at_ms)
                # Conditional write: a holder whose lock expired mid-update loses here.
                if self.store.replace_state(state_key, current, updated):
                    decision = RateLimitDecision(
                        granted=True,
                        remaining=profile.burst_limit - updated.count,
                        reset_at_ms=updated.window_reset_at_ms,
                    )
                    self.stats['granted'] += 1
                    break
        except StateStoreError as e:
            return self._fail_open(institution_key, e)
        finally:
            self._release_lock(lock_key, token)

        log_rate_limit_decision(
            institution_key,
            decision.granted,
            remaining=decision.remaining,
            retry_after_ms=decision.retry_after_ms,
        )
        return decision

    def _fail_open(self, institution_key: str, error: Exception) -> RateLimitDecision:
        self.stats['degraded'] += 1
        self.stats['granted'] += 1
        logger.warning(
            "Rate-limit store unavailable, failing open",
            institution_key=institution_key,
            error=str(error) or error.__class__.__name__,
        )
        return RateLimitDecision(granted=True, degraded=True)

    def release(self, institution_key: str) -> bool:
        """
        Refund one charge for a request that failed downstream.

        Opt-in and best-effort: the refund is applied under the key lock but
        may land on a different window than the one charged, so exact
        accounting under heavy concurrency is not guaranteed.

        Returns:
            True if a charge was refunded.
        """
        if not institution_key:
            return False
        state_key = self._state_key(institution_key)
        lock_key = self._lock_key(institution_key)
        try:
            token = self._take_lock(lock_key)
        except (StateStoreError, LockUnavailable) as e:
            logger.warning("Skipping rate-limit refund", institution_key=institution_key, error=str(e))
            return False

        try:
            state = self.store.get_state(state_key)
            if state is None or self._clock() >= state.window_reset_at_ms or state.count <= 0:
                return False
            if not self.store.replace_state(state_key, state, RateLimitState(state.count - 1, state.window_reset_at_ms)):
                return False
            self.stats['released'] += 1
            return True
        except StateStoreError as e:
            logger.warning("Error adjusting rate limit for failed request", institution_key=institution_key, error=str(e))
            return False
        finally:
            self._release_lock(lock_key, token)

    def status(self, institution_key: str, profile: RateLimitProfile) -> Dict[str, Any]:
        """Read-only snapshot of a key's window."""
        now = self._clock()
        state = self.store.get_state(self._state_key(institution_key))
        if state is None or now >= state.window_reset_at_ms:
            count, reset_at = 0, None
        else:
            count, reset_at = state.count, state.window_reset_at_ms
        return {
            "institution_key": institution_key,
            "limit": profile.burst_limit,
            "count": count,
            "remaining": max(0, profile.burst_limit - count),
            "reset_at_ms": reset_at,
        }

    def reset(self, institution_key: str) -> None:
        """Clear a key's window."""
        self.store.delete_state(self._state_key(institution_key))

    def get_stats(self) -> Dict[str, int]:
        """Get rate limiting statistics."""
        return dict(self.stats)

    def close(self) -> None:
        self.store.close()
