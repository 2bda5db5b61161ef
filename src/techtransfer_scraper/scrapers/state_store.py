"""
Key-scoped state stores for distributed rate limiting.

A store keeps one ``RateLimitState`` per key and a short-lived lock per key.
Locks carry a TTL so a crashed holder never blocks a key for longer than
``ttl_ms``. The in-memory store serves single-process deployments; the
database store shares state across processes and hosts.
"""

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..database import (
    RateLimitLockRecord,
    RateLimitStateRecord,
    create_session_factory,
    create_state_engine,
    init_schema,
    session_scope,
)
from .exceptions import StateStoreError


@dataclass
class RateLimitState:
    """Fixed-window counter for one institution key."""

    count: int
    window_reset_at_ms: int


class StateStore(ABC):
    """Storage contract used by the rate limiter."""

    @abstractmethod
    def get_state(self, key: str) -> Optional[RateLimitState]:
        """Return the state for ``key`` or None if none exists."""

    @abstractmethod
    def put_state(self, key: str, state: RateLimitState) -> None:
        """Store ``state`` for ``key``, replacing any previous value."""

    @abstractmethod
    def replace_state(self, key: str, expected: Optional[RateLimitState], state: RateLimitState) -> bool:
        """
        Store ``state`` only if the current value still equals ``expected``.

        ``expected=None`` means the key must not exist yet.

        Returns:
            True if the write happened, False if another writer got there first.
        """

    @abstractmethod
    def delete_state(self, key: str) -> None:
        """Forget the state for ``key``."""

    @abstractmethod
    def acquire_lock(self, key: str, ttl_ms: int, now_ms: int) -> Optional[str]:
        """
        Try once to take the lock for ``key``.

        Returns:
            A holder token on success, None if another holder owns a live lock.
        """

    @abstractmethod
    def release_lock(self, key: str, token: str) -> None:
        """Release the lock if ``token`` still holds it."""

    def close(self) -> None:
        """Release store resources."""


class InMemoryStateStore(StateStore):
    """Thread-safe dictionary store for single-process deployments."""

    def __init__(self):
        self._mutex = threading.Lock()
        self._states: Dict[str, RateLimitState] = {}
        self._locks: Dict[str, Tuple[str, int]] = {}

    def get_state(self, key: str) -> Optional[RateLimitState]:
        with self._mutex:
            state = self._states.get(key)
            return RateLimitState(state.count, state.window_reset_at_ms) if state else None

    def put_state(self, key: str, state: RateLimitState) -> None:
        with self._mutex:
            self._states[key] = RateLimitState(state.count, state.window_reset_at_ms)

    def replace_state(self, key: str, expected: Optional[RateLimitState], state: RateLimitState) -> bool:
        with self._mutex:
            if self._states.get(key) != expected:
                return False
            self._states[key] = RateLimitState(state.count, state.window_reset_at_ms)
            return True

    def delete_state(self, key: str) -> None:
        with self._mutex:
            self._states.pop(key, None)

    def acquire_lock(self, key: str, ttl_ms: int, now_ms: int) -> Optional[str]:
        with self._mutex:
            held = self._locks.get(key)
            if held is not None and held[1] > now_ms:
                return None
            token = uuid.uuid4().hex
            self._locks[key] = (token, now_ms + ttl_ms)
            return token

    def release_lock(self, key: str, token: str) -> None:
        with self._mutex:
            held = self._locks.get(key)
            if held is not None and held[0] == token:
                del self._locks[key]


class DatabaseStateStore(StateStore):
    """SQLAlchemy-backed store shared by every worker pointing at the same database."""

    def __init__(self, database_url: str, echo: bool = False, create_schema: bool = True):
        try:
            self.engine = create_state_engine(database_url, echo=echo)
            if create_schema:
                init_schema(self.engine)
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to initialize rate-limit store: {e}") from e
        self.session_factory = create_session_factory(self.engine)

    def get_state(self, key: str) -> Optional[RateLimitState]:
        try:
            with session_scope(self.session_factory) as session:
                record = session.get(RateLimitStateRecord, key)
                if record is None:
                    return None
                return RateLimitState(record.count, record.window_reset_at_ms)
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to read rate-limit state for {key}: {e}") from e

    def put_state(self, key: str, state: RateLimitState) -> None:
        try:
            with session_scope(self.session_factory) as session:
                record = session.get(RateLimitStateRecord, key)
                if record is None:
                    session.add(RateLimitStateRecord(
                        key=key,
                        count=state.count,
                        window_reset_at_ms=state.window_reset_at_ms,
                    ))
                else:
                    record.count = state.count
                    record.window_reset_at_ms = state.window_reset_at_ms
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to write rate-limit state for {key}: {e}") from e

    def replace_state(self, key: str, expected: Optional[RateLimitState], state: RateLimitState) -> bool:
        try:
            with session_scope(self.session_factory) as session:
                if expected is None:
                    session.add(RateLimitStateRecord(
                        key=key,
                        count=state.count,
                        window_reset_at_ms=state.window_reset_at_ms,
                    ))
                    session.flush()
                    return True
                result = session.execute(
                    update(RateLimitStateRecord)
                    .where(
                        RateLimitStateRecord.key == key,
                        RateLimitStateRecord.count == expected.count,
                        RateLimitStateRecord.window_reset_at_ms == expected.window_reset_at_ms,
                    )
                    .values(count=state.count, window_reset_at_ms=state.window_reset_at_ms)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to write rate-limit state for {key}: {e}") from e

    def delete_state(self, key: str) -> None:
        try:
            with session_scope(self.session_factory) as session:
                session.execute(delete(RateLimitStateRecord).where(RateLimitStateRecord.key == key))
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to delete rate-limit state for {key}: {e}") from e

    def acquire_lock(self, key: str, ttl_ms: int, now_ms: int) -> Optional[str]:
        token = uuid.uuid4().hex
        try:
            with session_scope(self.session_factory) as session:
                # Reclaim a lock whose holder died without releasing it.
                session.execute(
                    delete(RateLimitLockRecord).where(
                        RateLimitLockRecord.key == key,
                        RateLimitLockRecord.expires_at_ms <= now_ms,
                    )
                )
                session.add(RateLimitLockRecord(key=key, token=token, expires_at_ms=now_ms + ttl_ms))
                session.flush()
        except IntegrityError:
            return None
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to acquire rate-limit lock for {key}: {e}") from e
        return token

    def release_lock(self, key: str, token: str) -> None:
        try:
            with session_scope(self.session_factory) as session:
                session.execute(
                    delete(RateLimitLockRecord).where(
                        RateLimitLockRecord.key == key,
                        RateLimitLockRecord.token == token,
                    )
                )
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to release rate-limit lock for {key}: {e}") from e

    def lock_holder(self, key: str) -> Optional[str]:
        """Token of the current lock holder, if any (diagnostics)."""
        try:
            with session_scope(self.session_factory) as session:
                return session.scalar(select(RateLimitLockRecord.token).where(RateLimitLockRecord.key == key))
        except SQLAlchemyError as e:
            raise StateStoreError(f"Failed to read rate-limit lock for {key}: {e}") from e

    def close(self) -> None:
        self.engine.dispose()


def create_state_store(backend: str, database_url: Optional[str] = None) -> StateStore:
    """Build the configured store backend."""
    if backend == "memory":
        return InMemoryStateStore()
    if backend == "database":
        if not database_url:
            raise ValueError("database_url is required for the database backend")
        return DatabaseStateStore(database_url)
    raise ValueError(f"Unsupported rate-limit store backend: {backend}")
