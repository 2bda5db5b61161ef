"""
Tables backing the shared rate-limit state.

Only rate-limit counters and their per-key locks live here; scraped records
and job logs are persisted by other services.
"""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models."""

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(key={getattr(self, 'key', None)!r})>"


class RateLimitStateRecord(Base):
    """Fixed-window counter for one institution key."""

    __tablename__ = "rate_limit_state"

    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Prefixed institution key",
    )

    count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Requests granted in the current window",
    )

    window_reset_at_ms: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Epoch milliseconds at which the window resets",
    )


class RateLimitLockRecord(Base):
    """Short-lived mutual-exclusion lock guarding one state row."""

    __tablename__ = "rate_limit_lock"

    key: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        comment="Prefixed lock key",
    )

    token: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Holder token; only the holder may release",
    )

    expires_at_ms: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        index=True,
        comment="Epoch milliseconds after which the lock may be reclaimed",
    )
