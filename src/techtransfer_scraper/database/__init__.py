"""
Shared rate-limit state persistence.
"""

from .connection import create_session_factory, create_state_engine, init_schema, session_scope
from .models import Base, RateLimitLockRecord, RateLimitStateRecord

__all__ = [
    "Base",
    "RateLimitLockRecord",
    "RateLimitStateRecord",
    "create_session_factory",
    "create_state_engine",
    "init_schema",
    "session_scope",
]
