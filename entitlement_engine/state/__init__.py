"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from entitlement_engine.state.database import get_engine, get_session, get_session_factory
from entitlement_engine.state.repository import (
    EntitlementRepository,
    ProcessedEventRepository,
    UsageEventRepository,
)

__all__ = [
    "EntitlementRepository",
    "ProcessedEventRepository",
    "UsageEventRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
