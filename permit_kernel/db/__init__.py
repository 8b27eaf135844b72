"""Database layer - engine and declarative base."""

from permit_kernel.db.base import UUID, Base, UTCDateTime, UUIDString
from permit_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_engine,
    get_session,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
    session_scope,
)

__all__ = [
    "init_engine_from_url",
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "reset_engine",
    "create_tables",
    "drop_tables",
    "Base",
    "UTCDateTime",
    "UUIDString",
    "UUID",
]
