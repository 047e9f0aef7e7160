"""
Database Module
"""
from .connection import (
    init_database,
    close_database,
    get_session_factory,
    session_scope,
    upsert_increment,
    upsert_replace,
)
from .models import Base

__all__ = [
    "init_database",
    "close_database",
    "get_session_factory",
    "session_scope",
    "upsert_increment",
    "upsert_replace",
    "Base",
]
