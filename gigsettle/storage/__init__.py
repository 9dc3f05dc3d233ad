"""gigsettle storage backends.

This module provides the storage abstraction layer for the settlement
engine: an in-memory backend, local-first SQLite and Supabase.
"""

from pathlib import Path
from typing import Any, Optional

from .base import SettlementStorage, StatusFilter, status_values
from .memory import InMemoryStorage
from .sqlite import SQLiteStorage, get_gigsettle_home
from .supabase import SupabaseStorage


def get_storage(
    backend: str = "sqlite",
    db_path: Optional[Path] = None,
    supabase_client: Optional[Any] = None,
) -> SettlementStorage:
    """Build a storage backend by name ("memory", "sqlite" or "supabase")."""
    backend = backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(db_path=db_path)
    if backend == "supabase":
        if supabase_client is None:
            raise ValueError("Supabase backend requires a client")
        return SupabaseStorage(supabase_client)
    raise ValueError(f"Unknown storage backend: {backend}")


__all__ = [
    "SettlementStorage",
    "StatusFilter",
    "status_values",
    "InMemoryStorage",
    "SQLiteStorage",
    "SupabaseStorage",
    "get_gigsettle_home",
    "get_storage",
]
