"""Slot store backends."""

from typing import Optional

from config import settings

from .base import SlotStore
from .memory_store import InMemoryStore
from .supabase_client import SupabaseStore

__all__ = ["InMemoryStore", "SlotStore", "SupabaseStore", "get_store", "set_store"]

# Global store instance
_store: Optional[SlotStore] = None


def get_store() -> SlotStore:
    """Get or create the store selected by STORE_BACKEND."""
    global _store
    if _store is None:
        if settings.store_backend == "memory":
            _store = InMemoryStore()
        else:
            _store = SupabaseStore()
    return _store


def set_store(store: Optional[SlotStore]) -> None:
    """Replace the global store (tests and local fixtures)."""
    global _store
    _store = store
