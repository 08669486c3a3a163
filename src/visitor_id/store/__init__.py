"""Persistence backends for identities, device profiles and audit records."""

from .base import IdentityStore
from .memory import InMemoryStore
from .sql import SqlStore, init_database

MEMORY_URL = "memory://"


def create_store(database_url: str) -> IdentityStore:
    """Return an in-memory store for ``memory://``, a SQL store otherwise."""
    if database_url == MEMORY_URL:
        return InMemoryStore()
    return SqlStore(database_url)


__all__ = ["IdentityStore", "InMemoryStore", "SqlStore", "init_database", "create_store", "MEMORY_URL"]
