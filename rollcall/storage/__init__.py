"""Local persistence for Rollcall.

Provides a namespaced key -> JSON store on SQLite holding the entity
collections, the tombstone map and sync metadata.
"""

from .local_store import LocalStore

__all__ = ["LocalStore"]
