"""Synchronization between the Local Store and the shared backend.

Provides the pure merge helpers (last-writer-wins, tombstones, natural-key
dedupe, orphan filtering) and the stateful engine that runs sync passes.
"""

from .engine import SyncEngine, SyncPhase, SyncResult, SyncState, SyncStatus
from .merge import (
    dedupe_participant_sessions,
    eligible_for_upload,
    filter_orphans,
    merge_collection,
    resolve,
)

__all__ = [
    "SyncEngine",
    "SyncPhase",
    "SyncResult",
    "SyncState",
    "SyncStatus",
    "dedupe_participant_sessions",
    "eligible_for_upload",
    "filter_orphans",
    "merge_collection",
    "resolve",
]
