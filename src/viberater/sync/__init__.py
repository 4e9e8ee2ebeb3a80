"""
Sync module for the viberater client.

Keeps ideas, projects and tasks usable without a network connection:
- SQLite cache and durable queue of offline mutations
- Async HTTP client for the viberater API
- Replay engine with provisional-id reconciliation
- Connectivity tracking with debounced replay on reconnect
"""

from .engine import OfflineError, SyncEngine, SyncResult
from .events import (
    ConnectivityChanged,
    EntityApplied,
    EntityReconciled,
    EventBus,
    SyncCompleted,
    SyncFailed,
    SyncStarted,
)
from .models import Create, Delete, Method, Resource, SyncOperation, Update
from .store import LocalStore, LocalStoreError, QueueFullError, QueueStats

__all__ = [
    "OfflineError",
    "SyncEngine",
    "SyncResult",
    "ConnectivityChanged",
    "EntityApplied",
    "EntityReconciled",
    "EventBus",
    "SyncCompleted",
    "SyncFailed",
    "SyncStarted",
    "Create",
    "Delete",
    "Method",
    "Resource",
    "SyncOperation",
    "Update",
    "LocalStore",
    "LocalStoreError",
    "QueueFullError",
    "QueueStats",
]
