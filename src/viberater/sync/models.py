"""Entity and queued-operation types shared by the sync subsystem."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

PROVISIONAL_PREFIX = "temp-"

Record = dict[str, Any]


class Resource(str, Enum):
    """Entity kinds cached locally and synced with the server."""

    IDEA = "idea"
    PROJECT = "project"
    TASK = "task"

    @property
    def collection(self) -> str:
        """Name of the local cache table holding this resource."""
        return f"{self.value}s"

    @property
    def envelope_key(self) -> str:
        """Key under which the server wraps a single record of this resource."""
        return self.value


class Method(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


COLLECTIONS: tuple[str, ...] = tuple(r.collection for r in Resource)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    return int(time.time() * 1000)


def new_provisional_id() -> str:
    """Generate a client-side placeholder id: ``temp-<epoch-ms>-<random>``."""
    return f"{PROVISIONAL_PREFIX}{now_ms()}-{uuid.uuid4().hex[:12]}"


def is_provisional(entity_id: str | None) -> bool:
    return bool(entity_id) and str(entity_id).startswith(PROVISIONAL_PREFIX)


# ── Tagged operation variants ────────────────────────────────────


@dataclass(frozen=True)
class Create:
    resource: Resource
    entity_id: str
    payload: Record

    method = Method.CREATE


@dataclass(frozen=True)
class Update:
    resource: Resource
    entity_id: str
    payload: Record

    method = Method.UPDATE


@dataclass(frozen=True)
class Delete:
    resource: Resource
    entity_id: str

    method = Method.DELETE

    @property
    def payload(self) -> Record:
        return {}


Operation = Union[Create, Update, Delete]


@dataclass(frozen=True)
class SyncOperation:
    """A persisted queue row.

    ``id`` is assigned by the Local Store on enqueue. ``retry_count``,
    ``last_error`` and ``dead`` are store bookkeeping; the operation itself
    (resource, method, entity id, data) never changes once queued.
    """

    resource: Resource
    method: Method
    entity_id: str
    data: Record = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)
    synced: bool = False
    id: int | None = None
    retry_count: int = 0
    last_error: str | None = None
    dead: bool = False

    def to_variant(self) -> Operation:
        if self.method is Method.CREATE:
            return Create(self.resource, self.entity_id, dict(self.data))
        if self.method is Method.UPDATE:
            return Update(self.resource, self.entity_id, dict(self.data))
        return Delete(self.resource, self.entity_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "resource": self.resource.value,
            "method": self.method.value,
            "entity_id": self.entity_id,
            "data": dict(self.data),
            "timestamp": self.timestamp,
            "synced": self.synced,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "dead": self.dead,
        }


def operation_from_variant(variant: Operation) -> SyncOperation:
    """Build an unsaved queue row from a tagged variant."""
    return SyncOperation(
        resource=variant.resource,
        method=variant.method,
        entity_id=variant.entity_id,
        data=dict(variant.payload),
    )
