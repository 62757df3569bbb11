"""Object store contract and an in-memory versioned implementation.

The reconciliation core only depends on the ``ObjectStore`` protocol:
get / list / watch / conditional update. ``InMemoryObjectStore`` implements
it with the semantics the engine relies on:

- Every write advances an opaque, monotonically increasing resource version.
- ``update`` is conditional: a stale resource version raises ConflictError.
- Deletion is two-phase: ``delete`` on an object carrying finalizers only
  sets the deletion marker; the object is physically removed by the first
  write that leaves it marked and without finalizers.
- Reads return deep-copied snapshots, never the stored instance.

``FileObjectStore`` adds durability: every write is persisted to a JSON state
file before it becomes visible, so finalizers, deletion markers and sync
annotations survive a restart.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from .models import EventType, ManagedResource, WatchEvent

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "objects.json"

# Upper bound on undelivered events per watcher before the watcher is dropped
MAX_WATCH_BACKLOG = 10000


class StoreError(Exception):
    """Base class for object store errors."""

    pass


class NotFoundError(StoreError):
    """Raised when an object does not exist."""

    pass


class ConflictError(StoreError):
    """Raised when an update carries a stale resource version."""

    pass


class AlreadyExistsError(StoreError):
    """Raised when creating an object whose identity is taken."""

    pass


class PersistenceError(StoreError):
    """Raised when the state file cannot be read or written."""

    pass


_STOP = object()


class WatchStream:
    """Blocking, ordered stream of change notifications.

    Iterate it from a dedicated thread; ``stop()`` ends the iteration.
    Delivery is at-least-once from the consumer's point of view: a consumer
    that reconnects must relist.
    """

    def __init__(self, on_close: Callable[[WatchStream], None] | None = None) -> None:
        self._queue: queue.Queue[object] = queue.Queue(maxsize=MAX_WATCH_BACKLOG)
        self._stopped = threading.Event()
        self._on_close = on_close

    @property
    def stopped(self) -> bool:
        return self._stopped.is_set()

    def push(self, event: WatchEvent) -> bool:
        """Deliver an event. Returns False if the stream is stopped or full."""
        if self._stopped.is_set():
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning("Watch backlog full, closing stream")
            self.stop()
            return False
        return True

    def next_event(self, timeout: float | None = None) -> WatchEvent | None:
        """Block for the next event. None on timeout or once stopped."""
        if self._stopped.is_set() and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _STOP:
            return None
        assert isinstance(item, WatchEvent)
        return item

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        # Wake a blocked reader; the sentinel may be dropped if the queue is full
        try:
            self._queue.put_nowait(_STOP)
        except queue.Full:
            pass
        if self._on_close is not None:
            self._on_close(self)

    def __iter__(self) -> Iterator[WatchEvent]:
        while True:
            event = self.next_event()
            if event is None:
                return
            yield event


class ObjectStore(Protocol):
    """Typed access to managed resources and their change notifications."""

    def get(self, namespace: str, name: str) -> ManagedResource | None:
        """Return a snapshot of the object, or None if it does not exist."""
        ...

    def list(self, namespace: str | None = None) -> list[ManagedResource]:
        """Return snapshots of all objects, optionally within one namespace."""
        ...

    def watch(self) -> WatchStream:
        """Open a stream of Added/Updated/Deleted notifications."""
        ...

    def update(self, obj: ManagedResource) -> ManagedResource:
        """Conditionally replace an object.

        Raises:
            NotFoundError: If the object no longer exists.
            ConflictError: If ``obj.resource_version`` is stale.
        """
        ...

    def has_synced(self) -> bool:
        """Whether the read-model cache reflects the store."""
        ...


class InMemoryObjectStore:
    """Thread-safe, versioned in-memory object store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: dict[str, ManagedResource] = {}
        self._last_version = 0
        self._watchers: list[WatchStream] = []

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, namespace: str, name: str) -> ManagedResource | None:
        with self._lock:
            obj = self._objects.get(f"{namespace}/{name}")
            return obj.snapshot() if obj is not None else None

    def list(self, namespace: str | None = None) -> list[ManagedResource]:
        with self._lock:
            return [
                obj.snapshot()
                for obj in self._objects.values()
                if namespace is None or obj.namespace == namespace
            ]

    def has_synced(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._objects)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._objects

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def create(self, obj: ManagedResource) -> ManagedResource:
        """Store a new object.

        Raises:
            AlreadyExistsError: If an object with the same identity exists.
        """
        with self._lock:
            if obj.key in self._objects:
                raise AlreadyExistsError(f"{obj.key} already exists")
            # Detach from the caller's dicts before caching
            stored = obj.snapshot().with_resource_version(self._next_version())
            self._commit(obj.key, stored)
            self._notify(EventType.ADDED, stored)
            return stored.snapshot()

    def update(self, obj: ManagedResource) -> ManagedResource:
        with self._lock:
            current = self._objects.get(obj.key)
            if current is None:
                raise NotFoundError(f"{obj.key} not found")
            if obj.resource_version != current.resource_version:
                raise ConflictError(
                    f"{obj.key}: resource version {obj.resource_version!r} is stale "
                    f"(current {current.resource_version!r})"
                )

            # The deletion marker cannot be cleared once set
            if current.is_deleting and not obj.is_deleting:
                obj = obj.marked_for_deletion(current.metadata.deletion_timestamp)

            if obj.same_content(current):
                return current.snapshot()

            stored = obj.snapshot().with_resource_version(self._next_version())

            if stored.is_deleting and not stored.metadata.finalizers:
                self._commit(obj.key, None)
                logger.debug("Object finalized and removed", extra={"key": obj.key})
                self._notify(EventType.DELETED, stored)
                return stored.snapshot()

            self._commit(obj.key, stored)
            self._notify(EventType.UPDATED, stored)
            return stored.snapshot()

    def delete(self, namespace: str, name: str) -> None:
        """Request deletion of an object.

        Objects without finalizers are removed immediately; otherwise only the
        deletion marker is set and removal waits for the finalizers.

        Raises:
            NotFoundError: If the object does not exist.
        """
        key = f"{namespace}/{name}"
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"{key} not found")
            if not current.metadata.finalizers:
                self._commit(key, None)
                self._notify(EventType.DELETED, current)
                return
            if current.is_deleting:
                return
            stored = current.marked_for_deletion(datetime.now(UTC)).with_resource_version(
                self._next_version()
            )
            self._commit(key, stored)
            self._notify(EventType.UPDATED, stored)

    def _commit(self, key: str, obj: ManagedResource | None) -> None:
        """Replace (or remove, for None) the object stored under ``key``.

        Called with the lock held. The new contents are persisted before they
        become visible; a failed persist leaves the store unchanged.
        """
        objects = dict(self._objects)
        if obj is None:
            objects.pop(key, None)
        else:
            objects[key] = obj
        self._persist(objects)
        self._objects = objects

    def _persist(self, objects: dict[str, ManagedResource]) -> None:
        # Nothing outlives the process
        pass

    # -------------------------------------------------------------------------
    # Watch
    # -------------------------------------------------------------------------

    def watch(self) -> WatchStream:
        stream = WatchStream(on_close=self._remove_watcher)
        with self._lock:
            self._watchers.append(stream)
        return stream

    def _remove_watcher(self, stream: WatchStream) -> None:
        with self._lock:
            if stream in self._watchers:
                self._watchers.remove(stream)

    def _notify(self, event_type: EventType, obj: ManagedResource) -> None:
        # Called with the lock held so delivery order matches write order
        for stream in list(self._watchers):
            stream.push(WatchEvent(type=event_type, object=obj.snapshot()))

    def _next_version(self) -> str:
        self._last_version += 1
        return str(self._last_version)


class FileObjectStore(InMemoryObjectStore):
    """Versioned object store persisted to a single JSON state file.

    The file is rewritten atomically (write to a temporary file, fsync,
    rename) on every change, under the store lock.
    """

    STATE_FORMAT_VERSION = 1

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = path
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        if not self._path.exists():
            logger.info("No state file, starting empty", extra={"state_file": str(self._path)})
            return

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise PersistenceError(f"Failed to read state file {self._path}: {e}") from e

        if not isinstance(data, dict) or data.get("version") != self.STATE_FORMAT_VERSION:
            raise PersistenceError(f"Unsupported state file format: {self._path}")

        objects: dict[str, ManagedResource] = {}
        try:
            for raw in data.get("objects", []):
                obj = ManagedResource.model_validate(raw)
                objects[obj.key] = obj
            last_version = int(data.get("resourceVersion", 0))
        except (ValidationError, TypeError, ValueError) as e:
            raise PersistenceError(f"Invalid state file {self._path}: {e}") from e

        with self._lock:
            self._objects = objects
            self._last_version = max(
                [last_version, *(int(o.resource_version or 0) for o in objects.values())]
            )

        logger.info(
            "Loaded object store state",
            extra={"state_file": str(self._path), "objects": len(objects)},
        )

    def _persist(self, objects: dict[str, ManagedResource]) -> None:
        state: dict[str, Any] = {
            "version": self.STATE_FORMAT_VERSION,
            "resourceVersion": str(self._last_version),
            "objects": [
                obj.model_dump(mode="json", by_alias=True)
                for _, obj in sorted(objects.items())
            ],
        }
        tmp_path = self._path.with_name(f".{self._path.name}.tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as f:
                json.dump(state, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self._path)
        except OSError as e:
            raise PersistenceError(f"Failed to write state file {self._path}: {e}") from e
