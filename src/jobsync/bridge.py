"""Event bridge from store change notifications to the work queue.

Level-triggered: the bridge only forwards *which* key changed, never the
change itself. The reconciler always reads the latest state.

Notification handling:
- Added / Deleted: always enqueue.
- Updated: enqueue only if the resource version moved, which suppresses
  re-deliveries that carry no real change.
- Every resync interval, every stored key is enqueued regardless. This
  corrects notifications lost during disconnects and picks up drift in the
  automation server, which never notifies us.

A watch stream that ends without ``stop()`` (the store dropped a slow
consumer, or disconnected) is re-opened with backoff and followed by a full
relist, so no change waits for the next periodic resync.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable

from .models import EventType, ManagedResource, WatchEvent
from .store import ObjectStore, WatchStream
from .workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

WATCH_THREAD_JOIN_TIMEOUT_SECONDS = 5.0

# Backoff between attempts to re-open a watch stream that closed on its own
WATCH_RESTART_INITIAL_DELAY_SECONDS = 0.05
WATCH_RESTART_MAX_DELAY_SECONDS = 5.0


class EventBridge:
    """Feeds the work queue from store notifications and periodic resyncs."""

    def __init__(
        self,
        store: ObjectStore,
        queue: RateLimitingQueue,
        resync_interval_seconds: float,
        before_resync: Callable[[], object] | None = None,
    ) -> None:
        """Initialize the bridge.

        Args:
            store: Source of objects and change notifications.
            queue: Work queue receiving keys.
            resync_interval_seconds: Interval between full-list enqueues.
            before_resync: Optional blocking hook run before each resync
                (e.g. re-applying manifests to the store).
        """
        self._store = store
        self._queue = queue
        self._resync_interval = resync_interval_seconds
        self._before_resync = before_resync

        # Last resource version seen per key; touched only on the loop thread
        self._seen_versions: dict[str, str] = {}

        self._stream: WatchStream | None = None
        self._stream_lock = threading.Lock()
        self._stopping = threading.Event()
        self._thread: threading.Thread | None = None
        self._synced = False

    @property
    def has_synced(self) -> bool:
        """Whether the initial list has been delivered to the queue."""
        return self._synced and self._store.has_synced()

    async def start(self) -> None:
        """Open the watch, enqueue the initial list, and start forwarding."""
        loop = asyncio.get_running_loop()
        self._queue.bind(loop)
        self._stopping.clear()

        # Watch before listing so nothing written in between is missed
        stream = self._store.watch()
        self._stream = stream

        objects = await loop.run_in_executor(None, self._store.list)
        for obj in objects:
            self._seen_versions[obj.key] = obj.resource_version
            self._queue.add(obj.key)

        self._thread = threading.Thread(
            target=self._forward,
            args=(loop, stream),
            name="jobsync-watch",
            daemon=True,
        )
        self._thread.start()
        self._synced = True

        logger.info("Event bridge started", extra={"initial_objects": len(objects)})

    def stop(self) -> None:
        """Close the watch stream and wait for the forwarding thread."""
        self._stopping.set()
        with self._stream_lock:
            stream = self._stream
        if stream is not None:
            stream.stop()
        if self._thread is not None:
            self._thread.join(timeout=WATCH_THREAD_JOIN_TIMEOUT_SECONDS)
            if self._thread.is_alive():
                logger.warning("Watch thread did not stop in time")
        self._synced = False
        logger.info("Event bridge stopped")

    def handle(self, event: WatchEvent) -> None:
        """Translate one notification into (at most) one enqueue."""
        key = event.key
        version = event.object.resource_version

        match event.type:
            case EventType.ADDED:
                self._seen_versions[key] = version
                self._queue.add(key)
            case EventType.UPDATED:
                if self._seen_versions.get(key) == version:
                    logger.debug("Skipping update without version change", extra={"key": key})
                    return
                self._seen_versions[key] = version
                self._queue.add(key)
            case EventType.DELETED:
                self._seen_versions.pop(key, None)
                self._queue.add(key)

    async def resync(self) -> int:
        """Enqueue every stored key. Returns the number of keys enqueued."""
        loop = asyncio.get_running_loop()

        if self._before_resync is not None:
            try:
                await loop.run_in_executor(None, self._before_resync)
            except Exception:
                logger.exception("Pre-resync hook failed, resyncing store contents as-is")

        objects = await loop.run_in_executor(None, self._store.list)
        for obj in objects:
            self._queue.add(obj.key)

        logger.info("Periodic resync", extra={"objects": len(objects)})
        return len(objects)

    async def resync_loop(self, stop_event: asyncio.Event) -> None:
        """Resync every interval until ``stop_event`` is set."""
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._resync_interval)
                break
            except TimeoutError:
                pass
            await self.resync()

    def _forward(self, loop: asyncio.AbstractEventLoop, stream: WatchStream) -> None:
        # Runs on the watch thread; all bookkeeping happens on the loop
        delay = WATCH_RESTART_INITIAL_DELAY_SECONDS
        while True:
            delivered = False
            for event in stream:
                delivered = True
                try:
                    loop.call_soon_threadsafe(self.handle, event)
                except RuntimeError:
                    # Loop closed underneath us
                    return

            if self._stopping.is_set():
                return

            if delivered:
                delay = WATCH_RESTART_INITIAL_DELAY_SECONDS
            logger.warning(
                "Watch stream closed unexpectedly, re-opening",
                extra={"retry_in_seconds": delay},
            )
            if self._stopping.wait(delay):
                return
            delay = min(delay * 2, WATCH_RESTART_MAX_DELAY_SECONDS)

            try:
                stream = self._rewatch(loop)
            except RuntimeError:
                return
            except Exception:
                logger.exception("Failed to re-open watch stream")
                continue

    def _rewatch(self, loop: asyncio.AbstractEventLoop) -> WatchStream:
        """Open a new watch and relist; events missed in between are recovered."""
        # Watch before listing, as in start()
        stream = self._store.watch()
        with self._stream_lock:
            if self._stopping.is_set():
                stream.stop()
                return stream
            self._stream = stream

        try:
            objects = self._store.list()
        except Exception:
            stream.stop()
            raise
        loop.call_soon_threadsafe(self._relist, objects)
        logger.info("Watch stream re-opened", extra={"objects": len(objects)})
        return stream

    def _relist(self, objects: list[ManagedResource]) -> None:
        """Enqueue a fresh listing, including keys that vanished meanwhile."""
        listed = {obj.key for obj in objects}
        for key in [k for k in self._seen_versions if k not in listed]:
            self._seen_versions.pop(key, None)
            self._queue.add(key)
        for obj in objects:
            self._seen_versions[obj.key] = obj.resource_version
            self._queue.add(obj.key)
