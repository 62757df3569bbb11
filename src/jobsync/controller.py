"""Worker pool and controller lifecycle.

The controller wires the event bridge, the work queue and the reconciler
together and runs a fixed number of asyncio workers. Each worker takes one
key at a time; the queue guarantees no key is handed to two workers at once.

Failure isolation: any exception raised while processing a key is caught at
the item boundary, logged, and turned into a rate-limited retry. A single
bad object can never take a worker down.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .bridge import EventBridge
from .config import Config
from .events import EventRecorder
from .external import ExternalSystemClient
from .reconciler import Reconciler
from .store import ObjectStore
from .workqueue import RateLimitingQueue, default_controller_rate_limiter

logger = logging.getLogger(__name__)

CACHE_SYNC_POLL_INTERVAL_SECONDS = 0.1


class CacheSyncError(Exception):
    """Raised when the stop signal fires before the initial list completed."""

    pass


class Controller:
    """Runs reconcile workers until told to stop."""

    def __init__(
        self,
        store: ObjectStore,
        external: ExternalSystemClient,
        config: Config,
        recorder: EventRecorder | None = None,
        queue: RateLimitingQueue | None = None,
        before_resync: Callable[[], object] | None = None,
    ) -> None:
        """Initialize controller.

        Args:
            store: Object store holding the managed resources.
            external: Automation server client.
            config: Validated operator configuration.
            recorder: Event recorder; a private one is created if omitted.
            queue: Work queue; built from the configured backoff if omitted.
            before_resync: Blocking hook run before each periodic resync.
        """
        self._config = config
        self._recorder = recorder or EventRecorder()
        if queue is None:
            queue = RateLimitingQueue(
                default_controller_rate_limiter(
                    config.rate_limit_base_delay_seconds,
                    config.rate_limit_max_delay_seconds,
                )
            )
        self._queue = queue
        self._bridge = EventBridge(
            store,
            self._queue,
            config.resync_interval_seconds,
            before_resync=before_resync,
        )
        self._reconciler = Reconciler(store, external, self._recorder, config)
        self._running = False

    @property
    def queue(self) -> RateLimitingQueue:
        return self._queue

    @property
    def bridge(self) -> EventBridge:
        return self._bridge

    @property
    def recorder(self) -> EventRecorder:
        return self._recorder

    @property
    def ready(self) -> bool:
        """Running with caches synced."""
        return self._running and self._bridge.has_synced

    async def run(
        self,
        worker_count: int | None = None,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run until ``stop_event`` is set.

        Shutdown stops handing out keys, waits up to the configured shutdown
        timeout for in-flight keys, then cancels the workers.

        Raises:
            CacheSyncError: If stopped before the initial list completed.
            ValueError: If ``worker_count`` is not positive.
        """
        workers = worker_count if worker_count is not None else self._config.worker_count
        if workers < 1:
            raise ValueError("worker_count must be at least 1")
        if stop_event is None:
            stop_event = asyncio.Event()

        logger.info("Starting controller", extra={"workers": workers})
        await self._bridge.start()

        tasks: list[asyncio.Task[None]] = []
        try:
            await self._wait_for_cache_sync(stop_event)

            tasks = [
                asyncio.create_task(self._worker(i), name=f"jobsync-worker-{i}")
                for i in range(workers)
            ]
            tasks.append(
                asyncio.create_task(
                    self._bridge.resync_loop(stop_event), name="jobsync-resync"
                )
            )
            self._running = True
            logger.info("Controller ready")

            await stop_event.wait()
        finally:
            self._running = False
            logger.info("Shutting down controller")

            drained = await self._queue.shut_down_with_drain(
                self._config.shutdown_timeout_seconds
            )
            if not drained:
                logger.warning("In-flight items did not finish before shutdown timeout")

            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._bridge.stop)
            logger.info("Controller stopped")

    async def process_next_work_item(self) -> bool:
        """Take one key from the queue and reconcile it.

        Returns:
            False once the queue is shut down, True otherwise.
        """
        key, shutdown = await self._queue.get()
        if shutdown or key is None:
            return False

        try:
            result = await self._reconciler.reconcile(key)
            if result.success:
                self._queue.forget(key)
            elif result.conflicted:
                # Someone else wrote in between; retry right away on fresh state
                self._queue.add(key)
            else:
                self._queue.add_rate_limited(key)
        except Exception:
            logger.exception(
                "Unexpected error reconciling object",
                extra={"key": key, "requeues": self._queue.num_requeues(key)},
            )
            self._queue.add_rate_limited(key)
        finally:
            self._queue.done(key)

        return True

    async def _worker(self, worker_id: int) -> None:
        logger.debug("Worker started", extra={"worker": worker_id})
        while await self.process_next_work_item():
            pass
        logger.debug("Worker exiting", extra={"worker": worker_id})

    async def _wait_for_cache_sync(self, stop_event: asyncio.Event) -> None:
        while not self._bridge.has_synced:
            if stop_event.is_set():
                raise CacheSyncError("Stopped before caches synced")
            await asyncio.sleep(CACHE_SYNC_POLL_INTERVAL_SECONDS)
        logger.info("Caches synced")
