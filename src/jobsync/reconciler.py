"""Convergence algorithm for a single managed resource.

One pass, for one key:
1. Read the object from the store. Gone means done.
2. Not being deleted:
   a. Skip if the last sync succeeded and the recorded content hash still
      matches the spec.
   b. Make sure our finalizer is on the object *before* touching the
      automation server, so a crash can never orphan an external entity.
   c. Create the external entity if absent; update it if present and the
      object opted into auto-sync.
   d. Record success (status, content hash, sync time) in one conditional
      update.
3. Being deleted (two-phase delete):
   a. No finalizer of ours, nothing to clean up.
   b. Delete the external entity. "Not found" counts as deleted; any other
      failure keeps the finalizer and the key is retried with backoff.
   c. Drop the finalizer; the store then removes the object.

Optimistic-concurrency conflicts restart the pass from a fresh read. All
store and external calls run in the default executor under a deadline.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any, TypeVar

from .config import MAX_CONFLICT_RETRIES, Config
from .events import (
    REASON_CREATED,
    REASON_DELETE_FAILED,
    REASON_DELETED,
    REASON_SYNC_FAILED,
    REASON_UPDATED,
    EventRecorder,
)
from .external import (
    ExternalError,
    ExternalNotFoundError,
    ExternalSystemClient,
    ExternalTransientError,
    external_name_for,
)
from .models import (
    FINALIZER_NAME,
    STATUS_FAILED,
    STATUS_SUCCESSFUL,
    SPEC_HASH_ANNOTATION,
    SYNC_MESSAGE_ANNOTATION,
    SYNC_STATUS_ANNOTATION,
    SYNC_TIME_ANNOTATION,
    ManagedResource,
    split_key,
)
from .store import ConflictError, NotFoundError, ObjectStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_SYNC_MESSAGE_LENGTH = 1024


class ReconcileAction(str, Enum):
    """What a reconcile pass ended up doing."""

    NONE = "none"
    INVALID_KEY = "invalid_key"
    ABSENT = "absent"
    SKIPPED = "skipped"
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    NOTHING_TO_FINALIZE = "nothing_to_finalize"


@dataclass
class ReconcileResult:
    """Result of a single reconcile pass."""

    key: str
    action: ReconcileAction = ReconcileAction.NONE
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    conflict_retries: int = 0
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass succeeded."""
        return self.error is None

    @property
    def conflicted(self) -> bool:
        """True if the pass gave up on repeated write conflicts."""
        return isinstance(self.error, ConflictError)


class Reconciler:
    """Converges one managed resource at a time toward its declared state.

    The reconciler holds no per-object state; everything it needs between
    passes is persisted in the object's annotations and finalizers.
    """

    def __init__(
        self,
        store: ObjectStore,
        external: ExternalSystemClient,
        recorder: EventRecorder,
        config: Config,
        max_conflict_retries: int = MAX_CONFLICT_RETRIES,
    ) -> None:
        """Initialize reconciler.

        Args:
            store: Object store client.
            external: Automation server client.
            recorder: Event recorder for operator-facing events.
            config: Validated operator configuration.
            max_conflict_retries: Immediate re-read-and-retry attempts on
                write conflicts before giving the key back to the queue.
        """
        self._store = store
        self._external = external
        self._recorder = recorder
        self._config = config
        self._max_conflict_retries = max_conflict_retries

    @property
    def config(self) -> Config:
        return self._config

    async def reconcile(self, key: str) -> ReconcileResult:
        """Run one pass for ``key``.

        Known failures are returned in ``result.error``; anything unexpected
        propagates to the caller.
        """
        result = ReconcileResult(key=key)

        try:
            namespace, name = split_key(key)
        except ValueError as e:
            logger.error("Dropping malformed key", extra={"key": key, "error": str(e)})
            result.action = ReconcileAction.INVALID_KEY
            result.end_time = datetime.now(UTC)
            return result

        while True:
            try:
                await self._reconcile_once(namespace, name, result)
                break
            except ConflictError as e:
                if result.conflict_retries >= self._max_conflict_retries:
                    logger.warning(
                        "Conflict retries exhausted",
                        extra={"key": key, "attempts": result.conflict_retries + 1},
                    )
                    result.error = e
                    break
                result.conflict_retries += 1
                logger.info(
                    "Object changed concurrently, retrying with latest version",
                    extra={"key": key, "attempt": result.conflict_retries},
                )
            except NotFoundError:
                # Removed between our read and our write
                logger.info("Object disappeared during reconcile", extra={"key": key})
                result.action = ReconcileAction.ABSENT
                break
            except ExternalError as e:
                result.error = e
                break
            except TimeoutError as e:
                logger.error("Store call timed out", extra={"key": key})
                result.error = e
                break

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def _reconcile_once(self, namespace: str, name: str, result: ReconcileResult) -> None:
        obj = await self._call(self._store.get, namespace, name, operation="store get")
        if obj is None:
            logger.info(
                "Object in work queue no longer exists",
                extra={"key": result.key},
            )
            result.action = ReconcileAction.ABSENT
            return

        if obj.is_deleting:
            await self._finalize(obj, result)
        else:
            await self._sync(obj, result)

    # -------------------------------------------------------------------------
    # Create / update path
    # -------------------------------------------------------------------------

    async def _sync(self, obj: ManagedResource, result: ReconcileResult) -> None:
        desired_hash = obj.spec_hash()

        if self._is_up_to_date(obj, desired_hash):
            result.action = ReconcileAction.SKIPPED
            return

        if not obj.has_finalizer(FINALIZER_NAME):
            obj = await self._update(obj.with_finalizer(FINALIZER_NAME))
            logger.info("Added finalizer", extra={"key": obj.key})

        external_name = external_name_for(obj)
        spec = copy.deepcopy(obj.spec)

        try:
            entity = await self._call_external(self._external.get, external_name)
            if entity is None:
                await self._call_external(self._external.create, external_name, spec)
                result.action = ReconcileAction.CREATED
                self._recorder.normal(obj, REASON_CREATED, f"Created {external_name}")
            elif obj.auto_sync:
                await self._call_external(self._external.update, external_name, spec)
                result.action = ReconcileAction.UPDATED
                self._recorder.normal(obj, REASON_UPDATED, f"Updated {external_name}")
            else:
                # Externally managed configuration is left alone
                result.action = ReconcileAction.UNCHANGED
        except ExternalError as e:
            await self._record_failure(obj, e, REASON_SYNC_FAILED)
            raise

        synced = obj.with_annotations(
            {
                SYNC_STATUS_ANNOTATION: STATUS_SUCCESSFUL,
                SPEC_HASH_ANNOTATION: desired_hash,
                SYNC_TIME_ANNOTATION: datetime.now(UTC).isoformat(),
            },
            remove=(SYNC_MESSAGE_ANNOTATION,),
        )
        await self._update(synced)

    def _is_up_to_date(self, obj: ManagedResource, desired_hash: str) -> bool:
        """Whether the last successful sync still covers the current spec."""
        if obj.sync_status != STATUS_SUCCESSFUL or obj.synced_hash != desired_hash:
            return False

        verify_interval = self._config.drift_verify_interval_seconds
        if verify_interval > 0:
            synced_at = obj.synced_at
            if synced_at is None:
                return False
            if synced_at.tzinfo is None:
                synced_at = synced_at.replace(tzinfo=UTC)
            if datetime.now(UTC) - synced_at >= timedelta(seconds=verify_interval):
                logger.info("Re-verifying external entity", extra={"key": obj.key})
                return False

        return True

    # -------------------------------------------------------------------------
    # Delete path
    # -------------------------------------------------------------------------

    async def _finalize(self, obj: ManagedResource, result: ReconcileResult) -> None:
        if not obj.has_finalizer(FINALIZER_NAME):
            result.action = ReconcileAction.NOTHING_TO_FINALIZE
            return

        external_name = external_name_for(obj)
        try:
            await self._call_external(self._external.delete, external_name)
            self._recorder.normal(obj, REASON_DELETED, f"Deleted {external_name}")
        except ExternalNotFoundError:
            logger.info(
                "External entity already absent",
                extra={"key": obj.key, "external_name": external_name},
            )
        except ExternalError as e:
            # The finalizer stays until the entity is confirmed gone. If the
            # automation server is gone for good, strip it manually.
            await self._record_failure(obj, e, REASON_DELETE_FAILED)
            raise

        await self._update(obj.without_finalizer(FINALIZER_NAME))
        result.action = ReconcileAction.DELETED
        logger.info("Removed finalizer", extra={"key": obj.key})

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _record_failure(
        self, obj: ManagedResource, error: ExternalError, reason: str
    ) -> None:
        """Surface a failure on the object's annotations and as an event.

        The annotations are only written when they change, so a key failing
        the same way on every retry does not trigger itself again.
        """
        message = self._failure_message(error)
        self._recorder.warning(obj, reason, message)

        failed = obj.with_annotations(
            {SYNC_STATUS_ANNOTATION: STATUS_FAILED, SYNC_MESSAGE_ANNOTATION: message}
        )
        if failed.same_content(obj):
            return

        try:
            await self._update(failed)
        except (ConflictError, NotFoundError) as e:
            # The original failure still drives the retry
            logger.warning(
                "Could not record failure on object",
                extra={"key": obj.key, "error": str(e)},
            )

    @staticmethod
    def _failure_message(error: ExternalError) -> str:
        if error.permanent:
            message = f"Permanent failure, operator intervention required: {error}"
        else:
            message = f"Transient failure, will retry: {error}"
        return message[:MAX_SYNC_MESSAGE_LENGTH]

    async def _update(self, obj: ManagedResource) -> ManagedResource:
        return await self._call(self._store.update, obj, operation="store update")

    async def _call_external(self, fn: Callable[..., T], *args: Any) -> T:
        """Call the automation server; a missed deadline counts as transient."""
        operation = f"external {getattr(fn, '__name__', 'call')}"
        try:
            return await self._call(fn, *args, operation=operation)
        except TimeoutError as e:
            raise ExternalTransientError(
                f"{operation} exceeded {self._config.external_timeout_seconds}s"
            ) from e

    async def _call(self, fn: Callable[..., T], *args: Any, operation: str) -> T:
        """Run a blocking call in the default executor under a deadline.

        Raises:
            TimeoutError: If the call exceeds the configured timeout.
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.external_timeout_seconds
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(fn, *args)),
                timeout=timeout,
            )
        except TimeoutError:
            logger.error(
                f"{operation} timed out",
                extra={"timeout_seconds": timeout},
            )
            raise

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconcile result with structured data."""
        extra: dict[str, Any] = {
            "key": result.key,
            "action": result.action.value,
            "duration_seconds": result.duration_seconds,
            "conflict_retries": result.conflict_retries,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.warning("Reconcile failed", extra=extra)
        elif result.action == ReconcileAction.SKIPPED:
            logger.debug("Reconcile skipped, already in sync", extra=extra)
        else:
            logger.info("Reconcile result", extra=extra)
