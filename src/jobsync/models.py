"""Pydantic models for managed resources with validation.

These models provide:
1. Type-safe manifest parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Immutable snapshots: every mutation helper returns a new value
"""

from __future__ import annotations

import copy
import hashlib
import json
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Constants
# =============================================================================

API_VERSION = "jobsync.io/v1"
KIND = "ManagedJob"

ANNOTATION_PREFIX = "jobsync.io/"
SYNC_STATUS_ANNOTATION = ANNOTATION_PREFIX + "syncstatus"
SPEC_HASH_ANNOTATION = ANNOTATION_PREFIX + "spechash"
SYNC_MESSAGE_ANNOTATION = ANNOTATION_PREFIX + "syncmsg"
SYNC_TIME_ANNOTATION = ANNOTATION_PREFIX + "synctime"
AUTO_SYNC_ANNOTATION = ANNOTATION_PREFIX + "autosync"

FINALIZER_NAME = "jobsync.io/finalizer"

STATUS_SUCCESSFUL = "successful"
STATUS_FAILED = "failed"

# Lowercase RFC 1123 label; also keeps derived Jenkins item names URL-safe
VALID_NAME_PATTERN = r"^[a-z0-9]([-a-z0-9.]*[a-z0-9])?$"


def object_key(namespace: str, name: str) -> str:
    """Build the work queue key for an object identity."""
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key.

    Raises:
        ValueError: If the key is not of the form ``namespace/name``.
    """
    parts = key.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Unexpected key format: {key!r}")
    return parts[0], parts[1]


def content_hash(spec: dict[str, Any]) -> str:
    """Compute the content hash of a spec payload.

    The payload is encoded as canonical JSON (sorted keys, compact separators)
    so logically equal specs always hash the same.
    """
    encoded = json.dumps(spec, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


# =============================================================================
# Managed Resource
# =============================================================================


class ObjectMeta(BaseModel):
    """Identity and engine-owned metadata of a managed resource."""

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    namespace: Annotated[str, Field(min_length=1, max_length=63)]
    name: Annotated[str, Field(min_length=1, max_length=253)]
    annotations: dict[str, str] = Field(default_factory=dict)
    finalizers: tuple[str, ...] = ()
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    resource_version: str = Field("", alias="resourceVersion")

    @field_validator("namespace", "name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not re.match(VALID_NAME_PATTERN, v):
            raise ValueError(f"must match {VALID_NAME_PATTERN}: {v!r}")
        return v

    @field_validator("finalizers")
    @classmethod
    def dedupe_finalizers(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        # Ordered set semantics
        return tuple(dict.fromkeys(v))


class ManagedResource(BaseModel):
    """A declared object whose desired state is kept in sync externally.

    Instances are frozen. Use the ``with_*`` helpers to derive modified
    copies; nothing handed out by the store can be mutated in place.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str = KIND
    metadata: ObjectMeta
    spec: dict[str, Any] = Field(default_factory=dict)

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if v != API_VERSION:
            raise ValueError(f"apiVersion must be {API_VERSION}")
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v != KIND:
            raise ValueError(f"kind must be {KIND}")
        return v

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def key(self) -> str:
        """Work queue key (``namespace/name``)."""
        return object_key(self.metadata.namespace, self.metadata.name)

    @property
    def annotations(self) -> dict[str, str]:
        """A copy of the annotations."""
        return dict(self.metadata.annotations)

    @property
    def resource_version(self) -> str:
        return self.metadata.resource_version

    @property
    def is_deleting(self) -> bool:
        """True once deletion was requested but not yet finalized."""
        return self.metadata.deletion_timestamp is not None

    @property
    def sync_status(self) -> str | None:
        return self.metadata.annotations.get(SYNC_STATUS_ANNOTATION)

    @property
    def synced_hash(self) -> str | None:
        return self.metadata.annotations.get(SPEC_HASH_ANNOTATION)

    @property
    def synced_at(self) -> datetime | None:
        """Time of the last successful sync, if recorded and parseable."""
        value = self.metadata.annotations.get(SYNC_TIME_ANNOTATION)
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None

    @property
    def auto_sync(self) -> bool:
        """Whether an existing external entity may be overwritten."""
        return AUTO_SYNC_ANNOTATION in self.metadata.annotations

    def spec_hash(self) -> str:
        return content_hash(self.spec)

    def has_finalizer(self, token: str = FINALIZER_NAME) -> bool:
        return token in self.metadata.finalizers

    def snapshot(self) -> ManagedResource:
        """Deep copy, detached from any shared state."""
        return self.model_copy(deep=True)

    def _with_meta(self, **updates: Any) -> ManagedResource:
        meta = self.metadata.model_copy(update=updates)
        return self.model_copy(update={"metadata": meta})

    def with_annotations(
        self,
        updates: dict[str, str] | None = None,
        remove: tuple[str, ...] = (),
    ) -> ManagedResource:
        """Return a copy with annotations set and/or removed."""
        annotations = dict(self.metadata.annotations)
        annotations.update(updates or {})
        for key in remove:
            annotations.pop(key, None)
        return self._with_meta(annotations=annotations)

    def with_finalizer(self, token: str = FINALIZER_NAME) -> ManagedResource:
        if self.has_finalizer(token):
            return self
        return self._with_meta(finalizers=(*self.metadata.finalizers, token))

    def without_finalizer(self, token: str = FINALIZER_NAME) -> ManagedResource:
        finalizers = tuple(f for f in self.metadata.finalizers if f != token)
        return self._with_meta(finalizers=finalizers)

    def with_spec(self, spec: dict[str, Any]) -> ManagedResource:
        return self.model_copy(update={"spec": copy.deepcopy(spec)})

    def with_resource_version(self, resource_version: str) -> ManagedResource:
        return self._with_meta(resource_version=resource_version)

    def marked_for_deletion(self, when: datetime | None = None) -> ManagedResource:
        if self.is_deleting:
            return self
        return self._with_meta(deletion_timestamp=when or datetime.now(UTC))

    def same_content(self, other: ManagedResource) -> bool:
        """Compare everything except the store-assigned resource version."""
        return (
            self.spec == other.spec
            and self.metadata.annotations == other.metadata.annotations
            and self.metadata.finalizers == other.metadata.finalizers
            and self.metadata.deletion_timestamp == other.metadata.deletion_timestamp
        )


def new_resource(
    namespace: str,
    name: str,
    spec: dict[str, Any] | None = None,
    annotations: dict[str, str] | None = None,
) -> ManagedResource:
    """Convenience constructor for a fresh, never-stored object."""
    return ManagedResource(
        metadata=ObjectMeta(
            namespace=namespace,
            name=name,
            annotations=dict(annotations or {}),
        ),
        spec=copy.deepcopy(spec or {}),
    )


# =============================================================================
# Change notifications
# =============================================================================


class EventType(str, Enum):
    """Kinds of change notification delivered by the store."""

    ADDED = "Added"
    UPDATED = "Updated"
    DELETED = "Deleted"


@dataclass(frozen=True)
class WatchEvent:
    """A single change notification for one object."""

    type: EventType
    object: ManagedResource

    @property
    def key(self) -> str:
        return self.object.key
