"""Manifest loading and application to the object store.

Managed resources are declared as YAML manifests in a directory (typically
a mounted ConfigMap or a git-sync checkout):

    apiVersion: jobsync.io/v1
    kind: ManagedJob
    metadata:
      namespace: ns1
      name: demo
      annotations:
        jobsync.io/autosync: "true"
    spec:
      script: |
        pipeline { agent any; stages { stage('x') { steps { echo 'hi' } } } }

A file may hold several documents separated by ``---``.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .config import MAX_CONFLICT_RETRIES, MAX_MANIFEST_FILE_SIZE_BYTES, MAX_MANIFESTS
from .models import (
    ANNOTATION_PREFIX,
    API_VERSION,
    AUTO_SYNC_ANNOTATION,
    KIND,
    SPEC_HASH_ANNOTATION,
    SYNC_MESSAGE_ANNOTATION,
    SYNC_STATUS_ANNOTATION,
    SYNC_TIME_ANNOTATION,
    ManagedResource,
    ObjectMeta,
    new_resource,
    object_key,
)
from .store import AlreadyExistsError, ConflictError, InMemoryObjectStore, NotFoundError

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

# Marks objects applied from manifests; only those are deleted on removal
SOURCE_ANNOTATION = ANNOTATION_PREFIX + "source"
MANIFEST_SOURCE = "manifests"

# Written by the engine; a manifest may not set them
ENGINE_ANNOTATIONS: frozenset[str] = frozenset(
    {
        SYNC_STATUS_ANNOTATION,
        SPEC_HASH_ANNOTATION,
        SYNC_MESSAGE_ANNOTATION,
        SYNC_TIME_ANNOTATION,
        SOURCE_ANNOTATION,
    }
)


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


# =============================================================================
# Manifest model
# =============================================================================


class ManifestMetadata(BaseModel):
    """The user-controlled part of an object's metadata."""

    model_config = {"extra": "ignore"}

    namespace: str
    name: str
    annotations: dict[str, str] = Field(default_factory=dict)

    @field_validator("annotations")
    @classmethod
    def reject_engine_annotations(cls, v: dict[str, str]) -> dict[str, str]:
        reserved = sorted(set(v) & ENGINE_ANNOTATIONS)
        if reserved:
            raise ValueError(f"annotations are managed by the operator: {', '.join(reserved)}")
        return v


class Manifest(BaseModel):
    """A declared managed resource as written in a manifest file."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    api_version: str = Field(alias="apiVersion")
    kind: str
    metadata: ManifestMetadata
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
    def key(self) -> str:
        return object_key(self.metadata.namespace, self.metadata.name)

    def to_resource(self) -> ManagedResource:
        """Build a fresh managed resource from this manifest.

        Raises:
            ValidationError: If the identity is not a valid object name.
        """
        return new_resource(
            self.metadata.namespace,
            self.metadata.name,
            spec=self.spec,
            annotations=self.metadata.annotations,
        )


# =============================================================================
# Loading
# =============================================================================


def _format_validation_error(e: ValidationError) -> str:
    # Format Pydantic validation errors for readability
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return "\n".join(errors)


def load_manifest(path: Path) -> list[Manifest]:
    """Load and validate every document in a manifest file.

    Args:
        path: Path to a YAML manifest file.

    Returns:
        Validated manifests, in document order. Empty documents are skipped.

    Raises:
        ManifestLoadError: If the file cannot be read or fails validation.
    """
    if not path.is_file():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    manifests: list[Manifest] = []
    for index, doc in enumerate(documents):
        if not isinstance(doc, dict):
            raise ManifestLoadError(f"Document {index} in {path} must be a YAML mapping")
        try:
            manifest = Manifest.model_validate(doc)
            # Identity rules live on the object model
            ObjectMeta(namespace=manifest.metadata.namespace, name=manifest.metadata.name)
        except ValidationError as e:
            raise ManifestLoadError(
                f"Validation failed for document {index} in {path}:\n"
                f"{_format_validation_error(e)}"
            ) from e
        manifests.append(manifest)

    return manifests


def find_manifest_files(directory: Path) -> list[Path]:
    """Manifest files directly inside ``directory``, sorted by name."""
    return sorted(
        p
        for p in directory.iterdir()
        if p.suffix in MANIFEST_SUFFIXES and not p.name.startswith(".") and p.is_file()
    )


def load_manifests(directory: Path) -> list[Manifest]:
    """Load every manifest in a directory.

    All files are checked before failing, so a single run reports every
    problem.

    Raises:
        ManifestLoadError: If the directory is unusable, any file is invalid,
            an identity is declared twice, or there are too many manifests.
    """
    if not directory.is_dir():
        raise ManifestLoadError(f"Manifests directory not found: {directory}")

    manifests: list[Manifest] = []
    sources: dict[str, Path] = {}
    errors: list[str] = []

    for path in find_manifest_files(directory):
        try:
            loaded = load_manifest(path)
        except ManifestLoadError as e:
            errors.append(str(e))
            continue
        for manifest in loaded:
            previous = sources.get(manifest.key)
            if previous is not None:
                errors.append(f"{manifest.key} declared in both {previous} and {path}")
                continue
            sources[manifest.key] = path
            manifests.append(manifest)

    if len(manifests) > MAX_MANIFESTS:
        errors.append(f"Too many manifests: {len(manifests)} (maximum {MAX_MANIFESTS})")

    if errors:
        raise ManifestLoadError("Manifest validation failed:\n" + "\n".join(errors))

    logger.info(
        "Loaded manifests",
        extra={"manifests_dir": str(directory), "count": len(manifests)},
    )
    return manifests


# =============================================================================
# Applying manifests to the store
# =============================================================================


@dataclass
class SyncSummary:
    """What a manifest sync changed in the store."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: int = 0
    skipped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.deleted)


class ManifestSource:
    """Applies a directory of manifests to the object store.

    Objects applied from manifests carry the ``jobsync.io/source`` annotation.
    Ownership therefore lives in the store itself and survives restarts: a
    manifest removed while the operator was down still requests deletion on
    the next sync. Objects written to the store by anything else are never
    marked for deletion.
    """

    def __init__(self, store: InMemoryObjectStore, manifests_dir: Path) -> None:
        self._store = store
        self._manifests_dir = manifests_dir

    @property
    def managed_keys(self) -> set[str]:
        """Keys of live (not yet deleting) objects applied from manifests."""
        return {obj.key for obj in self._owned() if not obj.is_deleting}

    def sync(self) -> SyncSummary:
        """Bring the store in line with the manifests directory.

        New manifests are created, changed manifests update the object's
        spec and user annotations, and removed manifests request deletion.

        Raises:
            ManifestLoadError: If the directory fails validation. The store is
                left untouched in that case.
        """
        manifests = load_manifests(self._manifests_dir)
        summary = SyncSummary()
        declared = {m.key for m in manifests}

        for manifest in manifests:
            self._apply(manifest, summary)

        for key in sorted(self.managed_keys - declared):
            namespace, _, name = key.partition("/")
            try:
                self._store.delete(namespace, name)
            except NotFoundError:
                continue
            summary.deleted.append(key)
            logger.info("Manifest removed, deletion requested", extra={"key": key})

        if summary.changed:
            logger.info(
                "Applied manifests",
                extra={
                    "created": len(summary.created),
                    "updated": len(summary.updated),
                    "deleted": len(summary.deleted),
                },
            )
        return summary

    def _owned(self) -> list[ManagedResource]:
        return [
            obj
            for obj in self._store.list()
            if obj.annotations.get(SOURCE_ANNOTATION) == MANIFEST_SOURCE
        ]

    def _apply(self, manifest: Manifest, summary: SyncSummary) -> None:
        key = manifest.key
        namespace, name = manifest.metadata.namespace, manifest.metadata.name

        for _ in range(MAX_CONFLICT_RETRIES + 1):
            current = self._store.get(namespace, name)

            if current is None:
                try:
                    self._store.create(
                        manifest.to_resource().with_annotations(
                            {SOURCE_ANNOTATION: MANIFEST_SOURCE}
                        )
                    )
                except AlreadyExistsError:
                    continue
                summary.created.append(key)
                return

            if current.is_deleting:
                # Deletion cannot be undone; the object is recreated once gone
                logger.warning("Manifest declares an object being deleted", extra={"key": key})
                summary.skipped.append(key)
                return

            desired = self._desired(current, manifest)
            if desired.same_content(current):
                summary.unchanged += 1
                return

            try:
                self._store.update(desired)
            except ConflictError:
                continue
            except NotFoundError:
                continue
            summary.updated.append(key)
            return

        logger.warning("Gave up applying manifest after repeated conflicts", extra={"key": key})
        summary.skipped.append(key)

    @staticmethod
    def _desired(current: ManagedResource, manifest: Manifest) -> ManagedResource:
        # Engine annotations survive; everything else comes from the manifest.
        # An object declared by a manifest is adopted by it.
        engine = {k: v for k, v in current.annotations.items() if k in ENGINE_ANNOTATIONS}
        engine[SOURCE_ANNOTATION] = MANIFEST_SOURCE
        remove = tuple(
            k
            for k in current.annotations
            if k not in ENGINE_ANNOTATIONS and k not in manifest.metadata.annotations
        )
        annotations = {**manifest.metadata.annotations, **engine}
        return current.with_spec(manifest.spec).with_annotations(annotations, remove=remove)


def is_auto_sync(manifest: Manifest) -> bool:
    return AUTO_SYNC_ANNOTATION in manifest.metadata.annotations
