"""Tests for the managed resource models."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from jobsync.models import (
    AUTO_SYNC_ANNOTATION,
    FINALIZER_NAME,
    SPEC_HASH_ANNOTATION,
    SYNC_MESSAGE_ANNOTATION,
    SYNC_STATUS_ANNOTATION,
    SYNC_TIME_ANNOTATION,
    ManagedResource,
    content_hash,
    new_resource,
    object_key,
    split_key,
)


class TestKeys:
    """Tests for work queue key helpers."""

    def test_object_key(self) -> None:
        assert object_key("ns1", "demo") == "ns1/demo"

    def test_split_key(self) -> None:
        assert split_key("ns1/demo") == ("ns1", "demo")

    @pytest.mark.parametrize("key", ["demo", "ns1/", "/demo", "a/b/c", ""])
    def test_split_key_rejects_malformed(self, key: str) -> None:
        with pytest.raises(ValueError):
            split_key(key)


class TestContentHash:
    """Tests for the spec content hash."""

    def test_key_order_does_not_matter(self) -> None:
        """Logically equal specs hash the same."""
        a = {"script": "echo hi", "options": {"x": 1, "y": 2}}
        b = {"options": {"y": 2, "x": 1}, "script": "echo hi"}

        assert content_hash(a) == content_hash(b)

    def test_value_change_changes_hash(self) -> None:
        assert content_hash({"script": "a"}) != content_hash({"script": "b"})

    def test_hash_is_sha256_hex(self) -> None:
        digest = content_hash({})
        assert len(digest) == 64
        assert int(digest, 16) >= 0


class TestManagedResource:
    """Tests for ManagedResource."""

    def test_parse_manifest_shape(self) -> None:
        """Test parsing the wire format with camelCase aliases."""
        obj = ManagedResource.model_validate(
            {
                "apiVersion": "jobsync.io/v1",
                "kind": "ManagedJob",
                "metadata": {
                    "namespace": "ns1",
                    "name": "demo",
                    "resourceVersion": "7",
                    "finalizers": [FINALIZER_NAME, FINALIZER_NAME],
                },
                "spec": {"script": "echo hi"},
            }
        )

        assert obj.key == "ns1/demo"
        assert obj.resource_version == "7"
        assert obj.metadata.finalizers == (FINALIZER_NAME,)
        assert not obj.is_deleting

    def test_rejects_wrong_kind(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ManagedResource.model_validate(
                {"kind": "Pipeline", "metadata": {"namespace": "ns1", "name": "demo"}}
            )

        assert "kind must be ManagedJob" in str(exc_info.value)

    @pytest.mark.parametrize("name", ["Demo", "demo_1", "-demo", "a" * 254])
    def test_rejects_invalid_names(self, name: str) -> None:
        with pytest.raises(ValidationError):
            new_resource("ns1", name)

    def test_is_frozen(self) -> None:
        obj = new_resource("ns1", "demo")

        with pytest.raises(ValidationError):
            obj.spec = {"script": "changed"}  # type: ignore[misc]

    def test_with_helpers_return_copies(self) -> None:
        """Mutation helpers never change the original value."""
        obj = new_resource("ns1", "demo", spec={"script": "a"})

        changed = (
            obj.with_spec({"script": "b"})
            .with_finalizer()
            .with_annotations({AUTO_SYNC_ANNOTATION: "true"})
        )

        assert obj.spec == {"script": "a"}
        assert not obj.has_finalizer()
        assert not obj.auto_sync
        assert changed.spec == {"script": "b"}
        assert changed.has_finalizer(FINALIZER_NAME)
        assert changed.auto_sync

    def test_snapshot_is_detached(self) -> None:
        obj = new_resource("ns1", "demo", spec={"steps": ["build"]})

        snap = obj.snapshot()
        snap.spec["steps"].append("deploy")

        assert obj.spec == {"steps": ["build"]}

    def test_with_annotations_removes(self) -> None:
        obj = new_resource("ns1", "demo", annotations={SYNC_MESSAGE_ANNOTATION: "boom"})

        cleared = obj.with_annotations(
            {SYNC_STATUS_ANNOTATION: "successful"}, remove=(SYNC_MESSAGE_ANNOTATION,)
        )

        assert SYNC_MESSAGE_ANNOTATION not in cleared.annotations
        assert cleared.sync_status == "successful"

    def test_without_finalizer_keeps_others(self) -> None:
        obj = new_resource("ns1", "demo").with_finalizer("other.io/keep").with_finalizer()

        stripped = obj.without_finalizer()

        assert stripped.metadata.finalizers == ("other.io/keep",)

    def test_marked_for_deletion_keeps_first_timestamp(self) -> None:
        first = datetime(2024, 1, 1, tzinfo=UTC)
        obj = new_resource("ns1", "demo").marked_for_deletion(first)

        again = obj.marked_for_deletion(datetime(2025, 1, 1, tzinfo=UTC))

        assert again.is_deleting
        assert again.metadata.deletion_timestamp == first

    def test_sync_annotations(self) -> None:
        spec = {"script": "echo hi"}
        synced_at = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
        obj = new_resource(
            "ns1",
            "demo",
            spec=spec,
            annotations={
                SYNC_STATUS_ANNOTATION: "successful",
                SPEC_HASH_ANNOTATION: content_hash(spec),
                SYNC_TIME_ANNOTATION: synced_at.isoformat(),
            },
        )

        assert obj.sync_status == "successful"
        assert obj.synced_hash == obj.spec_hash()
        assert obj.synced_at == synced_at

    def test_unparseable_sync_time(self) -> None:
        obj = new_resource("ns1", "demo", annotations={SYNC_TIME_ANNOTATION: "yesterday"})

        assert obj.synced_at is None

    def test_same_content_ignores_resource_version(self) -> None:
        obj = new_resource("ns1", "demo", spec={"script": "a"})

        assert obj.same_content(obj.with_resource_version("42"))
        assert not obj.same_content(obj.with_spec({"script": "b"}))
