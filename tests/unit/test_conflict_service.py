"""Tests for conflict tracking and resolution."""

from datetime import UTC, datetime

import pytest

from calsync.core.errors import ConflictResolutionError, RemoteStoreError
from calsync.domain.conflict import Conflict, ConflictSeverity, ConflictStatus, EntityType, ResolutionStrategy
from calsync.services.conflict_service import field_diffs, sort_by_severity
from tests.unit.mocks import make_conflict, make_task


REMOTE_SNAPSHOT = {
    "title": "Remote title",
    "status": "in_progress",
    "workPeriod": {"startDate": "2024-03-04T09:00:00Z", "endDate": "2024-03-04T12:00:00Z"},
    "updatedAt": "2024-03-04T08:00:00Z",
}
LOCAL_SNAPSHOT = {
    "title": "Local title",
    "status": "in_progress",
    "workPeriod": {"startDate": "2024-03-04T09:00:00Z", "endDate": "2024-03-04T12:00:00Z"},
    "updatedAt": "2024-03-04T07:00:00Z",
}


@pytest.fixture
def seeded(remote, cache):
    cache.ingest([make_task("t1", title="Local title")])
    remote.conflicts = {
        "c1": make_conflict("c1", "t1", local_data=LOCAL_SNAPSHOT, remote_data=REMOTE_SNAPSHOT),
        "c2": make_conflict("c2", "t2", severity=ConflictSeverity.CRITICAL, local_data=LOCAL_SNAPSHOT),
    }
    return remote


@pytest.mark.unit
class TestHelpers:
    def test_field_diffs_skip_bookkeeping_fields(self):
        conflict = make_conflict("c1", "t1", local_data=LOCAL_SNAPSHOT, remote_data=REMOTE_SNAPSHOT)

        diffs = field_diffs(conflict)

        assert [d.field_name for d in diffs] == ["title"]
        assert diffs[0].local_value == "Local title"
        assert diffs[0].remote_value == "Remote title"

    def test_field_diffs_with_deleted_side(self):
        conflict = make_conflict("c1", "t1", local_data={"title": "x"}, remote_data=None)
        assert [d.field_name for d in field_diffs(conflict)] == ["title"]

    def test_sort_by_severity(self):
        low = make_conflict("low", "t1", severity=ConflictSeverity.LOW)
        critical = make_conflict("critical", "t2", severity=ConflictSeverity.CRITICAL)
        older_low = make_conflict("older", "t3", detected_at=datetime(2024, 1, 1, tzinfo=UTC))

        assert [c.id for c in sort_by_severity([low, critical, older_low])] == ["critical", "older", "low"]

    def test_remote_snapshot_uses_wire_alias(self):
        conflict = Conflict.model_validate(
            {
                "id": "c1",
                "entityType": "Task",
                "entityId": "t1",
                "notionData": {"title": "x"},
                "detectedAt": "2024-03-01T00:00:00Z",
            }
        )
        assert conflict.remote_data == {"title": "x"}
        assert conflict.entity_type == EntityType.TASK


@pytest.mark.unit
class TestConflictService:
    async def test_refresh_loads_open_conflicts(self, conflict_service, seeded):
        assert await conflict_service.refresh() == 2
        assert [c.id for c in conflict_service.open_conflicts] == ["c2", "c1"]

    async def test_refresh_failure_keeps_open_set(self, conflict_service, seeded):
        await conflict_service.refresh()
        seeded.fail_next("list_conflicts")

        assert await conflict_service.refresh() == 2
        assert isinstance(conflict_service.last_error, RemoteStoreError)

    async def test_remote_wins_applies_remote_snapshot(self, conflict_service, seeded, cache):
        await conflict_service.refresh()

        resolved = await conflict_service.resolve("c1", ResolutionStrategy.REMOTE_WINS)

        assert resolved.status == ConflictStatus.RESOLVED
        assert cache.get("t1").title == "Remote title"
        assert conflict_service.open_count == 1

    async def test_local_wins_keeps_cache(self, conflict_service, seeded, cache):
        await conflict_service.refresh()

        await conflict_service.resolve("c1", ResolutionStrategy.LOCAL_WINS, reason="Checked with the team")

        assert cache.get("t1").title == "Local title"
        assert seeded.calls_to("resolve_conflict")[0][3] == "Checked with the team"

    async def test_merged_applies_payload(self, conflict_service, seeded, cache):
        await conflict_service.refresh()

        await conflict_service.resolve("c1", ResolutionStrategy.MERGED, {"title": "Merged title"})

        assert cache.get("t1").title == "Merged title"
        assert seeded.calls_to("resolve_conflict")[0][2] == {"title": "Merged title"}

    async def test_merged_requires_payload(self, conflict_service, seeded):
        await conflict_service.refresh()

        with pytest.raises(ConflictResolutionError):
            await conflict_service.resolve("c1", ResolutionStrategy.MERGED)
        assert seeded.calls_to("resolve_conflict") == []

    async def test_remote_wins_on_remote_delete_removes_task(self, conflict_service, remote, cache):
        cache.ingest([make_task("t2")])
        remote.conflicts = {"c2": make_conflict("c2", "t2", local_data=LOCAL_SNAPSHOT, remote_data=None)}
        await conflict_service.refresh()

        await conflict_service.resolve("c2", ResolutionStrategy.REMOTE_WINS)

        assert "t2" not in cache

    async def test_resolved_conflict_never_reopens(self, conflict_service, seeded):
        await conflict_service.refresh()
        await conflict_service.resolve("c1", ResolutionStrategy.LOCAL_WINS)

        # A lagging listing still reports it as pending
        seeded.conflicts["c1"] = seeded.conflicts["c1"].model_copy(update={"status": ConflictStatus.PENDING})
        await conflict_service.refresh()

        assert conflict_service.get("c1") is None
        assert conflict_service.is_resolved("c1")
        listed = await conflict_service.list_conflicts()
        assert next(c for c in listed if c.id == "c1").status == ConflictStatus.RESOLVED
        with pytest.raises(ConflictResolutionError):
            await conflict_service.resolve("c1", ResolutionStrategy.REMOTE_WINS)

    async def test_failed_resolution_keeps_conflict_open(self, conflict_service, seeded):
        await conflict_service.refresh()
        seeded.fail_next("resolve_conflict")

        with pytest.raises(RemoteStoreError):
            await conflict_service.resolve("c1", ResolutionStrategy.LOCAL_WINS)

        assert conflict_service.get("c1") is not None
        assert not conflict_service.is_resolved("c1")

    async def test_batch_resolve_relists_open_set(self, conflict_service, seeded):
        await conflict_service.refresh()
        seeded.unresolvable = {"c2"}

        resolved = await conflict_service.batch_resolve(ResolutionStrategy.LOCAL_WINS)

        assert resolved == 1
        assert [c.id for c in conflict_service.open_conflicts] == ["c2"]
        assert conflict_service.is_resolved("c1")
        assert not conflict_service.is_resolved("c2")

    async def test_batch_failure_still_relists(self, conflict_service, seeded):
        await conflict_service.refresh()
        seeded.fail_next("batch_resolve_conflicts")

        with pytest.raises(RemoteStoreError):
            await conflict_service.batch_resolve(ResolutionStrategy.REMOTE_WINS, ["c1"])

        assert len(seeded.calls_to("list_conflicts")) == 2
        assert conflict_service.open_count == 2

    async def test_batch_rejects_merged(self, conflict_service, seeded):
        with pytest.raises(ConflictResolutionError):
            await conflict_service.batch_resolve(ResolutionStrategy.MERGED, ["c1"])

    async def test_stats(self, conflict_service, seeded):
        stats = await conflict_service.get_stats()

        assert stats.total == 2
        assert stats.by_severity == {"low": 1, "critical": 1}
        assert stats.by_entity_type == {"Task": 2}

    async def test_subscribers_notified_on_change(self, conflict_service, seeded):
        calls = []
        conflict_service.subscribe(lambda: calls.append(conflict_service.open_count))

        await conflict_service.refresh()
        await conflict_service.resolve("c1", ResolutionStrategy.LOCAL_WINS)

        assert calls == [2, 1]
