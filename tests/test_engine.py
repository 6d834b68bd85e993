"""Tests for the sync engine save/load/delete flows."""

import asyncio

import httpx
import pytest

from draftsync.config import SyncSettings
from draftsync.engine import SyncEngine
from draftsync.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionError,
    TransientError,
    ValidationError,
    VersionMismatchError,
)
from draftsync.models import SyncState
from draftsync.queue import LocalDurableQueue
from draftsync.remote import HttpDocumentStore, InMemoryDocumentStore
from draftsync.storage import InMemoryStorage

COLLECTION = "workflow_drafts"


@pytest.fixture
def engine(remote, storage, scheduler):
    return SyncEngine(remote, storage, scheduler=scheduler)


def reads(remote):
    return [call for call in remote.calls if call[0] == "read"]


class HangingStore(InMemoryDocumentStore):
    """Store whose calls never complete."""

    async def read(self, collection, document_id):
        await asyncio.Event().wait()

    async def write(self, collection, document_id, draft, expected_version=None):
        await asyncio.Event().wait()


class TestSave:
    """Tests for SyncEngine.save."""

    @pytest.mark.asyncio
    async def test_save_new_draft(self, engine, remote, scheduler, make_draft):
        result = await engine.save(make_draft(), "user-1")

        assert result.draft.version == 1
        assert result.attempts == 1
        assert not result.queued
        assert not result.merged
        assert remote.get(COLLECTION, "draft-1").version == 1
        assert scheduler.sleeps == []

    @pytest.mark.asyncio
    async def test_concurrent_writers_merge(self, remote, scheduler, make_draft):
        """Two writers start from v1; the second merges and lands as v3."""
        base = await remote.write(COLLECTION, "draft-1", make_draft())
        assert base.version == 1

        first = SyncEngine(remote, InMemoryStorage(), scheduler=scheduler)
        second = SyncEngine(remote, InMemoryStorage(), scheduler=scheduler)

        edited_route = base.content["step_data"]["route_setup"] | {
            "route_name": "Route 7 Express",
            "last_modified_at": "2024-03-01T12:30:00+00:00",
        }
        first_edit = base.model_copy(
            update={"content": base.content | {"step_data": {"route_setup": edited_route}}},
            deep=True,
        )
        second_edit = base.model_copy(
            update={
                "content": base.content
                | {"progress": 3, "ui": {"last_viewed_step": "timetable", "celebrations_shown": []}}
            },
            deep=True,
        )

        first_result = await first.save(first_edit, "user-1")
        second_result = await second.save(second_edit, "user-2")

        assert first_result.draft.version == 2
        assert second_result.draft.version == 3
        assert second_result.merged
        assert second_result.attempts == 2
        assert scheduler.sleeps == [1.0]

        stored = remote.get(COLLECTION, "draft-1")
        assert stored.version == 3
        assert stored.content["step_data"]["route_setup"]["route_name"] == "Route 7 Express"
        assert stored.content["progress"] == 3
        assert stored.content["ui"]["last_viewed_step"] == "timetable"
        assert stored.conflict_marker is not None
        assert stored.conflict_marker.remote_version == 2

        scheduler.clock.advance(31)
        loaded = await first.load("draft-1", "user-1")
        assert loaded.version == 3
        assert loaded.content["progress"] == 3

    @pytest.mark.asyncio
    async def test_saves_to_same_document_are_serialized(self, engine, remote, make_draft):
        results = await asyncio.gather(
            engine.save(make_draft(progress=2), "user-1"),
            engine.save(make_draft(progress=5), "user-1"),
        )

        assert sorted(r.draft.version for r in results) == [1, 2]
        assert [r.merged for r in results].count(True) == 1
        assert remote.get(COLLECTION, "draft-1").content["progress"] == 5

    @pytest.mark.asyncio
    async def test_document_locks_are_released(self, engine, remote, make_draft):
        await asyncio.gather(
            engine.save(make_draft(progress=2), "user-1"),
            engine.save(make_draft(progress=5), "user-1"),
            engine.save(make_draft("draft-2"), "user-1"),
        )
        assert engine._locks == {}

        remote.fail_next(1, lambda: PermissionError("Access denied"))
        with pytest.raises(PermissionError):
            await engine.save(make_draft("draft-3"), "user-1")
        await engine.delete("draft-1", "user-1")

        assert engine._locks == {}

    @pytest.mark.asyncio
    async def test_permission_error_is_not_queued(self, engine, remote, make_draft):
        remote.fail_next(1, lambda: PermissionError("Access denied"))

        with pytest.raises(PermissionError):
            await engine.save(make_draft(), "user-1")

        assert engine.queue.size() == 0
        assert len(remote.calls) == 1

    @pytest.mark.asyncio
    async def test_transient_failures_fall_back_to_queue(self, engine, remote, scheduler, make_draft):
        remote.available = False

        result = await engine.save(make_draft(), "user-1")

        assert result.queued
        assert result.attempts == 4
        assert result.draft.version == 1
        assert scheduler.sleeps == [1.0, 2.0, 4.0]
        assert engine.queue.size() == 1

        remote.available = True
        await scheduler.run_pending()

        assert engine.queue.size() == 0
        assert remote.get(COLLECTION, "draft-1").version == 1

    @pytest.mark.asyncio
    async def test_recovers_from_single_transient_failure(self, engine, remote, scheduler, make_draft):
        remote.fail_next(1)

        result = await engine.save(make_draft(), "user-1")

        assert not result.queued
        assert result.attempts == 2
        assert scheduler.sleeps == [1.0]

    @pytest.mark.asyncio
    async def test_timeouts_count_as_transient(self, storage, scheduler, make_draft):
        engine = SyncEngine(HangingStore(), storage, scheduler=scheduler, remote_timeout=0.01)

        result = await engine.save(make_draft(), "user-1")

        assert result.queued
        assert result.attempts == 4

    @pytest.mark.asyncio
    async def test_garbled_response_falls_back_to_queue(self, storage, scheduler, make_draft):
        remote = HttpDocumentStore(
            "https://drafts.example.com",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, text="<html>proxy error</html>")
            ),
        )
        engine = SyncEngine(remote, storage, scheduler=scheduler)

        result = await engine.save(make_draft(), "user-1")
        await remote.close()

        assert result.queued
        assert result.attempts == 4
        assert engine.queue.size() == 1

    @pytest.mark.asyncio
    async def test_unresolvable_conflict_raises(self, engine, remote, make_draft):
        remote.fail_next(
            8,
            lambda: VersionMismatchError("stale", current_version=9, expected_version=0),
        )

        with pytest.raises(ConflictError) as exc_info:
            await engine.save(make_draft(), "user-1")

        assert type(exc_info.value) is ConflictError
        assert engine.queue.size() == 0

    @pytest.mark.asyncio
    async def test_offline_save_goes_straight_to_queue(self, engine, remote, make_draft):
        engine.set_online(False)

        result = await engine.save(make_draft(), "user-1")

        assert result.queued
        assert result.attempts == 0
        assert remote.calls == []
        assert engine.get_status().state is SyncState.OFFLINE

    @pytest.mark.asyncio
    async def test_full_queue_raises_transient(self, storage, remote, scheduler, make_draft):
        queue = LocalDurableQueue(storage, remote, scheduler, max_queue_size=1, is_online=False)
        queue.enqueue("delete", COLLECTION, "other-draft")
        engine = SyncEngine(remote, storage, queue=queue)

        with pytest.raises(TransientError):
            await engine.save(make_draft(), "user-1")

    @pytest.mark.asyncio
    async def test_invalid_input_rejected(self, engine, make_draft):
        with pytest.raises(ValidationError):
            await engine.save(make_draft(), "")
        with pytest.raises(ValidationError):
            await engine.save({"document_id": "draft-1"}, "user-1")


class TestLoad:
    """Tests for SyncEngine.load."""

    @pytest.mark.asyncio
    async def test_load_uses_cache_within_ttl(self, engine, remote, scheduler, make_draft):
        await remote.write(COLLECTION, "draft-1", make_draft())

        first = await engine.load("draft-1", "user-1")
        second = await engine.load("draft-1", "user-1")

        assert first == second
        assert len(reads(remote)) == 1

        scheduler.clock.advance(31)
        await engine.load("draft-1", "user-1")

        assert len(reads(remote)) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_remote_read(self, engine, remote, make_draft):
        await remote.write(COLLECTION, "draft-1", make_draft())
        await engine.load("draft-1", "user-1")

        engine.invalidate("draft-1")
        await engine.load("draft-1", "user-1")

        assert len(reads(remote)) == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_snapshot_when_remote_down(self, remote, storage, scheduler, make_draft):
        await remote.write(COLLECTION, "draft-1", make_draft(progress=4))
        await SyncEngine(remote, storage, scheduler=scheduler).load("draft-1", "user-1")

        restarted = SyncEngine(remote, storage, scheduler=scheduler)
        remote.available = False

        draft = await restarted.load("draft-1", "user-1")

        assert draft.content["progress"] == 4

    @pytest.mark.asyncio
    async def test_snapshots_are_per_user(self, remote, storage, scheduler, make_draft):
        await remote.write(COLLECTION, "draft-1", make_draft())
        await SyncEngine(remote, storage, scheduler=scheduler).load("draft-1", "user-1")

        restarted = SyncEngine(remote, storage, scheduler=scheduler)
        remote.available = False

        with pytest.raises(NotFoundError):
            await restarted.load("draft-1", "user-2")

    @pytest.mark.asyncio
    async def test_stale_cache_used_when_remote_down(self, engine, remote, scheduler, make_draft):
        await remote.write(COLLECTION, "draft-1", make_draft())
        await engine.load("draft-1", "user-1")

        scheduler.clock.advance(60)
        remote.available = False

        assert (await engine.load("draft-1", "user-1")).version == 1

    @pytest.mark.asyncio
    async def test_missing_everywhere_raises_not_found(self, engine, remote):
        with pytest.raises(NotFoundError):
            await engine.load("draft-1", "user-1")

        remote.available = False
        with pytest.raises(NotFoundError):
            await engine.load("draft-1", "user-1")

    @pytest.mark.asyncio
    async def test_queued_save_is_visible_offline(self, engine, remote, make_draft):
        engine.set_online(False)
        await engine.save(make_draft(progress=6), "user-1")
        remote.available = False

        draft = await engine.load("draft-1", "user-1")

        assert draft.content["progress"] == 6


class TestDelete:
    """Tests for SyncEngine.delete."""

    @pytest.mark.asyncio
    async def test_delete_online(self, engine, remote, make_draft):
        await engine.save(make_draft(), "user-1")

        queued = await engine.delete("draft-1", "user-1")

        assert queued is False
        assert remote.get(COLLECTION, "draft-1") is None

    @pytest.mark.asyncio
    async def test_delete_offline_supersedes_queued_save(self, engine, remote, make_draft):
        engine.set_online(False)
        await engine.save(make_draft(), "user-1")

        queued = await engine.delete("draft-1", "user-1")

        assert queued is True
        assert [op.type for op in engine.queue.operations()] == ["delete"]

    @pytest.mark.asyncio
    async def test_delete_clears_local_copy(self, engine, remote, make_draft):
        await engine.save(make_draft(), "user-1")
        await engine.delete("draft-1", "user-1")
        remote.available = False

        with pytest.raises(NotFoundError):
            await engine.load("draft-1", "user-1")


class TestLifecycle:
    """Tests for construction, start-up and status delegation."""

    @pytest.mark.asyncio
    async def test_context_manager_flushes_leftovers(self, remote, storage, scheduler):
        LocalDurableQueue(storage, remote, scheduler, is_online=False).enqueue(
            "delete", COLLECTION, "draft-1"
        )

        async with SyncEngine(remote, storage, scheduler=scheduler) as engine:
            await scheduler.advance(2)
            assert engine.queue.size() == 0

        assert remote.calls == [("delete", COLLECTION, "draft-1")]

    @pytest.mark.asyncio
    async def test_subscribe_and_force_retry(self, engine, remote, scheduler, make_draft):
        statuses = []
        engine.subscribe(statuses.append)
        remote.available = False
        await engine.save(make_draft(), "user-1")
        await scheduler.run_pending()
        assert engine.get_status().state is SyncState.ERROR

        remote.available = True
        await engine.force_retry()

        assert engine.get_status().state is SyncState.SAVED
        assert statuses[-1].queue_size == 0
        assert any(s.processing for s in statuses)

    def test_create_from_settings(self, tmp_path, remote):
        settings = SyncSettings(storage_path=tmp_path, max_queue_size=10, collection="drafts")

        engine = SyncEngine.create(settings, remote=remote)

        assert engine.queue.max_queue_size == 10
        assert engine.collection == "drafts"
        assert (tmp_path / "storage").is_dir()

    def test_create_without_remote_fails(self, tmp_path):
        with pytest.raises(ValidationError):
            SyncEngine.create(SyncSettings(storage_path=tmp_path, remote_url=None))
