"""
test_auto_sync_manager.py
Tests for the debounced drain scheduler and the auto-sync session manager
"""
import asyncio

import pytest

from notesync.Notes.auto_sync_manager import AutoSyncManager, DebouncedTask
from notesync.Notes.models import Note, SyncErrorKind, SyncOperation, SyncStatus

USER = "user-1"


class TestDebouncedTask:

    @pytest.mark.asyncio
    async def test_burst_collapses_into_one_run(self, fake_scheduler):
        runs = []

        async def callback():
            runs.append(True)

        task = DebouncedTask(callback, 1.0, call_later=fake_scheduler)
        for _ in range(5):
            task.schedule()

        assert len(fake_scheduler.live) == 1
        assert fake_scheduler.live[0].delay == 1.0
        assert task.pending

        assert fake_scheduler.fire_all() == 1
        await task.task
        assert runs == [True]
        assert not task.pending

    @pytest.mark.asyncio
    async def test_cancel_drops_pending_run(self, fake_scheduler):
        async def callback():
            raise AssertionError("should not run")

        task = DebouncedTask(callback, 1.0, call_later=fake_scheduler)
        task.schedule()
        task.cancel()

        assert fake_scheduler.fire_all() == 0
        assert not task.pending

    @pytest.mark.asyncio
    async def test_flush_runs_now(self, fake_scheduler):
        async def callback():
            return "done"

        task = DebouncedTask(callback, 1.0, call_later=fake_scheduler)
        task.schedule()

        assert await task.flush() == "done"
        assert fake_scheduler.live == []

    @pytest.mark.asyncio
    async def test_callback_errors_are_contained(self, fake_scheduler):
        async def callback():
            raise RuntimeError("boom")

        task = DebouncedTask(callback, 1.0, call_later=fake_scheduler)
        assert await task.flush() is None

    @pytest.mark.asyncio
    async def test_uses_running_loop_by_default(self):
        done = asyncio.Event()

        async def callback():
            done.set()

        task = DebouncedTask(callback, 0.01)
        task.schedule()
        await asyncio.wait_for(done.wait(), timeout=1.0)


@pytest.fixture
def manager(engine, fake_scheduler):
    return AutoSyncManager(engine, debounce_seconds=1.0, sync_interval=0, retry_delay=5.0,
                           max_retries=2, call_later=fake_scheduler)


async def fire_debounce(manager, fake_scheduler):
    assert fake_scheduler.fire_all() >= 1
    return await manager.debouncer.task


class TestAutoSyncManager:

    @pytest.mark.asyncio
    async def test_start_wires_scheduler_and_starts_session(self, manager, engine):
        report = await manager.start(USER)

        assert report.status == SyncStatus.COMPLETED
        assert manager.is_running
        assert engine.state.user_id == USER
        assert engine.drain_scheduler == manager.debouncer.schedule

    @pytest.mark.asyncio
    async def test_keystroke_burst_pushes_once(self, manager, notes_service, fake_gateway, fake_scheduler):
        await manager.start(USER)
        note = notes_service.create_note(title="D")
        for title in ("Dr", "Dra", "Draf", "Draft"):
            notes_service.update_note(note.id, title=title)

        report = await fire_debounce(manager, fake_scheduler)

        assert report.pushed == 1
        assert len(fake_gateway.calls_to("upsert_note")) == 1
        assert fake_gateway.rows[note.id]["title"] == "Draft"

    @pytest.mark.asyncio
    async def test_transient_failure_schedules_bounded_retries(self, manager, engine, notes_service,
                                                              fake_gateway, fake_scheduler):
        errors = []
        manager.on_sync_error = errors.append
        await manager.start(USER)
        fake_gateway.fail("upsert_note", times=10)
        notes_service.create_note()

        report = await fire_debounce(manager, fake_scheduler)
        assert report.status == SyncStatus.FAILED
        assert manager.retry_pending
        assert fake_scheduler.live[0].delay == 5.0

        for _ in range(2):
            fake_scheduler.fire_all()
            await manager.retry_task

        assert len(errors) == 3
        assert not manager.retry_pending
        assert manager.retry_count == 0
        assert len(engine.queue) == 1

    @pytest.mark.asyncio
    async def test_retry_succeeds_after_transient_failure(self, manager, notes_service, fake_gateway,
                                                          fake_scheduler):
        completed = []
        manager.on_sync_completed = completed.append
        await manager.start(USER)
        completed.clear()
        fake_gateway.fail("upsert_note")
        note = notes_service.create_note()

        await fire_debounce(manager, fake_scheduler)
        fake_scheduler.fire_all()
        report = await manager.retry_task

        assert report.pushed == 1
        assert note.id in fake_gateway.rows
        assert completed == [report]
        assert manager.retry_count == 0

    @pytest.mark.asyncio
    async def test_auth_expired_calls_handler_instead_of_retrying(self, manager, notes_service,
                                                                  fake_gateway, fake_scheduler):
        expired = []
        manager.on_auth_expired = lambda: expired.append(True)
        await manager.start(USER)
        fake_gateway.fail("upsert_note", SyncErrorKind.AUTH_EXPIRED)
        notes_service.create_note()

        report = await fire_debounce(manager, fake_scheduler)

        assert report.error_kind == SyncErrorKind.AUTH_EXPIRED
        assert expired == [True]
        assert not manager.retry_pending

    @pytest.mark.asyncio
    async def test_trigger_sync_reconciles_then_drains(self, manager, engine, notes_db, fake_gateway):
        await manager.start(USER)
        fake_gateway.seed(Note(id="remote"))
        notes_db.insert_note(Note(id="local"))
        engine.queue.enqueue("local", SyncOperation.UPSERT)

        report = await manager.trigger_sync()

        assert report.status == SyncStatus.COMPLETED
        assert report.pulled == 1
        assert report.pushed == 1
        assert notes_db.get_note("remote") is not None
        assert "local" in fake_gateway.rows

    @pytest.mark.asyncio
    async def test_stop_cancels_timers_and_ends_session(self, manager, engine, notes_service, fake_scheduler):
        await manager.start(USER)
        notes_service.create_note()
        assert manager.debouncer.pending

        await manager.stop()

        assert not manager.debouncer.pending
        assert fake_scheduler.live == []
        assert engine.state.user_id is None
        assert engine.drain_scheduler is None
        assert len(engine.queue) == 1

    @pytest.mark.asyncio
    async def test_periodic_loop_drains_pending_changes(self, engine, notes_db, fake_gateway, fake_scheduler):
        manager = AutoSyncManager(engine, sync_interval=0.01, call_later=fake_scheduler)
        await manager.start(USER)
        notes_db.insert_note(Note(id="n1"))
        engine.queue.enqueue("n1", SyncOperation.UPSERT)

        for _ in range(100):
            if "n1" in fake_gateway.rows:
                break
            await asyncio.sleep(0.01)
        await manager.stop()

        assert "n1" in fake_gateway.rows
