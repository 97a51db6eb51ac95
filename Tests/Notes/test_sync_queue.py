"""
test_sync_queue.py
Tests for the pending sync operation queue
"""
from notesync.Notes.models import SyncOperation
from notesync.Notes.sync_queue import SyncQueue


def ids(queue):
    return [(i.note_id, i.operation) for i in queue.peek_all()]


class TestSyncQueue:

    def test_fifo_order(self, sync_queue):
        sync_queue.enqueue("a", SyncOperation.UPSERT)
        sync_queue.enqueue("b", SyncOperation.UPSERT)

        assert sync_queue.drain_next().note_id == "a"
        assert sync_queue.drain_next().note_id == "b"
        assert sync_queue.drain_next() is None

    def test_reenqueue_dedupes_and_moves_to_tail(self, sync_queue):
        sync_queue.enqueue("a", SyncOperation.UPSERT)
        sync_queue.enqueue("b", SyncOperation.UPSERT)
        sync_queue.enqueue("a", SyncOperation.DELETE)

        assert len(sync_queue) == 2
        assert ids(sync_queue) == [("b", SyncOperation.UPSERT), ("a", SyncOperation.DELETE)]

    def test_contains_and_get(self, sync_queue):
        item = sync_queue.enqueue("a", SyncOperation.UPSERT)
        assert "a" in sync_queue
        assert sync_queue.get("a") is item
        assert "b" not in sync_queue

    def test_queue_survives_restart(self, notes_db):
        first = SyncQueue(notes_db)
        first.enqueue("a", SyncOperation.UPSERT)
        first.enqueue("b", SyncOperation.DELETE)

        reloaded = SyncQueue(notes_db)
        assert ids(reloaded) == [("a", SyncOperation.UPSERT), ("b", SyncOperation.DELETE)]

    def test_drained_item_stays_persisted_until_complete(self, notes_db, sync_queue):
        sync_queue.enqueue("a", SyncOperation.UPSERT)
        item = sync_queue.drain_next()

        # Crash before completion: the item is redelivered
        assert [i.note_id for i in SyncQueue(notes_db).peek_all()] == ["a"]

        sync_queue.complete(item)
        assert SyncQueue(notes_db).peek_all() == []

    def test_complete_keeps_newer_enqueue(self, notes_db, sync_queue):
        sync_queue.enqueue("a", SyncOperation.UPSERT)
        in_flight = sync_queue.drain_next()
        sync_queue.enqueue("a", SyncOperation.DELETE)

        sync_queue.complete(in_flight)

        assert ids(sync_queue) == [("a", SyncOperation.DELETE)]
        assert [i.operation for i in notes_db.queue_items()] == [SyncOperation.DELETE]

    def test_restore_puts_item_back_at_head(self, sync_queue):
        sync_queue.enqueue("a", SyncOperation.UPSERT)
        sync_queue.enqueue("b", SyncOperation.UPSERT)
        item = sync_queue.drain_next()

        assert sync_queue.restore(item) is True
        assert [i.note_id for i in sync_queue.peek_all()] == ["a", "b"]

    def test_restore_drops_superseded_item(self, sync_queue):
        sync_queue.enqueue("a", SyncOperation.UPSERT)
        item = sync_queue.drain_next()
        sync_queue.enqueue("a", SyncOperation.DELETE)

        assert sync_queue.restore(item) is False
        assert ids(sync_queue) == [("a", SyncOperation.DELETE)]

    def test_clear(self, notes_db, sync_queue):
        sync_queue.enqueue("a", SyncOperation.UPSERT)
        sync_queue.clear()
        assert len(sync_queue) == 0
        assert notes_db.queue_items() == []
