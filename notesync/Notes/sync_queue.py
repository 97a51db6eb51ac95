# sync_queue.py
# Description: Ordered, deduplicated queue of pending outbound note operations
#
# Imports
from collections import OrderedDict
from typing import Dict, List, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..DB.Notes_DB import NotesDB
from .models import SyncQueueItem, SyncOperation, utc_now
#
########################################################################################################################
#
# Classes:

class SyncQueue:
    """
    FIFO of pending note operations with at most one item per note id.

    Items are persisted to the ``sync_queue`` table. ``drain_next()`` takes
    the oldest item out of the in-memory order but leaves its row in place
    until ``complete()`` confirms the remote side applied it, so an item in
    flight during a crash is delivered again after restart.
    """

    def __init__(self, db: NotesDB):
        self.db = db
        self._items: "OrderedDict[str, SyncQueueItem]" = OrderedDict()
        self._in_flight: Dict[str, SyncQueueItem] = {}
        self.load()

    def load(self) -> int:
        """Reload persisted items in FIFO order. Returns the number loaded."""
        self._items.clear()
        self._in_flight.clear()
        for item in self.db.queue_items():
            self._items[item.note_id] = item
        if self._items:
            logger.info(f"Reloaded {len(self._items)} pending sync operations")
        return len(self._items)

    def enqueue(self, note_id: str, operation: SyncOperation) -> SyncQueueItem:
        """Supersede any pending item for the note and append the new one at the tail."""
        enqueued_at = utc_now()
        seq = self.db.queue_put(note_id, operation, enqueued_at)
        item = SyncQueueItem(note_id=note_id, operation=operation, enqueued_at=enqueued_at, seq=seq)
        self._items.pop(note_id, None)
        self._items[note_id] = item
        logger.debug(f"Queued {operation.value} for note {note_id} (queue size {len(self._items)})")
        return item

    def drain_next(self) -> Optional[SyncQueueItem]:
        """Remove and return the oldest item, or None when the queue is empty."""
        if not self._items:
            return None
        note_id, item = self._items.popitem(last=False)
        self._in_flight[note_id] = item
        return item

    def complete(self, item: SyncQueueItem) -> None:
        """Forget a delivered item. A newer item for the same note stays queued."""
        if self._in_flight.get(item.note_id) is item:
            del self._in_flight[item.note_id]
        self.db.queue_remove(item.note_id, item.seq)

    def restore(self, item: SyncQueueItem) -> bool:
        """
        Put a failed item back at the head.

        Returns False (and drops the stale item) when a newer item for the
        same note was enqueued while this one was in flight.
        """
        if self._in_flight.get(item.note_id) is item:
            del self._in_flight[item.note_id]
        if item.note_id in self._items:
            return False
        self._items[item.note_id] = item
        self._items.move_to_end(item.note_id, last=False)
        return True

    def peek_all(self) -> List[SyncQueueItem]:
        return list(self._items.values())

    def clear(self) -> None:
        self._items.clear()
        self._in_flight.clear()
        self.db.queue_clear()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, note_id: object) -> bool:
        return note_id in self._items

    def get(self, note_id: str) -> Optional[SyncQueueItem]:
        return self._items.get(note_id)

#
# End of sync_queue.py
########################################################################################################################
