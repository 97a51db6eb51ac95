# sync_engine.py
# Description: Reconciles the local note store with the remote store
#
"""
sync_engine.py
--------------

The offline-first sync state machine for one authenticated session:

    idle -> reconciling -> draining <-> idle      (subscribed runs alongside)

- ``reconcile()`` pulls the full remote note set and merges it with the local
  set using last-writer-wins on ``updated_at`` (ties go to the remote copy).
- ``drain()`` pushes queued local changes, oldest first, stopping at the first
  failure so the remaining items wait for the next trigger.
- ``handle_remote_*`` apply change feed events to the local store.

Reconcile and drain share one session lock. A pass requested while the lock is
held is skipped; a skipped drain is requested again once the lock is free.
Gateway errors never escape: they land in ``SyncState`` and the returned
``SyncReport``.
"""
#
# Imports
import asyncio
import time
from typing import Any, Callable, Dict, List, Optional, Set
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..DB.Notes_DB import NotesDB, NotesDBError
from ..Metrics.metrics_logger import log_counter, log_histogram
from ..Remote.gateway import RemoteGateway, RemoteGatewayError, ChangeHandlers, WireRecord
from ..Remote.wire_format import note_to_wire, note_from_wire, MalformedRecordError
from .models import (
    Note, SyncOperation, SyncPhase, SyncReport, SyncState, SyncStatus, SyncErrorKind, utc_now,
)
from .sync_queue import SyncQueue
from .tag_ledger import TagLedger
#
########################################################################################################################
#
# Classes:

class NotesSyncEngine:
    """Sync engine for the local note store."""

    def __init__(
        self,
        db: NotesDB,
        queue: SyncQueue,
        ledger: TagLedger,
        gateway: Optional[RemoteGateway] = None,
        state: Optional[SyncState] = None,
    ):
        self.db = db
        self.queue = queue
        self.ledger = ledger
        self.gateway = gateway
        self.state = state or SyncState()

        # Called with no arguments to request a (debounced) drain
        self.drain_scheduler: Optional[Callable[[], None]] = None

        self._lock = asyncio.Lock()
        self._generation = 0
        self._channel: Any = None
        self._drain_requested = False

    # --- Session lifecycle ---

    @property
    def is_remote_available(self) -> bool:
        return self.gateway is not None and self.gateway.is_available()

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    @property
    def has_pending_changes(self) -> bool:
        return len(self.queue) > 0

    async def start_session(self, user_id: str) -> SyncReport:
        """Initialize state, subscribe to the change feed and run the initial reconciliation."""
        if self.state.user_id is not None:
            self.end_session()

        self.state.initialize(user_id)
        if not self.is_remote_available:
            logger.info(f"Remote store not configured; notes for user {user_id} stay local-only")
            return SyncReport(status=SyncStatus.SKIPPED)

        handlers = ChangeHandlers(
            on_insert=self.handle_remote_insert,
            on_update=self.handle_remote_update,
            on_delete=self.handle_remote_delete,
        )
        try:
            self._channel = self.gateway.subscribe_to_changes(user_id, handlers)
            self.state.subscribed = self._channel is not None
        except RemoteGatewayError as e:
            logger.warning(f"Could not subscribe to note changes: {e}")
            self.state.last_error = e.kind

        report = await self.reconcile()
        if self.has_pending_changes:
            self.request_drain()
        return report

    def end_session(self) -> None:
        """
        Tear down the session: unsubscribe and reset state.

        In-flight passes are not cancelled; their results are discarded when
        they finish. The queue is kept so offline edits survive sign-out.
        """
        if self._channel is not None and self.gateway is not None:
            try:
                self.gateway.unsubscribe(self._channel)
            except RemoteGatewayError as e:
                logger.warning(f"Error while unsubscribing from note changes: {e}")
        self._channel = None
        self._generation += 1
        self._lock = asyncio.Lock()
        self._drain_requested = False
        logger.info(f"Ended sync session for user {self.state.user_id}")
        self.state.reset()

    def _session_active(self, generation: int) -> bool:
        return generation == self._generation and self.state.user_id is not None

    # --- Local changes ---

    def record_local_change(self, note_id: str, operation: SyncOperation) -> None:
        """Queue a local mutation for delivery and request a debounced drain."""
        self.queue.enqueue(note_id, operation)
        log_counter("notes_sync_local_change", labels={"operation": operation.value})
        self.request_drain()

    def request_drain(self) -> None:
        if self.drain_scheduler is not None:
            self.drain_scheduler()

    # --- Reconciliation ---

    async def reconcile(self) -> SyncReport:
        """Full pull and last-writer-wins merge of the local note set."""
        if not self.is_remote_available or self.state.user_id is None:
            return SyncReport(status=SyncStatus.SKIPPED)

        lock = self._lock
        if lock.locked():
            logger.debug("Sync pass already in flight; skipping reconciliation")
            return SyncReport(status=SyncStatus.SKIPPED)

        async with lock:
            report = await self._reconcile_locked()

        self._release(lock)
        return report

    async def _reconcile_locked(self) -> SyncReport:
        generation = self._generation
        start_time = time.time()
        self._begin(SyncPhase.RECONCILING)
        try:
            records = await self.gateway.fetch_notes_since(self.state.user_id)
        except RemoteGatewayError as e:
            return self._fail("reconcile", e.kind, str(e), generation)
        finally:
            self._finish(generation)

        if not self._session_active(generation):
            logger.info("Session changed during reconciliation; discarding fetched notes")
            return SyncReport(status=SyncStatus.SKIPPED)

        report = self._merge(records)
        self.state.last_synced_at = utc_now()
        self.state.is_online = True
        self.state.last_error = None

        log_counter("notes_sync_reconcile", labels={"status": report.status.value})
        log_histogram("notes_sync_reconcile_duration", time.time() - start_time)
        logger.info(
            f"Reconciled notes: {report.pulled} pulled, {report.kept_local} kept local, "
            f"{report.pushed} queued for push, {report.skipped} malformed"
        )
        return report

    def _merge(self, records: List[WireRecord]) -> SyncReport:
        remote: Dict[str, Note] = {}
        unreadable: Set[str] = set()
        for record in records:
            try:
                note = note_from_wire(record)
            except MalformedRecordError as e:
                logger.warning(f"Ignoring malformed remote note: {e}")
                if isinstance(record, dict) and record.get('id'):
                    unreadable.add(str(record['id']))
                continue
            remote[note.id] = note

        pending_deletes = {i.note_id for i in self.queue.peek_all() if i.operation == SyncOperation.DELETE}
        local = {n.id: n for n in self.db.list_notes()}

        merged: List[Note] = []
        to_push: List[str] = []
        pulled = kept_local = 0
        for note_id, local_note in local.items():
            remote_note = remote.get(note_id)
            if remote_note is None:
                merged.append(local_note)
                kept_local += 1
                if note_id not in unreadable:
                    to_push.append(note_id)
            elif local_note.updated_at > remote_note.updated_at:
                merged.append(local_note)
                kept_local += 1
                to_push.append(note_id)
            else:
                merged.append(remote_note)
                pulled += 1

        for note_id, remote_note in remote.items():
            if note_id in local or note_id in pending_deletes:
                continue
            merged.append(remote_note)
            pulled += 1

        with self.db.transaction():
            self.db.replace_all_notes(merged)
            self.ledger.recompute()

        for note_id in to_push:
            self.queue.enqueue(note_id, SyncOperation.UPSERT)

        return SyncReport(
            status=SyncStatus.COMPLETED,
            pulled=pulled,
            kept_local=kept_local,
            pushed=len(to_push),
            skipped=len(records) - len(remote),
        )

    # --- Outbound draining ---

    async def drain(self) -> SyncReport:
        """Push queued changes oldest first; the first retryable failure ends the pass."""
        if not self.is_remote_available or self.state.user_id is None:
            return SyncReport(status=SyncStatus.SKIPPED)

        lock = self._lock
        if lock.locked():
            self._drain_requested = True
            return SyncReport(status=SyncStatus.SKIPPED)

        async with lock:
            report = await self._drain_locked()

        self._release(lock)
        return report

    def _release(self, lock: asyncio.Lock) -> None:
        """Re-issue a drain that was skipped while ``lock`` was held."""
        if self._drain_requested and lock is self._lock:
            self._drain_requested = False
            if self.has_pending_changes:
                self.request_drain()

    async def _drain_locked(self) -> SyncReport:
        generation = self._generation
        user_id = self.state.user_id
        pushed = deleted = skipped = 0
        start_time = time.time()
        self._begin(SyncPhase.DRAINING)
        try:
            while self._session_active(generation):
                item = self.queue.drain_next()
                if item is None:
                    break
                try:
                    if item.operation == SyncOperation.UPSERT:
                        note = self.db.get_note(item.note_id)
                        if note is None:
                            logger.debug(f"Note {item.note_id} vanished before push; skipping")
                            skipped += 1
                        else:
                            await self.gateway.upsert_note(note_to_wire(note, user_id))
                            pushed += 1
                    else:
                        await self.gateway.soft_delete_note(item.note_id, user_id)
                        deleted += 1
                except RemoteGatewayError as e:
                    if e.kind == SyncErrorKind.MALFORMED_PAYLOAD:
                        # Retrying a rejected record cannot succeed; drop it and keep going
                        logger.error(f"Remote rejected {item.operation.value} for note {item.note_id}: {e}")
                        self.queue.complete(item)
                        skipped += 1
                        continue
                    self.queue.restore(item)
                    return self._fail("drain", e.kind, str(e), generation,
                                      pushed=pushed, deleted=deleted, skipped=skipped)
                self.queue.complete(item)
        finally:
            self._finish(generation)

        if not self._session_active(generation):
            return SyncReport(status=SyncStatus.SKIPPED, pushed=pushed, deleted=deleted, skipped=skipped)

        self.state.last_synced_at = utc_now()
        self.state.is_online = True
        self.state.last_error = None
        if pushed or deleted:
            log_counter("notes_sync_pushed", value=pushed + deleted)
            log_histogram("notes_sync_drain_duration", time.time() - start_time)
            logger.info(f"Drained sync queue: {pushed} upserted, {deleted} deleted, {skipped} skipped")
        return SyncReport(status=SyncStatus.COMPLETED, pushed=pushed, deleted=deleted, skipped=skipped)

    # --- Inbound events ---

    def handle_remote_insert(self, record: WireRecord) -> None:
        """Insert a note created elsewhere. An existing local note is never overwritten."""
        note = self._decode_event("insert", record)
        if note is None:
            return
        if self.db.get_note(note.id) is not None:
            logger.debug(f"Remote insert for existing note {note.id}; keeping local copy")
            self._count_event("insert", "ignored")
            return
        if note.id in self.queue and self.queue.get(note.id).operation == SyncOperation.DELETE:
            self._count_event("insert", "ignored")
            return
        try:
            with self.db.transaction():
                self.db.insert_note(note)
                self.ledger.note_created(note.tags)
        except NotesDBError as e:
            logger.error(f"Failed to apply remote insert for note {note.id}: {e}")
            self._count_event("insert", "error")
            return
        self._count_event("insert", "applied")

    def handle_remote_update(self, record: WireRecord) -> None:
        """Overwrite the local note with the incoming state. Unknown ids are ignored."""
        note = self._decode_event("update", record)
        if note is None:
            return
        try:
            with self.db.transaction():
                current = self.db.get_note(note.id)
                if current is None:
                    logger.debug(f"Remote update for unknown note {note.id}; ignoring")
                    self._count_event("update", "ignored")
                    return
                self.db.update_note(note.id, {
                    'title': note.title,
                    'content': note.content,
                    'plain_text': note.plain_text,
                    'tags': note.tags,
                    'is_pinned': note.is_pinned,
                    'is_archived': note.is_archived,
                    'is_trashed': note.is_trashed,
                    'trashed_at': note.trashed_at,
                    'metadata': note.metadata,
                    'updated_at': note.updated_at,
                })
                self.ledger.tags_changed(current.tags, note.tags)
        except NotesDBError as e:
            logger.error(f"Failed to apply remote update for note {note.id}: {e}")
            self._count_event("update", "error")
            return
        self._count_event("update", "applied")

    def handle_remote_delete(self, note_id: str) -> None:
        """Remove the note locally, if present."""
        if self.state.user_id is None:
            return
        if not note_id:
            logger.warning("Dropping remote delete event without a note id")
            self._count_event("delete", "malformed")
            return
        try:
            with self.db.transaction():
                current = self.db.get_note(note_id)
                if current is None:
                    self._count_event("delete", "ignored")
                    return
                self.db.delete_note(note_id)
                self.ledger.note_deleted(current.tags)
        except NotesDBError as e:
            logger.error(f"Failed to apply remote delete for note {note_id}: {e}")
            self._count_event("delete", "error")
            return
        self._count_event("delete", "applied")

    def _decode_event(self, event: str, record: Any) -> Optional[Note]:
        if self.state.user_id is None:
            return None
        try:
            return note_from_wire(record)
        except MalformedRecordError as e:
            logger.warning(f"Dropping malformed remote {event} event: {e}")
            self._count_event(event, "malformed")
            return None


    def _count_event(self, event: str, result: str) -> None:
        log_counter("notes_sync_inbound_event", labels={"event": event, "result": result})

    # --- State bookkeeping ---

    def _begin(self, phase: SyncPhase) -> None:
        self.state.is_syncing = True
        self.state.phase = phase

    def _finish(self, generation: int) -> None:
        # A reset state belongs to the next session
        if self._session_active(generation):
            self.state.is_syncing = False
            self.state.phase = SyncPhase.IDLE

    def _fail(self, pass_name: str, kind: SyncErrorKind, message: str, generation: int, **counts) -> SyncReport:
        if not self._session_active(generation):
            logger.info(f"Session changed during {pass_name}; discarding error: {message}")
            return SyncReport(status=SyncStatus.SKIPPED, **counts)

        self.state.last_error = kind
        if kind == SyncErrorKind.TRANSIENT_NETWORK:
            self.state.is_online = False
        log_counter(f"notes_sync_{pass_name}_error", labels={"kind": kind.value})
        if kind == SyncErrorKind.AUTH_EXPIRED:
            logger.warning(f"Sync {pass_name} stopped, session expired: {message}")
        else:
            logger.error(f"Sync {pass_name} failed ({kind.value}): {message}")
        return SyncReport(status=SyncStatus.FAILED, error_kind=kind, error=message, **counts)

#
# End of sync_engine.py
########################################################################################################################
