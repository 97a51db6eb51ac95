# notes_service.py
# Description: Local note operations used by the UI layer
#
# Imports
from typing import Any, Callable, Dict, List, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..DB.Notes_DB import NotesDB, InputError
from .models import Note, NoteMetadata, Tag, SyncOperation, new_id, utc_now
from .tag_ledger import TagLedger, normalize_tags
from ..Utils.text_utils import strip_html
#
########################################################################################################################
#
# Classes:

ChangeListener = Callable[[str, SyncOperation], None]

EDITABLE_FIELDS = frozenset({'title', 'content', 'plain_text', 'tags', 'is_pinned', 'is_archived'})
VIEWS = ('active', 'archived', 'trash')


class NoteNotFoundError(Exception):
    """Raised when an operation targets a note id that is not in the local store."""

    def __init__(self, note_id: str):
        super().__init__(f"Note not found: {note_id}")
        self.note_id = note_id


class NotesService:
    """
    Create, edit and organize notes against the local store.

    Every mutation:
    - bumps ``updated_at``
    - derives the plain text from ``content`` when only the content is given
    - recomputes metadata when the plain text changes
    - updates tag counts in the same transaction as the note write
    - reports the note id and operation to ``change_listener`` after commit

    Trashing is a regular update (UPSERT); only permanent deletion reports DELETE.
    """

    def __init__(self, db: NotesDB, ledger: TagLedger, change_listener: Optional[ChangeListener] = None):
        self.db = db
        self.ledger = ledger
        self.change_listener = change_listener

    def _notify(self, note_id: str, operation: SyncOperation) -> None:
        if self.change_listener:
            self.change_listener(note_id, operation)

    def _require(self, note_id: str) -> Note:
        note = self.db.get_note(note_id)
        if note is None:
            raise NoteNotFoundError(note_id)
        return note

    # --- Mutations ---

    def create_note(self, title: str = "", content: str = "", plain_text: str = "",
                    tags: Optional[List[str]] = None) -> Note:
        now = utc_now()
        if content and not plain_text:
            plain_text = strip_html(content)
        note = Note(
            id=new_id(),
            title=title,
            content=content,
            plain_text=plain_text,
            tags=normalize_tags(tags),
            metadata=NoteMetadata.from_plain_text(plain_text),
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction():
            self.db.insert_note(note)
            self.ledger.note_created(note.tags)

        logger.info(f"Created note {note.id} ('{note.display_title}')")
        self._notify(note.id, SyncOperation.UPSERT)
        return note

    def update_note(self, note_id: str, **changes: Any) -> Note:
        """
        Apply a partial edit.

        Raises:
            NoteNotFoundError: If the note does not exist.
            InputError: If ``changes`` names a field that cannot be edited.
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise InputError(f"Cannot edit note fields: {sorted(unknown)}")
        return self._apply(note_id, dict(changes))

    def _apply(self, note_id: str, changes: Dict[str, Any]) -> Note:
        with self.db.transaction():
            current = self._require(note_id)
            if 'tags' in changes:
                changes['tags'] = normalize_tags(changes['tags'])
            if 'content' in changes and 'plain_text' not in changes:
                changes['plain_text'] = strip_html(changes['content'])
            if 'plain_text' in changes and changes['plain_text'] != current.plain_text:
                changes['metadata'] = NoteMetadata.from_plain_text(changes['plain_text'], base=current.metadata)
            changes['updated_at'] = utc_now()

            self.db.update_note(note_id, changes)
            if 'tags' in changes:
                self.ledger.tags_changed(current.tags, changes['tags'])
            updated = current.copy(**changes)

        self._notify(note_id, SyncOperation.UPSERT)
        return updated

    def trash_note(self, note_id: str) -> Note:
        logger.debug(f"Moving note {note_id} to trash")
        return self._apply(note_id, {'is_trashed': True, 'trashed_at': utc_now()})

    def restore_note(self, note_id: str) -> Note:
        return self._apply(note_id, {'is_trashed': False, 'trashed_at': None})

    def delete_note(self, note_id: str, permanent: bool = False) -> Optional[Note]:
        """
        Trash the note, or remove it for good when ``permanent`` is set.

        Returns the trashed note, or None after a permanent deletion.
        """
        if not permanent:
            return self.trash_note(note_id)

        with self.db.transaction():
            note = self._require(note_id)
            self.db.delete_note(note_id)
            self.ledger.note_deleted(note.tags)

        logger.info(f"Permanently deleted note {note_id}")
        self._notify(note_id, SyncOperation.DELETE)
        return None

    def toggle_pin(self, note_id: str) -> Note:
        note = self._require(note_id)
        return self._apply(note_id, {'is_pinned': not note.is_pinned})

    def archive_note(self, note_id: str) -> Note:
        return self._apply(note_id, {'is_archived': True})

    def unarchive_note(self, note_id: str) -> Note:
        return self._apply(note_id, {'is_archived': False})

    def set_tag_color(self, name: str, color: str) -> bool:
        return self.ledger.set_color(name, color)

    # --- Queries ---

    def get_note(self, note_id: str) -> Optional[Note]:
        return self.db.get_note(note_id)

    def list_notes(self, view: str = "active", tag: Optional[str] = None,
                   search: Optional[str] = None) -> List[Note]:
        """
        Notes in one of the ``active``, ``archived`` or ``trash`` views.

        Pinned notes come first; within each group newest ``updated_at`` first.
        """
        if view == "active":
            notes = self.db.query_notes(is_trashed=False, is_archived=False, tag=tag, search=search)
        elif view == "archived":
            notes = self.db.query_notes(is_trashed=False, is_archived=True, tag=tag, search=search)
        elif view == "trash":
            notes = self.db.query_notes(is_trashed=True, tag=tag, search=search)
        else:
            raise ValueError(f"Unknown view '{view}', expected one of {VIEWS}")
        # query_notes already orders by updated_at; the sort is stable
        return sorted(notes, key=lambda n: not n.is_pinned)

    def pinned_notes(self) -> List[Note]:
        return [n for n in self.list_notes() if n.is_pinned]

    def unpinned_notes(self) -> List[Note]:
        return [n for n in self.list_notes() if not n.is_pinned]

    def list_tags(self) -> List[Tag]:
        return self.db.list_tags()

#
# End of notes_service.py
########################################################################################################################
