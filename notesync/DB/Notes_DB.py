# Notes_DB.py
# Description: Local SQLite store for notes, tags and the pending sync queue
#
"""
Notes_DB.py
-----------

The local system-of-record used while offline. Provides:
- keyed get/list/insert/partial-update/delete for notes and tags
- a query primitive over trashed/archived flags, tag membership and a
  substring search over title + plain text
- bulk replacement of the whole note set in one transaction
- persistence for the outbound sync queue

Single-record mutations are atomic. Cross-record invariants (tag note counts)
are the caller's responsibility; wrap multi-step work in ``transaction()``.
"""

import json
import sqlite3
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from loguru import logger

from .base_db import BaseDB, DatabaseError
from ..Notes.models import (
    Note, NoteMetadata, Tag, SyncQueueItem, SyncOperation,
    parse_timestamp, format_timestamp,
)


class NotesDBError(DatabaseError):
    """Base exception for the notes store."""
    pass


class InputError(NotesDBError):
    """Invalid field names or values passed to the store."""
    pass


class ConflictError(NotesDBError):
    """A record with the same key already exists."""
    pass


NOTE_UPDATABLE_FIELDS = frozenset({
    'title', 'content', 'plain_text', 'tags', 'is_pinned', 'is_archived',
    'is_trashed', 'trashed_at', 'metadata', 'created_at', 'updated_at',
})
TAG_UPDATABLE_FIELDS = frozenset({'name', 'color', 'note_count'})

_NOTE_COLUMNS = (
    "id, title, content, plain_text, tags, is_pinned, is_archived, is_trashed, "
    "trashed_at, metadata, created_at, updated_at"
)


def _escape_like(value: str) -> str:
    return value.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


class NotesDB(BaseDB):
    """SQLite-backed local store for notes, tags and queued sync operations."""

    def __init__(self, db_path: Union[str, Path], client_id: str = "notesync_local"):
        super().__init__(db_path, client_id)

    def _initialize_schema(self):
        schema = """
        CREATE TABLE IF NOT EXISTS notes (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL DEFAULT '',
            plain_text TEXT NOT NULL DEFAULT '',
            tags TEXT NOT NULL DEFAULT '[]',       -- JSON array of lowercase names
            is_pinned INTEGER NOT NULL DEFAULT 0,
            is_archived INTEGER NOT NULL DEFAULT 0,
            is_trashed INTEGER NOT NULL DEFAULT 0,
            trashed_at TEXT,
            metadata TEXT NOT NULL DEFAULT '{}',   -- JSON NoteMetadata
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS tags (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            color TEXT NOT NULL,
            note_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_queue (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            note_id TEXT NOT NULL UNIQUE,
            operation TEXT NOT NULL CHECK(operation IN ('upsert', 'delete')),
            enqueued_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_notes_updated_at ON notes(updated_at);
        CREATE INDEX IF NOT EXISTS idx_notes_flags ON notes(is_trashed, is_archived, is_pinned);
        """
        conn = self._get_connection()
        conn.executescript(schema)

    # ------------------------------------------------------------------ rows

    @staticmethod
    def _metadata_to_json(metadata: NoteMetadata) -> str:
        return json.dumps(asdict(metadata))

    @staticmethod
    def _metadata_from_json(raw: Optional[str]) -> NoteMetadata:
        if not raw:
            return NoteMetadata()
        data = json.loads(raw)
        return NoteMetadata(
            word_count=int(data.get('word_count', 0)),
            char_count=int(data.get('char_count', 0)),
            reading_time=int(data.get('reading_time', 0)),
            ai_summary=data.get('ai_summary'),
            ai_tags=data.get('ai_tags'),
        )

    def _row_to_note(self, row: sqlite3.Row) -> Note:
        return Note(
            id=row['id'],
            title=row['title'],
            content=row['content'],
            plain_text=row['plain_text'],
            tags=json.loads(row['tags']),
            is_pinned=bool(row['is_pinned']),
            is_archived=bool(row['is_archived']),
            is_trashed=bool(row['is_trashed']),
            trashed_at=parse_timestamp(row['trashed_at']) if row['trashed_at'] else None,
            metadata=self._metadata_from_json(row['metadata']),
            created_at=parse_timestamp(row['created_at']),
            updated_at=parse_timestamp(row['updated_at']),
        )

    def _note_params(self, note: Note) -> tuple:
        return (
            note.id, note.title, note.content, note.plain_text, json.dumps(list(note.tags)),
            int(note.is_pinned), int(note.is_archived), int(note.is_trashed),
            format_timestamp(note.trashed_at) if note.trashed_at else None,
            self._metadata_to_json(note.metadata),
            format_timestamp(note.created_at), format_timestamp(note.updated_at),
        )

    def _note_column_value(self, field_name: str, value: Any) -> Any:
        if field_name == 'tags':
            return json.dumps(list(value or []))
        if field_name == 'metadata':
            return self._metadata_to_json(value if value is not None else NoteMetadata())
        if field_name in ('is_pinned', 'is_archived', 'is_trashed'):
            return int(bool(value))
        if field_name in ('trashed_at', 'created_at', 'updated_at'):
            if value is None:
                if field_name != 'trashed_at':
                    raise InputError(f"{field_name} cannot be null")
                return None
            return format_timestamp(value)
        return value

    @staticmethod
    def _row_to_tag(row: sqlite3.Row) -> Tag:
        return Tag(
            id=row['id'],
            name=row['name'],
            color=row['color'],
            note_count=row['note_count'],
            created_at=parse_timestamp(row['created_at']),
        )

    # ----------------------------------------------------------------- notes

    def get_note(self, note_id: str) -> Optional[Note]:
        row = self._get_connection().execute(
            f"SELECT {_NOTE_COLUMNS} FROM notes WHERE id = ?", (note_id,)
        ).fetchone()
        return self._row_to_note(row) if row else None

    def list_notes(self) -> List[Note]:
        rows = self._get_connection().execute(
            f"SELECT {_NOTE_COLUMNS} FROM notes ORDER BY updated_at DESC"
        ).fetchall()
        return [self._row_to_note(r) for r in rows]

    def insert_note(self, note: Note) -> None:
        """
        Raises:
            ConflictError: If a note with the same id exists.
        """
        try:
            with self.transaction() as conn:
                conn.execute(
                    f"INSERT INTO notes ({_NOTE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._note_params(note),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Note {note.id} already exists") from e

    def update_note(self, note_id: str, changes: Dict[str, Any]) -> bool:
        """
        Partially update a note.

        Args:
            note_id: Note to update
            changes: Mapping of Note attribute names to new values

        Returns:
            True if a row was updated, False if the note does not exist.
        """
        unknown = set(changes) - NOTE_UPDATABLE_FIELDS
        if unknown:
            raise InputError(f"Cannot update note fields: {sorted(unknown)}")
        if not changes:
            return self.get_note(note_id) is not None

        columns = list(changes)
        set_clause = ", ".join(f"{c} = ?" for c in columns)
        values = [self._note_column_value(c, changes[c]) for c in columns]
        with self.transaction() as conn:
            cursor = conn.execute(f"UPDATE notes SET {set_clause} WHERE id = ?", (*values, note_id))
        return cursor.rowcount > 0

    def delete_note(self, note_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))
        return cursor.rowcount > 0

    def replace_all_notes(self, notes: Iterable[Note]) -> int:
        """Replace the entire note set atomically. Returns the new note count."""
        params = [self._note_params(n) for n in notes]
        with self.transaction() as conn:
            conn.execute("DELETE FROM notes")
            conn.executemany(
                f"INSERT INTO notes ({_NOTE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                params,
            )
        logger.debug(f"Replaced local note set with {len(params)} notes")
        return len(params)

    def query_notes(
        self,
        is_trashed: Optional[bool] = None,
        is_archived: Optional[bool] = None,
        is_pinned: Optional[bool] = None,
        tag: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Note]:
        """
        Filter notes. ``None`` leaves a criterion unconstrained.

        ``search`` is a case-insensitive substring match over title and plain text.
        Results are ordered by updated_at, newest first.
        """
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (('is_trashed', is_trashed), ('is_archived', is_archived), ('is_pinned', is_pinned)):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(int(value))
        if tag:
            clauses.append("EXISTS (SELECT 1 FROM json_each(notes.tags) WHERE json_each.value = ?)")
            params.append(tag.strip().lower())
        if search:
            like = f"%{_escape_like(search)}%"
            clauses.append("(title LIKE ? ESCAPE '\\' OR plain_text LIKE ? ESCAPE '\\')")
            params.extend([like, like])

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._get_connection().execute(
            f"SELECT {_NOTE_COLUMNS} FROM notes {where} ORDER BY updated_at DESC", params
        ).fetchall()
        return [self._row_to_note(r) for r in rows]

    def count_notes(self) -> int:
        return self._get_connection().execute("SELECT COUNT(*) FROM notes").fetchone()[0]

    # ------------------------------------------------------------------ tags

    def get_tag(self, tag_id: str) -> Optional[Tag]:
        row = self._get_connection().execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()
        return self._row_to_tag(row) if row else None

    def get_tag_by_name(self, name: str) -> Optional[Tag]:
        row = self._get_connection().execute(
            "SELECT * FROM tags WHERE name = ?", (name.strip().lower(),)
        ).fetchone()
        return self._row_to_tag(row) if row else None

    def list_tags(self) -> List[Tag]:
        rows = self._get_connection().execute("SELECT * FROM tags ORDER BY name").fetchall()
        return [self._row_to_tag(r) for r in rows]

    def insert_tag(self, tag: Tag) -> None:
        try:
            with self.transaction() as conn:
                conn.execute(
                    "INSERT INTO tags (id, name, color, note_count, created_at) VALUES (?, ?, ?, ?, ?)",
                    (tag.id, tag.name.strip().lower(), tag.color, tag.note_count, format_timestamp(tag.created_at)),
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Tag '{tag.name}' already exists") from e

    def update_tag(self, tag_id: str, changes: Dict[str, Any]) -> bool:
        unknown = set(changes) - TAG_UPDATABLE_FIELDS
        if unknown:
            raise InputError(f"Cannot update tag fields: {sorted(unknown)}")
        if not changes:
            return self.get_tag(tag_id) is not None
        if 'name' in changes:
            changes = {**changes, 'name': str(changes['name']).strip().lower()}
        columns = list(changes)
        set_clause = ", ".join(f"{c} = ?" for c in columns)
        try:
            with self.transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE tags SET {set_clause} WHERE id = ?", (*[changes[c] for c in columns], tag_id)
                )
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Tag rename conflicts with an existing tag: {changes.get('name')}") from e
        return cursor.rowcount > 0

    def delete_tag(self, tag_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM tags WHERE id = ?", (tag_id,))
        return cursor.rowcount > 0

    def tag_counts_from_notes(self) -> Dict[str, int]:
        """Count notes per tag name over every stored note (trashed included)."""
        counts: Dict[str, int] = {}
        for (raw_tags,) in self._get_connection().execute("SELECT tags FROM notes").fetchall():
            for name in set(json.loads(raw_tags)):
                counts[name] = counts.get(name, 0) + 1
        return counts

    # ------------------------------------------------------------ sync queue

    def queue_put(self, note_id: str, operation: SyncOperation, enqueued_at: datetime) -> int:
        """Replace any queued row for the note with a new one at the tail. Returns its seq."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM sync_queue WHERE note_id = ?", (note_id,))
            cursor = conn.execute(
                "INSERT INTO sync_queue (note_id, operation, enqueued_at) VALUES (?, ?, ?)",
                (note_id, operation.value, format_timestamp(enqueued_at)),
            )
        return cursor.lastrowid

    def queue_remove(self, note_id: str, seq: Optional[int] = None) -> bool:
        with self.transaction() as conn:
            if seq is None:
                cursor = conn.execute("DELETE FROM sync_queue WHERE note_id = ?", (note_id,))
            else:
                cursor = conn.execute("DELETE FROM sync_queue WHERE note_id = ? AND seq = ?", (note_id, seq))
        return cursor.rowcount > 0

    def queue_items(self) -> List[SyncQueueItem]:
        rows = self._get_connection().execute(
            "SELECT seq, note_id, operation, enqueued_at FROM sync_queue ORDER BY seq"
        ).fetchall()
        return [
            SyncQueueItem(
                note_id=r['note_id'],
                operation=SyncOperation(r['operation']),
                enqueued_at=parse_timestamp(r['enqueued_at']),
                seq=r['seq'],
            )
            for r in rows
        ]

    def queue_clear(self) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM sync_queue")
