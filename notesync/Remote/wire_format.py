# wire_format.py
# Description: The one mapping between Supabase `notes` rows and Note objects
#
"""
Remote rows use snake_case columns and a camelCase ``metadata`` JSON object::

    id, user_id, title, content, plain_text, tags, is_pinned, is_archived,
    is_trashed, trashed_at, metadata{wordCount, charCount, readingTime,
    aiSummary, aiTags}, created_at, updated_at, deleted_at

Defaulting rules when reading a row:
- ``id`` and ``updated_at`` are required; anything else may be missing or null
- strings default to "", ``tags`` to [], flags to False
- missing metadata becomes a zeroed NoteMetadata
- missing ``created_at`` falls back to ``updated_at``
- ``trashed_at`` is only kept when ``is_trashed`` is set
"""

from typing import Any, Dict, List, Optional

from ..Notes.models import Note, NoteMetadata, parse_timestamp, format_timestamp
from ..Notes.tag_ledger import normalize_tags
from .gateway import WireRecord


class MalformedRecordError(ValueError):
    """A wire record is missing required fields or has unusable values."""
    pass


_METADATA_KEYS = {
    'word_count': ('wordCount', 'word_count'),
    'char_count': ('charCount', 'char_count'),
    'reading_time': ('readingTime', 'reading_time'),
    'ai_summary': ('aiSummary', 'ai_summary'),
    'ai_tags': ('aiTags', 'ai_tags'),
}


def metadata_to_wire(metadata: NoteMetadata) -> Dict[str, Any]:
    wire: Dict[str, Any] = {
        'wordCount': metadata.word_count,
        'charCount': metadata.char_count,
        'readingTime': metadata.reading_time,
    }
    if metadata.ai_summary is not None:
        wire['aiSummary'] = metadata.ai_summary
    if metadata.ai_tags is not None:
        wire['aiTags'] = list(metadata.ai_tags)
    return wire


def metadata_from_wire(raw: Optional[Dict[str, Any]]) -> NoteMetadata:
    if not raw:
        return NoteMetadata()
    if not isinstance(raw, dict):
        raise MalformedRecordError(f"metadata must be an object, got {type(raw).__name__}")

    def pick(field_name: str) -> Any:
        for key in _METADATA_KEYS[field_name]:
            if raw.get(key) is not None:
                return raw[key]
        return None

    try:
        ai_tags = pick('ai_tags')
        return NoteMetadata(
            word_count=int(pick('word_count') or 0),
            char_count=int(pick('char_count') or 0),
            reading_time=int(pick('reading_time') or 0),
            ai_summary=pick('ai_summary'),
            ai_tags=[str(t) for t in ai_tags] if ai_tags is not None else None,
        )
    except (TypeError, ValueError) as e:
        raise MalformedRecordError(f"Invalid metadata: {e}") from e


def note_to_wire(note: Note, user_id: str) -> WireRecord:
    """Full remote row for an upsert."""
    return {
        'id': note.id,
        'user_id': user_id,
        'title': note.title,
        'content': note.content,
        'plain_text': note.plain_text,
        'tags': list(note.tags),
        'is_pinned': note.is_pinned,
        'is_archived': note.is_archived,
        'is_trashed': note.is_trashed,
        'trashed_at': format_timestamp(note.trashed_at) if note.trashed_at else None,
        'metadata': metadata_to_wire(note.metadata),
        'created_at': format_timestamp(note.created_at),
        'updated_at': format_timestamp(note.updated_at),
    }


def _timestamp(record: WireRecord, key: str):
    try:
        return parse_timestamp(record[key])
    except (ValueError, TypeError) as e:
        raise MalformedRecordError(f"Invalid {key}: {record.get(key)!r}") from e


def _tags(raw: Any) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise MalformedRecordError(f"tags must be a list, got {type(raw).__name__}")
    return normalize_tags(str(t) for t in raw)


def note_from_wire(record: Any) -> Note:
    """
    Build a Note from a remote row.

    Raises:
        MalformedRecordError: If the record is not a mapping, lacks ``id`` or
            ``updated_at``, or carries unusable values.
    """
    if not isinstance(record, dict):
        raise MalformedRecordError(f"Record must be an object, got {type(record).__name__}")
    for required in ('id', 'updated_at'):
        if not record.get(required):
            raise MalformedRecordError(f"Record is missing required field '{required}'")

    updated_at = _timestamp(record, 'updated_at')
    created_at = _timestamp(record, 'created_at') if record.get('created_at') else updated_at
    is_trashed = bool(record.get('is_trashed') or False)
    trashed_at = _timestamp(record, 'trashed_at') if is_trashed and record.get('trashed_at') else None

    return Note(
        id=str(record['id']),
        title=record.get('title') or "",
        content=record.get('content') or "",
        plain_text=record.get('plain_text') or "",
        tags=_tags(record.get('tags')),
        is_pinned=bool(record.get('is_pinned') or False),
        is_archived=bool(record.get('is_archived') or False),
        is_trashed=is_trashed,
        trashed_at=trashed_at,
        metadata=metadata_from_wire(record.get('metadata')),
        created_at=created_at,
        updated_at=updated_at,
    )
