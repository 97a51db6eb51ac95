# models.py
# Description: Notes data model, timestamp helpers and sync state
#
# Imports
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
#
# Local Imports
from ..Utils.text_utils import extract_first_line, get_word_count, get_char_count, get_reading_time
#
########################################################################################################################
#
# Functions:

DEFAULT_TAG_COLOR = '#6366f1'
UNTITLED = 'Untitled'

_FRACTION_RE = re.compile(r'\.(\d+)(?=[+-]\d{2}:?\d{2}$|$)')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_timestamp(value) -> datetime:
    """
    Parse an ISO-8601 string (or pass through a datetime) into an aware UTC datetime.

    Naive values are taken to be UTC. A trailing 'Z' is accepted.

    Raises:
        ValueError: If the value is not a datetime or a parseable string.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        # Postgres trims trailing zeros from fractional seconds
        text = _FRACTION_RE.sub(lambda m: '.' + m.group(1).ljust(6, '0')[:6], text)
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return parse_timestamp(value).isoformat()

#
# Classes:

class SyncOperation(Enum):
    """Kind of pending outbound change for a note."""
    UPSERT = "upsert"
    DELETE = "delete"


class SyncPhase(Enum):
    IDLE = "idle"
    RECONCILING = "reconciling"
    DRAINING = "draining"


class SyncStatus(Enum):
    """Outcome of a single reconcile or drain pass."""
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncErrorKind(Enum):
    TRANSIENT_NETWORK = "transient_network"
    AUTH_EXPIRED = "auth_expired"
    NOT_CONFIGURED = "not_configured"
    MALFORMED_PAYLOAD = "malformed_payload"


@dataclass
class NoteMetadata:
    """Derived statistics for a note's plain text."""

    word_count: int = 0
    char_count: int = 0
    reading_time: int = 0
    ai_summary: Optional[str] = None
    ai_tags: Optional[List[str]] = None

    @classmethod
    def from_plain_text(cls, plain_text: str, base: Optional['NoteMetadata'] = None) -> 'NoteMetadata':
        """Recompute the counters, keeping any AI fields from ``base``."""
        word_count = get_word_count(plain_text)
        return cls(
            word_count=word_count,
            char_count=get_char_count(plain_text),
            reading_time=get_reading_time(word_count),
            ai_summary=base.ai_summary if base else None,
            ai_tags=list(base.ai_tags) if base and base.ai_tags is not None else None,
        )


@dataclass
class Note:
    """Represents a single note."""

    id: str
    title: str = ""
    content: str = ""
    plain_text: str = ""
    tags: List[str] = field(default_factory=list)

    is_pinned: bool = False
    is_archived: bool = False
    is_trashed: bool = False
    trashed_at: Optional[datetime] = None

    metadata: NoteMetadata = field(default_factory=NoteMetadata)

    # Timestamps
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def display_title(self) -> str:
        return self.title or UNTITLED

    @property
    def preview(self) -> str:
        """First line of the plain text, shortened for list views."""
        return extract_first_line(self.plain_text)

    @property
    def visibility(self) -> str:
        """Trashed takes precedence over archived."""
        if self.is_trashed:
            return "trashed"
        if self.is_archived:
            return "archived"
        return "active"

    def copy(self, **changes) -> 'Note':
        return replace(self, **changes)


@dataclass
class Tag:
    """A named label with a cached usage counter."""

    id: str
    name: str
    color: str = DEFAULT_TAG_COLOR
    note_count: int = 0
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SyncQueueItem:
    """A pending outbound operation for one note."""

    note_id: str
    operation: SyncOperation
    enqueued_at: datetime = field(default_factory=utc_now)
    seq: int = 0


@dataclass
class SyncReport:
    """Result of one reconcile or drain pass."""

    status: SyncStatus
    pulled: int = 0
    kept_local: int = 0
    pushed: int = 0
    deleted: int = 0
    skipped: int = 0
    error_kind: Optional[SyncErrorKind] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.COMPLETED


@dataclass
class SyncState:
    """Process-wide sync indicators for one authenticated session."""

    user_id: Optional[str] = None
    is_syncing: bool = False
    last_synced_at: Optional[datetime] = None
    is_online: bool = False
    last_error: Optional[SyncErrorKind] = None
    phase: SyncPhase = SyncPhase.IDLE
    subscribed: bool = False

    def initialize(self, user_id: str) -> None:
        self.reset()
        self.user_id = user_id

    def reset(self) -> None:
        self.user_id = None
        self.is_syncing = False
        self.last_synced_at = None
        self.is_online = False
        self.last_error = None
        self.phase = SyncPhase.IDLE
        self.subscribed = False

#
# End of models.py
########################################################################################################################
