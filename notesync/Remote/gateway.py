# gateway.py
# Description: Contract between the sync engine and the remote note store
#
# Imports
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
#
# Local Imports
from ..Notes.models import SyncErrorKind
#
########################################################################################################################
#
# Classes:

WireRecord = Dict[str, Any]


class RemoteGatewayError(Exception):
    """A remote call failed. ``kind`` drives the retry policy."""

    def __init__(self, kind: SyncErrorKind, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        return self.kind == SyncErrorKind.TRANSIENT_NETWORK


@dataclass
class ChangeHandlers:
    """Callbacks for the real-time change feed. Delete receives just the note id."""

    on_insert: Callable[[WireRecord], None]
    on_update: Callable[[WireRecord], None]
    on_delete: Callable[[str], None]


class RemoteGateway(ABC):
    """
    Backend-as-a-service operations the sync engine relies on.

    Every coroutine raises ``RemoteGatewayError`` on failure. Records are wire
    dictionaries (see ``wire_format``).
    """

    @abstractmethod
    def is_available(self) -> bool:
        """False when no credentials are configured; the engine then runs local-only."""

    @abstractmethod
    async def fetch_notes_since(self, user_id: str, since: Optional[datetime] = None) -> List[WireRecord]:
        """All non-soft-deleted notes of the user, optionally only those updated after ``since``."""

    @abstractmethod
    async def upsert_note(self, record: WireRecord) -> WireRecord:
        """Idempotent create-or-replace by id. Returns the stored record."""

    @abstractmethod
    async def soft_delete_note(self, note_id: str, user_id: str) -> None:
        """Set the deletion marker so the note drops out of future fetches."""

    @abstractmethod
    def subscribe_to_changes(self, user_id: str, handlers: ChangeHandlers) -> Any:
        """Open the push channel and return an opaque handle for ``unsubscribe``."""

    @abstractmethod
    def unsubscribe(self, channel: Any) -> None:
        """Close a channel returned by ``subscribe_to_changes``."""

#
# End of gateway.py
########################################################################################################################
