# sync_service.py
# Description: Service layer wiring the note store, sync engine and scheduler together
#
# Imports
from pathlib import Path
from typing import Any, Dict, Optional, Union
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from ..config import get_notes_db_path, get_remote_credentials, get_sync_settings
from ..DB.Notes_DB import NotesDB
from ..Remote.gateway import RemoteGateway
from ..Remote.supabase_gateway import SupabaseGateway
from .auto_sync_manager import AutoSyncManager, CallLater
from .models import SyncReport, SyncState, format_timestamp
from .notes_service import NotesService
from .sync_engine import NotesSyncEngine
from .sync_queue import SyncQueue
from .tag_ledger import TagLedger
#
########################################################################################################################
#
# Classes:

class NotesSyncService:
    """
    One object per client process: owns the local store and the sync stack.

    ``notes`` is the mutation/query API for the UI; every change it makes is
    reported to the engine, which queues and pushes it while a session is active.
    """

    def __init__(
        self,
        db_path: Optional[Union[str, Path]] = None,
        gateway: Optional[RemoteGateway] = None,
        settings: Optional[Dict[str, Any]] = None,
        call_later: Optional[CallLater] = None,
    ):
        """
        Args:
            db_path: SQLite path; defaults to [database].notes_db_path
            gateway: Remote gateway; defaults to a SupabaseGateway built from [remote]
            settings: Overrides for ``config.get_sync_settings()``
            call_later: Scheduler for debounce and retry timers (tests)
        """
        self.settings = {**get_sync_settings(), **(settings or {})}

        self.db = NotesDB(db_path if db_path is not None else get_notes_db_path())
        self.queue = SyncQueue(self.db)
        self.ledger = TagLedger(self.db)

        if gateway is None:
            url, anon_key = get_remote_credentials()
            gateway = SupabaseGateway(
                url, anon_key,
                poll_interval=self.settings['poll_interval'],
                timeout=self.settings['request_timeout'],
            )
        self.gateway = gateway

        self.state = SyncState()
        self.engine = NotesSyncEngine(self.db, self.queue, self.ledger, gateway=self.gateway, state=self.state)
        self.notes = NotesService(self.db, self.ledger, change_listener=self.engine.record_local_change)
        self.manager = AutoSyncManager(
            self.engine,
            debounce_seconds=self.settings['debounce_seconds'],
            sync_interval=self.settings['sync_interval'],
            retry_delay=self.settings['retry_delay'],
            max_retries=self.settings['max_retries'],
            call_later=call_later,
        )
        logger.info(f"Notes sync service ready (db: {self.db.db_path_str}, "
                    f"remote: {'on' if self.engine.is_remote_available else 'off'})")

    async def sign_in(self, user_id: str, access_token: Optional[str] = None) -> SyncReport:
        """Begin a session: hand the token to the gateway, subscribe and reconcile."""
        if access_token is not None and hasattr(self.gateway, 'set_access_token'):
            self.gateway.set_access_token(access_token)
        return await self.manager.start(user_id)

    async def sign_out(self) -> None:
        """End the session. Pending local changes stay queued for the next sign-in."""
        await self.manager.stop()
        if hasattr(self.gateway, 'set_access_token'):
            self.gateway.set_access_token(None)

    async def refresh(self) -> SyncReport:
        return await self.manager.trigger_sync()

    def get_status(self) -> Dict[str, Any]:
        state = self.state
        return {
            'user_id': state.user_id,
            'is_syncing': state.is_syncing,
            'is_online': state.is_online,
            'phase': state.phase.value,
            'subscribed': state.subscribed,
            'last_synced_at': format_timestamp(state.last_synced_at) if state.last_synced_at else None,
            'last_error': state.last_error.value if state.last_error else None,
            'pending_changes': len(self.queue),
            'remote_available': self.engine.is_remote_available,
        }

    async def close(self) -> None:
        if self.manager.is_running:
            await self.manager.stop()
        close = getattr(self.gateway, 'close', None)
        if close is not None:
            await close()
        self.db.close()

#
# End of sync_service.py
########################################################################################################################
