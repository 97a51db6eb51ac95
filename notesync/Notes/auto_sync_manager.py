# auto_sync_manager.py
# Description: Debounced, periodic and retrying drives for the notes sync engine
#
# Imports
import asyncio
from typing import Any, Awaitable, Callable, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from .models import SyncReport, SyncStatus, SyncErrorKind
from .sync_engine import NotesSyncEngine
#
########################################################################################################################
#
# Classes:

CallLater = Callable[[float, Callable[[], None]], Any]


class DebouncedTask:
    """
    Runs an async callback once a burst of ``schedule()`` calls has been quiet for ``delay`` seconds.

    Each ``schedule()`` restarts the timer. When the timer fires the callback
    runs as its own task. Single-flight is left to the callback (the sync
    engine's session lock). ``call_later`` defaults to the running loop's and
    can be replaced with a fake scheduler in tests.
    """

    def __init__(self, callback: Callable[[], Awaitable[Any]], delay: float,
                 call_later: Optional[CallLater] = None, name: str = "debounced-task"):
        self.callback = callback
        self.delay = delay
        self.name = name
        self._call_later = call_later
        self._handle: Any = None
        self.task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        self.cancel()
        call_later = self._call_later or asyncio.get_running_loop().call_later
        self._handle = call_later(self.delay, self._fire)

    def cancel(self) -> None:
        """Cancel the pending timer. A callback that is already running is left alone."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self.task = asyncio.ensure_future(self._run())

    async def _run(self) -> Any:
        try:
            return await self.callback()
        except Exception as e:
            logger.error(f"{self.name} failed: {e}")
            return None

    async def flush(self) -> Any:
        """Run the callback now instead of waiting for the timer."""
        self.cancel()
        return await self._run()


class AutoSyncManager:
    """Manages automatic synchronization of notes for a signed-in user."""

    def __init__(
        self,
        engine: NotesSyncEngine,
        debounce_seconds: float = 1.0,
        sync_interval: float = 30.0,
        retry_delay: float = 5.0,
        max_retries: int = 3,
        call_later: Optional[CallLater] = None,
    ):
        self.engine = engine
        self.debounce_seconds = debounce_seconds
        self.sync_interval = sync_interval
        self.retry_delay = retry_delay
        self.max_retries = max_retries
        self._call_later = call_later

        self.debouncer = DebouncedTask(self._drain, debounce_seconds, call_later, name="notes-drain")
        self.retry_count = 0
        self._retry_handle: Any = None
        self.retry_task: Optional[asyncio.Future] = None
        self.sync_task: Optional[asyncio.Task] = None
        self.is_running = False

        # Callbacks for UI updates
        self.on_sync_started: Optional[Callable[[], None]] = None
        self.on_sync_completed: Optional[Callable[[SyncReport], None]] = None
        self.on_sync_error: Optional[Callable[[SyncReport], None]] = None
        self.on_auth_expired: Optional[Callable[[], None]] = None

    async def start(self, user_id: str) -> SyncReport:
        """Start the session for ``user_id`` and the periodic sync loop."""
        if self.is_running:
            await self.stop()

        self.is_running = True
        self.retry_count = 0
        self.engine.drain_scheduler = self.debouncer.schedule

        self._notify_started()
        report = await self.engine.start_session(user_id)
        self._handle_report(report, retry=self.trigger_sync)

        if self.sync_interval and self.sync_interval > 0:
            self.sync_task = asyncio.create_task(self._sync_loop())
        logger.info(f"Auto-sync started for user {user_id}")
        return report

    async def stop(self) -> None:
        """Stop timers and the periodic loop and end the engine session."""
        self.is_running = False
        self.debouncer.cancel()
        self._cancel_retry()
        self.engine.drain_scheduler = None

        if self.sync_task:
            self.sync_task.cancel()
            try:
                await self.sync_task
            except asyncio.CancelledError:
                pass
            self.sync_task = None

        self.engine.end_session()
        logger.info("Auto-sync stopped")

    async def trigger_sync(self) -> SyncReport:
        """Manual refresh: full reconciliation followed by a drain."""
        self._notify_started()
        reconcile_report = await self.engine.reconcile()
        self._handle_report(reconcile_report, retry=self.trigger_sync)
        if reconcile_report.status == SyncStatus.FAILED:
            return reconcile_report

        drain_report = await self._drain(notify=False)
        return SyncReport(
            status=drain_report.status if drain_report.status != SyncStatus.SKIPPED else reconcile_report.status,
            pulled=reconcile_report.pulled,
            kept_local=reconcile_report.kept_local,
            pushed=drain_report.pushed,
            deleted=drain_report.deleted,
            skipped=reconcile_report.skipped + drain_report.skipped,
            error_kind=drain_report.error_kind,
            error=drain_report.error,
        )

    async def _drain(self, notify: bool = True) -> SyncReport:
        if notify and self.engine.has_pending_changes:
            self._notify_started()
        report = await self.engine.drain()
        self._handle_report(report, retry=self._drain)
        return report

    async def _sync_loop(self):
        """Periodically drain whatever the debouncer has not delivered yet."""
        while self.is_running:
            try:
                await asyncio.sleep(self.sync_interval)
                if self.engine.has_pending_changes and not self.engine.is_busy:
                    await self._drain()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in sync loop: {e}")

    # --- Retry policy ---

    def _handle_report(self, report: SyncReport, retry: Callable[[], Awaitable[Any]]) -> None:
        if report.status == SyncStatus.SKIPPED:
            return
        if report.ok:
            self.retry_count = 0
            if self.on_sync_completed:
                self.on_sync_completed(report)
            return

        if self.on_sync_error:
            self.on_sync_error(report)

        if report.error_kind == SyncErrorKind.AUTH_EXPIRED:
            self.retry_count = 0
            logger.warning("Remote session expired; waiting for re-authentication")
            if self.on_auth_expired:
                self.on_auth_expired()
        elif report.error_kind == SyncErrorKind.TRANSIENT_NETWORK:
            if self.retry_count < self.max_retries:
                self.retry_count += 1
                logger.info(f"Retrying sync in {self.retry_delay}s (attempt {self.retry_count}/{self.max_retries})")
                self._schedule_retry(retry)
            else:
                logger.warning(f"Giving up after {self.max_retries} retries; next change or refresh will retry")
                self.retry_count = 0

    def _schedule_retry(self, retry: Callable[[], Awaitable[Any]]) -> None:
        self._cancel_retry()
        call_later = self._call_later or asyncio.get_running_loop().call_later

        def fire():
            self._retry_handle = None
            if self.is_running:
                self.retry_task = asyncio.ensure_future(retry())

        self._retry_handle = call_later(self.retry_delay, fire)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    def _notify_started(self) -> None:
        if self.on_sync_started:
            self.on_sync_started()

#
# End of auto_sync_manager.py
########################################################################################################################
