# notesync/Remote/supabase_gateway.py
# Description: Supabase (PostgREST) implementation of the remote gateway over httpx
#
# The change feed is a polling channel: an asyncio task that reads rows
# updated since a cursor and dispatches them as insert/update/delete events.

from __future__ import annotations
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from ..Notes.models import SyncErrorKind, utc_now, parse_timestamp, format_timestamp
from .gateway import RemoteGateway, RemoteGatewayError, ChangeHandlers, WireRecord

logger = logger.bind(module="supabase_gateway")

NOTES_TABLE = "notes"


class PollingChangeChannel:
    """Handle returned by ``subscribe_to_changes``; polls for rows changed after ``cursor``."""

    def __init__(self, gateway: "SupabaseGateway", user_id: str, handlers: ChangeHandlers,
                 poll_interval: float, cursor: datetime):
        self.gateway = gateway
        self.user_id = user_id
        self.handlers = handlers
        self.poll_interval = poll_interval
        self.cursor = cursor
        self.consecutive_failures = 0
        self.task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self) -> None:
        self.task = asyncio.create_task(self._run(), name=f"notes-changes-{self.user_id}")

    def stop(self) -> None:
        if self.task:
            self.task.cancel()
            self.task = None

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
            except RemoteGatewayError as e:
                self.consecutive_failures += 1
                logger.warning(f"Change feed poll failed ({e.kind.value}, attempt {self.consecutive_failures}): {e}")
            # Back off up to 8x the interval while the backend is unreachable
            delay = self.poll_interval * min(2 ** self.consecutive_failures, 8)
            await asyncio.sleep(delay)

    async def poll_once(self) -> int:
        """Fetch and dispatch one batch of changes. Returns the number of rows dispatched."""
        rows = await self.gateway.fetch_changes_since(self.user_id, self.cursor)
        self.consecutive_failures = 0
        # Inserts are judged against the cursor the batch was fetched with
        batch_cursor = self.cursor
        for row in rows:
            self._dispatch(row, batch_cursor)
        return len(rows)

    def _dispatch(self, row: WireRecord, batch_cursor: datetime) -> None:
        try:
            stamps = [parse_timestamp(row[k]) for k in ('updated_at', 'deleted_at') if row.get(k)]
            if stamps:
                self.cursor = max([self.cursor, *stamps])

            if self.gateway.is_own_write(row):
                logger.debug(f"Skipping echo of own write for note {row.get('id')}")
            elif row.get('deleted_at'):
                self.handlers.on_delete(str(row['id']))
            elif row.get('created_at') and parse_timestamp(row['created_at']) > batch_cursor:
                self.handlers.on_insert(row)
            else:
                self.handlers.on_update(row)
        except Exception as e:
            logger.error(f"Dropping change event for row {row.get('id') if isinstance(row, dict) else row!r}: {e}")


class SupabaseGateway(RemoteGateway):
    """Remote gateway backed by a Supabase project's REST API."""

    def __init__(self, url: Optional[str], anon_key: Optional[str], access_token: Optional[str] = None,
                 poll_interval: float = 5.0, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Args:
            url: Project URL, e.g. https://xyz.supabase.co
            anon_key: Project anon key
            access_token: User JWT; falls back to the anon key when not set
            poll_interval: Seconds between change feed polls
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.url = url.rstrip('/') if url else None
        self.anon_key = anon_key
        self.access_token = access_token
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._channels: List[PollingChangeChannel] = []
        # note id -> timestamp of the last row state this client wrote
        self._own_writes: Dict[str, datetime] = {}

        if self.is_available():
            logger.info(f"Supabase gateway configured for {self.url}")
        else:
            logger.info("Supabase credentials not configured. Running in local-only mode.")

    def is_available(self) -> bool:
        return bool(self.url and self.anon_key)

    def set_access_token(self, access_token: Optional[str]) -> None:
        self.access_token = access_token

    def is_own_write(self, row: WireRecord) -> bool:
        """True (once) when a change feed row is the echo of this client's last write to that note."""
        written = self._own_writes.get(str(row.get('id')))
        stamp = row.get('deleted_at') or row.get('updated_at')
        if written is None or not stamp:
            return False
        if parse_timestamp(stamp) != written:
            return False
        del self._own_writes[str(row['id'])]
        return True

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json", "Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        for channel in list(self._channels):
            self.unsubscribe(channel)
        if self._client:
            await self._client.aclose()
            self._client = None

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "apikey": self.anon_key or "",
            "Authorization": f"Bearer {self.access_token or self.anon_key}",
        }

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        if not self.is_available():
            raise RemoteGatewayError(SyncErrorKind.NOT_CONFIGURED, "Supabase is not configured")

        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403):
                raise RemoteGatewayError(SyncErrorKind.AUTH_EXPIRED,
                                         f"Supabase rejected credentials ({status})", status) from e
            if status == 429 or status >= 500:
                raise RemoteGatewayError(SyncErrorKind.TRANSIENT_NETWORK,
                                         f"Supabase unavailable ({status})", status) from e
            raise RemoteGatewayError(SyncErrorKind.MALFORMED_PAYLOAD,
                                     f"Supabase rejected request ({status}): {e.response.text}", status) from e
        except httpx.RequestError as e:
            # Timeouts, connection failures, redirects and undecodable streams
            raise RemoteGatewayError(SyncErrorKind.TRANSIENT_NETWORK, f"Network error: {e}") from e

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteGatewayError(SyncErrorKind.MALFORMED_PAYLOAD,
                                     f"Undecodable response body: {e}", response.status_code) from e

    async def fetch_notes_since(self, user_id: str, since: Optional[datetime] = None) -> List[WireRecord]:
        params = {
            "select": "*",
            "user_id": f"eq.{user_id}",
            "deleted_at": "is.null",
            "order": "updated_at.desc",
        }
        if since is not None:
            params["updated_at"] = f"gt.{format_timestamp(since)}"

        response = await self._request("GET", f"/{NOTES_TABLE}", params=params)
        data = self._json(response)
        if not isinstance(data, list):
            raise RemoteGatewayError(SyncErrorKind.MALFORMED_PAYLOAD, "Expected a list of notes")
        logger.debug(f"Fetched {len(data)} remote notes for user {user_id}")
        return data

    async def fetch_changes_since(self, user_id: str, cursor: datetime) -> List[WireRecord]:
        """Rows updated or soft-deleted after ``cursor``, deleted rows included, oldest first."""
        stamp = format_timestamp(cursor)
        params = {
            "select": "*",
            "user_id": f"eq.{user_id}",
            "or": f'(updated_at.gt."{stamp}",deleted_at.gt."{stamp}")',
            "order": "updated_at.asc",
        }
        response = await self._request("GET", f"/{NOTES_TABLE}", params=params)
        data = self._json(response)
        if not isinstance(data, list):
            raise RemoteGatewayError(SyncErrorKind.MALFORMED_PAYLOAD, "Expected a list of notes")
        return data

    async def upsert_note(self, record: WireRecord) -> WireRecord:
        response = await self._request(
            "POST", f"/{NOTES_TABLE}",
            json=record,
            params={"on_conflict": "id"},
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        data = self._json(response)
        if isinstance(data, list):
            if not data:
                raise RemoteGatewayError(SyncErrorKind.MALFORMED_PAYLOAD, "Upsert returned no rows")
            data = data[0]
        if not isinstance(data, dict):
            raise RemoteGatewayError(SyncErrorKind.MALFORMED_PAYLOAD, "Upsert returned a non-object row")
        stamp = data.get('updated_at') or record.get('updated_at')
        if stamp:
            self._own_writes[str(record['id'])] = parse_timestamp(stamp)
        return data

    async def soft_delete_note(self, note_id: str, user_id: str) -> None:
        now = utc_now()
        await self._request(
            "PATCH", f"/{NOTES_TABLE}",
            params={"id": f"eq.{note_id}", "user_id": f"eq.{user_id}"},
            json={"deleted_at": format_timestamp(now), "updated_at": format_timestamp(now)},
            headers={"Prefer": "return=minimal"},
        )
        self._own_writes[note_id] = now
        logger.debug(f"Soft-deleted remote note {note_id}")

    def subscribe_to_changes(self, user_id: str, handlers: ChangeHandlers) -> Optional[PollingChangeChannel]:
        if not self.is_available():
            return None
        channel = PollingChangeChannel(self, user_id, handlers, self.poll_interval, cursor=utc_now())
        channel.start()
        self._channels.append(channel)
        logger.info(f"Subscribed to note changes for user {user_id}")
        return channel

    def unsubscribe(self, channel: Any) -> None:
        if channel is None:
            return
        channel.stop()
        if channel in self._channels:
            self._channels.remove(channel)
        logger.info(f"Unsubscribed from note changes for user {channel.user_id}")
