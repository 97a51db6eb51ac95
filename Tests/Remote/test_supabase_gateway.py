"""
test_supabase_gateway.py
Tests for the Supabase REST gateway and its polling change channel, using httpx.MockTransport
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from notesync.Notes.models import Note, SyncErrorKind, format_timestamp, parse_timestamp
from notesync.Remote.gateway import ChangeHandlers, RemoteGatewayError
from notesync.Remote.supabase_gateway import PollingChangeChannel, SupabaseGateway
from notesync.Remote.wire_format import note_to_wire

URL = "https://project.supabase.co"
USER = "user-1"
CURSOR = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)


class RecordingTransport:
    """Builds an httpx.MockTransport that records requests and replays queued responses."""

    def __init__(self):
        self.requests = []
        self.responses = []

    def reply(self, status_code=200, json_body=None, text=None):
        self.responses.append((status_code, json_body, text))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status_code, json_body, text = self.responses.pop(0) if self.responses else (200, [], None)
        if text is not None:
            return httpx.Response(status_code, text=text)
        return httpx.Response(status_code, json=json_body)

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def recorder():
    return RecordingTransport()


@pytest_asyncio.fixture
async def gateway(recorder):
    gw = SupabaseGateway(URL, "anon-key", access_token="user-jwt", transport=recorder.transport)
    yield gw
    await gw.close()


def make_row(note_id, created, updated, deleted=None):
    row = note_to_wire(Note(id=note_id, created_at=created, updated_at=updated), USER)
    row['deleted_at'] = format_timestamp(deleted) if deleted else None
    return row


class TestConfiguration:

    def test_unconfigured_gateway_is_unavailable(self):
        assert SupabaseGateway(None, None).is_available() is False
        assert SupabaseGateway(URL, "").is_available() is False
        assert SupabaseGateway(URL + "/", "key").url == URL

    @pytest.mark.asyncio
    async def test_unconfigured_calls_raise_not_configured(self):
        gw = SupabaseGateway(None, None)
        with pytest.raises(RemoteGatewayError) as exc_info:
            await gw.fetch_notes_since(USER)
        assert exc_info.value.kind == SyncErrorKind.NOT_CONFIGURED
        assert gw.subscribe_to_changes(USER, ChangeHandlers(print, print, print)) is None


class TestRequests:

    @pytest.mark.asyncio
    async def test_fetch_sends_filters_and_auth_headers(self, gateway, recorder):
        recorder.reply(json_body=[{'id': "n1"}])

        rows = await gateway.fetch_notes_since(USER)

        assert rows == [{'id': "n1"}]
        request = recorder.last
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/notes"
        assert request.url.params["user_id"] == f"eq.{USER}"
        assert request.url.params["deleted_at"] == "is.null"
        assert request.url.params["order"] == "updated_at.desc"
        assert "updated_at" not in request.url.params
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["Authorization"] == "Bearer user-jwt"

    @pytest.mark.asyncio
    async def test_fetch_since_adds_updated_at_filter(self, gateway, recorder):
        await gateway.fetch_notes_since(USER, since=CURSOR)
        assert recorder.last.url.params["updated_at"] == f"gt.{format_timestamp(CURSOR)}"

    @pytest.mark.asyncio
    async def test_anon_key_used_without_user_token(self, recorder):
        gw = SupabaseGateway(URL, "anon-key", transport=recorder.transport)
        await gw.fetch_notes_since(USER)
        await gw.close()
        assert recorder.last.headers["Authorization"] == "Bearer anon-key"

    @pytest.mark.asyncio
    async def test_change_query_includes_soft_deletes(self, gateway, recorder):
        await gateway.fetch_changes_since(USER, CURSOR)

        params = recorder.last.url.params
        stamp = format_timestamp(CURSOR)
        assert params["or"] == f'(updated_at.gt."{stamp}",deleted_at.gt."{stamp}")'
        assert params["order"] == "updated_at.asc"
        assert "deleted_at" not in params

    @pytest.mark.asyncio
    async def test_upsert_unwraps_representation(self, gateway, recorder):
        record = note_to_wire(Note(id="n1", title="Hello"), USER)
        recorder.reply(201, json_body=[record])

        stored = await gateway.upsert_note(record)

        assert stored == record
        request = recorder.last
        assert request.method == "POST"
        assert request.url.params["on_conflict"] == "id"
        assert "merge-duplicates" in request.headers["Prefer"]
        assert json.loads(request.content)["title"] == "Hello"

    @pytest.mark.asyncio
    async def test_upsert_with_empty_representation_is_malformed(self, gateway, recorder):
        recorder.reply(201, json_body=[])
        with pytest.raises(RemoteGatewayError) as exc_info:
            await gateway.upsert_note(note_to_wire(Note(id="n1"), USER))
        assert exc_info.value.kind == SyncErrorKind.MALFORMED_PAYLOAD

    @pytest.mark.asyncio
    async def test_soft_delete_stamps_deleted_and_updated(self, gateway, recorder):
        recorder.reply(204, text="")

        await gateway.soft_delete_note("n1", USER)

        request = recorder.last
        body = json.loads(request.content)
        assert request.method == "PATCH"
        assert request.url.params["id"] == "eq.n1"
        assert request.url.params["user_id"] == f"eq.{USER}"
        assert body["deleted_at"] == body["updated_at"]
        assert request.headers["Prefer"] == "return=minimal"


class TestErrorMapping:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,kind", [
        (401, SyncErrorKind.AUTH_EXPIRED),
        (403, SyncErrorKind.AUTH_EXPIRED),
        (429, SyncErrorKind.TRANSIENT_NETWORK),
        (500, SyncErrorKind.TRANSIENT_NETWORK),
        (503, SyncErrorKind.TRANSIENT_NETWORK),
        (400, SyncErrorKind.MALFORMED_PAYLOAD),
        (422, SyncErrorKind.MALFORMED_PAYLOAD),
    ])
    async def test_status_codes(self, gateway, recorder, status, kind):
        recorder.reply(status, json_body={'message': "nope"})
        with pytest.raises(RemoteGatewayError) as exc_info:
            await gateway.fetch_notes_since(USER)
        assert exc_info.value.kind == kind
        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [httpx.TooManyRedirects, httpx.DecodingError, httpx.ReadTimeout])
    async def test_request_errors_are_transient(self, error):
        def handler(request):
            raise error("request failed", request=request)

        gw = SupabaseGateway(URL, "anon-key", transport=httpx.MockTransport(handler))
        with pytest.raises(RemoteGatewayError) as exc_info:
            await gw.fetch_changes_since(USER, CURSOR)
        await gw.close()
        assert exc_info.value.kind == SyncErrorKind.TRANSIENT_NETWORK

    @pytest.mark.asyncio
    async def test_transport_failure_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        gw = SupabaseGateway(URL, "anon-key", transport=httpx.MockTransport(handler))
        with pytest.raises(RemoteGatewayError) as exc_info:
            await gw.upsert_note(note_to_wire(Note(id="n1"), USER))
        await gw.close()
        assert exc_info.value.kind == SyncErrorKind.TRANSIENT_NETWORK
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", [
        {'text': "<html>gateway</html>"},
        {'json_body': {'not': "a list"}},
    ])
    async def test_unusable_bodies_are_malformed(self, gateway, recorder, reply):
        recorder.reply(200, **reply)
        with pytest.raises(RemoteGatewayError) as exc_info:
            await gateway.fetch_notes_since(USER)
        assert exc_info.value.kind == SyncErrorKind.MALFORMED_PAYLOAD


class EventLog:

    def __init__(self):
        self.events = []
        self.handlers = ChangeHandlers(
            on_insert=lambda row: self.events.append(("insert", row['id'])),
            on_update=lambda row: self.events.append(("update", row['id'])),
            on_delete=lambda note_id: self.events.append(("delete", note_id)),
        )


class TestPollingChangeChannel:

    @pytest.mark.asyncio
    async def test_poll_dispatches_by_row_state(self, gateway, recorder):
        log = EventLog()
        channel = PollingChangeChannel(gateway, USER, log.handlers, poll_interval=5.0, cursor=CURSOR)
        later = CURSOR + timedelta(seconds=10)
        recorder.reply(json_body=[
            make_row("new", later, later),
            make_row("old", CURSOR - timedelta(days=1), later + timedelta(seconds=1)),
            make_row("gone", CURSOR - timedelta(days=1), later, deleted=later + timedelta(seconds=2)),
        ])

        assert await channel.poll_once() == 3

        assert log.events == [("insert", "new"), ("update", "old"), ("delete", "gone")]
        assert channel.cursor == later + timedelta(seconds=2)

    @pytest.mark.asyncio
    async def test_own_writes_are_not_echoed(self, gateway, recorder):
        log = EventLog()
        channel = PollingChangeChannel(gateway, USER, log.handlers, poll_interval=5.0, cursor=CURSOR)
        later = CURSOR + timedelta(seconds=10)
        mine = make_row("mine", CURSOR - timedelta(days=1), later)
        recorder.reply(201, json_body=[mine])
        await gateway.upsert_note(mine)

        recorder.reply(json_body=[mine])
        await channel.poll_once()
        assert log.events == []
        assert channel.cursor == later

        # A later write by another client to the same note is delivered
        theirs = dict(mine, updated_at=format_timestamp(later + timedelta(seconds=1)))
        recorder.reply(json_body=[theirs])
        await channel.poll_once()
        assert log.events == [("update", "mine")]

    @pytest.mark.asyncio
    async def test_note_created_mid_batch_is_an_insert(self, gateway, recorder):
        log = EventLog()
        channel = PollingChangeChannel(gateway, USER, log.handlers, poll_interval=5.0, cursor=CURSOR)
        recorder.reply(json_body=[
            make_row("old", CURSOR - timedelta(days=1), CURSOR + timedelta(seconds=2)),
            make_row("new", CURSOR + timedelta(seconds=1), CURSOR + timedelta(seconds=3)),
        ])

        await channel.poll_once()

        assert log.events == [("update", "old"), ("insert", "new")]
        assert channel.cursor == CURSOR + timedelta(seconds=3)

    @pytest.mark.asyncio
    async def test_bad_rows_are_dropped_without_stopping_the_batch(self, gateway, recorder):
        log = EventLog()
        channel = PollingChangeChannel(gateway, USER, log.handlers, poll_interval=5.0, cursor=CURSOR)
        later = CURSOR + timedelta(seconds=10)
        recorder.reply(json_body=[
            {'id': "broken", 'updated_at': "not a time"},
            make_row("ok", later, later),
        ])

        await channel.poll_once()

        assert log.events == [("insert", "ok")]

    @pytest.mark.asyncio
    async def test_failed_poll_raises_for_backoff(self, gateway, recorder):
        channel = PollingChangeChannel(gateway, USER, EventLog().handlers, poll_interval=5.0, cursor=CURSOR)
        recorder.reply(503, json_body={})
        with pytest.raises(RemoteGatewayError):
            await channel.poll_once()
        assert channel.cursor == CURSOR

    @pytest.mark.asyncio
    async def test_subscribe_and_unsubscribe(self, gateway):
        channel = gateway.subscribe_to_changes(USER, EventLog().handlers)

        assert channel.is_active
        assert parse_timestamp(channel.cursor) <= datetime.now(timezone.utc)

        gateway.unsubscribe(channel)
        await asyncio.sleep(0)
        assert not channel.is_active
