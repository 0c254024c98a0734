"""Tests for the Evolution API adapter: payload parsing, REST client and Socket.IO session."""

import asyncio
import json
from unittest.mock import AsyncMock

import httpx
import pytest

from wagateway.errors import ConnectionLost, PairingFailed
from wagateway.evolve_parse import (
    event_tag, extract_connection_state, extract_jid, extract_qr_code, extract_status_reason,
    unwrap_event_data
)
from wagateway.services.evolution_client import EvolutionAPIError, EvolutionClient, normalize_number
from wagateway.services.evolution_websocket import EvolutionSession, evolution_client_factory

SERVER = "https://evolution.example.com"


# ── Parsing ──────────────────────────────────────────────────────────


class TestParsing:
    @pytest.mark.parametrize("name,tag", [
        ("messages.upsert", "Message"),
        ("MESSAGES_UPSERT", "Message"),
        ("messages.update", "ReadReceipt"),
        ("presence.update", "Presence"),
        ("call", "CallOffer"),
        ("qrcode.updated", "QR"),
        ("groups.upsert", None),
    ])
    def test_event_tag(self, name, tag) -> None:
        assert event_tag(name) == tag

    def test_qr_code_strips_data_url(self) -> None:
        assert extract_qr_code({"base64": "data:image/png;base64,iVBORw0K"}) == "iVBORw0K"
        assert extract_qr_code({"qrcode": {"code": "2@abc"}}) == "2@abc"
        assert extract_qr_code({}) is None

    def test_connection_update_fields(self) -> None:
        data = unwrap_event_data({
            "event": "connection.update",
            "instance": "tenant-1",
            "data": {"state": "close", "statusReason": "401", "wuid": "5511@s.whatsapp.net"},
        })

        assert extract_connection_state(data) == "close"
        assert extract_status_reason(data) == 401
        assert extract_jid(data) == "5511@s.whatsapp.net"

    def test_normalize_number(self) -> None:
        assert normalize_number("5511999999999@s.whatsapp.net") == "5511999999999"
        assert normalize_number("170166654656630@lid") == "170166654656630@lid"
        assert normalize_number("120363@g.us") == "120363@g.us"


# ── REST client ──────────────────────────────────────────────────────


class TestEvolutionClient:
    async def test_send_text_payload(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"key": {"id": "MSG1"}})

        client = EvolutionClient(SERVER, api_key="k", transport=httpx.MockTransport(handler))

        result = await client.send_text_message("tenant-1", "5511999999999@s.whatsapp.net", "hi", "Q1")

        assert result == {"key": {"id": "MSG1"}}
        request = seen[0]
        assert str(request.url) == f"{SERVER}/message/sendText/tenant-1"
        assert request.headers["apikey"] == "k"
        body = json.loads(request.content)
        assert body["number"] == "5511999999999"
        assert body["quoted"]["key"]["id"] == "Q1"

    async def test_http_error_carries_status(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(404, json={"response": {"message": "instance not found"}})
        )
        client = EvolutionClient(SERVER, transport=transport)

        with pytest.raises(EvolutionAPIError) as exc_info:
            await client.get_connection_state("tenant-1")

        assert exc_info.value.response_status == 404
        assert "instance not found" in exc_info.value.message

    async def test_error_in_ok_body(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"error": True, "message": "bad number"})
        )
        client = EvolutionClient(SERVER, transport=transport)

        with pytest.raises(EvolutionAPIError):
            await client.send_presence("tenant-1", "5511", "composing")

    async def test_connection_state(self) -> None:
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"instance": {"instanceName": "tenant-1", "state": "open"}})
        )
        client = EvolutionClient(SERVER, transport=transport)

        assert await client.get_connection_state("tenant-1") == "open"

    async def test_unconfigured_server(self) -> None:
        with pytest.raises(EvolutionAPIError):
            await EvolutionClient("").get_qr_code("tenant-1")


# ── Socket.IO session ────────────────────────────────────────────────


class FakeSocket:
    """Stands in for socketio.AsyncClient; handlers are invoked by the test."""

    def __init__(self):
        self.connected = False
        self.handlers = {}
        self.connect_args = None

    def event(self, handler):
        self.handlers[handler.__name__] = handler
        return handler

    def on(self, name):
        def register(handler):
            self.handlers[name] = handler
            return handler
        return register

    async def connect(self, url, **kwargs):
        self.connect_args = (url, kwargs)
        self.connected = True

    async def disconnect(self):
        self.connected = False
        await self.handlers["disconnect"]()

    async def fire(self, name, data):
        if name in self.handlers and name != "*":
            await self.handlers[name](data)
        else:
            await self.handlers["*"](name, data)


def make_session(session_id=None, state="open"):
    api = AsyncMock(spec=EvolutionClient)
    api.server_url = SERVER
    api.api_key = "k"
    api.get_connection_state.return_value = state
    api.get_qr_code.return_value = {"base64": "data:image/png;base64,QRDATA", "pairingCode": "ABCD1234"}
    sio = FakeSocket()
    session = EvolutionSession(1, session_id, api=api, instance_name="tenant-1", sio=sio)
    events = []
    session.on_event(events.append)
    return session, api, sio, events


class TestEvolutionSession:
    async def test_resume_when_instance_is_open(self) -> None:
        session, api, sio, events = make_session("5511@s.whatsapp.net")

        await session.connect()

        assert session.connected
        api.create_instance.assert_not_awaited()
        assert sio.connect_args[0] == f"{SERVER}/tenant-1"
        assert sio.connect_args[1]["headers"] == {"apikey": "k"}
        assert [e.type for e in events] == ["Connected"]

    async def test_fresh_pairing_emits_qr_then_waits_for_open(self) -> None:
        session, api, sio, events = make_session(None, state="connecting")

        connect = asyncio.create_task(session.connect())
        await asyncio.sleep(0.01)
        assert not connect.done()
        api.create_instance.assert_awaited_once_with("tenant-1")
        assert events[0].type == "QR"
        assert events[0].data == {"code": "QRDATA", "pairing_code": "ABCD1234"}

        await sio.fire("connection.update", {"data": {"state": "open", "wuid": "5511@s.whatsapp.net"}})
        await asyncio.wait_for(connect, timeout=1)

        assert session.session_id == "5511@s.whatsapp.net"
        assert [e.type for e in events] == ["QR", "PairSuccess", "Connected"]

    async def test_existing_instance_is_reused(self) -> None:
        session, api, sio, events = make_session(None, state="open")
        api.create_instance.side_effect = EvolutionAPIError("already in use", status_code=403)

        await session.connect()

        assert session.connected

    async def test_create_failure_is_pairing_failed(self) -> None:
        session, api, sio, events = make_session(None)
        api.create_instance.side_effect = EvolutionAPIError("server error", status_code=500)

        with pytest.raises(PairingFailed):
            await session.connect()

    async def test_logged_out_during_pairing(self) -> None:
        session, api, sio, events = make_session(None, state="connecting")

        connect = asyncio.create_task(session.connect())
        await asyncio.sleep(0.01)
        await sio.fire("connection.update", {"state": "close", "statusReason": 401})

        with pytest.raises(PairingFailed):
            await asyncio.wait_for(connect, timeout=1)
        assert events[-1].type == "LoggedOut"

    async def test_close_after_open_notifies_disconnect(self) -> None:
        session, api, sio, events = make_session("5511@s.whatsapp.net")
        lost = []
        session.on_disconnect(lost.append)
        await session.connect()

        await sio.fire("connection.update", {"state": "close", "statusReason": 428})

        assert not session.connected
        assert events[-1].type == "Disconnected"
        assert len(lost) == 1
        assert isinstance(lost[0], ConnectionLost)

    async def test_requested_disconnect_is_silent(self) -> None:
        session, api, sio, events = make_session("5511@s.whatsapp.net")
        lost = []
        session.on_disconnect(lost.append)
        await session.connect()

        await session.disconnect()

        assert lost == []
        assert not sio.connected

    async def test_socket_drop_notifies_disconnect(self) -> None:
        session, api, sio, events = make_session("5511@s.whatsapp.net")
        lost = []
        session.on_disconnect(lost.append)
        await session.connect()

        sio.connected = False
        await sio.handlers["disconnect"]()

        assert len(lost) == 1

    async def test_protocol_events_are_tagged(self) -> None:
        session, api, sio, events = make_session("5511@s.whatsapp.net")
        await session.connect()

        await sio.fire("messages.upsert", {"data": {"key": {"id": "M1", "remoteJid": "5511@s.whatsapp.net"}}})
        await sio.fire("groups.upsert", {"data": {}})

        assert [e.type for e in events] == ["Connected", "Message"]
        assert events[-1].data["key"]["id"] == "M1"

    async def test_data_plane_delegates_to_rest(self) -> None:
        session, api, sio, events = make_session("5511@s.whatsapp.net")
        api.send_text_message.return_value = {"key": {"id": "M2"}}

        result = await session.send_text("5511@s.whatsapp.net", "hello")
        await session.mark_read("5511@s.whatsapp.net", ["M1"])

        assert result == {"key": {"id": "M2"}}
        api.send_text_message.assert_awaited_once_with(
            "tenant-1", "5511@s.whatsapp.net", "hello", quoted_message_id=None
        )
        api.mark_as_read.assert_awaited_once_with("tenant-1", "5511@s.whatsapp.net", ["M1"])

    async def test_logout_forgets_session_id(self) -> None:
        session, api, sio, events = make_session("5511@s.whatsapp.net")

        await session.logout()

        api.logout_instance.assert_awaited_once_with("tenant-1")
        assert session.session_id is None

    def test_factory_names_instances_per_tenant(self) -> None:
        factory = evolution_client_factory(SERVER, "k", "gw-")

        session = factory(42, None)

        assert session.instance_name == "gw-42"
        assert session.session_id is None
