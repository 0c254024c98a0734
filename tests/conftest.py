"""Shared fixtures: in-memory store, fake protocol clients and a mocked webhook endpoint."""

import asyncio
import json
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from wagateway.errors import ConnectionLost
from wagateway.services.event_router import EventRouter
from wagateway.services.protocol import ProtocolClient, ProtocolEvent
from wagateway.services.session_manager import SessionManager, SessionState, StopReason
from wagateway.services.tenant_store import MemoryTenantStore


class FakeProtocolClient(ProtocolClient):
    """Protocol client that connects instantly unless told otherwise."""

    def __init__(self, tenant_id: int, session_id: Optional[str] = None):
        super().__init__(session_id)
        self.tenant_id = tenant_id
        self._connected = False
        self.connect_errors: List[BaseException] = []
        self.connect_gate: Optional[asyncio.Event] = None
        self.disconnect_hangs = False
        self.notify_on_disconnect = False
        self.emit_on_disconnect: Optional[ProtocolEvent] = None
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.logout_calls = 0
        self.sent: List[tuple] = []

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        if not self.session_id:
            self.session_id = f"55119{self.tenant_id:08d}@s.whatsapp.net"
            await self.emit(ProtocolEvent("PairSuccess", {"jid": self.session_id}))
        self._connected = True
        await self.emit(ProtocolEvent("Connected", {}))

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_hangs:
            await asyncio.Event().wait()
        if self.emit_on_disconnect is not None:
            await self.emit(self.emit_on_disconnect)
        was_connected = self._connected
        self._connected = False
        if self.notify_on_disconnect and was_connected:
            await self.notify_disconnect(ConnectionLost("closed", self.tenant_id))

    async def logout(self) -> None:
        self.logout_calls += 1
        self.session_id = None

    async def send_text(self, chat_id, text, quoted_message_id=None) -> Dict[str, Any]:
        self.sent.append(("text", chat_id, text))
        return {"key": {"id": "3EB0MSG", "remoteJid": chat_id}}

    async def send_presence(self, chat_id, presence, delay=1000) -> Dict[str, Any]:
        self.sent.append(("presence", chat_id, presence))
        return {"presence": presence}

    async def mark_read(self, chat_id, message_ids) -> Dict[str, Any]:
        self.sent.append(("read", chat_id, list(message_ids)))
        return {"read": "success"}

    async def download_media(self, message) -> Dict[str, Any]:
        return {"mimetype": "image/jpeg", "base64": "QUJD"}

    async def drop(self, error: Optional[BaseException] = None) -> None:
        """Simulate the network closing an established connection."""
        self._connected = False
        await self.notify_disconnect(error or ConnectionLost("socket closed", self.tenant_id))


class FakeClientFactory:
    """ClientFactory that records every client it creates."""

    def __init__(self):
        self.clients: Dict[int, List[FakeProtocolClient]] = defaultdict(list)
        self.prepare: Optional[Callable[[FakeProtocolClient], None]] = None

    def __call__(self, tenant_id: int, session_id: Optional[str]) -> FakeProtocolClient:
        client = FakeProtocolClient(tenant_id, session_id)
        if self.prepare is not None:
            self.prepare(client)
        self.clients[tenant_id].append(client)
        return client

    def last(self, tenant_id: int) -> FakeProtocolClient:
        return self.clients[tenant_id][-1]


class WebhookRecorder:
    """Mock webhook endpoint for httpx.MockTransport."""

    def __init__(self, status_code: int = 200):
        self.status_code = status_code
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": True})

    @property
    def payloads(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]


async def wait_for_state(manager: SessionManager, tenant_id: int, state: SessionState, timeout: float = 2.0):
    """Poll until the tenant's session reaches state."""
    async def _poll():
        while manager.status(tenant_id) is not state:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def store():
    return MemoryTenantStore()


@pytest.fixture
def factory():
    return FakeClientFactory()


@pytest.fixture
def webhook():
    return WebhookRecorder()


@pytest.fixture
async def router(webhook):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(webhook))
    router = EventRouter(http_client=http_client, retry_base_delay=0.01, max_retries=2)
    yield router
    await router.aclose()
    await http_client.aclose()


@pytest.fixture
async def manager(store, factory, router):
    manager = SessionManager(
        store,
        factory,
        router,
        connect_timeout=0.5,
        pairing_timeout=0.5,
        stop_timeout=0.1,
    )
    yield manager
    await manager.stop_all(StopReason.SHUTDOWN, timeout=1)


@pytest.fixture
def create_tenant(store):
    """Create a tenant in the memory store, optionally setting extra fields."""
    async def _create(name: str = "acme", token: Optional[str] = None, **fields):
        record = await store.create(
            name=name,
            token=token or f"{name}-token",
            webhook=fields.pop("webhook", ""),
            events=fields.pop("events", None),
            expiration=fields.pop("expiration", None),
        )
        if fields:
            record = await store.update(record.id, **fields)
        return record

    return _create
