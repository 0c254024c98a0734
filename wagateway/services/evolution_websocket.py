"""
Evolution API session

Implements ProtocolClient for one tenant on top of an Evolution API
instance: instance management and messaging over REST, inbound events over
Socket.IO (instance mode, one socket per tenant).

Reconnection is not delegated to Socket.IO; a broken socket or a closed
WhatsApp connection is reported through the disconnect handler and the
connection supervisor decides whether to retry.

Usage:
    factory = evolution_client_factory("https://evolution-api.example.com", api_key)
    session = factory(tenant_id, stored_jid)
    session.on_event(handle_event)
    await session.connect()
"""

import asyncio
import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError
from typing import Optional, Dict, Any, List

from ..config import EVOLUTION_API_KEY, EVOLUTION_SERVER_URL, INSTANCE_PREFIX
from ..errors import ConnectionLost, PairingFailed
from ..evolve_parse import (
    LOGGED_OUT_STATUS, event_tag, extract_chat_id, extract_connection_state, extract_jid,
    extract_message_id, extract_pairing_code, extract_qr_code, extract_status_reason,
    unwrap_event_data
)
from ..logger import log_debug, log_error, log_info, log_warning
from .evolution_client import EvolutionAPIError, EvolutionClient
from .protocol import ClientFactory, ProtocolClient, ProtocolEvent


class EvolutionSession(ProtocolClient):
    """Socket.IO + REST session for one Evolution API instance."""

    def __init__(
        self,
        tenant_id: int,
        session_id: Optional[str] = None,
        *,
        api: EvolutionClient,
        instance_name: str,
        sio: Optional[socketio.AsyncClient] = None,
    ):
        super().__init__(session_id)
        self.tenant_id = tenant_id
        self.api = api
        self.instance_name = instance_name

        self._connected = False
        self._closing = False
        self._opened: Optional[asyncio.Event] = None
        self._failure: Optional[Exception] = None

        self.sio = sio or socketio.AsyncClient(
            reconnection=False,
            logger=False,
            engineio_logger=False,
        )
        self._register_handlers()

    def _get_connection_url(self) -> str:
        return f"{self.api.server_url}/{self.instance_name}"

    def _register_handlers(self):
        """Register Socket.IO event handlers."""

        @self.sio.event
        async def connect():
            log_info(
                "WebSocket connected to Evolution API",
                tenant_id=self.tenant_id,
                instance=self.instance_name,
                action="websocket_connected",
            )

        @self.sio.event
        async def disconnect(*args):
            await self._handle_socket_closed()

        @self.sio.event
        async def connect_error(data):
            log_error(
                "WebSocket connection error",
                tenant_id=self.tenant_id,
                instance=self.instance_name,
                error=str(data),
                action="websocket_error",
            )

        @self.sio.on("connection.update")
        async def on_connection_update(data):
            await self._handle_connection_update(unwrap_event_data(data))

        # Catch-all for every other event
        @self.sio.on("*")
        async def on_any(event, data):
            await self._handle_event(event, data)

    def _wake_connect(self, failure: Optional[Exception] = None) -> None:
        if self._opened is not None and not self._opened.is_set():
            self._failure = failure
            self._opened.set()

    async def _handle_socket_closed(self):
        was_connected = self._connected
        self._connected = False
        if self._closing:
            return

        log_warning(
            "WebSocket disconnected from Evolution API",
            tenant_id=self.tenant_id,
            instance=self.instance_name,
            action="websocket_disconnected",
        )
        error = ConnectionLost("Evolution WebSocket closed", self.tenant_id)
        self._wake_connect(error)
        if was_connected:
            await self.notify_disconnect(error)

    async def _handle_connection_update(self, data: Dict[str, Any]):
        state = extract_connection_state(data)
        log_info(
            f"Connection update: {state}",
            tenant_id=self.tenant_id,
            instance=self.instance_name,
            state=state,
            action="websocket_connection_update",
        )

        if state == "open":
            first_pairing = not self.session_id
            self.session_id = extract_jid(data) or self.session_id
            was_connected = self._connected
            self._connected = True
            self._wake_connect()
            if not was_connected:
                if first_pairing and self.session_id:
                    await self.emit(ProtocolEvent("PairSuccess", {"jid": self.session_id}))
                await self.emit(ProtocolEvent("Connected", data))

        elif state == "close":
            was_connected = self._connected
            self._connected = False
            if extract_status_reason(data) == LOGGED_OUT_STATUS:
                self._wake_connect(PairingFailed("Device was logged out", self.tenant_id))
                await self.emit(ProtocolEvent("LoggedOut", data))
                return
            if was_connected:
                await self.emit(ProtocolEvent("Disconnected", data))
                if not self._closing:
                    await self.notify_disconnect(
                        ConnectionLost("WhatsApp connection closed", self.tenant_id)
                    )

    async def _handle_event(self, event: str, data: Any):
        tag = event_tag(event)
        if tag is None:
            log_debug(f"Ignoring Evolution event: {event}", tenant_id=self.tenant_id, action="websocket_event_ignored")
            return

        payload = unwrap_event_data(data)
        if tag == "QR":
            payload = {
                "code": extract_qr_code(payload),
                "pairing_code": extract_pairing_code(payload),
            }
        elif tag == "Message":
            envelope = {"data": payload}
            log_debug(
                "Message received",
                tenant_id=self.tenant_id,
                event=tag,
                chat_id=extract_chat_id(envelope),
                message_id=extract_message_id(envelope),
                action="websocket_message",
            )

        try:
            await self.emit(ProtocolEvent(tag, payload))
        except Exception as e:
            log_error(
                f"Error in event handler: {e}",
                tenant_id=self.tenant_id,
                event=tag,
                error_type=type(e).__name__,
                exc_info=True,
            )

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        """
        Resume the instance, or create it and wait for the QR code to be scanned.

        Raises:
            PairingFailed: If the instance cannot be created or the device is logged out
            ConnectionLost: If Evolution API or its WebSocket is unreachable
        """
        self._closing = False
        self._failure = None
        self._opened = asyncio.Event()

        if not self.session_id:
            try:
                await self.api.create_instance(self.instance_name)
                log_info(
                    "Evolution instance created",
                    tenant_id=self.tenant_id,
                    instance=self.instance_name,
                    action="instance_created",
                )
            except EvolutionAPIError as e:
                # 403/409: the instance survived an earlier unfinished pairing
                if e.response_status not in (403, 409):
                    raise PairingFailed(f"Could not create instance: {e.message}", self.tenant_id) from e

        if not self.sio.connected:
            headers = {"apikey": self.api.api_key} if self.api.api_key else None
            try:
                await self.sio.connect(
                    self._get_connection_url(),
                    transports=["websocket"],
                    headers=headers,
                )
            except SocketConnectionError as e:
                raise ConnectionLost(f"Could not open Evolution WebSocket: {e}", self.tenant_id) from e

        try:
            state = await self.api.get_connection_state(self.instance_name)
            if state != "open":
                result = await self.api.get_qr_code(self.instance_name)
                code = extract_qr_code(result)
                if code:
                    await self.emit(ProtocolEvent(
                        "QR", {"code": code, "pairing_code": extract_pairing_code(result)}
                    ))
                state = extract_connection_state(result) or state
        except EvolutionAPIError as e:
            raise ConnectionLost(f"Evolution API unavailable: {e.message}", self.tenant_id) from e

        if state == "open" and not self._connected:
            self._connected = True
            await self.emit(ProtocolEvent("Connected", {"state": state}))
            return

        await self._opened.wait()
        if self._failure is not None:
            raise self._failure

    async def disconnect(self):
        """Close the event stream. The instance keeps its paired credentials."""
        self._closing = True
        self._connected = False
        if self.sio.connected:
            await self.sio.disconnect()
            log_info(
                "Disconnected from Evolution API WebSocket",
                tenant_id=self.tenant_id,
                instance=self.instance_name,
                action="websocket_manual_disconnect",
            )

    async def logout(self):
        await self.api.logout_instance(self.instance_name)
        self.session_id = None

    async def send_text(
        self, chat_id: str, text: str, quoted_message_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return await self.api.send_text_message(
            self.instance_name, chat_id, text, quoted_message_id=quoted_message_id
        )

    async def send_presence(self, chat_id: str, presence: str, delay: int = 1000) -> Dict[str, Any]:
        return await self.api.send_presence(self.instance_name, chat_id, presence=presence, delay=delay)

    async def mark_read(self, chat_id: str, message_ids: List[str]) -> Dict[str, Any]:
        return await self.api.mark_as_read(self.instance_name, chat_id, message_ids)

    async def download_media(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return await self.api.get_base64_from_media(self.instance_name, message)


def evolution_client_factory(
    server_url: str = EVOLUTION_SERVER_URL,
    api_key: Optional[str] = EVOLUTION_API_KEY,
    instance_prefix: str = INSTANCE_PREFIX,
) -> ClientFactory:
    """Build the factory the session manager uses to create tenant sessions."""
    api = EvolutionClient(server_url=server_url, api_key=api_key or None)

    def factory(tenant_id: int, session_id: Optional[str]) -> EvolutionSession:
        return EvolutionSession(
            tenant_id,
            session_id,
            api=api,
            instance_name=f"{instance_prefix}{tenant_id}",
        )

    return factory
