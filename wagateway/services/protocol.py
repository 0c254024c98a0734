"""
Protocol client boundary.

The session manager drives every chat-protocol connection through this
interface. The Evolution API implementation lives in
`evolution_websocket.py`; tests use an in-memory fake.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union


def now_utc():
    return datetime.now(timezone.utc)


@dataclass
class ProtocolEvent:
    """One inbound protocol event, tagged with a gateway event type."""

    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=now_utc)


EventHandler = Callable[[ProtocolEvent], Union[Awaitable[None], None]]
DisconnectHandler = Callable[[Optional[BaseException]], Union[Awaitable[None], None]]


class ProtocolClient(ABC):
    """
    One tenant's connection to the chat network.

    `connect` returns once the session is usable (resumed, or paired after a
    QR scan) and raises PairingFailed / ConnectTimeout / ConnectionLost
    otherwise. After a successful connect the client reports a broken
    connection through the disconnect handler and may be connected again.
    """

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id
        self._event_handlers: List[EventHandler] = []
        self._disconnect_handlers: List[DisconnectHandler] = []

    def on_event(self, handler: EventHandler) -> None:
        """Register a handler invoked for every inbound protocol event."""
        self._event_handlers.append(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        """Register a handler invoked when an established connection breaks."""
        self._disconnect_handlers.append(handler)

    async def emit(self, event: ProtocolEvent) -> None:
        for handler in list(self._event_handlers):
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result

    async def notify_disconnect(self, error: Optional[BaseException] = None) -> None:
        for handler in list(self._disconnect_handlers):
            result = handler(error)
            if asyncio.iscoroutine(result):
                await result

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the connection, keeping the paired credentials."""

    @abstractmethod
    async def logout(self) -> None:
        """Unlink the device; the stored session id becomes invalid."""

    @abstractmethod
    async def send_text(
        self, chat_id: str, text: str, quoted_message_id: Optional[str] = None
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def send_presence(self, chat_id: str, presence: str, delay: int = 1000) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def mark_read(self, chat_id: str, message_ids: List[str]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def download_media(self, message: Dict[str, Any]) -> Dict[str, Any]:
        ...


ClientFactory = Callable[[int, Optional[str]], ProtocolClient]
