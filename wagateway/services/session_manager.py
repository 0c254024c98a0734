"""
Session Manager

Owns one protocol session per tenant and is the single authority for
starting and stopping them.

Per tenant the state machine is:

    absent -> connecting -> connected -> disconnecting -> absent
    connected -> reconnecting -> connected        (unexpected disconnect)
    connecting -> absent                          (pairing failed / cancelled)

The tenant-id -> Session map is guarded by a narrow lock that is never held
across network or store I/O. Start, stop and reconnect for the same tenant
are serialized by a per-tenant lock; different tenants never wait on each
other.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Awaitable, Callable, Dict, List, Optional

from ..config import CONNECT_TIMEOUT, PAIRING_TIMEOUT, SHUTDOWN_TIMEOUT, STOP_TIMEOUT
from ..errors import (
    AlreadyActive, ConnectionLost, ConnectTimeout, GatewayError, NotActive,
    PairingFailed, StoreUnavailable, TenantNotFound
)
from ..logger import log_error, log_info, log_warning
from ..models import normalize_events
from .event_router import EventRouter
from .protocol import ClientFactory, ProtocolClient, ProtocolEvent
from .tenant_store import TenantStore


class SessionState(str, Enum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    DISCONNECTING = "disconnecting"


class StopReason(str, Enum):
    OPERATOR = "operator-requested"
    SHUTDOWN = "shutdown"
    LOGGED_OUT = "logged-out"
    RETRIES_EXHAUSTED = "retries-exhausted"


@dataclass
class Session:
    """Runtime state of one tenant's connection. Never persisted."""

    tenant_id: int
    client: Optional[ProtocolClient] = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    state: SessionState = SessionState.CONNECTING
    stop_reason: Optional[StopReason] = None
    fresh_pairing: bool = False
    reconnect_task: Optional[asyncio.Task] = None
    created_at: float = field(default_factory=time.time)


ConnectionLostHandler = Callable[[int], Awaitable[None]]


class SessionManager:
    """Maps tenant id -> at most one live Session."""

    def __init__(
        self,
        store: TenantStore,
        client_factory: ClientFactory,
        router: EventRouter,
        connect_timeout: float = CONNECT_TIMEOUT,
        pairing_timeout: float = PAIRING_TIMEOUT,
        stop_timeout: float = STOP_TIMEOUT,
    ):
        self._store = store
        self._client_factory = client_factory
        self._router = router
        self.connect_timeout = connect_timeout
        self.pairing_timeout = pairing_timeout
        self.stop_timeout = stop_timeout

        self._sessions: Dict[int, Session] = {}
        self._lock = asyncio.Lock()
        self._tenant_locks: Dict[int, asyncio.Lock] = {}
        self._connection_lost_handler: Optional[ConnectionLostHandler] = None
        self._background: set = set()

    def set_connection_lost_handler(self, handler: ConnectionLostHandler) -> None:
        """Set the coroutine that handles unexpected disconnects (the supervisor)."""
        self._connection_lost_handler = handler

    def _tenant_lock(self, tenant_id: int) -> asyncio.Lock:
        return self._tenant_locks.setdefault(tenant_id, asyncio.Lock())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _is_current(self, session: Session) -> bool:
        return self._sessions.get(session.tenant_id) is session

    def _set_state(self, session: Session, state: SessionState, reason: Optional[str] = None) -> None:
        previous = session.state
        session.state = state
        if previous != state:
            log_info(
                f"Session {previous.value} -> {state.value}",
                tenant_id=session.tenant_id,
                state=state.value,
                action="session_state_transition",
                previous_state=previous.value,
                reason=reason,
            )

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def status(self, tenant_id: int) -> SessionState:
        session = self._sessions.get(tenant_id)
        return session.state if session else SessionState.ABSENT

    def get_live_handle(self, tenant_id: int) -> ProtocolClient:
        """
        Return the protocol client of a connected session.

        Callers must not keep the handle across a stop.

        Raises:
            NotActive: If the tenant has no connected session
        """
        session = self._sessions.get(tenant_id)
        if session is None or session.client is None:
            raise NotActive(tenant_id)
        if session.state is not SessionState.CONNECTED:
            raise NotActive(tenant_id, session.state.value)
        return session.client

    def list_sessions(self) -> Dict[int, SessionState]:
        return {tenant_id: session.state for tenant_id, session in self._sessions.items()}

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def connected_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.state is SessionState.CONNECTED)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, tenant_id: int, subscribe: Optional[List[str]] = None) -> SessionState:
        """
        Establish or resume the tenant's protocol session.

        Args:
            tenant_id: Tenant to start
            subscribe: Optional new event subscription, persisted before connecting

        Returns:
            SessionState.CONNECTED

        Raises:
            AlreadyActive: If a session already exists for the tenant
            TenantNotFound: If the tenant does not exist
            PairingFailed, ConnectTimeout, ConnectionLost: If connecting fails
            StoreUnavailable: If the tenant record cannot be read
        """
        events = normalize_events(subscribe) if subscribe is not None else None

        async with self._lock:
            existing = self._sessions.get(tenant_id)
            if existing is not None:
                raise AlreadyActive(tenant_id, existing.state.value)
            session = Session(tenant_id=tenant_id)
            self._sessions[tenant_id] = session

        log_info("Starting session", tenant_id=tenant_id, action="session_start")
        start_time = time.time()

        async with self._tenant_lock(tenant_id):
            try:
                await self._open(session, events)
            except BaseException as e:
                await self._discard(session)
                self._set_state(session, SessionState.ABSENT, reason=type(e).__name__)
                log_warning(
                    "Session start failed",
                    tenant_id=tenant_id,
                    action="session_start_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            self._set_state(session, SessionState.CONNECTED)

        await self._persist(
            tenant_id, connected=True, jid=session.client.session_id or "", qrcode=""
        )
        log_info(
            "Session connected",
            tenant_id=tenant_id,
            action="session_connected",
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return SessionState.CONNECTED

    async def _open(self, session: Session, events: Optional[List[str]]) -> None:
        tenant_id = session.tenant_id
        record = await self._store.get_by_id(tenant_id)
        if record is None:
            raise TenantNotFound(tenant_id)

        if events is not None and events != record.events:
            updated = await self._store.update(tenant_id, events=events)
            record = updated or record.model_copy(update={"events": events})

        self._router.configure(tenant_id, record.webhook, record.events)

        client = self._client_factory(tenant_id, record.jid or None)
        client.on_event(partial(self._handle_event, session))
        client.on_disconnect(partial(self._handle_disconnect, session))
        session.client = client
        session.fresh_pairing = not record.jid

        timeout = self.pairing_timeout if session.fresh_pairing else self.connect_timeout
        await self._connect(session, timeout)

    async def _connect(self, session: Session, timeout: float) -> None:
        """Run client.connect() raced against the session's cancel signal and a timeout."""
        connect_task = asyncio.ensure_future(session.client.connect())
        cancel_task = asyncio.ensure_future(session.cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {connect_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            connect_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if connect_task in done:
            try:
                connect_task.result()
            except GatewayError:
                raise
            except Exception as e:
                error_class = PairingFailed if session.fresh_pairing else ConnectionLost
                raise error_class(f"Connect failed: {e}", session.tenant_id) from e
            return

        connect_task.cancel()
        await asyncio.gather(connect_task, return_exceptions=True)

        if session.cancel.is_set():
            raise PairingFailed("Connect cancelled before completion", session.tenant_id)
        raise ConnectTimeout(f"Connect did not complete within {timeout}s", session.tenant_id)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, tenant_id: int, reason: StopReason = StopReason.OPERATOR) -> None:
        """
        Gracefully stop the tenant's session.

        A stop requested by an operator suppresses the automatic reconnection
        the resulting disconnect would otherwise trigger, and is persisted so
        the startup sweep leaves the tenant alone.

        Raises:
            NotActive: If the tenant has no session
        """
        reason = StopReason(reason)
        async with self._lock:
            session = self._sessions.get(tenant_id)
        if session is None:
            raise NotActive(tenant_id)

        if session.stop_reason is None:
            session.stop_reason = reason
        session.cancel.set()

        async with self._tenant_lock(tenant_id):
            if not self._is_current(session):
                # The signal aborted a start or reconnect that cleaned up after itself
                log_info("Session cancelled before it connected", tenant_id=tenant_id, action="session_cancelled")
                if session.stop_reason is not StopReason.SHUTDOWN:
                    await self._persist(tenant_id, connected=False)
                return
            await self._teardown(session, session.stop_reason)

    async def _teardown(self, session: Session, reason: StopReason) -> None:
        """Disconnect and remove a session. Caller holds the tenant lock."""
        tenant_id = session.tenant_id
        session.cancel.set()
        self._set_state(session, SessionState.DISCONNECTING, reason=reason.value)

        task = session.reconnect_task
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        session.reconnect_task = None

        await self._router.close_tenant(tenant_id)

        client = session.client
        if client is not None:
            try:
                await asyncio.wait_for(client.disconnect(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                log_error(
                    "Protocol client did not acknowledge disconnect, releasing handle",
                    tenant_id=tenant_id,
                    action="session_stop_inconsistent",
                    reason=reason.value,
                )
            except Exception as e:
                log_warning(
                    "Error while disconnecting protocol client",
                    tenant_id=tenant_id,
                    action="session_disconnect_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )

        async with self._lock:
            if self._sessions.get(tenant_id) is session:
                del self._sessions[tenant_id]
        session.client = None
        self._set_state(session, SessionState.ABSENT, reason=reason.value)

        if reason is StopReason.LOGGED_OUT:
            await self._persist(tenant_id, connected=False, jid="", qrcode="")
        elif reason is not StopReason.SHUTDOWN:
            await self._persist(tenant_id, connected=False)

        log_info("Session stopped", tenant_id=tenant_id, action="session_stopped", reason=reason.value)

    async def _discard(self, session: Session) -> None:
        """Release a session whose start failed."""
        async with self._lock:
            if self._sessions.get(session.tenant_id) is session:
                del self._sessions[session.tenant_id]
        await self._router.close_tenant(session.tenant_id)
        client, session.client = session.client, None
        if client is not None:
            try:
                await asyncio.wait_for(client.disconnect(), timeout=self.stop_timeout)
            except Exception as e:
                log_warning(
                    "Error releasing protocol client after failed start",
                    tenant_id=session.tenant_id,
                    action="session_release_error",
                    error_type=type(e).__name__,
                )

    async def logout(self, tenant_id: int) -> None:
        """
        Unlink the tenant's device and end the session. The stored session
        id is cleared, so the next start pairs from scratch.

        Raises:
            NotActive: If the tenant has no connected session
        """
        client = self.get_live_handle(tenant_id)
        session = self._sessions[tenant_id]
        session.stop_reason = StopReason.LOGGED_OUT

        async with self._tenant_lock(tenant_id):
            if not self._is_current(session):
                raise NotActive(tenant_id)
            try:
                await client.logout()
            except Exception as e:
                log_warning(
                    "Protocol logout failed, tearing session down anyway",
                    tenant_id=tenant_id,
                    action="session_logout_error",
                    error=str(e),
                )
            await self._teardown(session, StopReason.LOGGED_OUT)

    async def stop_all(
        self,
        reason: StopReason = StopReason.SHUTDOWN,
        timeout: float = SHUTDOWN_TIMEOUT,
    ) -> List[int]:
        """
        Stop every session concurrently within a deadline.

        Returns:
            Tenant ids whose sessions were abandoned because they did not stop in time
        """
        async with self._lock:
            tenant_ids = list(self._sessions)
        if not tenant_ids:
            return []

        log_info("Stopping all sessions", action="sessions_stop_all", count=len(tenant_ids), reason=reason.value)
        tasks = {asyncio.create_task(self._stop_quietly(tid, reason)): tid for tid in tenant_ids}
        done, pending = await asyncio.wait(tasks, timeout=timeout)

        abandoned = []
        for task in pending:
            tenant_id = tasks[task]
            task.cancel()
            abandoned.append(tenant_id)
            log_warning(
                "Session did not stop before the deadline, abandoning",
                tenant_id=tenant_id,
                action="session_abandoned",
                reason=reason.value,
            )
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return sorted(abandoned)

    async def _stop_quietly(self, tenant_id: int, reason: StopReason) -> None:
        try:
            await self.stop(tenant_id, reason)
        except NotActive:
            pass

    # ------------------------------------------------------------------
    # Protocol callbacks
    # ------------------------------------------------------------------

    async def _handle_event(self, session: Session, event: ProtocolEvent) -> None:
        if not self._is_current(session) or session.cancel.is_set():
            return
        if session.state in (SessionState.DISCONNECTING, SessionState.ABSENT):
            return
        tenant_id = session.tenant_id

        # Routed before any await so events keep their arrival order
        self._router.on_event(tenant_id, event)

        if event.type == "QR":
            await self._persist(tenant_id, qrcode=event.data.get("code") or "")
        elif event.type == "PairSuccess":
            jid = event.data.get("jid") or (session.client.session_id if session.client else None)
            await self._persist(tenant_id, jid=jid or "", qrcode="")
        elif event.type == "LoggedOut" and session.stop_reason is None:
            session.stop_reason = StopReason.LOGGED_OUT
            session.cancel.set()
            self._spawn(self._teardown_locked(session, StopReason.LOGGED_OUT))
            # The stored session id is dead even if the session never connected
            await self._persist(tenant_id, connected=False, jid="", qrcode="")

    async def _teardown_locked(self, session: Session, reason: StopReason) -> None:
        async with self._tenant_lock(session.tenant_id):
            if self._is_current(session):
                await self._teardown(session, reason)

    async def _handle_disconnect(self, session: Session, error: Optional[BaseException] = None) -> None:
        tenant_id = session.tenant_id
        if not self._is_current(session):
            return

        if session.stop_reason is not None or session.cancel.is_set():
            log_info(
                "Disconnect after requested stop, not reconnecting",
                tenant_id=tenant_id,
                action="reconnect_suppressed",
                reason=session.stop_reason.value if session.stop_reason else None,
            )
            return

        if session.state is not SessionState.CONNECTED:
            return

        log_warning(
            "Connection lost unexpectedly",
            tenant_id=tenant_id,
            action="session_connection_lost",
            error=str(error) if error else None,
        )
        self._set_state(session, SessionState.RECONNECTING, reason="connection lost")

        if self._connection_lost_handler is None:
            self._spawn(self.abandon(tenant_id))
            return
        session.reconnect_task = self._spawn(self._connection_lost_handler(tenant_id))

    # ------------------------------------------------------------------
    # Supervisor-facing operations
    # ------------------------------------------------------------------

    def reconnect_pending(self, tenant_id: int) -> bool:
        session = self._sessions.get(tenant_id)
        return (
            session is not None
            and session.state is SessionState.RECONNECTING
            and not session.cancel.is_set()
        )

    async def reconnect(self, tenant_id: int) -> bool:
        """
        Make one reconnection attempt.

        Returns:
            True if the session is connected again
        """
        session = self._sessions.get(tenant_id)
        if session is None:
            return False

        async with self._tenant_lock(tenant_id):
            if not self._is_current(session) or not self.reconnect_pending(tenant_id):
                return False
            try:
                await self._connect(session, self.connect_timeout)
            except GatewayError as e:
                log_warning(
                    "Reconnect attempt failed",
                    tenant_id=tenant_id,
                    action="session_reconnect_failed",
                    error=e.message,
                    error_type=type(e).__name__,
                )
                return False
            if session.cancel.is_set():
                return False
            self._set_state(session, SessionState.CONNECTED, reason="reconnected")
            session.reconnect_task = None

        await self._persist(tenant_id, connected=True)
        return True

    async def abandon(self, tenant_id: int) -> None:
        """Give up on a reconnecting session and mark the tenant disconnected."""
        session = self._sessions.get(tenant_id)
        if session is None:
            return
        async with self._tenant_lock(tenant_id):
            if not self._is_current(session) or session.stop_reason is not None:
                return
            session.stop_reason = StopReason.RETRIES_EXHAUSTED
            await self._teardown(session, StopReason.RETRIES_EXHAUSTED)

    async def forget(self, tenant_id: int) -> None:
        """Stop any session and drop all runtime state for a deleted tenant."""
        try:
            await self.stop(tenant_id, StopReason.OPERATOR)
        except NotActive:
            pass
        self._router.remove(tenant_id)
        self._tenant_locks.pop(tenant_id, None)

    # ------------------------------------------------------------------

    async def _persist(self, tenant_id: int, **fields) -> None:
        """Write advisory session fields; failures are logged, not raised."""
        try:
            await self._store.update(tenant_id, **fields)
        except StoreUnavailable as e:
            log_warning(
                "Could not persist session fields",
                tenant_id=tenant_id,
                action="session_persist_failed",
                fields=sorted(fields),
                error=e.message,
            )
