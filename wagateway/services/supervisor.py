"""
Connection Supervisor

Brings previously connected tenants back at process start and owns the
reconnection policy after unexpected disconnects: bounded exponential
backoff, then give up and mark the tenant disconnected.
"""

import asyncio
from typing import List, Optional

from ..config import (
    RECONNECT_BASE_DELAY, RECONNECT_MAX_ATTEMPTS, RECONNECT_MAX_DELAY, SUPERVISOR_SWEEP_SECONDS
)
from ..errors import AlreadyActive, GatewayError, StoreUnavailable
from ..logger import log_error, log_info, log_warning
from ..models import TenantRecord
from .session_manager import SessionManager, SessionState
from .tenant_store import TenantStore


class ConnectionSupervisor:
    """Startup sweep and runtime reconnection for the session manager."""

    def __init__(
        self,
        manager: SessionManager,
        store: TenantStore,
        max_attempts: int = RECONNECT_MAX_ATTEMPTS,
        base_delay: float = RECONNECT_BASE_DELAY,
        max_delay: float = RECONNECT_MAX_DELAY,
        sweep_interval: float = SUPERVISOR_SWEEP_SECONDS,
    ):
        self.manager = manager
        self.store = store
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.sweep_interval = sweep_interval
        self._sweep_task: Optional[asyncio.Task] = None

        manager.set_connection_lost_handler(self.reconnect)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the given (zero-based) attempt."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    async def connect_on_startup(self) -> List[int]:
        """
        Start a session for every tenant whose connected flag is set.

        Per-tenant failures are logged and never abort the sweep.

        Returns:
            Ids of the tenants whose sessions were started
        """
        try:
            records = await self.store.list_connected()
        except StoreUnavailable as e:
            log_error(
                "Could not list connected tenants, skipping sweep",
                action="supervisor_sweep_store_error",
                error=e.message,
            )
            return []

        candidates = [
            r for r in records if self.manager.status(r.id) is SessionState.ABSENT
        ]
        if not candidates:
            return []

        log_info(
            "Reconnecting previously connected tenants",
            action="supervisor_sweep_start",
            count=len(candidates),
        )
        results = await asyncio.gather(*(self._start_one(r) for r in candidates))
        started = sorted(r.id for r, ok in zip(candidates, results) if ok)

        log_info(
            "Reconnect sweep finished",
            action="supervisor_sweep_done",
            started=len(started),
            failed=len(candidates) - len(started),
        )
        return started

    async def _start_one(self, record: TenantRecord) -> bool:
        if record.is_expired():
            log_warning(
                "Tenant account expired, not reconnecting",
                tenant_id=record.id,
                action="supervisor_tenant_expired",
            )
            try:
                await self.store.update(record.id, connected=False)
            except StoreUnavailable:
                pass
            return False

        try:
            await self.manager.start(record.id)
            return True
        except AlreadyActive:
            return False
        except GatewayError as e:
            log_error(
                "Failed to reconnect tenant on startup",
                tenant_id=record.id,
                action="supervisor_start_failed",
                error=e.message,
                error_type=type(e).__name__,
            )
        except Exception as e:
            log_error(
                "Unexpected error reconnecting tenant on startup",
                tenant_id=record.id,
                action="supervisor_start_error",
                error_type=type(e).__name__,
                exc_info=True,
            )
        return False

    async def reconnect(self, tenant_id: int) -> None:
        """
        Retry a lost connection with exponential backoff. Stops as soon as
        the session is stopped; gives up after max_attempts.
        """
        for attempt in range(self.max_attempts):
            delay = self.backoff_delay(attempt)
            log_info(
                "Scheduling reconnect attempt",
                tenant_id=tenant_id,
                action="supervisor_reconnect_scheduled",
                attempt=attempt + 1,
                delay_s=delay,
            )
            await asyncio.sleep(delay)

            if not self.manager.reconnect_pending(tenant_id):
                return
            if await self.manager.reconnect(tenant_id):
                log_info(
                    "Reconnected",
                    tenant_id=tenant_id,
                    action="supervisor_reconnected",
                    attempt=attempt + 1,
                )
                return

        if not self.manager.reconnect_pending(tenant_id):
            return
        log_error(
            "Reconnect attempts exhausted, marking tenant disconnected",
            tenant_id=tenant_id,
            action="supervisor_reconnect_exhausted",
            attempt=self.max_attempts,
        )
        await self.manager.abandon(tenant_id)

    async def start(self) -> None:
        """Start the periodic sweep if configured."""
        if self._sweep_task is None and self.sweep_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            log_info("Supervisor sweep started", action="supervisor_sweep_loop_started")

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.connect_on_startup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                log_error(f"Error in supervisor sweep: {e}", action="supervisor_sweep_error")
