"""
Process-wide wiring of the gateway components.

One Gateway is created per process and attached to the FastAPI app; the
lifespan hook calls startup()/shutdown().
"""

import asyncio
from typing import Optional, Set

from .config import ADMIN_TOKEN, SHUTDOWN_TIMEOUT, STORE_BACKEND
from .logger import log_error, log_info, log_warning
from .services.auth_cache import AuthCache
from .services.event_router import EventRouter
from .services.evolution_websocket import evolution_client_factory
from .services.protocol import ClientFactory
from .services.session_manager import SessionManager, StopReason
from .services.supervisor import ConnectionSupervisor
from .services.tenant_store import TenantStore, create_tenant_store


class Gateway:
    """Holds the store, session manager, router, supervisor and auth cache."""

    def __init__(
        self,
        store: TenantStore,
        manager: SessionManager,
        router: EventRouter,
        supervisor: ConnectionSupervisor,
        auth_cache: AuthCache,
        admin_token: str = ADMIN_TOKEN,
        shutdown_timeout: float = SHUTDOWN_TIMEOUT,
    ):
        self.store = store
        self.manager = manager
        self.router = router
        self.supervisor = supervisor
        self.auth_cache = auth_cache
        self.admin_token = admin_token
        self.shutdown_timeout = shutdown_timeout
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro) -> asyncio.Task:
        """Run a coroutine in the background; the task is cancelled at shutdown."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def startup(self) -> None:
        log_info("Gateway starting up", action="gateway_startup")
        await self.auth_cache.start()
        self.spawn(self.supervisor.connect_on_startup())
        await self.supervisor.start()

    async def shutdown(self) -> None:
        log_info("Gateway shutting down", action="gateway_shutdown_start")
        await self.supervisor.stop()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        try:
            abandoned = await self.manager.stop_all(StopReason.SHUTDOWN, timeout=self.shutdown_timeout)
        except Exception as e:
            log_error(
                f"Error stopping sessions: {e}",
                action="gateway_shutdown_error",
                error_type=type(e).__name__,
            )
        else:
            if abandoned:
                log_warning(
                    "Sessions abandoned at shutdown",
                    action="gateway_shutdown_abandoned",
                    tenants=abandoned,
                )

        await self.router.aclose()
        await self.auth_cache.stop()
        log_info("Gateway stopped", action="gateway_shutdown_complete")


def build_gateway(
    store: Optional[TenantStore] = None,
    client_factory: Optional[ClientFactory] = None,
    router: Optional[EventRouter] = None,
    auth_cache: Optional[AuthCache] = None,
    admin_token: str = ADMIN_TOKEN,
    **manager_options,
) -> Gateway:
    """
    Assemble a Gateway. Omitted components are built from configuration.

    Args:
        manager_options: Passed to SessionManager (connect_timeout, pairing_timeout, stop_timeout)
    """
    if store is None:
        store = create_tenant_store(STORE_BACKEND)
    if router is None:
        router = EventRouter()
    if auth_cache is None:
        auth_cache = AuthCache()
    manager = SessionManager(
        store,
        client_factory or evolution_client_factory(),
        router,
        **manager_options,
    )
    supervisor = ConnectionSupervisor(manager, store)
    return Gateway(
        store=store,
        manager=manager,
        router=router,
        supervisor=supervisor,
        auth_cache=auth_cache,
        admin_token=admin_token,
    )
