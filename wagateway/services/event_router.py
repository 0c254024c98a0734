"""
Event Router

Forwards protocol events to each tenant's webhook.

Every tenant gets its own bounded delivery queue drained by a single worker
task, so a tenant's webhook sees events in the order its session produced
them. Outbound requests from all tenants share a semaphore that caps
concurrent deliveries. Enqueueing never waits: a slow or unreachable
endpoint only backs up its own tenant's queue.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Tuple

import httpx

from ..config import (
    EVENT_HISTORY_SIZE, WEBHOOK_MAX_CONCURRENCY, WEBHOOK_MAX_RETRIES,
    WEBHOOK_QUEUE_SIZE, WEBHOOK_RETRY_BASE_DELAY, WEBHOOK_TIMEOUT
)
from ..errors import DeliveryFailed
from ..logger import log_debug, log_error, log_info, log_warning
from ..models import ALL_EVENTS, normalize_events
from .protocol import ProtocolEvent


@dataclass
class TenantRoute:
    webhook: str = ""
    events: Tuple[str, ...] = (ALL_EVENTS,)

    def subscribes_to(self, event_type: str) -> bool:
        return ALL_EVENTS in self.events or event_type in self.events


@dataclass
class PendingDelivery:
    tenant_id: int
    event_type: str
    url: str
    payload: Dict[str, Any]
    attempts: int = 0


@dataclass
class _TenantQueue:
    queue: asyncio.Queue
    worker: asyncio.Task


def build_payload(tenant_id: int, event: ProtocolEvent) -> Dict[str, Any]:
    """Webhook body for one event."""
    return {
        "type": event.type,
        "tenant_id": tenant_id,
        "event": event.data,
        "timestamp": event.timestamp.isoformat(),
    }


class EventRouter:
    """Filters events by subscription and delivers them to tenant webhooks."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = WEBHOOK_TIMEOUT,
        max_retries: int = WEBHOOK_MAX_RETRIES,
        retry_base_delay: float = WEBHOOK_RETRY_BASE_DELAY,
        max_concurrency: int = WEBHOOK_MAX_CONCURRENCY,
        queue_size: int = WEBHOOK_QUEUE_SIZE,
        history_size: int = EVENT_HISTORY_SIZE,
    ):
        self._http = http_client
        self._owns_http = http_client is None
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.queue_size = queue_size
        self.history_size = history_size
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._routes: Dict[int, TenantRoute] = {}
        self._queues: Dict[int, _TenantQueue] = {}
        self._history: Dict[int, Deque[Dict[str, Any]]] = {}

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    def configure(self, tenant_id: int, webhook: Optional[str], events: Optional[List[str]]) -> TenantRoute:
        """Set (or replace) where and which events a tenant receives."""
        route = TenantRoute(webhook=webhook or "", events=tuple(normalize_events(events)))
        self._routes[tenant_id] = route
        log_debug(
            "Webhook route configured",
            tenant_id=tenant_id,
            action="route_configured",
            url=route.webhook,
            events=list(route.events),
        )
        return route

    def get_route(self, tenant_id: int) -> Optional[TenantRoute]:
        return self._routes.get(tenant_id)

    def remove(self, tenant_id: int) -> None:
        """Forget a tenant's route and history (tenant deleted)."""
        self._routes.pop(tenant_id, None)
        self._history.pop(tenant_id, None)

    def recent_events(self, tenant_id: int) -> List[Dict[str, Any]]:
        return list(self._history.get(tenant_id, ()))

    def on_event(self, tenant_id: int, event: ProtocolEvent) -> bool:
        """
        Route one event. Never blocks.

        Returns:
            True if a webhook delivery was queued
        """
        route = self._routes.get(tenant_id)
        if route is None:
            log_warning(
                "Event for tenant without route dropped",
                tenant_id=tenant_id,
                event=event.type,
                action="event_unrouted",
            )
            return False

        if not route.subscribes_to(event.type):
            return False

        payload = build_payload(tenant_id, event)
        history = self._history.setdefault(tenant_id, deque(maxlen=self.history_size))
        history.append(payload)

        if not route.webhook:
            log_debug(
                "No webhook configured, event recorded only",
                tenant_id=tenant_id,
                event=event.type,
                action="event_recorded",
            )
            return False

        delivery = PendingDelivery(
            tenant_id=tenant_id,
            event_type=event.type,
            url=route.webhook,
            payload=payload,
        )
        tenant_queue = self._queue_for(tenant_id)
        try:
            tenant_queue.queue.put_nowait(delivery)
        except asyncio.QueueFull:
            log_warning(
                "Webhook queue full, event dropped",
                tenant_id=tenant_id,
                event=event.type,
                action="webhook_queue_full",
                queue_size=self.queue_size,
            )
            return False
        return True

    def _queue_for(self, tenant_id: int) -> _TenantQueue:
        tenant_queue = self._queues.get(tenant_id)
        if tenant_queue is None or tenant_queue.worker.done():
            queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
            worker = asyncio.create_task(self._worker(tenant_id, queue))
            tenant_queue = _TenantQueue(queue=queue, worker=worker)
            self._queues[tenant_id] = tenant_queue
        return tenant_queue

    async def _worker(self, tenant_id: int, queue: asyncio.Queue) -> None:
        while True:
            delivery: PendingDelivery = await queue.get()
            try:
                await self._deliver_with_retries(delivery)
            except Exception as e:
                log_error(
                    "Unexpected webhook worker error",
                    tenant_id=tenant_id,
                    event=delivery.event_type,
                    action="webhook_worker_error",
                    error_type=type(e).__name__,
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def _deliver_with_retries(self, delivery: PendingDelivery) -> bool:
        for attempt in range(self.max_retries + 1):
            if attempt:
                await asyncio.sleep(self.retry_base_delay * (2 ** (attempt - 1)))
            delivery.attempts = attempt + 1
            try:
                await self.deliver(delivery)
                return True
            except DeliveryFailed as e:
                log_warning(
                    "Webhook delivery failed",
                    tenant_id=delivery.tenant_id,
                    event=delivery.event_type,
                    action="webhook_delivery_failed",
                    attempt=delivery.attempts,
                    url=delivery.url,
                    status_code=e.response_status,
                    error=e.message,
                )

        log_error(
            "Webhook delivery dropped after retries",
            tenant_id=delivery.tenant_id,
            event=delivery.event_type,
            action="webhook_delivery_dropped",
            attempt=delivery.attempts,
            url=delivery.url,
        )
        return False

    async def deliver(self, delivery: PendingDelivery) -> None:
        """
        POST one payload.

        Raises:
            DeliveryFailed: On a non-2xx answer, a connection error or a timeout
        """
        start_time = time.time()
        async with self._semaphore:
            try:
                response = await self.http.post(
                    delivery.url, json=delivery.payload, timeout=self.timeout
                )
            except httpx.TimeoutException as e:
                raise DeliveryFailed("Webhook timed out", delivery.tenant_id) from e
            except httpx.HTTPError as e:
                raise DeliveryFailed(f"Webhook request failed: {e}", delivery.tenant_id) from e

        if not response.is_success:
            raise DeliveryFailed(
                f"Webhook answered HTTP {response.status_code}",
                delivery.tenant_id,
                status_code=response.status_code,
            )

        log_debug(
            "Webhook delivered",
            tenant_id=delivery.tenant_id,
            event=delivery.event_type,
            action="webhook_delivered",
            status_code=response.status_code,
            duration_ms=int((time.time() - start_time) * 1000),
        )

    async def wait_idle(self, tenant_id: int) -> None:
        """Wait until every queued delivery for a tenant has been handled."""
        tenant_queue = self._queues.get(tenant_id)
        if tenant_queue is not None:
            await tenant_queue.queue.join()

    async def close_tenant(self, tenant_id: int) -> int:
        """
        Stop a tenant's deliveries. Queued and in-flight deliveries are
        abandoned, never retried.

        Returns:
            Number of queued deliveries dropped
        """
        tenant_queue = self._queues.pop(tenant_id, None)
        if tenant_queue is None:
            return 0

        dropped = tenant_queue.queue.qsize()
        tenant_queue.worker.cancel()
        try:
            await tenant_queue.worker
        except asyncio.CancelledError:
            pass

        if dropped:
            log_info(
                "Pending webhook deliveries abandoned",
                tenant_id=tenant_id,
                action="webhook_queue_closed",
                dropped=dropped,
            )
        return dropped

    async def aclose(self) -> None:
        for tenant_id in list(self._queues):
            await self.close_tenant(tenant_id)
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None
