import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from .auth import auth_router, get_current_tenant, get_gateway
from .config import (
    ADDRESS, CORS_ORIGINS, LOG_LEVEL, PORT, SSL_CERTIFICATE, SSL_PRIVATE_KEY
)
from .errors import AlreadyActive, GatewayError, NotActive, TenantNotFound
from .gateway import Gateway, build_gateway
from .logger import configure_logger_from_config, log_error, log_info, logger
from .models import normalize_events
from .services.session_manager import SessionState

VERSION = "0.1.0"

# Configure logger with settings from config
configure_logger_from_config()


# ----------------------------------------------------------------------
# Request models
# ----------------------------------------------------------------------

class ConnectRequest(BaseModel):
    """Start the tenant's session, optionally replacing its subscription."""
    subscribe: Optional[List[str]] = None
    immediate: bool = False

    @field_validator("subscribe")
    @classmethod
    def check_subscribe(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return normalize_events(value) if value is not None else None


class WebhookRequest(BaseModel):
    webhook: str = ""
    events: Optional[List[str]] = None

    @field_validator("events")
    @classmethod
    def check_events(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return normalize_events(value) if value is not None else None


class SendTextRequest(BaseModel):
    phone: str = Field(..., min_length=1, description="Chat id or phone number")
    body: str = Field(..., min_length=1)
    quoted_id: Optional[str] = None


class PresenceRequest(BaseModel):
    phone: str = Field(..., min_length=1)
    state: str = Field("composing", description="composing, recording, available, unavailable or paused")
    delay: int = 1000


class MarkReadRequest(BaseModel):
    chat: str = Field(..., min_length=1)
    ids: List[str] = Field(..., min_length=1)


class DownloadMediaRequest(BaseModel):
    message: Dict[str, Any]


# ----------------------------------------------------------------------
# App
# ----------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    gateway: Gateway = app.state.gateway
    await gateway.startup()
    try:
        yield
    finally:
        await gateway.shutdown()


async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.message, "code": exc.code},
    )


def create_app(gateway: Optional[Gateway] = None) -> FastAPI:
    """Build the FastAPI app around a Gateway (built from configuration if omitted)."""
    app = FastAPI(title="WhatsApp Multi-Tenant Gateway", version=VERSION, lifespan=lifespan)
    app.state.gateway = gateway if gateway is not None else build_gateway()

    # Configure CORS for frontend integration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(GatewayError, gateway_error_handler)

    app.include_router(auth_router)
    app.include_router(api)
    return app


api = APIRouter()


@api.get("/health")
async def health(gateway: Gateway = Depends(get_gateway)):
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        - ok: Overall health status (true/false)
        - checks: Individual component health statuses
        - version: API version
        - timestamp: Current server time
    """
    health_status = {
        "ok": True,
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {}
    }

    # Check store connectivity; the lookup result itself is irrelevant
    try:
        await gateway.store.get_by_id(0)
        health_status["checks"]["database"] = {
            "status": "ok",
            "message": "Tenant store reachable"
        }
    except GatewayError as e:
        health_status["ok"] = False
        health_status["checks"]["database"] = {
            "status": "error",
            "message": f"Tenant store unavailable: {e.message}"
        }

    health_status["checks"]["sessions"] = {
        "status": "ok",
        "total": gateway.manager.session_count,
        "connected": gateway.manager.connected_count,
    }

    return health_status


# ----------------------------------------------------------------------
# Session
# ----------------------------------------------------------------------

async def _start_in_background(gateway: Gateway, tenant_id: int, subscribe: Optional[List[str]]):
    try:
        await gateway.manager.start(tenant_id, subscribe=subscribe)
    except GatewayError as e:
        log_error(
            "Background connect failed",
            tenant_id=tenant_id,
            action="session_connect_background_failed",
            error=e.message,
            error_type=type(e).__name__,
        )


@api.post("/session/connect")
async def session_connect(
    data: ConnectRequest,
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    """
    Connect the tenant's WhatsApp session.

    Request body:
        {
            "subscribe": ["Message", "ReadReceipt"],  (optional, replaces the subscription)
            "immediate": false
        }

    With immediate=false the call returns once the session is connected (for a
    new device, once the QR code has been scanned; poll GET /session/qr meanwhile).
    With immediate=true it returns at once and connects in the background.
    """
    if data.immediate:
        state = gateway.manager.status(tenant_id)
        if state is not SessionState.ABSENT:
            raise AlreadyActive(tenant_id, state.value)
        gateway.spawn(_start_in_background(gateway, tenant_id, data.subscribe))
        # Let the start register the session before answering
        await asyncio.sleep(0)
        return {"ok": True, "state": gateway.manager.status(tenant_id).value}

    state = await gateway.manager.start(tenant_id, subscribe=data.subscribe)
    return {"ok": True, "state": state.value}


@api.post("/session/disconnect")
async def session_disconnect(
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    """Stop the session. It is not reconnected, not even after a restart."""
    await gateway.manager.stop(tenant_id)
    return {"ok": True, "state": SessionState.ABSENT.value}


@api.post("/session/logout")
async def session_logout(
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    """Unlink the device. The next connect pairs with a new QR code."""
    await gateway.manager.logout(tenant_id)
    return {"ok": True, "state": SessionState.ABSENT.value}


@api.get("/session/status")
async def session_status(
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    record = await gateway.store.get_by_id(tenant_id)
    if record is None:
        raise TenantNotFound(tenant_id)

    state = gateway.manager.status(tenant_id)
    return {
        "ok": True,
        "state": state.value,
        "connected": state is SessionState.CONNECTED,
        "logged_in": bool(record.jid),
        "jid": record.jid or None,
    }


@api.get("/session/qr")
async def session_qr(
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    """
    Get the last QR code received while pairing.

    Returns:
        {
            "ok": true,
            "qr_code": "base64_encoded_qr_image" or null
        }
    """
    state = gateway.manager.status(tenant_id)
    if state is SessionState.ABSENT:
        raise NotActive(tenant_id)

    record = await gateway.store.get_by_id(tenant_id)
    if record is None:
        raise TenantNotFound(tenant_id)
    if record.jid and state is SessionState.CONNECTED:
        raise HTTPException(status_code=409, detail="Already logged in")

    return {"ok": True, "qr_code": record.qrcode or None}


# ----------------------------------------------------------------------
# Webhook & events
# ----------------------------------------------------------------------

@api.get("/webhook")
async def get_webhook(
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    record = await gateway.store.get_by_id(tenant_id)
    if record is None:
        raise TenantNotFound(tenant_id)
    return {"ok": True, "webhook": record.webhook, "events": record.events}


async def _update_route(gateway: Gateway, tenant_id: int, **fields) -> Dict[str, Any]:
    record = await gateway.store.update(tenant_id, **fields)
    if record is None:
        raise TenantNotFound(tenant_id)
    if gateway.manager.status(tenant_id) is not SessionState.ABSENT:
        gateway.router.configure(tenant_id, record.webhook, record.events)
    log_info("Webhook updated", tenant_id=tenant_id, action="webhook_updated", url=record.webhook)
    return {"ok": True, "webhook": record.webhook, "events": record.events}


@api.post("/webhook")
async def set_webhook(
    data: WebhookRequest,
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    """
    Set the webhook URL and, optionally, the subscribed events.
    A running session picks up the change for the next event.
    """
    fields: Dict[str, Any] = {"webhook": data.webhook}
    if data.events is not None:
        fields["events"] = data.events
    return await _update_route(gateway, tenant_id, **fields)


@api.delete("/webhook")
async def delete_webhook(
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    """Stop delivering events. They are still recorded in /events/recent."""
    return await _update_route(gateway, tenant_id, webhook="")


@api.get("/events/recent")
async def recent_events(
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    events = gateway.router.recent_events(tenant_id)
    return {"ok": True, "events": events, "count": len(events)}


# ----------------------------------------------------------------------
# Chat (data plane)
# ----------------------------------------------------------------------

@api.post("/chat/send/text")
async def send_text(
    data: SendTextRequest,
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    client = gateway.manager.get_live_handle(tenant_id)
    result = await client.send_text(data.phone, data.body, quoted_message_id=data.quoted_id)
    log_info("Message sent", tenant_id=tenant_id, action="chat_message_sent")
    return {"ok": True, "result": result}


@api.post("/chat/presence")
async def send_presence(
    data: PresenceRequest,
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    client = gateway.manager.get_live_handle(tenant_id)
    result = await client.send_presence(data.phone, data.state, delay=data.delay)
    return {"ok": True, "result": result}


@api.post("/chat/markread")
async def mark_read(
    data: MarkReadRequest,
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    client = gateway.manager.get_live_handle(tenant_id)
    result = await client.mark_read(data.chat, data.ids)
    return {"ok": True, "result": result}


@api.post("/chat/downloadmedia")
async def download_media(
    data: DownloadMediaRequest,
    tenant_id: int = Depends(get_current_tenant),
    gateway: Gateway = Depends(get_gateway),
):
    client = gateway.manager.get_live_handle(tenant_id)
    result = await client.download_media(data.message)
    return {"ok": True, "result": result}


app = create_app()


def run():
    """Console entry point: serve the app with uvicorn (TLS when configured)."""
    logger.info(f"Gateway listening on {ADDRESS}:{PORT}")
    logger.info(f"CORS enabled for origins: {', '.join(CORS_ORIGINS)}")
    ssl_options = {}
    if SSL_CERTIFICATE and SSL_PRIVATE_KEY:
        ssl_options = {"ssl_certfile": SSL_CERTIFICATE, "ssl_keyfile": SSL_PRIVATE_KEY}
    uvicorn.run(app, host=ADDRESS, port=PORT, log_level=LOG_LEVEL.lower(), **ssl_options)


if __name__ == "__main__":
    run()
