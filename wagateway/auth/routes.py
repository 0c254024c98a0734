"""
Tenant administration routes.

Create, list and delete gateway tenants. Every route requires the admin token.
"""

from fastapi import APIRouter, Depends

from .dependencies import get_gateway, require_admin
from .models import TenantAdminView, TenantCreate
from ..errors import TenantNotFound
from ..logger import log_info


router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_admin)])


def _admin_view(gateway, record) -> dict:
    return TenantAdminView(
        **record.model_dump(exclude={"qrcode"}),
        session_state=gateway.manager.status(record.id).value,
    ).model_dump()


@router.get("/users")
async def list_users(gateway=Depends(get_gateway)):
    """
    List every tenant with its live session state.
    """
    records = await gateway.store.list_all()
    return {
        "ok": True,
        "users": [_admin_view(gateway, record) for record in records],
    }


@router.post("/users", status_code=201)
async def create_user(data: TenantCreate, gateway=Depends(get_gateway)):
    """
    Create a tenant.

    - **name**: Display name
    - **token**: Token the tenant authenticates with (must be unique)
    - **webhook**: Optional URL events are POSTed to
    - **events**: Subscribed event types; empty means all
    - **expiration**: Optional unix time after which the token is refused
    """
    record = await gateway.store.create(
        name=data.name,
        token=data.token,
        webhook=data.webhook,
        events=data.events,
        expiration=data.expiration,
    )
    log_info("Tenant created", tenant_id=record.id, action="admin_tenant_created")
    return {"ok": True, "user": _admin_view(gateway, record)}


@router.delete("/users/{tenant_id}")
async def delete_user(tenant_id: int, gateway=Depends(get_gateway)):
    """
    Delete a tenant. A running session is stopped first and cached tokens
    are invalidated.
    """
    record = await gateway.store.get_by_id(tenant_id)
    if record is None:
        raise TenantNotFound(tenant_id)

    await gateway.manager.forget(tenant_id)
    await gateway.store.delete(tenant_id)
    gateway.auth_cache.invalidate_tenant(tenant_id)

    log_info("Tenant deleted", tenant_id=tenant_id, action="admin_tenant_deleted")
    return {"ok": True, "deleted": tenant_id}
