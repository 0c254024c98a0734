"""
FastAPI dependencies for authentication and authorization.

Tenants authenticate with their token, sent either in the `token` header or
as a Bearer credential. Tokens are resolved through the auth cache first and
the tenant store on a miss; a store failure rejects the request.
Admin routes require the Authorization header to equal ADMIN_TOKEN.
"""

import hmac
from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from typing import Optional

from ..errors import StoreUnavailable
from ..logger import log_debug, log_error, log_warning


# HTTP Bearer token security scheme; the `token` header is accepted too
optional_security = HTTPBearer(auto_error=False)


def get_gateway(request: Request):
    """The Gateway attached to the running app."""
    return request.app.state.gateway


async def get_current_tenant(
    gateway=Depends(get_gateway),
    token: Optional[str] = Header(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> int:
    """
    Resolve the request's tenant token to a tenant id.

    Returns:
        Tenant id

    Raises:
        HTTPException 401: If the token is missing, unknown or expired, or
            the store cannot be reached to check it
    """
    raw_token = token or (credentials.credentials if credentials else None)
    if not raw_token:
        raise HTTPException(status_code=401, detail="Missing token")

    tenant_id = gateway.auth_cache.resolve(raw_token)
    if tenant_id is not None:
        return tenant_id

    try:
        record = await gateway.store.get_by_token(raw_token)
    except StoreUnavailable as e:
        log_error("Token lookup failed, rejecting request", error=e.message, action="auth_store_error")
        raise HTTPException(status_code=401, detail="Unable to verify token")

    if record is None:
        log_warning("Unknown tenant token", action="auth_invalid_token")
        raise HTTPException(status_code=401, detail="Invalid token")

    if record.is_expired():
        log_warning("Tenant account expired", tenant_id=record.id, action="auth_expired_tenant")
        raise HTTPException(status_code=401, detail="Account expired")

    gateway.auth_cache.put(raw_token, record.id)
    log_debug("Tenant authenticated", tenant_id=record.id, action="auth_success")
    return record.id


async def require_admin(
    gateway=Depends(get_gateway),
    authorization: Optional[str] = Header(None),
) -> None:
    """
    Check the admin token.

    Raises:
        HTTPException 401: If admin access is not configured or the token does not match
    """
    supplied = authorization or ""
    if supplied.lower().startswith("bearer "):
        supplied = supplied[7:]

    if not gateway.admin_token or not hmac.compare_digest(supplied, gateway.admin_token):
        log_warning("Admin access denied", action="auth_admin_denied")
        raise HTTPException(status_code=401, detail="Unauthorized")
