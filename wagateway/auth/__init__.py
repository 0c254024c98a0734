"""
Authentication module for the gateway.

Tenant token authentication (auth cache backed by the tenant store),
the admin token check, and the tenant administration routes.
"""

from .dependencies import get_current_tenant, get_gateway, require_admin
from .routes import router as auth_router

__all__ = [
    "get_current_tenant",
    "get_gateway",
    "require_admin",
    "auth_router",
]
