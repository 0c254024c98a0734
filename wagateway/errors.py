"""
Gateway exception hierarchy.

Each error carries the HTTP status the API boundary answers with.
"""

from typing import Any, Optional


class GatewayError(Exception):
    """Base class for every error raised by the gateway core."""

    status_code = 500
    code = "gateway_error"

    def __init__(self, message: str, tenant_id: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.tenant_id = tenant_id


class AlreadyActive(GatewayError):
    """A session already exists for the tenant."""

    status_code = 409
    code = "already_active"

    def __init__(self, tenant_id: Any, state: Optional[str] = None):
        super().__init__(f"Session for tenant {tenant_id} is already {state or 'active'}", tenant_id)
        self.state = state


class NotActive(GatewayError):
    """No usable session exists for the tenant."""

    status_code = 409
    code = "not_active"

    def __init__(self, tenant_id: Any, state: Optional[str] = None):
        detail = f" (state: {state})" if state else ""
        super().__init__(f"No active session for tenant {tenant_id}{detail}", tenant_id)
        self.state = state


class TenantNotFound(GatewayError):
    status_code = 404
    code = "tenant_not_found"

    def __init__(self, tenant_id: Any):
        super().__init__(f"Tenant {tenant_id} not found", tenant_id)


class PairingFailed(GatewayError):
    """The protocol could not establish or pair the session."""

    status_code = 502
    code = "pairing_failed"


class ConnectTimeout(GatewayError):
    status_code = 504
    code = "connect_timeout"


class ConnectionLost(GatewayError):
    status_code = 502
    code = "connection_lost"


class ProtocolError(GatewayError):
    """The protocol server rejected a data-plane request."""

    status_code = 502
    code = "protocol_error"


class StoreUnavailable(GatewayError):
    """The tenant store could not be reached or answered with an error."""

    status_code = 503
    code = "store_unavailable"


class DuplicateToken(GatewayError):
    status_code = 409
    code = "duplicate_token"

    def __init__(self):
        super().__init__("Token is already assigned to another tenant")


class DeliveryFailed(GatewayError):
    """A webhook endpoint did not accept an event."""

    code = "delivery_failed"

    def __init__(self, message: str, tenant_id: Any = None, status_code: Optional[int] = None):
        super().__init__(message, tenant_id)
        self.response_status = status_code
