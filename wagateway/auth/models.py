"""
Pydantic models for tenant administration.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List

from ..models import normalize_events


class TenantCreate(BaseModel):
    """Request model for creating a tenant."""
    name: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1, description="Token the tenant authenticates with")
    webhook: str = ""
    events: List[str] = []
    expiration: Optional[int] = Field(None, description="Unix time after which the token is refused")

    @field_validator("events")
    @classmethod
    def check_events(cls, value: List[str]) -> List[str]:
        return normalize_events(value)


class TenantAdminView(BaseModel):
    """Tenant as shown to administrators."""
    id: int
    name: str
    token: str
    webhook: str = ""
    jid: str = ""
    connected: bool = False
    expiration: Optional[int] = None
    events: List[str] = []
    session_state: str = "absent"
