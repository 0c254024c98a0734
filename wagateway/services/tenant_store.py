"""
Tenant store.

Durable registry of tenants: identity, auth token, webhook, protocol session
id, connection flag, expiration and event subscription. The production
backend is a Supabase (PostgREST) table; the in-memory backend is used for
tests and local development.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..errors import DuplicateToken, StoreUnavailable
from ..logger import log_error
from ..models import TenantRecord, format_events, normalize_events


UPDATABLE_FIELDS = frozenset(
    {"name", "token", "webhook", "jid", "qrcode", "connected", "expiration", "events"}
)


def _prepare_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Validate update fields and convert them to the column representation."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown tenant fields: {', '.join(sorted(unknown))}")

    row = dict(fields)
    if "events" in row:
        row["events"] = format_events(normalize_events(row["events"]))
    if "connected" in row:
        row["connected"] = 1 if row["connected"] else 0
    return row


class TenantStore(ABC):
    """Record-oriented access to tenants."""

    @abstractmethod
    async def get_by_token(self, token: str) -> Optional[TenantRecord]:
        ...

    @abstractmethod
    async def get_by_id(self, tenant_id: int) -> Optional[TenantRecord]:
        ...

    @abstractmethod
    async def list_connected(self) -> List[TenantRecord]:
        """Tenants whose connected flag is set."""

    @abstractmethod
    async def list_all(self) -> List[TenantRecord]:
        ...

    @abstractmethod
    async def create(
        self,
        name: str,
        token: str,
        webhook: str = "",
        events: Optional[List[str]] = None,
        expiration: Optional[int] = None,
    ) -> TenantRecord:
        """
        Create a tenant.

        Raises:
            DuplicateToken: If the token is already assigned
            StoreUnavailable: If the backend fails
        """

    @abstractmethod
    async def update(self, tenant_id: int, **fields: Any) -> Optional[TenantRecord]:
        """Update the given fields; returns the new record or None if unknown."""

    @abstractmethod
    async def delete(self, tenant_id: int) -> bool:
        ...


class MemoryTenantStore(TenantStore):
    """
    In-process tenant store.

    Reads are lock-free; writes are serialized per record.
    """

    def __init__(self):
        self._records: Dict[int, TenantRecord] = {}
        self._next_id = 1
        self._create_lock = asyncio.Lock()
        self._write_locks: Dict[int, asyncio.Lock] = {}

    def _write_lock(self, tenant_id: int) -> asyncio.Lock:
        return self._write_locks.setdefault(tenant_id, asyncio.Lock())

    async def get_by_token(self, token: str) -> Optional[TenantRecord]:
        for record in self._records.values():
            if record.token == token:
                return record.model_copy(deep=True)
        return None

    async def get_by_id(self, tenant_id: int) -> Optional[TenantRecord]:
        record = self._records.get(tenant_id)
        return record.model_copy(deep=True) if record else None

    async def list_connected(self) -> List[TenantRecord]:
        return [r.model_copy(deep=True) for r in self._records.values() if r.connected]

    async def list_all(self) -> List[TenantRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    async def create(
        self,
        name: str,
        token: str,
        webhook: str = "",
        events: Optional[List[str]] = None,
        expiration: Optional[int] = None,
    ) -> TenantRecord:
        async with self._create_lock:
            if any(r.token == token for r in self._records.values()):
                raise DuplicateToken()
            record = TenantRecord(
                id=self._next_id,
                name=name,
                token=token,
                webhook=webhook or "",
                expiration=expiration,
                events=normalize_events(events),
            )
            self._records[record.id] = record
            self._next_id += 1
            return record.model_copy(deep=True)

    async def update(self, tenant_id: int, **fields: Any) -> Optional[TenantRecord]:
        row = _prepare_fields(fields)
        async with self._write_lock(tenant_id):
            current = self._records.get(tenant_id)
            if current is None:
                return None
            if "token" in row and any(
                r.token == row["token"] and r.id != tenant_id for r in self._records.values()
            ):
                raise DuplicateToken()
            merged = current.to_row()
            merged.update(row)
            updated = TenantRecord.from_row(merged)
            self._records[tenant_id] = updated
            return updated.model_copy(deep=True)

    async def delete(self, tenant_id: int) -> bool:
        async with self._write_lock(tenant_id):
            removed = self._records.pop(tenant_id, None) is not None
        self._write_locks.pop(tenant_id, None)
        return removed


class SupabaseTenantStore(TenantStore):
    """
    Tenant store backed by a Supabase table (see sql/schema.sql).

    The Supabase client is synchronous; every query runs in a worker thread
    so a slow database never stalls the event loop.
    """

    def __init__(self, client=None, table: Optional[str] = None):
        from ..config import TENANTS_TABLE

        self._client = client
        self.table_name = table or TENANTS_TABLE

    @property
    def client(self):
        if self._client is None:
            from ..db import get_supabase

            self._client = get_supabase()
        return self._client

    async def _execute(self, operation: str, build_query) -> List[Dict[str, Any]]:
        """Run a query built by `build_query(table)` and return its rows."""
        try:
            query = build_query(self.client.table(self.table_name))
            result = await asyncio.to_thread(query.execute)
        except StoreUnavailable:
            raise
        except Exception as e:
            if "duplicate key" in str(e).lower():
                raise DuplicateToken() from e
            log_error(
                "Tenant store query failed",
                action=f"store_{operation}_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StoreUnavailable(f"Tenant store {operation} failed: {e}") from e
        return result.data or []

    async def get_by_token(self, token: str) -> Optional[TenantRecord]:
        rows = await self._execute(
            "get_by_token", lambda t: t.select("*").eq("token", token).limit(1)
        )
        return TenantRecord.from_row(rows[0]) if rows else None

    async def get_by_id(self, tenant_id: int) -> Optional[TenantRecord]:
        rows = await self._execute(
            "get_by_id", lambda t: t.select("*").eq("id", tenant_id).limit(1)
        )
        return TenantRecord.from_row(rows[0]) if rows else None

    async def list_connected(self) -> List[TenantRecord]:
        rows = await self._execute("list_connected", lambda t: t.select("*").eq("connected", 1))
        return [TenantRecord.from_row(row) for row in rows]

    async def list_all(self) -> List[TenantRecord]:
        rows = await self._execute("list_all", lambda t: t.select("*").order("id"))
        return [TenantRecord.from_row(row) for row in rows]

    async def create(
        self,
        name: str,
        token: str,
        webhook: str = "",
        events: Optional[List[str]] = None,
        expiration: Optional[int] = None,
    ) -> TenantRecord:
        if await self.get_by_token(token):
            raise DuplicateToken()

        row = {
            "name": name,
            "token": token,
            "webhook": webhook or "",
            "expiration": expiration,
            "events": format_events(normalize_events(events)),
            "connected": 0,
        }
        rows = await self._execute("create", lambda t: t.insert(row))
        if not rows:
            raise StoreUnavailable("Tenant store create returned no row")
        return TenantRecord.from_row(rows[0])

    async def update(self, tenant_id: int, **fields: Any) -> Optional[TenantRecord]:
        row = _prepare_fields(fields)
        if not row:
            return await self.get_by_id(tenant_id)
        rows = await self._execute("update", lambda t: t.update(row).eq("id", tenant_id))
        return TenantRecord.from_row(rows[0]) if rows else None

    async def delete(self, tenant_id: int) -> bool:
        rows = await self._execute("delete", lambda t: t.delete().eq("id", tenant_id))
        return bool(rows)


def create_tenant_store(backend: Optional[str] = None) -> TenantStore:
    """Build the store selected by STORE_BACKEND."""
    from ..config import STORE_BACKEND

    backend = (backend or STORE_BACKEND).lower().strip()
    if backend == "memory":
        return MemoryTenantStore()
    if backend == "supabase":
        return SupabaseTenantStore()
    raise ValueError(f"Unsupported store backend: '{backend}'. Supported backends: supabase, memory")
