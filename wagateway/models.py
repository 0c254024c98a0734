"""
Tenant records and event-type tags.
"""

import time
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field


ALL_EVENTS = "All"

EVENT_TYPES = (
    "Message",
    "ReadReceipt",
    "Presence",
    "ChatPresence",
    "HistorySync",
    "CallOffer",
    "Connected",
    "Disconnected",
    "QR",
    "PairSuccess",
    "LoggedOut",
)


def normalize_events(events: Optional[Iterable[str]]) -> List[str]:
    """
    Validate a subscription list and return it deduplicated in order.

    An empty list, None, or any list containing "All" collapses to ["All"].

    Raises:
        ValueError: If a tag is not a known event type
    """
    if not events:
        return [ALL_EVENTS]

    normalized: List[str] = []
    for raw in events:
        tag = raw.strip()
        if not tag:
            continue
        if tag.lower() == ALL_EVENTS.lower():
            return [ALL_EVENTS]
        if tag not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {tag}")
        if tag not in normalized:
            normalized.append(tag)

    return normalized or [ALL_EVENTS]


def parse_events(value: Optional[str]) -> List[str]:
    """Parse the comma-separated column representation, ignoring unknown tags."""
    tags = [tag.strip() for tag in (value or "").split(",")]
    known = [tag for tag in tags if tag in EVENT_TYPES or tag.lower() == ALL_EVENTS.lower()]
    return normalize_events(known)


def format_events(events: Iterable[str]) -> str:
    return ",".join(events)


class TenantRecord(BaseModel):
    """One gateway account, as persisted in the tenants table."""

    id: int
    name: str
    token: str
    webhook: str = ""
    jid: str = ""
    qrcode: str = ""
    connected: bool = False
    expiration: Optional[int] = None
    events: List[str] = Field(default_factory=lambda: [ALL_EVENTS])

    def is_expired(self, now: Optional[float] = None) -> bool:
        if not self.expiration:
            return False
        return self.expiration <= (now if now is not None else time.time())

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TenantRecord":
        """Build a record from a database row."""
        data = dict(row)
        if isinstance(data.get("events"), str) or data.get("events") is None:
            data["events"] = parse_events(data.get("events"))
        data["connected"] = bool(data.get("connected") or 0)
        for field in ("webhook", "jid", "qrcode"):
            data[field] = data.get(field) or ""
        return cls(**data)

    def to_row(self) -> Dict[str, Any]:
        row = self.model_dump()
        row["events"] = format_events(self.events)
        row["connected"] = 1 if self.connected else 0
        return row
