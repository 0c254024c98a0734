#!/usr/bin/env python3
"""
Create Tenant Script

Creates a gateway tenant directly in the tenant store, e.g. before the
admin token is configured.

Usage:
    python scripts/create_tenant.py <name> [token] [webhook] [events]

Example:
    python scripts/create_tenant.py acme
    python scripts/create_tenant.py acme s3cret https://example.com/hook Message,ReadReceipt

Environment:
    Requires SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY in .env file
"""

import asyncio
import secrets
import sys
from pathlib import Path
from typing import List

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

# Load environment variables
load_dotenv(project_root / ".env")

from wagateway.errors import GatewayError
from wagateway.models import normalize_events
from wagateway.services.tenant_store import create_tenant_store


def split_events(value: str) -> List[str]:
    """
    Parse a comma-separated event list.

    Raises:
        ValueError: If a tag is not a known event type
    """
    return normalize_events([tag.strip() for tag in value.split(",") if tag.strip()])


async def create_tenant(name: str, token: str, webhook: str = "", events: str = "All"):
    """
    Insert one tenant.

    Returns:
        Created TenantRecord
    """
    store = create_tenant_store()
    record = await store.create(name=name, token=token, webhook=webhook, events=split_events(events))

    print(f"Created tenant {record.name} with id: {record.id}")
    print(f"  token:   {record.token}")
    print(f"  webhook: {record.webhook or '(none)'}")
    print(f"  events:  {','.join(record.events)}")
    return record


def main():
    if len(sys.argv) < 2:
        print("Usage: python scripts/create_tenant.py <name> [token] [webhook] [events]")
        print()
        print("Arguments:")
        print("  name     Tenant name")
        print("  token    Auth token (default: random)")
        print("  webhook  URL events are POSTed to (default: none)")
        print("  events   Comma-separated event types (default: All)")
        sys.exit(1)

    name = sys.argv[1]
    token = sys.argv[2] if len(sys.argv) > 2 else secrets.token_urlsafe(24)
    webhook = sys.argv[3] if len(sys.argv) > 3 else ""
    events = sys.argv[4] if len(sys.argv) > 4 else "All"

    try:
        asyncio.run(create_tenant(name, token, webhook, events))
    except GatewayError as e:
        print(f"Error: {e.message}")
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
