from supabase import Client, create_client

from .config import SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY
from .errors import StoreUnavailable

_client: Client | None = None


def get_supabase() -> Client:
    """Return the process-wide Supabase client, creating it on first use."""
    global _client
    if _client is None:
        if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
            raise StoreUnavailable("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
        _client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    return _client
