"""
Database connections: Supabase async client setup.
"""

from supabase import AsyncClient, acreate_client

from app.config import get_settings


async def create_supabase_admin_client() -> AsyncClient:
    """Create the Supabase async client (service_role key, bypasses RLS).

    The ingestion pipeline writes status, chunks and locks on behalf of
    every agent, so it needs elevated privileges. Created once in the app
    lifespan and shared through `app.state`.
    """
    settings = get_settings()
    if not settings.SUPABASE_SERVICE_KEY:
        raise ValueError("SUPABASE_SERVICE_KEY not configured")
    return await acreate_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY)
