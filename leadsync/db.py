from __future__ import annotations

from supabase import Client, create_client

from leadsync.config import Settings, settings


def create_supabase_client(config: Settings) -> Client | None:
    if not config.supabase_url or not config.supabase_service_role_key:
        return None
    return create_client(config.supabase_url, config.supabase_service_role_key)


supabase = create_supabase_client(settings)
