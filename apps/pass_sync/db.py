from supabase import AsyncClient, acreate_client

from apps.pass_sync.config.settings import Settings
from apps.pass_sync.services.errors import ConfigurationError


async def create_supabase(settings: Settings) -> AsyncClient:
    if not (settings.supabase_url and settings.supabase_service_role_key):
        raise ConfigurationError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
    return await acreate_client(settings.supabase_url, settings.supabase_service_role_key)
