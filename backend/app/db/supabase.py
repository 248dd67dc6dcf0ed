"""
Supabase Client
===============
Thin wrapper that provides a configured Supabase client for the store
and for dependency injection into FastAPI routes.

Uses the service_role key (not the anon key) because the sync engine
writes tokens and metrics on behalf of participants, including from the
background job where no user session exists.
"""

from functools import lru_cache

from supabase import Client, create_client

from app.config import get_settings


@lru_cache
def get_supabase_client() -> Client:
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_service_key)
