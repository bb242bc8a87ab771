# app/dependencies.py

"""
Record store dependency for FastAPI.

Routes receive the store through Depends so tests can override it with an
in-memory store.
"""

from functools import lru_cache

from fastapi import HTTPException, status

from app.config import get_settings
from app.database import RecordStore, SupabaseRecordStore, supabase_configured


@lru_cache()
def _supabase_store() -> SupabaseRecordStore:
    return SupabaseRecordStore.from_settings(get_settings())


def get_record_store() -> RecordStore:
    """
    Return the configured record store.

    Responds 503 when no backend is configured.
    """
    if not supabase_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Record store is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY)",
        )
    return _supabase_store()
