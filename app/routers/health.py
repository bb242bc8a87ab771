# app/routers/health.py

from fastapi import APIRouter

from app.config import get_settings
from app.database import supabase_configured

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "service": "cash-reconciliation-api",
    }


@router.get("/ready")
async def readiness_check():
    """Readiness check: is a record store configured."""
    settings = get_settings()
    database = "ok" if supabase_configured(settings) else "not_configured"
    return {
        "status": "ready" if database == "ok" else "not_ready",
        "checks": {
            "database": database,
            "records_table": settings.records_table,
            "atomic_merge": bool(settings.annotation_merge_rpc),
        },
    }
