# app/routers/reconcile.py

"""
Reconciliation routes.

The main endpoint that runs the reconciliation pipeline.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.config import get_settings
from app.core.errors import StoreUnavailableError
from app.core.orchestrator import run_reconciliation
from app.database import RecordStore
from app.dependencies import get_record_store
from app.models import RunRequest, RunSummary

logger = logging.getLogger(__name__)
router = APIRouter()


# ============================================
# Main Reconciliation Endpoint
# ============================================

@router.post("/reconcile", response_model=RunSummary)
async def reconcile(request: RunRequest, store: RecordStore = Depends(get_record_store)):
    """
    Run the full pipeline.

    1. Fetches bank, gateway and invoice records
    2. Matches, aggregates, resolves chains and classifies the rest
    3. Merges annotations back (skipped on dry run)
    4. Returns the run summary
    """
    try:
        return await run_reconciliation(store, request, get_settings())
    except StoreUnavailableError as e:
        logger.error(f"Reconciliation aborted: {e}")
        raise HTTPException(status_code=503, detail=f"Record store unavailable: {e}")
