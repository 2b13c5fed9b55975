"""Health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, status

from ...config import settings

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_root() -> dict:
    """Simple health check endpoint that doesn't require any dependencies."""
    return {"status": "ok"}


@router.get("/health/database", status_code=status.HTTP_200_OK)
def check_database() -> dict:
    """Check database connection and batch table status."""
    from ...db.supabase import get_supabase_client
    from ...persistence.database import BATCHES_TABLE

    supabase = get_supabase_client()
    if not supabase:
        return {
            "configured": False,
            "message": "Supabase not configured. Set BATCHING_SUPABASE_URL and BATCHING_SUPABASE_KEY environment variables.",
            "store": "memory",
        }

    try:
        response = supabase.table(BATCHES_TABLE).select("id", count="exact").limit(1).execute()
        return {
            "configured": True,
            "connected": True,
            "store": "supabase",
            "batches_count": response.count or 0,
            "timeout_seconds": settings.store_timeout_seconds,
        }
    except Exception as exc:
        return {
            "configured": True,
            "connected": False,
            "error": str(exc),
            "message": f"Database connection error: {exc}",
        }
