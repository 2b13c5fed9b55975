"""Engine provider shared by the route modules."""

from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import HTTPException, status

from ..config import settings
from ..db.supabase import get_supabase_client
from ..models.results import OperationResult
from ..persistence.database import SupabaseStore
from ..persistence.memory import InMemoryStore
from ..services.engine import BatchingEngine, build_engine

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "incompatible": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "no_candidate": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "state": status.HTTP_409_CONFLICT,
    "store": status.HTTP_503_SERVICE_UNAVAILABLE,
}


@lru_cache(maxsize=1)
def get_engine() -> BatchingEngine:
    """Engine over Supabase when configured, otherwise over an in-process store."""
    client = get_supabase_client()
    if client is None:
        logger.warning("Supabase not configured; batches are kept in memory only")
        return build_engine(InMemoryStore(), settings=settings)
    return build_engine(SupabaseStore(client), settings=settings)


def unwrap(result: OperationResult):
    """Return ``result.data`` or raise the matching ``HTTPException``."""
    if result.success:
        return result.data
    raise HTTPException(
        status_code=STATUS_BY_ERROR.get(result.error, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={"error": result.error, "message": result.message, "metadata": result.metadata},
    )
