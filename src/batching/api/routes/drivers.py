"""Driver-facing batch lookup."""

from __future__ import annotations

from fastapi import APIRouter, status

from ...schemas.batches import ActiveBatchResponse, BatchModel
from ..dependencies import get_engine, unwrap

router = APIRouter(prefix="/drivers", tags=["drivers"])


@router.get("/{driver_id}/batch", response_model=ActiveBatchResponse, status_code=status.HTTP_200_OK)
def active_batch(driver_id: str) -> ActiveBatchResponse:
    batch = unwrap(get_engine().get_active_batch_for_driver(driver_id))
    return ActiveBatchResponse(
        driver_id=driver_id,
        batch=BatchModel.model_validate(batch) if batch is not None else None,
    )
