"""Batch planning and lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, status

from ...schemas.batches import (
    AddOrderRequest,
    BatchDetailResponse,
    BatchModel,
    BatchOrderModel,
    BatchResponse,
    CancelBatchRequest,
    CreateBatchRequest,
    GroupOutcomeModel,
    StopStatusRequest,
    StopUpdateResponse,
    SweepRequest,
    SweepResponse,
)
from ..dependencies import get_engine, unwrap

router = APIRouter(prefix="/batches", tags=["batches"])


def _batch_response(result) -> BatchResponse:
    batch = unwrap(result)
    return BatchResponse(
        message=result.message,
        batch=BatchModel.model_validate(batch),
        metadata=result.metadata,
    )


@router.post("", response_model=BatchResponse, status_code=status.HTTP_201_CREATED)
def create_batch(payload: CreateBatchRequest) -> BatchResponse:
    result = get_engine().create_optimized_batch(
        payload.order_ids,
        driver_id=payload.driver_id,
        max_orders=payload.max_orders,
        max_deviation_km=payload.max_deviation_km,
    )
    return _batch_response(result)


@router.post("/sweep", response_model=SweepResponse, status_code=status.HTTP_200_OK)
def sweep(payload: SweepRequest) -> SweepResponse:
    sweep_result = unwrap(
        get_engine().run_grouping_sweep(payload.max_orders_per_group, payload.max_deviation_km)
    )
    groups = [
        GroupOutcomeModel(
            order_ids=group.order_ids,
            success=group.result.success,
            message=group.result.message,
            error=group.result.error,
            batch_id=group.result.metadata.get("batch_id"),
        )
        for group in sweep_result.groups
    ]
    return SweepResponse(
        created=sweep_result.created,
        failed=sweep_result.failed,
        cancelled=sweep_result.cancelled,
        groups=groups,
        skipped=sweep_result.skipped,
    )


@router.get("/{batch_id}", response_model=BatchDetailResponse, status_code=status.HTTP_200_OK)
def get_batch(batch_id: str) -> BatchDetailResponse:
    detail = unwrap(get_engine().get_batch(batch_id))
    return BatchDetailResponse(
        batch=BatchModel.model_validate(detail["batch"]),
        orders=[BatchOrderModel.model_validate(row) for row in detail["orders"]],
    )


@router.post("/{batch_id}/start", response_model=BatchResponse)
def start_batch(batch_id: str) -> BatchResponse:
    return _batch_response(get_engine().start_batch(batch_id))


@router.post("/{batch_id}/pause", response_model=BatchResponse)
def pause_batch(batch_id: str) -> BatchResponse:
    return _batch_response(get_engine().pause_batch(batch_id))


@router.post("/{batch_id}/resume", response_model=BatchResponse)
def resume_batch(batch_id: str) -> BatchResponse:
    return _batch_response(get_engine().resume_batch(batch_id))


@router.post("/{batch_id}/complete", response_model=BatchResponse)
def complete_batch(batch_id: str) -> BatchResponse:
    return _batch_response(get_engine().complete_batch(batch_id))


@router.post("/{batch_id}/cancel", response_model=BatchResponse)
def cancel_batch(batch_id: str, payload: CancelBatchRequest) -> BatchResponse:
    return _batch_response(get_engine().cancel_batch(batch_id, payload.reason))


@router.post("/{batch_id}/orders", response_model=BatchResponse)
def add_order(batch_id: str, payload: AddOrderRequest) -> BatchResponse:
    return _batch_response(get_engine().add_order_to_batch(batch_id, payload.order_id))


@router.delete("/{batch_id}/orders/{order_id}", response_model=BatchResponse)
def remove_order(batch_id: str, order_id: str) -> BatchResponse:
    return _batch_response(get_engine().remove_order_from_batch(batch_id, order_id))


@router.post("/{batch_id}/orders/{order_id}/pickup", response_model=StopUpdateResponse)
def update_pickup(batch_id: str, order_id: str, payload: StopStatusRequest) -> StopUpdateResponse:
    result = get_engine().update_pickup_status(batch_id, order_id, payload.status)
    row = unwrap(result)
    return StopUpdateResponse(message=result.message, order=BatchOrderModel.model_validate(row))


@router.post("/{batch_id}/orders/{order_id}/delivery", response_model=StopUpdateResponse)
def update_delivery(batch_id: str, order_id: str, payload: StopStatusRequest) -> StopUpdateResponse:
    result = get_engine().update_delivery_status(batch_id, order_id, payload.status)
    row = unwrap(result)
    return StopUpdateResponse(
        message=result.message,
        order=BatchOrderModel.model_validate(row),
        batch_completed=bool(result.metadata.get("batch_completed")),
    )
