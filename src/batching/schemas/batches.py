"""Batch request/response schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.domain import BatchStatus, StopStatus


class CreateBatchRequest(BaseModel):
    order_ids: List[str] = Field(..., min_length=1, description="Orders to combine into one batch.")
    driver_id: Optional[str] = Field(default=None, description="Pin the batch to this driver instead of selecting one.")
    max_orders: Optional[int] = Field(default=None, ge=1)
    max_deviation_km: Optional[float] = Field(default=None, gt=0)


class SweepRequest(BaseModel):
    max_orders_per_group: Optional[int] = Field(default=None, ge=1)
    max_deviation_km: Optional[float] = Field(default=None, gt=0)


class CancelBatchRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class AddOrderRequest(BaseModel):
    order_id: str


class StopStatusRequest(BaseModel):
    status: StopStatus


class BatchModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_id: str
    driver_id: str
    batch_number: str
    status: BatchStatus
    total_distance_km: float
    estimated_duration_minutes: int
    optimization_score: float
    max_orders: int
    max_deviation_km: float
    created_at: datetime
    updated_at: datetime
    actual_start_time: Optional[datetime] = None
    actual_completion_time: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BatchOrderModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: str
    pickup_sequence: int
    delivery_sequence: int
    pickup_status: StopStatus
    delivery_status: StopStatus
    actual_pickup_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None


class BatchResponse(BaseModel):
    message: str
    batch: BatchModel
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BatchDetailResponse(BaseModel):
    batch: BatchModel
    orders: List[BatchOrderModel]


class StopUpdateResponse(BaseModel):
    message: str
    order: BatchOrderModel
    batch_completed: bool = False


class ActiveBatchResponse(BaseModel):
    driver_id: str
    batch: Optional[BatchModel] = None


class GroupOutcomeModel(BaseModel):
    order_ids: List[str]
    success: bool
    message: str
    error: Optional[str] = None
    batch_id: Optional[str] = None


class SweepResponse(BaseModel):
    created: int
    failed: int
    cancelled: bool
    groups: List[GroupOutcomeModel]
    skipped: List[List[str]] = Field(default_factory=list)
