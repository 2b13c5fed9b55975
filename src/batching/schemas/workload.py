"""Workload audit and rebalancing schemas."""

from __future__ import annotations

from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class DriverLoadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    driver_id: str
    batch_count: int
    active_orders: int
    estimated_minutes: int
    location: Optional[Tuple[float, float]] = None


class WorkloadResponse(BaseModel):
    average_orders: float
    drivers: List[DriverLoadModel]
    overloaded: List[str]
    underloaded: List[str]


class TransferModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    batch_id: str
    from_driver: str
    to_driver: str
    distance_km: float


class SkippedTransferModel(BaseModel):
    batch_id: str
    to_driver: str
    reason: str


class RebalanceResponse(BaseModel):
    message: str
    proposed: List[TransferModel]
    executed: List[TransferModel]
    skipped: List[SkippedTransferModel]
