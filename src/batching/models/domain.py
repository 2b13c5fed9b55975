"""Domain models for orders, drivers and delivery batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    READY = "ready"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class BatchStatus(str, Enum):
    PLANNED = "planned"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_BATCH_STATUSES


TERMINAL_BATCH_STATUSES = frozenset({BatchStatus.COMPLETED, BatchStatus.CANCELLED})
OPEN_BATCH_STATUSES = (BatchStatus.PLANNED, BatchStatus.ACTIVE, BatchStatus.PAUSED)


class StopStatus(str, Enum):
    """Sub-status of a single pickup or delivery leg within a batch."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(slots=True)
class Order:
    """A customer order as seen by the batching engine."""

    order_id: str
    status: OrderStatus
    vendor_id: str
    pickup_latitude: float
    pickup_longitude: float
    delivery_latitude: float
    delivery_longitude: float
    created_at: datetime
    estimated_delivery_time: datetime
    item_count: int = 1
    assigned_driver_id: Optional[str] = None

    @property
    def pickup_point(self) -> tuple[float, float]:
        return (self.pickup_latitude, self.pickup_longitude)

    @property
    def delivery_point(self) -> tuple[float, float]:
        return (self.delivery_latitude, self.delivery_longitude)


@dataclass(slots=True)
class DriverPerformance:
    rating: float
    on_time_rate: float
    total_deliveries: int


@dataclass(slots=True)
class Driver:
    """A courier with availability, location and workload."""

    driver_id: str
    is_online: bool
    is_active: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    workload_count: int = 0
    performance: Optional[DriverPerformance] = None
    current_batch_id: Optional[str] = None

    @property
    def location(self) -> Optional[tuple[float, float]]:
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)

    @property
    def is_available(self) -> bool:
        return self.is_online and self.is_active


@dataclass(slots=True)
class Batch:
    """A group of orders assigned to one driver for a combined trip."""

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
    metadata: dict = field(default_factory=dict)


@dataclass(slots=True)
class BatchOrder:
    """Membership of an order in a batch with its visiting sequence."""

    batch_id: str
    order_id: str
    pickup_sequence: int
    delivery_sequence: int
    pickup_status: StopStatus = StopStatus.PENDING
    delivery_status: StopStatus = StopStatus.PENDING
    actual_pickup_time: Optional[datetime] = None
    actual_delivery_time: Optional[datetime] = None

    @property
    def is_delivery_completed(self) -> bool:
        return self.delivery_status == StopStatus.COMPLETED
