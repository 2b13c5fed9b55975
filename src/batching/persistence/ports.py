"""Store contracts consumed by the batching services.

Every write that guards an invariant is conditional: it names the state it
expects to replace and raises ``ConflictError`` when the row has moved on.
Uniqueness (one open batch per driver, one open batch per order) is the
store's responsibility, not the caller's.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..models.domain import (
    OPEN_BATCH_STATUSES,
    Batch,
    BatchOrder,
    BatchStatus,
    Driver,
    Order,
    OrderStatus,
    StopStatus,
)


class OrderStore(ABC):
    @abstractmethod
    def get_orders(self, order_ids: Sequence[str]) -> list[Order]:
        """Return the orders that exist, in the requested order."""

    def get_order(self, order_id: str) -> Optional[Order]:
        found = self.get_orders([order_id])
        return found[0] if found else None

    @abstractmethod
    def list_ready_orders(self) -> list[Order]:
        """Ready, unassigned orders sorted by creation time then id."""

    @abstractmethod
    def claim_order(self, order_id: str, driver_id: str) -> Order:
        """ready/unassigned -> assigned to ``driver_id``."""

    @abstractmethod
    def release_order(self, order_id: str, *, expected_driver_id: Optional[str]) -> Order:
        """Back to ready/unassigned; refuses delivered or cancelled orders."""

    @abstractmethod
    def set_order_status(
        self, order_id: str, status: OrderStatus, *, expected: Iterable[OrderStatus]
    ) -> Order:
        ...

    @abstractmethod
    def transfer_order(self, order_id: str, *, from_driver_id: str, to_driver_id: str) -> Order:
        ...


class DriverStore(ABC):
    @abstractmethod
    def get_driver(self, driver_id: str) -> Optional[Driver]:
        ...

    @abstractmethod
    def list_available_drivers(self) -> list[Driver]:
        """Online and active drivers."""

    @abstractmethod
    def set_current_batch(
        self, driver_id: str, batch_id: Optional[str], *, expected_batch_id: Optional[str]
    ) -> Driver:
        ...


class BatchStore(ABC):
    @abstractmethod
    def insert_batch(self, batch: Batch, batch_orders: Sequence[BatchOrder]) -> Batch:
        """Insert the batch and all of its rows in one transaction."""

    @abstractmethod
    def get_batch(self, batch_id: str) -> Optional[Batch]:
        ...

    @abstractmethod
    def get_batch_orders(self, batch_id: str) -> list[BatchOrder]:
        """Rows of a batch ordered by pickup sequence."""

    @abstractmethod
    def list_batches(
        self, statuses: Iterable[BatchStatus], *, driver_id: Optional[str] = None
    ) -> list[Batch]:
        ...

    def find_open_batch_for_driver(self, driver_id: str) -> Optional[Batch]:
        batches = self.list_batches(OPEN_BATCH_STATUSES, driver_id=driver_id)
        if not batches:
            return None
        return max(batches, key=lambda batch: batch.created_at)

    @abstractmethod
    def update_batch_status(
        self,
        batch_id: str,
        status: BatchStatus,
        *,
        expected: Iterable[BatchStatus],
        at: datetime,
        fields: Optional[dict] = None,
    ) -> Batch:
        """Compare-and-swap the status; ``fields`` are merged into the row."""

    @abstractmethod
    def update_batch_metrics(
        self,
        batch_id: str,
        *,
        total_distance_km: float,
        estimated_duration_minutes: int,
        optimization_score: float,
        at: datetime,
    ) -> Batch:
        ...

    @abstractmethod
    def update_batch_driver(
        self, batch_id: str, driver_id: str, *, expected_driver_id: str, at: datetime
    ) -> Batch:
        """Only planned batches move; the new driver must hold no open batch."""

    @abstractmethod
    def update_stop_status(
        self,
        batch_id: str,
        order_id: str,
        *,
        leg: str,
        status: StopStatus,
        at: datetime,
    ) -> BatchOrder:
        """Move a pending pickup or delivery leg to ``status``."""

    @abstractmethod
    def attach_order(self, batch_order: BatchOrder, *, driver_id: str) -> BatchOrder:
        """Insert the row and claim the order for ``driver_id`` together."""

    @abstractmethod
    def detach_order(
        self, batch_id: str, order_id: str, *, resequence: dict[str, tuple[int, int]]
    ) -> list[BatchOrder]:
        """Delete the row, release the order and apply new sequences together."""
