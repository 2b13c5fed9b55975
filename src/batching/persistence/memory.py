"""In-process store used by default and in tests.

A single re-entrant lock guards all tables, so every method is atomic and the
multi-row operations behave like the transactional database functions.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Iterable, Optional, Sequence

from ..errors import ConflictError, ValidationError
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
from .ports import BatchStore, DriverStore, OrderStore

RELEASABLE_ORDER_STATUSES = (OrderStatus.READY, OrderStatus.ASSIGNED, OrderStatus.PICKED_UP)


class InMemoryStore(OrderStore, DriverStore, BatchStore):
    def __init__(
        self,
        orders: Iterable[Order] = (),
        drivers: Iterable[Driver] = (),
    ) -> None:
        self._lock = threading.RLock()
        self._orders: dict[str, Order] = {}
        self._drivers: dict[str, Driver] = {}
        self._batches: dict[str, Batch] = {}
        self._batch_orders: dict[str, dict[str, BatchOrder]] = {}
        for order in orders:
            self.add_order(order)
        for driver in drivers:
            self.add_driver(driver)

    def add_order(self, order: Order) -> None:
        with self._lock:
            self._orders[order.order_id] = copy.deepcopy(order)

    def add_driver(self, driver: Driver) -> None:
        with self._lock:
            self._drivers[driver.driver_id] = copy.deepcopy(driver)

    # Orders

    def get_orders(self, order_ids: Sequence[str]) -> list[Order]:
        with self._lock:
            return [copy.deepcopy(self._orders[oid]) for oid in order_ids if oid in self._orders]

    def list_ready_orders(self) -> list[Order]:
        with self._lock:
            ready = [
                copy.deepcopy(order)
                for order in self._orders.values()
                if order.status == OrderStatus.READY and order.assigned_driver_id is None
            ]
        return sorted(ready, key=lambda order: (order.created_at, order.order_id))

    def _order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise ValidationError(f"Order {order_id} not found", order_id=order_id)
        return order

    def claim_order(self, order_id: str, driver_id: str) -> Order:
        with self._lock:
            order = self._order(order_id)
            if order.status != OrderStatus.READY or order.assigned_driver_id is not None:
                raise ConflictError(
                    f"Order {order_id} is no longer ready and unassigned",
                    order_id=order_id,
                    status=order.status.value,
                )
            order.status = OrderStatus.ASSIGNED
            order.assigned_driver_id = driver_id
            return copy.deepcopy(order)

    def release_order(self, order_id: str, *, expected_driver_id: Optional[str]) -> Order:
        with self._lock:
            order = self._order(order_id)
            if order.status not in RELEASABLE_ORDER_STATUSES:
                raise ConflictError(
                    f"Order {order_id} cannot be released from status {order.status.value}",
                    order_id=order_id,
                )
            if expected_driver_id is not None and order.assigned_driver_id not in (None, expected_driver_id):
                raise ConflictError(f"Order {order_id} is assigned to another driver", order_id=order_id)
            order.status = OrderStatus.READY
            order.assigned_driver_id = None
            return copy.deepcopy(order)

    def set_order_status(
        self, order_id: str, status: OrderStatus, *, expected: Iterable[OrderStatus]
    ) -> Order:
        with self._lock:
            order = self._order(order_id)
            if order.status not in tuple(expected):
                raise ConflictError(
                    f"Order {order_id} is {order.status.value}, cannot move to {status.value}",
                    order_id=order_id,
                )
            order.status = status
            return copy.deepcopy(order)

    def transfer_order(self, order_id: str, *, from_driver_id: str, to_driver_id: str) -> Order:
        with self._lock:
            order = self._order(order_id)
            if order.assigned_driver_id != from_driver_id:
                raise ConflictError(f"Order {order_id} is not assigned to {from_driver_id}", order_id=order_id)
            order.assigned_driver_id = to_driver_id
            return copy.deepcopy(order)

    # Drivers

    def get_driver(self, driver_id: str) -> Optional[Driver]:
        with self._lock:
            driver = self._drivers.get(driver_id)
            return copy.deepcopy(driver) if driver else None

    def list_available_drivers(self) -> list[Driver]:
        with self._lock:
            available = [copy.deepcopy(d) for d in self._drivers.values() if d.is_available]
        return sorted(available, key=lambda driver: driver.driver_id)

    def set_current_batch(
        self, driver_id: str, batch_id: Optional[str], *, expected_batch_id: Optional[str]
    ) -> Driver:
        with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None:
                raise ValidationError(f"Driver {driver_id} not found", driver_id=driver_id)
            if driver.current_batch_id != expected_batch_id:
                raise ConflictError(
                    f"Driver {driver_id} batch reference changed concurrently",
                    driver_id=driver_id,
                    current_batch_id=driver.current_batch_id,
                )
            driver.current_batch_id = batch_id
            return copy.deepcopy(driver)

    # Batches

    def _open_batch_for_driver(self, driver_id: str) -> Optional[Batch]:
        for batch in self._batches.values():
            if batch.driver_id == driver_id and batch.status in OPEN_BATCH_STATUSES:
                return batch
        return None

    def _open_batch_for_order(self, order_id: str) -> Optional[str]:
        for batch_id, rows in self._batch_orders.items():
            if order_id in rows and self._batches[batch_id].status in OPEN_BATCH_STATUSES:
                return batch_id
        return None

    def _batch(self, batch_id: str) -> Batch:
        batch = self._batches.get(batch_id)
        if batch is None:
            raise ValidationError(f"Batch {batch_id} not found", batch_id=batch_id)
        return batch

    def insert_batch(self, batch: Batch, batch_orders: Sequence[BatchOrder]) -> Batch:
        with self._lock:
            if batch.batch_id in self._batches:
                raise ConflictError(f"Batch {batch.batch_id} already exists", batch_id=batch.batch_id)
            existing = self._open_batch_for_driver(batch.driver_id)
            if existing is not None:
                raise ConflictError(
                    f"Driver {batch.driver_id} already has an open batch",
                    driver_id=batch.driver_id,
                    batch_id=existing.batch_id,
                )
            for row in batch_orders:
                holder = self._open_batch_for_order(row.order_id)
                if holder is not None:
                    raise ConflictError(
                        f"Order {row.order_id} already belongs to batch {holder}",
                        order_id=row.order_id,
                        batch_id=holder,
                    )
            self._batches[batch.batch_id] = copy.deepcopy(batch)
            self._batch_orders[batch.batch_id] = {row.order_id: copy.deepcopy(row) for row in batch_orders}
            return copy.deepcopy(batch)

    def get_batch(self, batch_id: str) -> Optional[Batch]:
        with self._lock:
            batch = self._batches.get(batch_id)
            return copy.deepcopy(batch) if batch else None

    def get_batch_orders(self, batch_id: str) -> list[BatchOrder]:
        with self._lock:
            rows = [copy.deepcopy(row) for row in self._batch_orders.get(batch_id, {}).values()]
        return sorted(rows, key=lambda row: row.pickup_sequence)

    def list_batches(
        self, statuses: Iterable[BatchStatus], *, driver_id: Optional[str] = None
    ) -> list[Batch]:
        wanted = set(statuses)
        with self._lock:
            batches = [
                copy.deepcopy(batch)
                for batch in self._batches.values()
                if batch.status in wanted and (driver_id is None or batch.driver_id == driver_id)
            ]
        return sorted(batches, key=lambda batch: (batch.created_at, batch.batch_id))

    def update_batch_status(
        self,
        batch_id: str,
        status: BatchStatus,
        *,
        expected: Iterable[BatchStatus],
        at: datetime,
        fields: Optional[dict] = None,
    ) -> Batch:
        with self._lock:
            batch = self._batch(batch_id)
            if batch.status not in tuple(expected):
                raise ConflictError(
                    f"Batch {batch_id} is {batch.status.value}, cannot move to {status.value}",
                    batch_id=batch_id,
                    status=batch.status.value,
                )
            for key, value in (fields or {}).items():
                if key == "metadata":
                    batch.metadata.update(value)
                else:
                    setattr(batch, key, value)
            batch.status = status
            batch.updated_at = at
            return copy.deepcopy(batch)

    def update_batch_metrics(
        self,
        batch_id: str,
        *,
        total_distance_km: float,
        estimated_duration_minutes: int,
        optimization_score: float,
        at: datetime,
    ) -> Batch:
        with self._lock:
            batch = self._batch(batch_id)
            batch.total_distance_km = total_distance_km
            batch.estimated_duration_minutes = estimated_duration_minutes
            batch.optimization_score = optimization_score
            batch.updated_at = at
            return copy.deepcopy(batch)

    def update_batch_driver(
        self, batch_id: str, driver_id: str, *, expected_driver_id: str, at: datetime
    ) -> Batch:
        with self._lock:
            batch = self._batch(batch_id)
            if batch.status != BatchStatus.PLANNED or batch.driver_id != expected_driver_id:
                raise ConflictError(
                    f"Batch {batch_id} can no longer be moved from driver {expected_driver_id}",
                    batch_id=batch_id,
                )
            holder = self._open_batch_for_driver(driver_id)
            if holder is not None:
                raise ConflictError(
                    f"Driver {driver_id} already has an open batch",
                    driver_id=driver_id,
                    batch_id=holder.batch_id,
                )
            batch.driver_id = driver_id
            batch.updated_at = at
            return copy.deepcopy(batch)

    def update_stop_status(
        self,
        batch_id: str,
        order_id: str,
        *,
        leg: str,
        status: StopStatus,
        at: datetime,
    ) -> BatchOrder:
        if leg not in ("pickup", "delivery"):
            raise ValidationError(f"Unknown leg '{leg}'", leg=leg)
        with self._lock:
            row = self._batch_orders.get(batch_id, {}).get(order_id)
            if row is None:
                raise ValidationError(
                    f"Order {order_id} is not part of batch {batch_id}", batch_id=batch_id, order_id=order_id
                )
            current = getattr(row, f"{leg}_status")
            if current != StopStatus.PENDING:
                raise ConflictError(
                    f"{leg.capitalize()} for order {order_id} is already {current.value}",
                    batch_id=batch_id,
                    order_id=order_id,
                )
            setattr(row, f"{leg}_status", status)
            if status == StopStatus.COMPLETED:
                setattr(row, f"actual_{leg}_time", at)
            return copy.deepcopy(row)

    def attach_order(self, batch_order: BatchOrder, *, driver_id: str) -> BatchOrder:
        with self._lock:
            batch = self._batch(batch_order.batch_id)
            if batch.status not in OPEN_BATCH_STATUSES:
                raise ConflictError(f"Batch {batch.batch_id} is {batch.status.value}", batch_id=batch.batch_id)
            holder = self._open_batch_for_order(batch_order.order_id)
            if holder is not None:
                raise ConflictError(
                    f"Order {batch_order.order_id} already belongs to batch {holder}",
                    order_id=batch_order.order_id,
                    batch_id=holder,
                )
            rows = self._batch_orders.setdefault(batch.batch_id, {})
            taken = {row.pickup_sequence for row in rows.values()}
            if batch_order.pickup_sequence in taken:
                raise ConflictError(
                    f"Sequence {batch_order.pickup_sequence} already used in batch {batch.batch_id}",
                    batch_id=batch.batch_id,
                )
            self.claim_order(batch_order.order_id, driver_id)
            rows[batch_order.order_id] = copy.deepcopy(batch_order)
            return copy.deepcopy(batch_order)

    def detach_order(
        self, batch_id: str, order_id: str, *, resequence: dict[str, tuple[int, int]]
    ) -> list[BatchOrder]:
        with self._lock:
            batch = self._batch(batch_id)
            rows = self._batch_orders.get(batch_id, {})
            if order_id not in rows:
                raise ValidationError(
                    f"Order {order_id} is not part of batch {batch_id}", batch_id=batch_id, order_id=order_id
                )
            remaining = set(rows) - {order_id}
            if set(resequence) != remaining:
                raise ValidationError("Resequencing must cover every remaining order", batch_id=batch_id)
            self.release_order(order_id, expected_driver_id=batch.driver_id)
            del rows[order_id]
            for oid, (pickup_sequence, delivery_sequence) in resequence.items():
                rows[oid].pickup_sequence = pickup_sequence
                rows[oid].delivery_sequence = delivery_sequence
        return self.get_batch_orders(batch_id)
