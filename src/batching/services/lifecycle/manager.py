"""Batch and batch-order state machine.

    planned --start--> active --pause--> paused --resume--> active
    {planned, active, paused} --cancel--> cancelled
    {active, paused} --complete--> completed   (every delivery completed)

Every transition re-reads the batch and writes with the status it saw as the
expected value; a lost race is re-fetched and retried a bounded number of
times before it surfaces.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from ...config import Settings, settings as default_settings
from ...errors import BatchingError, ConflictError, StateError, ValidationError
from ...models.domain import (
    OPEN_BATCH_STATUSES,
    Batch,
    BatchOrder,
    BatchStatus,
    Order,
    OrderStatus,
    StopStatus,
)
from ...models.results import OperationResult, RouteOptimizationResult
from ...persistence.ports import BatchStore, DriverStore, OrderStore
from ...persistence.retry import call_with_retry, retry_on_conflict
from ..events import (
    BATCH_CANCELLED,
    BATCH_COMPLETED,
    BATCH_CREATED,
    BATCH_STARTED,
    BatchEvent,
    EventPublisher,
    LoggingEventPublisher,
)
from ..locking import KeyedLocks, batch_key
from ..operations import run_operation

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BatchLifecycleManager:
    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        batches: BatchStore,
        *,
        events: EventPublisher | None = None,
        locks: KeyedLocks | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.orders = orders
        self.drivers = drivers
        self.batches = batches
        self.events = events or LoggingEventPublisher()
        self.locks = locks or KeyedLocks()
        self.settings = settings or default_settings
        self.clock = clock or utc_now

    def _call(self, func, *args, **kwargs):
        return call_with_retry(
            func,
            *args,
            retries=self.settings.store_max_retries,
            backoff_seconds=self.settings.store_backoff_seconds,
            **kwargs,
        )

    def _emit(self, name: str, batch_id: str, order_ids: Iterable[str], **payload) -> None:
        self.events.publish(
            BatchEvent(name=name, batch_id=batch_id, order_ids=list(order_ids), timestamp=self.clock(), payload=payload)
        )

    def _require_batch(self, batch_id: str) -> Batch:
        batch = self._call(self.batches.get_batch, batch_id)
        if batch is None:
            raise ValidationError(f"Batch {batch_id} not found", batch_id=batch_id)
        return batch

    # Creation

    def create_batch(
        self,
        driver_id: str,
        route: RouteOptimizationResult,
        *,
        max_orders: int,
        max_deviation_km: float,
        metadata: Optional[dict] = None,
    ) -> Batch:
        """Persist a planned batch for ``driver_id`` and claim its orders.

        Callers hold the driver and order locks. When a write after the insert
        fails, the batch is cancelled, the orders already claimed are released
        and the driver reference is cleared before the error propagates.
        """
        now = self.clock()
        batch = Batch(
            batch_id=f"batch_{uuid.uuid4().hex}",
            driver_id=driver_id,
            batch_number=f"B{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}",
            status=BatchStatus.PLANNED,
            total_distance_km=route.total_distance_km,
            estimated_duration_minutes=route.estimated_duration_minutes,
            optimization_score=route.optimization_score,
            max_orders=max_orders,
            max_deviation_km=max_deviation_km,
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )
        delivery_position = {oid: index for index, oid in enumerate(route.delivery_sequence, start=1)}
        rows = [
            BatchOrder(
                batch_id=batch.batch_id,
                order_id=order_id,
                pickup_sequence=index,
                delivery_sequence=delivery_position[order_id],
            )
            for index, order_id in enumerate(route.pickup_sequence, start=1)
        ]

        stored = self._call(self.batches.insert_batch, batch, rows)
        claimed: list[str] = []
        try:
            self._call(self.drivers.set_current_batch, driver_id, batch.batch_id, expected_batch_id=None)
            for row in rows:
                self._call(self.orders.claim_order, row.order_id, driver_id)
                claimed.append(row.order_id)
        except BatchingError as exc:
            logger.warning(f"Rolling back batch {batch.batch_id}: {exc.message}")
            self._abandon(stored, claimed, reason=exc.message)
            raise

        logger.info(
            f"Created batch {stored.batch_id} ({stored.batch_number}) for driver {driver_id} "
            f"with {len(rows)} orders, {stored.total_distance_km:.2f}km"
        )
        self._emit(
            BATCH_CREATED,
            stored.batch_id,
            route.pickup_sequence,
            driver_id=driver_id,
            total_distance_km=stored.total_distance_km,
        )
        return stored

    def _abandon(self, batch: Batch, claimed: Sequence[str], *, reason: str) -> None:
        """Undo a partial creation. Every step runs even when an earlier one fails."""
        for order_id in claimed:
            self._undo(
                f"release order {order_id}",
                self.orders.release_order,
                order_id,
                expected_driver_id=batch.driver_id,
            )
        self._undo(
            f"cancel batch {batch.batch_id}",
            self.batches.update_batch_status,
            batch.batch_id,
            BatchStatus.CANCELLED,
            expected=(BatchStatus.PLANNED,),
            at=self.clock(),
            fields={"metadata": {"cancellation_reason": f"creation aborted: {reason}"}},
        )
        self._undo(
            f"clear driver {batch.driver_id}",
            self.drivers.set_current_batch,
            batch.driver_id,
            None,
            expected_batch_id=batch.batch_id,
        )

    def _undo(self, description: str, func, *args, **kwargs) -> None:
        try:
            self._call(func, *args, **kwargs)
        except BatchingError as exc:
            logger.error(f"Rollback step '{description}' failed: {exc.message}")

    def _clear_driver_reference(self, batch: Batch) -> None:
        try:
            self._call(self.drivers.set_current_batch, batch.driver_id, None, expected_batch_id=batch.batch_id)
        except ConflictError as exc:
            logger.warning(f"Driver {batch.driver_id} no longer references batch {batch.batch_id}: {exc.message}")

    # Transitions

    def _transition(
        self,
        batch_id: str,
        target: BatchStatus,
        allowed: Sequence[BatchStatus],
        *,
        action: str,
        guard: Callable[[Batch], None] | None = None,
        fields: Callable[[Batch], dict] | None = None,
    ) -> Batch:
        def attempt() -> Batch:
            batch = self._require_batch(batch_id)
            if batch.status not in allowed:
                raise StateError(
                    f"Batch cannot be {action} from status '{batch.status.value}'",
                    batch_id=batch_id,
                    status=batch.status.value,
                )
            if guard is not None:
                guard(batch)
            return self._call(
                self.batches.update_batch_status,
                batch_id,
                target,
                expected=(batch.status,),
                at=self.clock(),
                fields=fields(batch) if fields else None,
            )

        with self.locks.hold([batch_key(batch_id)]):
            return retry_on_conflict(attempt, attempts=self.settings.conflict_max_retries)

    def start_batch(self, batch_id: str) -> OperationResult:
        def run() -> OperationResult:
            batch = self._transition(
                batch_id,
                BatchStatus.ACTIVE,
                (BatchStatus.PLANNED,),
                action="started",
                fields=lambda _: {"actual_start_time": self.clock()},
            )
            order_ids = self._mark_members_assigned(batch)
            self._emit(BATCH_STARTED, batch_id, order_ids, driver_id=batch.driver_id)
            return OperationResult.ok("Batch started successfully", data=batch)

        return run_operation(f"start batch {batch_id}", run)

    def _mark_members_assigned(self, batch: Batch) -> list[str]:
        rows = self._call(self.batches.get_batch_orders, batch.batch_id)
        order_ids = [row.order_id for row in rows]
        for order in self._call(self.orders.get_orders, order_ids):
            if order.status == OrderStatus.READY and order.assigned_driver_id is None:
                self._call(self.orders.claim_order, order.order_id, batch.driver_id)
        return order_ids

    def pause_batch(self, batch_id: str) -> OperationResult:
        return run_operation(
            f"pause batch {batch_id}",
            lambda: OperationResult.ok(
                "Batch paused successfully",
                data=self._transition(batch_id, BatchStatus.PAUSED, (BatchStatus.ACTIVE,), action="paused"),
            ),
        )

    def resume_batch(self, batch_id: str) -> OperationResult:
        return run_operation(
            f"resume batch {batch_id}",
            lambda: OperationResult.ok(
                "Batch resumed successfully",
                data=self._transition(batch_id, BatchStatus.ACTIVE, (BatchStatus.PAUSED,), action="resumed"),
            ),
        )

    def _require_all_delivered(self, batch: Batch) -> None:
        rows = self._call(self.batches.get_batch_orders, batch.batch_id)
        undelivered = [row.order_id for row in rows if not row.is_delivery_completed]
        if undelivered:
            raise StateError(
                f"Cannot complete batch: {len(undelivered)} orders not yet delivered",
                batch_id=batch.batch_id,
                undelivered=undelivered,
            )

    def _complete(self, batch_id: str) -> Batch:
        batch = self._transition(
            batch_id,
            BatchStatus.COMPLETED,
            (BatchStatus.ACTIVE, BatchStatus.PAUSED),
            action="completed",
            guard=self._require_all_delivered,
            fields=lambda _: {"actual_completion_time": self.clock()},
        )
        self._clear_driver_reference(batch)
        rows = self._call(self.batches.get_batch_orders, batch_id)
        self._emit(BATCH_COMPLETED, batch_id, [row.order_id for row in rows], driver_id=batch.driver_id)
        return batch

    def complete_batch(self, batch_id: str) -> OperationResult:
        return run_operation(
            f"complete batch {batch_id}",
            lambda: OperationResult.ok("Batch completed successfully", data=self._complete(batch_id)),
        )

    def cancel_batch(self, batch_id: str, reason: str) -> OperationResult:
        def run() -> OperationResult:
            if not reason or not reason.strip():
                raise ValidationError("A cancellation reason is required", batch_id=batch_id)
            batch = self._transition(
                batch_id,
                BatchStatus.CANCELLED,
                OPEN_BATCH_STATUSES,
                action="cancelled",
                fields=lambda _: {
                    "metadata": {"cancellation_reason": reason, "cancelled_at": self.clock().isoformat()}
                },
            )
            released = self._release_members(batch)
            self._clear_driver_reference(batch)
            self._emit(BATCH_CANCELLED, batch_id, released, driver_id=batch.driver_id, reason=reason)
            return OperationResult.ok("Batch cancelled successfully", data=batch, released_orders=released)

        return run_operation(f"cancel batch {batch_id}", run)

    def _release_members(self, batch: Batch) -> list[str]:
        released: list[str] = []
        for row in self._call(self.batches.get_batch_orders, batch.batch_id):
            if row.is_delivery_completed:
                continue
            try:
                self._call(self.orders.release_order, row.order_id, expected_driver_id=batch.driver_id)
                released.append(row.order_id)
            except ConflictError as exc:
                logger.warning(f"Order {row.order_id} not reset after cancelling {batch.batch_id}: {exc.message}")
        return released

    # Per-order legs

    def update_pickup_status(self, batch_id: str, order_id: str, status: StopStatus) -> OperationResult:
        return self._update_leg(batch_id, order_id, "pickup", status)

    def update_delivery_status(self, batch_id: str, order_id: str, status: StopStatus) -> OperationResult:
        return self._update_leg(batch_id, order_id, "delivery", status)

    def _update_leg(self, batch_id: str, order_id: str, leg: str, status: StopStatus) -> OperationResult:
        def run() -> OperationResult:
            if status == StopStatus.PENDING:
                raise ValidationError(f"{leg.capitalize()} status can only move away from pending")
            with self.locks.hold([batch_key(batch_id)]):
                batch = self._require_batch(batch_id)
                if batch.status != BatchStatus.ACTIVE:
                    raise StateError(
                        f"Batch {batch_id} is {batch.status.value}; {leg} updates need an active batch",
                        batch_id=batch_id,
                        status=batch.status.value,
                    )
                rows = {row.order_id: row for row in self._call(self.batches.get_batch_orders, batch_id)}
                row = rows.get(order_id)
                if row is None:
                    raise ValidationError(
                        f"Order {order_id} is not part of batch {batch_id}", batch_id=batch_id, order_id=order_id
                    )
                current = getattr(row, f"{leg}_status")
                if current != StopStatus.PENDING:
                    raise StateError(
                        f"{leg.capitalize()} for order {order_id} is already {current.value}",
                        batch_id=batch_id,
                        order_id=order_id,
                    )
                updated = self._call(
                    self.batches.update_stop_status, batch_id, order_id, leg=leg, status=status, at=self.clock()
                )
                if status == StopStatus.COMPLETED:
                    self._mirror_order_status(order_id, leg)

                batch_completed = False
                if leg == "delivery" and status == StopStatus.COMPLETED:
                    rows[order_id] = updated
                    if all(item.is_delivery_completed for item in rows.values()):
                        self._complete(batch_id)
                        batch_completed = True

            return OperationResult.ok(
                f"{leg.capitalize()} status updated successfully",
                data=updated,
                batch_completed=batch_completed,
            )

        return run_operation(f"update {leg} status of order {order_id}", run)

    def _mirror_order_status(self, order_id: str, leg: str) -> None:
        if leg == "pickup":
            target, expected = OrderStatus.PICKED_UP, (OrderStatus.ASSIGNED,)
        else:
            target, expected = OrderStatus.DELIVERED, (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP)
        try:
            self._call(self.orders.set_order_status, order_id, target, expected=expected)
        except ConflictError as exc:
            logger.warning(f"Order {order_id} status not moved to {target.value}: {exc.message}")

    # Queries

    def get_batch(self, batch_id: str) -> OperationResult:
        def run() -> OperationResult:
            batch = self._require_batch(batch_id)
            rows = self._call(self.batches.get_batch_orders, batch_id)
            return OperationResult.ok("Batch retrieved", data={"batch": batch, "orders": rows})

        return run_operation(f"get batch {batch_id}", run)

    def get_active_batch_for_driver(self, driver_id: str) -> OperationResult:
        def run() -> OperationResult:
            batch = self._call(self.batches.find_open_batch_for_driver, driver_id)
            if batch is None:
                return OperationResult.ok("No active batch found for driver", data=None)
            return OperationResult.ok("Active batch found", data=batch)

        return run_operation(f"get active batch for driver {driver_id}", run)

    def member_orders(self, batch_id: str) -> list[Order]:
        rows = self._call(self.batches.get_batch_orders, batch_id)
        return self._call(self.orders.get_orders, [row.order_id for row in rows])
