"""Adding and removing orders on a batch that already exists."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Sequence

from ...config import Settings, settings as default_settings
from ...errors import IncompatibilityError, StateError, ValidationError
from ...models.domain import Batch, BatchOrder, Order
from ...models.results import OperationResult
from ...persistence.ports import BatchStore, DriverStore, OrderStore
from ...persistence.retry import call_with_retry, retry_on_conflict
from ..compatibility.analyzer import OrderCompatibilityAnalyzer
from ..events import ORDER_ADDED, ORDER_REMOVED, BatchEvent, EventPublisher, LoggingEventPublisher
from ..lifecycle.manager import utc_now
from ..locking import KeyedLocks, batch_key, order_key
from ..operations import run_operation
from ..routing.sequencer import RouteSequencer

logger = logging.getLogger(__name__)


class DynamicRouteUpdater:
    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        batches: BatchStore,
        *,
        analyzer: OrderCompatibilityAnalyzer,
        sequencer: RouteSequencer,
        events: EventPublisher | None = None,
        locks: KeyedLocks | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.orders = orders
        self.drivers = drivers
        self.batches = batches
        self.analyzer = analyzer
        self.sequencer = sequencer
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

    def _open_batch(self, batch_id: str, action: str) -> Batch:
        batch = self._call(self.batches.get_batch, batch_id)
        if batch is None:
            raise ValidationError(f"Batch {batch_id} not found", batch_id=batch_id)
        if batch.status.is_terminal:
            raise StateError(
                f"Cannot {action} a {batch.status.value} batch", batch_id=batch_id, status=batch.status.value
            )
        return batch

    def add_order(self, batch_id: str, order_id: str) -> OperationResult:
        def attempt() -> OperationResult:
            batch = self._open_batch(batch_id, "add orders to")
            rows = self._call(self.batches.get_batch_orders, batch_id)
            member_ids = [row.order_id for row in rows]
            if order_id in member_ids:
                raise ValidationError(f"Order {order_id} is already in batch {batch_id}", order_id=order_id)
            if len(rows) >= batch.max_orders:
                raise ValidationError(
                    f"Batch is at capacity ({len(rows)}/{batch.max_orders} orders)",
                    batch_id=batch_id,
                    max_orders=batch.max_orders,
                )

            compatibility = self.analyzer.analyze(
                member_ids + [order_id], batch.max_deviation_km, members=member_ids
            )
            if not compatibility.is_compatible:
                raise IncompatibilityError(compatibility.reason, score=compatibility.score, order_id=order_id)

            next_sequence = max((row.pickup_sequence for row in rows), default=0) + 1
            self._call(
                self.batches.attach_order,
                BatchOrder(
                    batch_id=batch_id,
                    order_id=order_id,
                    pickup_sequence=next_sequence,
                    delivery_sequence=next_sequence,
                ),
                driver_id=batch.driver_id,
            )
            updated = self._refresh_metrics(batch)
            self._publish(ORDER_ADDED, batch_id, [order_id], order_count=len(rows) + 1)
            logger.info(f"Added order {order_id} to batch {batch_id} at sequence {next_sequence}")
            return OperationResult.ok(
                "Order added to batch successfully",
                data=updated,
                order_count=len(rows) + 1,
                compatibility_score=compatibility.score,
            )

        def run() -> OperationResult:
            with self.locks.hold([batch_key(batch_id), order_key(order_id)]):
                return retry_on_conflict(attempt, attempts=self.settings.conflict_max_retries)

        return run_operation(f"add order {order_id} to batch {batch_id}", run)

    def remove_order(self, batch_id: str, order_id: str) -> OperationResult:
        def attempt() -> OperationResult:
            batch = self._open_batch(batch_id, "remove orders from")
            rows = self._call(self.batches.get_batch_orders, batch_id)
            member_ids = [row.order_id for row in rows]
            if order_id not in member_ids:
                raise ValidationError(
                    f"Order {order_id} is not part of batch {batch_id}", batch_id=batch_id, order_id=order_id
                )
            if len(rows) == 1:
                raise ValidationError(
                    "Cannot remove the last order from a batch; cancel the batch instead",
                    batch_id=batch_id,
                )

            remaining = [oid for oid in member_ids if oid != order_id]
            resequence = {oid: (index, index) for index, oid in enumerate(remaining, start=1)}
            self._call(self.batches.detach_order, batch_id, order_id, resequence=resequence)
            updated = self._refresh_metrics(batch)
            self._publish(ORDER_REMOVED, batch_id, [order_id], order_count=len(remaining))
            logger.info(f"Removed order {order_id} from batch {batch_id}; {len(remaining)} orders remain")
            return OperationResult.ok(
                "Order removed from batch successfully", data=updated, order_count=len(remaining)
            )

        def run() -> OperationResult:
            with self.locks.hold([batch_key(batch_id), order_key(order_id)]):
                return retry_on_conflict(attempt, attempts=self.settings.conflict_max_retries)

        return run_operation(f"remove order {order_id} from batch {batch_id}", run)

    def _refresh_metrics(self, batch: Batch) -> Batch:
        rows = self._call(self.batches.get_batch_orders, batch.batch_id)
        orders = self._call(self.orders.get_orders, [row.order_id for row in rows])
        origin = self._origin(batch, orders)
        route = self.sequencer.measure(orders, origin)
        return self._call(
            self.batches.update_batch_metrics,
            batch.batch_id,
            total_distance_km=route.total_distance_km,
            estimated_duration_minutes=route.estimated_duration_minutes,
            optimization_score=route.optimization_score,
            at=self.clock(),
        )

    def _origin(self, batch: Batch, orders: Sequence[Order]) -> tuple[float, float]:
        driver = self._call(self.drivers.get_driver, batch.driver_id)
        if driver is not None and driver.location is not None:
            return driver.location
        return orders[0].pickup_point

    def _publish(self, name: str, batch_id: str, order_ids: list[str], **payload) -> None:
        self.events.publish(
            BatchEvent(name=name, batch_id=batch_id, order_ids=order_ids, timestamp=self.clock(), payload=payload)
        )
