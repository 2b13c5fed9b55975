"""In-process entry point wiring every batching component to one set of stores."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional, Sequence

from ..config import Settings, settings as default_settings
from ..models.domain import StopStatus
from ..models.results import OperationResult
from ..persistence.ports import BatchStore, DriverStore, OrderStore
from .assignment.selector import DriverAssignmentSelector
from .balancing.service import WorkloadBalancer
from .compatibility.analyzer import OrderCompatibilityAnalyzer
from .dynamic.updater import DynamicRouteUpdater
from .events import EventPublisher, LoggingEventPublisher
from .grouping.engine import DistanceGroupingEngine
from .lifecycle.manager import BatchLifecycleManager, utc_now
from .locking import KeyedLocks
from .operations import run_operation
from .planning.planner import BatchPlanner
from .routing.sequencer import RouteSequencer


class BatchingEngine:
    """Every public operation returns an ``OperationResult``; nothing raises."""

    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        batches: BatchStore,
        *,
        events: EventPublisher | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.events = events or LoggingEventPublisher()
        self.locks = KeyedLocks()
        clock = clock or utc_now

        self.analyzer = OrderCompatibilityAnalyzer(orders, self.settings)
        self.sequencer = RouteSequencer(self.settings)
        self.selector = DriverAssignmentSelector(drivers, batches, self.settings)
        self.lifecycle = BatchLifecycleManager(
            orders, drivers, batches, events=self.events, locks=self.locks, settings=self.settings, clock=clock
        )
        self.planner = BatchPlanner(
            orders,
            drivers,
            batches,
            analyzer=self.analyzer,
            selector=self.selector,
            sequencer=self.sequencer,
            lifecycle=self.lifecycle,
            locks=self.locks,
            settings=self.settings,
        )
        self.grouping = DistanceGroupingEngine(orders, self.analyzer, self.planner, self.settings)
        self.updater = DynamicRouteUpdater(
            orders,
            drivers,
            batches,
            analyzer=self.analyzer,
            sequencer=self.sequencer,
            events=self.events,
            locks=self.locks,
            settings=self.settings,
            clock=clock,
        )
        self.balancer = WorkloadBalancer(
            orders, drivers, batches, events=self.events, locks=self.locks, settings=self.settings, clock=clock
        )

    # Planning

    def create_optimized_batch(
        self,
        order_ids: Sequence[str],
        driver_id: Optional[str] = None,
        max_orders: Optional[int] = None,
        max_deviation_km: Optional[float] = None,
    ) -> OperationResult:
        return self.planner.create_optimized_batch(order_ids, driver_id, max_orders, max_deviation_km)

    def analyze_compatibility(self, order_ids: Sequence[str], max_deviation_km: Optional[float] = None) -> OperationResult:
        def run() -> OperationResult:
            deviation = max_deviation_km or self.settings.default_max_deviation_km
            result = self.analyzer.analyze(list(order_ids), deviation)
            if result.is_compatible:
                return OperationResult.ok("Orders are compatible", data=result, score=result.score)
            return OperationResult.fail(result.reason, error="incompatible", score=result.score)

        return run_operation("analyze order compatibility", run)

    def run_grouping_sweep(
        self,
        max_orders_per_group: Optional[int] = None,
        max_deviation_km: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> OperationResult:
        def run() -> OperationResult:
            sweep = self.grouping.sweep(max_orders_per_group, max_deviation_km, cancel_event)
            return OperationResult.ok(
                f"Created {sweep.created} batches ({sweep.failed} groups failed)",
                data=sweep,
                created=sweep.created,
                failed=sweep.failed,
                cancelled=sweep.cancelled,
            )

        return run_operation("run grouping sweep", run)

    # Lifecycle

    def start_batch(self, batch_id: str) -> OperationResult:
        return self.lifecycle.start_batch(batch_id)

    def pause_batch(self, batch_id: str) -> OperationResult:
        return self.lifecycle.pause_batch(batch_id)

    def resume_batch(self, batch_id: str) -> OperationResult:
        return self.lifecycle.resume_batch(batch_id)

    def complete_batch(self, batch_id: str) -> OperationResult:
        return self.lifecycle.complete_batch(batch_id)

    def cancel_batch(self, batch_id: str, reason: str) -> OperationResult:
        return self.lifecycle.cancel_batch(batch_id, reason)

    def update_pickup_status(self, batch_id: str, order_id: str, status: StopStatus) -> OperationResult:
        return self.lifecycle.update_pickup_status(batch_id, order_id, status)

    def update_delivery_status(self, batch_id: str, order_id: str, status: StopStatus) -> OperationResult:
        return self.lifecycle.update_delivery_status(batch_id, order_id, status)

    def get_batch(self, batch_id: str) -> OperationResult:
        return self.lifecycle.get_batch(batch_id)

    def get_active_batch_for_driver(self, driver_id: str) -> OperationResult:
        return self.lifecycle.get_active_batch_for_driver(driver_id)

    # Dynamic updates

    def add_order_to_batch(self, batch_id: str, order_id: str) -> OperationResult:
        return self.updater.add_order(batch_id, order_id)

    def remove_order_from_batch(self, batch_id: str, order_id: str) -> OperationResult:
        return self.updater.remove_order(batch_id, order_id)

    # Workload

    def audit_workload(self) -> OperationResult:
        return self.balancer.audit_workload()

    def rebalance_workload(self) -> OperationResult:
        return self.balancer.rebalance()


def build_engine(
    store,
    *,
    settings: Settings | None = None,
    events: EventPublisher | None = None,
    clock: Callable[[], datetime] | None = None,
) -> BatchingEngine:
    """Engine over a single object implementing all three store ports."""
    return BatchingEngine(store, store, store, events=events, settings=settings, clock=clock)
