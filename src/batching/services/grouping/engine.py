"""Sweep of the ready-order pool into compatible batches."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

from ...config import Settings, settings as default_settings
from ...errors import ValidationError
from ...models.domain import Order
from ...models.results import GroupOutcome, OperationResult, SweepResult
from ...persistence.ports import OrderStore
from ...persistence.retry import call_with_retry
from ..compatibility.analyzer import OrderCompatibilityAnalyzer
from ..operations import run_operation
from ..planning.planner import BatchPlanner

logger = logging.getLogger(__name__)


class DistanceGroupingEngine:
    """Seeded greedy clustering of ready orders, then one planner call per group.

    The oldest remaining order seeds a group; later orders join in pool order
    while the group stays compatible and below capacity. Group planning runs
    on a bounded thread pool and a failed group never stops the others.
    """

    def __init__(
        self,
        orders: OrderStore,
        analyzer: OrderCompatibilityAnalyzer,
        planner: BatchPlanner,
        settings: Settings | None = None,
    ) -> None:
        self.orders = orders
        self.analyzer = analyzer
        self.planner = planner
        self.settings = settings or default_settings

    def partition(
        self,
        pool: Sequence[Order],
        max_orders_per_group: int,
        max_deviation_km: float,
    ) -> List[List[Order]]:
        if max_orders_per_group < 1:
            raise ValidationError("max_orders_per_group must be at least 1")
        remaining = list(pool)
        groups: List[List[Order]] = []
        while remaining:
            group = [remaining.pop(0)]
            for candidate in list(remaining):
                if len(group) >= max_orders_per_group:
                    break
                if self.analyzer.evaluate(group + [candidate], max_deviation_km).is_compatible:
                    group.append(candidate)
                    remaining.remove(candidate)
            groups.append(group)
        return groups

    def sweep(
        self,
        max_orders_per_group: Optional[int] = None,
        max_deviation_km: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SweepResult:
        max_orders = max_orders_per_group or self.settings.default_max_orders
        deviation = max_deviation_km or self.settings.default_max_deviation_km
        cancel_event = cancel_event or threading.Event()

        pool = call_with_retry(
            self.orders.list_ready_orders,
            retries=self.settings.store_max_retries,
            backoff_seconds=self.settings.store_backoff_seconds,
        )
        groups = [[order.order_id for order in group] for group in self.partition(pool, max_orders, deviation)]
        logger.info(f"Grouping sweep: {len(pool)} ready orders -> {len(groups)} groups")

        def plan_group(order_ids: List[str]) -> Optional[OperationResult]:
            if cancel_event.is_set():
                return None
            return run_operation(
                f"plan group {','.join(order_ids)}",
                lambda: self.planner.create_optimized_batch(
                    order_ids, max_orders=max_orders, max_deviation_km=deviation
                ),
            )

        result = SweepResult(groups=[])
        if not groups:
            return result
        with ThreadPoolExecutor(max_workers=self.settings.max_parallel_groups) as executor:
            futures = [executor.submit(plan_group, order_ids) for order_ids in groups]
            for order_ids, future in zip(groups, futures):
                outcome = future.result()
                if outcome is None:
                    result.skipped.append(order_ids)
                else:
                    result.groups.append(GroupOutcome(order_ids=order_ids, result=outcome))

        result.cancelled = cancel_event.is_set()
        logger.info(
            f"Grouping sweep finished: {result.created} created, {result.failed} failed, "
            f"{len(result.skipped)} skipped"
        )
        return result
