"""Workload balancing across drivers holding open batches."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ...config import Settings, settings as default_settings
from ...errors import BatchingError, ConflictError, NoCandidateError
from ...models.domain import OPEN_BATCH_STATUSES, Batch, BatchStatus
from ...models.results import OperationResult
from ...persistence.ports import BatchStore, DriverStore, OrderStore
from ...persistence.retry import call_with_retry
from ..events import WORKLOAD_REBALANCED, BatchEvent, EventPublisher, LoggingEventPublisher
from ..geospatial import centroid, point_distance_km
from ..lifecycle.manager import utc_now
from ..locking import KeyedLocks, batch_key, driver_key
from ..operations import run_operation

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DriverLoad:
    driver_id: str
    batch_count: int = 0
    active_orders: int = 0
    estimated_minutes: int = 0
    location: Optional[Tuple[float, float]] = None


@dataclass(slots=True)
class WorkloadReport:
    loads: Dict[str, DriverLoad]
    average_orders: float
    overloaded: List[str]
    underloaded: List[str]


@dataclass(slots=True)
class BalanceTransfer:
    batch_id: str
    from_driver: str
    to_driver: str
    distance_km: float


@dataclass(slots=True)
class BalanceResult:
    report: WorkloadReport
    proposed: List[BalanceTransfer]
    executed: List[BalanceTransfer] = field(default_factory=list)
    skipped: List[dict] = field(default_factory=list)


def _compute_bounds(counts: Dict[str, int], overload_factor: float, underload_factor: float) -> Tuple[float, float, float]:
    total = sum(counts.values())
    drivers = max(1, len(counts))
    avg = total / drivers
    return avg, avg * underload_factor, avg * overload_factor


class WorkloadBalancer:
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

    def audit(self) -> WorkloadReport:
        """Per-driver load over open batches, including idle available drivers."""
        loads: Dict[str, DriverLoad] = {}
        for driver in self._call(self.drivers.list_available_drivers):
            loads[driver.driver_id] = DriverLoad(driver_id=driver.driver_id, location=driver.location)

        for batch in self._call(self.batches.list_batches, OPEN_BATCH_STATUSES):
            load = loads.get(batch.driver_id)
            if load is None:
                driver = self._call(self.drivers.get_driver, batch.driver_id)
                load = DriverLoad(driver_id=batch.driver_id, location=driver.location if driver else None)
                loads[batch.driver_id] = load
            rows = self._call(self.batches.get_batch_orders, batch.batch_id)
            load.batch_count += 1
            load.active_orders += sum(1 for row in rows if not row.is_delivery_completed)
            load.estimated_minutes += batch.estimated_duration_minutes

        counts = {driver_id: load.active_orders for driver_id, load in loads.items()}
        avg, lower, upper = _compute_bounds(
            counts, self.settings.overload_factor, self.settings.underload_factor
        )
        overloaded: List[str] = []
        underloaded: List[str] = []
        if avg > 0:
            overloaded = sorted(
                (driver_id for driver_id, count in counts.items() if count > upper),
                key=lambda driver_id: (-counts[driver_id], driver_id),
            )
            underloaded = sorted(driver_id for driver_id, count in counts.items() if count < lower)
        return WorkloadReport(loads=loads, average_orders=avg, overloaded=overloaded, underloaded=underloaded)

    def _delivery_centroid(self, batch: Batch) -> Optional[Tuple[float, float]]:
        rows = self._call(self.batches.get_batch_orders, batch.batch_id)
        orders = self._call(self.orders.get_orders, [row.order_id for row in rows])
        if not orders:
            return None
        return centroid(order.delivery_point for order in orders)

    def propose(self, report: WorkloadReport) -> List[BalanceTransfer]:
        """Pair each planned batch of an overloaded driver with the nearest free underloaded driver."""
        targets = {
            driver_id
            for driver_id in report.underloaded
            if report.loads[driver_id].batch_count == 0 and report.loads[driver_id].location is not None
        }
        proposals: List[BalanceTransfer] = []
        for source in report.overloaded:
            if not targets:
                break
            planned = self._call(self.batches.list_batches, (BatchStatus.PLANNED,), driver_id=source)
            for batch in planned:
                if not targets:
                    break
                center = self._delivery_centroid(batch)
                if center is None:
                    continue

                def distance_to(driver_id: str) -> float:
                    return point_distance_km(center, report.loads[driver_id].location)

                target = min(sorted(targets), key=distance_to)
                targets.discard(target)
                proposals.append(
                    BalanceTransfer(
                        batch_id=batch.batch_id,
                        from_driver=source,
                        to_driver=target,
                        distance_km=distance_to(target),
                    )
                )
        return proposals

    def execute(self, transfers: Sequence[BalanceTransfer]) -> Tuple[List[BalanceTransfer], List[dict]]:
        executed: List[BalanceTransfer] = []
        skipped: List[dict] = []
        for transfer in transfers:
            keys = [batch_key(transfer.batch_id), driver_key(transfer.from_driver), driver_key(transfer.to_driver)]
            try:
                with self.locks.hold(keys):
                    order_ids = self._move_batch(transfer)
            except BatchingError as exc:
                logger.warning(
                    f"Skipping transfer of batch {transfer.batch_id} to {transfer.to_driver}: {exc.message}"
                )
                skipped.append({"batch_id": transfer.batch_id, "to_driver": transfer.to_driver, "reason": exc.message})
                continue
            executed.append(transfer)
            self.events.publish(
                BatchEvent(
                    name=WORKLOAD_REBALANCED,
                    batch_id=transfer.batch_id,
                    order_ids=order_ids,
                    timestamp=self.clock(),
                    payload={"from_driver": transfer.from_driver, "to_driver": transfer.to_driver},
                )
            )
        return executed, skipped

    def _move_batch(self, transfer: BalanceTransfer) -> List[str]:
        target = self._call(self.drivers.get_driver, transfer.to_driver)
        if target is None or not target.is_available:
            raise NoCandidateError(f"Driver {transfer.to_driver} is no longer available")
        if target.workload_count >= self.settings.max_driver_workload:
            raise NoCandidateError(f"Driver {transfer.to_driver} is at maximum workload")
        if target.current_batch_id is not None or self._call(
            self.batches.find_open_batch_for_driver, transfer.to_driver
        ):
            raise ConflictError(f"Driver {transfer.to_driver} already has an open batch")

        self._call(self.drivers.set_current_batch, transfer.to_driver, transfer.batch_id, expected_batch_id=None)
        try:
            self._call(
                self.batches.update_batch_driver,
                transfer.batch_id,
                transfer.to_driver,
                expected_driver_id=transfer.from_driver,
                at=self.clock(),
            )
        except BatchingError:
            self._release_reservation(transfer)
            raise

        order_ids: List[str] = []
        for row in self._call(self.batches.get_batch_orders, transfer.batch_id):
            try:
                self._call(
                    self.orders.transfer_order,
                    row.order_id,
                    from_driver_id=transfer.from_driver,
                    to_driver_id=transfer.to_driver,
                )
            except ConflictError as exc:
                logger.warning(f"Order {row.order_id} not transferred with batch {transfer.batch_id}: {exc.message}")
                continue
            order_ids.append(row.order_id)

        try:
            self._call(self.drivers.set_current_batch, transfer.from_driver, None, expected_batch_id=transfer.batch_id)
        except ConflictError as exc:
            logger.warning(f"Driver {transfer.from_driver} batch reference not cleared: {exc.message}")
        logger.info(f"Moved batch {transfer.batch_id} from {transfer.from_driver} to {transfer.to_driver}")
        return order_ids

    def _release_reservation(self, transfer: BalanceTransfer) -> None:
        try:
            self._call(self.drivers.set_current_batch, transfer.to_driver, None, expected_batch_id=transfer.batch_id)
        except BatchingError as exc:
            logger.error(f"Driver {transfer.to_driver} still references batch {transfer.batch_id}: {exc.message}")

    def audit_workload(self) -> OperationResult:
        def run() -> OperationResult:
            report = self.audit()
            return OperationResult.ok(
                "Workload audited",
                data=report,
                overloaded=len(report.overloaded),
                underloaded=len(report.underloaded),
            )

        return run_operation("audit driver workload", run)

    def rebalance(self) -> OperationResult:
        def run() -> OperationResult:
            report = self.audit()
            proposals = self.propose(report)
            executed, skipped = self.execute(proposals)
            result = BalanceResult(report=report, proposed=proposals, executed=executed, skipped=skipped)
            return OperationResult.ok(
                f"Rebalanced {len(executed)} of {len(proposals)} proposed batches",
                data=result,
                executed=len(executed),
                skipped=len(skipped),
            )

        return run_operation("rebalance driver workload", run)
