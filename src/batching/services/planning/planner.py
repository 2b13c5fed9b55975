"""On-demand creation of an optimized multi-order batch."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Optional, Sequence

from ...config import Settings, settings as default_settings
from ...errors import ConflictError, IncompatibilityError, NoCandidateError, ValidationError
from ...models.domain import Batch, Driver
from ...models.results import DriverAssignmentResult, OperationResult
from ...persistence.ports import BatchStore, DriverStore, OrderStore
from ...persistence.retry import call_with_retry, retry_on_conflict
from ..assignment.selector import DriverAssignmentSelector
from ..compatibility.analyzer import OrderCompatibilityAnalyzer
from ..lifecycle.manager import BatchLifecycleManager
from ..locking import KeyedLocks, driver_key, order_key
from ..operations import run_operation
from ..routing.sequencer import RouteSequencer

logger = logging.getLogger(__name__)


class DriverTakenError(ConflictError):
    """The selected driver received another batch between selection and locking."""


class BatchPlanner:
    """Compatibility -> driver assignment -> sequencing -> persistence.

    Selection runs without locks. The chosen driver and every order are then
    locked while compatibility and the driver are re-validated and the batch
    is written. A driver taken in between is excluded and selection runs
    again until the selector runs out of candidates; this does not count
    against ``candidate_selection_retries``, which covers other lost writes.
    """

    def __init__(
        self,
        orders: OrderStore,
        drivers: DriverStore,
        batches: BatchStore,
        *,
        analyzer: OrderCompatibilityAnalyzer,
        selector: DriverAssignmentSelector,
        sequencer: RouteSequencer,
        lifecycle: BatchLifecycleManager,
        locks: KeyedLocks,
        settings: Settings | None = None,
    ) -> None:
        self.orders = orders
        self.drivers = drivers
        self.batches = batches
        self.analyzer = analyzer
        self.selector = selector
        self.sequencer = sequencer
        self.lifecycle = lifecycle
        self.locks = locks
        self.settings = settings or default_settings

    def _call(self, func, *args, **kwargs):
        return call_with_retry(
            func,
            *args,
            retries=self.settings.store_max_retries,
            backoff_seconds=self.settings.store_backoff_seconds,
            **kwargs,
        )

    def create_optimized_batch(
        self,
        order_ids: Sequence[str],
        driver_id: Optional[str] = None,
        max_orders: Optional[int] = None,
        max_deviation_km: Optional[float] = None,
    ) -> OperationResult:
        def run() -> OperationResult:
            batch, assignment = self.plan(order_ids, driver_id, max_orders, max_deviation_km)
            metadata = {
                "batch_id": batch.batch_id,
                "driver_id": batch.driver_id,
                "order_count": len(order_ids),
                "total_distance_km": batch.total_distance_km,
                "assignment_score": assignment.score,
            }
            if assignment.metadata.get("degraded"):
                metadata["degraded"] = True
            return OperationResult.ok("Batch created successfully", data=batch, **metadata)

        return run_operation("create optimized batch", run)

    def plan(
        self,
        order_ids: Sequence[str],
        driver_id: Optional[str] = None,
        max_orders: Optional[int] = None,
        max_deviation_km: Optional[float] = None,
    ) -> tuple[Batch, DriverAssignmentResult]:
        ids = list(order_ids)
        max_orders = max_orders if max_orders is not None else self.settings.default_max_orders
        max_deviation_km = (
            max_deviation_km if max_deviation_km is not None else self.settings.default_max_deviation_km
        )
        self._validate_request(ids, max_orders, max_deviation_km)

        compatibility = self.analyzer.analyze(ids, max_deviation_km)
        if not compatibility.is_compatible:
            raise IncompatibilityError(compatibility.reason, score=compatibility.score, order_ids=ids)

        taken: set[str] = set()

        def attempt() -> tuple[Batch, DriverAssignmentResult]:
            while True:
                assignment = self._assign(ids, driver_id, taken)
                keys = [driver_key(assignment.driver_id)] + [order_key(oid) for oid in ids]
                with self.locks.hold(keys):
                    try:
                        return self._persist(ids, assignment, driver_id, max_orders, max_deviation_km)
                    except DriverTakenError:
                        taken.add(assignment.driver_id)

        return retry_on_conflict(attempt, attempts=self.settings.candidate_selection_retries)

    def _assign(self, ids: list[str], driver_id: Optional[str], taken: set[str]) -> DriverAssignmentResult:
        if driver_id:
            return self._pinned_assignment(driver_id)
        orders = self._call(self.orders.get_orders, ids)
        assignment = self.selector.select(orders, exclude=taken)
        if assignment.driver_id in taken:
            raise ConflictError(f"Driver {assignment.driver_id} is no longer free", driver_id=assignment.driver_id)
        return assignment

    def _persist(
        self,
        ids: list[str],
        assignment: DriverAssignmentResult,
        driver_id: Optional[str],
        max_orders: int,
        max_deviation_km: float,
    ) -> tuple[Batch, DriverAssignmentResult]:
        """Re-validate and write the batch. Callers hold the driver and order locks."""
        current = self.analyzer.analyze(ids, max_deviation_km)
        if not current.is_compatible:
            raise IncompatibilityError(current.reason, score=current.score, order_ids=ids)
        driver = self._require_free_driver(assignment.driver_id, pinned=bool(driver_id))
        orders = self._call(self.orders.get_orders, ids)
        route = self.sequencer.sequence(orders, driver.location)
        metadata = {
            "compatibility_score": current.score,
            "compatibility_factors": current.factors,
            "assignment_score": assignment.score,
        }
        if assignment.metadata.get("degraded"):
            metadata["degraded_assignment"] = True
        batch = self.lifecycle.create_batch(
            driver.driver_id,
            route,
            max_orders=max_orders,
            max_deviation_km=max_deviation_km,
            metadata=metadata,
        )
        return batch, assignment

    @staticmethod
    def _validate_request(ids: list[str], max_orders: int, max_deviation_km: float) -> None:
        if not ids:
            raise ValidationError("No orders provided")
        duplicates = sorted(oid for oid, count in Counter(ids).items() if count > 1)
        if duplicates:
            raise ValidationError("Duplicate order ids in request", duplicates=duplicates)
        if max_orders < 1:
            raise ValidationError("max_orders must be at least 1", max_orders=max_orders)
        if max_deviation_km <= 0:
            raise ValidationError("max_deviation_km must be positive", max_deviation_km=max_deviation_km)
        if len(ids) > max_orders:
            raise ValidationError(
                f"Too many orders for one batch ({len(ids)}, max {max_orders})",
                order_count=len(ids),
                max_orders=max_orders,
            )

    def _pinned_assignment(self, driver_id: str) -> DriverAssignmentResult:
        driver = self._require_free_driver(driver_id, pinned=True)
        return DriverAssignmentResult(driver_id=driver.driver_id, score=1.0, metadata={"pinned": True})

    def _require_free_driver(self, driver_id: str, *, pinned: bool) -> Driver:
        """Re-read the driver; a selected driver lost to a race raises ``DriverTakenError``."""
        driver = self._call(self.drivers.get_driver, driver_id)
        if driver is None:
            raise ValidationError(f"Driver {driver_id} not found", driver_id=driver_id)
        if not driver.is_available:
            raise NoCandidateError(f"Driver {driver_id} is not online and active", driver_id=driver_id)
        if driver.location is None:
            raise NoCandidateError(f"Driver {driver_id} has no known location", driver_id=driver_id)

        open_batch = self._call(self.batches.find_open_batch_for_driver, driver_id)
        if open_batch is not None or driver.current_batch_id is not None:
            held = open_batch.batch_id if open_batch else driver.current_batch_id
            if pinned:
                raise NoCandidateError(
                    f"Driver {driver_id} already has an active batch", driver_id=driver_id, batch_id=held
                )
            logger.info(f"Driver {driver_id} was assigned batch {held} concurrently; selecting again")
            raise DriverTakenError(f"Driver {driver_id} is no longer free", driver_id=driver_id, batch_id=held)
        return driver
