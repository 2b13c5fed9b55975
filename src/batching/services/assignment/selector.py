"""Driver scoring and selection for a batch of orders."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, Sequence

from ...config import Settings, settings as default_settings
from ...errors import NoCandidateError, ValidationError
from ...models.domain import OPEN_BATCH_STATUSES, Driver, Order
from ...models.results import DriverAssignmentResult
from ...persistence.ports import BatchStore, DriverStore
from ...persistence.retry import call_with_retry
from ..geospatial import centroid, point_distance_km

logger = logging.getLogger(__name__)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


@dataclass(slots=True)
class DriverScore:
    driver_id: str
    distance_km: float
    score: float
    breakdown: dict[str, float]
    has_open_batch: bool


class DriverAssignmentSelector:
    """Scores online drivers around the delivery centroid and picks the best.

    Weighted factors: proximity, current workload, historical performance and
    how well the batch fills a driver's capacity. Drivers already holding an
    open batch score zero on workload and are never selected. Ties go to the
    lowest driver id.
    """

    def __init__(
        self,
        drivers: DriverStore,
        batches: BatchStore,
        settings: Settings | None = None,
    ) -> None:
        self.drivers = drivers
        self.batches = batches
        self.settings = settings or default_settings

    def _call(self, func, *args, **kwargs):
        return call_with_retry(
            func,
            *args,
            retries=self.settings.store_max_retries,
            backoff_seconds=self.settings.store_backoff_seconds,
            **kwargs,
        )

    def performance_score(self, driver: Driver) -> float:
        stats = driver.performance
        if stats is None or stats.total_deliveries <= 0:
            return self.settings.default_performance_score
        return (
            _clamp(stats.rating / 5.0) * 0.5
            + _clamp(stats.on_time_rate) * 0.3
            + min(stats.total_deliveries / 100.0, 1.0) * 0.2
        )

    def score_driver(
        self,
        driver: Driver,
        *,
        distance_km: float,
        radius_km: float,
        order_count: int,
        has_open_batch: bool,
    ) -> DriverScore:
        s = self.settings
        distance_score = 1.0 - _clamp(distance_km / radius_km)
        if has_open_batch:
            workload_score = 0.0
        else:
            workload_score = 1.0 - _clamp(driver.workload_count / s.max_driver_workload)
        performance_score = self.performance_score(driver)
        fit_score = _clamp(order_count / s.default_max_orders)
        breakdown = {
            "distance": distance_score,
            "workload": workload_score,
            "performance": performance_score,
            "batch_fit": fit_score,
        }
        score = (
            s.weight_distance * distance_score
            + s.weight_workload * workload_score
            + s.weight_performance * performance_score
            + s.weight_batch_fit * fit_score
        )
        return DriverScore(
            driver_id=driver.driver_id,
            distance_km=distance_km,
            score=score,
            breakdown=breakdown,
            has_open_batch=has_open_batch,
        )

    def rank(self, orders: Sequence[Order], radius_km: float | None = None) -> list[DriverScore]:
        """Score every available driver within the radius, best first."""
        if not orders:
            raise ValidationError("Cannot assign a driver to an empty order set")
        radius = radius_km or self.settings.driver_search_radius_km
        center = centroid(order.delivery_point for order in orders)

        available = self._call(self.drivers.list_available_drivers)
        busy = {
            batch.driver_id for batch in self._call(self.batches.list_batches, OPEN_BATCH_STATUSES)
        }

        scored: list[DriverScore] = []
        for driver in available:
            location = driver.location
            if location is None:
                continue
            distance = point_distance_km(center, location)
            if distance > radius:
                continue
            scored.append(
                self.score_driver(
                    driver,
                    distance_km=distance,
                    radius_km=radius,
                    order_count=len(orders),
                    has_open_batch=driver.driver_id in busy or driver.current_batch_id is not None,
                )
            )
        scored.sort(key=lambda item: (-item.score, item.driver_id))
        return scored

    def select(
        self,
        orders: Sequence[Order],
        radius_km: float | None = None,
        exclude: Collection[str] = (),
    ) -> DriverAssignmentResult:
        """Pick the best free driver, skipping any id in ``exclude``."""
        radius = radius_km or self.settings.driver_search_radius_km
        ranked = self.rank(orders, radius)
        eligible = [item for item in ranked if not item.has_open_batch and item.driver_id not in exclude]
        if not eligible:
            raise NoCandidateError(
                f"No available drivers within {radius:.1f}km",
                radius_km=radius,
                candidates_in_radius=len(ranked),
                busy_drivers=[item.driver_id for item in ranked if item.has_open_batch],
                excluded_drivers=sorted(exclude),
            )

        best = eligible[0]
        metadata = {
            "distance_km": round(best.distance_km, 3),
            "breakdown": best.breakdown,
            "candidates_considered": len(eligible),
            "busy_drivers_excluded": len(ranked) - len(eligible),
            "radius_km": radius,
        }
        if best.score <= 0.0:
            if self.settings.reject_zero_score_candidates:
                raise NoCandidateError(
                    "Every candidate driver scored zero",
                    radius_km=radius,
                    candidates_in_radius=len(ranked),
                )
            logger.warning(f"All {len(eligible)} candidate drivers scored zero; using {best.driver_id}")
            metadata["degraded"] = True

        logger.info(f"Selected driver {best.driver_id} (score {best.score:.3f}) from {len(eligible)} candidates")
        return DriverAssignmentResult(driver_id=best.driver_id, score=best.score, metadata=metadata)
