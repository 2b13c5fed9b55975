"""Order compatibility analysis for multi-order batches."""

from __future__ import annotations

import logging
from itertools import combinations
from typing import Iterable, Sequence

from ...config import Settings, settings as default_settings
from ...errors import ValidationError
from ...models.domain import Order, OrderStatus
from ...models.results import CompatibilityResult
from ...persistence.ports import OrderStore
from ...persistence.retry import call_with_retry
from ..geospatial import point_distance_km

logger = logging.getLogger(__name__)


class OrderCompatibilityAnalyzer:
    """Decides whether a set of orders may share one batch.

    Checks run in a fixed order and stop at the first failure:
    eligibility, geography, preparation window, vendor mix. The overall score
    is the product of the passed sub-scores and must reach the configured
    threshold.
    """

    def __init__(self, orders: OrderStore, settings: Settings | None = None) -> None:
        self.orders = orders
        self.settings = settings or default_settings

    def analyze(
        self,
        order_ids: Sequence[str],
        max_deviation_km: float,
        *,
        members: Iterable[str] = (),
    ) -> CompatibilityResult:
        """Fetch the orders and evaluate them; ``members`` skip eligibility."""
        if not order_ids:
            raise ValidationError("No orders provided for compatibility analysis")
        found = call_with_retry(
            self.orders.get_orders,
            list(order_ids),
            retries=self.settings.store_max_retries,
            backoff_seconds=self.settings.store_backoff_seconds,
        )
        if len(found) != len(set(order_ids)):
            missing = sorted(set(order_ids) - {order.order_id for order in found})
            raise ValidationError("Some orders not found", missing=missing)
        return self.evaluate(found, max_deviation_km, members=members)

    def evaluate(
        self,
        orders: Sequence[Order],
        max_deviation_km: float,
        *,
        members: Iterable[str] = (),
    ) -> CompatibilityResult:
        member_ids = set(members)

        reason = self._check_eligibility(orders, member_ids)
        if reason:
            return CompatibilityResult.incompatible(reason)

        if len(orders) < 2:
            return CompatibilityResult.compatible(1.0, {"preparation": 1.0, "vendor": 1.0})

        reason = self._check_geography(orders, max_deviation_km)
        if reason:
            return CompatibilityResult.incompatible(reason)

        preparation_score, reason = self._preparation_score(orders)
        if reason:
            return CompatibilityResult.incompatible(reason)

        vendor_score = self._vendor_score(orders)
        factors = {"preparation": preparation_score, "vendor": vendor_score}
        score = preparation_score * vendor_score

        if score < self.settings.compatibility_threshold:
            return CompatibilityResult(
                is_compatible=False,
                reason=(
                    f"Compatibility score {score:.2f} is below threshold "
                    f"{self.settings.compatibility_threshold:.2f}"
                ),
                score=score,
                factors=factors,
            )
        return CompatibilityResult.compatible(score, factors)

    def _check_eligibility(self, orders: Sequence[Order], member_ids: set[str]) -> str | None:
        for order in orders:
            if order.order_id in member_ids:
                continue
            if order.status != OrderStatus.READY:
                return f"Order {order.order_id} is not ready for pickup"
            if order.assigned_driver_id is not None:
                return f"Order {order.order_id} is already assigned to a driver"
        return None

    def _check_geography(self, orders: Sequence[Order], max_deviation_km: float) -> str | None:
        cap = self.settings.max_distance_between_orders_km
        delivery_limit = min(max_deviation_km, cap)
        for first, second in combinations(orders, 2):
            pickup_distance = point_distance_km(first.pickup_point, second.pickup_point)
            if pickup_distance > cap:
                return (
                    f"Vendors are too far apart ({pickup_distance:.1f}km, limit {cap:.1f}km) "
                    f"for orders {first.order_id} and {second.order_id}"
                )
            delivery_distance = point_distance_km(first.delivery_point, second.delivery_point)
            if delivery_distance > delivery_limit:
                return (
                    f"Delivery addresses are too far apart ({delivery_distance:.1f}km, "
                    f"limit {delivery_limit:.1f}km) for orders {first.order_id} and {second.order_id}"
                )
        return None

    def _preparation_score(self, orders: Sequence[Order]) -> tuple[float, str | None]:
        window = self.settings.preparation_window_minutes
        times = [order.estimated_delivery_time for order in orders]
        span_minutes = (max(times) - min(times)).total_seconds() / 60.0
        if span_minutes > window:
            return 0.0, (
                f"Preparation times differ by {span_minutes:.0f} minutes "
                f"(window {window:.0f} minutes)"
            )
        return 1.0 - (span_minutes / window) * self.settings.preparation_span_penalty, None

    def _vendor_score(self, orders: Sequence[Order]) -> float:
        vendors = {order.vendor_id for order in orders}
        if len(vendors) <= 1:
            return 1.0
        return self.settings.multi_vendor_score
