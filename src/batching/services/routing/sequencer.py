"""Greedy pickup/delivery sequencing for a fixed order set.

This is a nearest-neighbour heuristic, not an optimal TSP solution: starting
from the driver's position it repeatedly visits the closest unvisited pickup.
The delivery run reuses the pickup order. Ties keep input order so identical
inputs always produce identical routes.
"""

from __future__ import annotations

from typing import Sequence

from ...config import Settings, settings as default_settings
from ...errors import ValidationError
from ...models.domain import Order
from ...models.results import RouteOptimizationResult
from ..geospatial import point_distance_km
from .models import RouteLeg, RoutePlan


class RouteSequencer:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings

    def order_by_nearest_pickup(self, orders: Sequence[Order], origin: tuple[float, float]) -> list[Order]:
        remaining = list(orders)
        sequence: list[Order] = []
        current = origin
        while remaining:
            nearest = remaining[0]
            nearest_distance = point_distance_km(current, nearest.pickup_point)
            for candidate in remaining[1:]:
                distance = point_distance_km(current, candidate.pickup_point)
                if distance < nearest_distance:
                    nearest, nearest_distance = candidate, distance
            sequence.append(nearest)
            remaining.remove(nearest)
            current = nearest.pickup_point
        return sequence

    def build_plan(self, ordered: Sequence[Order], origin: tuple[float, float]) -> RoutePlan:
        """Legs for visiting every pickup, then every delivery, in ``ordered`` order."""
        speed = self.settings.average_speed_kmh
        legs: list[RouteLeg] = []
        total_distance = 0.0
        current = origin
        stops = [("pickup", order, order.pickup_point) for order in ordered]
        stops += [("delivery", order, order.delivery_point) for order in ordered]
        for index, (kind, order, point) in enumerate(stops):
            step = point_distance_km(current, point)
            total_distance += step
            legs.append(
                RouteLeg(
                    order_id=order.order_id,
                    kind=kind,
                    sequence=(index % len(ordered)) + 1,
                    arrival_min=total_distance / speed * 60.0,
                    distance_from_prev_km=step,
                )
            )
            current = point
        return RoutePlan(
            origin=origin,
            legs=legs,
            total_distance_km=total_distance,
            total_duration_min=total_distance / speed * 60.0,
        )

    def measure(self, ordered: Sequence[Order], origin: tuple[float, float]) -> RouteOptimizationResult:
        """Metrics for an already fixed visiting order."""
        if not ordered:
            raise ValidationError("Cannot measure a route without orders")
        plan = self.build_plan(ordered, origin)
        ids = [order.order_id for order in ordered]
        score = max(
            0.0,
            self.settings.route_score_base - self.settings.route_score_distance_penalty * plan.total_distance_km,
        )
        return RouteOptimizationResult(
            pickup_sequence=ids,
            delivery_sequence=list(ids),
            total_distance_km=plan.total_distance_km,
            estimated_duration_minutes=int(round(plan.total_duration_min)),
            optimization_score=score,
        )

    def sequence(self, orders: Sequence[Order], origin: tuple[float, float]) -> RouteOptimizationResult:
        if not orders:
            raise ValidationError("Cannot sequence an empty order set")
        return self.measure(self.order_by_nearest_pickup(orders, origin), origin)
