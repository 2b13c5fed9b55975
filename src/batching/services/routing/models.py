"""Routing domain models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List


@dataclass(slots=True)
class RouteLeg:
    order_id: str
    kind: str  # 'pickup' or 'delivery'
    sequence: int
    arrival_min: float
    distance_from_prev_km: float


@dataclass(slots=True)
class RoutePlan:
    origin: tuple[float, float]
    legs: List[RouteLeg]
    total_distance_km: float
    total_duration_min: float

    @property
    def order_count(self) -> int:
        return sum(1 for leg in self.legs if leg.kind == "pickup")
