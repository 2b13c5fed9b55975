"""Result values returned by the batching services."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from ..errors import BatchingError


@dataclass(slots=True)
class CompatibilityResult:
    is_compatible: bool
    reason: Optional[str]
    score: float
    factors: dict[str, float] = field(default_factory=dict)

    @classmethod
    def compatible(cls, score: float, factors: dict[str, float]) -> "CompatibilityResult":
        return cls(is_compatible=True, reason=None, score=score, factors=factors)

    @classmethod
    def incompatible(cls, reason: str, factors: dict[str, float] | None = None) -> "CompatibilityResult":
        return cls(is_compatible=False, reason=reason, score=0.0, factors=factors or {})


@dataclass(slots=True)
class DriverAssignmentResult:
    driver_id: str
    score: float
    metadata: dict = field(default_factory=dict)


@dataclass(slots=True)
class RouteOptimizationResult:
    pickup_sequence: List[str]
    delivery_sequence: List[str]
    total_distance_km: float
    estimated_duration_minutes: int
    optimization_score: float


@dataclass(slots=True)
class OperationResult:
    """Discriminated success/failure outcome of a public engine operation."""

    success: bool
    message: str
    data: Any = None
    error: Optional[str] = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, data: Any = None, **metadata: Any) -> "OperationResult":
        return cls(success=True, message=message, data=data, metadata=metadata)

    @classmethod
    def fail(cls, message: str, error: str = "error", **metadata: Any) -> "OperationResult":
        return cls(success=False, message=message, error=error, metadata=metadata)

    @classmethod
    def from_error(cls, exc: BatchingError) -> "OperationResult":
        return cls(success=False, message=exc.message, error=exc.code, metadata=dict(exc.metadata))


@dataclass(slots=True)
class GroupOutcome:
    """Outcome of planning one group inside a grouping sweep."""

    order_ids: List[str]
    result: OperationResult


@dataclass(slots=True)
class SweepResult:
    groups: List[GroupOutcome]
    cancelled: bool = False
    skipped: List[List[str]] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(1 for group in self.groups if group.result.success)

    @property
    def failed(self) -> int:
        return sum(1 for group in self.groups if not group.result.success)
