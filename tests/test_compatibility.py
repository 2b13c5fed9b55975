import pytest

from src.batching.config import Settings
from src.batching.errors import ValidationError
from src.batching.models.domain import OrderStatus
from src.batching.persistence.memory import InMemoryStore
from src.batching.services.compatibility.analyzer import OrderCompatibilityAnalyzer
from tests.helpers import make_order


def _analyzer(*orders) -> OrderCompatibilityAnalyzer:
    return OrderCompatibilityAnalyzer(InMemoryStore(orders=orders), Settings())


def test_close_same_vendor_orders_are_compatible():
    o1 = make_order("O1", 3.10, 101.60)
    o2 = make_order("O2", 3.105, 101.605, prep_offset_min=5)

    result = _analyzer(o1, o2).analyze(["O1", "O2"], 5.0)

    assert result.is_compatible
    assert result.reason is None
    assert result.score >= 0.7
    assert result.score == pytest.approx(1 - (5 / 30) * 0.3)
    assert result.factors["vendor"] == 1.0


def test_far_apart_deliveries_are_incompatible():
    shared_vendor = (3.10, 101.60)
    o1 = make_order("O1", 3.10, 101.60, pickup=shared_vendor)
    o3 = make_order("O3", 3.30, 101.80, pickup=shared_vendor)

    result = _analyzer(o1, o3).analyze(["O1", "O3"], 5.0)

    assert not result.is_compatible
    assert result.score == 0.0
    assert "31.4" in result.reason
    assert "km" in result.reason
    assert result.reason.startswith("Delivery addresses are too far apart")


def test_deviation_above_absolute_cap_is_still_limited():
    shared_vendor = (3.10, 101.60)
    o1 = make_order("O1", 3.10, 101.60, pickup=shared_vendor)
    o2 = make_order("O2", 3.10, 101.71, pickup=shared_vendor)  # ~12.2 km east

    result = _analyzer(o1, o2).analyze(["O1", "O2"], 20.0)

    assert not result.is_compatible
    assert "limit 10.0km" in result.reason


def test_far_apart_vendors_are_incompatible():
    o1 = make_order("O1", 3.10, 101.60, pickup=(3.00, 101.60))
    o2 = make_order("O2", 3.101, 101.601, pickup=(3.12, 101.60), vendor="V2")

    result = _analyzer(o1, o2).analyze(["O1", "O2"], 5.0)

    assert not result.is_compatible
    assert result.reason.startswith("Vendors are too far apart")


def test_preparation_span_beyond_window_is_incompatible():
    o1 = make_order("O1", 3.10, 101.60)
    o2 = make_order("O2", 3.101, 101.601, prep_offset_min=40)

    result = _analyzer(o1, o2).analyze(["O1", "O2"], 5.0)

    assert not result.is_compatible
    assert "40 minutes" in result.reason


def test_multiple_vendors_lower_the_score():
    o1 = make_order("O1", 3.10, 101.60)
    o2 = make_order("O2", 3.101, 101.601, vendor="V2")

    result = _analyzer(o1, o2).analyze(["O1", "O2"], 5.0)

    assert result.is_compatible
    assert result.score == pytest.approx(0.8)


def test_multiple_vendors_with_wide_span_fall_below_threshold():
    o1 = make_order("O1", 3.10, 101.60)
    o2 = make_order("O2", 3.101, 101.601, vendor="V2", prep_offset_min=30)

    result = _analyzer(o1, o2).analyze(["O1", "O2"], 5.0)

    assert not result.is_compatible
    assert "below threshold" in result.reason
    assert result.score == pytest.approx(0.7 * 0.8)


def test_single_ready_order_is_trivially_compatible():
    result = _analyzer(make_order("O1", 3.10, 101.60)).analyze(["O1"], 5.0)
    assert result.is_compatible
    assert result.score == 1.0


def test_order_that_is_not_ready_is_rejected():
    o1 = make_order("O1", 3.10, 101.60, status=OrderStatus.PICKED_UP)
    o2 = make_order("O2", 3.101, 101.601)

    result = _analyzer(o1, o2).analyze(["O1", "O2"], 5.0)

    assert not result.is_compatible
    assert result.reason == "Order O1 is not ready for pickup"


def test_order_with_a_driver_is_rejected():
    o1 = make_order("O1", 3.10, 101.60, driver_id="D9")

    result = _analyzer(o1).analyze(["O1"], 5.0)

    assert not result.is_compatible
    assert result.reason == "Order O1 is already assigned to a driver"


def test_existing_members_skip_eligibility():
    member = make_order("O1", 3.10, 101.60, status=OrderStatus.ASSIGNED, driver_id="D1")
    candidate = make_order("O2", 3.101, 101.601)

    result = _analyzer(member, candidate).analyze(["O1", "O2"], 5.0, members=["O1"])

    assert result.is_compatible


def test_unknown_orders_raise_validation_error():
    with pytest.raises(ValidationError) as excinfo:
        _analyzer(make_order("O1", 3.10, 101.60)).analyze(["O1", "missing"], 5.0)
    assert excinfo.value.metadata["missing"] == ["missing"]


def test_empty_order_list_raises_validation_error():
    with pytest.raises(ValidationError):
        _analyzer().analyze([], 5.0)
