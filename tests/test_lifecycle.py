import pytest

from src.batching.config import Settings
from src.batching.errors import ConflictError, StoreError
from src.batching.models.domain import BatchStatus, OrderStatus, StopStatus
from src.batching.models.results import RouteOptimizationResult
from src.batching.persistence.memory import InMemoryStore
from src.batching.services.engine import build_engine
from src.batching.services.events import InMemoryEventPublisher
from src.batching.services.lifecycle.manager import BatchLifecycleManager
from tests.helpers import BASE_TIME, FixedClock, make_driver, make_engine, make_order


@pytest.fixture
def setup():
    engine, store, events, clock = make_engine(
        orders=[make_order("O1", 3.10, 101.60), make_order("O2", 3.105, 101.605, prep_offset_min=5)],
        drivers=[make_driver("D1", 3.1025, 101.6025)],
    )
    created = engine.create_optimized_batch(["O1", "O2"])
    assert created.success, created.message
    return engine, store, events, clock, created.data


def test_create_persists_rows_and_claims_orders(setup):
    engine, store, events, _, batch = setup

    rows = store.get_batch_orders(batch.batch_id)
    assert len(rows) == 2
    assert sorted(row.pickup_sequence for row in rows) == [1, 2]
    assert sorted(row.delivery_sequence for row in rows) == [1, 2]
    assert batch.status == BatchStatus.PLANNED
    assert batch.batch_number.startswith("B20260105-")
    for order in store.get_orders(["O1", "O2"]):
        assert order.status == OrderStatus.ASSIGNED
        assert order.assigned_driver_id == "D1"
    assert store.get_driver("D1").current_batch_id == batch.batch_id
    assert events.names() == ["batch_created"]


def test_start_pause_resume(setup):
    engine, store, events, clock, batch = setup
    clock.advance(10)

    started = engine.start_batch(batch.batch_id)
    assert started.success
    assert started.data.status == BatchStatus.ACTIVE
    assert started.data.actual_start_time == clock.now

    assert engine.pause_batch(batch.batch_id).data.status == BatchStatus.PAUSED
    assert engine.resume_batch(batch.batch_id).data.status == BatchStatus.ACTIVE
    assert events.names() == ["batch_created", "batch_started"]


def test_invalid_transitions_are_state_errors(setup):
    engine, _, _, _, batch = setup

    paused = engine.pause_batch(batch.batch_id)
    assert not paused.success
    assert paused.error == "state"

    engine.start_batch(batch.batch_id)
    again = engine.start_batch(batch.batch_id)
    assert again.error == "state"
    assert "active" in again.message


def test_complete_requires_every_delivery(setup):
    engine, _, _, _, batch = setup
    engine.start_batch(batch.batch_id)

    result = engine.complete_batch(batch.batch_id)

    assert not result.success
    assert result.error == "state"
    assert result.message == "Cannot complete batch: 2 orders not yet delivered"


def test_stop_updates_need_an_active_batch(setup):
    engine, _, _, _, batch = setup

    result = engine.update_pickup_status(batch.batch_id, "O1", StopStatus.COMPLETED)

    assert not result.success
    assert result.error == "state"


def test_last_delivery_completes_the_batch(setup):
    engine, store, events, clock, batch = setup
    engine.start_batch(batch.batch_id)

    for order_id in ("O1", "O2"):
        picked = engine.update_pickup_status(batch.batch_id, order_id, StopStatus.COMPLETED)
        assert picked.success
        assert picked.data.actual_pickup_time == clock.now
    assert store.get_order("O1").status == OrderStatus.PICKED_UP

    first = engine.update_delivery_status(batch.batch_id, "O1", StopStatus.COMPLETED)
    assert first.metadata["batch_completed"] is False
    clock.advance(30)
    last = engine.update_delivery_status(batch.batch_id, "O2", StopStatus.COMPLETED)
    assert last.metadata["batch_completed"] is True

    stored = store.get_batch(batch.batch_id)
    assert stored.status == BatchStatus.COMPLETED
    assert stored.actual_completion_time == clock.now
    assert store.get_order("O2").status == OrderStatus.DELIVERED
    assert store.get_driver("D1").current_batch_id is None
    assert events.names()[-1] == "batch_completed"


def test_leg_cannot_be_updated_twice(setup):
    engine, _, _, _, batch = setup
    engine.start_batch(batch.batch_id)
    engine.update_pickup_status(batch.batch_id, "O1", StopStatus.FAILED)

    result = engine.update_pickup_status(batch.batch_id, "O1", StopStatus.COMPLETED)

    assert result.error == "state"
    assert "already failed" in result.message


def test_failed_delivery_blocks_completion(setup):
    engine, store, _, _, batch = setup
    engine.start_batch(batch.batch_id)
    engine.update_delivery_status(batch.batch_id, "O1", StopStatus.COMPLETED)
    engine.update_delivery_status(batch.batch_id, "O2", StopStatus.FAILED)

    assert store.get_batch(batch.batch_id).status == BatchStatus.ACTIVE
    assert engine.complete_batch(batch.batch_id).message == "Cannot complete batch: 1 orders not yet delivered"


def test_cancel_resets_orders_and_records_reason(setup):
    engine, store, events, _, batch = setup
    engine.start_batch(batch.batch_id)

    result = engine.cancel_batch(batch.batch_id, "driver vehicle broke down")

    assert result.success
    assert result.data.metadata["cancellation_reason"] == "driver vehicle broke down"
    for order in store.get_orders(["O1", "O2"]):
        assert order.status == OrderStatus.READY
        assert order.assigned_driver_id is None
    assert store.get_driver("D1").current_batch_id is None
    assert events.names()[-1] == "batch_cancelled"
    assert engine.cancel_batch(batch.batch_id, "again").error == "state"


def test_cancel_keeps_delivered_orders(setup):
    engine, store, _, _, batch = setup
    engine.start_batch(batch.batch_id)
    engine.update_delivery_status(batch.batch_id, "O1", StopStatus.COMPLETED)

    result = engine.cancel_batch(batch.batch_id, "customer unreachable")

    assert result.metadata["released_orders"] == ["O2"]
    assert store.get_order("O1").status == OrderStatus.DELIVERED
    assert store.get_order("O2").status == OrderStatus.READY


def test_cancel_requires_reason(setup):
    engine, _, _, _, batch = setup
    assert engine.cancel_batch(batch.batch_id, "  ").error == "validation"


def test_queries(setup):
    engine, _, _, _, batch = setup

    detail = engine.get_batch(batch.batch_id)
    assert detail.data["batch"].batch_id == batch.batch_id
    assert [row.pickup_sequence for row in detail.data["orders"]] == [1, 2]

    assert engine.get_active_batch_for_driver("D1").data.batch_id == batch.batch_id
    assert engine.get_active_batch_for_driver("nobody").data is None
    assert engine.get_batch("missing").error == "validation"


class ClaimRejectingStore(InMemoryStore):
    def claim_order(self, order_id, driver_id):
        if order_id == "O2":
            raise ConflictError(f"Order {order_id} is no longer ready and unassigned")
        return super().claim_order(order_id, driver_id)


def test_failed_claim_rolls_back_creation():
    store = ClaimRejectingStore(
        orders=[make_order("O1", 3.10, 101.60), make_order("O2", 3.105, 101.605)],
        drivers=[make_driver("D1", 3.1025, 101.6025)],
    )
    events = InMemoryEventPublisher()
    manager = BatchLifecycleManager(store, store, store, events=events, clock=FixedClock())
    route = RouteOptimizationResult(
        pickup_sequence=["O1", "O2"],
        delivery_sequence=["O1", "O2"],
        total_distance_km=1.0,
        estimated_duration_minutes=2,
        optimization_score=98.0,
    )

    with pytest.raises(ConflictError):
        manager.create_batch("D1", route, max_orders=3, max_deviation_km=5.0)

    (batch,) = store.list_batches([BatchStatus.CANCELLED])
    assert batch.created_at == BASE_TIME
    assert "creation aborted" in batch.metadata["cancellation_reason"]
    assert store.get_order("O1").status == OrderStatus.READY
    assert store.get_driver("D1").current_batch_id is None
    assert events.names() == []


class FlakyClaimStore(InMemoryStore):
    """Fails every claim of ``failing`` with a store error until healed."""

    def __init__(self, *args, failing=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.failing = set(failing)

    def claim_order(self, order_id, driver_id):
        if order_id in self.failing:
            raise StoreError("network down")
        return super().claim_order(order_id, driver_id)


def _flaky_engine(store):
    settings = Settings(store_max_retries=0, store_backoff_seconds=0.0)
    return build_engine(store, settings=settings, events=InMemoryEventPublisher(), clock=FixedClock())


def test_store_failure_during_claims_rolls_back_creation():
    store = FlakyClaimStore(
        orders=[make_order("O1", 3.10, 101.60), make_order("O2", 3.105, 101.605)],
        drivers=[make_driver("D1", 3.1025, 101.6025)],
        failing={"O2"},
    )
    engine = _flaky_engine(store)

    result = engine.create_optimized_batch(["O1", "O2"])

    assert result.error == "store"
    assert store.list_batches([BatchStatus.PLANNED, BatchStatus.ACTIVE, BatchStatus.PAUSED]) == []
    (batch,) = store.list_batches([BatchStatus.CANCELLED])
    assert batch.metadata["cancellation_reason"] == "creation aborted: network down"
    assert store.get_order("O1").status == OrderStatus.READY
    assert store.get_order("O1").assigned_driver_id is None
    assert store.get_driver("D1").current_batch_id is None

    store.failing.clear()
    retried = engine.create_optimized_batch(["O1", "O2"])
    assert retried.success, retried.message
    assert retried.data.driver_id == "D1"


class FailingReleaseStore(FlakyClaimStore):
    def release_order(self, order_id, *, expected_driver_id):
        raise StoreError("network down")


def test_rollback_continues_past_a_failed_release():
    store = FailingReleaseStore(
        orders=[make_order("O1", 3.10, 101.60), make_order("O2", 3.105, 101.605)],
        drivers=[make_driver("D1", 3.1025, 101.6025)],
        failing={"O2"},
    )
    engine = _flaky_engine(store)

    assert engine.create_optimized_batch(["O1", "O2"]).error == "store"

    (batch,) = store.list_batches([BatchStatus.CANCELLED])
    assert batch.driver_id == "D1"
    assert store.get_driver("D1").current_batch_id is None
