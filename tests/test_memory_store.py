import pytest

from src.batching.errors import ConflictError, ValidationError
from src.batching.models.domain import Batch, BatchOrder, BatchStatus, OrderStatus, StopStatus
from src.batching.persistence.memory import InMemoryStore
from tests.helpers import BASE_TIME, make_driver, make_order


def _batch(batch_id: str, driver_id: str) -> Batch:
    return Batch(
        batch_id=batch_id,
        driver_id=driver_id,
        batch_number=f"B-{batch_id}",
        status=BatchStatus.PLANNED,
        total_distance_km=1.0,
        estimated_duration_minutes=2,
        optimization_score=98.0,
        max_orders=3,
        max_deviation_km=5.0,
        created_at=BASE_TIME,
        updated_at=BASE_TIME,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(
        orders=[make_order("O1", 3.10, 101.60), make_order("O2", 3.101, 101.601), make_order("O3", 3.102, 101.602)],
        drivers=[make_driver("D1", 3.1, 101.6), make_driver("D2", 3.1, 101.6)],
    )


def test_driver_holds_one_open_batch(store):
    store.insert_batch(_batch("B1", "D1"), [BatchOrder("B1", "O1", 1, 1)])

    with pytest.raises(ConflictError):
        store.insert_batch(_batch("B2", "D1"), [BatchOrder("B2", "O2", 1, 1)])


def test_order_belongs_to_one_open_batch(store):
    store.insert_batch(_batch("B1", "D1"), [BatchOrder("B1", "O1", 1, 1)])

    with pytest.raises(ConflictError):
        store.insert_batch(_batch("B2", "D2"), [BatchOrder("B2", "O1", 1, 1)])


def test_terminal_batches_release_uniqueness(store):
    store.insert_batch(_batch("B1", "D1"), [BatchOrder("B1", "O1", 1, 1)])
    store.update_batch_status("B1", BatchStatus.CANCELLED, expected=[BatchStatus.PLANNED], at=BASE_TIME)

    store.insert_batch(_batch("B2", "D1"), [BatchOrder("B2", "O1", 1, 1)])

    assert store.find_open_batch_for_driver("D1").batch_id == "B2"


def test_status_update_is_compare_and_swap(store):
    store.insert_batch(_batch("B1", "D1"), [BatchOrder("B1", "O1", 1, 1)])

    with pytest.raises(ConflictError):
        store.update_batch_status("B1", BatchStatus.COMPLETED, expected=[BatchStatus.ACTIVE], at=BASE_TIME)

    updated = store.update_batch_status(
        "B1",
        BatchStatus.CANCELLED,
        expected=[BatchStatus.PLANNED],
        at=BASE_TIME,
        fields={"metadata": {"cancellation_reason": "test"}},
    )
    assert updated.metadata == {"cancellation_reason": "test"}


def test_claim_only_ready_orders(store):
    store.claim_order("O1", "D1")

    with pytest.raises(ConflictError):
        store.claim_order("O1", "D2")
    with pytest.raises(ValidationError):
        store.claim_order("missing", "D1")


def test_release_refuses_delivered_orders(store):
    store.claim_order("O1", "D1")
    store.set_order_status("O1", OrderStatus.DELIVERED, expected=[OrderStatus.ASSIGNED])

    with pytest.raises(ConflictError):
        store.release_order("O1", expected_driver_id="D1")


def test_current_batch_reference_is_compare_and_swap(store):
    store.set_current_batch("D1", "B1", expected_batch_id=None)

    with pytest.raises(ConflictError):
        store.set_current_batch("D1", "B2", expected_batch_id=None)
    assert store.set_current_batch("D1", None, expected_batch_id="B1").current_batch_id is None


def test_stop_status_moves_once(store):
    store.insert_batch(_batch("B1", "D1"), [BatchOrder("B1", "O1", 1, 1)])

    row = store.update_stop_status("B1", "O1", leg="delivery", status=StopStatus.COMPLETED, at=BASE_TIME)
    assert row.actual_delivery_time == BASE_TIME

    with pytest.raises(ConflictError):
        store.update_stop_status("B1", "O1", leg="delivery", status=StopStatus.FAILED, at=BASE_TIME)


def test_attach_rejects_used_sequence(store):
    store.insert_batch(_batch("B1", "D1"), [BatchOrder("B1", "O1", 1, 1)])

    with pytest.raises(ConflictError):
        store.attach_order(BatchOrder("B1", "O2", 1, 1), driver_id="D1")
    assert store.get_order("O2").status == OrderStatus.READY


def test_detach_requires_full_resequence(store):
    rows = [BatchOrder("B1", "O1", 1, 1), BatchOrder("B1", "O2", 2, 2), BatchOrder("B1", "O3", 3, 3)]
    store.insert_batch(_batch("B1", "D1"), rows)

    with pytest.raises(ValidationError):
        store.detach_order("B1", "O1", resequence={"O2": (1, 1)})

    remaining = store.detach_order("B1", "O1", resequence={"O2": (1, 1), "O3": (2, 2)})
    assert [(row.order_id, row.pickup_sequence) for row in remaining] == [("O2", 1), ("O3", 2)]


def test_reads_return_copies(store):
    order = store.get_order("O1")
    order.status = OrderStatus.CANCELLED

    assert store.get_order("O1").status == OrderStatus.READY
