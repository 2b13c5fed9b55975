import threading

from src.batching.config import Settings
from src.batching.models.domain import BatchStatus
from tests.helpers import make_driver, make_engine, make_order

POOL = [
    make_order("A1", 3.100, 101.600, created_offset_min=0),
    make_order("A2", 3.101, 101.601, created_offset_min=1),
    make_order("FAR", 3.300, 101.800, pickup=(3.300, 101.800), created_offset_min=2),
    make_order("A3", 3.102, 101.602, created_offset_min=3),
    make_order("A4", 3.103, 101.603, created_offset_min=4),
]


def _ids(groups):
    return [[order.order_id for order in group] for group in groups]


def test_partition_seeds_groups_in_pool_order():
    engine, _, _, _ = make_engine(orders=POOL)

    groups = engine.grouping.partition(POOL, 3, 5.0)

    assert _ids(groups) == [["A1", "A2", "A3"], ["FAR"], ["A4"]]


def test_partition_is_deterministic_and_covers_every_order():
    engine, _, _, _ = make_engine(orders=POOL)

    first = _ids(engine.grouping.partition(POOL, 2, 5.0))
    second = _ids(engine.grouping.partition(list(POOL), 2, 5.0))

    assert first == second
    assert sorted(oid for group in first for oid in group) == sorted(order.order_id for order in POOL)
    assert all(len(group) <= 2 for group in first)


def test_sweep_plans_each_group_and_isolates_failures():
    engine, store, _, _ = make_engine(
        orders=POOL,
        drivers=[make_driver("D1", 3.101, 101.601), make_driver("D2", 3.299, 101.799)],
        settings=Settings(max_parallel_groups=1),
    )

    result = engine.run_grouping_sweep()

    assert result.success
    sweep = result.data
    assert [group.order_ids for group in sweep.groups] == [["A1", "A2", "A3"], ["FAR"], ["A4"]]
    assert [group.result.success for group in sweep.groups] == [True, True, False]
    assert sweep.groups[2].result.error == "no_candidate"
    assert sweep.created == 2
    assert sweep.failed == 1
    assert not sweep.cancelled
    assert len(store.list_batches([BatchStatus.PLANNED])) == 2
    assert [order.order_id for order in store.list_ready_orders()] == ["A4"]


def test_sweep_runs_groups_in_parallel():
    engine, store, _, _ = make_engine(
        orders=POOL,
        drivers=[make_driver("D1", 3.101, 101.601), make_driver("D2", 3.299, 101.799), make_driver("D3", 3.103, 101.603)],
        settings=Settings(max_parallel_groups=3),
    )

    sweep = engine.run_grouping_sweep().data

    assert sweep.created == 3
    drivers = {batch.driver_id for batch in store.list_batches([BatchStatus.PLANNED])}
    assert drivers == {"D1", "D2", "D3"}


def test_sweep_with_cancelled_event_plans_nothing():
    engine, store, _, _ = make_engine(orders=POOL, drivers=[make_driver("D1", 3.101, 101.601)])
    cancel = threading.Event()
    cancel.set()

    sweep = engine.run_grouping_sweep(cancel_event=cancel).data

    assert sweep.cancelled
    assert sweep.groups == []
    assert len(sweep.skipped) == 3
    assert store.list_batches(list(BatchStatus)) == []


class CancellingPlanner:
    def __init__(self, planner, event):
        self.planner = planner
        self.event = event

    def create_optimized_batch(self, order_ids, **kwargs):
        result = self.planner.create_optimized_batch(order_ids, **kwargs)
        self.event.set()
        return result


def test_cancellation_keeps_committed_groups():
    engine, store, _, _ = make_engine(
        orders=POOL,
        drivers=[make_driver("D1", 3.101, 101.601), make_driver("D2", 3.299, 101.799)],
        settings=Settings(max_parallel_groups=1),
    )
    cancel = threading.Event()
    engine.grouping.planner = CancellingPlanner(engine.planner, cancel)

    sweep = engine.grouping.sweep(cancel_event=cancel)

    assert sweep.cancelled
    assert sweep.created == 1
    assert sweep.skipped == [["FAR"], ["A4"]]
    assert len(store.list_batches([BatchStatus.PLANNED])) == 1


def test_empty_pool_produces_empty_sweep():
    engine, _, _, _ = make_engine()

    sweep = engine.run_grouping_sweep().data

    assert sweep.groups == []
    assert sweep.created == 0


def test_parallel_groups_competing_for_one_driver_all_succeed():
    size = 8
    for _ in range(5):
        engine, store, _, _ = make_engine(
            orders=[make_order(f"O{i}", 3.10, 101.60, created_offset_min=i) for i in range(size)],
            drivers=[make_driver(f"D{i}", 3.1005, 101.6005) for i in range(size)],
            settings=Settings(max_parallel_groups=size, candidate_selection_retries=0),
        )

        sweep = engine.run_grouping_sweep(max_orders_per_group=1).data

        assert sweep.failed == 0, [(group.order_ids, group.result.message) for group in sweep.groups]
        assert sweep.created == size
        drivers = [batch.driver_id for batch in store.list_batches([BatchStatus.PLANNED])]
        assert sorted(drivers) == sorted(f"D{i}" for i in range(size))
