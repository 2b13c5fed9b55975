from datetime import datetime, timedelta, timezone

from src.batching.config import Settings
from src.batching.models.domain import Driver, DriverPerformance, Order, OrderStatus
from src.batching.persistence.memory import InMemoryStore
from src.batching.services.engine import build_engine
from src.batching.services.events import InMemoryEventPublisher

BASE_TIME = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    def __init__(self, start: datetime = BASE_TIME) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


def make_order(
    oid: str,
    lat: float,
    lon: float,
    *,
    vendor: str = "V1",
    pickup: tuple[float, float] | None = None,
    prep_offset_min: float = 0,
    created_offset_min: float = 0,
    status: OrderStatus = OrderStatus.READY,
    driver_id: str | None = None,
) -> Order:
    pickup_lat, pickup_lon = pickup if pickup is not None else (lat + 0.001, lon + 0.001)
    return Order(
        order_id=oid,
        status=status,
        vendor_id=vendor,
        pickup_latitude=pickup_lat,
        pickup_longitude=pickup_lon,
        delivery_latitude=lat,
        delivery_longitude=lon,
        created_at=BASE_TIME + timedelta(minutes=created_offset_min),
        estimated_delivery_time=BASE_TIME + timedelta(minutes=30 + prep_offset_min),
        assigned_driver_id=driver_id,
    )


def make_driver(
    did: str,
    lat: float | None,
    lon: float | None,
    *,
    online: bool = True,
    active: bool = True,
    workload: int = 0,
    performance: DriverPerformance | None = None,
) -> Driver:
    return Driver(
        driver_id=did,
        is_online=online,
        is_active=active,
        latitude=lat,
        longitude=lon,
        workload_count=workload,
        performance=performance,
    )


def make_engine(orders=(), drivers=(), settings: Settings | None = None):
    store = InMemoryStore(orders=orders, drivers=drivers)
    events = InMemoryEventPublisher()
    clock = FixedClock()
    engine = build_engine(store, settings=settings or Settings(), events=events, clock=clock)
    return engine, store, events, clock
