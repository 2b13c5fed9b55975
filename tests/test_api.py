import pytest
from fastapi.testclient import TestClient

from src.batching.main import create_app
from tests.helpers import make_driver, make_engine, make_order


@pytest.fixture
def engine_and_store():
    engine, store, _, _ = make_engine(
        orders=[
            make_order("O1", 3.10, 101.60),
            make_order("O2", 3.105, 101.605),
            make_order("O3", 3.30, 101.80, pickup=(3.30, 101.80)),
        ],
        drivers=[make_driver("D1", 3.1025, 101.6025)],
    )
    return engine, store


@pytest.fixture
def api_client(engine_and_store, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    from src.batching.api.routes import batches, drivers, workload

    engine, _ = engine_and_store
    for module in (batches, drivers, workload):
        monkeypatch.setattr(module, "get_engine", lambda: engine)
    return TestClient(create_app())


def _create(client: TestClient) -> dict:
    response = client.post("/api/batches", json={"order_ids": ["O1", "O2"]})
    assert response.status_code == 201, response.text
    return response.json()["batch"]


def test_health(api_client: TestClient):
    assert api_client.get("/api/health").json() == {"status": "ok"}


def test_create_and_fetch_batch(api_client: TestClient):
    batch = _create(api_client)

    response = api_client.get(f"/api/batches/{batch['batch_id']}")

    assert response.status_code == 200
    payload = response.json()
    assert payload["batch"]["status"] == "planned"
    assert payload["batch"]["driver_id"] == "D1"
    assert [row["pickup_sequence"] for row in payload["orders"]] == [1, 2]


def test_incompatible_request_maps_to_422(api_client: TestClient):
    response = api_client.post("/api/batches", json={"order_ids": ["O1", "O3"]})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["error"] == "incompatible"
    assert "km" in detail["message"]


def test_request_schema_is_validated(api_client: TestClient):
    response = api_client.post("/api/batches", json={"order_ids": []})
    assert response.status_code == 422


def test_unknown_batch_maps_to_400(api_client: TestClient):
    response = api_client.get("/api/batches/missing")
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "validation"


def test_lifecycle_over_http(api_client: TestClient):
    batch_id = _create(api_client)["batch_id"]

    assert api_client.post(f"/api/batches/{batch_id}/start").json()["batch"]["status"] == "active"
    early = api_client.post(f"/api/batches/{batch_id}/complete")
    assert early.status_code == 409
    assert early.json()["detail"]["message"] == "Cannot complete batch: 2 orders not yet delivered"

    for order_id in ("O1", "O2"):
        response = api_client.post(
            f"/api/batches/{batch_id}/orders/{order_id}/delivery", json={"status": "completed"}
        )
        assert response.status_code == 200
    assert response.json()["batch_completed"] is True
    assert api_client.get("/api/drivers/D1/batch").json()["batch"] is None


def test_cancel_requires_reason(api_client: TestClient):
    batch_id = _create(api_client)["batch_id"]

    assert api_client.post(f"/api/batches/{batch_id}/cancel", json={}).status_code == 422
    response = api_client.post(f"/api/batches/{batch_id}/cancel", json={"reason": "vendor closed"})
    assert response.status_code == 200
    assert response.json()["batch"]["metadata"]["cancellation_reason"] == "vendor closed"


def test_remove_and_add_order(api_client: TestClient, engine_and_store):
    _, store = engine_and_store
    batch_id = _create(api_client)["batch_id"]

    removed = api_client.delete(f"/api/batches/{batch_id}/orders/O1")
    assert removed.status_code == 200
    assert store.get_order("O1").status.value == "ready"

    added = api_client.post(f"/api/batches/{batch_id}/orders", json={"order_id": "O1"})
    assert added.status_code == 200
    assert added.json()["metadata"]["order_count"] == 2


def test_active_batch_for_driver(api_client: TestClient):
    batch_id = _create(api_client)["batch_id"]

    payload = api_client.get("/api/drivers/D1/batch").json()

    assert payload["driver_id"] == "D1"
    assert payload["batch"]["batch_id"] == batch_id


def test_busy_driver_maps_to_404(api_client: TestClient):
    _create(api_client)

    response = api_client.post("/api/batches", json={"order_ids": ["O3"]})

    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "no_candidate"


def test_sweep_and_workload(api_client: TestClient):
    sweep = api_client.post("/api/batches/sweep", json={})
    assert sweep.status_code == 200
    payload = sweep.json()
    assert payload["created"] == 1
    assert payload["groups"][0]["order_ids"] == ["O1", "O2"]
    assert payload["groups"][0]["batch_id"]

    workload = api_client.get("/api/workload").json()
    assert {driver["driver_id"] for driver in workload["drivers"]} == {"D1"}

    rebalance = api_client.post("/api/workload/rebalance")
    assert rebalance.status_code == 200
    assert rebalance.json()["executed"] == []
