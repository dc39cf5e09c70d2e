from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from stock_ledger.deps import config_dep, session_dep
from stock_ledger.main import app


@pytest.fixture
def client(session_factory, config, products, locations):
    def _session():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[session_dep] = _session
    app.dependency_overrides[config_dep] = lambda: config
    yield TestClient(app)
    app.dependency_overrides.clear()


def _receive(client, sku="WIDGET", quantity=20, unit_cost="3.00", location="MAIN", **extra):
    body = {"sku": sku, "location": location, "movement_type": "in", "quantity": quantity, "unit_cost": unit_cost}
    body.update(extra)
    return client.post("/movements", json=body, headers={"X-Actor-Id": "clerk"})


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
    assert resp.headers["X-Request-Id"]


def test_receive_and_read_stock(client):
    resp = _receive(client, reference_id="PO-1")

    assert resp.status_code == 200
    body = resp.json()
    assert body["duplicate"] is False
    assert body["movement"]["actor_id"] == "clerk"
    assert body["movement"]["reference_type"] == "purchase_order"
    assert body["stock_level"]["quantity_on_hand"] == 20

    again = _receive(client, reference_id="PO-1")
    assert again.json()["duplicate"] is True

    levels = client.get("/stock/WIDGET").json()
    assert [lvl["quantity_on_hand"] for lvl in levels] == [20]


def test_checkout_beyond_stock_is_conflict(client):
    _receive(client, quantity=2)
    resp = client.post(
        "/movements",
        json={"sku": "WIDGET", "location": "MAIN", "movement_type": "out", "quantity": 5},
    )

    assert resp.status_code == 409
    assert resp.json()["code"] == "NEGATIVE_STOCK"
    assert resp.json()["delta"] == -5


def test_body_validation_is_rejected(client):
    resp = client.post("/movements", json={"sku": "WIDGET", "movement_type": "in", "quantity": 0})
    assert resp.status_code == 422


def test_adjustment_validation_error_code(client):
    resp = client.post(
        "/adjustments",
        json={"sku": "WIDGET", "location": "MAIN", "quantity": 1, "direction": "sideways", "reason_code": "damage"},
    )

    assert resp.status_code == 422
    assert resp.json()["code"] == "VALIDATION_ERROR"
    assert resp.json()["field"] == "direction"


def test_unknown_product_and_location(client):
    assert client.get("/stock/NOPE").json()["code"] == "PRODUCT_NOT_FOUND"
    resp = _receive(client, location="NOWHERE")
    assert resp.status_code == 404
    assert resp.json()["code"] == "LOCATION_NOT_FOUND"


def test_bulk_adjustment_reports_failed_lines(client):
    _receive(client, quantity=5)
    resp = client.post(
        "/adjustments/bulk",
        json={
            "reference_id": "BULK-1",
            "lines": [
                {"sku": "WIDGET", "location": "MAIN", "quantity": 2, "direction": "decrease", "reason_code": "damage"},
                {"sku": "WIDGET", "location": "MAIN", "quantity": 9, "direction": "decrease", "reason_code": "theft"},
            ],
        },
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["applied"] == [1]
    assert [(f["line"], f["error_code"]) for f in body["failed"]] == [(2, "NEGATIVE_STOCK")]


def test_transfer_round_trip(client):
    _receive(client, quantity=10)
    resp = client.post(
        "/transfers",
        json={"sku": "WIDGET", "from_location": "MAIN", "to_location": "BACK", "quantity": 4, "reference_id": "T-1"},
    )

    assert resp.status_code == 200
    assert resp.json()["transfer"]["status"] == "destination_credited"
    assert resp.json()["source_level"]["quantity_on_hand"] == 6
    assert resp.json()["destination_level"]["quantity_on_hand"] == 4

    fetched = client.get("/transfers/T-1")
    assert fetched.status_code == 200
    assert fetched.json()["transfer"]["quantity"] == 4

    assert client.get("/transfers/T-404").status_code == 404


def test_stock_count_endpoint(client):
    _receive(client, quantity=10)
    resp = client.post(
        "/counts",
        json={"location": "MAIN", "reference_id": "CC-1", "lines": [{"sku": "WIDGET", "counted_quantity": 7}]},
    )

    assert resp.status_code == 200
    (line,) = resp.json()["lines"]
    assert (line["expected_quantity"], line["variance"]) == (10, -3)


def test_reserve_release_and_verify(client):
    _receive(client, quantity=10)

    reserved = client.post("/stock/WIDGET/reserve", json={"location": "MAIN", "quantity": 4})
    assert reserved.json()["quantity_available"] == 6

    too_much = client.post("/stock/WIDGET/release", json={"location": "MAIN", "quantity": 9})
    assert too_much.status_code == 422

    report = client.post("/stock/WIDGET/verify", params={"location": "MAIN"}).json()
    assert report["in_sync"] is True
    assert report["ledger_quantity"] == 10


def test_stock_list_and_history(client):
    _receive(client, quantity=3, reference_id="PO-A")
    _receive(client, sku="GADGET", quantity=8, unit_cost="4.00", reference_id="PO-B")

    low = client.get("/stock", params={"status": "low_stock"}).json()
    assert [row["sku"] for row in low] == ["WIDGET"]
    assert client.get("/stock", params={"sort": "sideways"}).status_code == 422

    page = client.get("/movements", params={"sku": "GADGET", "limit": 1}).json()
    assert page["total"] == 1
    assert page["items"][0]["reference_id"] == "PO-B"
    assert client.get("/movements", params={"limit": 0}).status_code == 422


def test_reports(client):
    _receive(client, quantity=20, unit_cost="3.00", batch_number="LOT-1")

    valuation = client.get("/reports/valuation").json()
    assert valuation["summary"]["total_stock_value"] == "60.00"
    assert valuation["summary"]["total_potential_profit"] == "40.00"

    aging = client.get("/reports/aging").json()
    assert aging["rows"][0]["batches"][0]["batch_number"] == "LOT-1"
    assert aging["fresh_count"] == 1

    stats = client.get("/reports/movements").json()
    assert stats["total_movements"] == 1


def test_catalog_endpoints(client):
    created = client.post("/products", json={"sku": "BOLT", "name": "Bolt", "selling_price": "0.25"})
    assert created.status_code == 201
    assert client.post("/products", json={"sku": "BOLT", "name": "Bolt"}).status_code == 409
    assert [p["sku"] for p in client.get("/products", params={"q": "bol"}).json()] == ["BOLT"]

    loc = client.post("/locations", json={"code": "VAN", "name": "Van"})
    assert loc.status_code == 201
    assert client.post("/locations", json={"code": "global", "name": "Nope"}).status_code == 422
    assert "VAN" in [row["code"] for row in client.get("/locations").json()]
