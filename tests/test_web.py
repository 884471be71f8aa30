# tests/test_web.py
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from mes_ledger.errors import PersistenceUnavailable
from mes_ledger.repository import InMemoryRecordStore, RepositorySet
from mes_ledger.services import MESService
from mes_ledger.web.app import create_app


@pytest.fixture
def client(mes, settings):
    return TestClient(create_app(settings=settings, service=mes))


def _data(response, status=200):
    assert response.status_code == status, response.text
    body = response.json()
    assert body["success"] is True
    return body["data"]


def _error(response, status, kind):
    assert response.status_code == status, response.text
    body = response.json()
    assert body["success"] is False
    assert body["error"] == kind
    assert body["detail"]
    return body


def test_health(client):
    assert _data(client.get("/health")) == {"status": "ok"}


def test_production_flow(client):
    order = _data(
        client.post("/work-orders", json={"quantity": 36, "product_model": "R0-300"}), 201
    )
    assert order["status"] == "draft"

    dispatch_ids = []
    for station in ("S1", "S2"):
        dispatch = _data(
            client.post(
                "/dispatches",
                json={"work_order_id": order["id"], "quantity": 18, "station_name": station},
            ),
            201,
        )
        dispatch_ids.append(dispatch["id"])
    _data(client.post(f"/dispatches/{dispatch_ids[0]}/start"))

    report = _data(
        client.post(
            "/reports",
            json={
                "dispatch_id": dispatch_ids[0],
                "good_qty": 17,
                "ng_qty": 1,
                "has_abnormal": True,
                "ng_details": [{"reason_name": "Crack", "quantity": 1, "barcodes": ["E9"]}],
            },
        ),
        201,
    )
    _data(client.post("/reports", json={"dispatch_id": dispatch_ids[1], "good_qty": 18}), 201)

    order = _data(client.get(f"/work-orders/{order['id']}"))
    assert (order["completed_qty"], order["good_qty"], order["ng_qty"]) == (36, 35, 1)
    assert order["status"] == "completed"

    details = _data(client.get(f"/reports/{report['id']}/ng-details"))
    assert details[0]["barcodes"] == ["E9"]
    assert len(_data(client.get("/reports", params={"work_order_id": order["id"]}))) == 2
    assert len(_data(client.get("/dispatches", params={"work_order_id": order["id"]}))) == 2

    reconciled = _data(client.post(f"/work-orders/{order['id']}/reconcile"))
    assert reconciled["completed_qty"] == 36


def test_work_order_patch_and_delete(client):
    order = _data(client.post("/work-orders", json={"quantity": 5}), 201)
    patched = _data(client.patch(f"/work-orders/{order['id']}", json={"priority": "high"}))
    assert patched["priority"] == "high"

    cancelled = _data(client.delete(f"/work-orders/{order['id']}"))
    assert cancelled["status"] == "cancelled"
    assert _data(client.get("/work-orders")) == []
    assert len(_data(client.get("/work-orders", params={"include_cancelled": True}))) == 1


def test_error_mapping(client):
    _error(client.get("/work-orders/missing"), 404, "not_found")

    order = _data(client.post("/work-orders", json={"quantity": 5}), 201)
    child = _data(
        client.post(
            "/work-orders",
            json={"quantity": 1, "order_type": "rework", "source_work_order_id": order["id"]},
        ),
        201,
    )
    assert child["rework_count"] == 1
    _error(
        client.post(
            "/work-orders",
            json={"quantity": 1, "order_type": "rework", "source_work_order_id": child["id"]},
        ),
        409,
        "rework_limit_exceeded",
    )

    dispatch = _data(
        client.post("/dispatches", json={"work_order_id": order["id"], "quantity": 5}), 201
    )
    _error(
        client.post("/reports", json={"dispatch_id": dispatch["id"], "good_qty": 0}),
        422,
        "validation_error",
    )


def test_request_body_errors_use_the_envelope(client):
    body = _error(
        client.post("/wms/inbound", json={"location_code": "A1"}), 422, "validation_error"
    )
    assert "barcode" in body["detail"]
    assert [problem["field"] for problem in body["errors"]] == ["body.barcode"]

    _error(
        client.post("/work-orders", json={"quantity": 3, "order_type": "bogus"}),
        422,
        "validation_error",
    )


def test_persistence_outage_maps_to_503(settings):
    class DownStore(InMemoryRecordStore):
        def list(self, collection):
            raise PersistenceUnavailable("database is locked")

    service = MESService(RepositorySet(DownStore(), retry_delay=0), settings=settings)
    client = TestClient(create_app(settings=settings, service=service))
    _error(client.get("/work-orders"), 503, "persistence_unavailable")


def test_quality_endpoints(client, work_order):
    info = _data(client.get(f"/work-orders/{work_order.id}/outgassing-sample-info"))
    assert info["required_samples"] == 2
    assert info["next_batch_range"] == [1, 18]

    test = _data(
        client.post(
            "/outgassing-tests",
            json={"work_order_id": work_order.id, "result": "PASS", "test_value": 0.3},
        ),
        201,
    )
    assert test["sample_index"] == 1
    assert len(_data(client.get("/outgassing-tests", params={"work_order_id": work_order.id}))) == 1

    summary = _data(
        client.post(
            f"/work-orders/{work_order.id}/aoi-import",
            json={"csv_text": "serial_number,result\nA,pass\nA,damage\nB,pass\n"},
        )
    )
    assert (summary["total_rows"], summary["unique_serials"], summary["success"]) == (3, 2, 2)
    inspections = _data(client.get("/aoi-inspections"))
    assert sorted(i["result"] for i in inspections) == ["NG", "PASS"]

    _error(
        client.post(f"/work-orders/{work_order.id}/aoi-import", json={}),
        422,
        "validation_error",
    )


def test_warehouse_endpoints(client):
    item = _data(
        client.post(
            "/wms/inbound", json={"location_code": "A-01", "barcode": "PAL-1", "quantity": 4}
        ),
        201,
    )
    _data(client.post("/wms/transfer", json={"inventory_id": item["id"], "to_location": "B-01"}))

    take = _data(
        client.post(
            "/wms/stock-takes",
            json={
                "location_code": "B-01",
                "operator_name": "Huang",
                "details": [{"inventory_id": item["id"], "actual_qty": 3}],
            },
        ),
        201,
    )
    assert take["stock_take"]["adjusted_items"] == 1
    details = _data(client.get(f"/wms/stock-takes/{take['stock_take']['id']}/details"))
    assert details[0]["diff_qty"] == -1

    summary = _data(client.get("/wms/locations/summary"))
    assert summary == [{"location_code": "B-01", "item_count": 1, "total_qty": 3}]

    movement = _data(client.post("/wms/outbound", json={"inventory_id": item["id"]}))
    assert movement["to_location"] == "EXTERNAL"
    kinds = [m["movement_type"] for m in _data(client.get("/wms/movements"))]
    assert kinds == ["outbound", "adjustment", "transfer", "inbound"]
    assert _data(client.get("/wms/inventory")) == []

    _error(client.post("/wms/outbound", json={"inventory_id": item["id"]}), 404, "not_found")


def test_label_endpoints(client):
    label = _data(client.post("/labels", json={"r0_code": "R0-1", "current_epc": "E1"}), 201)
    updated = _data(
        client.patch(
            f"/labels/{label['id']}",
            json={"current_epc": "E2", "history_entry": {"action": "rewrite", "epc": "E2"}},
        )
    )
    assert updated["history"][0]["epc"] == "E2"

    result = _data(client.post("/labels/sync", json={"labels": [{"r0_code": "R0-2"}]}))
    assert result == {"created": 1, "updated": 0, "total": 1}
    assert len(_data(client.get("/labels"))) == 2


def test_epc_history_endpoints(client, work_order):
    entry = _data(
        client.post(
            "/epc-history",
            json={"work_order_id": work_order.id, "old_epc": "E1", "new_epc": "E2"},
        ),
        201,
    )
    assert entry["order_number"] == work_order.order_number

    found = _data(client.get("/epc-history/check", params={"epc": "E2"}))
    assert found["id"] == entry["id"]
    assert _data(client.get("/epc-history/check", params={"epc": "E9"})) is None
    listed = _data(client.get("/epc-history", params={"work_order_id": work_order.id}))
    assert [e["id"] for e in listed] == [entry["id"]]
    _error(
        client.post("/epc-history", json={"work_order_id": "missing", "new_epc": "E3"}),
        404,
        "not_found",
    )


def test_snapshot_endpoint(client, work_order):
    snapshot = _data(client.get("/snapshot"))
    assert [o["id"] for o in snapshot["work_orders"]] == [work_order.id]


def test_app_on_sqlite(tmp_path, settings):
    app = create_app(str(tmp_path / "web.sqlite3"), settings=settings)
    with TestClient(app) as client:
        order = _data(client.post("/work-orders", json={"quantity": 2}), 201)
        assert _data(client.get(f"/work-orders/{order['id']}"))["quantity"] == 2
