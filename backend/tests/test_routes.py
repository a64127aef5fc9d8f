"""
HTTP tests: status codes and payload shapes of the JSON API.
"""

from sqlalchemy.exc import OperationalError

from fulfillment.extensions import db
from fulfillment.services import packing_service, stock_ledger


def test_health(client, db_session):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json()["checks"]["database"]["status"] == "healthy"


class TestProductRoutes:
    def test_create_and_duplicate(self, client, db_session):
        response = client.post("/api/products", json={
            "name": "Kalamkari Saree", "price_cents": 450000, "quantity": 2,
        })
        assert response.status_code == 201
        product = response.get_json()["product"]
        assert product["barcode"].startswith("KK")

        duplicate = client.post("/api/products", json={"name": "kalamkari saree", "price_cents": 1})
        assert duplicate.status_code == 409
        body = duplicate.get_json()
        assert body["duplicate"]["duplicate_type"] == "name"
        assert body["duplicate"]["product"]["id"] == product["id"]

    def test_create_rejects_unknown_field(self, client, db_session):
        response = client.post("/api/products", json={"name": "X", "price_cents": 1, "color": "red"})
        assert response.status_code == 400

    def test_merge_then_decrement(self, client, make_product):
        product = make_product(quantity=1)

        merged = client.post(f"/api/products/{product.id}/stock/increment", json={"amount": 2, "merge": True})
        assert merged.get_json()["quantity"] == 3

        short = client.post(f"/api/products/{product.id}/stock/decrement", json={"amount": 4})
        assert short.status_code == 409
        assert short.get_json()["details"]["available"] == 3

        movements = client.get(f"/api/products/{product.id}/movements").get_json()
        assert movements["count"] == 1

    def test_missing_product(self, client, db_session):
        assert client.get("/api/products/9999").status_code == 404


class TestCheckoutRoutes:
    def test_place_order_then_replay(self, client, make_product, customer, cart_line):
        product = make_product(quantity=2)
        body = {"cart": [cart_line(product, 2)], "customer": customer, "payment_reference": "pay_http"}

        created = client.post("/api/checkout/orders", json=body)
        assert created.status_code == 201
        assert created.get_json()["reconciliation_required"] is False

        replay = client.post("/api/checkout/orders", json=body)
        assert replay.status_code == 200
        assert replay.get_json()["created"] is False
        assert stock_ledger.get_quantity(product.id) == 0

    def test_short_stock_is_conflict(self, client, make_product, customer, cart_line):
        product = make_product(quantity=1)
        response = client.post("/api/checkout/validate", json={"cart": [cart_line(product, 3)]})
        assert response.status_code == 409

    def test_empty_cart_is_bad_request(self, client, db_session, customer):
        response = client.post("/api/checkout/orders", json={
            "cart": [], "customer": customer, "payment_reference": "pay_empty",
        })
        assert response.status_code == 400


class TestOrderAndPackingRoutes:
    def test_full_packing_flow(self, client, make_product, make_order):
        saree = make_product(barcode="A1")
        stole = make_product(barcode="B1")
        order = make_order([(saree, 2), (stole, 1)], status="paid")

        opened = client.post(f"/api/orders/{order.id}/packing", json={"admin_email": "admin@example.com"})
        assert opened.status_code == 200
        session_id = opened.get_json()["session"]["id"]
        assert opened.get_json()["progress"]["next_item_id"] == str(saree.id)

        outcomes = []
        for code in ("A1", "A1", "B1", "A1", "Z9"):
            scan = client.post(f"/api/packing/sessions/{session_id}/scans", json={"barcode": code})
            assert scan.status_code == 200
            outcomes.append(scan.get_json()["result"]["outcome"])
        assert outcomes == ["accepted", "accepted", "accepted", "already_complete", "unknown_item"]

        packed = client.post(f"/api/orders/{order.id}/transition", json={
            "from_status": "in_packing", "to_status": "packed", "payload": {"confirm": True},
        })
        assert packed.status_code == 200
        assert packed.get_json()["order"]["status"] == "packed"

        session = client.get(f"/api/packing/sessions/{session_id}").get_json()["session"]
        assert session["status"] == "completed"

    def test_illegal_transition_is_conflict(self, client, make_product, make_order):
        order = make_order([(make_product(), 1)], status="paid")
        response = client.post(f"/api/orders/{order.id}/transition", json={"to_status": "delivered"})
        assert response.status_code == 409
        assert response.get_json()["details"]["current_status"] == "paid"

    def test_missing_precondition_is_bad_request(self, client, make_product, make_order):
        order = make_order([(make_product(), 1)], status="paid")
        response = client.post(f"/api/orders/{order.id}/transition", json={"to_status": "cancelled"})
        assert response.status_code == 400

    def test_non_object_payload_is_bad_request(self, client, make_product, make_order):
        order = make_order([(make_product(), 1)], status="paid")
        response = client.post(f"/api/orders/{order.id}/transition", json={
            "to_status": "cancelled", "payload": ["oops"],
        })
        assert response.status_code == 400

    def test_non_object_scan_progress_is_bad_request(self, client, make_product, make_order):
        order = make_order([(make_product(), 1)], status="in_packing")
        response = client.post(f"/api/orders/{order.id}/transition", json={
            "from_status": "in_packing",
            "to_status": "packed",
            "payload": {"confirm": True, "scan_progress": [1]},
        })
        assert response.status_code == 400

    def test_scan_echoing_previous_progress_survives_failed_save(self, client, make_product, make_order, monkeypatch):
        product = make_product(barcode="A1")
        order = make_order([(product, 2)], status="paid")
        session = client.post(f"/api/orders/{order.id}/packing").get_json()["session"]

        def failing_commit(self):
            raise OperationalError("UPDATE packing_sessions", {}, Exception("database is locked"))

        monkeypatch.setattr(type(db.session()), "commit", failing_commit)
        first = client.post(f"/api/packing/sessions/{session['id']}/scans", json={"barcode": "A1"})
        monkeypatch.undo()
        assert first.status_code == 200
        first_body = first.get_json()
        assert first_body["saved"] is False
        assert first_body["scan_progress"] == {str(product.id): 1}

        # A worker that never saw the failure only has the client's echo to go on
        packing_service._unsaved_progress.clear()
        second = client.post(f"/api/packing/sessions/{session['id']}/scans", json={
            "barcode": "A1",
            "scan_progress": first_body["scan_progress"],
            "expected_version": first_body["version_id"],
        })
        assert second.status_code == 200
        body = second.get_json()
        assert body["result"]["scanned"] == 2
        assert body["saved"] is True
        assert body["progress"]["is_fully_scanned"] is True

    def test_scan_with_non_object_progress_is_bad_request(self, client, make_product, make_order):
        order = make_order([(make_product(barcode="A1"), 1)], status="paid")
        session = client.post(f"/api/orders/{order.id}/packing").get_json()["session"]
        response = client.post(f"/api/packing/sessions/{session['id']}/scans", json={
            "barcode": "A1", "scan_progress": "A1=1",
        })
        assert response.status_code == 400

    def test_order_detail_lists_allowed_transitions(self, client, make_product, make_order):
        order = make_order([(make_product(), 1)], status="packed")
        body = client.get(f"/api/orders/{order.id}").get_json()
        assert body["allowed_transitions"] == ["shipped", "cancelled"]

    def test_list_and_stats(self, client, make_product, make_order):
        make_order([(make_product(), 1)], status="paid")
        assert client.get("/api/orders?status=all").get_json()["count"] == 1
        assert client.get("/api/orders?status=bogus").status_code == 400
        assert client.get("/api/orders/stats").get_json()["stats"]["by_status"]["paid"] == 1

    def test_stale_progress_version_is_conflict(self, client, make_product, make_order):
        product = make_product()
        order = make_order([(product, 2)], status="paid")
        session = client.post(f"/api/orders/{order.id}/packing").get_json()["session"]

        key = str(product.id)
        ok = client.put(f"/api/packing/sessions/{session['id']}/progress", json={
            "scan_progress": {key: 1}, "expected_version": session["version_id"],
        })
        assert ok.status_code == 200
        assert ok.get_json()["saved"] is True

        stale = client.put(f"/api/packing/sessions/{session['id']}/progress", json={
            "scan_progress": {key: 2}, "expected_version": session["version_id"],
        })
        assert stale.status_code == 409


def test_cors_headers_only_for_allowed_origins(client, db_session):
    allowed = client.get("/health", headers={"Origin": "http://localhost:5173"})
    assert allowed.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"

    other = client.get("/health", headers={"Origin": "http://evil.example"})
    assert "Access-Control-Allow-Origin" not in other.headers
