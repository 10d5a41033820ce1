# Overview: Pytest coverage for the HTTP API; request validation, error envelopes and streaming export.

import json

import pytest

from raffle_engine.services import reservation_service


@pytest.fixture
def active_raffle(client, db_session):
    """Create and activate a 50 ticket raffle through the API."""
    response = client.post("/api/raffles", json={
        "title": "API raffle",
        "total_tickets": 50,
        "ticket_price_cents": 200,
        "number_prefix": "N-",
        "packages": {"3": 500},
    })
    assert response.status_code == 201
    raffle_id = response.get_json()["raffle"]["id"]

    response = client.post(f"/api/raffles/{raffle_id}/activate")
    assert response.status_code == 200
    return raffle_id


class TestRaffleSetup:
    def test_create_returns_generation_progress(self, client, db_session):
        response = client.post("/api/raffles", json={"title": "Small", "total_tickets": 10})
        data = response.get_json()

        assert response.status_code == 201
        assert data["raffle"]["status"] == "draft"
        assert data["raffle"]["numbering"]["pad_width"] == 3
        assert data["generation"]["status"] == "completed"
        assert data["generation"]["percent"] == 100.0

    def test_missing_fields(self, client, db_session):
        response = client.post("/api/raffles", json={"title": "No total"})
        assert response.status_code == 400
        assert "total_tickets" in response.get_json()["error"]

    def test_unknown_field_rejected(self, client, db_session):
        response = client.post("/api/raffles", json={"title": "X", "total_tickets": 10, "status": "active"})
        assert response.status_code == 400

    def test_decimal_total_rejected(self, client, db_session):
        response = client.post("/api/raffles", json={"title": "X", "total_tickets": 10.5})
        assert response.status_code == 400

    def test_invalid_numbering(self, client, db_session):
        response = client.post("/api/raffles", json={"title": "X", "total_tickets": 1000, "number_pad_width": 2})
        assert response.status_code == 400
        assert response.get_json()["code"] == "INVALID_NUMBERING"

    def test_locked_field_returns_422(self, client, active_raffle):
        response = client.patch(f"/api/raffles/{active_raffle}", json={"total_tickets": 60})
        assert response.status_code == 422
        assert response.get_json()["code"] == "STALE_CONFIG_CHANGE"

    def test_unknown_raffle(self, client, db_session):
        response = client.get("/api/raffles/999")
        assert response.status_code == 404
        assert response.get_json()["code"] == "NOT_FOUND"

    def test_unknown_action(self, client, active_raffle):
        response = client.post(f"/api/raffles/{active_raffle}/explode")
        assert response.status_code == 404

    def test_price_quote(self, client, active_raffle):
        assert client.get(f"/api/raffles/{active_raffle}/price?quantity=3").get_json()["total_cents"] == 500
        assert client.get(f"/api/raffles/{active_raffle}/price?quantity=4").get_json()["total_cents"] == 800


class TestReservationFlow:
    def test_reserve_confirm_and_availability(self, client, active_raffle):
        response = client.post(f"/api/raffles/{active_raffle}/reserve", json={
            "count": 3,
            "reference_code": "WEB-1",
            "buyer_name": "Ana",
            "buyer_email": "ana@example.com",
        })
        assert response.status_code == 201
        order = response.get_json()["order"]
        assert order["ranges"] == [[0, 2]]
        assert order["order_total_cents"] == 500

        response = client.post(f"/api/raffles/{active_raffle}/orders/confirm", json={"reference_code": "WEB-1"})
        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "sold"

        counts = client.get(f"/api/raffles/{active_raffle}/availability").get_json()
        assert counts["sold"] == 3
        assert counts["available"] == 47

    def test_insufficient_inventory_is_retryable_conflict(self, client, active_raffle):
        response = client.post(f"/api/raffles/{active_raffle}/reserve", json={"count": 51, "reference_code": "BIG"})
        assert response.status_code == 409
        body = response.get_json()
        assert body["code"] == "INSUFFICIENT_INVENTORY"
        assert body["retryable"] is True

    def test_reserve_numbers_conflict(self, client, active_raffle):
        client.post(f"/api/raffles/{active_raffle}/reserve-numbers", json={
            "numbers": ["N-005"], "reference_code": "A",
        })
        response = client.post(f"/api/raffles/{active_raffle}/reserve-numbers", json={
            "numbers": ["N-004", "N-005"], "reference_code": "B",
        })
        assert response.status_code == 409
        assert "N-005" in response.get_json()["error"]

    def test_reserve_requires_reference(self, client, active_raffle):
        response = client.post(f"/api/raffles/{active_raffle}/reserve", json={"count": 1})
        assert response.status_code == 400

    def test_random_tickets(self, client, active_raffle):
        response = client.get(f"/api/raffles/{active_raffle}/random-tickets?quantity=4")
        tickets = response.get_json()["tickets"]
        assert len({t["index"] for t in tickets}) == 4
        assert all(t["display_number"].startswith("N-") for t in tickets)

    def test_order_endpoints(self, client, active_raffle):
        order = client.post(f"/api/raffles/{active_raffle}/reserve", json={
            "count": 4, "reference_code": "OPS",
        }).get_json()["order"]

        response = client.post(f"/api/orders/{order['id']}/release", json={"indices": [3]})
        assert response.get_json()["order"]["ticket_count"] == 3

        response = client.post(f"/api/orders/{order['id']}/proof", json={"proof_ref": "s3://p/1"})
        assert response.get_json()["order"]["payment_proof_ref"] == "s3://p/1"

        response = client.post(f"/api/orders/{order['id']}/confirm", json={})
        assert response.get_json()["order"]["status"] == "sold"

        response = client.post(f"/api/orders/{order['id']}/cancel", json={})
        assert response.status_code == 409
        assert response.get_json()["code"] == "INVALID_TRANSITION"

        response = client.post(f"/api/orders/{order['id']}/cancel", json={"force": True, "reason": "refund"})
        assert response.get_json()["order"]["status"] == "canceled"

    def test_get_order_by_reference(self, client, active_raffle):
        client.post(f"/api/raffles/{active_raffle}/reserve", json={"count": 1, "reference_code": "LOOK"})
        response = client.get(f"/api/raffles/{active_raffle}/orders/LOOK")
        assert response.get_json()["order"]["ticket_count"] == 1
        assert client.get(f"/api/raffles/{active_raffle}/orders/NOPE").status_code == 404


class TestExportAndDraw:
    def test_ndjson_export(self, client, active_raffle):
        client.post(f"/api/raffles/{active_raffle}/reserve", json={"count": 2, "reference_code": "E"})
        client.post(f"/api/raffles/{active_raffle}/block", json={"start_index": 10, "end_index": 12})

        response = client.get(f"/api/raffles/{active_raffle}/tickets/export")
        assert response.mimetype == "application/x-ndjson"
        rows = [json.loads(line) for line in response.get_data(as_text=True).splitlines()]
        assert [r["index"] for r in rows] == list(range(50))
        assert rows[0]["display_number"] == "N-001"
        assert rows[0]["status"] == "reserved"
        assert rows[0]["reference_code"] == "E"
        assert rows[11]["status"] == "canceled"

        response = client.get(f"/api/raffles/{active_raffle}/tickets/export?status=reserved")
        lines = response.get_data(as_text=True).splitlines()
        assert len(lines) == 2

    def test_export_bad_status(self, client, active_raffle):
        response = client.get(f"/api/raffles/{active_raffle}/tickets/export?status=lost")
        assert response.status_code == 400

    def test_draw_without_sales(self, client, active_raffle):
        response = client.post(f"/api/raffles/{active_raffle}/draw", json={})
        assert response.status_code == 409
        assert response.get_json()["code"] == "NO_SOLD_TICKETS"

    def test_draw_and_list(self, client, active_raffle):
        order = reservation_service.reserve(active_raffle, 2, "WIN")
        reservation_service.confirm_sold(order.id)

        response = client.post(f"/api/raffles/{active_raffle}/draw", json={"prize_name": "TV", "complete": True})
        assert response.status_code == 201
        draw = response.get_json()["draw"]
        assert draw["ticket_number"] in ("N-001", "N-002")
        assert draw["sold_count"] == 2

        draws = client.get(f"/api/raffles/{active_raffle}/draws").get_json()["draws"]
        assert [d["prize_name"] for d in draws] == ["TV"]
        assert client.get(f"/api/raffles/{active_raffle}").get_json()["raffle"]["status"] == "completed"

    def test_archive_too_early(self, client, active_raffle):
        client.post(f"/api/raffles/{active_raffle}/complete")
        response = client.post(f"/api/raffles/{active_raffle}/archive")
        assert response.status_code == 409
        assert response.get_json()["code"] == "ARCHIVE_PRECONDITION_FAILED"


class TestEventsAndHealth:
    def test_events_polling(self, client, active_raffle):
        client.post(f"/api/raffles/{active_raffle}/reserve", json={"count": 1, "reference_code": "EV"})
        client.post(f"/api/raffles/{active_raffle}/orders/confirm", json={"reference_code": "EV"})

        page = client.get("/api/events?limit=1").get_json()
        assert len(page["events"]) == 1
        rest = client.get(f"/api/events?after_id={page['last_id']}").get_json()
        types = [e["event_type"] for e in page["events"] + rest["events"]]
        assert "ORDER_RESERVED" in types
        assert "ORDER_SOLD" in types

        sold = client.get("/api/events?event_type=ORDER_SOLD").get_json()["events"]
        assert [e["payload"]["reference_code"] for e in sold] == ["EV"]

    def test_events_bad_type(self, client, db_session):
        assert client.get("/api/events?event_type=NOPE").status_code == 400

    def test_health(self, client, db_session):
        response = client.get("/health")
        body = response.get_json()
        assert response.status_code == 200
        assert body["status"] == "healthy"
        assert body["checks"]["generation"]["jobs"]["failed"] == 0
