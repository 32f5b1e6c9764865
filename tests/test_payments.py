import re

import pytest

from database import Store
from errors import InternalError


@pytest.fixture
def order(customer, make_product, place_order):
    return place_order(customer, (make_product(price=500, stock=5), 2)).json()


@pytest.fixture
def intent(client, customer, order):
    r = client.post("/api/payments/create-intent", json={"orderId": order["_id"], "phoneNumber": "+254700000000"},
                    headers=customer["headers"])
    assert r.status_code == 200, r.text
    return r.json()


def test_create_intent_records_pending_payment(db, pesapal, customer, order, intent):
    assert intent["paymentUrl"].startswith("https://pay.pesapal.test/")
    payment = db["payment"].find_one()
    assert str(payment["_id"]) == intent["paymentId"]
    assert payment["status"] == "pending"
    assert payment["amount"] == 1000
    assert payment["order_id"] == order["_id"]
    assert payment["payment_intent_id"] == "trk-1"

    token_req, submit_req = pesapal.requests
    assert token_req.url.path == "/v3/api/Auth/RequestToken"
    assert submit_req.headers["Authorization"] == "Bearer tok-123"
    sent = pesapal.submissions()[0]
    assert sent["amount"] == 1000
    assert sent["currency"] == "KES"
    assert sent["callback_url"] == "https://shop.test/api/payments/callback"
    assert re.fullmatch(rf"ORDER-{order['_id']}-\d+", sent["id"])
    assert sent["billing_address"]["email_address"] == customer["email"]
    assert sent["billing_address"]["phone_number"] == "+254700000000"
    assert payment["merchant_reference"] == sent["id"]


def test_each_call_creates_a_payment(client, db, customer, order, intent):
    r = client.post("/api/payments/create-intent", json={"orderId": order["_id"]}, headers=customer["headers"])
    assert r.status_code == 200
    assert db["payment"].count_documents({"order_id": order["_id"]}) == 2


def test_create_intent_for_someone_elses_order(client, db, pesapal, other_customer, order):
    r = client.post("/api/payments/create-intent", json={"orderId": order["_id"]}, headers=other_customer["headers"])

    assert r.status_code == 404
    assert r.json() == {"error": "Order not found"}
    assert pesapal.requests == []
    assert db["payment"].count_documents({}) == 0


@pytest.mark.parametrize("failure", ["fail_token", "fail_submit"])
def test_gateway_failure_is_upstream_error(client, db, pesapal, customer, order, failure):
    setattr(pesapal, failure, True)

    r = client.post("/api/payments/create-intent", json={"orderId": order["_id"]}, headers=customer["headers"])

    assert r.status_code == 502
    assert r.json() == {"error": "Failed to create payment intent"}
    assert db["payment"].count_documents({}) == 0


def test_completed_callback_marks_order_paid(client, db, customer, order, intent, send_callback):
    r = send_callback({"orderTrackingId": "trk-1", "status": "COMPLETED"})

    assert r.status_code == 200
    assert r.json() == {"message": "Payment status updated", "changed": True}
    assert db["payment"].find_one()["status"] == "completed"
    assert client.get(f"/api/orders/{order['_id']}", headers=customer["headers"]).json()["status"] == "paid"


def test_repeated_completed_callback_is_a_no_op(client, db, customer, order, intent, send_callback):
    send_callback({"orderTrackingId": "trk-1", "status": "COMPLETED"})
    updated_at = db["payment"].find_one()["updated_at"]

    r = send_callback({"orderTrackingId": "trk-1", "status": "completed"})

    assert r.status_code == 200
    assert r.json()["changed"] is False
    assert db["payment"].find_one()["updated_at"] == updated_at
    assert client.get(f"/api/orders/{order['_id']}", headers=customer["headers"]).json()["status"] == "paid"


def test_redelivered_completion_repairs_a_lost_order_write(client, db, monkeypatch, customer, order, intent,
                                                          send_callback):
    original = Store.update_document
    calls = {"order": 0}

    def flaky(self, collection_name, _id, update_data, where=None):
        if collection_name == "order":
            calls["order"] += 1
            if calls["order"] == 1:
                raise InternalError("write lost")
        return original(self, collection_name, _id, update_data, where=where)

    monkeypatch.setattr(Store, "update_document", flaky)

    r = send_callback({"orderTrackingId": "trk-1", "status": "COMPLETED"})
    assert r.status_code == 500
    assert db["payment"].find_one()["status"] == "completed"
    assert db["order"].find_one()["status"] == "pending"

    r = send_callback({"orderTrackingId": "trk-1", "status": "COMPLETED"})
    assert r.status_code == 200
    assert r.json()["changed"] is False
    assert client.get(f"/api/orders/{order['_id']}", headers=customer["headers"]).json()["status"] == "paid"


def test_failed_callback_leaves_order_pending(client, db, customer, order, intent, send_callback):
    r = send_callback({"orderTrackingId": "trk-1", "status": "FAILED"})

    assert r.status_code == 200
    assert db["payment"].find_one()["status"] == "failed"
    assert client.get(f"/api/orders/{order['_id']}", headers=customer["headers"]).json()["status"] == "pending"


def test_unknown_tracking_id_mutates_nothing(client, db, customer, order, intent, send_callback):
    r = send_callback({"orderTrackingId": "trk-unknown", "status": "COMPLETED"})

    assert r.status_code == 404
    assert r.json() == {"error": "Payment not found"}
    assert db["payment"].find_one()["status"] == "pending"
    assert db["order"].find_one()["status"] == "pending"


@pytest.mark.parametrize("kwargs", [
    {"secret": None},
    {"secret": "not-the-secret"},
    {"signature": "deadbeef"},
    {"signature": "é".encode("latin-1")},
])
def test_unsigned_or_forged_callback_is_rejected(db, intent, send_callback, kwargs):
    r = send_callback({"orderTrackingId": "trk-1", "status": "COMPLETED"}, **kwargs)

    assert r.status_code == 401
    assert db["payment"].find_one()["status"] == "pending"
    assert db["order"].find_one()["status"] == "pending"


def test_callback_body_is_validated(send_callback):
    r = send_callback({"orderTrackingId": "trk-1"})
    assert r.status_code == 400
    assert "status" in r.json()["error"]


def test_payment_history(client, customer, other_customer, order, intent):
    history = client.get("/api/payments/history", headers=customer["headers"]).json()

    assert len(history) == 1
    assert history[0]["_id"] == intent["paymentId"]
    assert history[0]["order"]["_id"] == order["_id"]
    assert history[0]["order"]["items"][0]["product"]["name"] == "Runner"
    assert client.get("/api/payments/history", headers=other_customer["headers"]).json() == []
