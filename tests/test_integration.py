import json
import base64
from decimal import Decimal

from conftest import TestingSessionLocal
from pos_payments.models import Order, Payment, Table, TableSession


def _gateway_callback(config, status="COMPLETE"):
    """What eSewa posts back after the customer pays with the submitted form."""
    payload = {
        "transaction_code": "000AWEO",
        "status": status,
        "total_amount": config["amount"],
        "transaction_uuid": config["transaction_uuid"],
        "product_code": config["product_code"],
        "signed_field_names": config["signed_field_names"],
        "signature": config["signature"],
    }
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def test_full_esewa_lifecycle_integration(client, seed):
    """
    Test the full lifecycle:
    1. Checkout with eSewa (API -> pending payment)
    2. Fetch the signed gateway form
    3. Gateway callback settles the session
    4. Re-delivered callback is a no-op
    5. Status polling reports PAID
    """
    seed(status=None)

    # --- 1. CHECKOUT ---
    response = client.post("/checkout", json={
        "sessionId": "session-1", "paymentMethod": "ESEWA", "amount": "450",
        "subtotal": "400", "tax": "52", "serviceCharge": "20", "discount": "22",
    })
    assert response.status_code == 200
    payment_id = response.json()["paymentId"]
    assert client.get(f"/payment/status?id={payment_id}").json()["status"] == "PENDING"

    # --- 2. GATEWAY FORM ---
    config = client.get(f"/payment/details?id={payment_id}").json()["esewaConfig"]

    # --- 3. CALLBACK ---
    encoded = _gateway_callback(config)
    first = client.post("/payment/verify", json={"encodedData": encoded, "paymentId": payment_id})
    assert first.json() == {"success": True}

    db = TestingSessionLocal()
    session = db.get(TableSession, "session-1")
    assert session.is_active is False
    assert session.grand_total == Decimal("450")
    assert session.tax == Decimal("52")
    assert db.get(Table, "table-1").status == "ACTIVE"
    assert {o.status for o in db.query(Order).all()} == {"COMPLETED"}
    paid_at = db.get(Payment, payment_id).paid_at
    db.close()

    # --- 4. DUPLICATE CALLBACK ---
    second = client.post("/payment/verify", json={"encodedData": encoded, "paymentId": payment_id})
    assert second.json() == {"success": True}

    db = TestingSessionLocal()
    assert db.get(Payment, payment_id).paid_at == paid_at
    db.close()

    # --- 5. STATUS ---
    assert client.get(f"/payment/status?id={payment_id}").json() == {"success": True, "status": "PAID"}
    assert client.get(f"/payment/details?id={payment_id}").json()["success"] is False


def test_callback_from_previous_attempt_is_rejected(client, seed):
    """Re-opening checkout issues a new transaction uuid; the old signed callback no longer applies."""
    seed(status=None)
    body = {"sessionId": "session-1", "paymentMethod": "ESEWA", "amount": "450"}

    payment_id = client.post("/checkout", json=body).json()["paymentId"]
    stale = client.get(f"/payment/details?id={payment_id}").json()["esewaConfig"]
    client.post("/checkout", json=body)

    response = client.post("/payment/verify", json={"encodedData": _gateway_callback(stale), "paymentId": payment_id})

    assert response.json() == {"success": False, "message": "payment mismatch"}
    db = TestingSessionLocal()
    assert db.get(Payment, payment_id).status == "PENDING"
    db.close()


def test_incomplete_gateway_status_is_rejected(client, seed):
    seed(status=None)
    payment_id = client.post(
        "/checkout", json={"sessionId": "session-1", "paymentMethod": "ESEWA", "amount": "450"}
    ).json()["paymentId"]
    config = client.get(f"/payment/details?id={payment_id}").json()["esewaConfig"]

    response = client.post(
        "/payment/verify",
        json={"encodedData": _gateway_callback(config, status="PENDING"), "paymentId": payment_id},
    )

    assert response.json()["success"] is False
    db = TestingSessionLocal()
    assert db.get(TableSession, "session-1").is_active is True
    db.close()
