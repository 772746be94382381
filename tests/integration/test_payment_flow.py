def _create_booking(client, payload):
    response = client.post("/bookings", json=payload)
    assert response.status_code == 200
    return response.json()["booking"]["id"]


def _order(client, booking_id, amount=150000, user="user-1", nonce="n-1"):
    return client.post(
        "/payments/order",
        json={"booking_id": booking_id, "amount": amount, "nonce": nonce},
        headers={"X-User-Id": user} if user else {},
    )


def test_payment_flow(client, booking_payload, signed_webhook):
    booking_id = _create_booking(client, booking_payload)

    response = _order(client, booking_id)
    assert response.status_code == 200
    order = response.json()
    assert order == {
        "success": True,
        "orderId": "order_0001",
        "amount": 150000,
        "currency": "INR",
    }

    body, signature = signed_webhook(order["orderId"], "captured", 150000)
    for _ in range(2):
        response = client.post(
            "/payments/webhook",
            content=body,
            headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
        )
        assert response.status_code == 200

    detail = client.get(f"/bookings/{booking_id}").json()
    assert detail["booking"]["status"] == "advance_paid"
    event_types = [event["event_type"] for event in detail["events"]]
    assert event_types.count("payment_success") == 1
    assert detail["booking"]["event_count"] == len(detail["events"])


def test_order_is_idempotent(client, gateway, booking_payload):
    booking_id = _create_booking(client, booking_payload)

    first = _order(client, booking_id).json()
    second = _order(client, booking_id).json()

    assert first["orderId"] == second["orderId"]
    assert len(gateway.orders) == 1


def test_order_accepts_cookie_identity(client, booking_payload):
    booking_id = _create_booking(client, booking_payload)
    client.cookies.set("hf_user_id", "user-1")

    response = _order(client, booking_id, user=None)

    assert response.status_code == 200


def test_order_without_identity_is_401(client, booking_payload):
    booking_id = _create_booking(client, booking_payload)

    response = _order(client, booking_id, user=None)

    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Not authenticated"}


def test_order_for_someone_elses_booking_is_403(client, booking_payload):
    booking_id = _create_booking(client, booking_payload)

    response = _order(client, booking_id, user="user-2")

    assert response.status_code == 403


def test_order_for_unknown_booking_is_404(client):
    response = _order(client, "missing")

    assert response.status_code == 404


def test_order_gateway_failure_is_502(client, gateway, booking_payload):
    booking_id = _create_booking(client, booking_payload)
    gateway.fail_next = True

    response = _order(client, booking_id)

    assert response.status_code == 502
    assert response.json() == {"success": False, "message": "Payment gateway unavailable"}


def test_order_rejects_fractional_amount(client, booking_payload):
    booking_id = _create_booking(client, booking_payload)

    response = _order(client, booking_id, amount=10.5)

    assert response.status_code == 400


def test_webhook_bad_signature_is_400(client, booking_payload, signed_webhook):
    booking_id = _create_booking(client, booking_payload)
    order = _order(client, booking_id).json()
    body, _ = signed_webhook(order["orderId"], "captured", 150000)

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": "bad", "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    detail = client.get(f"/bookings/{booking_id}").json()
    assert detail["booking"]["status"] == "pending"


def test_webhook_for_unknown_order_is_acknowledged(client, signed_webhook):
    body, signature = signed_webhook("order_missing", "captured", 150000)

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["processed"] is False


def test_failed_payment_keeps_booking_open(client, booking_payload, signed_webhook):
    booking_id = _create_booking(client, booking_payload)
    order = _order(client, booking_id).json()
    body, signature = signed_webhook(order["orderId"], "failed", 150000)

    client.post(
        "/payments/webhook",
        content=body,
        headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"},
    )

    detail = client.get(f"/bookings/{booking_id}").json()
    assert detail["booking"]["status"] == "pending"
    assert detail["last_event"]["event_type"] == "payment_failed"

    retry = _order(client, booking_id, nonce="n-2")
    assert retry.status_code == 200
    assert retry.json()["orderId"] == "order_0002"
