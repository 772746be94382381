def _create(client, payload):
    response = client.post("/bookings", json=payload)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    return body["booking"]


def test_booking_flow(client, booking_payload):
    booking = _create(client, booking_payload)
    assert booking["status"] == "pending"
    assert booking["event_count"] == 1

    response = client.post(
        f"/bookings/{booking['id']}/reschedule",
        json={"user_id": "user-1", "new_date": "2026-11-05", "new_slot": "evening"},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "status": "rescheduled", "applied": True}

    response = client.post(f"/bookings/{booking['id']}/cancel", json={"user_id": "user-1"})
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"

    detail = client.get(f"/bookings/{booking['id']}").json()
    assert detail["success"] is True
    assert detail["booking"]["event_count"] == len(detail["events"]) == 3
    assert [event["event_type"] for event in detail["events"]] == [
        "created",
        "rescheduled",
        "cancelled",
    ]
    assert detail["last_event"]["event_type"] == "cancelled"
    assert detail["events"][1]["meta"]["new_slot"] == "evening"
    assert detail["allowed_actions"] == []


def test_detail_lists_allowed_actions(client, booking_payload):
    booking = _create(client, booking_payload)

    detail = client.get(f"/bookings/{booking['id']}").json()

    assert detail["allowed_actions"] == ["cancel", "reschedule"]


def test_cancel_twice_returns_success(client, booking_payload):
    booking = _create(client, booking_payload)

    first = client.post(f"/bookings/{booking['id']}/cancel", json={"user_id": "user-1"})
    second = client.post(f"/bookings/{booking['id']}/cancel", json={"user_id": "user-1"})

    assert first.status_code == second.status_code == 200
    assert second.json()["applied"] is False
    detail = client.get(f"/bookings/{booking['id']}").json()
    assert len(detail["events"]) == 2


def test_list_hides_draft_bookings(client, booking_payload):
    confirmed = _create(client, booking_payload)
    _create(client, {**booking_payload, "initial_event": "cart_draft"})

    response = client.get("/bookings", params={"owner": "user-1"})

    assert response.status_code == 200
    data = response.json()["data"]
    assert [item["id"] for item in data] == [confirmed["id"]]
    assert data[0]["last_event"]["event_type"] == "created"
    assert len(data[0]["events"]) == 1


def test_list_requires_owner(client):
    response = client.get("/bookings")

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_create_validation_errors_are_400(client, booking_payload):
    response = client.post("/bookings", json={**booking_payload, "items": []})
    assert response.status_code == 400
    assert response.json() == {"success": False, "message": "items array empty"}

    payload = dict(booking_payload)
    payload.pop("address")
    response = client.post("/bookings", json=payload)
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_unknown_booking_is_404(client):
    response = client.get("/bookings/missing")

    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Booking not found"}


def test_cancel_by_non_owner_is_403(client, booking_payload):
    booking = _create(client, booking_payload)

    response = client.post(f"/bookings/{booking['id']}/cancel", json={"user_id": "user-2"})

    assert response.status_code == 403
    assert response.json()["message"] == "Unauthorized booking access"


def test_cancel_without_user_is_400(client, booking_payload):
    booking = _create(client, booking_payload)

    response = client.post(f"/bookings/{booking['id']}/cancel", json={})

    assert response.status_code == 400


def test_return_on_pending_is_409(client, booking_payload):
    booking = _create(client, booking_payload)

    response = client.post(
        f"/bookings/{booking['id']}/return",
        json={"user_id": "user-1", "reason": "damaged"},
    )

    assert response.status_code == 409
    assert response.json()["success"] is False
    detail = client.get(f"/bookings/{booking['id']}").json()
    assert detail["booking"]["status"] == "pending"


def test_admin_route_requires_admin_id(client, booking_payload):
    booking = _create(client, booking_payload)

    response = client.post(f"/bookings/{booking['id']}/return/approve", json={})

    assert response.status_code == 400
    assert response.json()["message"] == "admin_id is required"


def test_refund_requires_amount(client, booking_payload):
    booking = _create(client, booking_payload)

    response = client.post(f"/bookings/{booking['id']}/refund", json={"admin_id": "ops-1"})

    assert response.status_code == 400


def test_notification_worker_contract(client, booking_payload):
    booking = _create(client, booking_payload)
    client.post(f"/bookings/{booking['id']}/cancel", json={"user_id": "user-1"})

    response = client.get("/notifications/tasks", params={"limit": 10})
    assert response.status_code == 200
    tasks = response.json()
    assert [task["kind"] for task in tasks] == ["booking_created", "booking_cancelled"]
    assert all(task["channel"] == "email" for task in tasks)

    task_id = tasks[1]["id"]
    response = client.post(
        f"/notifications/tasks/{task_id}/attempt",
        json={"success": False, "error": "smtp timeout"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    assert response.json()["attempts"] == 1

    response = client.post(f"/notifications/tasks/{task_id}/attempt", json={"success": True})
    assert response.json()["status"] == "sent"

    response = client.post(f"/notifications/tasks/{task_id}/attempt", json={"success": True})
    assert response.status_code == 409

    response = client.post("/notifications/tasks/missing/attempt", json={"success": True})
    assert response.status_code == 404


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
