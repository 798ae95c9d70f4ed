"""Integration tests for API endpoints."""

import pytest


async def _create_booking(test_client, headers, data):
    response = await test_client.post("/v1/booking/create", json=data, headers=headers)
    assert response.status_code in (200, 201), response.text
    return response.json()


@pytest.mark.asyncio
async def test_create_booking_endpoint(test_client, booking_request_data, owner, headers_for):
    """First request creates, the repeat returns the same booking."""
    response = await test_client.post(
        "/v1/booking/create",
        json=booking_request_data,
        headers=headers_for(owner),
    )

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "PENDING"
    assert data["total_price"] == 20000
    assert data["number_of_travelers"] == 2
    assert data["is_existing"] is False
    assert data["tour_title"] == "Northern Lights Adventure"

    repeat = await test_client.post(
        "/v1/booking/create",
        json=booking_request_data,
        headers=headers_for(owner),
    )

    assert repeat.status_code == 200
    assert repeat.json()["id"] == data["id"]
    assert repeat.json()["is_existing"] is True


@pytest.mark.asyncio
async def test_create_booking_missing_auth(test_client, booking_request_data):
    """Test booking creation without authentication."""
    response = await test_client.post("/v1/booking/create", json=booking_request_data)

    assert response.status_code == 401
    data = response.json()
    assert data["status"] == 401
    assert "authorization" in data["title"].lower()


@pytest.mark.asyncio
async def test_create_booking_invalid_token(test_client, booking_request_data):
    response = await test_client.post(
        "/v1/booking/create",
        json=booking_request_data,
        headers={"Authorization": "Bearer not-a-jwt"},
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_booking_invalid_data(test_client, owner, headers_for):
    """Test booking creation with invalid data."""
    invalid_data = {
        "tour_id": "some-tour",
        "adults": -1,
    }

    response = await test_client.post("/v1/booking/create", json=invalid_data, headers=headers_for(owner))

    assert response.status_code == 422
    data = response.json()
    assert data["status"] == 422
    assert data["code"] == "VALIDATION_ERROR"
    assert any(v["path"].endswith("adults") for v in data["violations"])


@pytest.mark.asyncio
async def test_create_booking_over_capacity(test_client, booking_request_data, owner, headers_for):
    booking_request_data["adults"] = 11
    booking_request_data["travelers"] = []

    response = await test_client.post("/v1/booking/create", json=booking_request_data, headers=headers_for(owner))

    assert response.status_code == 409
    data = response.json()
    assert data["code"] == "INSUFFICIENT_CAPACITY"
    assert response.headers["content-type"].startswith("application/problem+json")


@pytest.mark.asyncio
async def test_get_list_and_cancel_booking(test_client, booking_request_data, owner, other_user, headers_for):
    booking = await _create_booking(test_client, headers_for(owner), booking_request_data)

    response = await test_client.post(
        "/v1/booking/get", json={"booking_id": booking["id"]}, headers=headers_for(owner)
    )
    assert response.status_code == 200
    assert response.json()["booking_number"] == booking["booking_number"]

    response = await test_client.post(
        "/v1/booking/get", json={"booking_id": booking["id"]}, headers=headers_for(other_user)
    )
    assert response.status_code == 403

    response = await test_client.post("/v1/booking/list", json={}, headers=headers_for(owner))
    assert response.status_code == 200
    listing = response.json()
    assert [item["id"] for item in listing["items"]] == [booking["id"]]
    assert listing["pagination"]["total"] == 1

    response = await test_client.post(
        "/v1/booking/cancel",
        json={"booking_id": booking["id"], "reason": "Plans changed"},
        headers=headers_for(owner),
    )
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"

    response = await test_client.post(
        "/v1/booking/cancel", json={"booking_id": booking["id"]}, headers=headers_for(owner)
    )
    assert response.status_code == 409
    assert response.json()["code"] == "ALREADY_CANCELLED"


@pytest.mark.asyncio
async def test_get_unknown_booking(test_client, owner, headers_for):
    response = await test_client.post(
        "/v1/booking/get", json={"booking_id": "not-a-uuid"}, headers=headers_for(owner)
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_status_override_requires_admin(test_client, booking_request_data, owner, admin_user, headers_for):
    booking = await _create_booking(test_client, headers_for(owner), booking_request_data)
    body = {"booking_id": booking["id"], "status": "CONFIRMED"}

    response = await test_client.post("/v1/booking/status", json=body, headers=headers_for(owner))
    assert response.status_code == 403

    response = await test_client.post("/v1/booking/status", json=body, headers=headers_for(admin_user))
    assert response.status_code == 200
    assert response.json()["status"] == "CONFIRMED"


@pytest.mark.asyncio
async def test_card_payment_flow(test_client, booking_request_data, owner, headers_for, gateway, signed_event):
    """Create intent, succeed at the processor, confirm, then the webhook is a no-op."""
    booking = await _create_booking(test_client, headers_for(owner), booking_request_data)

    response = await test_client.post(
        "/v1/payment/create-intent",
        json={"booking_id": booking["id"], "amount": 20600},
        headers=headers_for(owner),
    )
    assert response.status_code == 200
    intent = response.json()
    assert intent["amount"] == 20600
    assert intent["breakdown"]["fee_amount"] == 600
    assert intent["client_secret"]
    assert intent["status"] == "PENDING"

    gateway.succeed(intent["payment_intent_id"], "ch_flow")

    response = await test_client.post(
        "/v1/payment/confirm",
        json={"payment_intent_id": intent["payment_intent_id"], "booking_id": booking["id"]},
        headers=headers_for(owner),
    )
    assert response.status_code == 200
    confirmed = response.json()
    assert confirmed["transitioned"] is True
    assert confirmed["booking"]["status"] == "CONFIRMED"
    assert confirmed["payment"]["status"] == "COMPLETED"

    body, headers = signed_event("payment_intent.succeeded", intent["payment_intent_id"])
    response = await test_client.post("/v1/webhook/stripe", content=body, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"received": True, "event_type": "payment_intent.succeeded", "handled": False}

    response = await test_client.post(
        "/v1/payment/create-intent", json={"booking_id": booking["id"]}, headers=headers_for(owner)
    )
    assert response.status_code == 409
    assert response.json()["code"] == "BOOKING_ALREADY_PAID"


@pytest.mark.asyncio
async def test_create_intent_stale_amount(test_client, booking_request_data, owner, headers_for):
    booking = await _create_booking(test_client, headers_for(owner), booking_request_data)

    response = await test_client.post(
        "/v1/payment/create-intent",
        json={"booking_id": booking["id"], "amount": 20000},
        headers=headers_for(owner),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "STALE_AMOUNT"


@pytest.mark.asyncio
async def test_webhook_confirms_booking(test_client, booking_request_data, owner, headers_for, gateway, signed_event):
    booking = await _create_booking(test_client, headers_for(owner), booking_request_data)
    intent = (await test_client.post(
        "/v1/payment/create-intent", json={"booking_id": booking["id"]}, headers=headers_for(owner)
    )).json()

    body, headers = signed_event("payment_intent.succeeded", intent["payment_intent_id"], latest_charge="ch_hook")
    response = await test_client.post("/v1/webhook/stripe", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["handled"] is True

    response = await test_client.post("/v1/booking/get", json={"booking_id": booking["id"]}, headers=headers_for(owner))
    assert response.json()["status"] == "CONFIRMED"
    assert response.json()["payment"]["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_webhook_bad_signature(test_client, signed_event):
    body, headers = signed_event("payment_intent.succeeded", "pi_test_1", secret="whsec_wrong")

    response = await test_client.post("/v1/webhook/stripe", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_webhook_missing_signature(test_client, signed_event):
    body, _ = signed_event("payment_intent.succeeded", "pi_test_1")

    response = await test_client.post("/v1/webhook/stripe", content=body)

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_bank_transfer_flow(test_client, booking_request_data, owner, admin_user, headers_for):
    """Upload a receipt, see it in the admin queue, approve it."""
    booking = await _create_booking(test_client, headers_for(owner), booking_request_data)

    response = await test_client.post(
        "/v1/payment/bank-transfer",
        data={"booking_id": booking["id"]},
        files={"receipt": ("receipt.pdf", b"%PDF-1.4 receipt", "application/pdf")},
        headers=headers_for(owner),
    )
    assert response.status_code == 200
    payment = response.json()
    assert payment["status"] == "AWAITING_VERIFICATION"
    assert payment["receipt_filename"] == "receipt.pdf"
    assert payment["amount"] == 20000

    response = await test_client.post("/v1/admin/bank-transfer/pending", json={}, headers=headers_for(owner))
    assert response.status_code == 403

    response = await test_client.post("/v1/admin/bank-transfer/pending", json={}, headers=headers_for(admin_user))
    assert response.status_code == 200
    assert [item["payment"]["id"] for item in response.json()["items"]] == [payment["id"]]

    response = await test_client.post(
        "/v1/admin/bank-transfer/approve", json={"payment_id": payment["id"]}, headers=headers_for(admin_user)
    )
    assert response.status_code == 200
    assert response.json()["booking"]["status"] == "CONFIRMED"
    assert response.json()["payment"]["status"] == "COMPLETED"


@pytest.mark.asyncio
async def test_bank_transfer_rejects_bad_receipt(test_client, booking_request_data, owner, headers_for):
    booking = await _create_booking(test_client, headers_for(owner), booking_request_data)

    response = await test_client.post(
        "/v1/payment/bank-transfer",
        data={"booking_id": booking["id"]},
        files={"receipt": ("receipt.exe", b"MZ", "application/octet-stream")},
        headers=headers_for(owner),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_RECEIPT_TYPE"


@pytest.mark.asyncio
async def test_bank_details_endpoint(test_client, owner, headers_for):
    response = await test_client.post(
        "/v1/payment/bank-details", json={"booking_number": "BK123"}, headers=headers_for(owner)
    )

    assert response.status_code == 200
    assert response.json()["reference"] == "BK123"


@pytest.mark.asyncio
async def test_metrics_endpoint(test_client):
    """Test the Prometheus metrics endpoint."""
    response = await test_client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")

    content = response.text
    assert "bookings_created_total" in content or "# HELP" in content
