import httpx
import pytest
import pytest_asyncio

from gateway.idempotency import IdempotencyGuard
from gateway.main import create_app
from gateway.services import GatewayService
from tests.conftest import AUTH


@pytest_asyncio.fixture
async def client(store, mock_queue, settings, merchant):
    service = GatewayService(store, mock_queue, IdempotencyGuard(store))
    app = create_app(settings, service)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.mark.asyncio
async def test_requires_credentials(client):
    response = await client.post("/api/v1/orders", json={"amount": 50000})
    assert response.status_code == 401
    assert response.json() == {"error": {"code": "AUTHENTICATION_ERROR", "description": "Invalid API credentials"}}

    response = await client.get("/api/v1/payments", headers={"X-Api-Key": "key_test_abc123", "X-Api-Secret": "nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_and_get_order(client):
    """
    Test case 1: Order creation returns 201 and the order is readable by its merchant.
    """
    response = await client.post("/api/v1/orders", json={"amount": 50000, "receipt": "rcpt_9"}, headers=AUTH)
    assert response.status_code == 201
    order = response.json()
    assert order["id"].startswith("order_")
    assert order["status"] == "created"

    response = await client.get(f"/api/v1/orders/{order['id']}", headers=AUTH)
    assert response.json()["receipt"] == "rcpt_9"

    public = await client.get(f"/api/v1/orders/{order['id']}/public")
    assert public.json() == {"id": order["id"], "amount": 50000, "currency": "INR", "status": "created"}


@pytest.mark.asyncio
async def test_order_amount_below_minimum(client):
    response = await client.post("/api/v1/orders", json={"amount": 99}, headers=AUTH)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BAD_REQUEST_ERROR"


@pytest.mark.asyncio
async def test_idempotent_payment_replays_identical_bytes(client, order, mock_queue):
    """
    Test case 2: Same Idempotency-Key yields a byte-identical body and a single payment job.
    """
    body = {"order_id": order.id, "method": "upi", "vpa": "user@bank"}
    headers = {**AUTH, "Idempotency-Key": "abc-123"}

    first = await client.post("/api/v1/payments", json=body, headers=headers)
    second = await client.post("/api/v1/payments", json=body, headers=headers)

    assert first.status_code == second.status_code == 201
    assert first.content == second.content
    assert mock_queue.enqueue.call_count == 1

    listing = await client.get("/api/v1/payments", headers=AUTH)
    assert len(listing.json()["data"]) == 1


@pytest.mark.asyncio
async def test_payment_error_format(client, order):
    response = await client.post(
        "/api/v1/payments", json={"order_id": order.id, "method": "upi", "vpa": "not a vpa"}, headers=AUTH
    )
    assert response.status_code == 400
    assert response.json() == {"error": {"code": "INVALID_VPA", "description": "Invalid VPA format"}}

    response = await client.post("/api/v1/payments", json={"order_id": order.id, "method": "cash"}, headers=AUTH)
    assert response.status_code == 400
    assert response.json()["error"]["description"] == "method must be upi or card"

    response = await client.get("/api/v1/payments/pay_0000000000000000", headers=AUTH)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND_ERROR"


@pytest.mark.asyncio
async def test_public_card_payment(client, order):
    card = {
        "number": "5105105105105100",
        "expiry_month": "12",
        "expiry_year": "2099",
        "cvv": "123",
        "holder_name": "A Buyer",
    }
    response = await client.post(
        "/api/v1/payments/public", json={"order_id": order.id, "method": "card", "card": card}
    )
    assert response.status_code == 201
    payment = response.json()
    assert payment["card_network"] == "mastercard"
    assert payment["card_last4"] == "5100"
    assert "5105105105105100" not in response.text


@pytest.mark.asyncio
async def test_public_payment_status(client, order):
    """
    Test case 3: The checkout page polls a payment by id without credentials or merchant fields.
    """
    created = await client.post(
        "/api/v1/payments/public", json={"order_id": order.id, "method": "upi", "vpa": "user@bank"}
    )
    assert "merchant_id" not in created.json()

    response = await client.get(f"/api/v1/payments/{created.json()['id']}/public")

    assert response.status_code == 200
    payment = response.json()
    assert payment["id"] == created.json()["id"]
    assert payment["status"] == "pending"
    assert payment["vpa"] == "user@bank"
    assert "merchant_id" not in payment
    assert "captured" not in payment

    missing = await client.get("/api/v1/payments/pay_missing/public")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND_ERROR"


@pytest.mark.asyncio
async def test_live_key_replays_before_body_validation(client, order, mock_queue):
    headers = {**AUTH, "Idempotency-Key": "abc-456"}
    first = await client.post(
        "/api/v1/payments", json={"order_id": order.id, "method": "upi", "vpa": "user@bank"}, headers=headers
    )

    second = await client.post("/api/v1/payments", json={"method": "cash"}, headers=headers)

    assert second.status_code == 201
    assert second.content == first.content
    assert mock_queue.enqueue.call_count == 1


@pytest.mark.asyncio
async def test_refund_requires_successful_payment(client, order):
    payment = (
        await client.post("/api/v1/payments", json={"order_id": order.id, "method": "upi", "vpa": "u@bank"}, headers=AUTH)
    ).json()

    response = await client.post(f"/api/v1/payments/{payment['id']}/refunds", json={"amount": 100}, headers=AUTH)

    assert response.status_code == 400
    assert response.json() == {
        "error": {"code": "BAD_REQUEST_ERROR", "description": "Payment not in refundable state"}
    }


@pytest.mark.asyncio
async def test_webhook_config_endpoints(client):
    response = await client.post(
        "/api/v1/merchant/webhook", json={"webhook_url": "https://shop.example.com/hook"}, headers=AUTH
    )
    assert response.json() == {"webhook_url": "https://shop.example.com/hook"}

    regenerated = await client.post("/api/v1/merchant/webhook/regenerate", headers=AUTH)
    secret = regenerated.json()["webhook_secret"]
    assert len(secret) == 32

    config = await client.get("/api/v1/merchant/webhook", headers=AUTH)
    assert config.json() == {"webhook_url": "https://shop.example.com/hook", "webhook_secret": secret}

    logs = await client.get("/api/v1/webhooks", headers=AUTH)
    assert logs.json() == {"data": [], "total": 0, "limit": 10, "offset": 0}


@pytest.mark.asyncio
async def test_job_status_endpoint(client, mock_queue):
    mock_queue.job_counts.return_value = {"pending": 1, "delayed": 0, "active": 2, "completed": 3, "failed": 0}

    response = await client.get("/api/v1/test/jobs/status")

    data = response.json()
    assert response.status_code == 200
    assert data["pending"] == 1
    assert data["processing"] == 2
    assert data["completed"] == 3
    assert data["worker_status"] == "running"
    assert "timestamp" in data
