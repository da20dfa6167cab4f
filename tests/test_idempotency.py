from datetime import datetime, timedelta

import pytest
from unittest.mock import AsyncMock

from gateway.idempotency import IdempotencyGuard
from gateway.models import Merchant
from gateway.schemas import UpiPaymentCreate
from gateway.services import GatewayService


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(datetime(2026, 10, 19, 9, 0, 0))


@pytest.mark.asyncio
async def test_same_key_replays_first_response(store, merchant, order, mock_queue, clock):
    """
    Test case 1: Two requests with the same key create one payment and return identical bodies.
    """
    service = GatewayService(store, mock_queue, IdempotencyGuard(store, clock=clock))
    request = UpiPaymentCreate(order_id=order.id, method="upi", vpa="user@bank")

    first = await service.create_payment(merchant, request, "idem-1")
    second = await service.create_payment(merchant, request, "idem-1")

    assert second == first
    assert mock_queue.enqueue.call_count == 1
    assert len(await store.list_payments(merchant.id)) == 1


@pytest.mark.asyncio
async def test_no_key_never_caches(store, merchant, clock):
    guard = IdempotencyGuard(store, clock=clock)
    create = AsyncMock(side_effect=[{"id": "pay_a"}, {"id": "pay_b"}])

    assert await guard.run(merchant.id, None, create) == {"id": "pay_a"}
    assert await guard.run(merchant.id, "", create) == {"id": "pay_b"}
    assert create.call_count == 2


@pytest.mark.asyncio
async def test_expired_key_is_replaced(store, merchant, clock):
    """
    Test case 2: After the TTL the key is discarded and the next request runs again.
    """
    guard = IdempotencyGuard(store, ttl=timedelta(hours=24), clock=clock)
    create = AsyncMock(side_effect=[{"id": "pay_a"}, {"id": "pay_b"}])

    assert await guard.run(merchant.id, "idem-2", create) == {"id": "pay_a"}

    clock.now += timedelta(hours=23, minutes=59)
    assert await guard.run(merchant.id, "idem-2", create) == {"id": "pay_a"}

    clock.now += timedelta(minutes=1)
    assert await guard.run(merchant.id, "idem-2", create) == {"id": "pay_b"}
    assert create.call_count == 2

    record = await store.get_idempotency_key(merchant.id, "idem-2")
    assert record.response == {"id": "pay_b"}
    assert record.expires_at == clock.now + timedelta(hours=24)


@pytest.mark.asyncio
async def test_keys_are_scoped_per_merchant(store, merchant, clock):
    other = await store.add_merchant(
        Merchant(name="Other", email="other@example.com", api_key="key_other", api_secret="secret_other")
    )
    guard = IdempotencyGuard(store, clock=clock)
    create = AsyncMock(side_effect=[{"id": "pay_a"}, {"id": "pay_b"}])

    assert await guard.run(merchant.id, "shared", create) == {"id": "pay_a"}
    assert await guard.run(other.id, "shared", create) == {"id": "pay_b"}


@pytest.mark.asyncio
async def test_failed_create_is_not_cached(store, merchant, clock):
    guard = IdempotencyGuard(store, clock=clock)
    create = AsyncMock(side_effect=[RuntimeError("boom"), {"id": "pay_a"}])

    with pytest.raises(RuntimeError):
        await guard.run(merchant.id, "idem-3", create)

    assert await guard.run(merchant.id, "idem-3", create) == {"id": "pay_a"}
