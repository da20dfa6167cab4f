from datetime import timedelta
from typing import Awaitable, Callable, Optional

import structlog

from gateway.models import utcnow
from gateway.store import EntityStore

logger = structlog.get_logger().bind(component="idempotency")


class IdempotencyGuard:
    """Replays the first response produced for a (merchant, key) pair.

    Expiry is checked when the key is read; nothing sweeps expired keys.
    """

    def __init__(self, store: EntityStore, ttl: timedelta = timedelta(hours=24), clock=utcnow):
        self.store = store
        self.ttl = ttl
        self.clock = clock

    async def run(
        self,
        merchant_id: str,
        key: Optional[str],
        create: Callable[[], Awaitable[dict]],
    ) -> dict:
        if not key:
            return await create()

        cached = await self.lookup(merchant_id, key)
        if cached is not None:
            logger.info("idempotent_replay", merchant_id=merchant_id, key=key)
            return cached

        response = await create()
        await self.store.save_idempotency_key(merchant_id, key, response, self.clock() + self.ttl)
        return response

    async def lookup(self, merchant_id: str, key: str) -> Optional[dict]:
        record = await self.store.get_idempotency_key(merchant_id, key)
        if record is None:
            return None
        if record.expires_at <= self.clock():
            logger.info("idempotency_key_expired", merchant_id=merchant_id, key=key)
            await self.store.delete_idempotency_key(merchant_id, key)
            return None
        return record.response
