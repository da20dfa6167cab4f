import asyncio

import structlog

from gateway.config import Settings
from gateway.database import create_engine, init_db
from gateway.log import configure_logging
from gateway.models import Merchant
from gateway.store import EntityStore

logger = structlog.get_logger().bind(component="seeder")


async def seed_test_merchant(store: EntityStore, settings: Settings) -> Merchant:
    existing = await store.get_merchant_by_email(settings.test_merchant_email)
    if existing is not None:
        logger.info("merchant_already_seeded", merchant_id=existing.id)
        return existing

    merchant = await store.add_merchant(
        Merchant(
            id=settings.test_merchant_id,
            name="Test Merchant",
            email=settings.test_merchant_email,
            api_key=settings.test_api_key,
            api_secret=settings.test_api_secret,
            webhook_secret=settings.test_webhook_secret,
        )
    )
    logger.info("merchant_seeded", merchant_id=merchant.id)
    return merchant


async def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    engine = create_engine(settings.database_url)
    await init_db(engine)
    store = EntityStore(engine)
    try:
        await seed_test_merchant(store, settings)
    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
