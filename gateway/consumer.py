import asyncio

import httpx
import structlog

from gateway.backoff import schedule_for
from gateway.config import Settings
from gateway.database import create_engine, init_db
from gateway.log import configure_logging
from gateway.processors import PaymentProcessor, RefundProcessor
from gateway.queues import JobQueue, QueueName
from gateway.store import EntityStore
from gateway.webhooks import WebhookDispatcher

logger = structlog.get_logger().bind(component="worker")


def build_queue(settings: Settings, store: EntityStore) -> JobQueue:
    return JobQueue(
        settings.rabbitmq_url,
        store,
        prefetch=settings.worker_concurrency,
        retry_delays=schedule_for(settings).delays,
    )


async def start_workers(store: EntityStore, queue: JobQueue, http: httpx.AsyncClient, settings: Settings):
    """Bind every work queue to its handler."""
    payments = PaymentProcessor(store, queue, settings)
    refunds = RefundProcessor(store, queue, settings)
    dispatcher = WebhookDispatcher(
        store,
        queue,
        http,
        schedule=schedule_for(settings),
        max_attempts=settings.webhook_max_attempts,
        timeout=settings.webhook_timeout,
    )
    await queue.consume(QueueName.PAYMENTS, payments.process)
    await queue.consume(QueueName.REFUNDS, refunds.process)
    await queue.consume(QueueName.WEBHOOKS, dispatcher.deliver)


async def main():
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    engine = create_engine(settings.database_url)
    await init_db(engine)
    store = EntityStore(engine)
    queue = build_queue(settings, store)
    await queue.connect()

    try:
        async with httpx.AsyncClient() as http:
            await start_workers(store, queue, http, settings)
            logger.info("worker_started", test_mode=settings.test_mode)
            # Keep the main task running
            await asyncio.Future()
    finally:
        await queue.close()
        await store.close()
        logger.info("worker_stopped")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
