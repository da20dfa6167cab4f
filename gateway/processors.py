import asyncio
import random

import structlog

from gateway.config import Settings
from gateway.models import PaymentMethod, PaymentStatus, RefundStatus
from gateway.queues import JobOutcome, JobQueue, QueueName
from gateway.store import EntityStore

logger = structlog.get_logger().bind(component="processors")


async def enqueue_webhook(queue: JobQueue, log_id: str, **context):
    """Enqueue delivery of a webhook log that was committed with its settlement.

    A redelivered settlement job skips the now-terminal entity, so a failed
    publish here leaves the log pending with no delivery job. Nothing
    re-enqueues it; the error is logged with the log id for manual retry.
    """
    try:
        await queue.enqueue(QueueName.WEBHOOKS, {"log_id": log_id})
    except Exception:
        logger.exception("webhook_enqueue_failed", log_id=log_id, **context)
        raise


def settlement_delay(settings: Settings, rng: random.Random) -> float:
    if settings.test_mode:
        return settings.test_processing_delay
    return rng.uniform(settings.processing_delay_min, settings.processing_delay_max)


def refund_delay(settings: Settings, rng: random.Random) -> float:
    if settings.test_mode:
        return settings.test_processing_delay
    return rng.uniform(settings.refund_delay_min, settings.refund_delay_max)


def should_succeed(settings: Settings, method: str, rng: random.Random) -> bool:
    if settings.test_mode:
        return settings.test_payment_success
    if method == PaymentMethod.UPI.value:
        rate = settings.upi_success_rate
    else:
        rate = settings.card_success_rate
    return rng.random() < rate


class PaymentProcessor:
    """Settles pending payments: ``pending -> success | failed``."""

    def __init__(self, store: EntityStore, queue: JobQueue, settings: Settings, rng=None, sleep=asyncio.sleep):
        self.store = store
        self.queue = queue
        self.settings = settings
        self.rng = rng or random.Random()
        self.sleep = sleep

    async def process(self, job: dict) -> JobOutcome:
        payment_id = job["payment_id"]
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            logger.info("job_skipped", payment_id=payment_id, reason="payment_missing")
            return JobOutcome.SKIPPED
        if payment.status != PaymentStatus.PENDING:
            logger.info("job_skipped", payment_id=payment_id, reason="payment_not_pending", status=payment.status.value)
            return JobOutcome.SKIPPED

        await self.sleep(settlement_delay(self.settings, self.rng))
        success = should_succeed(self.settings, payment.method, self.rng)

        settled = await self.store.settle_payment(payment_id, success)
        if settled is None:
            # Another delivery of this job settled it while we were waiting
            logger.info("job_skipped", payment_id=payment_id, reason="payment_settled_concurrently")
            return JobOutcome.SKIPPED

        payment, log = settled
        await enqueue_webhook(self.queue, log.id, payment_id=payment_id)
        logger.info("payment_settled", payment_id=payment_id, status=payment.status.value, webhook_log_id=log.id)
        return JobOutcome.COMPLETED


class RefundProcessor:
    """Settles pending refunds: ``pending -> processed``."""

    def __init__(self, store: EntityStore, queue: JobQueue, settings: Settings, rng=None, sleep=asyncio.sleep):
        self.store = store
        self.queue = queue
        self.settings = settings
        self.rng = rng or random.Random()
        self.sleep = sleep

    async def process(self, job: dict) -> JobOutcome:
        refund_id = job["refund_id"]
        refund = await self.store.get_refund(refund_id)
        if refund is None:
            logger.info("job_skipped", refund_id=refund_id, reason="refund_missing")
            return JobOutcome.SKIPPED
        if refund.status == RefundStatus.PROCESSED:
            logger.info("job_skipped", refund_id=refund_id, reason="refund_already_processed")
            return JobOutcome.SKIPPED

        await self.sleep(refund_delay(self.settings, self.rng))

        settled = await self.store.settle_refund(refund_id)
        if settled is None:
            logger.info("job_skipped", refund_id=refund_id, reason="refund_settled_concurrently")
            return JobOutcome.SKIPPED

        refund, log = settled
        await enqueue_webhook(self.queue, log.id, refund_id=refund_id)
        logger.info("refund_processed", refund_id=refund_id, amount=refund.amount, webhook_log_id=log.id)
        return JobOutcome.COMPLETED
