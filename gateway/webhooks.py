import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import structlog

from gateway.backoff import PRODUCTION_SCHEDULE, BackoffSchedule
from gateway.models import WebhookStatus, utcnow
from gateway.queues import JobOutcome, JobQueue, QueueName
from gateway.store import EntityStore

logger = structlog.get_logger().bind(component="webhook_dispatcher")

SIGNATURE_HEADER = "X-Webhook-Signature"


def serialize_payload(payload: dict) -> bytes:
    """Canonical JSON: sorted keys, no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new((secret or "").encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookDispatcher:
    """Delivers webhook logs to the merchant endpoint with bounded retries.

    Each attempt, successful or not, is written back to the log before any
    retry is enqueued. After ``max_attempts`` failures the log is marked
    ``failed`` and only an operator re-arm resumes delivery.
    """

    def __init__(
        self,
        store: EntityStore,
        queue: JobQueue,
        http: httpx.AsyncClient,
        schedule: BackoffSchedule = PRODUCTION_SCHEDULE,
        max_attempts: int = 5,
        timeout: float = 5.0,
        clock=utcnow,
    ):
        self.store = store
        self.queue = queue
        self.http = http
        self.schedule = schedule
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.clock = clock

    async def deliver(self, job: dict) -> JobOutcome:
        log_id = job["log_id"]
        log = await self.store.get_webhook_log(log_id)
        if log is None:
            logger.info("job_skipped", log_id=log_id, reason="log_missing")
            return JobOutcome.SKIPPED
        if log.status != WebhookStatus.PENDING:
            logger.info("job_skipped", log_id=log_id, reason="log_not_pending", status=log.status.value)
            return JobOutcome.SKIPPED

        merchant = await self.store.get_merchant(log.merchant_id)
        if merchant is None:
            logger.warning("job_skipped", log_id=log_id, reason="merchant_missing")
            return JobOutcome.SKIPPED

        now = self.clock()
        if not merchant.webhook_url:
            recorded = await self.store.record_delivery_attempt(
                log.id, log.attempts, status=WebhookStatus.SUCCESS, last_attempt_at=now
            )
            logger.info("webhook_not_configured", log_id=log_id, merchant_id=merchant.id)
            return JobOutcome.COMPLETED if recorded else JobOutcome.SKIPPED

        body = serialize_payload(log.payload)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, merchant.webhook_secret),
        }

        response_code = None
        try:
            response = await self.http.post(merchant.webhook_url, content=body, headers=headers, timeout=self.timeout)
            response_code = response.status_code
            response_body = response.text
            delivered = response.is_success
        except httpx.HTTPError as exc:
            response_body = f"{type(exc).__name__}: {exc}"
            delivered = False

        attempts = log.attempts + 1
        next_retry_at = None
        delay = None
        if delivered:
            status = WebhookStatus.SUCCESS
        elif attempts >= self.max_attempts:
            status = WebhookStatus.FAILED
        else:
            status = WebhookStatus.PENDING
            delay = self.schedule.delay_for(attempts + 1)
            next_retry_at = now + timedelta(seconds=delay)

        recorded = await self.store.record_delivery_attempt(
            log.id,
            log.attempts,
            status=status,
            last_attempt_at=now,
            next_retry_at=next_retry_at,
            response_code=response_code,
            response_body=response_body,
        )
        if not recorded:
            logger.info("job_skipped", log_id=log_id, reason="attempt_recorded_concurrently")
            return JobOutcome.SKIPPED

        if status == WebhookStatus.SUCCESS:
            logger.info("webhook_delivered", log_id=log_id, webhook_event=log.event, attempts=attempts, response_code=response_code)
            return JobOutcome.COMPLETED
        if status == WebhookStatus.FAILED:
            logger.warning("webhook_exhausted", log_id=log_id, webhook_event=log.event, attempts=attempts, response_code=response_code)
            return JobOutcome.FAILED

        await self.queue.enqueue(QueueName.WEBHOOKS, {"log_id": log.id}, delay=delay)
        logger.info("webhook_retry_scheduled", log_id=log_id, attempts=attempts, delay=delay, response_code=response_code)
        return JobOutcome.RETRY_SCHEDULED
