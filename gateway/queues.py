import enum
import json
from typing import Awaitable, Callable, Dict, Iterable

import aio_pika
from aio_pika.abc import AbstractIncomingMessage, AbstractQueue
import structlog
from tenacity import retry, stop_after_attempt, wait_exponential

from gateway.store import EntityStore

logger = structlog.get_logger().bind(component="job_queue")

EXCHANGE_NAME = "gateway_jobs"

JobHandler = Callable[[dict], Awaitable[object]]


class QueueName(str, enum.Enum):
    PAYMENTS = "payments"
    WEBHOOKS = "webhooks"
    REFUNDS = "refunds"


class JobOutcome(str, enum.Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"


class JobQueue:
    """The three work queues on RabbitMQ.

    Delivery is at-least-once: a message is acked only after its handler
    returns. Delayed jobs wait in a per-delay holding queue whose TTL expiry
    dead-letters them into the work queue.
    """

    def __init__(self, url: str, store: EntityStore, prefetch: int = 5, retry_delays: Iterable[float] = ()):
        self.url = url
        self.store = store
        self.prefetch = prefetch
        self.retry_delays = tuple(retry_delays)
        self.connection = None
        self.channel = None
        self.exchange = None
        self._delay_queues: Dict[str, AbstractQueue] = {}
        self._consumers = []

    @retry(stop=stop_after_attempt(5), wait=wait_exponential(multiplier=1, min=2, max=10), reraise=True)
    async def connect(self):
        self.connection = await aio_pika.connect_robust(self.url)
        self.channel = await self.connection.channel()
        self.exchange = await self.channel.declare_exchange(
            EXCHANGE_NAME, aio_pika.ExchangeType.DIRECT, durable=True
        )
        for name in QueueName:
            queue = await self.channel.declare_queue(name.value, durable=True)
            await queue.bind(self.exchange, routing_key=name.value)
        # Declared up front so every process knows the holding queues to count
        for delay in self.retry_delays:
            if delay > 0:
                await self._delay_queue(QueueName.WEBHOOKS, int(delay * 1000))
        logger.info("queues_ready", queues=[name.value for name in QueueName])

    async def close(self):
        for queue, tag in self._consumers:
            await queue.cancel(tag)
        self._consumers = []
        if self.connection is not None:
            await self.connection.close()
            self.connection = None
        logger.info("queues_closed")

    async def enqueue(self, queue: QueueName, payload: dict, delay: float = 0):
        if self.channel is None:
            raise RuntimeError("JobQueue is not connected")

        message = aio_pika.Message(
            json.dumps(payload).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        delay_ms = int(delay * 1000)
        if delay_ms <= 0:
            await self.exchange.publish(message, routing_key=queue.value)
        else:
            holding = await self._delay_queue(queue, delay_ms)
            await self.channel.default_exchange.publish(message, routing_key=holding.name)
        logger.info("job_enqueued", queue=queue.value, delay_ms=max(delay_ms, 0), **payload)

    async def _delay_queue(self, queue: QueueName, delay_ms: int):
        name = f"{queue.value}.delay.{delay_ms}"
        if name not in self._delay_queues:
            # One holding queue per delay keeps TTL expiry in FIFO order
            self._delay_queues[name] = await self.channel.declare_queue(
                name,
                durable=True,
                arguments={
                    "x-message-ttl": delay_ms,
                    "x-dead-letter-exchange": EXCHANGE_NAME,
                    "x-dead-letter-routing-key": queue.value,
                },
            )
        return self._delay_queues[name]

    async def consume(self, queue: QueueName, handler: JobHandler):
        channel = await self.connection.channel()
        await channel.set_qos(prefetch_count=self.prefetch)
        work_queue = await channel.declare_queue(queue.value, durable=True)

        async def on_message(message: AbstractIncomingMessage):
            await self.store.bump_job_stats(queue.value, active=1)
            try:
                async with message.process(requeue=False):
                    payload = json.loads(message.body.decode())
                    outcome = await handler(payload)
            except Exception:
                # Rejected by process(); the consumer keeps running
                await self.store.bump_job_stats(queue.value, active=-1, failed=1)
                logger.exception("job_failed", queue=queue.value, redelivered=message.redelivered)
            else:
                await self.store.bump_job_stats(queue.value, active=-1, completed=1)
                logger.info("job_done", queue=queue.value, outcome=getattr(outcome, "value", outcome))

        tag = await work_queue.consume(on_message)
        self._consumers.append((work_queue, tag))
        logger.info("consumer_started", queue=queue.value, prefetch=self.prefetch)

    async def job_counts(self) -> dict:
        """Aggregate counters over the three queues.

        ``pending`` and ``delayed`` come from the broker. ``active``,
        ``completed`` and ``failed`` are kept in the entity store by every
        consuming process.
        """
        counts = {"pending": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}
        for name in QueueName:
            counts["pending"] += await self._message_count(name.value)
        for stats in (await self.store.job_stats()).values():
            for key in ("active", "completed", "failed"):
                counts[key] += stats[key]
        for name in self._delay_queues:
            counts["delayed"] += await self._message_count(name)
        return counts

    async def _message_count(self, name: str) -> int:
        queue = await self.channel.declare_queue(name, passive=True)
        return queue.declaration_result.message_count or 0
