from typing import Any, Dict, Optional, Union

import structlog

from gateway.errors import NotFound, StateConflict, ValidationFailed
from gateway.idempotency import IdempotencyGuard
from gateway.models import CardPayment, Merchant, Order, Payment, PaymentStatus, UpiPayment, utcnow
from gateway.queues import JobQueue, QueueName
from gateway.schemas import (
    CardPaymentCreate,
    OrderCreate,
    RefundCreate,
    UpiPaymentCreate,
    WebhookLogRead,
    parse_payment_create,
    payment_read,
    public_payment_read,
)
from gateway.store import EntityStore
from gateway.validation import (
    detect_card_network,
    digits_only,
    is_valid_vpa,
    luhn_check,
    validate_expiry,
)

logger = structlog.get_logger().bind(component="gateway_service")


def build_payment(order: Order, request: Union[UpiPaymentCreate, CardPaymentCreate]):
    """Validate the method details and build the pending payment for ``order``."""
    common = dict(
        order_id=order.id,
        merchant_id=order.merchant_id,
        amount=order.amount,
        currency=order.currency,
    )
    if isinstance(request, UpiPaymentCreate):
        if not is_valid_vpa(request.vpa):
            raise ValidationFailed("Invalid VPA format", code="INVALID_VPA")
        return UpiPayment(vpa=request.vpa, **common)

    card = request.card
    number = digits_only(card.number)
    if not luhn_check(number):
        raise ValidationFailed("Card validation failed", code="INVALID_CARD")
    if not validate_expiry(card.expiry_month, card.expiry_year):
        raise ValidationFailed("Card expiry date invalid", code="EXPIRED_CARD")
    # Number and CVV go no further than this function
    return CardPayment(card_network=detect_card_network(number), card_last4=number[-4:], **common)


class GatewayService:
    """Synchronous merchant operations; the workers pick up from the queues."""

    def __init__(self, store: EntityStore, queue: JobQueue, guard: IdempotencyGuard):
        self.store = store
        self.queue = queue
        self.guard = guard

    # Orders

    async def create_order(self, merchant: Merchant, request: OrderCreate) -> Order:
        order = Order(
            merchant_id=merchant.id,
            amount=request.amount,
            currency=request.currency,
            receipt=request.receipt,
            notes=request.notes,
        )
        order = await self.store.create_order(order)
        logger.info("order_created", order_id=order.id, merchant_id=merchant.id, amount=order.amount)
        return order

    async def get_order(self, merchant: Merchant, order_id: str) -> Order:
        order = await self.store.get_order(order_id, merchant.id)
        if order is None:
            raise NotFound("Order not found")
        return order

    async def get_public_order(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    # Payments

    async def create_payment(
        self,
        merchant: Merchant,
        request: Union[Dict[str, Any], UpiPaymentCreate, CardPaymentCreate],
        idempotency_key: Optional[str] = None,
    ) -> dict:
        """Create a payment, or replay the response first given for ``idempotency_key``.

        A raw request body is validated inside the guard, so a live key
        replays its response even when the repeated body no longer validates.
        """
        async def create() -> dict:
            parsed = parse_payment_create(request) if isinstance(request, dict) else request
            order = await self.store.get_order(parsed.order_id, merchant.id)
            if order is None:
                raise NotFound("Order not found")
            return payment_read(await self._start_payment(order, parsed))

        return await self.guard.run(merchant.id, idempotency_key, create)

    async def create_public_payment(self, request: Union[UpiPaymentCreate, CardPaymentCreate]) -> dict:
        order = await self.store.get_order(request.order_id)
        if order is None:
            raise NotFound("Order not found")
        return public_payment_read(await self._start_payment(order, request))

    async def _start_payment(self, order: Order, request) -> Payment:
        payment = await self.store.create_payment(build_payment(order, request))
        await self.queue.enqueue(QueueName.PAYMENTS, {"payment_id": payment.id})
        logger.info("payment_created", payment_id=payment.id, order_id=order.id, method=payment.method)
        return payment

    async def get_payment(self, merchant: Merchant, payment_id: str) -> dict:
        payment = await self.store.get_payment(payment_id, merchant.id)
        if payment is None:
            raise NotFound("Payment not found")
        return payment_read(payment)

    async def get_public_payment(self, payment_id: str) -> dict:
        payment = await self.store.get_payment(payment_id)
        if payment is None:
            raise NotFound("Payment not found")
        return public_payment_read(payment)

    async def list_payments(self, merchant: Merchant, limit: int = 50) -> list:
        return [payment_read(p) for p in await self.store.list_payments(merchant.id, limit)]

    async def capture_payment(self, merchant: Merchant, payment_id: str, amount: Optional[int] = None) -> dict:
        payment = await self.store.get_payment(payment_id, merchant.id)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.status != PaymentStatus.SUCCESS or payment.captured:
            raise StateConflict("Payment not in capturable state")
        if amount is not None and amount != payment.amount:
            raise ValidationFailed("Capture amount mismatch")

        captured = await self.store.capture_payment(payment_id)
        if captured is None:
            raise StateConflict("Payment not in capturable state")
        logger.info("payment_captured", payment_id=payment_id, amount=captured.amount)
        return payment_read(captured)

    # Refunds

    async def create_refund(self, merchant: Merchant, payment_id: str, request: RefundCreate):
        refund = await self.store.create_refund(payment_id, merchant.id, request.amount, request.reason)
        await self.queue.enqueue(QueueName.REFUNDS, {"refund_id": refund.id})
        logger.info("refund_created", refund_id=refund.id, payment_id=payment_id, amount=refund.amount)
        return refund

    async def get_refund(self, merchant: Merchant, refund_id: str):
        refund = await self.store.get_refund(refund_id, merchant.id)
        if refund is None:
            raise NotFound("Refund not found")
        return refund

    # Webhooks

    async def list_webhook_logs(self, merchant: Merchant, limit: int = 10, offset: int = 0) -> dict:
        logs, total = await self.store.list_webhook_logs(merchant.id, limit, offset)
        return {
            "data": [WebhookLogRead.model_validate(log) for log in logs],
            "total": total,
            "limit": limit,
            "offset": offset,
        }

    async def retry_webhook(self, merchant: Merchant, log_id: str):
        log = await self.store.rearm_webhook_log(log_id, merchant.id)
        if log is None:
            raise NotFound("Webhook log not found")
        await self.queue.enqueue(QueueName.WEBHOOKS, {"log_id": log.id})
        logger.info("webhook_rearmed", log_id=log_id, merchant_id=merchant.id)
        return log

    async def get_webhook_config(self, merchant: Merchant) -> Merchant:
        return await self.store.get_merchant(merchant.id)

    async def set_webhook_url(self, merchant: Merchant, webhook_url: Optional[str]) -> Merchant:
        return await self.store.set_webhook_url(merchant.id, webhook_url)

    async def regenerate_webhook_secret(self, merchant: Merchant) -> Merchant:
        return await self.store.regenerate_webhook_secret(merchant.id)

    # Jobs

    async def job_status(self) -> dict:
        status = {
            "pending": 0,
            "processing": 0,
            "completed": 0,
            "failed": 0,
            "worker_status": "running",
            "timestamp": utcnow(),
        }
        try:
            counts = await self.queue.job_counts()
        except Exception as exc:
            logger.error("job_counts_unavailable", error=str(exc))
            status["worker_status"] = "error"
            return status

        status["pending"] = counts["pending"] + counts.get("delayed", 0)
        status["processing"] = counts["active"]
        status["completed"] = counts["completed"]
        status["failed"] = counts["failed"]
        return status
