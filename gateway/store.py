import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine

from gateway.database import create_session_factory
from gateway.errors import NotFound, StateConflict
from gateway.models import (
    IdempotencyKey,
    JobStat,
    Merchant,
    Order,
    Payment,
    PaymentStatus,
    Refund,
    RefundStatus,
    WebhookLog,
    WebhookStatus,
    generate_webhook_secret,
    snapshot,
    utcnow,
)

PAYMENT_FAILED_CODE = "PAYMENT_FAILED"
PAYMENT_FAILED_DESCRIPTION = "Payment processing failed"


def event_payload(event: str, key: str, entity) -> dict:
    """Body delivered to the merchant: ``{event, timestamp, data: {key: snapshot}}``."""
    return {
        "event": event,
        "timestamp": int(time.time()),
        "data": {key: snapshot(entity)},
    }


class EntityStore:
    """Typed access to gateway records.

    Every mutation is a single-row UPDATE guarded by the state the caller
    observed. A guard that no longer holds turns the mutation into a no-op and
    the method returns ``None``.
    """

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._sessions = create_session_factory(engine)

    async def close(self):
        await self.engine.dispose()

    def _insert(self, model):
        insert = sqlite.insert if self.engine.dialect.name == "sqlite" else postgresql.insert
        return insert(model)

    # Merchants

    async def get_merchant(self, merchant_id: str) -> Optional[Merchant]:
        async with self._sessions() as session:
            return await session.get(Merchant, merchant_id)

    async def get_merchant_by_email(self, email: str) -> Optional[Merchant]:
        async with self._sessions() as session:
            result = await session.execute(select(Merchant).where(Merchant.email == email).limit(1))
            return result.scalar_one_or_none()

    async def authenticate_merchant(self, api_key: str, api_secret: str) -> Optional[Merchant]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Merchant).where(
                    Merchant.api_key == api_key,
                    Merchant.api_secret == api_secret,
                    Merchant.is_active.is_(True),
                )
            )
            return result.scalar_one_or_none()

    async def add_merchant(self, merchant: Merchant) -> Merchant:
        async with self._sessions() as session:
            session.add(merchant)
            await session.commit()
            await session.refresh(merchant)
            return merchant

    async def set_webhook_url(self, merchant_id: str, webhook_url: Optional[str]) -> Optional[Merchant]:
        return await self._update_merchant(merchant_id, webhook_url=webhook_url)

    async def regenerate_webhook_secret(self, merchant_id: str) -> Optional[Merchant]:
        return await self._update_merchant(merchant_id, webhook_secret=generate_webhook_secret())

    async def _update_merchant(self, merchant_id: str, **values) -> Optional[Merchant]:
        async with self._sessions() as session:
            merchant = await session.get(Merchant, merchant_id)
            if merchant is None:
                return None
            for name, value in values.items():
                setattr(merchant, name, value)
            merchant.updated_at = utcnow()
            await session.commit()
            await session.refresh(merchant)
            return merchant

    # Orders

    async def create_order(self, order: Order) -> Order:
        async with self._sessions() as session:
            session.add(order)
            await session.commit()
            await session.refresh(order)
            return order

    async def get_order(self, order_id: str, merchant_id: Optional[str] = None) -> Optional[Order]:
        async with self._sessions() as session:
            order = await session.get(Order, order_id)
            if order is None or (merchant_id is not None and order.merchant_id != merchant_id):
                return None
            return order

    # Payments

    async def create_payment(self, payment: Payment) -> Payment:
        async with self._sessions() as session:
            session.add(payment)
            await session.commit()
            await session.refresh(payment)
            return payment

    async def get_payment(self, payment_id: str, merchant_id: Optional[str] = None) -> Optional[Payment]:
        async with self._sessions() as session:
            payment = await session.get(Payment, payment_id)
            if payment is None or (merchant_id is not None and payment.merchant_id != merchant_id):
                return None
            return payment

    async def list_payments(self, merchant_id: str, limit: int = 50) -> List[Payment]:
        async with self._sessions() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.merchant_id == merchant_id)
                .order_by(Payment.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def settle_payment(self, payment_id: str, success: bool) -> Optional[Tuple[Payment, WebhookLog]]:
        """Move a pending payment to its terminal status and record the webhook event.

        Both rows are written in one transaction. Returns ``None`` when the
        payment is no longer pending.
        """
        now = utcnow()
        values = {
            "status": PaymentStatus.SUCCESS if success else PaymentStatus.FAILED,
            "error_code": None if success else PAYMENT_FAILED_CODE,
            "error_description": None if success else PAYMENT_FAILED_DESCRIPTION,
            "updated_at": now,
        }
        async with self._sessions() as session:
            result = await session.execute(
                update(Payment)
                .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None

            payment = await session.get(Payment, payment_id, populate_existing=True)
            event = "payment.success" if success else "payment.failed"
            log = WebhookLog(
                merchant_id=payment.merchant_id,
                event=event,
                payload=event_payload(event, "payment", payment),
            )
            session.add(log)
            await session.commit()
            await session.refresh(log)
            return payment, log

    async def capture_payment(self, payment_id: str) -> Optional[Payment]:
        async with self._sessions() as session:
            result = await session.execute(
                update(Payment)
                .where(
                    Payment.id == payment_id,
                    Payment.status == PaymentStatus.SUCCESS,
                    Payment.captured.is_(False),
                )
                .values(captured=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            return await session.get(Payment, payment_id, populate_existing=True)

    # Refunds

    async def create_refund(self, payment_id: str, merchant_id: str, amount: int, reason: Optional[str]) -> Refund:
        """Insert a pending refund if the payment still has that much unrefunded.

        The payment row is locked for the duration so concurrent refunds on the
        same payment are serialized.
        """
        async with self._sessions() as session:
            result = await session.execute(
                select(Payment)
                .where(Payment.id == payment_id, Payment.merchant_id == merchant_id)
                .with_for_update()
            )
            payment = result.scalar_one_or_none()
            if payment is None:
                await session.rollback()
                raise NotFound("Payment not found")
            if payment.status != PaymentStatus.SUCCESS:
                await session.rollback()
                raise StateConflict("Payment not in refundable state")

            refunded = await session.scalar(
                select(func.coalesce(func.sum(Refund.amount), 0)).where(
                    Refund.payment_id == payment_id,
                    Refund.status.in_([RefundStatus.PENDING, RefundStatus.PROCESSED]),
                )
            )
            if amount > payment.amount - int(refunded or 0):
                await session.rollback()
                raise StateConflict("Refund amount exceeds available amount")

            refund = Refund(payment_id=payment_id, merchant_id=merchant_id, amount=amount, reason=reason)
            session.add(refund)
            await session.commit()
            await session.refresh(refund)
            return refund

    async def get_refund(self, refund_id: str, merchant_id: Optional[str] = None) -> Optional[Refund]:
        async with self._sessions() as session:
            refund = await session.get(Refund, refund_id)
            if refund is None or (merchant_id is not None and refund.merchant_id != merchant_id):
                return None
            return refund

    async def settle_refund(self, refund_id: str) -> Optional[Tuple[Refund, WebhookLog]]:
        now = utcnow()
        async with self._sessions() as session:
            result = await session.execute(
                update(Refund)
                .where(Refund.id == refund_id, Refund.status == RefundStatus.PENDING)
                .values(status=RefundStatus.PROCESSED, processed_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None

            refund = await session.get(Refund, refund_id, populate_existing=True)
            event = "refund.processed"
            log = WebhookLog(
                merchant_id=refund.merchant_id,
                event=event,
                payload=event_payload(event, "refund", refund),
            )
            session.add(log)
            await session.commit()
            await session.refresh(log)
            return refund, log

    # Webhook logs

    async def get_webhook_log(self, log_id: str, merchant_id: Optional[str] = None) -> Optional[WebhookLog]:
        async with self._sessions() as session:
            log = await session.get(WebhookLog, log_id)
            if log is None or (merchant_id is not None and log.merchant_id != merchant_id):
                return None
            return log

    async def list_webhook_logs(self, merchant_id: str, limit: int = 10, offset: int = 0) -> Tuple[List[WebhookLog], int]:
        async with self._sessions() as session:
            result = await session.execute(
                select(WebhookLog)
                .where(WebhookLog.merchant_id == merchant_id)
                .order_by(WebhookLog.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            total = await session.scalar(
                select(func.count()).select_from(WebhookLog).where(WebhookLog.merchant_id == merchant_id)
            )
            return list(result.scalars().all()), int(total or 0)

    async def record_delivery_attempt(
        self,
        log_id: str,
        expected_attempts: int,
        status: WebhookStatus,
        last_attempt_at: datetime,
        next_retry_at: Optional[datetime] = None,
        response_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ) -> bool:
        """Persist one attempt's outcome.

        Guarded on the attempts counter the dispatcher read, so two workers
        delivering the same log cannot both record the same attempt.
        """
        async with self._sessions() as session:
            result = await session.execute(
                update(WebhookLog)
                .where(WebhookLog.id == log_id, WebhookLog.attempts == expected_attempts)
                .values(
                    attempts=expected_attempts + 1,
                    status=status,
                    last_attempt_at=last_attempt_at,
                    next_retry_at=next_retry_at,
                    response_code=response_code,
                    response_body=response_body,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def rearm_webhook_log(self, log_id: str, merchant_id: str) -> Optional[WebhookLog]:
        async with self._sessions() as session:
            result = await session.execute(
                update(WebhookLog)
                .where(WebhookLog.id == log_id, WebhookLog.merchant_id == merchant_id)
                .values(status=WebhookStatus.PENDING, attempts=0, next_retry_at=None)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            return await session.get(WebhookLog, log_id, populate_existing=True)

    # Idempotency keys

    async def get_idempotency_key(self, merchant_id: str, key: str) -> Optional[IdempotencyKey]:
        async with self._sessions() as session:
            return await session.get(IdempotencyKey, (merchant_id, key))

    async def delete_idempotency_key(self, merchant_id: str, key: str):
        async with self._sessions() as session:
            await session.execute(
                delete(IdempotencyKey).where(
                    IdempotencyKey.merchant_id == merchant_id,
                    IdempotencyKey.key == key,
                )
            )
            await session.commit()

    async def save_idempotency_key(self, merchant_id: str, key: str, response: dict, expires_at: datetime):
        """Upsert; a concurrent writer for the same key is overwritten."""
        now = utcnow()
        stmt = self._insert(IdempotencyKey).values(
            merchant_id=merchant_id,
            key=key,
            response=response,
            created_at=now,
            expires_at=expires_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[IdempotencyKey.merchant_id, IdempotencyKey.key],
            set_={"response": stmt.excluded.response, "expires_at": stmt.excluded.expires_at},
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    # Job counters

    async def bump_job_stats(self, queue: str, **deltas: int):
        """Add ``deltas`` to the counters of ``queue``, creating its row on first use."""
        stmt = self._insert(JobStat).values(
            queue=queue,
            **{name: deltas.get(name, 0) for name in ("active", "completed", "failed")},
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[JobStat.queue],
            set_={name: getattr(JobStat, name) + delta for name, delta in deltas.items()},
        )
        async with self._sessions() as session:
            await session.execute(stmt)
            await session.commit()

    async def job_stats(self) -> Dict[str, Dict[str, int]]:
        async with self._sessions() as session:
            result = await session.execute(select(JobStat))
            return {
                row.queue: {"active": row.active, "completed": row.completed, "failed": row.failed}
                for row in result.scalars().all()
            }
