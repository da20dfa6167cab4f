import enum
import secrets
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
)

from gateway.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(8)}"


def generate_webhook_secret() -> str:
    return secrets.token_hex(16)


class PaymentMethod(str, enum.Enum):
    UPI = "upi"
    CARD = "card"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class RefundStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"


class WebhookStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def _status_column(enum_cls, **kwargs):
    return Column(
        Enum(enum_cls, native_enum=False, length=16, values_callable=lambda e: [m.value for m in e]),
        **kwargs,
    )


class Merchant(Base):
    __tablename__ = "merchants"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    api_key = Column(String(64), unique=True, nullable=False, index=True)
    api_secret = Column(String(64), nullable=False)
    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(String(64), nullable=True, default=generate_webhook_secret)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, default=lambda: generate_id("order"))
    merchant_id = Column(String(36), ForeignKey("merchants.id"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="INR", nullable=False)
    receipt = Column(String(255), nullable=True)
    notes = Column(JSON, nullable=True)
    status = Column(String(16), default="created", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Payment(Base):
    """Single table for every payment method, discriminated on ``method``."""

    __tablename__ = "payments"

    id = Column(String(64), primary_key=True, default=lambda: generate_id("pay"))
    order_id = Column(String(64), ForeignKey("orders.id"), index=True, nullable=False)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    method = Column(String(16), nullable=False)
    status = _status_column(PaymentStatus, default=PaymentStatus.PENDING, nullable=False)
    captured = Column(Boolean, default=False, nullable=False)
    error_code = Column(String(64), nullable=True)
    error_description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"polymorphic_on": method}


class UpiPayment(Payment):
    vpa = Column(String(255), nullable=True)

    __mapper_args__ = {"polymorphic_identity": PaymentMethod.UPI.value, "polymorphic_load": "inline"}


class CardPayment(Payment):
    # Only the network and last four digits are ever stored
    card_network = Column(String(20), nullable=True)
    card_last4 = Column(String(4), nullable=True)

    __mapper_args__ = {"polymorphic_identity": PaymentMethod.CARD.value, "polymorphic_load": "inline"}


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(String(64), primary_key=True, default=lambda: generate_id("rfnd"))
    payment_id = Column(String(64), ForeignKey("payments.id"), index=True, nullable=False)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    reason = Column(Text, nullable=True)
    status = _status_column(RefundStatus, default=RefundStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)


class WebhookLog(Base):
    __tablename__ = "webhook_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    merchant_id = Column(String(36), ForeignKey("merchants.id"), index=True, nullable=False)
    event = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    status = _status_column(WebhookStatus, default=WebhookStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)
    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    key = Column(String(255), nullable=False)
    merchant_id = Column(String(36), ForeignKey("merchants.id"), nullable=False)
    response = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)

    __table_args__ = (PrimaryKeyConstraint("merchant_id", "key"),)


class JobStat(Base):
    """Outcome counters per work queue, shared by every worker process."""

    __tablename__ = "job_stats"

    queue = Column(String(32), primary_key=True)
    active = Column(Integer, default=0, nullable=False)
    completed = Column(Integer, default=0, nullable=False)
    failed = Column(Integer, default=0, nullable=False)


def snapshot(entity) -> dict:
    """JSON-safe copy of every mapped column of ``entity``."""
    data = {}
    for attr in entity.__mapper__.column_attrs:
        value = getattr(entity, attr.key)
        if isinstance(value, enum.Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        data[attr.key] = value
    return data
