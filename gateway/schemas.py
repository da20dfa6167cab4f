from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from gateway.errors import ValidationFailed
from gateway.models import PaymentStatus, RefundStatus, WebhookStatus


class OrderCreate(BaseModel):
    amount: int = Field(..., ge=100, strict=True, examples=[50000])
    currency: str = Field("INR", min_length=3, max_length=3)
    receipt: Optional[str] = None
    notes: Dict[str, Any] = Field(default_factory=dict)


class OrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    merchant_id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    notes: Optional[Dict[str, Any]] = None
    status: str
    created_at: datetime
    updated_at: datetime


class PublicOrderRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: int
    currency: str
    status: str


class CardDetails(BaseModel):
    number: str = Field(..., min_length=1)
    expiry_month: Union[Annotated[str, Field(min_length=1)], int]
    expiry_year: Union[Annotated[str, Field(min_length=1)], int]
    cvv: str = Field(..., min_length=1)
    holder_name: str = Field(..., min_length=1)


class UpiPaymentCreate(BaseModel):
    order_id: str = Field(..., min_length=1)
    method: Literal["upi"]
    vpa: Optional[str] = None


class CardPaymentCreate(BaseModel):
    order_id: str = Field(..., min_length=1)
    method: Literal["card"]
    card: CardDetails


PaymentCreate = Annotated[Union[UpiPaymentCreate, CardPaymentCreate], Field(discriminator="method")]


class _PaymentReadBase(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    merchant_id: str
    amount: int
    currency: str
    status: PaymentStatus
    captured: bool
    error_code: Optional[str] = None
    error_description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class UpiPaymentRead(_PaymentReadBase):
    method: Literal["upi"]
    vpa: str


class CardPaymentRead(_PaymentReadBase):
    method: Literal["card"]
    card_network: str
    card_last4: str


# Fields the checkout page never sees
PUBLIC_PAYMENT_EXCLUDE = {"merchant_id", "captured", "error_code", "error_description"}


def payment_read(payment, exclude=None) -> dict:
    """Merchant projection of a payment, JSON-ready."""
    model = CardPaymentRead if payment.method == "card" else UpiPaymentRead
    return model.model_validate(payment).model_dump(mode="json", exclude=exclude)


def public_payment_read(payment) -> dict:
    return payment_read(payment, exclude=PUBLIC_PAYMENT_EXCLUDE)


class CaptureRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0, strict=True)


class RefundCreate(BaseModel):
    amount: int = Field(..., gt=0, strict=True)
    reason: Optional[str] = None


class RefundRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    amount: int
    reason: Optional[str] = None
    status: RefundStatus
    created_at: datetime
    processed_at: Optional[datetime] = None


class WebhookLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    event: str
    status: WebhookStatus
    attempts: int
    created_at: datetime
    last_attempt_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    response_code: Optional[int] = None


class WebhookLogPage(BaseModel):
    data: List[WebhookLogRead]
    total: int
    limit: int
    offset: int


class WebhookRetryRead(BaseModel):
    id: str
    status: WebhookStatus
    message: str = "Webhook retry scheduled"


class WebhookConfigUpdate(BaseModel):
    webhook_url: Optional[str] = None


class WebhookConfigRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None


class JobStatusRead(BaseModel):
    pending: int
    processing: int
    completed: int
    failed: int
    worker_status: str
    timestamp: datetime


_payment_create = TypeAdapter(PaymentCreate)


def parse_payment_create(data: Any) -> Union[UpiPaymentCreate, CardPaymentCreate]:
    """Validate a payment request body, mapping schema errors to gateway errors."""
    try:
        return _payment_create.validate_python(data)
    except ValidationError as exc:
        error = exc.errors()[0]
        loc = error.get("loc", ())
        if error["type"] in ("union_tag_invalid", "union_tag_not_found"):
            description = "method must be upi or card"
        elif "order_id" in loc:
            description = "order_id is required"
        elif "card" in loc[1:]:
            # loc[0] is the union tag
            description = "Card details incomplete"
        else:
            description = error.get("msg", "Invalid request")
        raise ValidationFailed(description) from exc
