"""Pydantic schemas for API request/response models."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Serializes with camelCase keys; accepts either case on input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ============================================================================
# Pricing
# ============================================================================


class PriceResponse(CamelModel):
    plan_id: str
    duration_months: int
    base_price: int
    total_before_discount: int
    discount_amount: int
    final_amount: int
    bonus_days: int
    discount: str
    currency: str = "XAF"


# ============================================================================
# Checkout
# ============================================================================


class S3PCheckoutRequest(CamelModel):
    """Start a mobile money payment."""

    plan_id: str
    duration_months: int
    operator: str = Field(description="Operator alias such as 'orange-money' or a merchant code")
    phone: str = Field(min_length=6)
    customer_name: str | None = None
    service_id: str | None = None


class EnkapCheckoutRequest(CamelModel):
    """Start a hosted E-nkap checkout."""

    plan_id: str
    duration_months: int
    customer_name: str = Field(min_length=1)
    phone: str | None = None
    return_url: str | None = None
    notification_url: str | None = None


class CheckoutResponse(CamelModel):
    ptn: str
    provider: str
    status: str
    amount: int
    currency: str
    message: str = ""
    redirect_url: str | None = None
    merchant_reference: str | None = None
    pricing: PriceResponse


class PayItemResponse(CamelModel):
    pay_item_id: str
    service_id: str | None = None
    merchant: str | None = None
    amount_type: str | None = None
    name: str = ""


# ============================================================================
# Transactions
# ============================================================================


class TransactionResponse(CamelModel):
    id: UUID
    ptn: str
    provider: str
    amount: int
    currency: str
    merchant: str | None = None
    pay_item_id: str | None = None
    status: str
    customer_name: str | None = None
    customer_email: str | None = None
    customer_phone: str | None = None
    metadata_json: dict[str, Any] = Field(default_factory=dict, serialization_alias="metadata")
    user_id: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    expires_at: datetime | None = None
    verified_at: datetime | None = None
    credited_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class TransactionListResponse(CamelModel):
    items: list[TransactionResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class PaymentStatusResponse(CamelModel):
    ptn: str
    status: str
    message: str = ""
    error_code: str | None = None
    credited: bool = False
    plan_expires_at: datetime | None = None
    timed_out: bool = False


class ErrorResponse(BaseModel):
    """Error response schema."""

    detail: str
    code: str | None = None
