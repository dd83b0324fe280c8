"""Payment transaction model."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from billing_engine.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from billing_engine.models.user import User


class Transaction(Base, TimestampMixin):
    """One payment attempt, keyed by the provider transaction number (PTN).

    ``amount`` and ``currency`` are fixed at creation. ``status`` only moves
    out of PENDING once; ``credited_at`` is the exactly-once guard for the
    subscription credit.
    """

    __tablename__ = "payment_transaction"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    ptn: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="XAF")
    merchant: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pay_item_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("billing_user.id", ondelete="SET NULL"),
        nullable=True,
    )
    error_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    verified_at: Mapped[datetime | None] = mapped_column(nullable=True)
    credited_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'SUCCESS', 'FAILED', 'CANCELLED', 'EXPIRED')",
            name="payment_transaction_status_check",
        ),
        CheckConstraint("amount > 0", name="payment_transaction_amount_check"),
        CheckConstraint(
            "provider IN ('s3p', 'enkap')",
            name="payment_transaction_provider_check",
        ),
        CheckConstraint(
            "credited_at IS NULL OR status = 'SUCCESS'",
            name="payment_transaction_credit_requires_success",
        ),
        Index("ix_payment_transaction_status_created", "status", "created_at"),
        Index("ix_payment_transaction_user", "user_id"),
    )

    # Relationships
    user: Mapped[User | None] = relationship()

    @validates("amount", "currency")
    def _freeze_money(self, key: str, value: Any) -> Any:
        current = getattr(self, key, None)
        if current is not None and current != value:
            raise ValueError(f"{key} is immutable once a transaction is created")
        return value

    @property
    def is_credited(self) -> bool:
        return self.credited_at is not None

    @property
    def plan_id(self) -> str | None:
        return self.metadata_json.get("planId")

    @property
    def duration_months(self) -> int | None:
        value = self.metadata_json.get("durationMonths")
        return int(value) if value is not None else None

    @property
    def merchant_reference(self) -> str | None:
        return self.metadata_json.get("merchantReference")
