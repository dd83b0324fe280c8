"""Persisted dedupe store for provider webhooks."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, utcnow


class ProcessedWebhook(Base):
    """A PTN whose terminal notification has already been applied."""

    __tablename__ = "processed_webhook"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(16), nullable=False)
    ptn: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "ptn", name="processed_webhook_unique_ptn"),
    )
