"""Account model carrying the subscription fields the engine mutates."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from billing_engine.models.base import Base, TimestampMixin


class User(Base, TimestampMixin):
    """Subscriber account.

    Only ``role``, ``plan_started_at`` and ``plan_expires_at`` are written by
    the engine, and only by the subscription crediting service.
    """

    __tablename__ = "billing_user"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="FREE")
    plan_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    plan_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
