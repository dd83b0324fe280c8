"""Persisted, capacity-bounded record of applied webhooks."""

from __future__ import annotations

import logging

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.models import ProcessedWebhook, utcnow

logger = logging.getLogger(__name__)


class WebhookDeduplicator:
    """Remembers which PTNs already had a terminal webhook applied.

    One row per ``(provider, ptn)``, enforced by a unique constraint so two
    workers cannot both record the same delivery. ``prune`` keeps only the
    newest ``capacity`` rows.
    """

    def __init__(self, session: AsyncSession, capacity: int = 1000):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.session = session
        self.capacity = capacity

    async def is_processed(self, provider: str, ptn: str) -> bool:
        result = await self.session.execute(
            select(ProcessedWebhook.id).where(
                ProcessedWebhook.provider == provider,
                ProcessedWebhook.ptn == ptn,
            )
        )
        return result.first() is not None

    async def mark_processed(self, provider: str, ptn: str, status: str) -> bool:
        """Record a delivery. Returns False if it was already recorded."""
        dialect = self.session.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        stmt = (
            insert(ProcessedWebhook)
            .values(provider=provider, ptn=ptn, status=status, processed_at=utcnow())
            .on_conflict_do_nothing(index_elements=["provider", "ptn"])
        )
        result = await self.session.execute(stmt)
        if not result.rowcount:
            logger.info("Webhook for %s/%s was already recorded", provider, ptn)
            return False
        return True

    async def count(self) -> int:
        return await self.session.scalar(select(func.count()).select_from(ProcessedWebhook)) or 0

    async def prune(self, capacity: int | None = None) -> int:
        """Delete the oldest rows beyond ``capacity``. Returns rows deleted."""
        capacity = capacity or self.capacity
        keep = (
            select(ProcessedWebhook.id)
            .order_by(ProcessedWebhook.processed_at.desc(), ProcessedWebhook.id.desc())
            .limit(capacity)
        )
        result = await self.session.execute(
            delete(ProcessedWebhook).where(ProcessedWebhook.id.not_in(keep.scalar_subquery()))
        )
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Pruned %s processed webhook record(s)", deleted)
        return deleted
