"""Persistence for payment transactions, keyed by PTN."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import TransactionNotFound
from billing_engine.models import Transaction, utcnow
from billing_engine.providers.base import StatusResult
from billing_engine.services.state_machine import TransactionStateMachine, TransactionStatus

logger = logging.getLogger(__name__)


class TransactionStore:
    """Reads and writes ``Transaction`` rows inside the caller's session.

    The store never commits; the caller owns the database transaction so a
    status write and the subscription credit can land together.

    Status writes go through ``record_status``, which enforces the state
    machine. Metadata is only ever merged, never replaced, and may still be
    annotated once a row is terminal.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        *,
        ptn: str,
        provider: str,
        amount: int,
        currency: str = "XAF",
        merchant: str | None = None,
        pay_item_id: str | None = None,
        customer_name: str | None = None,
        customer_email: str | None = None,
        customer_phone: str | None = None,
        user_id: int | None = None,
        metadata: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> Transaction:
        """Persist a new PENDING transaction.

        Raises:
            ValueError: if a transaction with this PTN already exists or the
                amount is not positive.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        if await self.get_by_ptn(ptn) is not None:
            raise ValueError(f"Transaction {ptn} already exists")

        txn = Transaction(
            ptn=ptn,
            provider=provider,
            amount=amount,
            currency=currency,
            merchant=merchant,
            pay_item_id=pay_item_id,
            status=TransactionStatus.PENDING.value,
            customer_name=customer_name,
            customer_email=customer_email,
            customer_phone=customer_phone,
            user_id=user_id,
            metadata_json=dict(metadata or {}),
            expires_at=expires_at,
        )
        self.session.add(txn)
        await self.session.flush()
        logger.info("Transaction %s created (%s, %s %s)", ptn, provider, amount, currency)
        return txn

    async def get_by_ptn(self, ptn: str) -> Transaction | None:
        result = await self.session.execute(select(Transaction).where(Transaction.ptn == ptn))
        return result.scalar_one_or_none()

    async def get_for_update(self, ptn: str) -> Transaction | None:
        """Load a row with ``SELECT ... FOR UPDATE``."""
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.ptn == ptn)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require(self, ptn: str, *, for_update: bool = False) -> Transaction:
        txn = await (self.get_for_update(ptn) if for_update else self.get_by_ptn(ptn))
        if txn is None:
            raise TransactionNotFound(ptn)
        return txn

    async def get_by_merchant_reference(self, reference: str) -> Transaction | None:
        result = await self.session.execute(
            select(Transaction).where(
                Transaction.metadata_json["merchantReference"].as_string() == reference
            )
        )
        return result.scalars().first()

    async def list_for_user(
        self,
        user_id: int,
        *,
        limit: int = 20,
        offset: int = 0,
        status: str | None = None,
    ) -> tuple[list[Transaction], int, bool]:
        """Page through a user's transactions, newest first.

        Returns:
            ``(items, total, has_more)``
        """
        conditions = [Transaction.user_id == user_id]
        if status:
            conditions.append(Transaction.status == status.upper())

        total = await self.session.scalar(
            select(func.count()).select_from(Transaction).where(*conditions)
        )
        result = await self.session.execute(
            select(Transaction)
            .where(*conditions)
            .order_by(Transaction.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        items = list(result.scalars().all())
        total = total or 0
        return items, total, offset + len(items) < total

    async def is_paid(self, ptn: str) -> bool:
        txn = await self.get_by_ptn(ptn)
        return txn is not None and txn.status == TransactionStatus.SUCCESS.value

    def annotate(self, txn: Transaction, **values: Any) -> None:
        """Merge keys into the transaction's metadata."""
        # Reassign so the JSON column is marked dirty.
        txn.metadata_json = {**(txn.metadata_json or {}), **values}

    def append_metadata(self, txn: Transaction, key: str, entry: dict[str, Any]) -> None:
        existing = list((txn.metadata_json or {}).get(key) or [])
        existing.append(entry)
        self.annotate(txn, **{key: existing})

    def record_status(
        self,
        txn: Transaction,
        result: StatusResult,
        *,
        source: str,
        now: datetime | None = None,
    ) -> None:
        """Move a PENDING transaction to the observed status.

        Raises:
            InvalidTransitionError: if the row is already terminal.
        """
        now = now or utcnow()
        TransactionStateMachine.validate_transition(txn.status, result.status.value)

        previous = txn.status
        txn.status = result.status.value
        txn.error_code = result.error_code
        txn.error_message = (result.message or None) if result.status is not TransactionStatus.SUCCESS else None
        if txn.verified_at is None:
            txn.verified_at = now
        self.append_metadata(
            txn,
            "statusHistory",
            {
                "source": source,
                "status": result.status.value,
                "rawStatus": result.raw_status,
                "at": now.isoformat(),
            },
        )
        logger.info(
            "Transaction %s: %s -> %s (source=%s, code=%s)",
            txn.ptn,
            previous,
            txn.status,
            source,
            result.error_code,
        )

    async def find_stale_pending(
        self, older_than: timedelta, limit: int = 50, *, now: datetime | None = None
    ) -> list[Transaction]:
        cutoff = (now or utcnow()) - older_than
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PENDING.value,
                Transaction.created_at < cutoff,
            )
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_uncredited_successes(self, limit: int | None = None) -> list[Transaction]:
        """SUCCESS rows whose subscription credit has not landed yet."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.SUCCESS.value,
                Transaction.credited_at.is_(None),
                Transaction.user_id.is_not(None),
            )
            .order_by(Transaction.created_at)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def expire_stale(self, *, now: datetime | None = None) -> list[str]:
        """Mark PENDING rows past their ``expires_at`` as EXPIRED.

        Returns the PTNs that were expired.
        """
        now = now or utcnow()
        result = await self.session.execute(
            select(Transaction)
            .where(
                Transaction.status == TransactionStatus.PENDING.value,
                Transaction.expires_at.is_not(None),
                Transaction.expires_at < now,
            )
            .with_for_update()
        )
        expired: list[str] = []
        for txn in result.scalars().all():
            self.record_status(
                txn,
                StatusResult(
                    status=TransactionStatus.EXPIRED,
                    message="Payment window elapsed without confirmation",
                    error_code="LOCAL_EXPIRY",
                ),
                source="expiry",
                now=now,
            )
            expired.append(txn.ptn)
        if expired:
            await self.session.flush()
        return expired
