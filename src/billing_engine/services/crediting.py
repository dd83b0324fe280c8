"""Exactly-once subscription crediting.

A confirmed transaction extends its owner's plan once. The guard is
``Transaction.credited_at``: it is checked and set under the same row locks
and in the same database transaction as the user's subscription update.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_engine.errors import CreditError
from billing_engine.models import Transaction, User, utcnow
from billing_engine.services.pricing import BILLING_TIERS, get_plan
from billing_engine.services.state_machine import TransactionStatus

logger = logging.getLogger(__name__)

BONUS_DAYS: dict[int, int] = {months: tier.bonus_days for months, tier in BILLING_TIERS.items()}


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month arithmetic, clamping to the end of shorter months.

    31 Jan + 1 month is 28 (or 29) Feb, not 3 Mar.
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def compute_new_expiry(
    current_expiry: datetime | None,
    duration_months: int,
    *,
    now: datetime,
    bonus_days: int | None = None,
) -> datetime:
    """Where a plan ends after buying ``duration_months`` more.

    A plan still running is extended from its current end; an expired or
    missing plan starts from ``now``. Bonus days for the tier are added
    after the month extension.
    """
    if duration_months <= 0:
        raise ValueError("duration_months must be positive")
    if bonus_days is None:
        bonus_days = BONUS_DAYS.get(duration_months, 0)
    anchor = current_expiry if current_expiry is not None and current_expiry > now else now
    return add_months(anchor, duration_months) + timedelta(days=bonus_days)


class SubscriptionCreditor:
    """Applies a confirmed payment to its owner's subscription.

    ``credit`` does not commit. Callers run it in the same database
    transaction as the SUCCESS status write so both land or neither does.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def credit(
        self,
        user_id: int,
        plan_id: str,
        duration_months: int,
        ptn: str,
        *,
        now: datetime | None = None,
    ) -> datetime:
        """Extend ``user_id``'s plan for the transaction ``ptn``.

        Returns the plan's new expiry. Calling it again for a transaction
        that is already credited returns the expiry recorded the first time
        and changes nothing.

        Raises:
            CreditError: if the transaction is not SUCCESS, belongs to
                another user, or the user or plan does not exist.
        """
        now = now or utcnow()

        txn = (
            await self.session.execute(
                select(Transaction)
                .where(Transaction.ptn == ptn)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if txn is None:
            raise CreditError(f"Transaction {ptn} not found")

        if txn.is_credited:
            recorded = (txn.metadata_json or {}).get("credit", {}).get("newExpiry")
            logger.info("Transaction %s already credited; skipping", ptn)
            if recorded:
                return datetime.fromisoformat(recorded)
            user = await self.session.get(User, user_id)
            if user is None or user.plan_expires_at is None:
                raise CreditError(f"Transaction {ptn} is credited but no expiry was recorded")
            return user.plan_expires_at

        if txn.status != TransactionStatus.SUCCESS.value:
            raise CreditError(f"Transaction {ptn} is {txn.status}, not SUCCESS")
        if txn.user_id is not None and txn.user_id != user_id:
            raise CreditError(f"Transaction {ptn} belongs to another user")

        try:
            plan = get_plan(plan_id)
        except ValueError as exc:
            raise CreditError(str(exc)) from exc

        user = (
            await self.session.execute(
                select(User)
                .where(User.id == user_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if user is None:
            raise CreditError(f"User {user_id} not found")

        new_expiry = compute_new_expiry(user.plan_expires_at, int(duration_months), now=now)
        previous_expiry = user.plan_expires_at

        user.role = plan.plan_id
        user.plan_started_at = user.plan_started_at or now
        user.plan_expires_at = new_expiry

        txn.credited_at = now
        txn.metadata_json = {
            **(txn.metadata_json or {}),
            "credit": {
                "planId": plan.plan_id,
                "durationMonths": int(duration_months),
                "bonusDays": BONUS_DAYS.get(int(duration_months), 0),
                "previousExpiry": previous_expiry.isoformat() if previous_expiry else None,
                "newExpiry": new_expiry.isoformat(),
                "creditedAt": now.isoformat(),
            },
        }
        await self.session.flush()

        logger.info(
            "Credited user %s with %s x%s months for %s (expires %s)",
            user_id,
            plan.plan_id,
            duration_months,
            ptn,
            new_expiry.isoformat(),
        )
        return new_expiry

    async def credit_transaction(self, txn: Transaction, *, now: datetime | None = None) -> datetime:
        """Credit using the plan and duration recorded on the transaction."""
        if txn.user_id is None:
            raise CreditError(f"Transaction {txn.ptn} has no owning user")
        if not txn.plan_id or not txn.duration_months:
            raise CreditError(f"Transaction {txn.ptn} has no plan metadata")
        return await self.credit(txn.user_id, txn.plan_id, txn.duration_months, txn.ptn, now=now)
