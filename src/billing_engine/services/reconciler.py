"""Status reconciliation for payment transactions.

Polling and webhooks both end in ``StatusReconciler.apply_status``. For one
PTN, writes are serialized by an in-process keyed lock and by
``SELECT ... FOR UPDATE`` on the row, so a poller and a webhook that observe
SUCCESS at the same moment credit the subscription once.

Rules for an observation against the stored row:

- PENDING observations never change status.
- A PENDING row moves to the observed terminal status; SUCCESS is credited
  in the same database transaction.
- A terminal row never changes status. Re-observing the same status is a
  no-op, except that an uncredited SUCCESS gets another credit attempt.
  SUCCESS observed after a local failure is recorded as a conflict.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import (
    BillingEngineError,
    ConfigurationError,
    CreditError,
    TransientNetworkError,
    VerificationTimedOut,
)
from billing_engine.models import Transaction, utcnow
from billing_engine.providers.base import StatusResult, StatusVerifier
from billing_engine.services.crediting import SubscriptionCreditor
from billing_engine.services.state_machine import TransactionStateMachine, TransactionStatus
from billing_engine.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


class KeyedLock:
    """One ``asyncio.Lock`` per key, dropped when nobody holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass(frozen=True)
class ReconcileOutcome:
    """What the stored transaction looks like after an observation."""

    ptn: str
    status: TransactionStatus
    previous_status: TransactionStatus
    changed: bool = False
    credited: bool = False
    new_expiry: datetime | None = None
    conflict: bool = False
    message: str = ""
    error_code: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not TransactionStatus.PENDING


@dataclass
class SweepSummary:
    checked: int = 0
    updated: int = 0
    credited: int = 0
    failed: int = 0
    ptns: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "credited": self.credited,
            "failed": self.failed,
            "ptns": self.ptns,
        }


def _credit_expiry(txn: Transaction) -> datetime | None:
    recorded = (txn.metadata_json or {}).get("credit", {}).get("newExpiry")
    return datetime.fromisoformat(recorded) if recorded else None


class StatusReconciler:
    """Drives transactions to a terminal status and credits successes.

    Args:
        session_factory: Opens one session per unit of work.
        verifiers: Status sources keyed by ``Transaction.provider``.
        locks: Shared keyed lock; pass the same instance to every reconciler
            in a process.
        poll_interval: Seconds between polling attempts.
        max_attempts: Polling bound before ``VerificationTimedOut``.
        sleep: Awaitable sleep, replaced in tests.
        creditor_factory: Builds the crediting service for a session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        verifiers: Mapping[str, StatusVerifier] | None = None,
        *,
        locks: KeyedLock | None = None,
        poll_interval: float = 3.0,
        max_attempts: int = 60,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        creditor_factory: Callable[[AsyncSession], SubscriptionCreditor] = SubscriptionCreditor,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.session_factory = session_factory
        self.verifiers = dict(verifiers or {})
        self.locks = locks or KeyedLock()
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._creditor_factory = creditor_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Applying observations
    # ------------------------------------------------------------------

    async def apply_status(
        self, ptn: str, result: StatusResult, *, source: str
    ) -> ReconcileOutcome:
        """Apply one normalized observation to the stored transaction.

        The write runs shielded: cancelling the caller (a polling loop that
        hit its bound, a client that went away) does not abort a credit that
        has already started.

        Raises:
            TransactionNotFound: if no transaction is stored under ``ptn``.
        """
        return await asyncio.shield(self._apply_locked(ptn, result, source))

    async def _apply_locked(
        self, ptn: str, result: StatusResult, source: str
    ) -> ReconcileOutcome:
        async with self.locks.hold(ptn):
            try:
                async with self.session_factory() as session:
                    outcome = await self._apply(session, ptn, result, source)
                    await session.commit()
                    return outcome
            except (CreditError, SQLAlchemyError) as exc:
                if result.status is not TransactionStatus.SUCCESS:
                    raise
                logger.exception("Credit for %s failed; recording SUCCESS uncredited", ptn)
                return await self._record_uncredited(ptn, result, source, exc)

    async def _apply(
        self, session: AsyncSession, ptn: str, result: StatusResult, source: str
    ) -> ReconcileOutcome:
        store = TransactionStore(session)
        txn = await store.require(ptn, for_update=True)
        now = self._clock()
        previous = TransactionStatus(txn.status)
        observed = result.status

        if observed is TransactionStatus.PENDING:
            store.annotate(
                txn,
                lastCheckedAt=now.isoformat(),
                lastCheckSource=source,
                lastCheckCode=result.error_code,
            )
            return self._outcome(txn, previous, message=result.message, error_code=result.error_code)

        if TransactionStateMachine.is_terminal(previous):
            return await self._observe_terminal(session, store, txn, result, source, now)

        store.record_status(txn, result, source=source, now=now)
        # The creditor reloads the row; the status write must be flushed first.
        await session.flush()
        new_expiry = None
        if observed is TransactionStatus.SUCCESS:
            new_expiry = await self._creditor_factory(session).credit_transaction(txn, now=now)
            await session.flush()
        return self._outcome(
            txn,
            previous,
            changed=True,
            new_expiry=new_expiry,
            message=result.message,
            error_code=result.error_code,
        )

    async def _observe_terminal(
        self,
        session: AsyncSession,
        store: TransactionStore,
        txn: Transaction,
        result: StatusResult,
        source: str,
        now: datetime,
    ) -> ReconcileOutcome:
        previous = TransactionStatus(txn.status)
        observed = result.status

        if observed is previous:
            new_expiry = _credit_expiry(txn)
            if observed is TransactionStatus.SUCCESS and txn.credited_at is None:
                new_expiry = await self._creditor_factory(session).credit_transaction(txn, now=now)
                store.annotate(txn, creditError=None)
                await session.flush()
            return self._outcome(txn, previous, new_expiry=new_expiry)

        if observed is TransactionStatus.SUCCESS:
            logger.warning(
                "Transaction %s is %s locally but %s reported SUCCESS; keeping %s",
                txn.ptn,
                previous.value,
                source,
                previous.value,
            )
            store.append_metadata(
                txn,
                "conflicts",
                {
                    "source": source,
                    "observed": observed.value,
                    "stored": previous.value,
                    "rawStatus": result.raw_status,
                    "at": now.isoformat(),
                },
            )
            return self._outcome(txn, previous, conflict=True)

        logger.info(
            "Ignoring %s for %s from %s: already %s",
            observed.value,
            txn.ptn,
            source,
            previous.value,
        )
        return self._outcome(txn, previous, new_expiry=_credit_expiry(txn))

    async def _record_uncredited(
        self, ptn: str, result: StatusResult, source: str, error: Exception
    ) -> ReconcileOutcome:
        """Persist SUCCESS without the credit so the retry sweep can find it."""
        async with self.session_factory() as session:
            store = TransactionStore(session)
            txn = await store.require(ptn, for_update=True)
            previous = TransactionStatus(txn.status)
            now = self._clock()
            changed = False
            if previous is TransactionStatus.PENDING:
                store.record_status(txn, result, source=source, now=now)
                changed = True
            store.annotate(
                txn,
                creditError={"message": str(error), "type": type(error).__name__, "at": now.isoformat()},
            )
            await session.commit()
            return self._outcome(
                txn,
                previous,
                changed=changed,
                message=result.message,
                error_code=result.error_code,
            )

    def _outcome(
        self,
        txn: Transaction,
        previous: TransactionStatus,
        *,
        changed: bool = False,
        new_expiry: datetime | None = None,
        conflict: bool = False,
        message: str = "",
        error_code: str | None = None,
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            ptn=txn.ptn,
            status=TransactionStatus(txn.status),
            previous_status=previous,
            changed=changed,
            credited=txn.is_credited,
            new_expiry=new_expiry,
            conflict=conflict,
            message=message or (txn.error_message or ""),
            error_code=error_code or txn.error_code,
        )

    # ------------------------------------------------------------------
    # Verification and polling
    # ------------------------------------------------------------------

    async def lookup(self, ptn: str) -> Transaction:
        """Current stored state of ``ptn``.

        Raises:
            TransactionNotFound: if nothing is stored under ``ptn``.
        """
        async with self.session_factory() as session:
            return await TransactionStore(session).require(ptn)

    def _verifier_for(self, txn: Transaction) -> StatusVerifier:
        try:
            return self.verifiers[txn.provider]
        except KeyError:
            raise ConfigurationError(
                f"No status verifier configured for provider {txn.provider!r}"
            ) from None

    async def verify_once(self, ptn: str, *, source: str = "poll") -> ReconcileOutcome:
        """Ask the provider once and apply the answer.

        A transaction that is already terminal and credited is answered from
        the database without a network call. Network failures count as a
        PENDING observation.
        """
        txn = await self.lookup(ptn)
        previous = TransactionStatus(txn.status)
        if TransactionStateMachine.is_terminal(previous) and (
            previous is not TransactionStatus.SUCCESS or txn.credited_at is not None
        ):
            return self._outcome(txn, previous, new_expiry=_credit_expiry(txn))

        if previous is TransactionStatus.SUCCESS:
            # Uncredited success: retry the credit without asking the provider.
            result = StatusResult(status=TransactionStatus.SUCCESS, ptn=ptn)
        else:
            verifier = self._verifier_for(txn)
            try:
                result = await verifier.verify(ptn, merchant_reference=txn.merchant_reference)
            except TransientNetworkError as exc:
                logger.warning("Verification of %s failed transiently: %s", ptn, exc)
                return self._outcome(txn, previous, message=str(exc), error_code="NETWORK")
        return await self.apply_status(ptn, result, source=source)

    async def poll(
        self,
        ptn: str,
        *,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> ReconcileOutcome:
        """Verify ``ptn`` until it is terminal or the attempt bound is hit.

        Stops early when the row turns terminal through another path (a
        webhook). Exceeding the bound leaves the transaction PENDING.

        Raises:
            ValueError: if ``max_attempts`` is below 1.
            VerificationTimedOut: if still PENDING after ``max_attempts``.
        """
        attempts = self.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        delay = self.poll_interval if interval is None else interval
        for attempt in range(1, attempts + 1):
            outcome = await self.verify_once(ptn)
            if outcome.is_terminal:
                logger.info("Polling %s settled as %s after %s attempt(s)", ptn, outcome.status.value, attempt)
                return outcome
            if attempt < attempts:
                await self._sleep(delay)
        logger.info("Polling %s gave up after %s attempts; still pending", ptn, attempts)
        raise VerificationTimedOut(ptn, attempts)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def verify_pending(
        self, older_than: timedelta = timedelta(minutes=5), limit: int = 50
    ) -> SweepSummary:
        """Re-verify PENDING transactions that have waited longer than ``older_than``."""
        async with self.session_factory() as session:
            stale = await TransactionStore(session).find_stale_pending(
                older_than, limit, now=self._clock()
            )
            ptns = [txn.ptn for txn in stale]

        summary = SweepSummary()
        for ptn in ptns:
            summary.checked += 1
            try:
                outcome = await self.verify_once(ptn, source="sweep")
            except BillingEngineError:
                logger.exception("Sweep verification of %s failed", ptn)
                summary.failed += 1
                continue
            if outcome.changed:
                summary.updated += 1
                summary.ptns.append(ptn)
            if outcome.changed and outcome.credited:
                summary.credited += 1
        logger.info(
            "Pending sweep: checked=%s updated=%s failed=%s",
            summary.checked,
            summary.updated,
            summary.failed,
        )
        return summary

    async def retry_uncredited(self, limit: int | None = None) -> SweepSummary:
        """Credit SUCCESS transactions whose credit never landed."""
        async with self.session_factory() as session:
            pending = await TransactionStore(session).find_uncredited_successes(limit)
            ptns = [txn.ptn for txn in pending]

        summary = SweepSummary()
        for ptn in ptns:
            summary.checked += 1
            outcome = await self.apply_status(
                ptn, StatusResult(status=TransactionStatus.SUCCESS, ptn=ptn), source="credit-retry"
            )
            if outcome.credited:
                summary.credited += 1
                summary.ptns.append(ptn)
            else:
                summary.failed += 1
        logger.info(
            "Credit retry sweep: checked=%s credited=%s failed=%s",
            summary.checked,
            summary.credited,
            summary.failed,
        )
        return summary

    async def expire_stale(self) -> list[str]:
        """Expire PENDING transactions past their ``expires_at``."""
        async with self.session_factory() as session:
            expired = await TransactionStore(session).expire_stale(now=self._clock())
            await session.commit()
        if expired:
            logger.info("Expired %s stale transaction(s)", len(expired))
        return expired

