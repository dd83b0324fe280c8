"""Starting subscription payments with either provider.

Each flow prices the plan, talks to the provider, and persists a PENDING
transaction carrying the plan metadata the crediting service needs later.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_engine.errors import ConfigurationError
from billing_engine.models import User, utcnow
from billing_engine.providers.enkap.client import EnkapClient, OrderItem, OrderRequest
from billing_engine.providers.s3p.gateway import Customer, S3PGateway
from billing_engine.services.pricing import PriceBreakdown, calculate_subscription_price, get_plan
from billing_engine.services.reconciler import StatusReconciler
from billing_engine.services.state_machine import TransactionStatus
from billing_engine.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

CURRENCY = "XAF"

# How long a collected S3P payment may wait for payer confirmation
S3P_PAYMENT_WINDOW = timedelta(hours=1)
ENKAP_ORDER_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class CheckoutResult:
    ptn: str
    provider: str
    status: TransactionStatus
    amount: int
    currency: str
    pricing: PriceBreakdown
    message: str = ""
    redirect_url: str | None = None
    merchant_reference: str | None = None


def _plan_metadata(pricing: PriceBreakdown, **extra: Any) -> dict[str, Any]:
    return {
        "planId": pricing.plan_id,
        "durationMonths": pricing.duration_months,
        "pricing": pricing.to_metadata(),
        **extra,
    }


class CheckoutService:
    """Initiates payments and records them.

    ``reconciler`` is optional; when given, a terminal status returned by
    the collect call itself is applied straight away.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        s3p: S3PGateway | None = None,
        enkap: EnkapClient | None = None,
        reconciler: StatusReconciler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.s3p = s3p
        self.enkap = enkap
        self.reconciler = reconciler
        self._clock = clock

    async def start_s3p_payment(
        self,
        user: User,
        plan_id: str,
        duration_months: int,
        *,
        operator: str,
        phone: str,
        customer_name: str | None = None,
        service_id: str | int | None = None,
    ) -> CheckoutResult:
        """Run packages → quote → collect and persist the PTN.

        Raises:
            ValueError: unknown plan or duration.
            QuoteExpired: the quote lapsed before collect; start over.
            ProviderRejection: the gateway refused a step.
        """
        if self.s3p is None:
            raise ConfigurationError("S3P gateway is not configured")
        pricing = calculate_subscription_price(plan_id, duration_months)
        customer = Customer(
            id=str(user.id),
            name=customer_name or user.name or user.email,
            email=user.email,
            phone=phone,
        )

        packages = await self.s3p.get_packages(service_id)
        package = self.s3p.select_package(packages, operator)
        quote = await self.s3p.create_quote(
            package.pay_item_id,
            pricing.final_amount,
            CURRENCY,
            customer,
            metadata={"planId": pricing.plan_id, "durationMonths": pricing.duration_months},
        )
        trid = uuid4().hex
        collected = await self.s3p.collect(
            quote,
            phone,
            customer,
            transaction_id=trid,
            cdata={"planId": pricing.plan_id, "durationMonths": pricing.duration_months},
        )

        now = self._clock()
        try:
            async with self.session_factory() as session:
                await TransactionStore(session).create(
                    ptn=collected.ptn,
                    provider="s3p",
                    amount=pricing.final_amount,
                    currency=CURRENCY,
                    merchant=package.merchant,
                    pay_item_id=package.pay_item_id,
                    customer_name=customer.name,
                    customer_email=customer.email,
                    customer_phone=phone,
                    user_id=user.id,
                    metadata=_plan_metadata(
                        pricing, trid=trid, quoteId=quote.quote_id, operator=operator
                    ),
                    expires_at=now + S3P_PAYMENT_WINDOW,
                )
                await session.commit()
        except SQLAlchemyError:
            # The debit is already under way; the PTN must not be lost
            logger.exception(
                "Collected S3P payment could not be stored: ptn=%s trid=%s user=%s amount=%s",
                collected.ptn,
                trid,
                user.id,
                pricing.final_amount,
            )
            raise

        status = collected.status.status
        message = collected.status.message
        if collected.status.is_terminal and self.reconciler is not None:
            outcome = await self.reconciler.apply_status(
                collected.ptn, collected.status, source="collect"
            )
            status = outcome.status
        logger.info("S3P checkout for user %s started: ptn=%s status=%s", user.id, collected.ptn, status.value)
        return CheckoutResult(
            ptn=collected.ptn,
            provider="s3p",
            status=status,
            amount=pricing.final_amount,
            currency=CURRENCY,
            pricing=pricing,
            message=message,
        )

    async def start_enkap_payment(
        self,
        user: User,
        plan_id: str,
        duration_months: int,
        *,
        customer_name: str,
        phone: str | None = None,
        return_url: str | None = None,
        notification_url: str | None = None,
    ) -> CheckoutResult:
        """Create an E-nkap order and persist it under its order id.

        Raises:
            ValueError: unknown plan or duration, or an invalid order.
            ProviderRejection: the order was refused.
        """
        if self.enkap is None:
            raise ConfigurationError("E-nkap client is not configured")
        pricing = calculate_subscription_price(plan_id, duration_months)
        plan = get_plan(plan_id)
        merchant_reference = str(uuid4())

        order = await self.enkap.create_order(
            OrderRequest(
                customer_name=customer_name,
                total_amount=pricing.final_amount,
                email=user.email,
                phone_number=phone,
                description=f"Subscription {plan.name} - {pricing.duration_months} months",
                merchant_reference=merchant_reference,
                currency=CURRENCY,
                items=[
                    OrderItem(
                        item_id=plan.plan_id,
                        particulars=f"Subscription {plan.name}",
                        quantity=1,
                        unit_cost=pricing.final_amount,
                    )
                ],
                return_url=return_url,
                notification_url=notification_url,
            )
        )
        ptn = order.order_id or order.merchant_reference

        now = self._clock()
        async with self.session_factory() as session:
            await TransactionStore(session).create(
                ptn=ptn,
                provider="enkap",
                amount=pricing.final_amount,
                currency=CURRENCY,
                merchant="ENKAP",
                pay_item_id=plan.plan_id,
                customer_name=customer_name,
                customer_email=user.email,
                customer_phone=phone,
                user_id=user.id,
                metadata=_plan_metadata(
                    pricing,
                    merchantReference=order.merchant_reference,
                    orderTransactionId=order.order_id,
                ),
                expires_at=now + ENKAP_ORDER_WINDOW,
            )
            await session.commit()

        logger.info("E-nkap checkout for user %s started: ptn=%s", user.id, ptn)
        return CheckoutResult(
            ptn=ptn,
            provider="enkap",
            status=TransactionStatus.PENDING,
            amount=pricing.final_amount,
            currency=CURRENCY,
            pricing=pricing,
            redirect_url=order.redirect_url,
            merchant_reference=order.merchant_reference,
        )
