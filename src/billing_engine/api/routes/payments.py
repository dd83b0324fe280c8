"""Payment API endpoints."""

from typing import Annotated

from fastapi import APIRouter, HTTPException, Path, Query, Response, status

from billing_engine.api.dependencies import DbSession, Services, UserId
from billing_engine.api.schemas import (
    CheckoutResponse,
    EnkapCheckoutRequest,
    ErrorResponse,
    PaymentStatusResponse,
    PayItemResponse,
    PriceResponse,
    S3PCheckoutRequest,
    TransactionListResponse,
    TransactionResponse,
)
from billing_engine.errors import VerificationTimedOut
from billing_engine.models import Transaction, User
from billing_engine.services.checkout import CheckoutResult
from billing_engine.services.pricing import PriceBreakdown, calculate_subscription_price
from billing_engine.services.reconciler import ReconcileOutcome
from billing_engine.services.state_machine import TransactionStatus
from billing_engine.services.transaction_store import TransactionStore

router = APIRouter(prefix="/payments", tags=["payments"])

PENDING_MESSAGE = "Payment is still pending. Check back later."
RETRY_MESSAGE = "The payment did not go through. Please try again."


def _price_response(pricing: PriceBreakdown) -> PriceResponse:
    return PriceResponse(
        plan_id=pricing.plan_id,
        duration_months=pricing.duration_months,
        base_price=pricing.base_price,
        total_before_discount=pricing.total_before_discount,
        discount_amount=pricing.discount_amount,
        final_amount=pricing.final_amount,
        bonus_days=pricing.bonus_days,
        discount=str(pricing.discount),
    )


def _checkout_response(result: CheckoutResult) -> CheckoutResponse:
    return CheckoutResponse(
        ptn=result.ptn,
        provider=result.provider,
        status=result.status.value,
        amount=result.amount,
        currency=result.currency,
        message=result.message,
        redirect_url=result.redirect_url,
        merchant_reference=result.merchant_reference,
        pricing=_price_response(result.pricing),
    )


async def _get_user(db: DbSession, user_id: int) -> User:
    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


async def _owned_transaction(db: DbSession, ptn: str, user_id: int) -> Transaction:
    txn = await TransactionStore(db).get_by_ptn(ptn)
    if txn is None or txn.user_id != user_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")
    return txn


def _status_message(outcome: ReconcileOutcome) -> str:
    if outcome.status is TransactionStatus.PENDING:
        return PENDING_MESSAGE
    if outcome.status is TransactionStatus.SUCCESS:
        return outcome.message or "Payment confirmed"
    return outcome.message or RETRY_MESSAGE


# ============================================================================
# Pricing and packages
# ============================================================================


@router.get(
    "/pricing",
    response_model=PriceResponse,
    responses={400: {"model": ErrorResponse}},
)
async def get_pricing(
    plan_id: Annotated[str, Query(alias="planId")],
    duration_months: Annotated[int, Query(alias="durationMonths")],
) -> PriceResponse:
    """Price a plan for a billing duration."""
    try:
        return _price_response(calculate_subscription_price(plan_id, duration_months))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get(
    "/s3p/packages",
    response_model=list[PayItemResponse],
    responses={502: {"model": ErrorResponse}},
)
async def list_s3p_packages(
    services: Services,
    service_id: Annotated[str | None, Query(alias="serviceId")] = None,
    operator: str | None = None,
) -> list[PayItemResponse]:
    """List S3P pay items, optionally only those of one operator."""
    gateway = services.require_s3p()
    packages = await gateway.get_packages(service_id)
    if operator:
        merchant = gateway.select_package(packages, operator).merchant
        packages = [p for p in packages if p.merchant == merchant]
    return [PayItemResponse.model_validate(p) for p in packages]


# ============================================================================
# Checkout
# ============================================================================


@router.post(
    "/s3p",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def start_s3p_payment(
    db: DbSession,
    services: Services,
    user_id: UserId,
    payload: S3PCheckoutRequest,
) -> CheckoutResponse:
    """Quote and collect a mobile money payment for a plan."""
    user = await _get_user(db, user_id)
    try:
        result = await services.checkout.start_s3p_payment(
            user,
            payload.plan_id,
            payload.duration_months,
            operator=payload.operator,
            phone=payload.phone,
            customer_name=payload.customer_name,
            service_id=payload.service_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _checkout_response(result)


@router.post(
    "/enkap",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
)
async def start_enkap_payment(
    db: DbSession,
    services: Services,
    user_id: UserId,
    payload: EnkapCheckoutRequest,
) -> CheckoutResponse:
    """Create a hosted checkout order; the payer continues at ``redirectUrl``."""
    user = await _get_user(db, user_id)
    try:
        result = await services.checkout.start_enkap_payment(
            user,
            payload.plan_id,
            payload.duration_months,
            customer_name=payload.customer_name,
            phone=payload.phone,
            return_url=payload.return_url,
            notification_url=payload.notification_url,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return _checkout_response(result)


# ============================================================================
# Transactions
# ============================================================================


@router.get("/transactions", response_model=TransactionListResponse)
async def list_transactions(
    db: DbSession,
    user_id: UserId,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
    status_filter: Annotated[str | None, Query(alias="status")] = None,
) -> TransactionListResponse:
    """List the caller's transactions, newest first."""
    items, total, has_more = await TransactionStore(db).list_for_user(
        user_id, limit=limit, offset=offset, status=status_filter
    )
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in items],
        total=total,
        limit=limit,
        offset=offset,
        has_more=has_more,
    )


@router.get(
    "/{ptn}",
    response_model=TransactionResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_transaction(
    db: DbSession,
    user_id: UserId,
    ptn: Annotated[str, Path()],
) -> TransactionResponse:
    """Get one of the caller's transactions."""
    return TransactionResponse.model_validate(await _owned_transaction(db, ptn, user_id))


@router.get(
    "/{ptn}/status",
    response_model=PaymentStatusResponse,
    responses={202: {"model": PaymentStatusResponse}, 404: {"model": ErrorResponse}},
)
async def get_payment_status(
    db: DbSession,
    services: Services,
    user_id: UserId,
    response: Response,
    ptn: Annotated[str, Path()],
    wait: bool = False,
) -> PaymentStatusResponse:
    """Verify a payment with its provider and apply the result.

    With ``wait=true`` the bounded polling loop runs; if the payment is still
    pending when it gives up, the answer is 202 with ``timedOut: true``.
    """
    await _owned_transaction(db, ptn, user_id)
    try:
        if wait:
            outcome = await services.reconciler.poll(ptn)
        else:
            outcome = await services.reconciler.verify_once(ptn, source="status")
    except VerificationTimedOut:
        response.status_code = status.HTTP_202_ACCEPTED
        return PaymentStatusResponse(
            ptn=ptn,
            status=TransactionStatus.PENDING.value,
            message=PENDING_MESSAGE,
            timed_out=True,
        )

    user = await _get_user(db, user_id)
    return PaymentStatusResponse(
        ptn=outcome.ptn,
        status=outcome.status.value,
        message=_status_message(outcome),
        error_code=outcome.error_code,
        credited=outcome.credited,
        plan_expires_at=user.plan_expires_at if outcome.credited else None,
    )
