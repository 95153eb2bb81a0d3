import logging
from datetime import datetime
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from portal.api.auth import get_current_user
from portal.db.models import StripePayment, StripeSubscription, User
from portal.db.session import get_db
from portal.services import billing as billing_service
from portal.services.billing import MIN_PAYMENT_AMOUNT, stripe_value

router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger("uvicorn.error")

VALID_CHECKOUT_MODES = {"subscription", "payment"}


class CheckoutSessionRequest(BaseModel):
    price_id: str = Field(min_length=1, max_length=128)
    mode: str = "subscription"
    success_url: Optional[str] = Field(default=None, max_length=1024)
    cancel_url: Optional[str] = Field(default=None, max_length=1024)
    metadata: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_mode(self):
        if self.mode not in VALID_CHECKOUT_MODES:
            raise ValueError("mode must be subscription/payment")
        return self


class CheckoutSessionResponse(BaseModel):
    session_id: str
    url: Optional[str] = None


class CheckoutSessionDetails(BaseModel):
    id: str
    status: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[float] = None
    currency: Optional[str] = None
    customer_email: Optional[str] = None
    subscription_id: Optional[str] = None


class PaymentIntentRequest(BaseModel):
    amount: int = Field(ge=MIN_PAYMENT_AMOUNT)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    metadata: dict[str, str] = Field(default_factory=dict)


class PaymentIntentResponse(BaseModel):
    id: str
    client_secret: Optional[str] = None


class SubscriptionItem(BaseModel):
    stripe_subscription_id: str
    subscription_type: str
    status: str
    stripe_price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    amount_total: Optional[float] = None
    currency: str


class SubscriptionListResponse(BaseModel):
    items: list[SubscriptionItem]


class PaymentItem(BaseModel):
    id: int
    amount: float
    currency: str
    status: str
    payment_method_type: str
    stripe_subscription_id: Optional[str] = None
    created_at: datetime


class PaymentListResponse(BaseModel):
    items: list[PaymentItem]


class CancelSubscriptionRequest(BaseModel):
    cancel_at_period_end: bool = True


class PaymentMethodRequest(BaseModel):
    payment_method_id: str = Field(min_length=1, max_length=128)


class BillingSyncResponse(BaseModel):
    message: str
    subscriptions: int
    payments: int


def _provider_error(exc: stripe.StripeError, action: str) -> HTTPException:
    logger.error("Stripe request failed while trying to %s: %s", action, exc)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Failed to {action}")


def _subscription_item(row: StripeSubscription) -> SubscriptionItem:
    return SubscriptionItem(
        stripe_subscription_id=row.stripe_subscription_id,
        subscription_type=row.subscription_type,
        status=row.status,
        stripe_price_id=row.stripe_price_id,
        current_period_start=row.current_period_start,
        current_period_end=row.current_period_end,
        cancel_at_period_end=bool(row.cancel_at_period_end),
        amount_total=row.amount_total,
        currency=row.currency,
    )


def _owned_subscription(db: Session, user: User, subscription_id: str) -> StripeSubscription:
    row = billing_service.find_subscription(db, subscription_id)
    if row is None or row.user_id != user.id:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return row


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
def create_checkout_session(
    payload: CheckoutSessionRequest,
    request: Request,
    user: User = Depends(get_current_user),
) -> CheckoutSessionResponse:
    try:
        session = billing_service.create_checkout_session(
            user,
            payload.price_id,
            mode=payload.mode,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
            metadata=payload.metadata,
            origin=request.headers.get("origin"),
        )
    except stripe.StripeError as exc:
        raise _provider_error(exc, "create checkout session")
    return CheckoutSessionResponse(session_id=stripe_value(session, "id"), url=stripe_value(session, "url"))


@router.get("/checkout-session/{session_id}", response_model=CheckoutSessionDetails)
def get_checkout_session(session_id: str, user: User = Depends(get_current_user)) -> CheckoutSessionDetails:
    try:
        session = billing_service.retrieve_checkout_session(session_id)
    except stripe.StripeError as exc:
        raise _provider_error(exc, "retrieve checkout session")
    if billing_service.metadata_user_id(session) != user.id:
        raise HTTPException(status_code=404, detail="Checkout session not found")
    amount_total = stripe_value(session, "amount_total")
    details = stripe_value(session, "customer_details")
    return CheckoutSessionDetails(
        id=stripe_value(session, "id"),
        status=stripe_value(session, "status"),
        payment_status=stripe_value(session, "payment_status"),
        amount_total=amount_total / 100 if amount_total is not None else None,
        currency=(stripe_value(session, "currency") or "").upper() or None,
        customer_email=stripe_value(details, "email") or stripe_value(session, "customer_email"),
        subscription_id=billing_service.object_id(stripe_value(session, "subscription")),
    )


@router.post("/payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    payload: PaymentIntentRequest, user: User = Depends(get_current_user)
) -> PaymentIntentResponse:
    try:
        intent = billing_service.create_payment_intent(user, payload.amount, payload.currency, payload.metadata)
    except stripe.StripeError as exc:
        raise _provider_error(exc, "create payment intent")
    return PaymentIntentResponse(id=stripe_value(intent, "id"), client_secret=stripe_value(intent, "client_secret"))


@router.get("/subscriptions", response_model=SubscriptionListResponse)
def list_subscriptions(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
) -> SubscriptionListResponse:
    rows = (
        db.query(StripeSubscription)
        .filter(StripeSubscription.user_id == user.id)
        .order_by(StripeSubscription.created_at.desc(), StripeSubscription.id.desc())
        .all()
    )
    return SubscriptionListResponse(items=[_subscription_item(row) for row in rows])


@router.get("/payments", response_model=PaymentListResponse)
def list_payments(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> PaymentListResponse:
    rows = (
        db.query(StripePayment)
        .filter(StripePayment.user_id == user.id)
        .order_by(StripePayment.created_at.desc(), StripePayment.id.desc())
        .all()
    )
    return PaymentListResponse(
        items=[
            PaymentItem(
                id=row.id,
                amount=row.amount,
                currency=row.currency,
                status=row.status,
                payment_method_type=row.payment_method_type,
                stripe_subscription_id=row.stripe_subscription_id,
                created_at=row.created_at,
            )
            for row in rows
        ]
    )


@router.post("/sync", response_model=BillingSyncResponse)
def sync_billing(user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> BillingSyncResponse:
    try:
        synced = billing_service.sync_customer_billing(db, user)
    except stripe.StripeError as exc:
        db.rollback()
        raise _provider_error(exc, "sync billing data")
    return BillingSyncResponse(message="Billing data synced", **synced)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionItem)
def cancel_subscription(
    subscription_id: str,
    payload: CancelSubscriptionRequest = CancelSubscriptionRequest(),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> SubscriptionItem:
    row = _owned_subscription(db, user, subscription_id)
    try:
        row = billing_service.cancel_subscription(db, row, at_period_end=payload.cancel_at_period_end)
    except stripe.StripeError as exc:
        db.rollback()
        raise _provider_error(exc, "cancel subscription")
    return _subscription_item(row)


@router.post("/subscriptions/{subscription_id}/reactivate", response_model=SubscriptionItem)
def reactivate_subscription(
    subscription_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> SubscriptionItem:
    row = _owned_subscription(db, user, subscription_id)
    try:
        row = billing_service.reactivate_subscription(db, row)
    except stripe.StripeError as exc:
        db.rollback()
        raise _provider_error(exc, "reactivate subscription")
    return _subscription_item(row)


@router.post("/subscriptions/{subscription_id}/payment-method", response_model=SubscriptionItem)
def update_payment_method(
    subscription_id: str,
    payload: PaymentMethodRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> SubscriptionItem:
    row = _owned_subscription(db, user, subscription_id)
    try:
        row = billing_service.update_payment_method(db, row, payload.payment_method_id)
    except stripe.StripeError as exc:
        db.rollback()
        raise _provider_error(exc, "update payment method")
    return _subscription_item(row)


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)) -> dict[str, bool]:
    if not billing_service.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhooks are not configured")
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")
    try:
        event = stripe.Webhook.construct_event(payload, signature, billing_service.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Stripe webhook rejected: %s", exc)
        raise HTTPException(status_code=400, detail="Invalid webhook payload or signature")

    try:
        billing_service.handle_event(db, event)
    except (SQLAlchemyError, stripe.StripeError) as exc:
        db.rollback()
        logger.error("Processing Stripe event %s failed: %s", stripe_value(event, "id"), exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Webhook processing failed")
    return {"received": True}
