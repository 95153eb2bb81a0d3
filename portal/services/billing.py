"""Stripe checkout, subscription management and the local billing mirror.

Stripe owns billing state. Rows in stripe_subscriptions and stripe_payments are
a queryable copy kept current by webhook events and by an on-demand sync of the
caller's Stripe customers.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

import stripe
from sqlalchemy.orm import Session

from portal.db.models import StripeEvent, StripePayment, StripeSubscription, User

logger = logging.getLogger("uvicorn.error")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
# Used to build checkout return URLs when the request carries no Origin header.
PORTAL_BASE_URL = os.getenv("PORTAL_BASE_URL", "http://localhost:3000")

if STRIPE_SECRET_KEY:
    stripe.api_key = STRIPE_SECRET_KEY

PRODUCT_SUBSCRIPTION_TYPES: dict[str, str] = {
    "prod_SbI1Lu7FWbybUO": "better_pro",
    "prod_SbI1dssS5NElLZ": "podcast_consultation",
    "prod_SbI1AIv2A46oJ9": "nutrition_training",
    "prod_SbI0A23T20wul3": "nutrition_only",
}

# Smallest charge Stripe accepts, in cents.
MIN_PAYMENT_AMOUNT = 50
CUSTOMER_SEARCH_LIMIT = 100
CHECKOUT_SYNC_LIMIT = 10
CANCELLED_STATUS = "cancelled"


def warn_if_unconfigured() -> None:
    if not STRIPE_SECRET_KEY:
        logger.warning("STRIPE_SECRET_KEY is not set; billing calls will fail")
    if not STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; Stripe webhooks will be refused")


def stripe_value(obj: Any, key: str, default: Any = None) -> Any:
    """Read a key from a Stripe object or a plain mapping, treating null as missing."""
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        value = obj.get(key)
    else:
        try:
            value = obj[key]
        except (KeyError, TypeError):
            value = None
    return default if value is None else value


def object_id(value: Any) -> Optional[str]:
    # Expandable fields arrive either as an id string or as the expanded object.
    if value is None or isinstance(value, str):
        return value
    return stripe_value(value, "id")


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _amount(cents: Any) -> float:
    return (cents or 0) / 100


def _currency(value: Any) -> str:
    return str(value or "usd").upper()


def _as_user_id(raw: Any) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        return None


def metadata_user_id(obj: Any) -> Optional[int]:
    return _as_user_id(stripe_value(stripe_value(obj, "metadata"), "user_id"))


def subscription_type_for(product_id: Optional[str]) -> str:
    return PRODUCT_SUBSCRIPTION_TYPES.get(product_id or "", "unknown")


def _first_item(subscription: Any) -> Any:
    data = stripe_value(stripe_value(subscription, "items"), "data", [])
    return data[0] if data else None


def _period(subscription: Any, item: Any, key: str) -> Optional[datetime]:
    # Newer API versions report billing periods on the item instead of the subscription.
    return _timestamp(stripe_value(subscription, key) or stripe_value(item, key))


def find_customers(user_id: int) -> list[Any]:
    # Customer.list cannot filter on metadata, so the match happens here.
    customers = stripe.Customer.list(limit=CUSTOMER_SEARCH_LIMIT)
    return [customer for customer in stripe_value(customers, "data", []) if metadata_user_id(customer) == user_id]


def _existing_customer_id(user: User) -> Optional[str]:
    try:
        matches = find_customers(user.id)
    except stripe.StripeError as exc:
        logger.warning("Stripe customer lookup failed for user_id=%s: %s", user.id, exc)
        return None
    return stripe_value(matches[0], "id") if matches else None


def ensure_customer(user: User) -> Optional[str]:
    customer_id = _existing_customer_id(user)
    if customer_id:
        return customer_id
    try:
        customer = stripe.Customer.create(email=user.email, metadata={"user_id": str(user.id)})
    except stripe.StripeError as exc:
        logger.warning("Stripe customer creation failed for user_id=%s: %s", user.id, exc)
        return None
    return stripe_value(customer, "id")


def create_checkout_session(
    user: User,
    price_id: str,
    mode: str = "subscription",
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    metadata: Optional[Mapping[str, str]] = None,
    origin: Optional[str] = None,
) -> Any:
    base = (origin or PORTAL_BASE_URL).rstrip("/")
    extra = {key: str(value) for key, value in (metadata or {}).items()}
    owner_metadata = {**extra, "user_id": str(user.id), "price_id": price_id}
    params: dict[str, Any] = {
        "mode": mode,
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": success_url or f"{base}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": cancel_url or f"{base}/payment-cancel",
        "metadata": owner_metadata,
        "client_reference_id": str(user.id),
        "allow_promotion_codes": True,
    }
    customer_id = ensure_customer(user)
    if customer_id:
        params["customer"] = customer_id
    else:
        params["customer_email"] = user.email

    stamped = {**owner_metadata, "created_at": datetime.utcnow().isoformat()}
    if mode == "subscription":
        params["subscription_data"] = {"metadata": stamped}
    else:
        params["payment_intent_data"] = {"metadata": stamped}

    session = stripe.checkout.Session.create(**params)
    logger.info("Created Stripe checkout session %s for user_id=%s", stripe_value(session, "id"), user.id)
    return session


def retrieve_checkout_session(session_id: str) -> Any:
    return stripe.checkout.Session.retrieve(session_id, expand=["line_items", "customer", "subscription"])


def create_payment_intent(
    user: User, amount: int, currency: str = "usd", metadata: Optional[Mapping[str, str]] = None
) -> Any:
    params: dict[str, Any] = {
        "amount": int(amount),
        "currency": currency.lower(),
        "automatic_payment_methods": {"enabled": True},
        "metadata": {
            **{key: str(value) for key, value in (metadata or {}).items()},
            "user_id": str(user.id),
            "created_at": datetime.utcnow().isoformat(),
        },
    }
    customer_id = _existing_customer_id(user)
    if customer_id:
        params["customer"] = customer_id
    return stripe.PaymentIntent.create(**params)


def find_subscription(db: Session, stripe_subscription_id: str) -> Optional[StripeSubscription]:
    return (
        db.query(StripeSubscription)
        .filter(StripeSubscription.stripe_subscription_id == stripe_subscription_id)
        .first()
    )


def upsert_subscription(
    db: Session, subscription: Any, user_id: Optional[int] = None
) -> Optional[StripeSubscription]:
    """Copy a Stripe subscription into the mirror. Unowned new subscriptions are not stored."""
    subscription_id = stripe_value(subscription, "id")
    row = find_subscription(db, subscription_id)
    owner = user_id or metadata_user_id(subscription) or (row.user_id if row else None)
    if row is None and owner is None:
        logger.warning("Subscription %s has no user_id in its metadata; not stored", subscription_id)
        return None

    now = datetime.utcnow()
    if row is None:
        row = StripeSubscription(stripe_subscription_id=subscription_id, created_at=now)
        db.add(row)

    item = _first_item(subscription)
    price = stripe_value(item, "price")
    unit_amount = stripe_value(price, "unit_amount")
    row.user_id = owner
    row.stripe_customer_id = object_id(stripe_value(subscription, "customer"))
    row.stripe_product_id = object_id(stripe_value(price, "product"))
    row.stripe_price_id = stripe_value(price, "id")
    row.subscription_type = subscription_type_for(row.stripe_product_id)
    row.status = stripe_value(subscription, "status", "incomplete")
    row.current_period_start = _period(subscription, item, "current_period_start")
    row.current_period_end = _period(subscription, item, "current_period_end")
    row.cancel_at_period_end = bool(stripe_value(subscription, "cancel_at_period_end", False))
    row.amount_total = _amount(unit_amount) if unit_amount is not None else None
    row.currency = _currency(stripe_value(price, "currency"))
    row.updated_at = now
    db.flush()
    return row


def _set_status(db: Session, stripe_subscription_id: str, status: str) -> None:
    row = find_subscription(db, stripe_subscription_id)
    if row is None:
        return
    row.status = status
    row.updated_at = datetime.utcnow()


def record_payment(
    db: Session,
    *,
    user_id: Optional[int],
    amount: float,
    currency: str,
    status: str,
    checkout_session_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    payment_method_type: str = "card",
    created_at: Optional[datetime] = None,
) -> StripePayment:
    query = db.query(StripePayment)
    row: Optional[StripePayment] = None
    if checkout_session_id:
        row = query.filter(StripePayment.stripe_checkout_session_id == checkout_session_id).first()
    elif invoice_id:
        row = query.filter(StripePayment.stripe_invoice_id == invoice_id).first()
    if row is None:
        row = StripePayment(
            stripe_checkout_session_id=checkout_session_id,
            stripe_invoice_id=invoice_id,
            created_at=created_at or datetime.utcnow(),
        )
        db.add(row)
    row.user_id = user_id
    row.stripe_payment_intent_id = payment_intent_id
    row.stripe_subscription_id = subscription_id
    row.amount = amount
    row.currency = currency
    row.status = status
    row.payment_method_type = payment_method_type
    db.flush()
    return row


def _record_checkout_payment(db: Session, session: Any, user_id: Optional[int]) -> StripePayment:
    methods = stripe_value(session, "payment_method_types", [])
    paid = stripe_value(session, "payment_status", "paid") == "paid"
    return record_payment(
        db,
        user_id=user_id,
        checkout_session_id=stripe_value(session, "id"),
        payment_intent_id=object_id(stripe_value(session, "payment_intent")),
        subscription_id=object_id(stripe_value(session, "subscription")),
        amount=_amount(stripe_value(session, "amount_total")),
        currency=_currency(stripe_value(session, "currency")),
        status="succeeded" if paid else "pending",
        payment_method_type=methods[0] if methods else "card",
        created_at=_timestamp(stripe_value(session, "created")),
    )


def _checkout_completed(db: Session, session: Any) -> None:
    user_id = metadata_user_id(session) or _as_user_id(stripe_value(session, "client_reference_id"))
    _record_checkout_payment(db, session, user_id)


def _subscription_changed(db: Session, subscription: Any) -> None:
    upsert_subscription(db, subscription)


def _subscription_deleted(db: Session, subscription: Any) -> None:
    row = upsert_subscription(db, subscription)
    if row is not None:
        row.status = CANCELLED_STATUS


def _invoice_subscription_id(invoice: Any) -> Optional[str]:
    direct = stripe_value(invoice, "subscription")
    if direct:
        return object_id(direct)
    details = stripe_value(stripe_value(invoice, "parent"), "subscription_details")
    return object_id(stripe_value(details, "subscription"))


def _invoice_outcome(db: Session, invoice: Any, succeeded: bool) -> None:
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        return
    subscription = stripe.Subscription.retrieve(subscription_id)
    user_id = metadata_user_id(subscription)
    if user_id is None:
        logger.warning("Invoice %s belongs to a subscription without user_id; skipped", stripe_value(invoice, "id"))
        return
    if find_subscription(db, subscription_id) is None:
        upsert_subscription(db, subscription, user_id)
    amount_key = "amount_paid" if succeeded else "amount_due"
    record_payment(
        db,
        user_id=user_id,
        invoice_id=stripe_value(invoice, "id"),
        payment_intent_id=object_id(stripe_value(invoice, "payment_intent")),
        subscription_id=subscription_id,
        amount=_amount(stripe_value(invoice, amount_key)),
        currency=_currency(stripe_value(invoice, "currency")),
        status="succeeded" if succeeded else "failed",
        created_at=_timestamp(stripe_value(invoice, "created")),
    )
    _set_status(db, subscription_id, "active" if succeeded else "past_due")


EVENT_HANDLERS: dict[str, Callable[[Session, Any], None]] = {
    "checkout.session.completed": _checkout_completed,
    "customer.subscription.created": _subscription_changed,
    "customer.subscription.updated": _subscription_changed,
    "customer.subscription.deleted": _subscription_deleted,
    "invoice.payment_succeeded": lambda db, invoice: _invoice_outcome(db, invoice, succeeded=True),
    "invoice.payment_failed": lambda db, invoice: _invoice_outcome(db, invoice, succeeded=False),
}


def handle_event(db: Session, event: Any) -> bool:
    """Apply one verified webhook event. Returns False when the event was already processed."""
    event_id = stripe_value(event, "id")
    event_type = stripe_value(event, "type", "")
    if db.get(StripeEvent, event_id) is not None:
        logger.info("Stripe event %s already processed", event_id)
        return False

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type %s", event_type)
    else:
        handler(db, stripe_value(stripe_value(event, "data"), "object"))
    db.add(StripeEvent(event_id=event_id, event_type=event_type))
    db.commit()
    logger.info("Processed Stripe event %s (%s)", event_id, event_type)
    return True


def sync_customer_billing(db: Session, user: User) -> dict[str, int]:
    """Pull the caller's subscriptions and paid checkouts from Stripe into the mirror."""
    subscriptions = 0
    payments = 0
    for customer in find_customers(user.id):
        customer_id = stripe_value(customer, "id")
        listed = stripe.Subscription.list(customer=customer_id, expand=["data.items.data.price"])
        for subscription in stripe_value(listed, "data", []):
            if upsert_subscription(db, subscription, user.id) is not None:
                subscriptions += 1
        sessions = stripe.checkout.Session.list(customer=customer_id, limit=CHECKOUT_SYNC_LIMIT)
        for session in stripe_value(sessions, "data", []):
            if stripe_value(session, "payment_status") != "paid":
                continue
            _record_checkout_payment(db, session, user.id)
            payments += 1
    db.commit()
    return {"subscriptions": subscriptions, "payments": payments}


def cancel_subscription(db: Session, row: StripeSubscription, at_period_end: bool = True) -> StripeSubscription:
    if at_period_end:
        updated = stripe.Subscription.modify(row.stripe_subscription_id, cancel_at_period_end=True)
    else:
        updated = stripe.Subscription.cancel(row.stripe_subscription_id)
    upsert_subscription(db, updated, row.user_id)
    db.commit()
    db.refresh(row)
    return row


def reactivate_subscription(db: Session, row: StripeSubscription) -> StripeSubscription:
    updated = stripe.Subscription.modify(row.stripe_subscription_id, cancel_at_period_end=False)
    upsert_subscription(db, updated, row.user_id)
    db.commit()
    db.refresh(row)
    return row


def update_payment_method(db: Session, row: StripeSubscription, payment_method_id: str) -> StripeSubscription:
    subscription = stripe.Subscription.retrieve(row.stripe_subscription_id)
    stripe.Customer.modify(
        object_id(stripe_value(subscription, "customer")),
        invoice_settings={"default_payment_method": payment_method_id},
    )
    updated = stripe.Subscription.modify(row.stripe_subscription_id, default_payment_method=payment_method_id)
    upsert_subscription(db, updated, row.user_id)
    db.commit()
    db.refresh(row)
    return row
