import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

# Keep import-time engines away from the production data directory.
_IMPORT_DB_DIR = Path(tempfile.mkdtemp(prefix="portal_import_"))
os.environ.setdefault("PRIMARY_DB_PATH", str(_IMPORT_DB_DIR / "primary.db"))
os.environ.setdefault("SECONDARY_DB_PATH", str(_IMPORT_DB_DIR / "secondary.db"))

import pytest  # noqa: E402
import stripe  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.exc import OperationalError  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from portal.core.security import hash_password  # noqa: E402
from portal.db.models import User  # noqa: E402
from portal.db.secondary_models import ChatUser, MealPlanRecord  # noqa: E402
from portal.db.session import (  # noqa: E402
    SecondarySessionLocal,
    SessionLocal,
    configure_database,
    configure_secondary_database,
    create_tables,
    get_db,
    get_secondary_db,
)
from portal.services import billing as billing_service  # noqa: E402
from portal.services.clients import create_client_record  # noqa: E402


class BrokenSecondarySession:
    """Stands in for a secondary session whose database is unreachable."""

    def query(self, *args, **kwargs):
        raise OperationalError("SELECT chat_users", {}, Exception("database is locked"))

    def commit(self) -> None:
        raise OperationalError("COMMIT", {}, Exception("database is locked"))

    def rollback(self) -> None:
        return None

    def close(self) -> None:
        return None


def raise_commit_failure() -> None:
    raise OperationalError("COMMIT", {}, Exception("disk I/O error"))


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    db_dir = tmp_path_factory.mktemp("db")
    configure_database(str(db_dir / "portal_test.db"))
    configure_secondary_database(str(db_dir / "portal_secondary_test.db"))
    create_tables()
    return db_dir


@pytest.fixture(scope="session")
def app(test_db_path: Path):
    from portal.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def secondary_session(test_db_path: Path):
    db = SecondarySessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(with_client: bool = True, **client_fields) -> User:
        email = f"user_{uuid4().hex[:10]}@test.com"
        user = User(email=email, password_hash=hash_password("StrongPass123"))
        db_session.add(user)
        db_session.flush()
        if with_client:
            client_row = create_client_record(db_session, user, first_name="Test", last_name="Client")
            for column, value in client_fields.items():
                setattr(client_row, column, value)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def signup_account(client: TestClient) -> Callable[..., dict]:
    def _signup(**fields) -> dict:
        email = f"auth_{uuid4().hex[:10]}@test.com"
        password = "StrongPass123"
        payload = {"email": email, "password": password, "first_name": "Dana", "last_name": "Levi"}
        payload.update(fields)
        signup = client.post("/auth/signup", json=payload)
        assert signup.status_code == 201
        login = client.post("/auth/login", data={"username": email, "password": password})
        assert login.status_code == 200
        headers = {"Authorization": f"Bearer {login.json()['access_token']}"}
        me = client.get("/auth/me", headers=headers)
        assert me.status_code == 200
        return {"email": email, "headers": headers, "user_code": me.json()["user_code"]}

    return _signup


@pytest.fixture
def seed_chat_user(secondary_session: Session) -> Callable[..., ChatUser]:
    def _seed(user_code: str, **fields) -> ChatUser:
        row = ChatUser(
            user_code=user_code,
            full_name=fields.pop("full_name", "Dana Levi"),
            phone_number=fields.pop("phone_number", "+972500000000"),
            whatsapp_number=fields.pop("whatsapp_number", "+972500000000"),
            language=fields.pop("language", "en"),
            onboarding_done=False,
        )
        for column, value in fields.items():
            setattr(row, column, value)
        secondary_session.add(row)
        secondary_session.commit()
        secondary_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def seed_meal_plan(secondary_session: Session) -> Callable[..., MealPlanRecord]:
    def _seed(
        user_code: str,
        status: str = "active",
        record_type: str = "meal_plan",
        created_at: Optional[datetime] = None,
        meal_plan_json: Optional[str] = '{"meals": [{"meal": "Breakfast", "calories": 450}]}',
    ) -> MealPlanRecord:
        row = MealPlanRecord(
            user_code=user_code,
            record_type=record_type,
            meal_plan_name=f"{status} plan",
            status=status,
            meal_plan_json=meal_plan_json,
            daily_total_calories=1800,
            created_at=created_at or datetime.utcnow(),
        )
        secondary_session.add(row)
        secondary_session.commit()
        secondary_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def break_primary_commits(app) -> Callable[[], None]:
    def _override() -> None:
        def _failing_db():
            db = SessionLocal()
            db.commit = raise_commit_failure
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _failing_db

    return _override


@pytest.fixture
def break_secondary(app) -> Callable[[], None]:
    def _override() -> None:
        app.dependency_overrides[get_secondary_db] = lambda: BrokenSecondarySession()

    return _override


@pytest.fixture
def disable_secondary(app) -> Callable[[], None]:
    def _override() -> None:
        app.dependency_overrides[get_secondary_db] = lambda: None

    return _override


@pytest.fixture
def broken_secondary_session() -> BrokenSecondarySession:
    return BrokenSecondarySession()


@pytest.fixture
def failing_commit() -> Callable[[], None]:
    return raise_commit_failure


WEBHOOK_SIGNATURE = "t=1,v1=valid"


class FakeStripe:
    """Canned Stripe API: remembers what was created and records every call."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.customers: list[dict] = []
        self.sessions: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}
        self.failures: list[Exception] = []

    def _record(self, name: str, **kwargs) -> None:
        self.calls.append((name, kwargs))
        if self.failures:
            raise self.failures.pop(0)

    def calls_to(self, name: str) -> list[dict]:
        return [kwargs for called, kwargs in self.calls if called == name]

    def list_customers(self, **kwargs) -> dict:
        self._record("Customer.list", **kwargs)
        return {"object": "list", "data": list(self.customers)}

    def create_customer(self, **kwargs) -> dict:
        self._record("Customer.create", **kwargs)
        customer = {"id": f"cus_{uuid4().hex[:10]}", "email": kwargs.get("email"), "metadata": kwargs.get("metadata")}
        self.customers.append(customer)
        return customer

    def modify_customer(self, customer_id: str, **kwargs) -> dict:
        self._record("Customer.modify", customer_id=customer_id, **kwargs)
        return {"id": customer_id, **kwargs}

    def create_session(self, **kwargs) -> dict:
        self._record("checkout.Session.create", **kwargs)
        session_id = f"cs_test_{uuid4().hex[:10]}"
        session = {"id": session_id, "url": f"https://checkout.stripe.com/c/pay/{session_id}", **kwargs}
        self.sessions[session_id] = session
        return session

    def retrieve_session(self, session_id: str, **kwargs) -> dict:
        self._record("checkout.Session.retrieve", session_id=session_id, **kwargs)
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id")
        return self.sessions[session_id]

    def list_sessions(self, **kwargs) -> dict:
        self._record("checkout.Session.list", **kwargs)
        matches = [session for session in self.sessions.values() if session.get("customer") == kwargs.get("customer")]
        return {"object": "list", "data": matches}

    def create_payment_intent(self, **kwargs) -> dict:
        self._record("PaymentIntent.create", **kwargs)
        return {"id": "pi_test_1", "client_secret": "pi_test_1_secret_abc", **kwargs}

    def list_subscriptions(self, **kwargs) -> dict:
        self._record("Subscription.list", **kwargs)
        matches = [sub for sub in self.subscriptions.values() if sub.get("customer") == kwargs.get("customer")]
        return {"object": "list", "data": matches}

    def retrieve_subscription(self, subscription_id: str, **kwargs) -> dict:
        self._record("Subscription.retrieve", subscription_id=subscription_id, **kwargs)
        return self.subscriptions[subscription_id]

    def modify_subscription(self, subscription_id: str, **kwargs) -> dict:
        self._record("Subscription.modify", subscription_id=subscription_id, **kwargs)
        self.subscriptions[subscription_id].update(kwargs)
        return self.subscriptions[subscription_id]

    def cancel_subscription(self, subscription_id: str, **kwargs) -> dict:
        self._record("Subscription.cancel", subscription_id=subscription_id, **kwargs)
        self.subscriptions[subscription_id]["status"] = "canceled"
        return self.subscriptions[subscription_id]

    def construct_event(self, payload, signature: str, secret: str) -> dict:
        if signature != WEBHOOK_SIGNATURE or secret != billing_service.STRIPE_WEBHOOK_SECRET:
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)


def stripe_subscription(
    user_id: Optional[int],
    customer: str = "cus_portal",
    status: str = "active",
    product: str = "prod_SbI0A23T20wul3",
    unit_amount: int = 19900,
) -> dict:
    return {
        "id": f"sub_{uuid4().hex[:12]}",
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": False,
        "current_period_start": 1781000000,
        "current_period_end": 1783592000,
        "metadata": {"user_id": str(user_id)} if user_id is not None else {},
        "items": {
            "object": "list",
            "data": [
                {"price": {"id": "price_monthly", "product": product, "unit_amount": unit_amount, "currency": "ils"}}
            ],
        },
    }


def stripe_event(event_type: str, obj: dict) -> dict:
    return {"id": f"evt_{uuid4().hex[:16]}", "object": "event", "type": event_type, "data": {"object": obj}}


@pytest.fixture
def fake_stripe(monkeypatch: pytest.MonkeyPatch) -> FakeStripe:
    fake = FakeStripe()
    patches = {
        stripe.Customer: {"list": fake.list_customers, "create": fake.create_customer, "modify": fake.modify_customer},
        stripe.checkout.Session: {
            "create": fake.create_session,
            "retrieve": fake.retrieve_session,
            "list": fake.list_sessions,
        },
        stripe.PaymentIntent: {"create": fake.create_payment_intent},
        stripe.Subscription: {
            "list": fake.list_subscriptions,
            "retrieve": fake.retrieve_subscription,
            "modify": fake.modify_subscription,
            "cancel": fake.cancel_subscription,
        },
        stripe.Webhook: {"construct_event": fake.construct_event},
    }
    for target, methods in patches.items():
        for name, replacement in methods.items():
            monkeypatch.setattr(target, name, staticmethod(replacement))
    monkeypatch.setattr(billing_service, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    return fake


@pytest.fixture
def make_subscription() -> Callable[..., dict]:
    return stripe_subscription


@pytest.fixture
def make_event() -> Callable[[str, dict], dict]:
    return stripe_event


@pytest.fixture
def post_webhook(client: TestClient) -> Callable[..., object]:
    def _post(event: dict, signature: str = WEBHOOK_SIGNATURE):
        return client.post("/billing/webhook", content=json.dumps(event), headers={"stripe-signature": signature})

    return _post
