import os

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("CASHFREE_CLIENT_ID", "test-client-id")
os.environ.setdefault("CASHFREE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("CASHFREE_ENVIRONMENT", "SANDBOX")

from datetime import datetime
from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import StaticPool, create_engine
from sqlalchemy.orm import Session, sessionmaker

from smartpark import models
from smartpark.auth import create_access_token
from smartpark.database import Base, get_db
from smartpark.main import app
from smartpark.services.cashfree import CashfreeClient, CashfreeOrder


@pytest.fixture(scope="function")
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user(db_session: Session):
    counter = {"n": 0}

    def _make(role=models.UserRole.ADMIN, **kwargs) -> models.User:
        counter["n"] += 1
        user = models.User(
            email=kwargs.pop("email", f"user{counter['n']}@example.com"),
            first_name=kwargs.pop("first_name", "Test"),
            last_name=kwargs.pop("last_name", f"User{counter['n']}"),
            role=role,
            **kwargs,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def admin_user(make_user) -> models.User:
    return make_user(models.UserRole.ADMIN, email="admin@example.com", phone="9876543210")


@pytest.fixture
def super_admin(make_user) -> models.User:
    return make_user(models.UserRole.SUPER_ADMIN, email="root@example.com")


@pytest.fixture
def make_plan(db_session: Session):
    def _make(name: str, **overrides) -> models.SubscriptionPlan:
        values = {
            "name": name,
            "description": f"{name} plan",
            "base_price_per_month": Decimal("10.00"),
            "base_price_per_quarter": Decimal("27.00"),
            "base_price_per_year": Decimal("100.00"),
            "price_per_node_per_month": Decimal("1.50"),
            "price_per_node_per_quarter": Decimal("4.00"),
            "price_per_node_per_year": Decimal("15.00"),
            "usd_to_inr_rate": Decimal("83.00"),
            "max_gateways": 2,
            "max_parking_lots": 1,
            "max_floors": 3,
            "max_parking_slots": 100,
            "max_users": 3,
            "features": ["Real-time parking slot monitoring"],
        }
        values.update(overrides)
        plan = models.SubscriptionPlan(**values)
        db_session.add(plan)
        db_session.commit()
        db_session.refresh(plan)
        return plan

    return _make


@pytest.fixture
def basic_plan(make_plan) -> models.SubscriptionPlan:
    return make_plan("Basic")


@pytest.fixture
def premium_plan(make_plan) -> models.SubscriptionPlan:
    return make_plan(
        "Premium",
        base_price_per_month=Decimal("60.00"),
        base_price_per_quarter=Decimal("170.00"),
        base_price_per_year=Decimal("600.00"),
        price_per_node_per_month=Decimal("1.25"),
        price_per_node_per_quarter=Decimal("3.50"),
        price_per_node_per_year=Decimal("12.50"),
        max_gateways=100,
        max_parking_lots=500,
        max_floors=5000,
        max_parking_slots=100000,
        max_users=1000,
        sort_order=3,
    )


@pytest.fixture
def gateway(mocker):
    """A Cashfree client that never leaves the process."""
    client = mocker.Mock(spec=CashfreeClient)
    client.environment = "SANDBOX"
    client.default_return_url.return_value = "http://test/payments/cashfree/return?order_id={order_id}"

    def _create_order(order_id, amount, currency, customer, return_url=None, note=None, tags=None):
        return CashfreeOrder(
            gateway_order_id=order_id,
            cf_order_id=123456,
            session_id=f"session_{order_id}",
            status="ACTIVE",
            amount=Decimal(str(amount)),
            currency=currency,
            raw={"order_id": order_id, "order_status": "ACTIVE"},
        )

    client.create_order.side_effect = _create_order
    client.get_order.return_value = {"order_status": "ACTIVE"}
    return client


@pytest.fixture
def make_subscription(db_session: Session):
    def _make(admin, plan, **overrides) -> models.Subscription:
        values = {
            "admin_id": admin.id,
            "plan_id": plan.id,
            "billing_cycle": models.BillingCycle.MONTHLY,
            "amount": Decimal("10.00"),
            "device_count": 0,
            "start_date": datetime(2024, 1, 1),
            "end_date": datetime(2024, 2, 1),
            "status": models.SubscriptionStatus.ACTIVE,
            "payment_status": models.SubscriptionPaymentStatus.PAID,
            "gateway_limit": plan.max_gateways,
            "parking_lot_limit": plan.max_parking_lots,
            "floor_limit": plan.max_floors,
            "parking_slot_limit": plan.max_parking_slots,
            "user_limit": plan.max_users,
        }
        values.update(overrides)
        subscription = models.Subscription(**values)
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make


@pytest.fixture
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _bearer(user: models.User) -> dict:
    access_token = create_access_token(data={"sub": user.email})
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
def auth_headers_for():
    return _bearer


@pytest.fixture
def admin_headers(admin_user) -> dict:
    return _bearer(admin_user)


@pytest.fixture
def super_admin_headers(super_admin) -> dict:
    return _bearer(super_admin)
