import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from smartpark.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum_column(enum_cls, **kwargs):
    return Column(
        Enum(enum_cls, native_enum=False, values_callable=lambda members: [m.value for m in members]),
        **kwargs,
    )


class UserRole(str, enum.Enum):
    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class Currency(str, enum.Enum):
    USD = "USD"
    INR = "INR"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


class SubscriptionPaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentType(str, enum.Enum):
    SUBSCRIPTION = "subscription"
    SUBSCRIPTION_UPGRADE = "subscription_upgrade"
    ONE_TIME = "one_time"
    REFUND = "refund"
    CREDIT = "credit"


class PaymentMethod(str, enum.Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    RAZORPAY = "razorpay"
    MANUAL = "manual"
    BANK_TRANSFER = "bank_transfer"
    CASHFREE = "cashfree"


LIVE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, unique=True, index=True, nullable=False)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    role = _enum_column(UserRole, nullable=False, default=UserRole.ADMIN)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    subscriptions = relationship("Subscription", back_populates="admin", cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) or self.email

    @property
    def is_admin(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SUPER_ADMIN)


class SubscriptionPlan(Base):
    __tablename__ = "subscription_plans"
    __table_args__ = (
        Index("ix_subscription_plans_active_sort", "is_active", "sort_order"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String, unique=True, nullable=False)
    description = Column(Text, nullable=True)

    # Prices are stored in USD.
    base_price_per_month = Column(Numeric(10, 2), nullable=False, default=0)
    base_price_per_year = Column(Numeric(10, 2), nullable=False, default=0)
    base_price_per_quarter = Column(Numeric(10, 2), nullable=True)
    price_per_node_per_month = Column(Numeric(10, 2), nullable=False, default=2)
    price_per_node_per_year = Column(Numeric(10, 2), nullable=False, default=20)
    price_per_node_per_quarter = Column(Numeric(10, 2), nullable=True)
    usd_to_inr_rate = Column(Numeric(10, 2), nullable=False, default=75)
    default_billing_cycle = _enum_column(BillingCycle, nullable=False, default=BillingCycle.MONTHLY)

    max_gateways = Column(Integer, nullable=False, default=0)
    max_parking_lots = Column(Integer, nullable=False, default=0)
    max_floors = Column(Integer, nullable=False, default=0)
    max_parking_slots = Column(Integer, nullable=False, default=0)
    max_users = Column(Integer, nullable=False, default=0)
    features = Column(JSON, nullable=True)

    sort_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    is_popular = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_admin_status", "admin_id", "status"),
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    admin_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(String(36), ForeignKey("subscription_plans.id"), nullable=False)
    billing_cycle = _enum_column(BillingCycle, nullable=False)
    # Snapshotted in USD at creation; never re-derived from the plan.
    amount = Column(Numeric(10, 2), nullable=False)
    device_count = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)
    trial_end_date = Column(DateTime, nullable=True)
    next_billing_date = Column(DateTime, nullable=True)
    status = _enum_column(SubscriptionStatus, nullable=False, default=SubscriptionStatus.PENDING)
    payment_status = _enum_column(
        SubscriptionPaymentStatus, nullable=False, default=SubscriptionPaymentStatus.PENDING
    )

    gateway_limit = Column(Integer, nullable=False, default=0)
    parking_lot_limit = Column(Integer, nullable=False, default=0)
    floor_limit = Column(Integer, nullable=False, default=0)
    parking_slot_limit = Column(Integer, nullable=False, default=0)
    user_limit = Column(Integer, nullable=False, default=0)

    auto_renew = Column(Boolean, nullable=False, default=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    extra = Column("metadata", JSON, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    admin = relationship("User", back_populates="subscriptions")
    plan = relationship("SubscriptionPlan", lazy="joined")
    payments = relationship("Payment", back_populates="subscription", order_by="Payment.created_at")

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SUBSCRIPTION_STATUSES

    @property
    def plan_name(self):
        return self.plan.name if self.plan else None


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    # Doubles as the Cashfree order id.
    transaction_id = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=True, index=True)
    type = _enum_column(PaymentType, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = _enum_column(Currency, nullable=False, default=Currency.USD)
    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING)
    payment_method = _enum_column(PaymentMethod, nullable=False)
    description = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)
    details = Column("metadata", JSON, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    refund_reason = Column(Text, nullable=True)
    is_test = Column(Boolean, nullable=False, default=False)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User")
    subscription = relationship("Subscription", back_populates="payments")
