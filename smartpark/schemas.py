from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from smartpark.models import (
    BillingCycle,
    Currency,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)


class GatewayMetadata(BaseModel):
    """Durable record of what Cashfree told us about one order.

    Lives under ``Payment.details["cashfree"]``; converted to and from a plain
    dict only when reading or writing the payment row.
    """

    model_config = ConfigDict(extra="ignore")

    order_id: Optional[str] = None
    payment_session_id: Optional[str] = None
    cf_order_id: Optional[Union[int, str]] = None
    reference_id: Optional[str] = None
    status: Optional[str] = None
    raw_return: Optional[Dict[str, Any]] = None
    gateway_order: Optional[Dict[str, Any]] = None
    verified_at: Optional[str] = None

    @classmethod
    def from_payment(cls, payment) -> "GatewayMetadata":
        return cls.model_validate((payment.details or {}).get("cashfree") or {})

    def apply_to(self, payment) -> None:
        details = dict(payment.details or {})
        details["cashfree"] = self.model_dump(exclude_none=True)
        payment.details = details


class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    base_price_per_month: Decimal
    base_price_per_year: Decimal
    base_price_per_quarter: Optional[Decimal] = None
    price_per_node_per_month: Decimal
    price_per_node_per_year: Decimal
    price_per_node_per_quarter: Optional[Decimal] = None
    usd_to_inr_rate: Decimal
    default_billing_cycle: BillingCycle
    max_gateways: int
    max_parking_lots: int
    max_floors: int
    max_parking_slots: int
    max_users: int
    features: Optional[List[str]] = None
    is_popular: bool = False

    class Config:
        from_attributes = True


class SubscriptionResponse(BaseModel):
    id: str
    admin_id: str
    plan_id: str
    plan_name: Optional[str] = None
    billing_cycle: BillingCycle
    amount: Decimal
    device_count: int
    start_date: datetime
    end_date: datetime
    trial_end_date: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    status: SubscriptionStatus
    payment_status: SubscriptionPaymentStatus
    gateway_limit: int
    parking_lot_limit: int
    floor_limit: int
    parking_slot_limit: int
    user_limit: int
    auto_renew: bool
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: str
    transaction_id: str
    user_id: str
    subscription_id: Optional[str] = None
    type: PaymentType
    amount: Decimal
    currency: Currency
    status: PaymentStatus
    payment_method: PaymentMethod
    description: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refund_reason: Optional[str] = None

    class Config:
        from_attributes = True


class SubscriptionCreateRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    payment_method: PaymentMethod = PaymentMethod.CASHFREE
    device_count: int = Field(default=0, ge=0)
    auto_renew: bool = True
    trial_days: Optional[int] = Field(default=None, ge=1)


class PaymentSessionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(min_length=1)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    device_count: int = Field(default=0, ge=0)
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


class SubscriptionUpgradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(min_length=1)
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    device_count: int = Field(default=0, ge=0)
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


class SubscriptionCancelRequest(BaseModel):
    reason: Optional[str] = None


class SubscriptionRenewRequest(BaseModel):
    payment_method: Optional[PaymentMethod] = None


class ProcessPaymentRequest(BaseModel):
    payment_id: str
    gateway_transaction_id: str
    success: bool
    failure_reason: Optional[str] = None


class FinalizePaymentRequest(BaseModel):
    order_id: Optional[str] = None
    payment_session_id: Optional[str] = None
    reference_id: Optional[str] = None
    status_hint: Optional[str] = None
    verify_with_gateway: bool = True


class RefundRequest(BaseModel):
    refund_amount: Optional[Decimal] = Field(default=None, gt=0)
    reason: Optional[str] = None


class PaymentWebhookRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    gateway_transaction_id: Optional[str] = Field(default=None, alias="gatewayTransactionId")
    status: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaginatedSubscriptions(BaseModel):
    items: List[SubscriptionResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class PaymentSessionResponse(BaseModel):
    payment_session_id: Optional[str] = None
    order_id: str
    cf_order_id: Optional[Union[int, str]] = None
    order_amount: float
    order_currency: str
    payment_id: str
    subscription_id: str
    plan: Dict[str, Any]
    return_url: str


class CreateSubscriptionResponse(BaseModel):
    subscription: SubscriptionResponse
    payment: PaymentResponse


class RenewSubscriptionResponse(BaseModel):
    subscription: SubscriptionResponse
    payment: Optional[PaymentResponse] = None


class UpgradeResponse(BaseModel):
    new_subscription: SubscriptionResponse
    payment: Optional[PaymentResponse] = None
    prorated_credit: Decimal
    remaining_days: int
    original_price: Decimal
    final_price: Decimal
    payment_session_id: Optional[str] = None
    order_id: Optional[str] = None
    requires_payment: bool = False

    class Config:
        from_attributes = True


class LimitCheckResponse(BaseModel):
    resource: str
    allowed: bool
    limit: int
    usage: int
    remaining: int


class AnalyticsResponse(BaseModel):
    active_subscription: Optional[SubscriptionResponse] = None
    total_spent: Dict[str, Decimal]
    payment_count: int
    next_billing_date: Optional[datetime] = None
    days_until_expiry: Optional[int] = None

    class Config:
        from_attributes = True


class FinalizeResultResponse(BaseModel):
    status: str
    payment: Optional[PaymentResponse] = None
    subscription: Optional[SubscriptionResponse] = None
    gateway_status: Optional[str] = None
    message: Optional[str] = None

    class Config:
        from_attributes = True
