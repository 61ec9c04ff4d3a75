import math
from datetime import date, datetime
from decimal import Decimal

import pytest

from smartpark import models
from smartpark import subscriptions as lifecycle
from smartpark.exceptions import GatewayRequestError, NotFoundError, ValidationError
from smartpark.models import (
    BillingCycle,
    Currency,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)


def _open_session(db_session, admin, plan, gateway, **kwargs):
    result = lifecycle.create_payment_session(
        db_session,
        admin_id=admin.id,
        plan_identifier=kwargs.pop("plan_identifier", plan.id),
        billing_cycle=kwargs.pop("billing_cycle", BillingCycle.MONTHLY),
        gateway=gateway,
        **kwargs,
    )
    payment = db_session.query(models.Payment).filter(models.Payment.id == result["payment_id"]).one()
    subscription = db_session.query(models.Subscription).filter(
        models.Subscription.id == result["subscription_id"]
    ).one()
    return result, payment, subscription


def test_generate_transaction_id_format():
    first = lifecycle.generate_transaction_id()
    second = lifecycle.generate_transaction_id()

    assert first.startswith("TXN_")
    assert first == first.upper()
    assert len(first.split("_")) == 3
    assert first != second


def test_create_payment_session_persists_pending_checkout(db_session, admin_user, basic_plan, gateway):
    result, payment, subscription = _open_session(
        db_session, admin_user, basic_plan, gateway, plan_identifier="basic", device_count=2
    )

    # 10 + 2 * 1.50 USD at 83.00
    assert result["order_amount"] == 1079.0
    assert result["order_currency"] == "INR"
    assert result["payment_session_id"] == f"session_{payment.transaction_id}"
    assert result["return_url"] == f"http://test/payments/cashfree/return?order_id={payment.transaction_id}"
    assert result["plan"]["amount_usd"] == 13.0

    assert subscription.status == SubscriptionStatus.PENDING
    assert subscription.payment_status == SubscriptionPaymentStatus.PENDING
    assert subscription.amount == Decimal("13.00")
    assert subscription.device_count == 2
    assert subscription.gateway_limit == basic_plan.max_gateways

    assert payment.currency == Currency.INR
    assert payment.payment_method == PaymentMethod.CASHFREE
    assert payment.amount == Decimal("1079.00")
    assert payment.details["cashfree"]["order_id"] == payment.transaction_id
    assert payment.details["cashfree"]["payment_session_id"] == result["payment_session_id"]

    _, kwargs = gateway.create_order.call_args
    assert kwargs["customer"]["email"] == "admin@example.com"
    assert kwargs["tags"]["payment_id"] == payment.id


def test_create_payment_session_fills_client_return_url(db_session, admin_user, basic_plan, gateway):
    result, payment, _ = _open_session(
        db_session,
        admin_user,
        basic_plan,
        gateway,
        return_url="https://web.example.com/return?order_id={order_id}&session={payment_session_id}",
    )

    assert result["return_url"] == (
        f"https://web.example.com/return?order_id={payment.transaction_id}"
        f"&session=session_{payment.transaction_id}"
    )


def test_new_checkout_cancels_stale_pending_subscription(db_session, admin_user, basic_plan, gateway):
    _, _, first = _open_session(db_session, admin_user, basic_plan, gateway)
    _, _, second = _open_session(db_session, admin_user, basic_plan, gateway)

    db_session.refresh(first)
    assert first.status == SubscriptionStatus.CANCELLED
    assert first.cancellation_reason == "Superseded by a newer checkout"
    assert second.status == SubscriptionStatus.PENDING


def test_checkout_rejected_when_live_subscription_exists(
    db_session, admin_user, basic_plan, gateway, make_subscription
):
    make_subscription(admin_user, basic_plan)

    with pytest.raises(ValidationError) as exc_info:
        _open_session(db_session, admin_user, basic_plan, gateway)

    assert exc_info.value.message == "User already has an active subscription"
    gateway.create_order.assert_not_called()


def test_gateway_failure_leaves_no_rows_behind(db_session, admin_user, basic_plan, gateway):
    gateway.create_order.side_effect = GatewayRequestError("Cashfree unavailable", status_code=503)

    with pytest.raises(GatewayRequestError):
        _open_session(db_session, admin_user, basic_plan, gateway)

    assert db_session.query(models.Subscription).count() == 0
    assert db_session.query(models.Payment).count() == 0


def test_unknown_plan_is_not_found(db_session, admin_user, gateway):
    with pytest.raises(NotFoundError):
        lifecycle.create_payment_session(
            db_session, admin_user.id, "platinum", BillingCycle.MONTHLY, gateway=gateway
        )


def test_create_subscription_with_trial(db_session, admin_user, basic_plan):
    subscription, payment = lifecycle.create_subscription(
        db_session,
        admin_id=admin_user.id,
        plan_identifier="Basic",
        billing_cycle=BillingCycle.YEARLY,
        payment_method=PaymentMethod.STRIPE,
        trial_days=14,
    )

    assert subscription.status == SubscriptionStatus.TRIAL
    assert subscription.trial_end_date is not None
    assert payment.currency == Currency.USD
    assert payment.amount == Decimal("100.00")
    assert payment.status == PaymentStatus.PENDING


def test_process_payment_success_activates_subscription(db_session, admin_user, basic_plan, gateway):
    _, payment, subscription = _open_session(db_session, admin_user, basic_plan, gateway)

    processed = lifecycle.process_payment(db_session, payment.id, "cf_ref_1", True)

    db_session.refresh(subscription)
    assert processed.status == PaymentStatus.COMPLETED
    assert processed.processed_at is not None
    assert processed.details["gateway_transaction_id"] == "cf_ref_1"
    assert processed.details["cashfree"]["order_id"] == payment.transaction_id
    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.payment_status == SubscriptionPaymentStatus.PAID


def test_process_payment_is_idempotent_once_final(db_session, admin_user, basic_plan, gateway):
    _, payment, subscription = _open_session(db_session, admin_user, basic_plan, gateway)
    lifecycle.process_payment(db_session, payment.id, "cf_ref_1", True)

    # A late failure signal must not undo the completed payment.
    again = lifecycle.process_payment(db_session, payment.id, "cf_ref_2", False, "late failure")

    db_session.refresh(subscription)
    assert again.status == PaymentStatus.COMPLETED
    assert again.failure_reason is None
    assert again.details["gateway_transaction_id"] == "cf_ref_1"
    assert subscription.status == SubscriptionStatus.ACTIVE


def test_process_payment_failure_cancels_pending_subscription(db_session, admin_user, basic_plan, gateway):
    _, payment, subscription = _open_session(db_session, admin_user, basic_plan, gateway)

    failed = lifecycle.process_payment(db_session, payment.id, "cf_ref_1", False)

    db_session.refresh(subscription)
    assert failed.status == PaymentStatus.FAILED
    assert failed.failure_reason == "Payment processing failed"
    assert subscription.status == SubscriptionStatus.CANCELLED
    assert subscription.payment_status == SubscriptionPaymentStatus.FAILED
    assert subscription.cancellation_reason == "Payment failed"


def test_process_payment_unknown_payment(db_session):
    with pytest.raises(NotFoundError):
        lifecycle.process_payment(db_session, "missing", "ref", True)


def test_late_success_does_not_create_second_live_subscription(
    db_session, admin_user, basic_plan, gateway, make_subscription
):
    _, payment, pending = _open_session(db_session, admin_user, basic_plan, gateway)
    live = make_subscription(admin_user, basic_plan)

    processed = lifecycle.process_payment(db_session, payment.id, "cf_ref_1", True)

    db_session.refresh(pending)
    db_session.refresh(live)
    assert processed.status == PaymentStatus.COMPLETED
    assert processed.details["requires_review"] is True
    assert pending.status == SubscriptionStatus.PENDING
    assert pending.payment_status == SubscriptionPaymentStatus.PAID
    assert live.status == SubscriptionStatus.ACTIVE
    assert lifecycle._live_subscriptions_query(db_session, admin_user.id).count() == 1


def test_late_success_does_not_reopen_cancelled_checkout(db_session, admin_user, basic_plan, gateway):
    _, payment, subscription = _open_session(db_session, admin_user, basic_plan, gateway)
    lifecycle.cancel_subscription(db_session, subscription.id, reason="Changed my mind")

    processed = lifecycle.process_payment(db_session, payment.id, "cf_ref_late", True)

    db_session.refresh(subscription)
    assert processed.status == PaymentStatus.COMPLETED
    assert processed.details["requires_review"] is True
    assert processed.details["gateway_transaction_id"] == "cf_ref_late"
    assert subscription.status == SubscriptionStatus.CANCELLED
    assert subscription.payment_status == SubscriptionPaymentStatus.PAID
    assert lifecycle._live_subscriptions_query(db_session, admin_user.id).count() == 0


def test_late_upgrade_success_for_cancelled_upgrade_keeps_current_plan(
    db_session, admin_user, basic_plan, premium_plan, gateway, make_subscription
):
    current = make_subscription(admin_user, basic_plan)
    result = lifecycle.upgrade_subscription(
        db_session, admin_user.id, "premium", BillingCycle.MONTHLY, gateway=gateway, now=datetime(2024, 1, 16)
    )
    new_subscription = result["new_subscription"]
    lifecycle.cancel_subscription(db_session, new_subscription.id)

    processed = lifecycle.process_payment(db_session, result["payment"].id, "cf_ref_up_late", True)

    db_session.refresh(current)
    db_session.refresh(new_subscription)
    assert processed.details["requires_review"] is True
    assert new_subscription.status == SubscriptionStatus.CANCELLED
    assert current.status == SubscriptionStatus.ACTIVE

def test_paid_upgrade_waits_for_payment(
    db_session, admin_user, basic_plan, premium_plan, gateway, make_subscription
):
    current = make_subscription(admin_user, basic_plan)

    result = lifecycle.upgrade_subscription(
        db_session,
        admin_user.id,
        "premium",
        BillingCycle.MONTHLY,
        gateway=gateway,
        now=datetime(2024, 1, 16),
    )

    # 830 INR * 16 / 31 days of credit against 4980 INR
    assert result["requires_payment"] is True
    assert result["remaining_days"] == 16
    assert result["prorated_credit"] == Decimal("428.39")
    assert result["original_price"] == Decimal("4980.00")
    assert result["final_price"] == Decimal("4551.61")

    payment = result["payment"]
    assert payment.type == PaymentType.SUBSCRIPTION_UPGRADE
    assert payment.amount == Decimal("4551.61")
    assert payment.details["old_subscription_id"] == current.id
    assert result["order_id"] == payment.transaction_id

    new_subscription = result["new_subscription"]
    db_session.refresh(current)
    assert new_subscription.status == SubscriptionStatus.PENDING
    assert new_subscription.amount == Decimal("60.00")
    assert current.status == SubscriptionStatus.ACTIVE

    lifecycle.process_payment(db_session, payment.id, "cf_ref_up", True)

    db_session.refresh(current)
    db_session.refresh(new_subscription)
    assert current.status == SubscriptionStatus.CANCELLED
    assert current.cancellation_reason == "Upgraded to Premium plan"
    assert new_subscription.status == SubscriptionStatus.ACTIVE
    assert new_subscription.gateway_limit == 100


def test_upgrade_fully_covered_by_credit_switches_immediately(
    db_session, admin_user, basic_plan, premium_plan, gateway, make_subscription
):
    current = make_subscription(
        admin_user,
        premium_plan,
        billing_cycle=BillingCycle.YEARLY,
        amount=Decimal("600.00"),
        start_date=datetime(2024, 1, 1),
        end_date=datetime(2025, 1, 1),
    )

    result = lifecycle.upgrade_subscription(
        db_session,
        admin_user.id,
        basic_plan.id,
        BillingCycle.MONTHLY,
        gateway=gateway,
        now=datetime(2024, 1, 2),
    )

    db_session.refresh(current)
    assert result["requires_payment"] is False
    assert result["payment"] is None
    assert result["final_price"] == Decimal("0.00")
    assert result["new_subscription"].status == SubscriptionStatus.ACTIVE
    assert result["new_subscription"].payment_status == SubscriptionPaymentStatus.PAID
    assert current.status == SubscriptionStatus.CANCELLED
    gateway.create_order.assert_not_called()


def test_upgrade_to_same_plan_and_cycle_rejected(
    db_session, admin_user, basic_plan, gateway, make_subscription
):
    make_subscription(admin_user, basic_plan)

    with pytest.raises(ValidationError):
        lifecycle.upgrade_subscription(
            db_session, admin_user.id, "basic", BillingCycle.MONTHLY, gateway=gateway, now=datetime(2024, 1, 16)
        )


def test_upgrade_without_live_subscription(db_session, admin_user, premium_plan, gateway):
    with pytest.raises(NotFoundError) as exc_info:
        lifecycle.upgrade_subscription(db_session, admin_user.id, "premium", BillingCycle.MONTHLY, gateway=gateway)

    assert exc_info.value.message == "No active subscription found to upgrade"


def test_cancel_subscription(db_session, admin_user, basic_plan, make_subscription):
    subscription = make_subscription(admin_user, basic_plan)

    cancelled = lifecycle.cancel_subscription(db_session, subscription.id)

    assert cancelled.status == SubscriptionStatus.CANCELLED
    assert cancelled.cancellation_reason == "User cancelled"
    assert cancelled.cancelled_at is not None
    assert cancelled.auto_renew is False


def test_cancel_unknown_subscription(db_session):
    with pytest.raises(NotFoundError):
        lifecycle.cancel_subscription(db_session, "missing")


def test_renew_extends_period_and_opens_payment(db_session, admin_user, basic_plan, make_subscription):
    subscription = make_subscription(admin_user, basic_plan)

    renewed, payment = lifecycle.renew_subscription(db_session, subscription.id, now=datetime(2024, 1, 20))

    assert renewed.start_date == datetime(2024, 1, 20)
    assert renewed.end_date == datetime(2024, 2, 20)
    assert renewed.payment_status == SubscriptionPaymentStatus.PENDING
    assert payment.amount == Decimal("10.00")
    assert payment.currency == Currency.USD
    assert payment.payment_method == PaymentMethod.STRIPE


def test_renew_free_subscription_skips_payment(db_session, admin_user, basic_plan, make_subscription):
    subscription = make_subscription(admin_user, basic_plan, amount=Decimal("0.00"))

    _, payment = lifecycle.renew_subscription(db_session, subscription.id, now=datetime(2024, 1, 20))

    assert payment is None
    assert db_session.query(models.Payment).count() == 0


def test_renew_rejected_for_cancelled_or_lapsed(db_session, admin_user, basic_plan, make_subscription):
    cancelled = make_subscription(admin_user, basic_plan, status=SubscriptionStatus.CANCELLED)
    lapsed = make_subscription(admin_user, basic_plan)

    with pytest.raises(ValidationError):
        lifecycle.renew_subscription(db_session, cancelled.id, now=datetime(2024, 1, 20))
    with pytest.raises(ValidationError):
        lifecycle.renew_subscription(db_session, lapsed.id, now=datetime(2024, 3, 1))


def test_process_expired_subscriptions(db_session, admin_user, make_user, basic_plan, make_subscription):
    other = make_user()
    overdue = make_subscription(admin_user, basic_plan, end_date=datetime(2024, 1, 10))
    ends_today = make_subscription(
        other, basic_plan, status=SubscriptionStatus.TRIAL, end_date=datetime(2024, 1, 15, 18, 30)
    )
    ends_tomorrow = make_subscription(make_user(), basic_plan, end_date=datetime(2024, 1, 16))
    cancelled = make_subscription(
        make_user(), basic_plan, status=SubscriptionStatus.CANCELLED, end_date=datetime(2024, 1, 1)
    )

    count = lifecycle.process_expired_subscriptions(db_session, today=date(2024, 1, 15))

    assert count == 2
    for row in (overdue, ends_today, ends_tomorrow, cancelled):
        db_session.refresh(row)
    assert overdue.status == SubscriptionStatus.EXPIRED
    assert ends_today.status == SubscriptionStatus.EXPIRED
    assert ends_tomorrow.status == SubscriptionStatus.ACTIVE
    assert cancelled.status == SubscriptionStatus.CANCELLED


def test_full_refund_cancels_subscription(db_session, admin_user, basic_plan, gateway):
    _, payment, subscription = _open_session(db_session, admin_user, basic_plan, gateway)
    lifecycle.process_payment(db_session, payment.id, "cf_ref_1", True)

    refunded = lifecycle.process_refund(db_session, payment.id, reason="Customer request")

    db_session.refresh(subscription)
    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refund_amount == Decimal("830.00")
    assert refunded.refund_reason == "Customer request"
    assert subscription.status == SubscriptionStatus.CANCELLED
    assert subscription.payment_status == SubscriptionPaymentStatus.REFUNDED


def test_partial_refund_keeps_subscription(db_session, admin_user, basic_plan, gateway):
    _, payment, subscription = _open_session(db_session, admin_user, basic_plan, gateway)
    lifecycle.process_payment(db_session, payment.id, "cf_ref_1", True)

    refunded = lifecycle.process_refund(db_session, payment.id, refund_amount=Decimal("100"))

    db_session.refresh(subscription)
    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refund_amount == Decimal("100.00")
    assert subscription.status == SubscriptionStatus.ACTIVE


def test_refund_validation(db_session, admin_user, basic_plan, gateway):
    _, payment, _ = _open_session(db_session, admin_user, basic_plan, gateway)

    with pytest.raises(ValidationError) as exc_info:
        lifecycle.process_refund(db_session, payment.id)
    assert exc_info.value.message == "Payment cannot be refunded"

    lifecycle.process_payment(db_session, payment.id, "cf_ref_1", True)
    with pytest.raises(ValidationError) as exc_info:
        lifecycle.process_refund(db_session, payment.id, refund_amount=Decimal("5000"))
    assert exc_info.value.message == "Refund amount cannot exceed payment amount"


def test_check_subscription_limits(db_session, admin_user, basic_plan, make_subscription):
    make_subscription(admin_user, basic_plan)

    under = lifecycle.check_subscription_limits(db_session, admin_user.id, "gateways", 1)
    at_limit = lifecycle.check_subscription_limits(db_session, admin_user.id, "gateways", 2)

    assert under == {"allowed": True, "limit": 2, "usage": 1, "remaining": 1}
    assert at_limit == {"allowed": False, "limit": 2, "usage": 2, "remaining": 0}

    with pytest.raises(ValidationError):
        lifecycle.check_subscription_limits(db_session, admin_user.id, "sensors", 1)


def test_check_limits_without_subscription(db_session, admin_user):
    result = lifecycle.check_subscription_limits(db_session, admin_user.id, "users", 0)

    assert result == {"allowed": False, "limit": 0, "usage": 0, "remaining": 0}


def test_subscription_analytics_keeps_currencies_apart(db_session, admin_user, basic_plan, gateway):
    _, payment, subscription = _open_session(db_session, admin_user, basic_plan, gateway)
    lifecycle.process_payment(db_session, payment.id, "cf_ref_1", True)
    db_session.add(
        models.Payment(
            transaction_id="TXN_MANUAL",
            user_id=admin_user.id,
            subscription_id=subscription.id,
            type=PaymentType.ONE_TIME,
            amount=Decimal("5.00"),
            currency=Currency.USD,
            status=PaymentStatus.COMPLETED,
            payment_method=PaymentMethod.MANUAL,
        )
    )
    db_session.commit()
    db_session.refresh(subscription)

    analytics = lifecycle.get_subscription_analytics(db_session, admin_user.id, now=subscription.start_date)

    expected_days = math.ceil((subscription.end_date - subscription.start_date).total_seconds() / 86400)
    assert analytics["active_subscription"].id == subscription.id
    assert analytics["total_spent"] == {"INR": Decimal("830.00"), "USD": Decimal("5.00")}
    assert analytics["payment_count"] == 2
    assert analytics["next_billing_date"] == subscription.end_date
    assert analytics["days_until_expiry"] == expected_days


def test_get_expiring_subscriptions(db_session, admin_user, make_user, basic_plan, make_subscription):
    soon = make_subscription(admin_user, basic_plan, end_date=datetime(2024, 2, 1))
    make_subscription(make_user(), basic_plan, end_date=datetime(2024, 2, 2))
    make_subscription(
        make_user(), basic_plan, status=SubscriptionStatus.CANCELLED, end_date=datetime(2024, 1, 30)
    )

    expiring = lifecycle.get_expiring_subscriptions(db_session, days=7, today=date(2024, 1, 25))

    assert [row.id for row in expiring] == [soon.id]


def test_get_all_subscriptions_paginates_and_filters(
    db_session, admin_user, make_user, basic_plan, make_subscription
):
    make_subscription(admin_user, basic_plan)
    for _ in range(3):
        make_subscription(make_user(), basic_plan, status=SubscriptionStatus.CANCELLED)

    first_page = lifecycle.get_all_subscriptions(db_session, page=1, limit=2)
    cancelled = lifecycle.get_all_subscriptions(db_session, status=SubscriptionStatus.CANCELLED)

    assert first_page["total"] == 4
    assert first_page["total_pages"] == 2
    assert len(first_page["items"]) == 2
    assert cancelled["total"] == 3
    assert all(row.status == SubscriptionStatus.CANCELLED for row in cancelled["items"])
