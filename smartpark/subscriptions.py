import logging
import math
import secrets
import time
from datetime import date, datetime, timedelta
from datetime import time as dt_time
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from smartpark import models
from smartpark.database import with_row_lock
from smartpark.exceptions import NotFoundError, ValidationError
from smartpark.models import (
    LIVE_SUBSCRIPTION_STATUSES,
    BillingCycle,
    Currency,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    SubscriptionPaymentStatus,
    SubscriptionStatus,
)
from smartpark.plans import (
    calculate_end_date,
    calculate_prorated_credit,
    find_plan,
    plan_limits,
    price_for_cycle,
    price_in_local_currency,
    to_money,
)
from smartpark.schemas import GatewayMetadata
from smartpark.services.cashfree import CashfreeClient, cashfree_client

logger = logging.getLogger(__name__)

BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
FREE_UPGRADE_THRESHOLD = Decimal("1")
LOCAL_CURRENCY = Currency.INR

# Payment statuses that process_payment never moves away from.
FINAL_PAYMENT_STATUSES = (
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
)
OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

# Subscriptions a late payment success never reopens.
CLOSED_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
    SubscriptionStatus.SUSPENDED,
)

LIMIT_COLUMNS = {
    "gateways": "gateway_limit",
    "parking_lots": "parking_lot_limit",
    "floors": "floor_limit",
    "parking_slots": "parking_slot_limit",
    "users": "user_limit",
}


def _utcnow() -> datetime:
    return datetime.utcnow()


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_transaction_id() -> str:
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = _to_base36(secrets.randbits(52))
    return f"TXN_{timestamp}_{random_part}".upper()


def _days_until(end_date: datetime | None, now: datetime) -> int | None:
    if end_date is None:
        return None
    return math.ceil((end_date - now).total_seconds() / (24 * 60 * 60))


def _customer_details(admin: models.User) -> dict[str, Any]:
    return {
        "id": admin.id,
        "email": admin.email,
        "phone": admin.phone,
        "name": admin.full_name,
    }


def _get_user(db: Session, admin_id: str) -> models.User:
    user = db.query(models.User).filter(models.User.id == admin_id).first()
    if not user:
        raise NotFoundError("User not found")
    return user


def _get_subscription(db: Session, subscription_id: str, lock: bool = False) -> models.Subscription:
    query = db.query(models.Subscription).filter(
        models.Subscription.id == subscription_id,
        models.Subscription.is_deleted.is_(False),
    )
    if lock:
        query = with_row_lock(db, query)
    subscription = query.first()
    if not subscription:
        raise NotFoundError("Subscription not found")
    return subscription


def _resolve_plan(db: Session, identifier: str, message: str) -> models.SubscriptionPlan:
    plan = find_plan(db, identifier)
    if not plan:
        raise NotFoundError(message)
    return plan


def _live_subscriptions_query(db: Session, admin_id: str):
    return db.query(models.Subscription).filter(
        models.Subscription.admin_id == admin_id,
        models.Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
        models.Subscription.is_deleted.is_(False),
    )


def _cancel_stale_pending(db: Session, admin_id: str, now: datetime) -> int:
    stale_rows = db.query(models.Subscription).filter(
        models.Subscription.admin_id == admin_id,
        models.Subscription.status == SubscriptionStatus.PENDING,
    ).all()
    for row in stale_rows:
        row.status = SubscriptionStatus.CANCELLED
        row.cancelled_at = now
        row.cancellation_reason = row.cancellation_reason or "Superseded by a newer checkout"
    if stale_rows:
        logger.info("Cancelled %s stale pending subscription(s) for admin_id=%s", len(stale_rows), admin_id)
    return len(stale_rows)


def _ensure_no_live_subscription(db: Session, admin_id: str) -> None:
    if _live_subscriptions_query(db, admin_id).first():
        raise ValidationError("User already has an active subscription")


def _build_subscription(
    admin: models.User,
    plan: models.SubscriptionPlan,
    cycle: BillingCycle,
    amount: Decimal,
    device_count: int,
    start_date: datetime,
    status: SubscriptionStatus,
    payment_status: SubscriptionPaymentStatus,
    auto_renew: bool = True,
    trial_end_date: datetime | None = None,
    extra: dict[str, Any] | None = None,
) -> models.Subscription:
    end_date = calculate_end_date(start_date, cycle)
    return models.Subscription(
        admin_id=admin.id,
        plan_id=plan.id,
        plan=plan,
        billing_cycle=cycle,
        amount=to_money(amount),
        device_count=device_count or 0,
        start_date=start_date,
        end_date=end_date,
        trial_end_date=trial_end_date,
        next_billing_date=end_date,
        status=status,
        payment_status=payment_status,
        auto_renew=auto_renew,
        extra=extra or {},
        **plan_limits(plan),
    )


def _mark_cancelled(subscription: models.Subscription, now: datetime, reason: str) -> None:
    subscription.status = SubscriptionStatus.CANCELLED
    subscription.cancelled_at = now
    subscription.cancellation_reason = reason
    subscription.auto_renew = False


def create_subscription(
    db: Session,
    admin_id: str,
    plan_identifier: str,
    billing_cycle: BillingCycle,
    payment_method: PaymentMethod,
    device_count: int = 0,
    auto_renew: bool = True,
    trial_days: int | None = None,
) -> tuple[models.Subscription, models.Payment]:
    """Open a checkout without a gateway order: pending subscription plus pending USD payment."""
    now = _utcnow()
    cycle = BillingCycle(billing_cycle)
    try:
        admin = _get_user(db, admin_id)
        plan = _resolve_plan(db, plan_identifier, "Subscription plan not found or inactive")
        _cancel_stale_pending(db, admin.id, now)
        _ensure_no_live_subscription(db, admin.id)

        amount = price_for_cycle(plan, cycle, device_count)
        trial_end_date = now + timedelta(days=trial_days) if trial_days else None
        subscription = _build_subscription(
            admin,
            plan,
            cycle,
            amount,
            device_count,
            now,
            status=SubscriptionStatus.TRIAL if trial_end_date else SubscriptionStatus.PENDING,
            payment_status=SubscriptionPaymentStatus.PENDING,
            auto_renew=auto_renew,
            trial_end_date=trial_end_date,
            extra={"device_count": device_count or 0, "created_from": "api"},
        )
        db.add(subscription)
        db.flush()

        payment = models.Payment(
            transaction_id=generate_transaction_id(),
            user_id=admin.id,
            subscription_id=subscription.id,
            type=PaymentType.SUBSCRIPTION,
            amount=amount,
            currency=Currency.USD,
            status=PaymentStatus.PENDING,
            payment_method=PaymentMethod(payment_method),
            description=f"Subscription to {plan.name} plan ({cycle.value})",
            details={
                "plan_id": plan.id,
                "plan_name": plan.name,
                "billing_cycle": cycle.value,
                "trial_days": trial_days,
                "device_count": device_count or 0,
            },
        )
        db.add(payment)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(subscription)
    db.refresh(payment)
    logger.info(
        "Subscription created subscription_id=%s admin_id=%s plan=%s status=%s",
        subscription.id,
        admin_id,
        plan.name,
        subscription.status.value,
    )
    return subscription, payment


def _fill_return_url(template: str, order_id: str, payment_session_id: str | None) -> str:
    return template.replace("{order_id}", order_id).replace("{payment_session_id}", payment_session_id or "")


def create_payment_session(
    db: Session,
    admin_id: str,
    plan_identifier: str,
    billing_cycle: BillingCycle,
    device_count: int = 0,
    return_url: str | None = None,
    gateway: CashfreeClient | None = None,
) -> dict[str, Any]:
    """
    Open a Cashfree checkout for a new subscription.

    The subscription is priced in USD; the payment is charged in INR at the
    plan's conversion rate. Nothing is persisted when the gateway call fails.
    """
    client = gateway or cashfree_client
    now = _utcnow()
    cycle = BillingCycle(billing_cycle)
    try:
        admin = _get_user(db, admin_id)
        plan = _resolve_plan(db, plan_identifier, "Subscription plan not found or inactive")
        _cancel_stale_pending(db, admin.id, now)
        _ensure_no_live_subscription(db, admin.id)

        amount_usd = price_for_cycle(plan, cycle, device_count)
        amount_local = price_in_local_currency(plan, cycle, device_count)

        subscription = _build_subscription(
            admin,
            plan,
            cycle,
            amount_usd,
            device_count,
            now,
            status=SubscriptionStatus.PENDING,
            payment_status=SubscriptionPaymentStatus.PENDING,
            extra={"device_count": device_count or 0, "created_from": "cashfree_session"},
        )
        db.add(subscription)
        db.flush()

        transaction_id = generate_transaction_id()
        payment = models.Payment(
            transaction_id=transaction_id,
            user_id=admin.id,
            subscription_id=subscription.id,
            type=PaymentType.SUBSCRIPTION,
            amount=amount_local,
            currency=LOCAL_CURRENCY,
            status=PaymentStatus.PENDING,
            payment_method=PaymentMethod.CASHFREE,
            description=f"Subscription to {plan.name} plan ({cycle.value})",
            details={
                "plan_id": plan.id,
                "plan_name": plan.name,
                "billing_cycle": cycle.value,
                "device_count": device_count or 0,
                "amount_usd": float(amount_usd),
                "amount_local": float(amount_local),
                "environment": client.environment,
            },
        )
        db.add(payment)
        db.flush()

        order = client.create_order(
            order_id=transaction_id,
            amount=amount_local,
            currency=LOCAL_CURRENCY.value,
            customer=_customer_details(admin),
            return_url=return_url,
            note=f"Subscription {subscription.id}",
            tags={"subscription_id": subscription.id, "payment_id": payment.id},
        )
        GatewayMetadata(
            order_id=order.gateway_order_id,
            payment_session_id=order.session_id,
            cf_order_id=order.cf_order_id,
            status=order.status,
        ).apply_to(payment)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Payment session opened payment_id=%s order_id=%s subscription_id=%s amount=%s %s",
        payment.id,
        order.gateway_order_id,
        subscription.id,
        amount_local,
        LOCAL_CURRENCY.value,
    )
    return {
        "payment_session_id": order.session_id,
        "order_id": order.gateway_order_id,
        "cf_order_id": order.cf_order_id,
        "order_amount": float(order.amount),
        "order_currency": order.currency,
        "payment_id": payment.id,
        "subscription_id": subscription.id,
        "plan": {
            "id": plan.id,
            "name": plan.name,
            "billing_cycle": cycle.value,
            "amount_usd": float(amount_usd),
            "amount_local": float(amount_local),
        },
        "return_url": _fill_return_url(
            return_url or client.default_return_url(),
            order.gateway_order_id,
            order.session_id,
        ),
    }


def _complete_payment(
    db: Session,
    payment: models.Payment,
    gateway_transaction_id: str,
    now: datetime,
) -> None:
    payment.status = PaymentStatus.COMPLETED
    payment.processed_at = now
    payment.failure_reason = None
    details = dict(payment.details or {})
    details["gateway_transaction_id"] = gateway_transaction_id
    details["processed_at"] = now.isoformat()
    if payment.subscription_id:
        subscription = with_row_lock(
            db,
            db.query(models.Subscription).filter(models.Subscription.id == payment.subscription_id),
        ).first()
        if subscription is not None:
            _settle_paid_subscription(db, payment, subscription, details, now)
    payment.details = details


def _settle_paid_subscription(
    db: Session,
    payment: models.Payment,
    subscription: models.Subscription,
    details: dict[str, Any],
    now: datetime,
) -> None:
    subscription.payment_status = SubscriptionPaymentStatus.PAID

    if subscription.status in CLOSED_SUBSCRIPTION_STATUSES:
        # Money arrived for a checkout that was superseded or cancelled meanwhile.
        details["requires_review"] = True
        logger.warning(
            "Payment completed for closed subscription; not reactivating "
            "payment_id=%s subscription_id=%s subscription_status=%s",
            payment.id,
            subscription.id,
            subscription.status.value,
        )
        return

    old_subscription_id = None
    if payment.type == PaymentType.SUBSCRIPTION_UPGRADE:
        old_subscription_id = details.get("old_subscription_id")

    if old_subscription_id:
        old_subscription = with_row_lock(
            db,
            db.query(models.Subscription).filter(models.Subscription.id == old_subscription_id),
        ).first()
        if old_subscription and old_subscription.status in LIVE_SUBSCRIPTION_STATUSES:
            _mark_cancelled(old_subscription, now, f"Upgraded to {subscription.plan_name} plan")
            logger.info(
                "Old subscription cancelled after upgrade old_subscription_id=%s new_subscription_id=%s payment_id=%s",
                old_subscription.id,
                subscription.id,
                payment.id,
            )

    excluded_ids = [subscription.id] + ([old_subscription_id] if old_subscription_id else [])
    other_live = _live_subscriptions_query(db, subscription.admin_id).filter(
        models.Subscription.id.notin_(excluded_ids)
    ).first()

    if other_live is None:
        subscription.status = SubscriptionStatus.ACTIVE
    else:
        details["requires_review"] = True
        logger.warning(
            "Payment completed but admin already has live subscription; not activating "
            "payment_id=%s subscription_id=%s live_subscription_id=%s",
            payment.id,
            subscription.id,
            other_live.id,
        )


def _fail_payment(payment: models.Payment, failure_reason: str | None, now: datetime) -> None:
    payment.status = PaymentStatus.FAILED
    payment.failure_reason = (failure_reason or "Payment processing failed")[:1000]

    subscription = payment.subscription
    if subscription is None:
        return
    if subscription.status == SubscriptionStatus.PENDING:
        subscription.status = SubscriptionStatus.CANCELLED
        subscription.payment_status = SubscriptionPaymentStatus.FAILED
        subscription.cancelled_at = now
        subscription.cancellation_reason = subscription.cancellation_reason or "Payment failed"
        logger.info(
            "Pending subscription cancelled after payment failure subscription_id=%s payment_id=%s upgrade=%s",
            subscription.id,
            payment.id,
            payment.type == PaymentType.SUBSCRIPTION_UPGRADE,
        )
    elif subscription.status in LIVE_SUBSCRIPTION_STATUSES:
        # Renewal charge failed; coverage stays until the sweep expires it.
        subscription.payment_status = SubscriptionPaymentStatus.FAILED


def process_payment(
    db: Session,
    payment_id: str,
    gateway_transaction_id: str,
    success: bool,
    failure_reason: str | None = None,
) -> models.Payment:
    """
    Apply a confirmed gateway outcome to a payment and its subscription.

    Safe to call any number of times: payments that already reached a final
    status are returned unchanged.
    """
    now = _utcnow()
    try:
        payment = with_row_lock(
            db,
            db.query(models.Payment).filter(models.Payment.id == payment_id),
        ).first()
        if not payment:
            raise NotFoundError("Payment not found")

        if payment.status in FINAL_PAYMENT_STATUSES:
            logger.info(
                "Payment already final, returning existing record payment_id=%s transaction_id=%s status=%s",
                payment.id,
                payment.transaction_id,
                payment.status.value,
            )
        elif payment.status in OPEN_PAYMENT_STATUSES:
            if success:
                _complete_payment(db, payment, gateway_transaction_id, now)
            else:
                _fail_payment(payment, failure_reason, now)
        else:
            raise ValidationError(f"Unsupported payment status: {payment.status}")
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(payment)
    logger.info(
        "Payment processed payment_id=%s success=%s status=%s",
        payment.id,
        success,
        payment.status.value,
    )
    return payment


def upgrade_subscription(
    db: Session,
    admin_id: str,
    new_plan_identifier: str,
    new_billing_cycle: BillingCycle,
    device_count: int = 0,
    return_url: str | None = None,
    gateway: CashfreeClient | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Move an admin to a different plan or billing cycle.

    Unused time on the current subscription is credited against the new
    plan's local price. When less than one currency unit remains to pay, the
    switch happens immediately; otherwise a pending subscription and an
    upgrade payment are created and the current subscription stays live until
    that payment completes.
    """
    client = gateway or cashfree_client
    now = now or _utcnow()
    cycle = BillingCycle(new_billing_cycle)
    order = None
    payment = None
    try:
        admin = _get_user(db, admin_id)
        current = _live_subscriptions_query(db, admin.id).order_by(models.Subscription.created_at.desc()).first()
        if not current:
            raise NotFoundError("No active subscription found to upgrade")

        new_plan = _resolve_plan(db, new_plan_identifier, "New subscription plan not found or inactive")
        if current.plan_id == new_plan.id and current.billing_cycle == cycle:
            raise ValidationError("You are already subscribed to this plan and billing cycle")

        proration = calculate_prorated_credit(current, current.plan, now)
        original_price = price_in_local_currency(new_plan, cycle, device_count)
        final_price = max(Decimal("0.00"), to_money(original_price - proration.credit_amount))
        amount_usd = price_for_cycle(new_plan, cycle, device_count)

        if final_price < FREE_UPGRADE_THRESHOLD:
            final_price = Decimal("0.00")
            _mark_cancelled(current, now, f"Upgraded to {new_plan.name} plan")
            new_subscription = _build_subscription(
                admin,
                new_plan,
                cycle,
                amount_usd,
                device_count,
                now,
                status=SubscriptionStatus.ACTIVE,
                payment_status=SubscriptionPaymentStatus.PAID,
                extra={
                    "device_count": device_count or 0,
                    "created_from": "upgrade",
                    "upgraded_from": current.id,
                    "prorated_credit": float(proration.credit_amount),
                },
            )
            db.add(new_subscription)
            db.commit()
        else:
            _cancel_stale_pending(db, admin.id, now)
            new_subscription = _build_subscription(
                admin,
                new_plan,
                cycle,
                amount_usd,
                device_count,
                now,
                status=SubscriptionStatus.PENDING,
                payment_status=SubscriptionPaymentStatus.PENDING,
                extra={
                    "device_count": device_count or 0,
                    "created_from": "upgrade",
                    "upgraded_from": current.id,
                },
            )
            db.add(new_subscription)
            db.flush()

            transaction_id = generate_transaction_id()
            payment = models.Payment(
                transaction_id=transaction_id,
                user_id=admin.id,
                subscription_id=new_subscription.id,
                type=PaymentType.SUBSCRIPTION_UPGRADE,
                amount=final_price,
                currency=LOCAL_CURRENCY,
                status=PaymentStatus.PENDING,
                payment_method=PaymentMethod.CASHFREE,
                description=f"Upgrade to {new_plan.name} plan ({cycle.value})",
                details={
                    "prorated_credit": float(proration.credit_amount),
                    "remaining_days": proration.remaining_days,
                    "original_price": float(original_price),
                    "final_price": float(final_price),
                    "old_subscription_id": current.id,
                },
            )
            db.add(payment)
            db.flush()

            order = client.create_order(
                order_id=transaction_id,
                amount=final_price,
                currency=LOCAL_CURRENCY.value,
                customer=_customer_details(admin),
                return_url=return_url,
                note=f"Subscription upgrade to {new_plan.name}",
                tags={"subscription_id": new_subscription.id, "payment_id": payment.id},
            )
            GatewayMetadata(
                order_id=order.gateway_order_id,
                payment_session_id=order.session_id,
                cf_order_id=order.cf_order_id,
                status=order.status,
            ).apply_to(payment)
            db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(new_subscription)
    logger.info(
        "Subscription upgrade admin_id=%s from=%s to=%s credit=%s final_price=%s immediate=%s",
        admin_id,
        current.id,
        new_subscription.id,
        proration.credit_amount,
        final_price,
        order is None,
    )
    return {
        "new_subscription": new_subscription,
        "payment": payment,
        "prorated_credit": proration.credit_amount,
        "remaining_days": proration.remaining_days,
        "original_price": original_price,
        "final_price": final_price,
        "payment_session_id": order.session_id if order else None,
        "order_id": order.gateway_order_id if order else None,
        "requires_payment": order is not None,
    }


def cancel_subscription(
    db: Session,
    subscription_id: str,
    reason: str | None = None,
) -> models.Subscription:
    try:
        subscription = _get_subscription(db, subscription_id, lock=True)
        _mark_cancelled(subscription, _utcnow(), reason or "User cancelled")
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(subscription)
    logger.info("Subscription cancelled subscription_id=%s", subscription.id)
    return subscription


def renew_subscription(
    db: Session,
    subscription_id: str,
    payment_method: PaymentMethod | None = None,
    now: datetime | None = None,
) -> tuple[models.Subscription, models.Payment | None]:
    now = now or _utcnow()
    payment = None
    try:
        subscription = _get_subscription(db, subscription_id, lock=True)
        renewable = (
            subscription.status == SubscriptionStatus.ACTIVE
            and subscription.auto_renew
            and subscription.end_date >= now
        )
        if not renewable:
            raise ValidationError("Subscription cannot be renewed")

        cycle = BillingCycle(subscription.billing_cycle)
        subscription.start_date = now
        subscription.end_date = calculate_end_date(now, cycle)
        subscription.next_billing_date = subscription.end_date
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.payment_status = SubscriptionPaymentStatus.PENDING

        if to_money(subscription.amount) > 0:
            payment = models.Payment(
                transaction_id=generate_transaction_id(),
                user_id=subscription.admin_id,
                subscription_id=subscription.id,
                type=PaymentType.SUBSCRIPTION,
                amount=subscription.amount,
                currency=Currency.USD,
                status=PaymentStatus.PENDING,
                payment_method=PaymentMethod(payment_method) if payment_method else PaymentMethod.STRIPE,
                description=f"Subscription renewal for {subscription.plan_name} plan",
                details={"renewal_date": now.isoformat(), "billing_cycle": cycle.value},
            )
            db.add(payment)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(subscription)
    if payment is not None:
        db.refresh(payment)
    logger.info(
        "Subscription renewed subscription_id=%s end_date=%s payment_id=%s",
        subscription.id,
        subscription.end_date,
        payment.id if payment else None,
    )
    return subscription, payment


def process_expired_subscriptions(db: Session, today: date | datetime | None = None) -> int:
    """Expire every live subscription whose end date falls on or before today."""
    if today is None:
        today = _utcnow().date()
    elif isinstance(today, datetime):
        today = today.date()
    cutoff = datetime.combine(today, dt_time.max)

    try:
        expired_rows = db.query(models.Subscription).filter(
            models.Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
            models.Subscription.end_date <= cutoff,
            models.Subscription.is_deleted.is_(False),
        ).all()
        for subscription in expired_rows:
            subscription.status = SubscriptionStatus.EXPIRED
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Processed %s expired subscriptions", len(expired_rows))
    return len(expired_rows)


def process_refund(
    db: Session,
    payment_id: str,
    refund_amount: Decimal | None = None,
    reason: str | None = None,
) -> models.Payment:
    now = _utcnow()
    try:
        payment = with_row_lock(
            db,
            db.query(models.Payment).filter(models.Payment.id == payment_id),
        ).first()
        if not payment:
            raise NotFoundError("Payment not found")
        if payment.status != PaymentStatus.COMPLETED:
            raise ValidationError("Payment cannot be refunded")

        paid_amount = to_money(payment.amount)
        amount = to_money(refund_amount) if refund_amount is not None else paid_amount
        if amount <= 0:
            raise ValidationError("Refund amount must be positive")
        if amount > paid_amount:
            raise ValidationError("Refund amount cannot exceed payment amount")

        payment.status = PaymentStatus.REFUNDED
        payment.refund_amount = amount
        payment.refunded_at = now
        payment.refund_reason = reason or "Refund processed"

        subscription = payment.subscription
        if subscription is not None and amount == paid_amount:
            _mark_cancelled(subscription, now, reason or "Refunded")
            subscription.payment_status = SubscriptionPaymentStatus.REFUNDED
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(payment)
    logger.info("Payment refunded payment_id=%s amount=%s", payment.id, amount)
    return payment


def get_active_subscription(db: Session, admin_id: str) -> models.Subscription | None:
    return _live_subscriptions_query(db, admin_id).order_by(models.Subscription.created_at.desc()).first()


def check_subscription_limits(
    db: Session,
    admin_id: str,
    resource: str,
    current_usage: int,
) -> dict[str, Any]:
    """Compare caller-supplied usage for one resource against the live subscription's limit."""
    column = LIMIT_COLUMNS.get(resource)
    if column is None:
        raise ValidationError(f"Unknown resource: {resource}")

    subscription = get_active_subscription(db, admin_id)
    if subscription is None:
        return {"allowed": False, "limit": 0, "usage": current_usage, "remaining": 0}

    limit = getattr(subscription, column) or 0
    return {
        "allowed": current_usage < limit,
        "limit": limit,
        "usage": current_usage,
        "remaining": max(0, limit - current_usage),
    }


def get_subscription_history(db: Session, admin_id: str) -> list[models.Subscription]:
    return db.query(models.Subscription).filter(
        models.Subscription.admin_id == admin_id,
        models.Subscription.is_deleted.is_(False),
    ).order_by(models.Subscription.created_at.desc()).all()


def get_payment_history(db: Session, admin_id: str) -> list[models.Payment]:
    return db.query(models.Payment).filter(
        models.Payment.user_id == admin_id,
        models.Payment.is_deleted.is_(False),
    ).order_by(models.Payment.created_at.desc()).all()


def _paginate(query, page: int, limit: int) -> dict[str, Any]:
    page = max(page, 1)
    limit = max(1, min(limit, 100))
    total = query.count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    return {
        "items": items,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": math.ceil(total / limit) if total else 0,
    }


def get_admin_subscriptions(db: Session, admin_id: str, page: int = 1, limit: int = 20) -> dict[str, Any]:
    query = db.query(models.Subscription).filter(
        models.Subscription.admin_id == admin_id,
        models.Subscription.is_deleted.is_(False),
    ).order_by(models.Subscription.created_at.desc())
    return _paginate(query, page, limit)


def get_all_subscriptions(
    db: Session,
    page: int = 1,
    limit: int = 20,
    status: SubscriptionStatus | None = None,
) -> dict[str, Any]:
    query = db.query(models.Subscription).filter(models.Subscription.is_deleted.is_(False))
    if status is not None:
        query = query.filter(models.Subscription.status == SubscriptionStatus(status))
    return _paginate(query.order_by(models.Subscription.created_at.desc()), page, limit)


def get_all_active_subscriptions(db: Session) -> list[models.Subscription]:
    return db.query(models.Subscription).filter(
        models.Subscription.status.in_(LIVE_SUBSCRIPTION_STATUSES),
        models.Subscription.is_deleted.is_(False),
    ).order_by(models.Subscription.created_at.desc()).all()


def get_expiring_subscriptions(
    db: Session,
    days: int = 7,
    today: date | None = None,
) -> list[models.Subscription]:
    today = today or _utcnow().date()
    threshold = datetime.combine(today, dt_time.min) + timedelta(days=days)
    return db.query(models.Subscription).filter(
        models.Subscription.status == SubscriptionStatus.ACTIVE,
        models.Subscription.end_date <= threshold,
        models.Subscription.is_deleted.is_(False),
    ).order_by(models.Subscription.end_date.asc()).all()


def get_subscription_analytics(db: Session, admin_id: str, now: datetime | None = None) -> dict[str, Any]:
    now = now or _utcnow()
    active_subscription = get_active_subscription(db, admin_id)
    completed = [
        payment for payment in get_payment_history(db, admin_id)
        if payment.status == PaymentStatus.COMPLETED
    ]

    # Payments are charged in more than one currency; totals are kept apart.
    total_spent: dict[str, Decimal] = {}
    for payment in completed:
        currency = payment.currency.value
        total_spent[currency] = to_money(total_spent.get(currency, Decimal("0")) + to_money(payment.amount))

    return {
        "active_subscription": active_subscription,
        "total_spent": total_spent,
        "payment_count": len(completed),
        "next_billing_date": active_subscription.next_billing_date if active_subscription else None,
        "days_until_expiry": _days_until(active_subscription.end_date, now) if active_subscription else None,
    }


def get_payment_by_transaction_id(db: Session, transaction_id: str) -> models.Payment | None:
    return db.query(models.Payment).filter(models.Payment.transaction_id == transaction_id).first()


def get_payment_by_id(db: Session, payment_id: str) -> models.Payment | None:
    return db.query(models.Payment).filter(models.Payment.id == payment_id).first()
