import math
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import NamedTuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import func
from sqlalchemy.orm import Session

from smartpark import models
from smartpark.models import BillingCycle

CENT = Decimal("0.01")
SECONDS_PER_DAY = 24 * 60 * 60


class ProratedCredit(NamedTuple):
    credit_amount: Decimal
    remaining_days: int
    total_days: int


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _looks_like_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _name_variants(identifier: str) -> list[str]:
    normalized = identifier.lower()
    variants = [normalized]
    if "-" in normalized or "_" in normalized:
        spaced = " ".join(part for part in normalized.replace("_", "-").split("-") if part)
        if spaced and spaced not in variants:
            variants.append(spaced)
    return variants


def find_plan(db: Session, identifier: str | None) -> models.SubscriptionPlan | None:
    """Resolve a plan by UUID or by name.

    Name matching ignores case and treats ``-``/``_`` as spaces. Inactive or
    soft-deleted plans never match.
    """
    trimmed = (identifier or "").strip()
    if not trimmed:
        return None

    base_query = db.query(models.SubscriptionPlan).filter(
        models.SubscriptionPlan.is_active.is_(True),
        models.SubscriptionPlan.is_deleted.is_(False),
    )

    if _looks_like_uuid(trimmed):
        plan = base_query.filter(models.SubscriptionPlan.id == trimmed).first()
        if plan:
            return plan

    for variant in _name_variants(trimmed):
        plan = base_query.filter(func.lower(models.SubscriptionPlan.name) == variant).first()
        if plan:
            return plan
    return None


def base_price_for_cycle(plan: models.SubscriptionPlan, cycle: BillingCycle) -> Decimal:
    if cycle == BillingCycle.MONTHLY:
        return to_money(plan.base_price_per_month)
    if cycle == BillingCycle.QUARTERLY:
        if plan.base_price_per_quarter is not None:
            return to_money(plan.base_price_per_quarter)
        return to_money(to_money(plan.base_price_per_month) * 3)
    if cycle == BillingCycle.YEARLY:
        return to_money(plan.base_price_per_year)
    raise ValueError(f"Unsupported billing cycle: {cycle}")


def node_price_for_cycle(plan: models.SubscriptionPlan, cycle: BillingCycle) -> Decimal:
    if cycle == BillingCycle.MONTHLY:
        return to_money(plan.price_per_node_per_month)
    if cycle == BillingCycle.QUARTERLY:
        if plan.price_per_node_per_quarter is not None:
            return to_money(plan.price_per_node_per_quarter)
        return to_money(to_money(plan.price_per_node_per_month) * 3)
    if cycle == BillingCycle.YEARLY:
        return to_money(plan.price_per_node_per_year)
    raise ValueError(f"Unsupported billing cycle: {cycle}")


def price_for_cycle(plan: models.SubscriptionPlan, cycle: BillingCycle, device_count: int = 0) -> Decimal:
    """USD price for one cycle: base price plus ``device_count`` node prices."""
    return to_money(base_price_for_cycle(plan, cycle) + node_price_for_cycle(plan, cycle) * int(device_count or 0))


def price_in_local_currency(
    plan: models.SubscriptionPlan,
    cycle: BillingCycle,
    device_count: int = 0,
) -> Decimal:
    return to_money(price_for_cycle(plan, cycle, device_count) * to_money(plan.usd_to_inr_rate))


def yearly_discount_percent(plan: models.SubscriptionPlan) -> int:
    monthly_total = to_money(plan.base_price_per_month) * 12
    if monthly_total <= 0:
        return 0
    discount = (monthly_total - to_money(plan.base_price_per_year)) / monthly_total * 100
    return int(discount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def plan_limits(plan: models.SubscriptionPlan) -> dict[str, int]:
    return {
        "gateway_limit": plan.max_gateways or 0,
        "parking_lot_limit": plan.max_parking_lots or 0,
        "floor_limit": plan.max_floors or 0,
        "parking_slot_limit": plan.max_parking_slots or 0,
        "user_limit": plan.max_users or 0,
    }


def calculate_end_date(start: datetime, cycle: BillingCycle) -> datetime:
    # relativedelta clamps to the last day of shorter months (Jan 31 -> Feb 29).
    if cycle == BillingCycle.MONTHLY:
        return start + relativedelta(months=1)
    if cycle == BillingCycle.QUARTERLY:
        return start + relativedelta(months=3)
    if cycle == BillingCycle.YEARLY:
        return start + relativedelta(years=1)
    raise ValueError(f"Unsupported billing cycle: {cycle}")


def _ceil_days(seconds: float) -> int:
    return math.ceil(seconds / SECONDS_PER_DAY)


def calculate_prorated_credit(
    subscription: models.Subscription,
    plan: models.SubscriptionPlan,
    now: datetime | None = None,
) -> ProratedCredit:
    now = now or datetime.utcnow()
    start_date = subscription.start_date
    end_date = subscription.end_date

    remaining_days = max(0, _ceil_days((end_date - now).total_seconds()))
    total_days = _ceil_days((end_date - start_date).total_seconds())
    if remaining_days <= 0 or total_days <= 0:
        return ProratedCredit(Decimal("0.00"), 0, max(total_days, 0))

    # Device count is left out so the credit reflects the plan's base value.
    current_price = price_in_local_currency(plan, BillingCycle(subscription.billing_cycle), 0)
    credit = current_price * remaining_days / total_days
    return ProratedCredit(to_money(credit), remaining_days, total_days)
