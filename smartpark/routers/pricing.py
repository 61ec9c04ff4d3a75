from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from smartpark.database import get_db
from smartpark.models import BillingCycle
from smartpark.plans import (
    base_price_for_cycle,
    find_plan,
    node_price_for_cycle,
    price_for_cycle,
    price_in_local_currency,
    to_money,
    yearly_discount_percent,
)

router = APIRouter(prefix="/api/pricing", tags=["pricing"])


@router.get("/quote")
def get_price_quote(
    plan_id: str = Query(..., min_length=1),
    billing_cycle: BillingCycle = Query(default=BillingCycle.MONTHLY),
    device_count: int = Query(default=0, ge=0, le=10000),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    plan = find_plan(db, plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Subscription plan not found or inactive")

    base_price = base_price_for_cycle(plan, billing_cycle)
    node_price = node_price_for_cycle(plan, billing_cycle)
    return {
        "plan_id": plan.id,
        "plan_name": plan.name,
        "billing_cycle": billing_cycle.value,
        "device_count": device_count,
        "base_price_usd": float(base_price),
        "price_per_device_usd": float(node_price),
        "total_usd": float(price_for_cycle(plan, billing_cycle, device_count)),
        "total_inr": float(price_in_local_currency(plan, billing_cycle, device_count)),
        "usd_to_inr_rate": float(to_money(plan.usd_to_inr_rate)),
        "yearly_discount_percent": yearly_discount_percent(plan),
    }
