import logging
from typing import Any, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from smartpark import models, schemas
from smartpark import subscriptions as lifecycle
from smartpark.auth import get_current_active_user, get_current_admin_user, get_current_super_admin
from smartpark.database import get_db
from smartpark.models import SubscriptionStatus
from smartpark.plans import find_plan, price_in_local_currency
from smartpark.reconciliation import finalize_return, find_payment_for_reference, handle_webhook
from smartpark.services.cashfree import CASHFREE_RETURN_URL

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)

RETURN_PATH = "/payments/cashfree/return"


def _first_header_value(request: Request, name: str) -> str:
    return (request.headers.get(name) or "").split(",")[0].strip()


def _build_return_url_template(request: Request, client_return_url: str | None) -> str:
    template = (client_return_url or "").strip()
    if not template:
        forwarded_host = _first_header_value(request, "x-forwarded-host")
        if forwarded_host:
            protocol = _first_header_value(request, "x-forwarded-proto") or request.url.scheme
            template = f"{protocol}://{forwarded_host}{RETURN_PATH}"
        else:
            template = CASHFREE_RETURN_URL

    if "order_id=" not in template:
        separator = "&" if "?" in template else "?"
        template = f"{template}{separator}order_id={{order_id}}"
    return template


def _plan_payload(plan: models.SubscriptionPlan) -> dict[str, Any]:
    payload = schemas.PlanResponse.model_validate(plan).model_dump(mode="json")
    payload["monthly_price_inr"] = float(price_in_local_currency(plan, models.BillingCycle.MONTHLY))
    payload["quarterly_price_inr"] = float(price_in_local_currency(plan, models.BillingCycle.QUARTERLY))
    payload["yearly_price_inr"] = float(price_in_local_currency(plan, models.BillingCycle.YEARLY))
    return payload


def _owned_subscription_or_404(db: Session, subscription_id: str, user: models.User) -> models.Subscription:
    subscription = db.query(models.Subscription).filter(
        models.Subscription.id == subscription_id,
        models.Subscription.is_deleted.is_(False),
    ).first()
    if not subscription:
        raise HTTPException(status_code=404, detail="Subscription not found")
    if subscription.admin_id != user.id and user.role != models.UserRole.SUPER_ADMIN:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return subscription


@router.get("/plans")
def list_plans(db: Session = Depends(get_db)) -> List[dict[str, Any]]:
    plans = db.query(models.SubscriptionPlan).filter(
        models.SubscriptionPlan.is_active.is_(True),
        models.SubscriptionPlan.is_deleted.is_(False),
    ).order_by(models.SubscriptionPlan.sort_order.asc(), models.SubscriptionPlan.name.asc()).all()
    return [_plan_payload(plan) for plan in plans]


@router.get("/plans/{plan_id}")
def get_plan(plan_id: str, db: Session = Depends(get_db)) -> dict[str, Any]:
    plan = find_plan(db, plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Subscription plan not found or inactive")
    return _plan_payload(plan)


@router.post("/payment-session", response_model=schemas.PaymentSessionResponse)
def create_payment_session(
    payload: schemas.PaymentSessionRequest,
    request: Request,
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    return lifecycle.create_payment_session(
        db,
        admin_id=current_user.id,
        plan_identifier=payload.plan_id,
        billing_cycle=payload.billing_cycle,
        device_count=payload.device_count,
        return_url=_build_return_url_template(request, payload.return_url),
    )


@router.post("/", response_model=schemas.CreateSubscriptionResponse, status_code=201)
def create_subscription(
    payload: schemas.SubscriptionCreateRequest,
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    subscription, payment = lifecycle.create_subscription(
        db,
        admin_id=current_user.id,
        plan_identifier=payload.plan_id,
        billing_cycle=payload.billing_cycle,
        payment_method=payload.payment_method,
        device_count=payload.device_count,
        auto_renew=payload.auto_renew,
        trial_days=payload.trial_days,
    )
    return {"subscription": subscription, "payment": payment}


@router.get("/me", response_model=schemas.SubscriptionResponse | None)
def get_my_subscription(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return lifecycle.get_active_subscription(db, current_user.id)


@router.get("/history", response_model=List[schemas.SubscriptionResponse])
def get_my_subscription_history(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return lifecycle.get_subscription_history(db, current_user.id)


@router.get("/payments", response_model=List[schemas.PaymentResponse])
def get_my_payments(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    return lifecycle.get_payment_history(db, current_user.id)


@router.get("/limits", response_model=schemas.LimitCheckResponse)
def check_limits(
    resource: str = Query(..., min_length=1),
    current_usage: int = Query(default=0, ge=0),
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    result = lifecycle.check_subscription_limits(db, current_user.id, resource, current_usage)
    return {"resource": resource, **result}


@router.get("/analytics", response_model=schemas.AnalyticsResponse)
def get_analytics(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    analytics = lifecycle.get_subscription_analytics(db, current_user.id)
    return schemas.AnalyticsResponse.model_validate(analytics, from_attributes=True)


@router.get("/", response_model=schemas.PaginatedSubscriptions)
def list_all_subscriptions(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: SubscriptionStatus | None = Query(default=None),
    current_user: models.User = Depends(get_current_super_admin),
    db: Session = Depends(get_db),
):
    return lifecycle.get_all_subscriptions(db, page=page, limit=limit, status=status)


@router.get("/active", response_model=List[schemas.SubscriptionResponse])
def list_active_subscriptions(
    current_user: models.User = Depends(get_current_super_admin),
    db: Session = Depends(get_db),
):
    return lifecycle.get_all_active_subscriptions(db)


@router.get("/admins/{admin_id}", response_model=schemas.PaginatedSubscriptions)
def list_admin_subscriptions(
    admin_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    current_user: models.User = Depends(get_current_super_admin),
    db: Session = Depends(get_db),
):
    return lifecycle.get_admin_subscriptions(db, admin_id, page=page, limit=limit)


@router.get("/expiring", response_model=List[schemas.SubscriptionResponse])
def list_expiring_subscriptions(
    days: int = Query(default=7, ge=0, le=365),
    current_user: models.User = Depends(get_current_super_admin),
    db: Session = Depends(get_db),
):
    return lifecycle.get_expiring_subscriptions(db, days=days)


@router.post("/upgrade", response_model=schemas.UpgradeResponse)
def upgrade_subscription(
    payload: schemas.SubscriptionUpgradeRequest,
    request: Request,
    current_user: models.User = Depends(get_current_admin_user),
    db: Session = Depends(get_db),
):
    result = lifecycle.upgrade_subscription(
        db,
        admin_id=current_user.id,
        new_plan_identifier=payload.plan_id,
        new_billing_cycle=payload.billing_cycle,
        device_count=payload.device_count,
        return_url=_build_return_url_template(request, payload.return_url),
    )
    return schemas.UpgradeResponse.model_validate(result, from_attributes=True)


@router.post("/{subscription_id}/cancel", response_model=schemas.SubscriptionResponse)
def cancel_subscription(
    subscription_id: str,
    payload: schemas.SubscriptionCancelRequest | None = None,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    _owned_subscription_or_404(db, subscription_id, current_user)
    return lifecycle.cancel_subscription(db, subscription_id, reason=payload.reason if payload else None)


@router.post("/{subscription_id}/renew", response_model=schemas.RenewSubscriptionResponse)
def renew_subscription(
    subscription_id: str,
    payload: schemas.SubscriptionRenewRequest | None = None,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    _owned_subscription_or_404(db, subscription_id, current_user)
    subscription, payment = lifecycle.renew_subscription(
        db,
        subscription_id,
        payment_method=payload.payment_method if payload else None,
    )
    return {"subscription": subscription, "payment": payment}


@router.post("/payments/process", response_model=schemas.PaymentResponse)
def process_payment(
    payload: schemas.ProcessPaymentRequest,
    current_user: models.User = Depends(get_current_super_admin),
    db: Session = Depends(get_db),
):
    return lifecycle.process_payment(
        db,
        payment_id=payload.payment_id,
        gateway_transaction_id=payload.gateway_transaction_id,
        success=payload.success,
        failure_reason=payload.failure_reason,
    )


@router.post("/payments/finalize")
def finalize_payment(
    payload: schemas.FinalizePaymentRequest,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    """Manual re-check of a Cashfree order, for clients that lost the return redirect."""
    if not (payload.order_id or payload.payment_session_id):
        raise HTTPException(status_code=400, detail="order_id or payment_session_id is required")

    payment = find_payment_for_reference(db, payload.order_id, payload.payment_session_id)
    if not payment or (payment.user_id != current_user.id and current_user.role != models.UserRole.SUPER_ADMIN):
        raise HTTPException(status_code=404, detail="Payment not found")

    result = finalize_return(
        db,
        order_id=payload.order_id,
        payment_session_id=payload.payment_session_id,
        status_hint=payload.status_hint,
        reference_id=payload.reference_id,
        raw_payload=payload.model_dump(exclude_none=True),
        verify_with_gateway=payload.verify_with_gateway,
    )
    body = schemas.FinalizeResultResponse.model_validate(result, from_attributes=True)
    status_code = 200 if body.status == "SUCCESS" else 202
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@router.post("/payments/{payment_id}/refund", response_model=schemas.PaymentResponse)
def refund_payment(
    payment_id: str,
    payload: schemas.RefundRequest | None = None,
    current_user: models.User = Depends(get_current_super_admin),
    db: Session = Depends(get_db),
):
    return lifecycle.process_refund(
        db,
        payment_id,
        refund_amount=payload.refund_amount if payload else None,
        reason=payload.reason if payload else None,
    )


@router.get("/payments/{transaction_id}", response_model=schemas.PaymentResponse)
def get_payment(
    transaction_id: str,
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    payment = lifecycle.get_payment_by_transaction_id(db, transaction_id)
    if not payment or (payment.user_id != current_user.id and current_user.role != models.UserRole.SUPER_ADMIN):
        raise HTTPException(status_code=404, detail="Payment not found")
    return payment


@router.post("/webhook")
def payment_webhook(payload: schemas.PaymentWebhookRequest, db: Session = Depends(get_db)):
    gateway_transaction_id = (payload.gateway_transaction_id or "").strip()
    status = (payload.status or "").strip()
    if not gateway_transaction_id or not status:
        raise HTTPException(status_code=400, detail="gatewayTransactionId and status are required")

    try:
        return handle_webhook(db, gateway_transaction_id, status, payload.metadata)
    except Exception:
        # The gateway retries on non-2xx; failures are logged and acknowledged.
        db.rollback()
        logger.exception("Webhook processing failed gateway_transaction_id=%s", gateway_transaction_id)
        return {"status": "error", "reason": "processing_failed"}
