import enum
import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from smartpark import models
from smartpark.database import run_with_reconnect, with_row_lock
from smartpark.exceptions import BillingError, GatewayError
from smartpark.models import PaymentStatus, SubscriptionPaymentStatus, SubscriptionStatus
from smartpark.schemas import GatewayMetadata
from smartpark.services.cashfree import CashfreeClient, cashfree_client
from smartpark.subscriptions import FINAL_PAYMENT_STATUSES, process_payment

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"SUCCESS", "PAID", "COMPLETED"})
FAILURE_STATUSES = frozenset({"FAILED", "CANCELLED", "CHARGED_BACK", "EXPIRED", "VOID"})
WEBHOOK_SUCCESS_STATUSES = frozenset({"completed", "succeeded", "paid"})
WEBHOOK_FAILURE_STATUSES = frozenset({"failed", "cancelled", "declined"})


class FinalizeStatus(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"
    NOT_FOUND = "NOT_FOUND"
    ERROR = "ERROR"


RESULT_MESSAGES = {
    FinalizeStatus.SUCCESS: "Payment successful. Your subscription is now active.",
    FinalizeStatus.FAILED: "Payment failed. No subscription was activated.",
    FinalizeStatus.PENDING: "Payment is being processed. Your subscription will update once it is confirmed.",
    FinalizeStatus.NOT_FOUND: "Payment not found",
    FinalizeStatus.ERROR: "Failed to finalize payment",
}


def classify_gateway_status(status: str | None) -> FinalizeStatus:
    normalized = (status or "").strip().upper()
    if normalized in SUCCESS_STATUSES:
        return FinalizeStatus.SUCCESS
    if normalized in FAILURE_STATUSES:
        return FinalizeStatus.FAILED
    return FinalizeStatus.PENDING


def _result(
    status: FinalizeStatus,
    payment: models.Payment | None = None,
    subscription: models.Subscription | None = None,
    gateway_status: str | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    return {
        "status": status.value,
        "payment": payment,
        "subscription": subscription,
        "gateway_status": gateway_status,
        "message": message or RESULT_MESSAGES[status],
    }


def _cashfree_field(*path: str):
    return models.Payment.details[("cashfree",) + path].as_string()


def _find_payment_by_session(db: Session, payment_session_id: str) -> models.Payment | None:
    return db.query(models.Payment).filter(
        _cashfree_field("payment_session_id") == payment_session_id
    ).order_by(models.Payment.created_at.desc()).first()


def _find_payment_by_order(db: Session, order_id: str) -> models.Payment | None:
    payment = db.query(models.Payment).filter(
        _cashfree_field("order_id") == order_id
    ).order_by(models.Payment.created_at.desc()).first()
    if payment:
        return payment
    return db.query(models.Payment).filter(models.Payment.transaction_id == order_id).first()


def _resolve_order_id(db: Session, order_id: str | None, payment_session_id: str | None) -> str:
    resolved = (order_id or "").strip()
    session_id = (payment_session_id or "").strip()
    if resolved or not session_id:
        return resolved

    seed_payment = _find_payment_by_session(db, session_id)
    if not seed_payment:
        return ""
    metadata = GatewayMetadata.from_payment(seed_payment)
    return (metadata.order_id or "").strip() or seed_payment.transaction_id


def find_payment_for_reference(
    db: Session,
    order_id: str | None,
    payment_session_id: str | None,
) -> models.Payment | None:
    resolved_order_id = _resolve_order_id(db, order_id, payment_session_id)
    if not resolved_order_id:
        return None
    return _find_payment_by_order(db, resolved_order_id)


def _fetch_gateway_order(client: CashfreeClient, order_id: str) -> dict[str, Any] | None:
    try:
        return client.get_order(order_id)
    except GatewayError as exc:
        logger.warning("Cashfree order verification failed order_id=%s: %s", order_id, exc)
        return None


def _record_return_signal(
    db: Session,
    order_id: str,
    payment_session_id: str | None,
    hinted_status: str,
    reference_id: str | None,
    raw_payload: dict[str, Any] | None,
    verify_with_gateway: bool,
    client: CashfreeClient,
) -> tuple[models.Payment | None, FinalizeStatus, str]:
    """
    Merge one return/re-check signal into the payment's gateway metadata and
    commit it, whatever the outcome. Returns the payment, the classified
    outcome and the effective gateway status.

    The gateway is asked outside any transaction. The merge itself happens on
    a locked, freshly loaded row so a completion committed by a concurrent
    return or webhook in the meantime is never overwritten.
    """
    try:
        payment = _find_payment_by_order(db, order_id)
        if not payment:
            db.rollback()
            return None, FinalizeStatus.NOT_FOUND, hinted_status or "UNKNOWN"
        payment_id = payment.id
        signal_status = hinted_status or GatewayMetadata.from_payment(payment).status or "PENDING"
        db.rollback()
    except Exception:
        db.rollback()
        raise

    effective_status = signal_status
    gateway_order = None
    if verify_with_gateway and classify_gateway_status(signal_status) == FinalizeStatus.PENDING:
        gateway_order = _fetch_gateway_order(client, order_id)
        gateway_status = str((gateway_order or {}).get("order_status") or "").strip().upper()
        if gateway_status:
            effective_status = gateway_status
        else:
            gateway_order = None
    outcome = classify_gateway_status(effective_status)

    try:
        payment = with_row_lock(db, db.query(models.Payment).filter(models.Payment.id == payment_id)).first()
        if not payment:
            db.rollback()
            return None, FinalizeStatus.NOT_FOUND, effective_status

        metadata = GatewayMetadata.from_payment(payment)
        metadata.order_id = order_id
        metadata.payment_session_id = payment_session_id or metadata.payment_session_id
        metadata.reference_id = reference_id or metadata.reference_id
        metadata.status = effective_status
        if raw_payload is not None:
            metadata.raw_return = raw_payload
        if gateway_order is not None:
            metadata.gateway_order = gateway_order
        metadata.verified_at = datetime.utcnow().isoformat()
        metadata.apply_to(payment)

        if signal_status == "PENDING" and payment.status == PaymentStatus.PENDING:
            payment.status = PaymentStatus.PROCESSING

        if outcome == FinalizeStatus.PENDING:
            if payment.status not in FINAL_PAYMENT_STATUSES:
                payment.status = PaymentStatus.PROCESSING
            subscription = payment.subscription
            if (
                subscription is not None
                and subscription.status == SubscriptionStatus.PENDING
                and subscription.payment_status != SubscriptionPaymentStatus.PENDING
            ):
                subscription.payment_status = SubscriptionPaymentStatus.PENDING
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(payment)
    return payment, outcome, effective_status


def _finalize_once(
    db: Session,
    order_id: str,
    payment_session_id: str | None,
    hinted_status: str,
    reference_id: str | None,
    raw_payload: dict[str, Any] | None,
    verify_with_gateway: bool,
    client: CashfreeClient,
) -> dict[str, Any]:
    payment, outcome, effective_status = _record_return_signal(
        db,
        order_id,
        payment_session_id,
        hinted_status,
        reference_id,
        raw_payload,
        verify_with_gateway,
        client,
    )

    if outcome == FinalizeStatus.NOT_FOUND:
        logger.warning("Cashfree return for unknown order order_id=%s", order_id)
        return _result(outcome, gateway_status=effective_status)

    gateway_transaction_id = reference_id or order_id
    if outcome == FinalizeStatus.SUCCESS:
        payment = process_payment(db, payment.id, gateway_transaction_id, True)
    elif outcome == FinalizeStatus.FAILED:
        payment = process_payment(
            db,
            payment.id,
            gateway_transaction_id,
            False,
            f"Cashfree status: {effective_status}",
        )

    logger.info(
        "Cashfree return finalized order_id=%s outcome=%s gateway_status=%s payment_status=%s",
        order_id,
        outcome.value,
        effective_status,
        payment.status.value,
    )
    return _result(outcome, payment, payment.subscription, effective_status)


def finalize_return(
    db: Session,
    order_id: str | None = None,
    payment_session_id: str | None = None,
    status_hint: str | None = None,
    reference_id: str | None = None,
    raw_payload: dict[str, Any] | None = None,
    verify_with_gateway: bool = True,
    gateway: CashfreeClient | None = None,
) -> dict[str, Any]:
    """
    Reconcile a browser return, manual re-check or any other signal about a
    Cashfree order into one outcome.

    The result dict has ``status`` (SUCCESS, FAILED, PENDING, NOT_FOUND or
    ERROR), ``payment``, ``subscription``, ``gateway_status`` and
    ``message``. Errors never propagate; they come back as ERROR.
    """
    client = gateway or cashfree_client
    hinted_status = (status_hint or "").strip().upper()

    try:
        resolved_order_id = _resolve_order_id(db, order_id, payment_session_id)
    except Exception:
        db.rollback()
        logger.exception("Failed to resolve Cashfree order reference session=%s", payment_session_id)
        return _result(FinalizeStatus.ERROR, gateway_status=hinted_status or "UNKNOWN")

    if not resolved_order_id:
        return _result(FinalizeStatus.ERROR, message="Missing order reference")

    try:
        return run_with_reconnect(
            db,
            lambda: _finalize_once(
                db,
                resolved_order_id,
                (payment_session_id or "").strip() or None,
                hinted_status,
                (reference_id or "").strip() or None,
                raw_payload,
                verify_with_gateway,
                client,
            ),
        )
    except BillingError as exc:
        logger.error("Failed to finalize Cashfree return order_id=%s: %s", resolved_order_id, exc.message)
        return _result(FinalizeStatus.ERROR, gateway_status=hinted_status or "UNKNOWN", message=exc.message)
    except Exception:
        logger.exception("Failed to finalize Cashfree return order_id=%s", resolved_order_id)
        return _result(FinalizeStatus.ERROR, gateway_status=hinted_status or "UNKNOWN")


def _find_webhook_payment(db: Session, gateway_transaction_id: str) -> models.Payment | None:
    payment = with_row_lock(db, db.query(models.Payment).filter(
        models.Payment.details["gateway_transaction_id"].as_string() == gateway_transaction_id
    )).first()
    if payment:
        return payment
    payment = with_row_lock(db, db.query(models.Payment).filter(
        models.Payment.transaction_id == gateway_transaction_id
    )).first()
    if payment:
        return payment
    return with_row_lock(db, db.query(models.Payment).filter(
        _cashfree_field("order_id") == gateway_transaction_id
    ).order_by(models.Payment.created_at.desc())).first()


def _record_webhook(db: Session, payment: models.Payment, status: str, metadata: dict[str, Any]) -> None:
    try:
        details = dict(payment.details or {})
        webhook = dict(details.get("webhook") or {})
        webhook.update(metadata)
        webhook["status"] = status
        webhook["received_at"] = datetime.utcnow().isoformat()
        details["webhook"] = webhook
        payment.details = details
        db.commit()
    except Exception:
        db.rollback()
        raise


def handle_webhook(
    db: Session,
    gateway_transaction_id: str,
    status: str,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payment = _find_webhook_payment(db, gateway_transaction_id)
    if not payment:
        logger.warning("Webhook received for unknown transaction: %s", gateway_transaction_id)
        return {"status": "ignored", "reason": "unknown_transaction"}

    logger.info("Processing webhook payment_id=%s status=%s", payment.id, status)
    _record_webhook(db, payment, status, metadata or {})

    normalized = (status or "").strip().lower()
    if normalized in WEBHOOK_SUCCESS_STATUSES:
        payment = process_payment(db, payment.id, gateway_transaction_id, True)
    elif normalized in WEBHOOK_FAILURE_STATUSES:
        payment = process_payment(db, payment.id, gateway_transaction_id, False, f"Webhook status: {status}")
    else:
        logger.info("Webhook status '%s' not handled for transaction: %s", status, gateway_transaction_id)
        return {"status": "ignored", "reason": "unhandled_status", "payment_id": payment.id}

    return {"status": "ok", "payment_id": payment.id, "payment_status": payment.status.value}
