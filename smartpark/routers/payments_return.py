import html
import json
import logging
import os
from typing import Any, Dict
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse, Response
from sqlalchemy.orm import Session

from smartpark import schemas
from smartpark.database import get_db
from smartpark.reconciliation import finalize_return

router = APIRouter(tags=["payments"])
logger = logging.getLogger(__name__)

APP_DEEP_LINK_SCHEME = os.getenv("APP_DEEP_LINK_SCHEME", "smartparking").strip() or "smartparking"
SUPPORT_MESSAGE = "If you were charged, please check your payment status in the app or contact support."
IGNORED_VALUES = {"", "undefined", "null"}

STATUS_TITLES = {
    "SUCCESS": "Payment Successful",
    "FAILED": "Payment Failed",
    "PENDING": "Payment Processing",
    "NOT_FOUND": "Payment Not Found",
    "ERROR": "Payment Processing Error",
}


async def _collect_params(request: Request) -> Dict[str, str]:
    params: Dict[str, Any] = {}

    def assign(source) -> None:
        for key in source.keys():
            values = source.getlist(key) if hasattr(source, "getlist") else source.get(key)
            if isinstance(values, (list, tuple)):
                value = values[0] if values else None
            else:
                value = values
            if value is None or isinstance(value, (dict, list)):
                continue
            params[key] = str(value)

    assign(request.query_params)
    if request.method == "POST":
        content_type = (request.headers.get("content-type") or "").lower()
        if "application/json" in content_type:
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                assign(body)
        elif "form" in content_type:
            assign(await request.form())
    return params


def _pick(params: Dict[str, str], *keys: str) -> str:
    for key in keys:
        value = (params.get(key) or "").strip()
        if value.lower() not in IGNORED_VALUES:
            return value
    return ""


def _deep_link(status: str, order_id: str) -> str:
    if status == "SUCCESS":
        query = urlencode({"payment_success": "true", "order_id": order_id, "status": "success"})
        return f"{APP_DEEP_LINK_SCHEME}://admin/dashboard?{query}"
    query = urlencode({"payment_failed": "true", "order_id": order_id, "status": status.lower()})
    return f"{APP_DEEP_LINK_SCHEME}://admin/subscribe-plan?{query}"


def _wants_json(request: Request) -> bool:
    return "application/json" in (request.headers.get("accept") or "").lower()


def _render_page(data: Dict[str, Any]) -> str:
    status = data.get("status") or "ERROR"
    title = STATUS_TITLES.get(status, STATUS_TITLES["ERROR"])
    message = data.get("message") or ""
    support = f"<p class=\"support\">{html.escape(SUPPORT_MESSAGE)}</p>" if status in ("ERROR", "NOT_FOUND", "FAILED") else ""
    payload = json.dumps({"type": "cashfreeResult", "data": data}).replace("</", "<\\/")
    deep_link = html.escape(data.get("deep_link") or "", quote=True)

    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{html.escape(title)}</title>
    <style>
      body {{ font-family: Arial, sans-serif; background: #0f172a; color: #e2e8f0; margin: 0; height: 100vh; display: flex; align-items: center; justify-content: center; }}
      .card {{ background: rgba(15, 23, 42, 0.92); padding: 32px 36px; border-radius: 16px; text-align: center; max-width: 420px; }}
      a {{ color: #38bdf8; }}
    </style>
  </head>
  <body>
    <div class="card">
      <h1>{html.escape(title)}</h1>
      <p>{html.escape(message)}</p>
      {support}
      <p><a href="{deep_link}">Return to the app</a></p>
    </div>
    <script>
      (function () {{
        var message = {payload};
        try {{ if (window.opener) {{ window.opener.postMessage(message, '*'); }} }} catch (_) {{}}
        try {{ if (window.parent && window.parent !== window) {{ window.parent.postMessage(message, '*'); }} }} catch (_) {{}}
        setTimeout(function () {{
          try {{ window.close(); }} catch (_) {{}}
        }}, 3000);
      }})();
    </script>
  </body>
</html>"""


def _respond(request: Request, data: Dict[str, Any], status_code: int = 200) -> Response:
    if _wants_json(request):
        return JSONResponse(status_code=status_code, content=data)
    return HTMLResponse(status_code=status_code, content=_render_page(data))


@router.api_route("/payments/cashfree/return", methods=["GET", "POST", "HEAD"])
async def cashfree_return(request: Request, db: Session = Depends(get_db)):
    if request.method == "HEAD":
        return Response(status_code=200)

    order_id = ""
    try:
        params = await _collect_params(request)
        order_id = _pick(params, "order_id", "orderId")
        reference_id = _pick(params, "reference_id", "referenceId", "cfPaymentId", "paymentId")
        payment_session_id = _pick(params, "payment_session_id", "paymentSessionId")
        status_hint = _pick(params, "txStatus", "transaction_status", "status")

        result = await run_in_threadpool(
            finalize_return,
            db,
            order_id=order_id,
            payment_session_id=payment_session_id,
            status_hint=status_hint,
            reference_id=reference_id,
            raw_payload=params,
        )
        data = schemas.FinalizeResultResponse.model_validate(result, from_attributes=True).model_dump(mode="json")
        resolved_order_id = order_id or (data.get("payment") or {}).get("transaction_id") or ""
        data["order_id"] = resolved_order_id
        data["reference_id"] = reference_id or None
        data["deep_link"] = _deep_link(data["status"], resolved_order_id)
        logger.info("Cashfree return handled order_id=%s status=%s", resolved_order_id, data["status"])
        return _respond(request, data)
    except Exception:
        logger.exception("Cashfree return handler error order_id=%s method=%s", order_id, request.method)
        data = {
            "status": "ERROR",
            "order_id": order_id,
            "message": "We encountered an issue while processing your payment result.",
            "deep_link": _deep_link("ERROR", order_id),
        }
        return _respond(request, data, status_code=500)
