"""Payments router - Mercado Pago checkout and notification webhook.

Endpoints:
    POST /criar-pagamento              - create a checkout preference for a plan
    POST /webhook/mercadopago          - provider notifications (ack-first)
    GET  /mp/payment-status/{id}       - raw payment lookup (super_admin only)

The /mp/create-preference and /mp/webhook paths are kept as aliases for app
builds and preferences created before the rename.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from starlette.concurrency import run_in_threadpool

from ..dependencies import Services, get_payments, get_services, require_super_admin
from ..entitlements import PLANS, parse_notification, resolve_plan
from ..errors import ApiError, NotFoundError, ValidationError, error_response
from ..middleware.rate_limit import rate_limit_checkout, rate_limit_exempt
from ..models import CheckoutRequest, CheckoutResponse, ErrorResponse, PaymentStatusResponse
from ..payments import MercadoPagoClient

router = APIRouter()
logger = logging.getLogger("checklist_api.payments")

WEBHOOK_PATH = "/webhook/mercadopago"


@router.get("/plans")
async def list_plans() -> Dict[str, Any]:
    """Plan catalog shown by the app's subscription screen."""
    return {
        "plans": [
            {
                "key": plan.key,
                "label": plan.label,
                "price": plan.price,
                "months": plan.months,
                "allowedAccessCount": plan.allowed_access_count,
            }
            for plan in PLANS.values()
        ]
    }


@router.post(
    "/criar-pagamento",
    response_model=CheckoutResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
@router.post("/mp/create-preference", response_model=CheckoutResponse, include_in_schema=False)
@rate_limit_checkout
def create_checkout(
    request: Request,
    payload: CheckoutRequest,
    services: Services = Depends(get_services),
    payments: MercadoPagoClient = Depends(get_payments),
) -> CheckoutResponse:
    plan = resolve_plan(payload.plan)
    if plan is None:
        raise ValidationError("unknown plan", code="UNKNOWN_PLAN", details={"plans": list(PLANS)})

    config = services.config
    created = payments.create_preference(
        plan=plan,
        uid=payload.uid.strip(),
        email=(payload.email or "").strip() or None,
        site_name=payload.siteName,
        notification_url=f"{config.public_base_url}{WEBHOOK_PATH}",
        currency=config.mp_currency,
    )
    return CheckoutResponse(
        id=str(created["id"]),
        checkout_url=created.get("init_point"),
        init_point=created.get("init_point"),
        sandbox_init_point=created.get("sandbox_init_point"),
    )


@router.post(WEBHOOK_PATH)
@router.post("/mp/webhook", include_in_schema=False)
@rate_limit_exempt
async def mercadopago_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    """Acknowledge first, reconcile afterwards.

    Mercado Pago retries anything that is not a quick 2xx, so the 200 goes
    out before the payment is fetched. With MP_WEBHOOK_SYNC the payment is
    reconciled inline and provider failures return 500 to get a retry.
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    notification = parse_notification(request.query_params, body)

    if not services.config.mp_webhook_sync:
        background_tasks.add_task(services.reconciler.on_notification, notification)
        return {"ok": True}

    try:
        result = await run_in_threadpool(services.reconciler.reconcile, notification)
    except ApiError as exc:
        logger.error(f"mp/webhook sync failed for {notification.payment_id}: {exc.code} {exc.error}")
        return error_response(500, error="webhook processing failed", code="WEBHOOK_FAILED")
    except Exception:
        logger.exception(f"mp/webhook sync failed for {notification.payment_id}")
        return error_response(500, error="webhook processing failed", code="WEBHOOK_FAILED")

    logger.info(f"mp/webhook {result.outcome} paymentId={result.payment_id} reason={result.reason}")
    return {"ok": True, "outcome": result.outcome}


@router.get(
    "/mp/payment-status/{payment_id}",
    response_model=PaymentStatusResponse,
    responses={401: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
def payment_status(
    payment_id: str,
    _admin: dict = Depends(require_super_admin),
    payments: MercadoPagoClient = Depends(get_payments),
) -> PaymentStatusResponse:
    """Debug lookup of a payment as Mercado Pago reports it."""
    pay = payments.get_payment(payment_id)
    if pay is None:
        raise NotFoundError("payment not found", code="PAYMENT_NOT_FOUND")

    payer = pay.get("payer") if isinstance(pay.get("payer"), dict) else {}
    return PaymentStatusResponse(
        id=pay.get("id"),
        status=pay.get("status"),
        status_detail=pay.get("status_detail"),
        metadata=pay.get("metadata") or {},
        payer=payer.get("email"),
        transaction_amount=pay.get("transaction_amount"),
    )
