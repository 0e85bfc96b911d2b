"""Entitlement reconciler: Mercado Pago notifications -> user subscription state.

Per payment reference the flow is::

    Received -> Confirmed{approved|rejected|pending|...} -> Applied | Ignored

The push notification is untrusted. Only the payment reference is read from
it; status, amounts and metadata are re-fetched from the provider. The patch
written to the user document is a pure function of the fetched payment, so a
duplicate delivery rewrites the exact same values and concurrent deliveries
converge without locking.
"""

from __future__ import annotations

import calendar
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .errors import ApiError

logger = logging.getLogger("checklist_api.entitlements")

GATEWAY = "MERCADO_PAGO"
STATUS_APPROVED = "approved"


# =============================================================================
# PLAN CATALOG
# =============================================================================

@dataclass(frozen=True)
class Plan:
    key: str
    label: str
    price: float
    months: int
    allowed_access_count: int


PLANS: Mapping[str, Plan] = {
    "monthly": Plan("monthly", "Monthly", 24.99, 1, 1),
    "quarterly": Plan("quarterly", "Quarterly", 64.99, 3, 1),
    "annual": Plan("annual", "Annual", 149.99, 12, 1),
    "annual_plus": Plan("annual_plus", "Annual Plus", 189.99, 12, 2),
}

# Keys used by payments created before the catalog was renamed
LEGACY_PLAN_KEYS = {
    "mensal": "monthly",
    "trimestral": "quarterly",
    "anual": "annual",
}


def resolve_plan(value: Any) -> Optional[Plan]:
    key = str(value or "").strip().lower()
    return PLANS.get(LEGACY_PLAN_KEYS.get(key, key))


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


# =============================================================================
# NOTIFICATIONS
# =============================================================================

@dataclass(frozen=True)
class PaymentNotification:
    type: Optional[str]
    payment_id: Optional[str]
    raw_status: Optional[str] = None


def _reference_from_resource(resource: Any) -> Optional[str]:
    """``resource`` is either a bare id or a URL/path whose last segment is the id."""
    text = str(resource or "").strip()
    if not text:
        return None
    segment = text.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1]
    return segment or None


def parse_notification(query: Mapping[str, Any], body: Any) -> PaymentNotification:
    """Build a notification from query string and/or JSON body.

    Accepted shapes: ``?type=payment&data.id=1``, ``?topic=payment&id=1``,
    ``{"type": "payment", "data": {"id": 1}}``, ``{"topic": "payment",
    "resource": ".../payments/1"}``.
    """
    body = body if isinstance(body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    kind = query.get("type") or query.get("topic") or body.get("type") or body.get("topic")
    if not kind and isinstance(body.get("action"), str):
        # e.g. "payment.updated"
        kind = body["action"].split(".", 1)[0]

    reference = (
        query.get("data.id")
        or data.get("id")
        or _reference_from_resource(body.get("resource"))
        or query.get("id")
        or body.get("id")
    )
    raw_status = data.get("status") or body.get("status")
    return PaymentNotification(
        type=str(kind).strip().lower() if kind else None,
        payment_id=str(reference).strip() if reference not in (None, "") else None,
        raw_status=str(raw_status) if raw_status else None,
    )


# =============================================================================
# RECONCILER
# =============================================================================

class PaymentSource(Protocol):
    def get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]: ...


class EntitlementStore(Protocol):
    def get_user(self, uid: str) -> Optional[Dict[str, Any]]: ...

    def apply_entitlement(self, uid: str, patch: Dict[str, Any]) -> bool: ...


@dataclass(frozen=True)
class ReconcileResult:
    outcome: str  # "applied" | "ignored"
    reason: str
    payment_id: Optional[str] = None
    uid: Optional[str] = None
    status: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome == "applied"


def _ignored(reason: str, **kwargs: Any) -> ReconcileResult:
    return ReconcileResult(outcome="ignored", reason=reason, **kwargs)


def _parse_provider_datetime(value: Any) -> Optional[datetime]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _as_utc(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return _parse_provider_datetime(value)


def _money(value: Any) -> Optional[float]:
    try:
        return round(float(value), 2) if value is not None else None
    except (TypeError, ValueError):
        return None


def build_entitlement_patch(
    plan: Plan,
    payment: Mapping[str, Any],
    approved_at: datetime,
) -> Dict[str, Any]:
    """The full document patch for an approved payment.

    Depends only on its arguments: applying it twice leaves the same document.
    """
    details = payment.get("transaction_details") or {}
    fees = payment.get("fee_details") or []
    fee_amount = sum(_money(f.get("amount")) or 0.0 for f in fees if isinstance(f, dict))

    return {
        "authorized": True,
        "plan": plan.key,
        "allowedAccessCount": plan.allowed_access_count,
        "expiresAt": add_months(approved_at, plan.months),
        "payment": {
            "gateway": GATEWAY,
            "paymentId": str(payment.get("id")),
            "status": str(payment.get("status") or ""),
            "statusDetail": payment.get("status_detail"),
            "grossAmount": _money(payment.get("transaction_amount")),
            "netAmount": _money(details.get("net_received_amount")),
            "feeAmount": round(fee_amount, 2),
            "approvedAt": approved_at,
        },
    }


class EntitlementReconciler:
    """Applies approved Mercado Pago payments to ``users/{uid}``."""

    def __init__(
        self,
        payments: Optional[PaymentSource],
        users: EntitlementStore,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.payments = payments
        self.users = users
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def reconcile(self, notification: PaymentNotification) -> ReconcileResult:
        """Process one notification. Provider and store errors propagate."""
        if notification.type and notification.type != "payment":
            return _ignored("not_a_payment_event")
        payment_id = notification.payment_id
        if not payment_id:
            return _ignored("no_payment_reference")
        if self.payments is None:
            return _ignored("payments_not_configured", payment_id=payment_id)

        payment = self.payments.get_payment(payment_id)
        if not payment:
            return _ignored("unknown_payment", payment_id=payment_id)

        status = str(payment.get("status") or "")
        if status != STATUS_APPROVED:
            return _ignored("not_approved", payment_id=payment_id, status=status)

        metadata = payment.get("metadata") or {}
        uid = str(metadata.get("uid") or "").strip()
        plan = resolve_plan(metadata.get("plan") or metadata.get("plano"))
        if not uid:
            return _ignored("missing_uid", payment_id=payment_id, status=status)
        if plan is None:
            return _ignored("unknown_plan", payment_id=payment_id, uid=uid, status=status)

        user = self.users.get_user(uid)
        if user is None:
            return _ignored("unknown_user", payment_id=payment_id, uid=uid, status=status)

        previous = user.get("payment") if isinstance(user.get("payment"), dict) else {}
        previous_approved = _as_utc(previous.get("approvedAt"))
        same_payment = str(previous.get("paymentId")) == str(payment.get("id"))

        approved_at = _parse_provider_datetime(payment.get("date_approved"))
        if approved_at is None:
            # Redelivery of a payment without date_approved keeps its first instant
            approved_at = previous_approved if same_payment and previous_approved else self._now()

        if previous_approved is not None and previous_approved > approved_at and not same_payment:
            return _ignored("stale_payment", payment_id=payment_id, uid=uid, status=status)

        patch = build_entitlement_patch(plan, payment, approved_at)
        if not self.users.apply_entitlement(uid, patch):
            return _ignored("unknown_user", payment_id=payment_id, uid=uid, status=status)

        logger.info(
            "EntitlementApplied paymentId=%s uid=%s plan=%s expiresAt=%s",
            payment_id,
            uid,
            plan.key,
            patch["expiresAt"].isoformat(),
        )
        return ReconcileResult(
            outcome="applied",
            reason="approved",
            payment_id=payment_id,
            uid=uid,
            status=status,
        )

    def on_notification(self, notification: PaymentNotification) -> Optional[ReconcileResult]:
        """Best-effort wrapper for ack-first delivery: logs and swallows errors."""
        try:
            result = self.reconcile(notification)
        except ApiError as exc:
            logger.error(f"mp/webhook failed for payment {notification.payment_id}: {exc.code} {exc.error}")
            return None
        except Exception:
            logger.exception(f"mp/webhook failed for payment {notification.payment_id}")
            return None

        if not result.applied:
            logger.info(
                "mp/webhook ignored paymentId=%s reason=%s status=%s",
                result.payment_id,
                result.reason,
                result.status,
            )
        return result
