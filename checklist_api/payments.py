"""Mercado Pago REST client: checkout preferences and payment lookups."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from .entitlements import Plan
from .errors import UpstreamError

logger = logging.getLogger("checklist_api.payments")

MP_API = "https://api.mercadopago.com"
USER_AGENT = "checklist-api/1.0"


class MercadoPagoClient:
    def __init__(
        self,
        access_token: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 15.0,
        base_url: str = MP_API,
    ):
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            }
        )
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")

    def _request(self, method: str, path: str, **kwargs: Any) -> Optional[Dict[str, Any]]:
        """Send a request; ``None`` for 404, ``UpstreamError`` for anything else that failed."""
        kwargs.setdefault("timeout", self.timeout)
        try:
            response = self.session.request(method, f"{self.base_url}/{path.lstrip('/')}", **kwargs)
        except requests.RequestException as exc:
            raise UpstreamError(
                "Unable to reach Mercado Pago",
                code="MP_UNREACHABLE",
                details={"reason": str(exc)},
            ) from exc

        if response.status_code == 404:
            return None

        try:
            parsed = response.json() if response.content else {}
        except ValueError:
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}

        if response.status_code >= 400:
            raise UpstreamError(
                "Mercado Pago request failed",
                code="MP_API_HTTP_ERROR",
                details={
                    "httpStatus": response.status_code,
                    "mpError": parsed.get("error"),
                    "mpMessage": parsed.get("message"),
                },
            )
        return parsed

    def get_payment(self, payment_id: str) -> Optional[Dict[str, Any]]:
        return self._request("GET", f"v1/payments/{quote(str(payment_id), safe='')}")

    def create_preference(
        self,
        *,
        plan: Plan,
        uid: str,
        email: Optional[str],
        site_name: Optional[str],
        notification_url: str,
        currency: str = "BRL",
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "items": [
                {
                    "title": f"Checklist {plan.label} plan",
                    "quantity": 1,
                    "currency_id": currency,
                    "unit_price": float(plan.price),
                }
            ],
            "metadata": {
                "uid": uid,
                "plan": plan.key,
                "site_name": site_name or "",
            },
            "external_reference": uid,
            "notification_url": notification_url,
        }
        if email:
            body["payer"] = {"email": email}

        created = self._request("POST", "checkout/preferences", json=body)
        if not created or not created.get("id"):
            raise UpstreamError("Mercado Pago returned no preference", code="MP_INVALID_RESPONSE")
        logger.info(f"Created MP preference {created.get('id')} uid={uid} plan={plan.key}")
        return created
