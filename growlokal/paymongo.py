"""
GrowLokal — paymongo.py
─────────────────────────────────────────────────────────────────
Thin async PayMongo REST client.

  - Basic auth with the secret key (password empty)
  - JSON:API bodies: {"data": {"attributes": {...}}}
  - Amounts in centavos
  - Any non-2xx → PaymentGatewayError(errors[0].detail)

Every call returns the response's "data" object.
─────────────────────────────────────────────────────────────────
"""

import logging
from typing import Optional

import httpx

from growlokal.core.config import cfg

logger = logging.getLogger("growlokal.paymongo")


class PaymentGatewayError(Exception):
    """Gateway unreachable or rejected the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def to_centavos(amount: float) -> int:
    return int(round(amount * 100))


class PayMongoClient:

    def __init__(
        self,
        secret_key: str = None,
        base_url: str = None,
        transport: httpx.AsyncBaseTransport = None,
        timeout: float = 20.0,
    ):
        self.secret_key = cfg.PAYMONGO_SECRET_KEY if secret_key is None else secret_key
        self.base_url   = (base_url or cfg.PAYMONGO_BASE_URL).rstrip("/")
        self.transport  = transport
        self.timeout    = timeout

    async def _request(self, method: str, path: str, attributes: dict = None,
                       fallback: str = "PayMongo request failed") -> dict:
        if not self.secret_key:
            raise PaymentGatewayError("Payment gateway not configured")

        body = {"data": {"attributes": attributes}} if attributes is not None else None
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                resp = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    auth=(self.secret_key, ""),
                    json=body,
                )
        except httpx.HTTPError as e:
            logger.error(f"PayMongo {method} {path} unreachable: {e}")
            raise PaymentGatewayError(fallback)

        if resp.status_code >= 400:
            detail = fallback
            try:
                errors = resp.json().get("errors") or []
                if errors and errors[0].get("detail"):
                    detail = errors[0]["detail"]
            except ValueError:
                pass
            logger.error(f"PayMongo {method} {path} → {resp.status_code}: {detail}")
            raise PaymentGatewayError(detail, resp.status_code)

        return resp.json()["data"]

    # ── Payment intents (cards) ───────────────
    async def create_payment_intent(self, amount: int, description: str,
                                    metadata: dict = None) -> dict:
        return await self._request("POST", "/payment_intents", {
            "amount":                 amount,
            "currency":               cfg.CURRENCY,
            "description":            description,
            "statement_descriptor":   cfg.STATEMENT_DESCRIPTOR,
            "metadata":               metadata or {},
            "payment_method_allowed": ["card"],
        }, fallback="Failed to create payment intent")

    async def attach_payment_intent(self, intent_id: str, payment_method_id: str,
                                    client_key: str = None, return_url: str = None) -> dict:
        attributes = {"payment_method": payment_method_id}
        if client_key:
            attributes["client_key"] = client_key
        if return_url:
            attributes["return_url"] = return_url
        return await self._request(
            "POST", f"/payment_intents/{intent_id}/attach", attributes,
            fallback="Failed to attach payment method",
        )

    async def retrieve_payment_intent(self, intent_id: str) -> dict:
        return await self._request(
            "GET", f"/payment_intents/{intent_id}",
            fallback="Failed to retrieve payment intent",
        )

    # ── Sources + payments (e-wallets) ────────
    async def create_source(self, source_type: str, amount: int, success_url: str,
                            failed_url: str, billing: dict = None,
                            metadata: dict = None) -> dict:
        return await self._request("POST", "/sources", {
            "type":     source_type,
            "amount":   amount,
            "currency": cfg.CURRENCY,
            "redirect": {"success": success_url, "failed": failed_url},
            "billing":  billing,
            "metadata": metadata,
        }, fallback="Failed to create source")

    async def create_payment(self, source_id: str, amount: int, description: str,
                             metadata: dict = None) -> dict:
        return await self._request("POST", "/payments", {
            "amount":      amount,
            "source":      {"id": source_id, "type": "source"},
            "description": description,
            "currency":    cfg.CURRENCY,
            "metadata":    metadata,
        }, fallback="Failed to create payment")

    async def retrieve_payment(self, payment_id: str) -> dict:
        return await self._request(
            "GET", f"/payments/{payment_id}", fallback="Failed to retrieve payment",
        )
