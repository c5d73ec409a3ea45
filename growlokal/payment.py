"""
GrowLokal — payment.py
─────────────────────────────────────────────────────────────────
Payment reconciliation between our orders and PayMongo.

  - Order is marked paid only after the gateway says so
    (confirm / e-wallet complete / webhook), never on the
    frontend's word
  - Every path funnels into OrderService.mark_as_paid, which is
    idempotent, so duplicate webhooks are harmless
  - Gateway errors → 502, order untouched

Routes (all under /api/payment):
    POST /create-intent
    POST /confirm
    POST /ewallet/complete
    POST /paymongo-webhook
─────────────────────────────────────────────────────────────────
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from growlokal.core.config import cfg
from growlokal.core.security import resolve_identity
from growlokal.csrf import require_csrf
from growlokal.models.identity import Identity
from growlokal.models.order import Order, OrderStatus, PaymentMethod
from growlokal.orders import OrderError, OrderService, order_http
from growlokal.paymongo import PaymentGatewayError, PayMongoClient, to_centavos

logger = logging.getLogger("growlokal.payment")

# Outcome states → HTTP status
PAID            = "paid"
PENDING         = "pending"
REQUIRES_ACTION = "requires_action"
RETRY           = "retry"
FAILED          = "failed"

STATE_STATUS = {
    PAID:            200,
    PENDING:         202,
    REQUIRES_ACTION: 202,
    RETRY:           400,
    FAILED:          400,
}


# ─────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────
class PaymentError(Exception):
    """Base payment exception."""

class AlreadyPaidError(PaymentError):
    """Order has been paid already."""

class OrderCancelledError(PaymentError):
    """Cancelled orders can't take payment."""

class UnsupportedMethodError(PaymentError):
    """Unknown payment method / provider."""

class IntentMismatchError(PaymentError):
    """Payment intent was not created for this order."""

class WebhookSignatureError(PaymentError):
    """Missing or wrong paymongo-signature."""

class WebhookPayloadError(PaymentError):
    """Body isn't JSON or lacks event type / resource id."""


@dataclass
class PaymentOutcome:
    state:   str
    message: str
    data:    dict = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return STATE_STATUS[self.state]


# ─────────────────────────────────────────────
# Signature
# ─────────────────────────────────────────────
def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, header: Optional[str], secret: str) -> bool:
    """
    Header: "v1=<hex>[,v1=<hex>…]"; other k=v parts are ignored.
    No secret configured → verification skipped (dev).
    """
    if not secret:
        return True
    if not header:
        return False

    expected   = sign_payload(raw_body, secret)
    candidates = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "v1" and value:
            candidates.append(value)
    return any(hmac.compare_digest(expected, c) for c in candidates)


def _refuse_cancelled(order: Order):
    if order.status == OrderStatus.CANCELLED:
        raise OrderCancelledError("Order has been cancelled")


def resolve_method(method: str, provider: Optional[str] = None) -> PaymentMethod:
    if method == "ewallet":
        method = provider or PaymentMethod.GCASH.value
    try:
        return PaymentMethod(method)
    except ValueError:
        raise UnsupportedMethodError(f"Unsupported payment method: {method}")


# ─────────────────────────────────────────────
# PaymentReconciler
# ─────────────────────────────────────────────
class PaymentReconciler:

    def __init__(self, orders: OrderService = None, gateway: PayMongoClient = None):
        self.orders  = orders or OrderService()
        self.gateway = gateway or PayMongoClient()

    async def start_payment(self, order: Order, method: str,
                            provider: Optional[str] = None) -> dict:
        if order.is_paid:
            raise AlreadyPaidError("Order is already paid")
        _refuse_cancelled(order)

        chosen = resolve_method(method, provider)
        amount = to_centavos(order.total)

        # ── Card → payment intent ─────────────
        if chosen == PaymentMethod.CARD:
            intent = await self.gateway.create_payment_intent(
                amount,
                f"Order {order.order_id}",
                metadata={"order_id": order.order_id},
            )
            attrs = intent.get("attributes", {})
            await self.orders.set_transaction_id(order.order_id, intent["id"])
            logger.info(f"Payment intent {intent['id']} for {order.order_id}")
            return {
                "payment_intent_id": intent["id"],
                "client_key":        attrs.get("client_key"),
                "public_key":        cfg.PAYMONGO_PUBLIC_KEY,
                "status":            attrs.get("status"),
                "amount":            attrs.get("amount", amount),
            }

        # ── E-wallet → source + redirect ──────
        if chosen.is_ewallet:
            addr     = order.shipping_address
            base     = cfg.BASE_URL.rstrip("/")
            metadata = {"order_id": order.order_id}
            source   = await self.gateway.create_source(
                chosen.value,
                amount,
                success_url = f"{base}/payment/ewallet/success?orderId={order.order_id}",
                failed_url  = f"{base}/payment/ewallet/failed?orderId={order.order_id}",
                billing     = {"name": addr.full_name, "email": addr.email, "phone": addr.phone},
                metadata    = metadata,
            )
            attrs = source.get("attributes", {})
            logger.info(f"{chosen.value} source {source['id']} for {order.order_id}")
            return {
                "source_id":    source["id"],
                "checkout_url": (attrs.get("redirect") or {}).get("checkout_url"),
                "status":       attrs.get("status"),
                "metadata":     metadata,
            }

        # ── COD → nothing to do ───────────────
        return {
            "payment_method": PaymentMethod.COD.value,
            "message":        "Cash on Delivery - No payment processing needed",
        }

    async def confirm_card(
        self,
        order: Order,
        intent_id: str,
        payment_method_id: Optional[str] = None,
        client_key: Optional[str] = None,
        return_url: Optional[str] = None,
    ) -> PaymentOutcome:
        """
        Attach (optional) and read back the intent that start_payment
        created for this order. Any other intent is refused before the
        order is touched.
        """
        _refuse_cancelled(order)
        if order.is_paid:
            return PaymentOutcome(PAID, "Payment already confirmed",
                                  {"order_id": order.order_id, "payment_status": PAID})

        if intent_id != order.payment.transaction_id:
            logger.warning(f"Intent {intent_id} presented for {order.order_id}, "
                           f"expected {order.payment.transaction_id}")
            raise IntentMismatchError("Payment intent does not belong to this order")

        if payment_method_id:
            await self.gateway.attach_payment_intent(
                intent_id, payment_method_id, client_key, return_url
            )
        intent = await self.gateway.retrieve_payment_intent(intent_id)
        attrs  = intent.get("attributes", {})
        status = attrs.get("status")

        metadata = attrs.get("metadata") or {}
        if (metadata.get("order_id") != order.order_id
                or attrs.get("amount") != to_centavos(order.total)):
            logger.warning(f"Intent {intent_id} metadata/amount don't match {order.order_id}")
            raise IntentMismatchError("Payment intent does not belong to this order")

        data = {"order_id": order.order_id, "payment_intent_id": intent_id, "status": status}

        if status == "succeeded":
            await self.orders.mark_as_paid(order.order_id, intent_id)
            return PaymentOutcome(PAID, "Payment confirmed", {**data, "payment_status": PAID})

        if status == "awaiting_payment_method":
            error = attrs.get("last_payment_error")
            return PaymentOutcome(
                RETRY, "Payment failed. Please try another payment method.",
                {**data, "last_payment_error": error},
            )

        if status == "awaiting_next_action":
            redirect = ((attrs.get("next_action") or {}).get("redirect") or {}).get("url")
            return PaymentOutcome(
                REQUIRES_ACTION, "Additional authentication required",
                {**data, "redirect_url": redirect},
            )

        if status == "processing":
            return PaymentOutcome(PENDING, "Payment is processing", data)

        await self.orders.mark_payment_failed(order.order_id)
        return PaymentOutcome(FAILED, "Payment failed", {**data, "payment_status": FAILED})

    async def complete_ewallet(self, order: Order, source_id: str) -> PaymentOutcome:
        _refuse_cancelled(order)
        if order.is_paid:
            return PaymentOutcome(PAID, "Payment already confirmed", {
                "order_id":       order.order_id,
                "payment_id":     order.payment.transaction_id,
                "payment_status": PAID,
            })

        payment = await self.gateway.create_payment(
            source_id,
            to_centavos(order.total),
            f"Order {order.order_id}",
            metadata={"order_id": order.order_id},
        )
        status = payment.get("attributes", {}).get("status")
        data   = {"order_id": order.order_id, "payment_id": payment["id"], "payment_status": status}

        await self.orders.set_transaction_id(order.order_id, payment["id"])

        if status == "paid":
            await self.orders.mark_as_paid(order.order_id, payment["id"])
            return PaymentOutcome(PAID, "Payment confirmed", data)

        if status in ("failed", "cancelled"):
            await self.orders.mark_payment_failed(order.order_id)
            return PaymentOutcome(FAILED, "Payment failed", data)

        await self.orders.mark_payment_pending(order.order_id)
        return PaymentOutcome(
            PENDING, "Payment pending confirmation",
            {**data, "requires_webhook_confirmation": True},
        )

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str],
                             secret: Optional[str] = None) -> dict:
        secret = cfg.PAYMONGO_WEBHOOK_SECRET if secret is None else secret
        if not verify_signature(raw_body, signature, secret):
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            event = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            raise WebhookPayloadError("Invalid JSON payload")

        attrs      = ((event or {}).get("data") or {}).get("attributes") or {}
        event_type = attrs.get("type")
        resource   = attrs.get("data") or {}
        payment_id = resource.get("id")
        if not event_type or not payment_id:
            raise WebhookPayloadError("Missing event details")

        order = await self.orders.find_by_transaction(payment_id)
        if order is None:
            intent_id = (resource.get("attributes") or {}).get("payment_intent_id")
            if intent_id:
                order = await self.orders.find_by_transaction(intent_id)
        if order is None:
            logger.info(f"Webhook {event_type} for {payment_id}: no matching order")
            return {"success": True, "message": "No matching order"}

        if event_type == "payment.paid":
            first = await self.orders.mark_as_paid(order.order_id, payment_id)
            logger.info(f"Webhook payment.paid → {order.order_id} (first={first})")
            return {"success": True}

        if event_type == "payment.failed":
            await self.orders.mark_payment_failed(order.order_id)
            return {"success": True}

        return {"success": True, "message": "Event ignored"}


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────
router = APIRouter(prefix="/api/payment", tags=["payment"])


def get_reconciler() -> PaymentReconciler:
    return PaymentReconciler()


class CreateIntentRequest(BaseModel):
    order_id:       str
    payment_method: str
    provider:       Optional[str] = None


class ConfirmRequest(BaseModel):
    order_id:          str
    payment_intent_id: str
    payment_method_id: Optional[str] = None
    client_key:        Optional[str] = None
    return_url:        Optional[str] = None


class EwalletCompleteRequest(BaseModel):
    order_id:  str
    source_id: str


async def _owned_order(request: Request, rec: PaymentReconciler, order_id: str) -> Order:
    identity: Optional[Identity] = await resolve_identity(request)
    try:
        return await rec.orders.get_for_owner(order_id, identity)
    except OrderError as e:
        raise order_http(e)


def _gateway_http(e: PaymentGatewayError) -> HTTPException:
    return HTTPException(502, {"message": str(e), "error_code": "GATEWAY_ERROR"})


def _outcome_response(outcome: PaymentOutcome) -> JSONResponse:
    return JSONResponse(
        {
            "success": outcome.state in (PAID, PENDING, REQUIRES_ACTION),
            "message": outcome.message,
            "data":    outcome.data,
        },
        status_code=outcome.http_status,
    )


@router.post("/create-intent", dependencies=[Depends(require_csrf)])
async def create_intent(body: CreateIntentRequest, request: Request,
                        rec: PaymentReconciler = Depends(get_reconciler)):
    order = await _owned_order(request, rec, body.order_id)
    try:
        data = await rec.start_payment(order, body.payment_method, body.provider)
    except (AlreadyPaidError, OrderCancelledError, UnsupportedMethodError) as e:
        raise HTTPException(400, {"message": str(e), "error_code": type(e).__name__})
    except PaymentGatewayError as e:
        raise _gateway_http(e)
    return {"success": True, "data": data}


@router.post("/confirm", dependencies=[Depends(require_csrf)])
async def confirm_payment(body: ConfirmRequest, request: Request,
                          rec: PaymentReconciler = Depends(get_reconciler)):
    order = await _owned_order(request, rec, body.order_id)
    try:
        outcome = await rec.confirm_card(
            order, body.payment_intent_id, body.payment_method_id,
            body.client_key, body.return_url,
        )
    except (OrderCancelledError, IntentMismatchError) as e:
        raise HTTPException(400, {"message": str(e), "error_code": type(e).__name__})
    except PaymentGatewayError as e:
        raise _gateway_http(e)
    return _outcome_response(outcome)


@router.post("/ewallet/complete", dependencies=[Depends(require_csrf)])
async def complete_ewallet(body: EwalletCompleteRequest, request: Request,
                           rec: PaymentReconciler = Depends(get_reconciler)):
    order = await _owned_order(request, rec, body.order_id)
    try:
        outcome = await rec.complete_ewallet(order, body.source_id)
    except OrderCancelledError as e:
        raise HTTPException(400, {"message": str(e), "error_code": type(e).__name__})
    except PaymentGatewayError as e:
        raise _gateway_http(e)
    return _outcome_response(outcome)


@router.post("/paymongo-webhook")
async def paymongo_webhook(
    request: Request,
    paymongo_signature: Optional[str] = Header(None),
    rec: PaymentReconciler = Depends(get_reconciler),
):
    """
    PayMongo calls this on payment.paid / payment.failed.
    NEVER mark an order paid without verifying this signature.
    """
    raw_body = await request.body()
    try:
        return await rec.handle_webhook(raw_body, paymongo_signature)
    except (WebhookSignatureError, WebhookPayloadError) as e:
        raise HTTPException(400, {"message": str(e), "error_code": type(e).__name__})
