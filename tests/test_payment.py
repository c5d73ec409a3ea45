import json

import httpx
import pytest

from growlokal.models.identity import UserIdentity
from growlokal.models.order import OrderStatus, PaymentMethod, PaymentStatus
from growlokal.orders import OrderService
from growlokal.payment import (
    FAILED, PAID, PENDING, REQUIRES_ACTION, RETRY,
    AlreadyPaidError, IntentMismatchError, OrderCancelledError, PaymentReconciler,
    UnsupportedMethodError, WebhookPayloadError, WebhookSignatureError,
    resolve_method, sign_payload, verify_signature,
)
from growlokal.paymongo import PaymentGatewayError, PayMongoClient, to_centavos

from tests.conftest import ADDRESS

MARIA = UserIdentity("maria@example.com")


@pytest.fixture
def orders(db_path, clock):
    return OrderService(db_path, clock)


@pytest.fixture
def reconciler(orders, paymongo):
    gateway = PayMongoClient(secret_key="sk_test_123", transport=httpx.MockTransport(paymongo))
    return PaymentReconciler(orders, gateway)


@pytest.fixture
def place_order(orders, make_product):
    async def _place(method=PaymentMethod.CARD):
        tote = await make_product(price=450.0, stock=5)
        return await orders.create(MARIA, [(tote.id, 1)], ADDRESS, method)
    return _place


def _event(event_type, payment_id, intent_id=None):
    resource = {"id": payment_id, "attributes": {}}
    if intent_id:
        resource["attributes"]["payment_intent_id"] = intent_id
    return json.dumps({"data": {"attributes": {"type": event_type, "data": resource}}}).encode()


# ── Helpers ───────────────────────────────────
def test_to_centavos():
    assert to_centavos(508.0) == 50800
    assert to_centavos(19.99) == 1999


def test_verify_signature():
    body = b'{"data": {}}'
    good = sign_payload(body, "whsec")

    assert verify_signature(body, f"t=1700000000,v1={good}", "whsec")
    assert verify_signature(body, f"v1=deadbeef,v1={good}", "whsec")
    assert not verify_signature(body, "v1=deadbeef", "whsec")
    assert not verify_signature(body, f"te={good}", "whsec")
    assert not verify_signature(body, None, "whsec")
    assert verify_signature(body, None, "")


def test_resolve_method():
    assert resolve_method("card") == PaymentMethod.CARD
    assert resolve_method("ewallet", "grab_pay") == PaymentMethod.GRAB_PAY
    assert resolve_method("ewallet") == PaymentMethod.GCASH
    with pytest.raises(UnsupportedMethodError):
        resolve_method("bitcoin")


# ── start_payment ─────────────────────────────
async def test_card_start_creates_intent_and_records_it(reconciler, orders, paymongo, place_order):
    order = await place_order()

    data = await reconciler.start_payment(order, "card")

    assert data["payment_intent_id"] == "pi_test_1"
    assert data["client_key"] == "pi_test_1_client_abc"
    assert data["amount"] == 50800
    assert (await orders.get(order.order_id)).payment.transaction_id == "pi_test_1"
    method, path, body = paymongo.requests[0]
    assert (method, path) == ("POST", "/v1/payment_intents")
    assert body["data"]["attributes"]["metadata"] == {"order_id": order.order_id}


async def test_ewallet_start_returns_checkout_url(reconciler, paymongo, place_order):
    order = await place_order(PaymentMethod.GCASH)

    data = await reconciler.start_payment(order, "ewallet", "gcash")

    assert data["source_id"] == "src_test_1"
    assert data["checkout_url"].endswith("/checkout/src_test_1")
    attrs = paymongo.requests[0][2]["data"]["attributes"]
    assert attrs["type"] == "gcash"
    assert attrs["redirect"]["success"].endswith(f"orderId={order.order_id}")


async def test_cod_start_makes_no_gateway_call(reconciler, paymongo, place_order):
    order = await place_order(PaymentMethod.COD)
    data  = await reconciler.start_payment(order, "cod")
    assert data["payment_method"] == "cod"
    assert paymongo.requests == []


async def test_start_refuses_paid_or_cancelled_orders(reconciler, orders, place_order):
    paid = await place_order()
    await orders.mark_as_paid(paid.order_id)
    with pytest.raises(AlreadyPaidError):
        await reconciler.start_payment(await orders.get(paid.order_id), "card")

    gone = await place_order()
    await orders.cancel(gone.order_id)
    with pytest.raises(OrderCancelledError):
        await reconciler.start_payment(await orders.get(gone.order_id), "card")


async def test_gateway_error_leaves_order_untouched(reconciler, orders, paymongo, place_order):
    order = await place_order()
    paymongo.error = (400, "amount is below the minimum")

    with pytest.raises(PaymentGatewayError, match="below the minimum") as err:
        await reconciler.start_payment(order, "card")
    assert err.value.status_code == 400

    stored = await orders.get(order.order_id)
    assert stored.payment.transaction_id is None
    assert stored.payment.status == PaymentStatus.PENDING


async def test_missing_secret_key_is_a_gateway_error(orders, place_order):
    order = await place_order()
    rec   = PaymentReconciler(orders, PayMongoClient(secret_key=""))
    with pytest.raises(PaymentGatewayError, match="not configured"):
        await rec.start_payment(order, "card")


# ── confirm_card ──────────────────────────────
@pytest.fixture
def card_order(reconciler, orders, paymongo, place_order):
    """Card order with an intent already created for it."""
    async def _start():
        order = await place_order()
        await reconciler.start_payment(order, "card")
        paymongo.requests.clear()
        return await orders.get(order.order_id)
    return _start


@pytest.mark.parametrize("intent_status, state, payment_status", [
    ("succeeded",               PAID,            PaymentStatus.PAID),
    ("processing",              PENDING,         PaymentStatus.PENDING),
    ("awaiting_next_action",    REQUIRES_ACTION, PaymentStatus.PENDING),
    ("awaiting_payment_method", RETRY,           PaymentStatus.PENDING),
    ("cancelled",               FAILED,          PaymentStatus.FAILED),
])
async def test_confirm_card_maps_intent_status(reconciler, orders, paymongo, card_order,
                                               intent_status, state, payment_status):
    order = await card_order()
    paymongo.intent_status = intent_status

    outcome = await reconciler.confirm_card(order, "pi_test_1", "pm_1", "pi_test_1_client_abc")

    assert outcome.state == state
    assert (await orders.get(order.order_id)).payment.status == payment_status
    assert paymongo.paths() == ["/v1/payment_intents/pi_test_1/attach", "/v1/payment_intents/pi_test_1"]


async def test_confirm_card_extras(reconciler, paymongo, card_order):
    order = await card_order()

    paymongo.intent_status = "awaiting_next_action"
    outcome = await reconciler.confirm_card(order, "pi_test_1")
    assert outcome.data["redirect_url"] == "https://3ds.example/auth"
    assert outcome.http_status == 202

    paymongo.intent_status = "awaiting_payment_method"
    outcome = await reconciler.confirm_card(order, "pi_test_1")
    assert outcome.data["last_payment_error"] == {"failed_message": "Card declined"}
    assert outcome.http_status == 400


async def test_confirm_card_on_paid_order_skips_gateway(reconciler, orders, paymongo, card_order):
    order = await card_order()
    await orders.mark_as_paid(order.order_id, "pi_test_1")

    outcome = await reconciler.confirm_card(await orders.get(order.order_id), "pi_test_1")
    assert outcome.state == PAID
    assert paymongo.requests == []


async def test_confirm_card_refuses_another_orders_intent(reconciler, orders, paymongo,
                                                          make_product, card_order):
    cheap = await card_order()
    lamp  = await make_product(name="Capiz Lamp", price=25000.0, stock=3)
    dear  = await orders.create(MARIA, [(lamp.id, 2)], ADDRESS, PaymentMethod.CARD)

    with pytest.raises(IntentMismatchError):
        await reconciler.confirm_card(dear, "pi_test_1", "pm_1")
    assert paymongo.requests == []

    # Recorded as this order's transaction, but created for the cheap one
    await orders.set_transaction_id(dear.order_id, "pi_test_1")
    with pytest.raises(IntentMismatchError):
        await reconciler.confirm_card(await orders.get(dear.order_id), "pi_test_1")

    stored = await orders.get(dear.order_id)
    assert stored.payment.status == PaymentStatus.PENDING
    assert stored.status == OrderStatus.PENDING
    assert not (await orders.get(cheap.order_id)).is_paid


async def test_confirm_card_refuses_amount_mismatch(reconciler, orders, paymongo, card_order):
    order = await card_order()
    paymongo.intents["pi_test_1"]["amount"] = 100

    with pytest.raises(IntentMismatchError):
        await reconciler.confirm_card(order, "pi_test_1")
    assert not (await orders.get(order.order_id)).is_paid


async def test_confirm_card_refuses_cancelled_order(reconciler, orders, paymongo, card_order):
    order = await card_order()
    await orders.cancel(order.order_id)

    with pytest.raises(OrderCancelledError):
        await reconciler.confirm_card(await orders.get(order.order_id), "pi_test_1", "pm_1")
    assert paymongo.requests == []
    assert (await orders.get(order.order_id)).payment.status == PaymentStatus.PENDING


# ── complete_ewallet ──────────────────────────
@pytest.mark.parametrize("payment_status, state, stored", [
    ("paid",      PAID,    PaymentStatus.PAID),
    ("pending",   PENDING, PaymentStatus.PENDING),
    ("failed",    FAILED,  PaymentStatus.FAILED),
])
async def test_complete_ewallet(reconciler, orders, paymongo, place_order, payment_status, state, stored):
    order = await place_order(PaymentMethod.GCASH)
    paymongo.payment_status = payment_status

    outcome = await reconciler.complete_ewallet(order, "src_test_1")

    assert outcome.state == state
    refreshed = await orders.get(order.order_id)
    assert refreshed.payment.status == stored
    assert refreshed.payment.transaction_id == "pay_test_1"
    body = paymongo.requests[0][2]["data"]["attributes"]
    assert body["source"] == {"id": "src_test_1", "type": "source"}
    assert body["amount"] == 50800


async def test_complete_ewallet_refuses_cancelled_order(reconciler, orders, paymongo, place_order):
    order = await place_order(PaymentMethod.GCASH)
    await reconciler.start_payment(order, "ewallet", "gcash")
    await orders.cancel(order.order_id)
    paymongo.requests.clear()

    with pytest.raises(OrderCancelledError):
        await reconciler.complete_ewallet(await orders.get(order.order_id), "src_test_1")

    assert paymongo.requests == []
    stored = await orders.get(order.order_id)
    assert stored.payment.status == PaymentStatus.PENDING
    assert stored.status == OrderStatus.CANCELLED


# ── Webhook ───────────────────────────────────
async def test_webhook_marks_paid_once(reconciler, orders, place_order):
    order = await place_order()
    await orders.set_transaction_id(order.order_id, "pay_abc")

    assert await reconciler.handle_webhook(_event("payment.paid", "pay_abc"), None) == {"success": True}
    assert await reconciler.handle_webhook(_event("payment.paid", "pay_abc"), None) == {"success": True}

    stored = await orders.get(order.order_id)
    assert stored.payment.status == PaymentStatus.PAID
    assert stored.status == OrderStatus.PROCESSING


async def test_webhook_falls_back_to_intent_id(reconciler, orders, place_order):
    order = await place_order()
    await orders.set_transaction_id(order.order_id, "pi_test_1")

    await reconciler.handle_webhook(_event("payment.paid", "pay_new", intent_id="pi_test_1"), None)

    stored = await orders.get(order.order_id)
    assert stored.is_paid
    assert stored.payment.transaction_id == "pay_new"


async def test_webhook_failed_event_and_unknown_events(reconciler, orders, place_order):
    order = await place_order()
    await orders.set_transaction_id(order.order_id, "pay_abc")

    ignored = await reconciler.handle_webhook(_event("source.chargeable", "pay_abc"), None)
    assert ignored["message"] == "Event ignored"

    await reconciler.handle_webhook(_event("payment.failed", "pay_abc"), None)
    assert (await orders.get(order.order_id)).payment.status == PaymentStatus.FAILED

    missing = await reconciler.handle_webhook(_event("payment.paid", "pay_zzz"), None)
    assert missing == {"success": True, "message": "No matching order"}


async def test_webhook_signature_required_when_secret_set(reconciler, orders, place_order):
    order = await place_order()
    await orders.set_transaction_id(order.order_id, "pay_abc")
    body = _event("payment.paid", "pay_abc")

    with pytest.raises(WebhookSignatureError):
        await reconciler.handle_webhook(body, None, secret="whsec")
    with pytest.raises(WebhookSignatureError):
        await reconciler.handle_webhook(body, "v1=00", secret="whsec")
    assert not (await orders.get(order.order_id)).is_paid

    await reconciler.handle_webhook(body, f"t=1,v1={sign_payload(body, 'whsec')}", secret="whsec")
    assert (await orders.get(order.order_id)).is_paid


async def test_webhook_rejects_bad_payloads(reconciler):
    with pytest.raises(WebhookPayloadError):
        await reconciler.handle_webhook(b"not json", None)
    with pytest.raises(WebhookPayloadError):
        await reconciler.handle_webhook(b'{"data": {"attributes": {}}}', None)
