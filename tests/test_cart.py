import pytest

from growlokal.cart import (
    CartItemNotFoundError, CartNotFoundError, CartService, InvalidQuantityError,
    OutOfStockError, QuantityExceedsStockError, merge_items,
)
from growlokal.models.cart import Cart, CartItem
from growlokal.models.identity import GuestIdentity, UserIdentity

MARIA = UserIdentity("Maria@Example.com")
GUEST = GuestIdentity("guest_0123456789abcdef0123456789abcdef")


@pytest.fixture
def carts(db_path, clock):
    return CartService(db_path, clock)


def _line(pid, qty, max_stock):
    return CartItem(product_id=pid, name=pid, price=100.0, quantity=qty, max_stock=max_stock)


# ── Add ───────────────────────────────────────
async def test_add_same_product_sums_quantity(carts, make_product):
    tote = await make_product(stock=5)

    await carts.add_item(MARIA, tote, 2)
    cart = await carts.add_item(MARIA, tote, 1)

    assert len(cart.items) == 1
    assert cart.items[0].quantity == 3
    assert cart.items[0].max_stock == 5
    assert cart.subtotal == 1350.0
    assert cart.item_count == 3


async def test_add_beyond_stock_is_rejected(carts, make_product):
    tote = await make_product(stock=3)
    await carts.add_item(MARIA, tote, 2)

    with pytest.raises(QuantityExceedsStockError, match="Only 3 items"):
        await carts.add_item(MARIA, tote, 2)
    assert (await carts.get(MARIA)).items[0].quantity == 2


async def test_add_rejects_unavailable_and_bad_quantity(carts, make_product):
    sold_out = await make_product(name="Banig", stock=0)
    hidden   = await make_product(name="Salakot", stock=4, is_available=False)
    tote     = await make_product()

    with pytest.raises(OutOfStockError):
        await carts.add_item(MARIA, sold_out, 1)
    with pytest.raises(OutOfStockError):
        await carts.add_item(MARIA, hidden, 1)
    with pytest.raises(InvalidQuantityError):
        await carts.add_item(MARIA, tote, 0)


# ── Update / remove / clear ───────────────────
async def test_update_quantity(carts, make_product):
    tote = await make_product(stock=5)
    await carts.add_item(MARIA, tote, 1)

    cart = await carts.update_quantity(MARIA, tote.id, 4)
    assert cart.items[0].quantity == 4

    with pytest.raises(QuantityExceedsStockError):
        await carts.update_quantity(MARIA, tote.id, 6)

    cart = await carts.update_quantity(MARIA, tote.id, 0)
    assert cart.items == []


async def test_update_missing_line_or_cart(carts, make_product):
    tote = await make_product()
    with pytest.raises(CartNotFoundError):
        await carts.update_quantity(MARIA, tote.id, 1)

    await carts.add_item(MARIA, tote, 1)
    with pytest.raises(CartItemNotFoundError):
        await carts.update_quantity(MARIA, "nope", 1)


async def test_remove_and_clear(carts, make_product):
    tote = await make_product()
    mat  = await make_product(name="Banig", price=900.0)
    await carts.add_item(MARIA, tote, 1)
    await carts.add_item(MARIA, mat, 1)

    cart = await carts.remove_item(MARIA, tote.id)
    assert [i.product_id for i in cart.items] == [mat.id]
    with pytest.raises(CartItemNotFoundError):
        await carts.remove_item(MARIA, tote.id)

    cart = await carts.clear(MARIA)
    assert cart.items == []
    assert (await carts.get(MARIA)) is not None


# ── Identity ──────────────────────────────────
async def test_user_email_is_case_insensitive(carts, make_product):
    tote = await make_product()
    await carts.add_item(UserIdentity("maria@example.com"), tote, 1)
    assert (await carts.get(MARIA)).item_count == 1


async def test_guest_token_never_collides_with_user(carts, make_product):
    tote = await make_product()
    await carts.add_item(UserIdentity("guest_abc"), tote, 1)

    assert await carts.get(GuestIdentity("guest_abc")) is None


# ── Expiry ────────────────────────────────────
async def test_cart_expires_after_thirty_idle_days(carts, clock, make_product):
    tote = await make_product()
    await carts.add_item(MARIA, tote, 1)

    clock.advance(days=29)
    assert await carts.get(MARIA) is not None
    await carts.add_item(MARIA, tote, 1)     # touching it extends the window

    clock.advance(days=29)
    assert (await carts.get(MARIA)).item_count == 2

    clock.advance(days=2)
    assert await carts.get(MARIA) is None
    cart = await carts.find_or_create(MARIA)
    assert cart.items == []


# ── Merge ─────────────────────────────────────
def test_merge_items_sums_and_caps_at_larger_snapshot():
    user  = Cart(id="u", owner_type="user", owner_id="m", items=[_line("a", 2, 5), _line("b", 1, 3)])
    guest = Cart(id="g", owner_type="guest", owner_id="t", items=[_line("a", 2, 4), _line("c", 7, 6)])

    merge_items(user, guest)

    got = {i.product_id: (i.quantity, i.max_stock) for i in user.items}
    assert got == {"a": (4, 5), "b": (1, 3), "c": (6, 6)}


def test_merge_items_keeps_quantity_when_one_snapshot_is_stale():
    user  = Cart(id="u", owner_type="user", owner_id="m", items=[_line("a", 1, 2)])
    guest = Cart(id="g", owner_type="guest", owner_id="t", items=[_line("a", 3, 10)])

    merge_items(user, guest)

    assert (user.items[0].quantity, user.items[0].max_stock) == (4, 10)


def test_merge_items_caps_rather_than_drops():
    user  = Cart(id="u", owner_type="user", owner_id="m", items=[_line("a", 3, 4)])
    guest = Cart(id="g", owner_type="guest", owner_id="t", items=[_line("a", 3, 4)])
    merge_items(user, guest)
    assert user.items[0].quantity == 4


async def test_merge_guest_cart_moves_lines_and_deletes_guest(carts, make_product):
    tote = await make_product(stock=5)
    mat  = await make_product(name="Banig", price=900.0, stock=2)
    await carts.add_item(MARIA, tote, 2)
    await carts.add_item(GUEST, tote, 2)
    await carts.add_item(GUEST, mat, 1)

    merged = await carts.merge_guest_cart(GUEST, MARIA)

    assert {i.product_id: i.quantity for i in merged.items} == {tote.id: 4, mat.id: 1}
    assert await carts.get(GUEST) is None
    assert (await carts.get(MARIA)).item_count == 5


async def test_merge_without_guest_cart_keeps_user_cart(carts, make_product):
    tote = await make_product()
    await carts.add_item(MARIA, tote, 1)

    merged = await carts.merge_guest_cart(GUEST, MARIA)
    assert merged.item_count == 1


async def test_merge_into_missing_user_cart_creates_it(carts, make_product):
    tote = await make_product()
    await carts.add_item(GUEST, tote, 3)

    merged = await carts.merge_guest_cart(GUEST, MARIA)
    assert merged.owner_id == "maria@example.com"
    assert merged.item_count == 3
