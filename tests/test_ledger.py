import asyncio
from decimal import Decimal

import pytest

from settlement.errors import ConflictError, InvalidState, OrderNotFound, ValidationError
from settlement.models import OrderStatus


@pytest.mark.asyncio
async def test_create_computes_and_freezes_total(ledger, make_order):
    """
    Test case 1: The total is subtotal + shipping + tax and the order starts pending.
    """
    order = await make_order("1000.00", "50.00", "150.00")

    assert order.total_amount == Decimal("1200.00")
    assert order.total_amount_cents == 120000
    assert order.status is OrderStatus.PENDING
    assert order.settled_at is None
    assert order.line_items_snapshot == [{"product_id": "product-A", "quantity": 2, "name": "Kettle"}]
    assert order.payment_reference.startswith("WWE-")
    assert "-user-42-" in order.payment_reference

    stored = await ledger.get(order.id)
    assert stored.total_amount == Decimal("1200.00")
    assert stored.buyer_email == "thandi@example.com"


@pytest.mark.asyncio
async def test_payment_references_are_unique(make_order):
    orders = [await make_order() for _ in range(5)]

    assert len({order.payment_reference for order in orders}) == 5


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "subtotal, shipping, tax",
    [
        ("-1.00", "0", "0"),
        ("10.00", "-0.01", "0"),
        ("10.00", "0", "-5"),
        ("10.001", "0", "0"),
        ("ten", "0", "0"),
        ("NaN", "0", "0"),
        ("0", "0", "0"),
        ("1e30", "0", "0"),
        ("99999999999999999999999999.99", "0", "0"),
        ("10.00", "0", "1000000000000.00"),
    ],
)
async def test_create_rejects_bad_amounts(ledger, subtotal, shipping, tax):
    with pytest.raises(ValidationError):
        await ledger.create("user-1", [{"product_id": "p", "quantity": 1}], subtotal, shipping, tax)


@pytest.mark.asyncio
async def test_create_rejects_empty_cart(ledger):
    with pytest.raises(ValidationError):
        await ledger.create("user-1", [], "10.00", "0", "0")


@pytest.mark.asyncio
async def test_find_by_payment_reference(ledger, make_order):
    order = await make_order()

    found = await ledger.find_by_payment_reference(order.payment_reference)
    assert found.id == order.id

    with pytest.raises(OrderNotFound):
        await ledger.find_by_payment_reference("WWE-0-nobody-deadbeef")


@pytest.mark.asyncio
async def test_transition_is_compare_and_set(ledger, make_order):
    """
    Test case 2: A transition only applies when the stored status is the expected one.
    """
    order = await make_order()

    moved = await ledger.transition(order.id, OrderStatus.PENDING, OrderStatus.AWAITING_SETTLEMENT)
    assert moved.status is OrderStatus.AWAITING_SETTLEMENT
    assert moved.settled_at is None

    with pytest.raises(ConflictError) as excinfo:
        await ledger.transition(order.id, OrderStatus.PENDING, OrderStatus.AWAITING_SETTLEMENT)
    assert excinfo.value.current is OrderStatus.AWAITING_SETTLEMENT

    paid = await ledger.transition(
        order.id, OrderStatus.AWAITING_SETTLEMENT, OrderStatus.PAID, gateway_payment_id="1089250"
    )
    assert paid.status is OrderStatus.PAID
    assert paid.settled_at is not None
    assert paid.gateway_payment_id == "1089250"
    assert paid.total_amount == Decimal("1200.00")


@pytest.mark.asyncio
async def test_terminal_orders_cannot_move(ledger, make_order):
    order = await make_order()
    await ledger.transition(order.id, OrderStatus.PENDING, OrderStatus.CANCELLED)

    with pytest.raises(InvalidState):
        await ledger.transition(order.id, OrderStatus.CANCELLED, OrderStatus.PAID)
    with pytest.raises(ConflictError):
        await ledger.transition(order.id, OrderStatus.AWAITING_SETTLEMENT, OrderStatus.PAID)


@pytest.mark.asyncio
async def test_transition_unknown_order(ledger):
    with pytest.raises(OrderNotFound):
        await ledger.transition("missing", OrderStatus.PENDING, OrderStatus.AWAITING_SETTLEMENT)


@pytest.mark.asyncio
async def test_concurrent_transitions_have_one_winner(ledger, make_order):
    """
    Test case 3: Two racing writers, exactly one compare-and-set succeeds.
    """
    order = await make_order()
    await ledger.transition(order.id, OrderStatus.PENDING, OrderStatus.AWAITING_SETTLEMENT)

    results = await asyncio.gather(
        ledger.transition(order.id, OrderStatus.AWAITING_SETTLEMENT, OrderStatus.PAID),
        ledger.transition(order.id, OrderStatus.AWAITING_SETTLEMENT, OrderStatus.FAILED),
        return_exceptions=True,
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], ConflictError)
    assert (await ledger.get(order.id)).status is winners[0].status


@pytest.mark.asyncio
async def test_cancel(ledger, make_order):
    pending = await make_order()
    cancelled = await ledger.cancel(pending.id)
    assert cancelled.status is OrderStatus.CANCELLED
    assert cancelled.settled_at is not None

    awaiting = await make_order()
    await ledger.transition(awaiting.id, OrderStatus.PENDING, OrderStatus.AWAITING_SETTLEMENT)
    assert (await ledger.cancel(awaiting.id)).status is OrderStatus.CANCELLED

    with pytest.raises(InvalidState):
        await ledger.cancel(pending.id)


@pytest.mark.asyncio
async def test_create_accepts_largest_amounts(ledger):
    order = await ledger.create(
        "user-1",
        [{"product_id": "p", "quantity": 1}],
        "999999999999.99",
        "999999999999.99",
        "999999999999.99",
    )

    stored = await ledger.get(order.id)
    assert stored.total_amount == Decimal("2999999999999.97")
