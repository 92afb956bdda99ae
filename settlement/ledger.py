"""
Order ledger: the persisted record of an order's total and settlement state.

Every status change goes through ``transition``, a single conditional
``UPDATE ... WHERE status = :expected``. Two concurrent writers for the same
order are serialized by the database and exactly one of them updates a row;
the other gets ``ConflictError`` carrying the status it lost to.
"""

import json
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.errors import ConflictError, InvalidState, OrderNotFound, ValidationError
from settlement.models import (
    ALLOWED_TRANSITIONS,
    CENT,
    MAX_AMOUNT,
    Order,
    OrderStatus,
    to_cents,
)

logger = structlog.get_logger(__name__)


def _money(name: str, value) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{name} is not a valid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValidationError(f"{name} is not a valid amount: {value!r}")
    if amount < 0:
        raise ValidationError(f"{name} must not be negative")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{name} must not exceed {MAX_AMOUNT}")
    try:
        quantized = amount.quantize(CENT)
    except InvalidOperation as e:
        raise ValidationError(f"{name} is not a valid amount: {value!r}") from e
    if amount != quantized:
        raise ValidationError(f"{name} has more than two decimal places")
    return quantized


class OrderLedger:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], reference_prefix: str = "WWE"):
        self._session = session_factory
        self._reference_prefix = reference_prefix

    def new_payment_reference(self, buyer_id: str) -> str:
        millis = int(time.time() * 1000)
        return f"{self._reference_prefix}-{millis}-{buyer_id}-{uuid4().hex[:8]}"

    async def create(
        self,
        buyer_id: str,
        line_items: list,
        subtotal,
        shipping_cost,
        tax_amount,
        contact: dict = None,
        item_name: str = None,
    ) -> Order:
        if not buyer_id:
            raise ValidationError("buyer_id is required")
        if not line_items:
            raise ValidationError("An order needs at least one line item")

        subtotal = _money("subtotal", subtotal)
        shipping_cost = _money("shipping_cost", shipping_cost)
        tax_amount = _money("tax_amount", tax_amount)
        total_amount = subtotal + shipping_cost + tax_amount
        if total_amount <= 0:
            raise ValidationError("Order total must be greater than zero")

        contact = contact or {}
        payment_reference = self.new_payment_reference(buyer_id)
        order = Order(
            id=str(uuid4()),
            payment_reference=payment_reference,
            buyer_id=buyer_id,
            buyer_first_name=contact.get("first_name"),
            buyer_last_name=contact.get("last_name"),
            buyer_email=contact.get("email"),
            item_name=(item_name or f"Order {payment_reference}")[:100],
            line_items=json.dumps(line_items, default=str),
            subtotal_cents=to_cents(subtotal),
            shipping_cost_cents=to_cents(shipping_cost),
            tax_amount_cents=to_cents(tax_amount),
            total_amount_cents=to_cents(total_amount),
            status=OrderStatus.PENDING,
        )
        async with self._session() as session:
            session.add(order)
            await session.commit()
            await session.refresh(order)

        logger.info(
            "order_created",
            order_id=order.id,
            payment_reference=payment_reference,
            buyer_id=buyer_id,
            total_amount=str(total_amount),
        )
        return order

    async def get(self, order_id: str) -> Order:
        async with self._session() as session:
            order = await session.get(Order, order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def find_by_payment_reference(self, payment_reference: str) -> Order:
        async with self._session() as session:
            result = await session.execute(
                select(Order).where(Order.payment_reference == payment_reference)
            )
            order = result.scalar_one_or_none()
        if order is None:
            raise OrderNotFound(f"No order with payment reference {payment_reference}")
        return order

    async def transition(
        self,
        order_id: str,
        from_expected: OrderStatus,
        to: OrderStatus,
        gateway_payment_id: str = None,
    ) -> Order:
        if to not in ALLOWED_TRANSITIONS.get(from_expected, ()):
            raise InvalidState(f"Transition {from_expected.value} -> {to.value} is not allowed")

        now = datetime.utcnow()
        values = {"status": to, "updated_at": now}
        if to.is_terminal:
            values["settled_at"] = now
        if gateway_payment_id:
            values["gateway_payment_id"] = gateway_payment_id

        async with self._session() as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id, Order.status == from_expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

            if result.rowcount != 1:
                current = await session.get(Order, order_id)
                if current is None:
                    raise OrderNotFound(f"Order {order_id} not found")
                raise ConflictError(order_id, from_expected, current.status)

            order = await session.get(Order, order_id, populate_existing=True)

        logger.info(
            "order_transitioned",
            order_id=order_id,
            payment_reference=order.payment_reference,
            from_status=from_expected.value,
            to_status=to.value,
        )
        return order

    async def cancel(self, order_id: str) -> Order:
        """Buyer-initiated cancellation of a not yet settled order."""
        status = (await self.get(order_id)).status
        while True:
            if status.is_terminal:
                raise InvalidState(f"Order {order_id} is already {status.value}")
            try:
                return await self.transition(order_id, status, OrderStatus.CANCELLED)
            except ConflictError as e:
                # status moved underneath us; re-evaluate against the new one
                status = e.current
