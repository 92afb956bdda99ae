from sqlalchemy import BigInteger, Column, String, Integer, DateTime, Enum, Text
from sqlalchemy.orm import declarative_base
from datetime import datetime
from decimal import Decimal
import enum
import json

Base = declarative_base()

CENT = Decimal("0.01")
# per component; the sum of three still fits a BIGINT of cents
MAX_AMOUNT = Decimal("999999999999.99")


class OrderStatus(enum.Enum):
    PENDING = "pending"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED})

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.AWAITING_SETTLEMENT, OrderStatus.CANCELLED},
    OrderStatus.AWAITING_SETTLEMENT: {OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.CANCELLED},
}


def to_cents(amount: Decimal) -> int:
    return int((amount / CENT).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) * CENT).quantize(CENT)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, index=True)
    payment_reference = Column(String(100), unique=True, index=True, nullable=False)
    buyer_id = Column(String(64), index=True, nullable=False)
    buyer_first_name = Column(String(100), nullable=True)
    buyer_last_name = Column(String(100), nullable=True)
    buyer_email = Column(String(255), nullable=True)
    item_name = Column(String(100), nullable=False)
    line_items = Column(Text, nullable=False)  # frozen cart snapshot, JSON
    subtotal_cents = Column(BigInteger, nullable=False)
    shipping_cost_cents = Column(BigInteger, nullable=False)
    tax_amount_cents = Column(BigInteger, nullable=False)
    total_amount_cents = Column(BigInteger, nullable=False)
    status = Column(Enum(OrderStatus), default=OrderStatus.PENDING, nullable=False)
    gateway_payment_id = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    settled_at = Column(DateTime, nullable=True)

    @property
    def subtotal(self) -> Decimal:
        return from_cents(self.subtotal_cents)

    @property
    def shipping_cost(self) -> Decimal:
        return from_cents(self.shipping_cost_cents)

    @property
    def tax_amount(self) -> Decimal:
        return from_cents(self.tax_amount_cents)

    @property
    def total_amount(self) -> Decimal:
        return from_cents(self.total_amount_cents)

    @property
    def line_items_snapshot(self) -> list:
        return json.loads(self.line_items)


class SettlementAuditEntry(Base):
    __tablename__ = "settlement_audit"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(40), index=True, nullable=False)
    payment_reference = Column(String(100), index=True, nullable=True)
    order_id = Column(String(36), index=True, nullable=True)
    source_ip = Column(String(45), nullable=True)
    detail = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
