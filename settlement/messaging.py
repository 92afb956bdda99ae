import json
from datetime import datetime
from uuid import uuid4

import aio_pika
import structlog

from settlement.models import Order, OrderStatus

logger = structlog.get_logger(__name__)

PAYMENT_EXCHANGE = "payment_exchange"

SETTLEMENT_EVENTS = {
    OrderStatus.PAID: ("payment.processed", "PaymentProcessed"),
    OrderStatus.FAILED: ("payment.failed", "PaymentFailed"),
    OrderStatus.CANCELLED: ("order.cancelled", "OrderCancelled"),
}

connection = None
channel = None


async def setup_rabbitmq(rabbitmq_url: str):
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(rabbitmq_url)
        channel = await connection.channel()
        await channel.declare_exchange(PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("rabbitmq_ready", exchange=PAYMENT_EXCHANGE)
    except Exception as e:
        # settlement keeps working without the event feed
        logger.error("rabbitmq_setup_failed", error=str(e))


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


async def publish_event(exchange_name: str, routing_key: str, message_data: dict):
    if not channel:
        logger.warning("rabbitmq_unavailable", routing_key=routing_key, event_type=message_data["event_type"])
        return

    message = aio_pika.Message(
        json.dumps(message_data, default=str).encode('utf-8'),
        content_type='application/json',
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT
    )
    try:
        exchange = await channel.get_exchange(exchange_name)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("event_published", routing_key=routing_key, event_type=message_data["event_type"])
    except Exception as e:
        logger.error("event_publish_failed", routing_key=routing_key, error=str(e))


def settlement_event(order: Order) -> tuple:
    """(routing_key, payload) announcing a terminal order status."""
    routing_key, event_type = SETTLEMENT_EVENTS[order.status]
    return routing_key, {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": (order.settled_at or datetime.utcnow()).isoformat(),
        "order_id": order.id,
        "payment_reference": order.payment_reference,
        "buyer_id": order.buyer_id,
        "total_amount": f"{order.total_amount:.2f}",
        "gateway_payment_id": order.gateway_payment_id,
    }


async def publish_settlement(order: Order):
    routing_key, payload = settlement_event(order)
    await publish_event(PAYMENT_EXCHANGE, routing_key, payload)
