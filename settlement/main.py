import uvicorn
from urllib.parse import parse_qsl
from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import HTMLResponse, PlainTextResponse

from settlement.audit import AuditTrail
from settlement.config import Settings, load_settings
from settlement.database import create_engine, create_session_factory, init_db
from settlement.errors import ConfigurationError, InvalidState, OrderNotFound, ValidationError
from settlement.gateway import GatewayValidator
from settlement.initiator import PaymentInitiator, render_form
from settlement.ledger import OrderLedger
from settlement.logging_config import configure_logging
from settlement.messaging import close_rabbitmq, publish_settlement, setup_rabbitmq
from settlement.models import OrderStatus
from settlement.reconciler import NotificationReconciler
from settlement.schemas import CallbackUrls, OrderCreate, OrderRead, PaymentRedirect

import structlog

logger = structlog.get_logger(__name__)

app = FastAPI(title="Settlement Service")


def build_services(app: FastAPI, settings: Settings, session_factory) -> None:
    ledger = OrderLedger(session_factory, settings.reference_prefix)
    audit = AuditTrail(session_factory)
    validator = GatewayValidator(settings.validate_url) if settings.validate_url else None
    app.state.settings = settings
    app.state.ledger = ledger
    app.state.audit = audit
    app.state.initiator = PaymentInitiator(settings, ledger)
    app.state.reconciler = NotificationReconciler(settings, ledger, audit, validator)


@app.on_event("startup")
async def startup_event():
    configure_logging()
    settings = load_settings()
    engine = create_engine(settings.database_url)
    await init_db(engine)
    app.state.engine = engine
    build_services(app, settings, create_session_factory(engine))
    await setup_rabbitmq(settings.rabbitmq_url)
    logger.info("settlement_service_started", process_url=settings.process_url)


@app.on_event("shutdown")
async def shutdown_event():
    await close_rabbitmq()
    await app.state.engine.dispose()


def get_ledger(request: Request) -> OrderLedger:
    return request.app.state.ledger


def get_initiator(request: Request) -> PaymentInitiator:
    return request.app.state.initiator


def get_reconciler(request: Request) -> NotificationReconciler:
    return request.app.state.reconciler


async def _load_order(ledger: OrderLedger, order_id: str):
    try:
        return await ledger.get(order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")


@app.post("/api/orders", response_model=OrderRead, status_code=201)
async def create_order(order_data: OrderCreate, ledger: OrderLedger = Depends(get_ledger)):
    try:
        order = await ledger.create(
            buyer_id=order_data.buyer_id,
            line_items=[item.model_dump(mode="json") for item in order_data.items],
            subtotal=order_data.subtotal,
            shipping_cost=order_data.shipping_cost,
            tax_amount=order_data.tax_amount,
            contact=order_data.contact.model_dump() if order_data.contact else None,
            item_name=order_data.item_name,
        )
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return OrderRead.model_validate(order)


@app.get("/api/orders/{order_id}", response_model=OrderRead)
async def get_order(order_id: str, ledger: OrderLedger = Depends(get_ledger)):
    order = await _load_order(ledger, order_id)
    return OrderRead.model_validate(order)


async def _redirect_for(order_id: str, callbacks: CallbackUrls, ledger: OrderLedger, initiator: PaymentInitiator):
    order = await _load_order(ledger, order_id)
    try:
        if order.status is OrderStatus.AWAITING_SETTLEMENT:
            return await initiator.resume(order, callbacks)
        return await initiator.initiate(order, callbacks)
    except InvalidState as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError:
        logger.error("payment_gateway_not_configured", order_id=order_id)
        raise HTTPException(status_code=503, detail="Payment gateway not configured properly")


@app.post("/api/orders/{order_id}/payment", response_model=PaymentRedirect)
async def start_payment(
    order_id: str,
    callbacks: CallbackUrls,
    ledger: OrderLedger = Depends(get_ledger),
    initiator: PaymentInitiator = Depends(get_initiator),
):
    return await _redirect_for(order_id, callbacks, ledger, initiator)


@app.post("/api/orders/{order_id}/payment/form", response_class=HTMLResponse)
async def start_payment_form(
    order_id: str,
    callbacks: CallbackUrls,
    ledger: OrderLedger = Depends(get_ledger),
    initiator: PaymentInitiator = Depends(get_initiator),
):
    redirect = await _redirect_for(order_id, callbacks, ledger, initiator)
    return HTMLResponse(render_form(redirect))


@app.post("/api/orders/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(order_id: str, ledger: OrderLedger = Depends(get_ledger)):
    try:
        order = await ledger.cancel(order_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    except InvalidState as e:
        raise HTTPException(status_code=409, detail=str(e))
    await publish_settlement(order)
    return OrderRead.model_validate(order)


@app.get("/api/payments/return")
async def payment_return(m_payment_id: str, ledger: OrderLedger = Depends(get_ledger)):
    # informational only; the ITN decides the outcome
    try:
        order = await ledger.find_by_payment_reference(m_payment_id)
    except OrderNotFound:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"payment_reference": order.payment_reference, "status": order.status.value}


def _source_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and request.app.state.settings.trust_forwarded_for:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


@app.post("/api/payments/notify", response_class=PlainTextResponse)
async def payment_notification(request: Request, reconciler: NotificationReconciler = Depends(get_reconciler)):
    body = (await request.body()).decode("latin-1")
    params = dict(parse_qsl(body, keep_blank_values=True))
    result = await reconciler.handle(params, params.get("signature", ""), _source_ip(request))
    text = "OK" if result.acknowledged else ("REJECTED" if result.http_status == 400 else "ERROR")
    return PlainTextResponse(text, status_code=result.http_status)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
