import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from settlement import signature
from settlement.audit import AuditTrail
from settlement.config import SANDBOX_PROCESS_URL, Settings
from settlement.database import create_engine, create_session_factory, init_db
from settlement.initiator import PaymentInitiator
from settlement.ledger import OrderLedger
from settlement.reconciler import NotificationReconciler
from settlement.schemas import CallbackUrls

MERCHANT_ID = "10000100"
MERCHANT_KEY = "46f0cd694581a"
PASSPHRASE = "jt7NOE43FZPn"


@pytest.fixture
def settings():
    return Settings(
        merchant_id=MERCHANT_ID,
        merchant_key=MERCHANT_KEY,
        passphrase=PASSPHRASE,
        process_url=SANDBOX_PROCESS_URL,
        reference_prefix="WWE",
    )


@pytest.fixture
def callbacks():
    return CallbackUrls(
        return_url="https://shop.example.com/checkout/success",
        cancel_url="https://shop.example.com/checkout/cancel",
        notify_url="https://api.shop.example.com/api/payments/notify",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    await init_db(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def ledger(session_factory, settings):
    return OrderLedger(session_factory, settings.reference_prefix)


@pytest.fixture
def audit(session_factory):
    return AuditTrail(session_factory)


@pytest.fixture
def initiator(settings, ledger):
    return PaymentInitiator(settings, ledger)


@pytest.fixture
def publisher():
    return AsyncMock()


@pytest.fixture
def reconciler(settings, ledger, audit, publisher):
    return NotificationReconciler(settings, ledger, audit, publisher=publisher)


@pytest.fixture
def make_order(ledger):
    async def _make(subtotal="1000.00", shipping="50.00", tax="150.00", buyer_id="user-42"):
        return await ledger.create(
            buyer_id=buyer_id,
            line_items=[{"product_id": "product-A", "quantity": 2, "name": "Kettle"}],
            subtotal=subtotal,
            shipping_cost=shipping,
            tax_amount=tax,
            contact={"first_name": "Thandi", "last_name": "Nkosi", "email": "thandi@example.com"},
        )
    return _make


@pytest.fixture
def make_itn(settings):
    """Build a correctly signed ITN body for an order."""
    def _make(order, payment_status="COMPLETE", amount_gross=None, passphrase=None, **extra):
        params = {
            "m_payment_id": order.payment_reference,
            "pf_payment_id": "1089250",
            "payment_status": payment_status,
            "item_name": order.item_name,
            "amount_gross": amount_gross or f"{order.total_amount:.2f}",
            "amount_fee": "-27.60",
            "amount_net": "1172.40",
            "name_first": "Thandi",
            "name_last": "Nkosi",
            "email_address": "thandi@example.com",
            "merchant_id": settings.merchant_id,
        }
        params.update(extra)
        key = settings.passphrase if passphrase is None else passphrase
        params["signature"] = signature.sign(params, key)
        return params
    return _make
