from html import escape

import structlog

from settlement import signature
from settlement.config import Settings
from settlement.errors import ConflictError, InvalidState
from settlement.ledger import OrderLedger
from settlement.models import Order, OrderStatus
from settlement.schemas import CallbackUrls, PaymentRedirect, PaymentRequestParameters

logger = structlog.get_logger(__name__)


class PaymentInitiator:
    """Builds the signed form that sends the buyer's browser to the gateway.

    Nothing here talks to the gateway; the buyer's browser carries the signed
    fields there. The order is moved to ``awaiting_settlement`` before the
    redirect is handed out.
    """

    def __init__(self, settings: Settings, ledger: OrderLedger):
        self._settings = settings
        self._ledger = ledger

    def build_parameters(self, order: Order, callbacks: CallbackUrls) -> PaymentRequestParameters:
        email = order.buyer_email or None
        return PaymentRequestParameters(
            merchant_id=self._settings.merchant_id,
            merchant_key=self._settings.merchant_key,
            return_url=callbacks.return_url,
            cancel_url=callbacks.cancel_url,
            notify_url=callbacks.notify_url,
            name_first=order.buyer_first_name,
            name_last=order.buyer_last_name,
            email_address=email,
            m_payment_id=order.payment_reference,
            amount=f"{order.total_amount:.2f}",
            item_name=order.item_name,
            item_description=order.item_name,
            email_confirmation="1" if email else None,
            confirmation_address=email,
        )

    def _signed_redirect(self, order: Order, callbacks: CallbackUrls) -> PaymentRedirect:
        fields = self.build_parameters(order, callbacks).to_fields()
        fields[signature.SIGNATURE_FIELD] = signature.sign(fields, self._settings.passphrase)
        return PaymentRedirect(action_url=self._settings.process_url, form_fields=fields)

    async def initiate(self, order: Order, callbacks: CallbackUrls) -> PaymentRedirect:
        self._settings.require_merchant_credentials()
        if order.status is not OrderStatus.PENDING:
            raise InvalidState(f"Order {order.id} is {order.status.value}, expected pending")

        redirect = self._signed_redirect(order, callbacks)
        try:
            await self._ledger.transition(
                order.id, OrderStatus.PENDING, OrderStatus.AWAITING_SETTLEMENT
            )
        except ConflictError as e:
            raise InvalidState(str(e)) from e

        logger.info(
            "payment_initiated",
            order_id=order.id,
            payment_reference=order.payment_reference,
            amount=redirect.form_fields["amount"],
        )
        return redirect

    async def resume(self, order: Order, callbacks: CallbackUrls) -> PaymentRedirect:
        """Re-issue the redirect for an order already awaiting settlement."""
        self._settings.require_merchant_credentials()
        if order.status is not OrderStatus.AWAITING_SETTLEMENT:
            raise InvalidState(
                f"Order {order.id} is {order.status.value}, expected awaiting_settlement"
            )
        logger.info("payment_resumed", order_id=order.id, payment_reference=order.payment_reference)
        return self._signed_redirect(order, callbacks)


def render_form(redirect: PaymentRedirect) -> str:
    inputs = "\n".join(
        f'    <input type="hidden" name="{escape(name)}" value="{escape(value)}">'
        for name, value in redirect.form_fields.items()
    )
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head><title>Redirecting to payment</title></head>\n"
        '<body onload="document.forms[0].submit()">\n'
        f'  <form method="POST" action="{escape(redirect.action_url)}">\n'
        f"{inputs}\n"
        '    <noscript><button type="submit">Continue to payment</button></noscript>\n'
        "  </form>\n"
        "</body>\n"
        "</html>\n"
    )
