"""
ITN (Instant Transaction Notification) reconciliation.

The gateway POSTs the outcome of every payment to our ``notify_url`` and keeps
re-sending until it gets a 2xx back. ``NotificationReconciler.handle`` turns one
such delivery into at most one ledger transition and an HTTP status the
gateway can act on:

* 200 - accepted. Also returned for repeats of an already applied outcome.
* 400 - rejected (bad signature, unknown reference, wrong amount, ...).
  Every rejection looks the same to the caller.
* 500 - we could not process it; the gateway should try again later.

``handle`` never raises.
"""

import enum
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from ipaddress import ip_address
from typing import Awaitable, Callable, Mapping

import structlog

from settlement import signature
from settlement.audit import AuditKind, AuditTrail
from settlement.config import Settings
from settlement.errors import ConflictError, OrderNotFound, SignatureMismatch
from settlement.gateway import GatewayUnavailable, GatewayValidator
from settlement.ledger import OrderLedger
from settlement.messaging import publish_settlement
from settlement.models import Order, OrderStatus

logger = structlog.get_logger(__name__)

# PayFast ITN field names
REFERENCE_FIELD = "m_payment_id"
GATEWAY_ID_FIELD = "pf_payment_id"
STATUS_FIELD = "payment_status"
AMOUNT_FIELD = "amount_gross"
MERCHANT_FIELD = "merchant_id"

STATUS_OUTCOMES = {
    "COMPLETE": OrderStatus.PAID,
    "FAILED": OrderStatus.FAILED,
    "CANCELLED": OrderStatus.FAILED,
}
PENDING_STATUSES = frozenset({"PENDING"})


class Outcome(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    PENDING = "pending"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    order_id: str = None

    @property
    def acknowledged(self) -> bool:
        return self.outcome in (Outcome.APPLIED, Outcome.DUPLICATE, Outcome.PENDING)

    @property
    def http_status(self) -> int:
        if self.acknowledged:
            return 200
        if self.outcome is Outcome.REJECTED:
            return 400
        return 500


class NotificationReconciler:
    def __init__(
        self,
        settings: Settings,
        ledger: OrderLedger,
        audit: AuditTrail,
        validator: GatewayValidator = None,
        publisher: Callable[[Order], Awaitable[None]] = publish_settlement,
    ):
        self._settings = settings
        self._ledger = ledger
        self._audit = audit
        self._validator = validator
        self._publisher = publisher

    async def handle(
        self,
        raw_params: Mapping[str, str],
        provided_code: str = None,
        source_ip: str = None,
    ) -> ReconcileResult:
        if provided_code is None:
            provided_code = raw_params.get(signature.SIGNATURE_FIELD, "")
        reference = raw_params.get(REFERENCE_FIELD) or None
        log = logger.bind(component="itn", payment_reference=reference, source_ip=source_ip)
        try:
            return await self._reconcile(raw_params, provided_code, source_ip, reference, log)
        except Exception:
            log.exception("itn_processing_failed")
            return ReconcileResult(Outcome.ERROR)

    async def _reject(self, kind: AuditKind, reference: str, source_ip: str, order_id: str = None, **detail):
        await self._audit.record(
            kind,
            payment_reference=reference,
            order_id=order_id,
            source_ip=source_ip,
            **detail,
        )
        return ReconcileResult(Outcome.REJECTED, order_id)

    def _is_trusted_source(self, source_ip: str) -> bool:
        if not self._settings.trusted_networks:
            return True
        if not source_ip:
            return False
        try:
            address = ip_address(source_ip)
        except ValueError:
            return False
        return any(address in network for network in self._settings.trusted_networks)

    async def _reconcile(self, raw_params, provided_code, source_ip, reference, log) -> ReconcileResult:
        try:
            signature.require_valid(raw_params, self._settings.passphrase, provided_code)
        except SignatureMismatch:
            return await self._reject(AuditKind.SIGNATURE_MISMATCH, reference, source_ip)

        if not self._is_trusted_source(source_ip):
            return await self._reject(AuditKind.UNTRUSTED_SOURCE, reference, source_ip)

        if self._validator is not None:
            try:
                valid = await self._validator.is_valid(raw_params)
            except GatewayUnavailable:
                return ReconcileResult(Outcome.ERROR)
            if not valid:
                return await self._reject(AuditKind.GATEWAY_VALIDATION_FAILED, reference, source_ip)

        merchant_id = raw_params.get(MERCHANT_FIELD, "")
        if self._settings.merchant_id and merchant_id != self._settings.merchant_id:
            return await self._reject(
                AuditKind.MERCHANT_MISMATCH, reference, source_ip, reported=merchant_id
            )

        if not reference:
            return await self._reject(AuditKind.UNKNOWN_REFERENCE, reference, source_ip)
        try:
            order = await self._ledger.find_by_payment_reference(reference)
        except OrderNotFound:
            return await self._reject(AuditKind.UNKNOWN_REFERENCE, reference, source_ip)

        reported = raw_params.get(AMOUNT_FIELD, "")
        try:
            amount = Decimal(reported.strip())
        except (InvalidOperation, AttributeError):
            amount = None
        if amount is None or not amount.is_finite() or amount != order.total_amount:
            return await self._reject(
                AuditKind.AMOUNT_MISMATCH,
                reference,
                source_ip,
                order_id=order.id,
                reported=reported,
                expected=f"{order.total_amount:.2f}",
            )

        gateway_status = raw_params.get(STATUS_FIELD, "").strip().upper()
        if gateway_status in PENDING_STATUSES:
            log.info("itn_pending", order_id=order.id)
            return ReconcileResult(Outcome.PENDING, order.id)
        target = STATUS_OUTCOMES.get(gateway_status)
        if target is None:
            return await self._reject(
                AuditKind.UNKNOWN_OUTCOME,
                reference,
                source_ip,
                order_id=order.id,
                reported=gateway_status,
            )

        if order.status.is_terminal:
            return await self._duplicate(order, order.status, target, source_ip, log)

        try:
            order = await self._ledger.transition(
                order.id,
                OrderStatus.AWAITING_SETTLEMENT,
                target,
                gateway_payment_id=raw_params.get(GATEWAY_ID_FIELD) or None,
            )
        except ConflictError as e:
            if e.current.is_terminal:
                return await self._duplicate(order, e.current, target, source_ip, log)
            await self._audit.record(
                AuditKind.UNEXPECTED_STATE,
                payment_reference=reference,
                order_id=order.id,
                source_ip=source_ip,
                current=e.current.value,
                target=target.value,
            )
            return ReconcileResult(Outcome.ERROR, order.id)

        await self._audit.record(
            AuditKind.TRANSITION,
            payment_reference=reference,
            order_id=order.id,
            source_ip=source_ip,
            to_status=order.status.value,
            gateway_payment_id=order.gateway_payment_id,
        )
        try:
            await self._publisher(order)
        except Exception:
            log.exception("settlement_event_failed", order_id=order.id)
        return ReconcileResult(Outcome.APPLIED, order.id)

    async def _duplicate(self, order, current, target, source_ip, log) -> ReconcileResult:
        if current is not target:
            await self._audit.record(
                AuditKind.SETTLED_AFTER_TERMINAL,
                payment_reference=order.payment_reference,
                order_id=order.id,
                source_ip=source_ip,
                current=current.value,
                reported=target.value,
            )
        log.info("itn_duplicate", order_id=order.id, status=current.value)
        return ReconcileResult(Outcome.DUPLICATE, order.id)
