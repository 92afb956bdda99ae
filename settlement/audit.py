import enum
import json

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement.models import SettlementAuditEntry

logger = structlog.get_logger(__name__)


class AuditKind(str, enum.Enum):
    SIGNATURE_MISMATCH = "signature_mismatch"
    UNTRUSTED_SOURCE = "untrusted_source"
    GATEWAY_VALIDATION_FAILED = "gateway_validation_failed"
    UNKNOWN_REFERENCE = "unknown_reference"
    MERCHANT_MISMATCH = "merchant_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    UNKNOWN_OUTCOME = "unknown_outcome"
    UNEXPECTED_STATE = "unexpected_state"
    SETTLED_AFTER_TERMINAL = "settled_after_terminal"
    TRANSITION = "transition"

    @property
    def is_anomaly(self) -> bool:
        return self is not AuditKind.TRANSITION


class AuditTrail:
    """Append-only record of reconciliation anomalies and applied transitions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session = session_factory

    async def record(
        self,
        kind: AuditKind,
        payment_reference: str = None,
        order_id: str = None,
        source_ip: str = None,
        **detail,
    ) -> None:
        log = logger.bind(
            component="settlement_audit",
            payment_reference=payment_reference,
            order_id=order_id,
        )
        if kind is AuditKind.SIGNATURE_MISMATCH:
            log.warning("security_event", kind=kind.value, source_ip=source_ip, **detail)
        elif kind.is_anomaly:
            log.warning("settlement_anomaly", kind=kind.value, source_ip=source_ip, **detail)
        else:
            log.info("settlement_transition", **detail)

        async with self._session() as session:
            session.add(SettlementAuditEntry(
                kind=kind.value,
                payment_reference=payment_reference,
                order_id=order_id,
                source_ip=source_ip,
                detail=json.dumps(detail, default=str),
            ))
            await session.commit()

    async def entries(self, payment_reference: str = None, kind: AuditKind = None) -> list:
        query = select(SettlementAuditEntry).order_by(SettlementAuditEntry.id)
        if payment_reference is not None:
            query = query.where(SettlementAuditEntry.payment_reference == payment_reference)
        if kind is not None:
            query = query.where(SettlementAuditEntry.kind == kind.value)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
