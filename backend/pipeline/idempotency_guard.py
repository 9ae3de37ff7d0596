"""
Idempotency Guard: cheap pre-check for an already-recorded reference.

Only an optimisation. The settlement transaction re-checks the reference
inside its atomic unit, which is what actually guarantees at-most-once.
"""

from typing import Optional

import structlog

from schemas.settlement_models import Payment
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="idempotency_guard")

PAYMENTS = "payments"


class IdempotencyGuard:
    def __init__(self, store: IDocumentStore):
        self._store = store

    async def check(self, reference: str) -> Optional[Payment]:
        """Return the Payment already recorded for `reference`, if any."""
        existing = await self._store.find_one(PAYMENTS, "reference", reference)
        if existing is None:
            return None
        payment = Payment.model_validate(existing)
        logger.info(
            "reference_already_processed",
            correlation_id=reference,
            payment_id=payment.payment_id,
            payment_status=payment.status.value,
        )
        return payment
