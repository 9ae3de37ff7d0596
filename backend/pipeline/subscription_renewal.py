"""
Subscription renewal: a verified plan payment extends the seller's
marketing plan. Applied once per gateway reference.
"""

import calendar
from datetime import datetime
from typing import Optional

import structlog

from pipeline.errors import InvalidPayload, PaymentNotSuccessful
from schemas.settlement_models import GatewayTransaction, SubscriptionRenewalMetadata
from storage.document_store import IDocumentStore, ITransaction

logger = structlog.get_logger().bind(component="subscription_renewal")

MANUFACTURERS = "manufacturers"
LEDGER_GRANTS = "ledgerGrants"


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month addition, clamped to the last day of the target month."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def success_path(plan_id: str) -> str:
    return f"/subscribe/success?planId={plan_id}"


class SubscriptionRenewal:
    def __init__(self, store: IDocumentStore, max_attempts: int = 5):
        self._store = store
        self._max_attempts = max_attempts

    async def renew(
        self,
        reference: str,
        metadata: SubscriptionRenewalMetadata,
        txn: GatewayTransaction,
        now: Optional[datetime] = None,
    ) -> datetime:
        """Set the seller's plan and expiry; returns the expiry in effect."""
        if not txn.is_successful:
            raise PaymentNotSuccessful(
                "Payment for subscription has not completed.",
                gateway_response=txn.gateway_response,
            )
        if not metadata.user_id:
            raise InvalidPayload("User ID missing from payment metadata.")

        user_id = metadata.user_id
        expires_at = add_months(now or datetime.utcnow(), metadata.duration_in_months)
        marker_id = f"subscription_{reference}"

        async def _renew(tx: ITransaction) -> datetime:
            marker = await tx.get(LEDGER_GRANTS, marker_id)
            if marker is not None:
                return datetime.fromisoformat(marker["plan_expires_at"])
            tx.update(MANUFACTURERS, user_id, {
                "marketingPlanId": metadata.plan_id,
                "planExpiresAt": expires_at.isoformat(),
            })
            tx.create(LEDGER_GRANTS, marker_id, {
                "grant_key": reference,
                "kind": "subscription_renewal",
                "target_id": user_id,
                "plan_id": metadata.plan_id,
                "plan_expires_at": expires_at.isoformat(),
            })
            return expires_at

        effective = await self._store.run_transaction(_renew, self._max_attempts)
        logger.info(
            "subscription_renewed",
            correlation_id=reference,
            user_id=user_id,
            plan_id=metadata.plan_id,
            plan_expires_at=effective.isoformat(),
        )
        return effective
