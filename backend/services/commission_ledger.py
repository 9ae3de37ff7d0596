"""
Commission Ledger - seller earnings and partner referral commissions.

Every accrual runs in one transaction together with a `ledgerGrants` marker
keyed by the logical grant. A retried accrual finds its marker and does
nothing, so the outbox worker can re-run a half-finished entry without
double-crediting anyone.
"""

import hashlib
from decimal import Decimal
from typing import Optional

import structlog

from schemas.settlement_models import (
    AttributedSale,
    PartnerEarnings,
    SellerEarnings,
    to_document,
)
from storage.document_store import IDocumentStore, ITransaction

logger = structlog.get_logger().bind(component="commission_ledger")

SELLER_EARNINGS = "sellerEarnings"
PARTNER_EARNINGS = "partnerEarnings"
ATTRIBUTED_SALES = "attributedSales"
LEDGER_GRANTS = "ledgerGrants"


def _grant_doc_id(kind: str, grant_key: str) -> str:
    return f"{kind}_{hashlib.sha256(grant_key.encode('utf-8')).hexdigest()[:32]}"


class CommissionLedger:
    def __init__(self, store: IDocumentStore, max_attempts: int = 5):
        self._store = store
        self._max_attempts = max_attempts

    async def accrue_seller_earnings(self, seller_id: str, amount: Decimal, grant_key: str) -> bool:
        """Credit `amount` to the seller's total and unpaid earnings once per grant."""
        marker_id = _grant_doc_id("seller_earnings", grant_key)

        async def _accrue(tx: ITransaction) -> bool:
            if await tx.get(LEDGER_GRANTS, marker_id) is not None:
                return False
            tx.increment(
                SELLER_EARNINGS,
                seller_id,
                {"totalEarnings": amount, "unpaidEarnings": amount},
                defaults=to_document(SellerEarnings(seller_id=seller_id)),
            )
            tx.create(LEDGER_GRANTS, marker_id, {
                "grant_key": grant_key,
                "kind": "seller_earnings",
                "target_id": seller_id,
                "amount": str(amount),
            })
            return True

        applied = await self._store.run_transaction(_accrue, self._max_attempts)
        if applied:
            logger.info("seller_earnings_accrued", seller_id=seller_id, amount=str(amount))
        else:
            logger.info("seller_earnings_already_accrued", seller_id=seller_id, grant_key=grant_key)
        return applied

    async def record_referral_commission(
        self,
        partner_id: str,
        order_id: str,
        sale_amount: Decimal,
        commission_rate: Decimal,
        campaign_id: Optional[str],
        grant_key: str,
    ) -> Optional[AttributedSale]:
        """Create the attributed sale and accrue its commission once per grant."""
        marker_id = _grant_doc_id("referral_commission", grant_key)
        commission = sale_amount * commission_rate / Decimal(100)
        sale = AttributedSale(
            sale_id=_grant_doc_id("sale", grant_key),
            order_id=order_id,
            partner_id=partner_id,
            campaign_id=campaign_id,
            sale_amount=sale_amount,
            commission_rate=commission_rate,
            commission_earned=commission,
        )

        async def _record(tx: ITransaction) -> bool:
            if await tx.get(LEDGER_GRANTS, marker_id) is not None:
                return False
            tx.create(ATTRIBUTED_SALES, sale.sale_id, to_document(sale))
            tx.increment(
                PARTNER_EARNINGS,
                partner_id,
                {
                    "totalEarnings": commission,
                    "unpaidEarnings": commission,
                    "paidEarnings": Decimal("0"),
                },
                defaults=to_document(PartnerEarnings(partner_id=partner_id)),
            )
            tx.create(LEDGER_GRANTS, marker_id, {
                "grant_key": grant_key,
                "kind": "referral_commission",
                "target_id": partner_id,
                "amount": str(commission),
            })
            return True

        if not await self._store.run_transaction(_record, self._max_attempts):
            logger.info("referral_commission_already_recorded", partner_id=partner_id, order_id=order_id)
            return None

        logger.info(
            "referral_commission_recorded",
            partner_id=partner_id,
            order_id=order_id,
            campaign_id=campaign_id,
            commission=str(commission),
        )
        return sale
