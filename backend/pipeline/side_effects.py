"""
Side-Effect Orchestrator
========================
Fans a committed settlement out to its downstream effects:

- buyer_receipt / seller_notification (best-effort, one attempt)
- buyer_points              (fully paid only)
- seller_earnings / seller_points (fully paid, marketplace-fulfilled only)
- referral_commission       (referral code resolves to a partner, order has items)

Each effect runs in its own failure domain: an exception is caught, logged,
alerted and recorded on the report, and the next effect still runs. Nothing
here can undo the settlement.

Financial effects are idempotent per grant (see services/points_ledger.py and
services/commission_ledger.py), so the outbox worker may re-run an entry.
"""

from decimal import Decimal, ROUND_FLOOR
from typing import Awaitable, Callable, Dict, List, Literal, Optional

import structlog
from pydantic import BaseModel, Field

from pipeline.errors import SideEffectFailure
from schemas.settlement_models import (
    SettlementOutboxEntry,
    SideEffectName,
    calculate_points,
)
from services.alerts import IAlertService, SettlementAlert
from services.commission_ledger import CommissionLedger
from services.notifications import (
    INotificationService,
    PaymentReceipt,
    SellerPaymentNotice,
)
from services.partner_campaigns import ICampaignLookup, PartnerDirectory
from services.points_ledger import PURCHASE_COMPLETE, SALE_COMPLETE, IPointsLedger

logger = structlog.get_logger().bind(component="side_effects")

BEST_EFFORT_EFFECTS = frozenset({
    SideEffectName.BUYER_RECEIPT,
    SideEffectName.SELLER_NOTIFICATION,
})

RETRIABLE_EFFECTS = frozenset({
    SideEffectName.BUYER_POINTS,
    SideEffectName.SELLER_EARNINGS,
    SideEffectName.SELLER_POINTS,
    SideEffectName.REFERRAL_COMMISSION,
})

OutcomeStatus = Literal["completed", "skipped", "failed", "abandoned"]


class SideEffectOutcome(BaseModel):
    effect: SideEffectName
    status: OutcomeStatus
    error: Optional[str] = None


class SideEffectReport(BaseModel):
    outbox_id: str
    outcomes: List[SideEffectOutcome] = Field(default_factory=list)

    def _with(self, *statuses: str) -> List[SideEffectName]:
        return [o.effect for o in self.outcomes if o.status in statuses]

    @property
    def settled(self) -> List[SideEffectName]:
        return self._with("completed", "skipped")

    @property
    def failed(self) -> List[SideEffectName]:
        return self._with("failed")

    @property
    def abandoned(self) -> List[SideEffectName]:
        return self._with("abandoned")


# =============================================================================
# AMOUNTS
# =============================================================================

def buyer_points_for(entry: SettlementOutboxEntry) -> int:
    return calculate_points(entry.order_total, entry.config.points.buyer_purchase_points_per_10)


def seller_points_for(entry: SettlementOutboxEntry) -> int:
    points = calculate_points(entry.order_total, entry.config.points.seller_sale_points_per_10)
    multiplier = entry.config.points.global_seller_point_multiplier
    if entry.seller.is_verified and multiplier and multiplier > 1:
        points = int((Decimal(points) * multiplier).to_integral_value(rounding=ROUND_FLOOR))
    return points


def seller_share_for(entry: SettlementOutboxEntry) -> Decimal:
    return entry.order_subtotal - entry.platform_fee


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class SideEffectOrchestrator:
    """
    Example:
        orchestrator = SideEffectOrchestrator(notifications, points, commissions,
                                              partners, campaigns, alerts)
        report = await orchestrator.run(entry)
        report.failed   # financial effects to retry later
    """

    def __init__(
        self,
        notifications: INotificationService,
        points_ledger: IPointsLedger,
        commission_ledger: CommissionLedger,
        partners: PartnerDirectory,
        campaigns: ICampaignLookup,
        alerts: IAlertService,
    ):
        self.notifications = notifications
        self.points = points_ledger
        self.commissions = commission_ledger
        self.partners = partners
        self.campaigns = campaigns
        self.alerts = alerts

        self._handlers: Dict[SideEffectName, Callable[[SettlementOutboxEntry], Awaitable[bool]]] = {
            SideEffectName.BUYER_RECEIPT: self._send_buyer_receipt,
            SideEffectName.SELLER_NOTIFICATION: self._send_seller_notification,
            SideEffectName.BUYER_POINTS: self._award_buyer_points,
            SideEffectName.SELLER_EARNINGS: self._accrue_seller_earnings,
            SideEffectName.SELLER_POINTS: self._award_seller_points,
            SideEffectName.REFERRAL_COMMISSION: self._record_referral_commission,
        }

    def plan(self, entry: SettlementOutboxEntry) -> List[SideEffectName]:
        """Effects that apply to this settlement, in execution order."""
        effects: List[SideEffectName] = []
        if entry.buyer.email:
            effects.append(SideEffectName.BUYER_RECEIPT)
        if entry.seller.email:
            effects.append(SideEffectName.SELLER_NOTIFICATION)

        if entry.is_order_fully_paid:
            if buyer_points_for(entry) > 0:
                effects.append(SideEffectName.BUYER_POINTS)
            if not entry.is_direct_fulfillment:
                if seller_share_for(entry) > 0:
                    effects.append(SideEffectName.SELLER_EARNINGS)
                if seller_points_for(entry) > 0:
                    effects.append(SideEffectName.SELLER_POINTS)

        if entry.referral_code and entry.items:
            effects.append(SideEffectName.REFERRAL_COMMISSION)
        return effects

    async def run(self, entry: SettlementOutboxEntry) -> SideEffectReport:
        """Attempt every planned effect not already settled. Never raises."""
        log = logger.bind(correlation_id=entry.reference, order_id=entry.order_id)
        report = SideEffectReport(outbox_id=entry.outbox_id)
        done = entry.settled_effects

        for effect in self.plan(entry):
            if effect in done:
                continue
            try:
                applied = await self._handlers[effect](entry)
                report.outcomes.append(
                    SideEffectOutcome(effect=effect, status="completed" if applied else "skipped")
                )
                log.info("side_effect_completed", effect=effect.value, applied=applied)
            except Exception as e:
                failure = SideEffectFailure(effect.value, e)
                status: OutcomeStatus = "abandoned" if effect in BEST_EFFORT_EFFECTS else "failed"
                report.outcomes.append(SideEffectOutcome(effect=effect, status=status, error=str(e)))
                log.error(
                    "side_effect_failed",
                    effect=effect.value,
                    outcome=status,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._alert(entry, failure, "ERROR" if status == "abandoned" else "WARN")

        return report

    async def _alert(self, entry: SettlementOutboxEntry, failure: SideEffectFailure, severity: str):
        try:
            await self.alerts.raise_alert(SettlementAlert(
                correlation_id=entry.reference,
                source=f"side_effect.{failure.effect}",
                severity=severity,
                message=failure.message,
                details={"order_id": entry.order_id, "outbox_id": entry.outbox_id},
            ))
        except Exception as e:
            logger.error("alert_dispatch_failed", error=str(e), effect=failure.effect)

    # -------------------------------------------------------------------------
    # Effects
    # -------------------------------------------------------------------------

    def _grant_key(self, entry: SettlementOutboxEntry, effect: SideEffectName) -> str:
        return f"{entry.reference}:{effect.value}"

    async def _send_buyer_receipt(self, entry: SettlementOutboxEntry) -> bool:
        await self.notifications.send_receipt(PaymentReceipt(
            to=entry.buyer.email,
            buyer_name=entry.buyer.name,
            order_id=entry.order_id,
            items=entry.items,
            total_amount=entry.order_total,
            amount_paid=entry.paid_amount,
            payment_method=entry.payment_method,
        ))
        return True

    async def _send_seller_notification(self, entry: SettlementOutboxEntry) -> bool:
        await self.notifications.send_seller_notification(SellerPaymentNotice(
            to=entry.seller.email,
            seller_name=entry.seller.name,
            order_id=entry.order_id,
            buyer_name=entry.buyer.name,
            amount_paid=entry.paid_amount,
            total_amount=entry.order_total,
        ))
        return True

    async def _award_buyer_points(self, entry: SettlementOutboxEntry) -> bool:
        return await self.points.award(
            entry.buyer.user_id,
            buyer_points_for(entry),
            PURCHASE_COMPLETE,
            {"orderId": entry.order_id},
            grant_key=self._grant_key(entry, SideEffectName.BUYER_POINTS),
        )

    async def _accrue_seller_earnings(self, entry: SettlementOutboxEntry) -> bool:
        return await self.commissions.accrue_seller_earnings(
            entry.seller.user_id,
            seller_share_for(entry),
            grant_key=self._grant_key(entry, SideEffectName.SELLER_EARNINGS),
        )

    async def _award_seller_points(self, entry: SettlementOutboxEntry) -> bool:
        return await self.points.award(
            entry.seller.user_id,
            seller_points_for(entry),
            SALE_COMPLETE,
            {"orderId": entry.order_id, "buyerId": entry.buyer.user_id},
            grant_key=self._grant_key(entry, SideEffectName.SELLER_POINTS),
        )

    async def _record_referral_commission(self, entry: SettlementOutboxEntry) -> bool:
        partner_id = await self.partners.resolve(entry.referral_code)
        if partner_id is None:
            return False
        terms = await self.campaigns.commission_for(partner_id, entry.seller.user_id)
        sale = await self.commissions.record_referral_commission(
            partner_id=partner_id,
            order_id=entry.order_id,
            sale_amount=entry.order_subtotal,
            commission_rate=terms.commission_rate,
            campaign_id=terms.campaign_id,
            grant_key=self._grant_key(entry, SideEffectName.REFERRAL_COMMISSION),
        )
        return sale is not None
