"""Tests for idempotent points and commission grants."""

from decimal import Decimal

import pytest

from services.commission_ledger import CommissionLedger
from services.points_ledger import PURCHASE_COMPLETE, DocumentPointsLedger, grant_id


class TestDocumentPointsLedger:
    @pytest.mark.asyncio
    async def test_award_writes_one_event(self, store):
        ledger = DocumentPointsLedger(store)

        applied = await ledger.award("buyer-1", 1000, PURCHASE_COMPLETE, {"orderId": "order-1"}, grant_key="ref-1:buyer_points")

        assert applied is True
        (event,) = store.dump("pointsLedgerEvents").values()
        assert event["points"] == 1000
        assert event["action"] == "award"
        assert event["issued_by"] == "system"
        assert len(event["event_hash"]) == 64
        assert event["event_id"] == grant_id("buyer-1", PURCHASE_COMPLETE, "ref-1:buyer_points")

    @pytest.mark.asyncio
    async def test_same_grant_is_recorded_once(self, store):
        ledger = DocumentPointsLedger(store)

        first = await ledger.award("buyer-1", 1000, PURCHASE_COMPLETE, grant_key="ref-1:buyer_points")
        second = await ledger.award("buyer-1", 1000, PURCHASE_COMPLETE, grant_key="ref-1:buyer_points")

        assert (first, second) == (True, False)
        assert len(store.dump("pointsLedgerEvents")) == 1

    @pytest.mark.asyncio
    async def test_distinct_grants_accumulate(self, store):
        ledger = DocumentPointsLedger(store)

        await ledger.award("buyer-1", 1000, PURCHASE_COMPLETE, grant_key="ref-1:buyer_points")
        await ledger.award("buyer-1", 250, PURCHASE_COMPLETE, grant_key="ref-2:buyer_points")

        assert sorted(e["points"] for e in store.dump("pointsLedgerEvents").values()) == [250, 1000]

    @pytest.mark.asyncio
    async def test_grant_key_defaults_to_metadata(self, store):
        ledger = DocumentPointsLedger(store)

        assert await ledger.award("buyer-1", 10, PURCHASE_COMPLETE, {"orderId": "o1"})
        assert not await ledger.award("buyer-1", 10, PURCHASE_COMPLETE, {"orderId": "o1"})


class TestCommissionLedger:
    @pytest.mark.asyncio
    async def test_seller_earnings_accumulate_across_orders(self, store):
        ledger = CommissionLedger(store)

        await ledger.accrue_seller_earnings("seller-1", Decimal("8880"), grant_key="ref-1:seller_earnings")
        await ledger.accrue_seller_earnings("seller-1", Decimal("120.50"), grant_key="ref-2:seller_earnings")

        doc = await store.get("sellerEarnings", "seller-1")
        assert Decimal(doc["totalEarnings"]) == Decimal("9000.50")
        assert Decimal(doc["unpaidEarnings"]) == Decimal("9000.50")

    @pytest.mark.asyncio
    async def test_seller_earnings_grant_applies_once(self, store):
        ledger = CommissionLedger(store)

        assert await ledger.accrue_seller_earnings("seller-1", Decimal("100"), grant_key="ref-1:seller_earnings")
        assert not await ledger.accrue_seller_earnings("seller-1", Decimal("100"), grant_key="ref-1:seller_earnings")

        doc = await store.get("sellerEarnings", "seller-1")
        assert Decimal(doc["totalEarnings"]) == Decimal("100")

    @pytest.mark.asyncio
    async def test_referral_commission_recorded_once(self, store):
        ledger = CommissionLedger(store)
        kwargs = dict(
            partner_id="partner-1",
            order_id="order-1",
            sale_amount=Decimal("2000"),
            commission_rate=Decimal("7.5"),
            campaign_id="spring",
            grant_key="ref-1:referral_commission",
        )

        sale = await ledger.record_referral_commission(**kwargs)
        again = await ledger.record_referral_commission(**kwargs)

        assert sale.commission_earned == Decimal("150")
        assert again is None
        assert len(store.dump("attributedSales")) == 1
        assert Decimal((await store.get("partnerEarnings", "partner-1"))["unpaidEarnings"]) == Decimal("150")
