"""Tests for seller marketing-plan renewal."""

from datetime import datetime

import pytest

from pipeline.errors import InvalidPayload, PaymentNotSuccessful
from pipeline.subscription_renewal import SubscriptionRenewal, add_months, success_path
from schemas.settlement_models import GatewayTransaction, SubscriptionRenewalMetadata


def txn(status="success"):
    return GatewayTransaction(reference="sub-ref-1", status=status, amount=500000, channel="card")


def metadata(months=1, user_id="seller-1"):
    return SubscriptionRenewalMetadata(planId="growth", durationInMonths=months, userId=user_id)


class TestAddMonths:
    def test_simple(self):
        assert add_months(datetime(2024, 3, 15, 9, 30), 1) == datetime(2024, 4, 15, 9, 30)

    def test_clamps_to_month_end(self):
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
        assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)

    def test_rolls_over_year(self):
        assert add_months(datetime(2024, 12, 10), 1) == datetime(2025, 1, 10)
        assert add_months(datetime(2024, 11, 30), 15) == datetime(2026, 2, 28)


class TestSubscriptionRenewal:
    @pytest.mark.asyncio
    async def test_sets_plan_and_expiry(self, store):
        await store.set("manufacturers", "seller-1", {"shopName": "Kente Works"})

        expires = await SubscriptionRenewal(store).renew(
            "sub-ref-1", metadata(months=3), txn(), now=datetime(2024, 1, 15)
        )

        assert expires == datetime(2024, 4, 15)
        doc = await store.get("manufacturers", "seller-1")
        assert doc["marketingPlanId"] == "growth"
        assert doc["planExpiresAt"] == "2024-04-15T00:00:00"
        assert doc["shopName"] == "Kente Works"

    @pytest.mark.asyncio
    async def test_redelivery_keeps_first_expiry(self, store):
        await store.set("manufacturers", "seller-1", {})
        renewal = SubscriptionRenewal(store)

        first = await renewal.renew("sub-ref-1", metadata(), txn(), now=datetime(2024, 1, 15))
        second = await renewal.renew("sub-ref-1", metadata(), txn(), now=datetime(2024, 1, 20))

        assert first == second == datetime(2024, 2, 15)
        assert (await store.get("manufacturers", "seller-1"))["planExpiresAt"] == "2024-02-15T00:00:00"

    @pytest.mark.asyncio
    async def test_unsuccessful_payment(self, store):
        with pytest.raises(PaymentNotSuccessful) as exc:
            await SubscriptionRenewal(store).renew("sub-ref-1", metadata(), txn(status="failed"))
        assert exc.value.message == "Payment for subscription has not completed."

    @pytest.mark.asyncio
    async def test_missing_user(self, store):
        with pytest.raises(InvalidPayload) as exc:
            await SubscriptionRenewal(store).renew("sub-ref-1", metadata(user_id=None), txn())
        assert exc.value.message == "User ID missing from payment metadata."

    def test_success_path(self):
        assert success_path("growth") == "/subscribe/success?planId=growth"
