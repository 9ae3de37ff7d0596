# services/partner_campaigns.py
# ============================================================================
# PAYMENT SETTLEMENT ENGINE — GROWTH PARTNER ATTRIBUTION
# ============================================================================
# Resolves a referral code to a partner and a partner/seller pair to the
# commission terms that apply. The real campaign lookup belongs to the
# growth-partner service; DefaultCampaignLookup applies the platform default.
# ============================================================================

from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional

import structlog
from pydantic import BaseModel

from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="partner_campaigns")

USERS = "users"
PARTNER_CODE_FIELD = "tradintaId"

DEFAULT_COMMISSION_RATE = Decimal("5")
DEFAULT_CAMPAIGN_ID = "default-campaign"


class CommissionDetails(BaseModel):
    commission_rate: Decimal  # percent
    campaign_id: Optional[str] = None


class ICampaignLookup(ABC):
    @abstractmethod
    async def commission_for(self, partner_id: str, seller_id: str) -> CommissionDetails:
        pass


class DefaultCampaignLookup(ICampaignLookup):
    """Flat platform rate until partner campaigns are wired in."""

    def __init__(
        self,
        rate: Decimal = DEFAULT_COMMISSION_RATE,
        campaign_id: Optional[str] = DEFAULT_CAMPAIGN_ID,
    ):
        self._details = CommissionDetails(commission_rate=rate, campaign_id=campaign_id)

    async def commission_for(self, partner_id: str, seller_id: str) -> CommissionDetails:
        return self._details


class PartnerDirectory:
    """Maps platform-assigned short codes to partner user ids."""

    def __init__(self, store: IDocumentStore):
        self._store = store

    async def resolve(self, referral_code: Optional[str]) -> Optional[str]:
        if not referral_code:
            return None
        doc = await self._store.find_one(USERS, PARTNER_CODE_FIELD, referral_code)
        if doc is None:
            logger.info("referral_code_unresolved", referral_code=referral_code)
            return None
        return doc.get("user_id") or doc.get("id")
