# services/__init__.py
# ============================================================================
# PAYMENT SETTLEMENT ENGINE — SERVICES MODULE
# ============================================================================
# Collaborators the side effects call: ledgers, notifications, alerts,
# partner attribution and the platform config snapshot
# ============================================================================

from services.alerts import (
    SettlementAlert,
    IAlertService,
    InMemoryAlertService,
)

from services.notifications import (
    PaymentReceipt,
    SellerPaymentNotice,
    INotificationService,
    HttpNotificationService,
    InMemoryNotificationService,
)

from services.points_ledger import (
    IPointsLedger,
    DocumentPointsLedger,
)

from services.commission_ledger import CommissionLedger

from services.partner_campaigns import (
    CommissionDetails,
    ICampaignLookup,
    DefaultCampaignLookup,
    PartnerDirectory,
)

from services.platform_config import PlatformConfigProvider

__all__ = [
    # Alerts
    "SettlementAlert",
    "IAlertService",
    "InMemoryAlertService",
    # Notifications
    "PaymentReceipt",
    "SellerPaymentNotice",
    "INotificationService",
    "HttpNotificationService",
    "InMemoryNotificationService",
    # Ledgers
    "IPointsLedger",
    "DocumentPointsLedger",
    "CommissionLedger",
    # Partner attribution
    "CommissionDetails",
    "ICampaignLookup",
    "DefaultCampaignLookup",
    "PartnerDirectory",
    # Platform config
    "PlatformConfigProvider",
]
