# services/notifications.py
# ============================================================================
# PAYMENT SETTLEMENT ENGINE — NOTIFICATION DISPATCH
# ============================================================================
# Buyer receipts and seller sale notices. Composition and delivery belong to
# the mail service; this module only hands it a typed message.
#
# FAILURE HANDLING:
# - Raises on delivery failure; the orchestrator decides what that means
# - Never retried past the first attempt (see pipeline/side_effects.py)
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import List, Optional, Union

import httpx
import structlog
from pydantic import BaseModel, Field

from schemas.settlement_models import OrderItem

logger = structlog.get_logger().bind(component="notifications")


# ============================================================================
# SECTION 1: MESSAGES
# ============================================================================

class PaymentReceipt(BaseModel):
    to: str
    buyer_name: str
    order_id: str
    items: List[OrderItem] = Field(default_factory=list)
    total_amount: Decimal
    amount_paid: Decimal
    payment_method: str


class SellerPaymentNotice(BaseModel):
    to: str
    seller_name: str
    order_id: str
    buyer_name: str
    amount_paid: Decimal
    total_amount: Decimal


# ============================================================================
# SECTION 2: SERVICES
# ============================================================================

class INotificationService(ABC):
    @abstractmethod
    async def send_receipt(self, receipt: PaymentReceipt) -> None:
        pass

    @abstractmethod
    async def send_seller_notification(self, notice: SellerPaymentNotice) -> None:
        pass


class HttpNotificationService(INotificationService):
    """Posts messages to the mail service's HTTP API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"} if api_key else {},
        )

    async def close(self):
        await self._client.aclose()

    async def _post(self, path: str, message: BaseModel) -> None:
        response = await self._client.post(
            f"{self._base_url}{path}",
            json=message.model_dump(mode="json"),
        )
        response.raise_for_status()

    async def send_receipt(self, receipt: PaymentReceipt) -> None:
        await self._post("/emails/payment-receipt", receipt)
        logger.info("receipt_sent", order_id=receipt.order_id)

    async def send_seller_notification(self, notice: SellerPaymentNotice) -> None:
        await self._post("/emails/seller-payment-notification", notice)
        logger.info("seller_notification_sent", order_id=notice.order_id)


class InMemoryNotificationService(INotificationService):
    """Records messages instead of sending them (local dev, tests)."""

    def __init__(self):
        self.sent: List[Union[PaymentReceipt, SellerPaymentNotice]] = []
        self._lock = asyncio.Lock()

    async def send_receipt(self, receipt: PaymentReceipt) -> None:
        async with self._lock:
            self.sent.append(receipt)

    async def send_seller_notification(self, notice: SellerPaymentNotice) -> None:
        async with self._lock:
            self.sent.append(notice)
