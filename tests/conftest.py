"""Shared fixtures: in-memory store, signed payloads and a stubbed gateway."""

import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
import pytest

from pipeline.gateway_reconciler import GatewayReconciler
from pipeline.settlement_engine import create_engine
from schemas.settlement_models import (
    Order,
    OrderItem,
    PartyContact,
    PlatformConfig,
    PointsConfig,
    SettlementOutboxEntry,
    to_document,
)
from services.alerts import InMemoryAlertService
from services.notifications import InMemoryNotificationService
from storage.document_store import InMemoryDocumentStore

SECRET = "sk_test_secret"


def sign(raw_body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def charge_body(reference: str, metadata: Dict[str, Any], event: str = "charge.success") -> bytes:
    return json.dumps({
        "event": event,
        "data": {"reference": reference, "metadata": metadata, "status": "success"},
    }).encode("utf-8")


class FakeGateway:
    """Scripted verify endpoint keyed by reference."""

    def __init__(self):
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.calls = 0

    def add(
        self,
        reference: str,
        amount_kobo: int,
        metadata: Dict[str, Any],
        status: str = "success",
        channel: str = "card",
    ):
        self.transactions[reference] = {
            "id": 4099260516,
            "reference": reference,
            "status": status,
            "amount": amount_kobo,
            "channel": channel,
            "gateway_response": "Successful" if status == "success" else "Declined",
            "metadata": metadata,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        reference = request.url.path.rsplit("/", 1)[-1]
        txn = self.transactions.get(reference)
        if txn is None:
            return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})
        return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": txn})


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def reconciler(gateway):
    client = httpx.AsyncClient(transport=httpx.MockTransport(gateway.handler))
    return GatewayReconciler(
        secret_key=SECRET,
        base_url="https://gateway.test",
        timeout=1.0,
        max_retries=1,
        client=client,
    )


@pytest.fixture
def notifications():
    return InMemoryNotificationService()


@pytest.fixture
def alerts():
    return InMemoryAlertService()


@pytest.fixture
def engine(store, reconciler, notifications, alerts):
    return create_engine(
        store,
        secret_key=SECRET,
        reconciler=reconciler,
        notifications=notifications,
        alerts=alerts,
    )


def make_order(
    order_id: str = "order-1",
    total: str = "10000",
    subtotal: Optional[str] = None,
    platform_fee: str = "0",
    buyer_id: Optional[str] = "buyer-1",
    seller_id: str = "seller-1",
    direct: bool = False,
    with_items: bool = True,
) -> Order:
    items = []
    if with_items:
        items = [OrderItem(
            product_id="prod-1",
            product_name="Steel Rods",
            quantity=1,
            unit_price=Decimal(subtotal or total),
            line_total=Decimal(subtotal or total),
        )]
    return Order(
        order_id=order_id,
        seller_id=seller_id,
        buyer_id=buyer_id,
        total_amount=Decimal(total),
        subtotal=Decimal(subtotal or total),
        platform_fee=Decimal(platform_fee),
        items=items,
        is_direct_fulfillment=direct,
    )


@pytest.fixture
def seed(store):
    """Async seeding helper: await seed(order=..., users=..., manufacturers=...)."""

    async def _seed(order: Optional[Order] = None, users=None, manufacturers=None, settings=None):
        if order is not None:
            await store.set("orders", order.order_id, to_document(order))
        for user_id, doc in (users or {}).items():
            await store.set("users", user_id, {"user_id": user_id, **doc})
        for seller_id, doc in (manufacturers or {}).items():
            await store.set("manufacturers", seller_id, doc)
        if settings is not None:
            await store.set("platformSettings", "config", settings)

    return _seed


def make_outbox_entry(
    total: str = "10000",
    subtotal: str = "9000",
    platform_fee: str = "120",
    fully_paid: bool = True,
    direct: bool = False,
    verified: bool = False,
    multiplier: Optional[Decimal] = None,
    referral_code: Optional[str] = None,
    buyer_email: Optional[str] = "ama@buyer.test",
    seller_email: Optional[str] = "sales@kente.test",
    reference: str = "ref-1",
) -> SettlementOutboxEntry:
    return SettlementOutboxEntry(
        outbox_id=reference,
        reference=reference,
        order_id="order-1",
        payment_id="pay-1",
        paid_amount=Decimal(total),
        payment_method="Paystack - card",
        is_order_fully_paid=fully_paid,
        order_total=Decimal(total),
        order_subtotal=Decimal(subtotal),
        platform_fee=Decimal(platform_fee),
        is_direct_fulfillment=direct,
        items=[OrderItem(product_id="p1", quantity=1, unit_price=Decimal(subtotal), line_total=Decimal(subtotal))],
        buyer=PartyContact(user_id="buyer-1", name="Ama Mensah", email=buyer_email),
        seller=PartyContact(user_id="seller-1", name="Kente Works", email=seller_email, is_verified=verified),
        referral_code=referral_code,
        config=PlatformConfig(points=PointsConfig(global_seller_point_multiplier=multiplier)),
    )
