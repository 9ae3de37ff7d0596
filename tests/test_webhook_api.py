"""HTTP tests for the webhook and admin endpoints (FastAPI TestClient)."""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from conftest import SECRET, charge_body, make_order, make_outbox_entry, sign
from pipeline.settlement_engine import create_engine
from schemas.settlement_models import to_document
from services.alerts import SettlementAlert

ORDER_META = {"orderId": "order-1"}
WEBHOOK = "/api/paystack/webhook"


@pytest.fixture
def client(engine):
    return TestClient(create_app(engine=engine, start_worker=False))


@pytest.fixture
def seeded(seed):
    asyncio.run(seed(
        order=make_order(total="10000", subtotal="9000", platform_fee="120"),
        users={"buyer-1": {"fullName": "Ama Mensah", "email": "ama@buyer.test"}},
        manufacturers={"seller-1": {"shopName": "Kente Works", "email": "owner@kente.test"}},
    ))


def post_signed(client, body: bytes, path: str = WEBHOOK, header: str = "X-Signature", signature=None):
    return client.post(
        path,
        content=body,
        headers={header: signature or sign(body), "Content-Type": "application/json"},
    )


class TestWebhookEndpoint:
    def test_rejects_bad_signature(self, client, gateway):
        body = charge_body("ref-1", ORDER_META)

        response = post_signed(client, body, signature="deadbeef")

        assert response.status_code == 401
        assert response.json()["success"] is False
        assert gateway.calls == 0

    def test_rejects_missing_signature(self, client):
        response = client.post(WEBHOOK, content=charge_body("ref-1", ORDER_META))
        assert response.status_code == 401

    def test_settles_and_runs_side_effects_after_response(self, client, store, gateway, notifications, seeded):
        gateway.add("ref-1", 1000000, ORDER_META)

        response = post_signed(client, charge_body("ref-1", ORDER_META))

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Webhook processed and order updated."}
        assert "X-Response-Time-Ms" in response.headers
        assert store.dump("settlementOutbox")["ref-1"]["status"] == "completed"
        assert len(notifications.sent) == 2
        assert Decimal(store.dump("sellerEarnings")["seller-1"]["totalEarnings"]) == Decimal("8880")

    def test_alias_path_and_gateway_header(self, client, store, gateway, seeded):
        gateway.add("ref-1", 1000000, ORDER_META)

        response = post_signed(
            client,
            charge_body("ref-1", ORDER_META),
            path="/api/payments/webhook",
            header="X-Paystack-Signature",
        )

        assert response.status_code == 200
        assert len(store.dump("payments")) == 1

    def test_duplicate_delivery(self, client, store, gateway, seeded):
        gateway.add("ref-1", 1000000, ORDER_META)
        body = charge_body("ref-1", ORDER_META)

        post_signed(client, body)
        response = post_signed(client, body)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Payment previously verified."}
        assert len(store.dump("payments")) == 1

    def test_referral_cookie(self, client, store, gateway, seed, seeded):
        asyncio.run(seed(users={"partner-1": {"tradintaId": "TRD123"}}))
        gateway.add("ref-1", 1000000, ORDER_META)
        client.cookies.set("referralCode", "TRD123")

        assert post_signed(client, charge_body("ref-1", ORDER_META)).status_code == 200

        (sale,) = store.dump("attributedSales").values()
        assert sale["partnerId"] == "partner-1"

    def test_amount_mismatch_is_400(self, client, store, gateway, seeded):
        gateway.add("ref-1", 999900, ORDER_META)

        response = post_signed(client, charge_body("ref-1", ORDER_META))

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Payment amount mismatch. Paid: 9999, Required: 10000"
        assert body["details"] == {"paid": "9999", "required": "10000"}
        assert store.dump("payments") == {}

    def test_missing_order_is_500(self, client, gateway):
        gateway.add("ref-1", 1000000, {"orderId": "ghost"})

        response = post_signed(client, charge_body("ref-1", {"orderId": "ghost"}))

        assert response.status_code == 500
        assert response.json()["message"] == "Order with ID ghost not found."

    def test_failed_charge_is_400(self, client, gateway, seeded):
        gateway.add("ref-1", 1000000, ORDER_META, status="failed")

        response = post_signed(client, charge_body("ref-1", ORDER_META))

        assert response.status_code == 400
        assert response.json()["message"] == "Payment was not successful."

    def test_failed_charge_redelivery_is_acknowledged(self, client, store, gateway, seeded):
        gateway.add("ref-1", 1000000, ORDER_META, status="failed")
        body = charge_body("ref-1", ORDER_META)

        assert post_signed(client, body).status_code == 400
        response = post_signed(client, body)

        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Payment previously verified."}
        assert len(store.dump("payments")) == 1

    def test_subscription_returns_redirect_url(self, client, gateway, seed):
        asyncio.run(seed(manufacturers={"seller-1": {}}))
        meta = {"planId": "growth", "durationInMonths": 1, "userId": "seller-1"}
        gateway.add("sub-1", 1500000, meta)

        response = post_signed(client, charge_body("sub-1", meta))

        assert response.status_code == 200
        assert response.json()["redirect_url"] == "/subscribe/success?planId=growth"

    def test_non_success_event(self, client, gateway):
        response = post_signed(client, charge_body("ref-1", ORDER_META, event="refund.processed"))

        assert response.status_code == 200
        assert response.json()["message"] == "Webhook received but not a success event."
        assert gateway.calls == 0

    def test_missing_secret_is_500(self, store, reconciler):
        engine = create_engine(store, secret_key="", reconciler=reconciler)
        client = TestClient(create_app(engine=engine, start_worker=False))

        response = client.post(WEBHOOK, content=b"{}", headers={"X-Signature": "abc"})

        assert response.status_code == 500
        assert response.json()["message"] == "Payment gateway not configured."

    def test_unexpected_error_is_generic_500(self):
        engine = MagicMock()
        engine.handle_webhook = AsyncMock(side_effect=RuntimeError("connection reset"))
        client = TestClient(create_app(engine=engine, start_worker=False))

        response = client.post(WEBHOOK, content=b"{}", headers={"X-Signature": "abc"})

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "message": "Internal server error.",
            "error": "Internal server error.",
        }


class TestHealthAndAdmin:
    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["gateway_configured"] is True
        assert body["outbox_worker_running"] is False
        assert body["store_backend"] == "memory"

    def test_outbox_stats(self, client, gateway, seeded):
        gateway.add("ref-1", 1000000, ORDER_META)
        post_signed(client, charge_body("ref-1", ORDER_META))

        stats = client.get("/api/admin/outbox").json()

        assert stats["completed"] == 1
        assert stats["pending"] == 0

    def test_manual_drain(self, client, store):
        entry = make_outbox_entry(reference="ref-9")
        asyncio.run(store.create("settlementOutbox", entry.outbox_id, to_document(entry)))

        response = client.post("/api/admin/outbox/drain")

        assert response.status_code == 200
        assert response.json() == {"claimed": 1, "completed": 1, "retrying": 0}

    def test_alerts(self, client, alerts):
        asyncio.run(alerts.raise_alert(SettlementAlert(
            correlation_id="ref-1",
            source="side_effect.seller_points",
            severity="WARN",
            message="seller_points failed: timeout",
        )))

        (alert,) = client.get("/api/admin/alerts").json()

        assert alert["correlation_id"] == "ref-1"
        assert alert["severity"] == "WARN"

    def test_audit_trail(self, client, gateway, seeded):
        gateway.add("ref-1", 1000000, ORDER_META)
        post_signed(client, charge_body("ref-1", ORDER_META))

        trail = client.get("/api/admin/audit/ref-1").json()

        assert [e["event_type"] for e in trail[:3]] == ["webhook.received", "payment.verified", "settlement.committed"]
        assert {e["event_type"] for e in trail[3:]} == {"side_effect.completed"}
        assert {e["new_state"]["effect"] for e in trail[3:]} == {
            "buyer_receipt",
            "seller_notification",
            "buyer_points",
            "seller_earnings",
            "seller_points",
        }
