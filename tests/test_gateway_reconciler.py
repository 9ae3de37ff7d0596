"""Tests for the gateway verify call, using httpx.MockTransport."""

from decimal import Decimal

import httpx
import pytest

from pipeline.errors import GatewayNotConfigured, VerificationFailed
from pipeline.gateway_reconciler import GatewayReconciler


def reconciler_for(handler, max_retries=1, secret="sk_test_secret"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayReconciler(
        secret_key=secret,
        base_url="https://gateway.test",
        timeout=1.0,
        max_retries=max_retries,
        client=client,
    )


def ok(data):
    return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": data})


TXN = {
    "id": 302961,
    "reference": "ref-1",
    "status": "success",
    "amount": 1000050,
    "channel": "card",
    "gateway_response": "Approved",
    "metadata": {"orderId": "order-1"},
}


class TestVerifyTransaction:
    @pytest.mark.asyncio
    async def test_returns_trusted_transaction(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("authorization")
            return ok(TXN)

        txn = await reconciler_for(handler).verify_transaction("ref-1")

        assert seen["url"] == "https://gateway.test/transaction/verify/ref-1"
        assert seen["auth"] == "Bearer sk_test_secret"
        assert txn.is_successful
        assert txn.paid_amount == Decimal("10000.50")
        assert txn.payment_method == "Paystack - card"
        assert txn.metadata == {"orderId": "order-1"}

    @pytest.mark.asyncio
    async def test_metadata_json_string_is_decoded(self):
        txn = await reconciler_for(lambda r: ok({**TXN, "metadata": '{"planId": "pro"}'})).verify_transaction("ref-1")
        assert txn.metadata == {"planId": "pro"}

    @pytest.mark.asyncio
    async def test_status_false_is_verification_failure(self):
        def handler(request):
            return httpx.Response(200, json={"status": False, "message": "Invalid key"})

        with pytest.raises(VerificationFailed) as exc:
            await reconciler_for(handler).verify_transaction("ref-1")
        assert exc.value.status_code == 400
        assert exc.value.details["gateway_message"] == "Invalid key"

    @pytest.mark.asyncio
    async def test_non_2xx_is_verification_failure(self):
        def handler(request):
            return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})

        with pytest.raises(VerificationFailed):
            await reconciler_for(handler).verify_transaction("missing")

    @pytest.mark.asyncio
    async def test_unreadable_body_is_verification_failure(self):
        with pytest.raises(VerificationFailed):
            await reconciler_for(lambda r: httpx.Response(502, text="<html>bad gateway</html>")).verify_transaction("ref-1")

    @pytest.mark.asyncio
    async def test_retries_once_after_timeout(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return ok(TXN)

        txn = await reconciler_for(handler).verify_transaction("ref-1")
        assert txn.reference == "ref-1"
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_single_retry(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(VerificationFailed):
            await reconciler_for(handler).verify_transaction("ref-1")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_missing_secret(self):
        with pytest.raises(GatewayNotConfigured):
            await reconciler_for(lambda r: ok(TXN), secret="").verify_transaction("ref-1")
