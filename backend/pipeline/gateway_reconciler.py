# pipeline/gateway_reconciler.py
# ============================================================================
# GATEWAY RECONCILER
# ============================================================================
# Re-fetches the transaction from the gateway's verify endpoint. The inbound
# notification is only a hint; this record is the one money moves on.
#
# FAILURE HANDLING:
# - Bounded timeout per attempt, one retry on timeout / transport error
# - Non-2xx, undecodable body, or `status: false` -> VerificationFailed
# ============================================================================

import os
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError

from pipeline.errors import GatewayNotConfigured, VerificationFailed
from schemas.settlement_models import GatewayTransaction

logger = structlog.get_logger().bind(component="gateway_reconciler")


# ============================================================================
# SECTION 1: CONFIGURATION
# ============================================================================

class GatewayConfig:
    """Gateway credentials and verify-call limits from environment"""

    SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
    BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    VERIFY_TIMEOUT = float(os.getenv("PAYSTACK_VERIFY_TIMEOUT", "10"))
    VERIFY_RETRIES = int(os.getenv("PAYSTACK_VERIFY_RETRIES", "1"))


config = GatewayConfig()


# ============================================================================
# SECTION 2: RECONCILER
# ============================================================================

class GatewayReconciler:
    """
    Thin httpx client for `GET /transaction/verify/{reference}`.

    Example:
        reconciler = GatewayReconciler(secret_key="sk_live_...")
        txn = await reconciler.verify_transaction("ref_123")
        txn.paid_amount  # Decimal, major units
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._secret_key = secret_key if secret_key is not None else config.SECRET_KEY
        self._base_url = (base_url or config.BASE_URL).rstrip("/")
        self._timeout = timeout if timeout is not None else config.VERIFY_TIMEOUT
        self._max_retries = max_retries if max_retries is not None else config.VERIFY_RETRIES
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def verify_transaction(self, reference: str) -> GatewayTransaction:
        if not self._secret_key:
            raise GatewayNotConfigured()

        log = logger.bind(correlation_id=reference)
        url = f"{self._base_url}/transaction/verify/{quote(reference, safe='')}"
        headers = {"Authorization": f"Bearer {self._secret_key}"}

        response: Optional[httpx.Response] = None
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                response = await self._get_client().get(url, headers=headers, timeout=self._timeout)
                break
            except (httpx.TimeoutException, httpx.TransportError) as e:
                log.warning(
                    "gateway_verify_attempt_failed",
                    attempt=attempt,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                if attempt >= attempts:
                    raise VerificationFailed(
                        "Payment verification failed: gateway unreachable.",
                        reference=reference,
                    ) from e

        body = self._decode(response, reference)
        if response.status_code >= 400 or not body.get("status"):
            log.warning(
                "gateway_verify_rejected",
                http_status=response.status_code,
                gateway_message=body.get("message"),
            )
            raise VerificationFailed(
                "Payment verification failed.",
                reference=reference,
                gateway_message=body.get("message"),
            )

        try:
            txn = GatewayTransaction.model_validate(body.get("data") or {})
        except ValidationError as e:
            log.warning("gateway_verify_malformed", error=str(e))
            raise VerificationFailed(
                "Payment verification failed: malformed transaction.",
                reference=reference,
            ) from e

        log.info(
            "gateway_transaction_verified",
            gateway_status=txn.status,
            amount=str(txn.paid_amount),
            channel=txn.channel,
        )
        return txn

    @staticmethod
    def _decode(response: httpx.Response, reference: str) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError as e:
            raise VerificationFailed(
                "Payment verification failed: unreadable gateway response.",
                reference=reference,
            ) from e
        if not isinstance(body, dict):
            raise VerificationFailed("Payment verification failed.", reference=reference)
        return body
