"""
Signature Verifier
==================
Authenticates inbound gateway notifications: hex HMAC-SHA512 over the exact
raw body bytes, compared in constant time. Runs before the body is parsed.
"""

import hashlib
import hmac
from typing import Optional

import structlog

from pipeline.errors import GatewayNotConfigured, InvalidSignature

logger = structlog.get_logger().bind(component="signature_verifier")


class SignatureVerifier:
    def __init__(self, secret: Optional[str]):
        self._secret = secret

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def compute(self, raw_body: bytes) -> str:
        if not self._secret:
            raise GatewayNotConfigured()
        return hmac.new(self._secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()

    def verify(self, raw_body: bytes, signature: Optional[str]) -> None:
        """Raise InvalidSignature unless `signature` matches the body."""
        expected = self.compute(raw_body)
        if not signature:
            logger.warning("webhook_signature_missing", body_bytes=len(raw_body))
            raise InvalidSignature()
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("webhook_signature_invalid", body_bytes=len(raw_body))
            raise InvalidSignature()
