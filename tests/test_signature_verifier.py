"""Tests for webhook signature verification."""

import pytest

from conftest import SECRET, sign
from pipeline.errors import GatewayNotConfigured, InvalidSignature
from pipeline.signature_verifier import SignatureVerifier


class TestSignatureVerifier:
    def test_accepts_matching_signature(self):
        body = b'{"event":"charge.success","data":{"reference":"ref-1"}}'
        SignatureVerifier(SECRET).verify(body, sign(body))

    def test_accepts_uppercase_hex(self):
        body = b'{"event":"charge.success"}'
        SignatureVerifier(SECRET).verify(body, sign(body).upper())

    def test_rejects_tampered_body(self):
        body = b'{"event":"charge.success","data":{"amount":100}}'
        signature = sign(body)
        with pytest.raises(InvalidSignature):
            SignatureVerifier(SECRET).verify(body.replace(b"100", b"999"), signature)

    def test_rejects_signature_from_other_secret(self):
        body = b'{"event":"charge.success"}'
        with pytest.raises(InvalidSignature):
            SignatureVerifier(SECRET).verify(body, sign(body, secret="another-secret"))

    @pytest.mark.parametrize("signature", [None, ""])
    def test_rejects_missing_signature(self, signature):
        with pytest.raises(InvalidSignature) as exc:
            SignatureVerifier(SECRET).verify(b"{}", signature)
        assert exc.value.status_code == 401

    def test_missing_secret_is_a_server_error(self):
        verifier = SignatureVerifier("")
        assert not verifier.configured
        with pytest.raises(GatewayNotConfigured) as exc:
            verifier.verify(b"{}", "abc")
        assert exc.value.status_code == 500
