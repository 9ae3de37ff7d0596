# pipeline/__init__.py
# ============================================================================
# PAYMENT SETTLEMENT ENGINE — PIPELINE
# ============================================================================
# Signature -> gateway verify -> idempotency -> settlement -> side effects
# Import the engine from pipeline.settlement_engine; only errors live here
# ============================================================================

from pipeline.errors import (
    AmountMismatch,
    DuplicateReference,
    GatewayNotConfigured,
    InvalidOrder,
    InvalidPayload,
    InvalidSignature,
    OrderNotFound,
    PaymentNotSuccessful,
    SettlementError,
    SideEffectFailure,
    VerificationFailed,
)

__all__ = [
    # Errors
    "SettlementError",
    "InvalidSignature",
    "VerificationFailed",
    "InvalidPayload",
    "PaymentNotSuccessful",
    "AmountMismatch",
    "OrderNotFound",
    "InvalidOrder",
    "DuplicateReference",
    "SideEffectFailure",
    "GatewayNotConfigured",
]
