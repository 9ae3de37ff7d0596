"""
Settlement error taxonomy.

Everything raised before the settlement commits is fail-closed: no state
changed, the gateway may safely redeliver. Everything after commit is
fail-open and never reaches the caller (SideEffectFailure).
"""

from decimal import Decimal
from typing import Any, Dict, Optional


class SettlementError(Exception):
    """Base class. `status_code` is what the webhook endpoint answers."""

    status_code: int = 500
    default_message: str = "An internal error occurred."

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details: Dict[str, Any] = details
        super().__init__(self.message)

    @property
    def success(self) -> bool:
        return self.status_code < 400


class GatewayNotConfigured(SettlementError):
    status_code = 500
    default_message = "Payment gateway not configured."


class InvalidSignature(SettlementError):
    status_code = 401
    default_message = "Invalid signature."


class VerificationFailed(SettlementError):
    status_code = 400
    default_message = "Payment verification failed."


class InvalidPayload(SettlementError):
    status_code = 400
    default_message = "Missing required payment information."


class PaymentNotSuccessful(SettlementError):
    status_code = 400
    default_message = "Payment was not successful."


class AmountMismatch(SettlementError):
    status_code = 400

    def __init__(self, paid: Decimal, required: Decimal):
        self.paid = paid
        self.required = required
        super().__init__(
            f"Payment amount mismatch. Paid: {paid}, Required: {required}",
            paid=str(paid),
            required=str(required),
        )


class OrderNotFound(SettlementError):
    status_code = 500

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order with ID {order_id} not found.", order_id=order_id)


class InvalidOrder(SettlementError):
    status_code = 500

    def __init__(self, order_id: str, error_count: int = 0):
        self.order_id = order_id
        super().__init__(
            f"Order with ID {order_id} could not be read.",
            order_id=order_id,
            error_count=error_count,
        )


class DuplicateReference(SettlementError):
    """Not a failure: the reference was already settled."""

    status_code = 200
    default_message = "Payment previously verified."

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(reference=reference)


class SideEffectFailure(SettlementError):
    """One post-commit effect failed. Caught by the orchestrator, never re-raised."""

    def __init__(self, effect: str, cause: BaseException):
        self.effect = effect
        self.cause = cause
        super().__init__(f"{effect} failed: {cause}", effect=effect)
