"""
Order Settlement Transaction
============================
The single atomic unit that moves money on an order:

1. Re-check the reference (payments.reference is unique)
2. Read the order
3. Reject short non-partial payments (AmountMismatch)
4. Apply the payment: amount_paid += paid, balance_due = total - amount_paid
5. Write order fields, the Payment record and the outbox entry together

Nothing is written unless all of it is. Concurrent writers to the same order
conflict at commit and the whole callback re-runs against fresh state.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import structlog
from pydantic import BaseModel, Field, ValidationError

from pipeline.errors import AmountMismatch, DuplicateReference, InvalidOrder, OrderNotFound
from schemas.settlement_models import (
    Order,
    OrderStatus,
    PartyContact,
    Payment,
    PaymentStatus,
    PlatformConfig,
    SettlementOutboxEntry,
    SettlementResult,
    round_half_up,
    to_document,
)
from storage.document_store import DuplicateKeyError, IDocumentStore, ITransaction

logger = structlog.get_logger().bind(component="order_settlement")

ORDERS = "orders"
PAYMENTS = "payments"
USERS = "users"
MANUFACTURERS = "manufacturers"
OUTBOX = "settlementOutbox"

DEFAULT_BUYER_NAME = "Valued Customer"
DEFAULT_SELLER_NAME = "Tradinta Seller"
VERIFIED_SELLER_STATUS = "Verified"


class SettlementRequest(BaseModel):
    """Verified inputs for one settlement. Built only from the gateway record."""

    order_id: str
    reference: str
    paid_amount: Decimal
    is_partial_payment: bool = False
    payment_method: str
    transaction_id: Optional[str] = None
    gateway_response: Optional[str] = None
    buyer_id: Optional[str] = None
    referral_code: Optional[str] = None
    config: PlatformConfig = Field(default_factory=PlatformConfig)


@dataclass(frozen=True)
class SettlementComputation:
    amount_paid: Decimal
    balance_due: Decimal
    status: str
    is_order_fully_paid: bool


def compute_settlement(order: Order, paid: Decimal, is_partial_payment: bool) -> SettlementComputation:
    """Pure balance arithmetic; raises AmountMismatch for short full payments."""
    if not is_partial_payment and round_half_up(paid) < round_half_up(order.total_amount):
        raise AmountMismatch(paid=paid, required=order.total_amount)

    amount_paid = order.amount_paid + paid
    balance_due = order.total_amount - amount_paid
    is_fully_paid = balance_due <= 0

    status = order.status
    if is_fully_paid or is_partial_payment:
        status = OrderStatus.PROCESSING.value

    return SettlementComputation(
        amount_paid=amount_paid,
        balance_due=balance_due,
        status=status,
        is_order_fully_paid=is_fully_paid,
    )


def buyer_contact(user_id: Optional[str], doc: Optional[Dict[str, Any]]) -> PartyContact:
    doc = doc or {}
    return PartyContact(
        user_id=user_id,
        name=doc.get("fullName") or DEFAULT_BUYER_NAME,
        email=doc.get("email"),
    )


def seller_contact(seller_id: str, doc: Optional[Dict[str, Any]]) -> PartyContact:
    doc = doc or {}
    return PartyContact(
        user_id=seller_id,
        name=doc.get("shopName") or DEFAULT_SELLER_NAME,
        email=doc.get("contactEmail") or doc.get("email"),
        is_verified=doc.get("verificationStatus") == VERIFIED_SELLER_STATUS,
    )


class OrderSettlementTransaction:
    """
    Runs the settlement callback through IDocumentStore.run_transaction.

    Example:
        settlement = OrderSettlementTransaction(store)
        result = await settlement.settle(request)
        result.is_order_fully_paid
    """

    def __init__(self, store: IDocumentStore, max_attempts: int = 5):
        self._store = store
        self._max_attempts = max_attempts

    async def settle(self, request: SettlementRequest) -> SettlementResult:
        log = logger.bind(correlation_id=request.reference, order_id=request.order_id)

        async def _settle(tx: ITransaction) -> Tuple[SettlementResult, Dict[str, Any]]:
            if await tx.find_one(PAYMENTS, "reference", request.reference) is not None:
                raise DuplicateReference(request.reference)

            order_doc = await tx.get(ORDERS, request.order_id)
            if order_doc is None:
                raise OrderNotFound(request.order_id)
            try:
                order = Order.from_document(request.order_id, order_doc)
            except ValidationError as e:
                log.error("order_document_invalid", errors=e.errors(include_url=False))
                raise InvalidOrder(request.order_id, e.error_count()) from e

            outcome = compute_settlement(order, request.paid_amount, request.is_partial_payment)

            buyer_id = order.buyer_id or request.buyer_id
            buyer = buyer_contact(buyer_id, await tx.get(USERS, buyer_id) if buyer_id else None)
            seller = seller_contact(order.seller_id, await tx.get(MANUFACTURERS, order.seller_id))

            payment = Payment(
                payment_id=uuid.uuid4().hex,
                order_id=order.order_id,
                buyer_id=buyer_id,
                reference=request.reference,
                amount=request.paid_amount,
                status=PaymentStatus.COMPLETED,
                payment_method=request.payment_method,
                transaction_id=request.transaction_id,
                gateway_response=request.gateway_response,
            )

            tx.update(ORDERS, order.order_id, {
                "status": outcome.status,
                "amountPaid": str(outcome.amount_paid),
                "balanceDue": str(outcome.balance_due),
            })
            tx.create(PAYMENTS, payment.payment_id, to_document(payment))

            outbox_id = None
            if buyer_id:
                entry = SettlementOutboxEntry(
                    outbox_id=request.reference,
                    reference=request.reference,
                    order_id=order.order_id,
                    payment_id=payment.payment_id,
                    paid_amount=request.paid_amount,
                    payment_method=request.payment_method,
                    is_order_fully_paid=outcome.is_order_fully_paid,
                    order_total=order.total_amount,
                    order_subtotal=order.subtotal,
                    platform_fee=order.platform_fee,
                    is_direct_fulfillment=order.is_direct_fulfillment,
                    items=order.items,
                    buyer=buyer,
                    seller=seller,
                    referral_code=request.referral_code,
                    config=request.config,
                )
                tx.create(OUTBOX, entry.outbox_id, to_document(entry))
                outbox_id = entry.outbox_id

            result = SettlementResult(
                order_id=order.order_id,
                reference=request.reference,
                payment_id=payment.payment_id,
                amount_paid=outcome.amount_paid,
                balance_due=outcome.balance_due,
                status=outcome.status,
                is_order_fully_paid=outcome.is_order_fully_paid,
                buyer=buyer,
                seller=seller,
                outbox_id=outbox_id,
            )
            previous = {
                "status": order.status,
                "amount_paid": str(order.amount_paid),
                "balance_due": str(order.balance_due),
            }
            return result, previous

        try:
            result, previous = await self._store.run_transaction(_settle, self._max_attempts)
        except DuplicateKeyError as e:
            # Lost the race: another delivery committed this reference first
            log.info("settlement_duplicate_at_commit", field=e.field)
            raise DuplicateReference(request.reference) from e

        if result.balance_due < 0:
            log.warning("order_overpaid", balance_due=str(result.balance_due))

        log.info(
            "settlement_committed",
            payment_id=result.payment_id,
            previous_status=previous["status"],
            status=result.status,
            amount_paid=str(result.amount_paid),
            balance_due=str(result.balance_due),
            fully_paid=result.is_order_fully_paid,
        )
        return result

    async def record_failed_payment(self, request: SettlementRequest) -> Payment:
        """
        Log a non-successful charge. Unique by reference like any payment,
        so redelivery finds the same record instead of writing another.
        """

        async def _record(tx: ITransaction) -> Payment:
            existing = await tx.find_one(PAYMENTS, "reference", request.reference)
            if existing is not None:
                return Payment.model_validate(existing)
            payment = Payment(
                payment_id=uuid.uuid4().hex,
                order_id=request.order_id,
                buyer_id=request.buyer_id,
                reference=request.reference,
                amount=request.paid_amount,
                status=PaymentStatus.FAILED,
                payment_method=request.payment_method,
                transaction_id=request.transaction_id,
                gateway_response=request.gateway_response,
            )
            tx.create(PAYMENTS, payment.payment_id, to_document(payment))
            return payment

        try:
            payment = await self._store.run_transaction(_record, self._max_attempts)
        except DuplicateKeyError:
            payment = Payment.model_validate(
                await self._store.find_one(PAYMENTS, "reference", request.reference)
            )

        logger.warning(
            "payment_not_successful",
            correlation_id=request.reference,
            order_id=request.order_id,
            gateway_response=request.gateway_response,
        )
        return payment
