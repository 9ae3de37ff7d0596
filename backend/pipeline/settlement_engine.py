"""
Settlement Engine
=================
Top-level coordinator for inbound gateway notifications:

    signature -> parse -> route -> verify with gateway -> idempotency check
              -> atomic settlement (+ outbox entry) -> respond
              -> side effects from the outbox, after the response

Features:
- Signature checked on raw bytes before anything is parsed or read
- Only the gateway's verify record moves money; the notification is a hint
- At-most-once settlement per reference (enforced inside the transaction)
- Durable outbox: side effects survive a crash between commit and fan-out
- Audit trail keyed by the gateway reference

Example:
    engine = create_engine(store)
    outcome = await engine.handle_webhook(raw_body, signature)
    await engine.run_side_effects(outcome)   # after responding
"""

import os
from typing import Any, Callable, Dict, Optional, Union

import structlog
from pydantic import ValidationError

from pipeline.audit import AuditEventType, AuditLogEntry, IAuditLog, InMemoryAuditLog
from pipeline.errors import (
    AmountMismatch,
    DuplicateReference,
    InvalidOrder,
    InvalidPayload,
    OrderNotFound,
    PaymentNotSuccessful,
    SettlementError,
    VerificationFailed,
)
from pipeline.gateway_reconciler import GatewayReconciler, config as gateway_config
from pipeline.idempotency_guard import IdempotencyGuard
from pipeline.order_settlement import OrderSettlementTransaction, SettlementRequest
from pipeline.side_effects import SideEffectOrchestrator, SideEffectReport
from pipeline.signature_verifier import SignatureVerifier
from pipeline.subscription_renewal import SubscriptionRenewal, success_path
from schemas.settlement_models import (
    GatewayTransaction,
    OrderSettlementMetadata,
    PaymentStatus,
    SubscriptionRenewalMetadata,
    WebhookNotification,
    WebhookOutcome,
    parse_payment_metadata,
)
from services.alerts import IAlertService, InMemoryAlertService
from services.commission_ledger import CommissionLedger
from services.notifications import INotificationService, InMemoryNotificationService
from services.partner_campaigns import DefaultCampaignLookup, ICampaignLookup, PartnerDirectory
from services.platform_config import PlatformConfigProvider
from services.points_ledger import DocumentPointsLedger
from storage.document_store import IDocumentStore
from tasks.outbox_worker import OutboxProcessor

CHARGE_SUCCESS = "charge.success"

# Correlation ids for notifications that never yielded a trusted reference
UNAUTHENTICATED = "unauthenticated"
UNKNOWN_REFERENCE = "unknown"

MSG_NOT_SUCCESS_EVENT = "Webhook received but not a success event."
MSG_SETTLED = "Webhook processed and order updated."
MSG_ALREADY_PROCESSED = "Payment previously verified."
MSG_NO_BUYER = "Order processing complete, but buyer details not found for post-tasks."
MSG_SUBSCRIPTION_RENEWED = "Subscription activated."


# =============================================================================
# CONFIGURATION
# =============================================================================

class SettlementSettings:
    TRANSACTION_MAX_ATTEMPTS = int(os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"))
    REFERRAL_COOKIE_NAME = os.getenv("REFERRAL_COOKIE_NAME", "referralCode")


settings = SettlementSettings()


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[WebhookNotification, str, Optional[str]], Any]


class WebhookRouter:
    """
    Event-type routing for gateway notifications.
    Separates routing logic from business logic.
    """

    def __init__(self):
        self._handlers: Dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(
        self,
        notification: WebhookNotification,
        correlation_id: str,
        referral_code: Optional[str] = None,
    ) -> Optional[WebhookOutcome]:
        handler = self._handlers.get(notification.event)
        if not handler:
            self._logger.info("no_handler", event_type=notification.event, correlation_id=correlation_id)
            return None
        return await handler(notification, correlation_id, referral_code)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


# =============================================================================
# ENGINE
# =============================================================================

class SettlementEngine:
    def __init__(
        self,
        store: IDocumentStore,
        verifier: SignatureVerifier,
        reconciler: GatewayReconciler,
        processor: OutboxProcessor,
        config_provider: PlatformConfigProvider,
        audit_log: Optional[IAuditLog] = None,
        alerts: Optional[IAlertService] = None,
        max_attempts: int = settings.TRANSACTION_MAX_ATTEMPTS,
    ):
        self.store = store
        self.verifier = verifier
        self.reconciler = reconciler
        self.processor = processor
        self.config_provider = config_provider
        self.audit = audit_log or InMemoryAuditLog()
        self.alerts = alerts or processor.alerts

        self.guard = IdempotencyGuard(store)
        self.settlement = OrderSettlementTransaction(store, max_attempts)
        self.renewals = SubscriptionRenewal(store, max_attempts)

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(component="settlement_engine", correlation_id=correlation_id)

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: str,
        correlation_id: str,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
    ):
        """Emit audit log entry"""
        await self.audit.append(AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
        ))

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def handle_webhook(
        self,
        raw_body: bytes,
        signature: Optional[str],
        referral_code: Optional[str] = None,
    ) -> WebhookOutcome:
        """
        Authenticate, verify and settle one notification.

        Raises a SettlementError subclass for every non-200 answer. Returns
        the outcome for 200 answers, including "already processed".
        """
        # CRITICAL: Verify signature BEFORE parsing
        try:
            self.verifier.verify(raw_body, signature)
        except SettlementError as e:
            await self._reject(UNAUTHENTICATED, e)
            raise

        try:
            notification = WebhookNotification.model_validate_json(raw_body)
        except (ValidationError, ValueError) as e:
            self._get_logger().warning("webhook_parse_error", error=str(e))
            error = InvalidPayload("Invalid webhook payload.")
            await self._reject(UNKNOWN_REFERENCE, error)
            raise error from e

        correlation_id = notification.data.reference or UNKNOWN_REFERENCE
        log = self._get_logger(correlation_id)
        log.info("webhook_received", event_type=notification.event)

        await self._emit_audit(
            event_type=AuditEventType.WEBHOOK_RECEIVED,
            entity_type="webhook",
            entity_id=correlation_id,
            correlation_id=correlation_id,
            metadata={"event_type": notification.event},
        )

        try:
            outcome = await self.router.route(notification, correlation_id, referral_code)
        except (InvalidPayload, VerificationFailed) as e:
            await self._reject(correlation_id, e)
            raise
        if outcome is None:
            return WebhookOutcome(message=MSG_NOT_SUCCESS_EVENT, reference=notification.data.reference)
        return outcome

    async def _reject(self, correlation_id: str, error: SettlementError) -> None:
        """Record a notification turned away before any settlement was attempted."""
        self._get_logger(correlation_id).warning(
            "webhook_rejected",
            reason=type(error).__name__,
            status_code=error.status_code,
        )
        await self._emit_audit(
            event_type=AuditEventType.WEBHOOK_REJECTED,
            entity_type="webhook",
            entity_id=correlation_id,
            correlation_id=correlation_id,
            metadata={
                "reason": type(error).__name__,
                "message": error.message,
                "status_code": error.status_code,
            },
        )

    async def run_side_effects(self, outcome: WebhookOutcome) -> Optional[SideEffectReport]:
        """Drain the outbox entry a settlement left behind. Safe to call twice."""
        if not outcome.outbox_id:
            return None
        return await self.processor.process(outcome.outbox_id)

    # =========================================================================
    # HANDLERS (Registered with Router)
    # =========================================================================

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register(CHARGE_SUCCESS)
        async def handle_charge_success(notification, correlation_id, referral_code):
            return await self._on_charge_success(notification, correlation_id, referral_code)

    async def _on_charge_success(
        self,
        notification: WebhookNotification,
        correlation_id: str,
        referral_code: Optional[str],
    ) -> WebhookOutcome:
        reference = notification.data.reference
        if not reference:
            raise InvalidPayload()

        txn = await self.reconciler.verify_transaction(reference)
        await self._emit_audit(
            event_type=AuditEventType.PAYMENT_VERIFIED,
            entity_type="payment",
            entity_id=reference,
            correlation_id=reference,
            new_state={"gateway_status": txn.status, "amount": str(txn.paid_amount)},
        )

        try:
            metadata = parse_payment_metadata(txn.metadata)
        except ValidationError as e:
            self._get_logger(reference).warning("payment_metadata_invalid", error_count=e.error_count())
            raise InvalidPayload("Invalid payment metadata.") from e

        if isinstance(metadata, SubscriptionRenewalMetadata):
            return await self._renew_subscription(reference, metadata, txn)
        return await self._settle_order(reference, metadata, txn, referral_code)

    async def _renew_subscription(
        self,
        reference: str,
        metadata: SubscriptionRenewalMetadata,
        txn: GatewayTransaction,
    ) -> WebhookOutcome:
        expires_at = await self.renewals.renew(reference, metadata, txn)
        await self._emit_audit(
            event_type=AuditEventType.SUBSCRIPTION_RENEWED,
            entity_type="manufacturer",
            entity_id=metadata.user_id,
            correlation_id=reference,
            new_state={"marketingPlanId": metadata.plan_id, "planExpiresAt": expires_at.isoformat()},
        )
        return WebhookOutcome(
            message=MSG_SUBSCRIPTION_RENEWED,
            reference=reference,
            redirect_url=success_path(metadata.plan_id),
        )

    async def _settle_order(
        self,
        reference: str,
        metadata: OrderSettlementMetadata,
        txn: GatewayTransaction,
        referral_code: Optional[str],
    ) -> WebhookOutcome:
        log = self._get_logger(reference)
        if not metadata.order_id:
            raise InvalidPayload()

        existing = await self.guard.check(reference)
        if existing is not None:
            return await self._already_processed(reference, existing.status)

        request = SettlementRequest(
            order_id=metadata.order_id,
            reference=reference,
            paid_amount=txn.paid_amount,
            is_partial_payment=metadata.is_partial_payment,
            payment_method=txn.payment_method,
            transaction_id=str(txn.id) if txn.id is not None else None,
            gateway_response=txn.gateway_response,
            buyer_id=metadata.buyer_id,
            referral_code=referral_code or metadata.referral_code,
        )

        if not txn.is_successful:
            payment = await self.settlement.record_failed_payment(request)
            await self._emit_audit(
                event_type=AuditEventType.PAYMENT_FAILED,
                entity_type="payment",
                entity_id=payment.payment_id,
                correlation_id=reference,
                new_state={"status": payment.status.value},
                metadata={"gateway_response": txn.gateway_response},
            )
            raise PaymentNotSuccessful(gateway_response=txn.gateway_response)

        request = request.model_copy(update={"config": await self.config_provider.snapshot()})

        try:
            result = await self.settlement.settle(request)
        except DuplicateReference:
            payment = await self.guard.check(reference)
            status = payment.status if payment else PaymentStatus.COMPLETED
            return await self._already_processed(reference, status)
        except (AmountMismatch, OrderNotFound, InvalidOrder) as e:
            if isinstance(e, AmountMismatch):
                log.warning("settlement_amount_mismatch", paid=str(e.paid), required=str(e.required))
            else:
                log.error("settlement_order_unreadable", order_id=metadata.order_id, error=e.message)
            await self._emit_audit(
                event_type=AuditEventType.SETTLEMENT_REJECTED,
                entity_type="order",
                entity_id=metadata.order_id,
                correlation_id=reference,
                metadata={"error": e.message, **e.details},
            )
            raise

        await self._emit_audit(
            event_type=AuditEventType.SETTLEMENT_COMMITTED,
            entity_type="order",
            entity_id=result.order_id,
            correlation_id=reference,
            new_state={
                "status": result.status,
                "amount_paid": str(result.amount_paid),
                "balance_due": str(result.balance_due),
            },
            metadata={"payment_id": result.payment_id, "fully_paid": result.is_order_fully_paid},
        )

        if result.outbox_id is None:
            log.warning("settlement_without_buyer", order_id=result.order_id)
            return WebhookOutcome(message=MSG_NO_BUYER, reference=reference)

        return WebhookOutcome(message=MSG_SETTLED, reference=reference, outbox_id=result.outbox_id)

    async def _already_processed(self, reference: str, status: Union[PaymentStatus, str]) -> WebhookOutcome:
        """Any recorded payment, completed or failed, ends processing for its reference."""
        self._get_logger(reference).info("payment_already_processed", payment_status=PaymentStatus(status).value)
        await self._emit_audit(
            event_type=AuditEventType.SETTLEMENT_DUPLICATE,
            entity_type="payment",
            entity_id=reference,
            correlation_id=reference,
            metadata={"payment_status": PaymentStatus(status).value},
        )
        return WebhookOutcome(message=MSG_ALREADY_PROCESSED, reference=reference, already_processed=True)


# =============================================================================
# WIRING
# =============================================================================

def create_engine(
    store: IDocumentStore,
    secret_key: Optional[str] = None,
    reconciler: Optional[GatewayReconciler] = None,
    notifications: Optional[INotificationService] = None,
    alerts: Optional[IAlertService] = None,
    audit_log: Optional[IAuditLog] = None,
    campaigns: Optional[ICampaignLookup] = None,
    config_provider: Optional[PlatformConfigProvider] = None,
    max_attempts: int = settings.TRANSACTION_MAX_ATTEMPTS,
) -> SettlementEngine:
    """Build an engine with in-memory collaborators wherever none is given."""
    secret = secret_key if secret_key is not None else gateway_config.SECRET_KEY
    alerts = alerts or InMemoryAlertService()
    audit_log = audit_log or InMemoryAuditLog()

    orchestrator = SideEffectOrchestrator(
        notifications=notifications or InMemoryNotificationService(),
        points_ledger=DocumentPointsLedger(store),
        commission_ledger=CommissionLedger(store, max_attempts),
        partners=PartnerDirectory(store),
        campaigns=campaigns or DefaultCampaignLookup(),
        alerts=alerts,
    )
    processor = OutboxProcessor(store, orchestrator, alerts, audit=audit_log)

    return SettlementEngine(
        store=store,
        verifier=SignatureVerifier(secret),
        reconciler=reconciler or GatewayReconciler(secret_key=secret),
        processor=processor,
        config_provider=config_provider or PlatformConfigProvider(store),
        audit_log=audit_log,
        alerts=alerts,
        max_attempts=max_attempts,
    )


__all__ = [
    "SettlementEngine",
    "SettlementError",
    "SettlementSettings",
    "WebhookRouter",
    "create_engine",
    "settings",
]
