"""
Settlement audit trail.

Every state change is appended with the gateway reference as correlation id.
InMemoryAuditLog backs tests and the memory store; BlackBoxAuditLog also
persists to the system_events table via database.log_event.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from database import get_events_for_reference, log_event

logger = structlog.get_logger().bind(component="audit")


class AuditEventType(str, Enum):
    WEBHOOK_RECEIVED = "webhook.received"
    WEBHOOK_REJECTED = "webhook.rejected"
    PAYMENT_VERIFIED = "payment.verified"
    PAYMENT_FAILED = "payment.failed"
    SETTLEMENT_COMMITTED = "settlement.committed"
    SETTLEMENT_DUPLICATE = "settlement.duplicate"
    SETTLEMENT_REJECTED = "settlement.rejected"
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    SIDE_EFFECT_COMPLETED = "side_effect.completed"
    SIDE_EFFECT_FAILED = "side_effect.failed"
    OUTBOX_DEAD_LETTER = "outbox.dead_letter"


# Matching system_events.event_type values
BLACK_BOX_EVENT_TYPES = {
    AuditEventType.WEBHOOK_RECEIVED: "WEBHOOK_RECEIVED",
    AuditEventType.WEBHOOK_REJECTED: "WEBHOOK_REJECTED",
    AuditEventType.PAYMENT_VERIFIED: "PAYMENT_VERIFIED",
    AuditEventType.PAYMENT_FAILED: "PAYMENT_FAILED",
    AuditEventType.SETTLEMENT_COMMITTED: "SETTLEMENT_COMMITTED",
    AuditEventType.SETTLEMENT_DUPLICATE: "SETTLEMENT_DUPLICATE",
    AuditEventType.SETTLEMENT_REJECTED: "SETTLEMENT_REJECTED",
    AuditEventType.SUBSCRIPTION_RENEWED: "SUBSCRIPTION_RENEWED",
    AuditEventType.SIDE_EFFECT_COMPLETED: "SIDE_EFFECT_COMPLETED",
    AuditEventType.SIDE_EFFECT_FAILED: "SIDE_EFFECT_FAILED",
    AuditEventType.OUTBOX_DEAD_LETTER: "OUTBOX_DEAD_LETTER",
}


class AuditLogEntry(BaseModel):
    """Immutable audit log entry"""
    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str
    event_type: AuditEventType
    entity_type: str  # "order", "payment", "webhook", "outbox"
    entity_id: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    actor: str = "webhook"


class IAuditLog(ABC):
    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        pass


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_correlation: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_correlation[entry.correlation_id].append(entry)

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_correlation.get(correlation_id, []))


class BlackBoxAuditLog(InMemoryAuditLog):
    """In-memory trail plus a system_events row per entry.

    Reads fall back to system_events when this process has no entries for the
    reference (e.g. after a restart).
    """

    async def append(self, entry: AuditLogEntry) -> None:
        await super().append(entry)
        severity = "WARN" if entry.event_type in (
            AuditEventType.WEBHOOK_REJECTED,
            AuditEventType.SETTLEMENT_REJECTED,
            AuditEventType.SIDE_EFFECT_FAILED,
        ) else "INFO"
        if entry.event_type == AuditEventType.OUTBOX_DEAD_LETTER:
            severity = "CRITICAL"
        await log_event(
            correlation_id=entry.correlation_id,
            event_type=BLACK_BOX_EVENT_TYPES[entry.event_type],
            payload={
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "previous_state": entry.previous_state,
                "new_state": entry.new_state,
                "metadata": entry.metadata,
            },
            agent=entry.actor,
            severity=severity,
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        entries = await super().get_by_correlation_id(correlation_id)
        if entries:
            return entries

        event_types = {name: event_type for event_type, name in BLACK_BOX_EVENT_TYPES.items()}
        restored = []
        # Rows come back newest first
        for row in reversed(await get_events_for_reference(correlation_id)):
            event_type = event_types.get(row["event_type"])
            if event_type is None:
                continue
            payload = row.get("payload") or {}
            restored.append(AuditLogEntry(
                log_id=str(row["id"]),
                correlation_id=correlation_id,
                event_type=event_type,
                entity_type=payload.get("entity_type") or "unknown",
                entity_id=payload.get("entity_id") or correlation_id,
                previous_state=payload.get("previous_state"),
                new_state=payload.get("new_state"),
                metadata=payload.get("metadata") or {},
                timestamp=row["timestamp"],
                actor=row.get("agent") or "webhook",
            ))
        return restored
