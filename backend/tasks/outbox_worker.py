"""
Outbox Worker - The Safety Net
==============================
Drains settlementOutbox entries: every committed settlement leaves one
behind, and this worker makes sure its side effects eventually run even if
the process died right after answering the gateway.

Features:
- Lease-based claim, so two drainers never run the same entry at once
- Completed effects are remembered; a retry only re-runs what failed
- Financial failures back off and retry up to OUTBOX_MAX_ATTEMPTS
- Exhausted entries go to dead_letter with a CRITICAL alert
"""

import os
import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog

from pipeline.audit import AuditEventType, AuditLogEntry, IAuditLog
from pipeline.side_effects import SideEffectOrchestrator, SideEffectReport
from schemas.settlement_models import OutboxStatus, SettlementOutboxEntry, to_document
from services.alerts import IAlertService, SettlementAlert
from storage.document_store import IDocumentStore, ITransaction

# Configure logger
logger = structlog.get_logger().bind(component="outbox_worker")

OUTBOX = "settlementOutbox"


# =============================================================================
# CONFIGURATION
# =============================================================================

class OutboxConfig:
    """Outbox worker configuration"""

    # How often to look for pending entries (seconds)
    CHECK_INTERVAL = int(os.getenv("OUTBOX_INTERVAL", "30"))

    # Maximum entries to process per cycle
    BATCH_SIZE = int(os.getenv("OUTBOX_BATCH_SIZE", "20"))

    # Entries read per status when looking for due ones
    SCAN_LIMIT = int(os.getenv("OUTBOX_SCAN_LIMIT", "1000"))

    # Attempts before an entry is dead-lettered
    MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5"))

    # How long a claim holds an entry (seconds)
    LEASE_SECONDS = int(os.getenv("OUTBOX_LEASE_SECONDS", "120"))

    # Base delay between attempts, multiplied by the attempt count (seconds)
    RETRY_BACKOFF_SECONDS = int(os.getenv("OUTBOX_RETRY_BACKOFF", "30"))

    # Enable/disable the periodic loop
    ENABLED = os.getenv("OUTBOX_ENABLED", "true").lower() == "true"


config = OutboxConfig()


# =============================================================================
# PROCESSOR
# =============================================================================

class OutboxProcessor:
    def __init__(
        self,
        store: IDocumentStore,
        orchestrator: SideEffectOrchestrator,
        alerts: IAlertService,
        audit: Optional[IAuditLog] = None,
        max_attempts: int = config.MAX_ATTEMPTS,
        lease_seconds: int = config.LEASE_SECONDS,
        backoff_seconds: int = config.RETRY_BACKOFF_SECONDS,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.alerts = alerts
        self.audit = audit
        self.max_attempts = max_attempts
        self.lease = timedelta(seconds=lease_seconds)
        self.backoff = timedelta(seconds=backoff_seconds)

    async def claim(self, outbox_id: str, force: bool = False) -> Optional[SettlementOutboxEntry]:
        """Take the lease on an entry. None if it is finished, leased or not yet due."""
        now = datetime.utcnow()

        async def _claim(tx: ITransaction) -> Optional[SettlementOutboxEntry]:
            doc = await tx.get(OUTBOX, outbox_id)
            if doc is None:
                return None
            entry = SettlementOutboxEntry.model_validate(doc)
            if entry.status in (OutboxStatus.COMPLETED, OutboxStatus.DEAD_LETTER):
                return None
            if entry.status == OutboxStatus.PROCESSING and entry.lease_expires_at and entry.lease_expires_at > now:
                return None
            if not force and entry.next_attempt_at and entry.next_attempt_at > now:
                return None

            claimed = entry.model_copy(update={
                "status": OutboxStatus.PROCESSING,
                "attempt_count": entry.attempt_count + 1,
                "lease_expires_at": now + self.lease,
                "updated_at": now,
            })
            tx.set(OUTBOX, outbox_id, to_document(claimed))
            return claimed

        return await self.store.run_transaction(_claim)

    async def process(self, outbox_id: str, force: bool = False) -> Optional[SideEffectReport]:
        entry = await self.claim(outbox_id, force=force)
        if entry is None:
            logger.debug("outbox_entry_not_claimed", outbox_id=outbox_id)
            return None

        report = await self.orchestrator.run(entry)
        await self._finish(entry, report)
        return report

    async def _finish(self, entry: SettlementOutboxEntry, report: SideEffectReport) -> None:
        log = logger.bind(correlation_id=entry.reference, outbox_id=entry.outbox_id)
        now = datetime.utcnow()

        completed = list(dict.fromkeys(entry.completed_effects + report.settled))
        abandoned = list(dict.fromkeys(entry.abandoned_effects + report.abandoned))
        errors = [o.error for o in report.outcomes if o.error]

        update = {
            "completed_effects": completed,
            "abandoned_effects": abandoned,
            "last_error": "; ".join(errors) if errors else None,
            "lease_expires_at": None,
            "next_attempt_at": None,
            "updated_at": now,
        }

        if not report.failed:
            update["status"] = OutboxStatus.COMPLETED
        elif entry.attempt_count >= self.max_attempts:
            update["status"] = OutboxStatus.DEAD_LETTER
        else:
            update["status"] = OutboxStatus.PENDING
            update["next_attempt_at"] = now + self.backoff * entry.attempt_count

        finished = entry.model_copy(update=update)

        async def _write(tx: ITransaction) -> bool:
            doc = await tx.get(OUTBOX, entry.outbox_id)
            if doc is None:
                return False
            current = SettlementOutboxEntry.model_validate(doc)
            # Only the holder of the current claim may record its result
            if current.attempt_count != entry.attempt_count or current.lease_expires_at != entry.lease_expires_at:
                return False
            tx.set(OUTBOX, entry.outbox_id, to_document(finished))
            return True

        written = await self.store.run_transaction(_write)
        await self._audit_outcomes(entry, report)

        if not written:
            log.warning("outbox_lease_lost", attempt=entry.attempt_count, failed=report.failed)
            return

        if finished.status == OutboxStatus.COMPLETED:
            log.info("outbox_entry_completed", attempts=entry.attempt_count, abandoned=len(abandoned))
        elif finished.status == OutboxStatus.PENDING:
            log.warning(
                "outbox_retry_scheduled",
                attempt=entry.attempt_count,
                failed=report.failed,
                next_attempt_at=finished.next_attempt_at.isoformat(),
            )
        else:
            log.error("outbox_entry_dead_lettered", attempts=entry.attempt_count, failed=report.failed)

        if finished.status == OutboxStatus.DEAD_LETTER:
            await self.alerts.raise_alert(SettlementAlert(
                correlation_id=entry.reference,
                source="outbox_worker",
                severity="CRITICAL",
                message=f"Side effects for order {entry.order_id} exhausted {entry.attempt_count} attempts",
                details={
                    "outbox_id": entry.outbox_id,
                    "failed_effects": [e.value for e in report.failed],
                    "requires_manual_intervention": True,
                },
            ))
            if self.audit:
                await self.audit.append(AuditLogEntry(
                    correlation_id=entry.reference,
                    event_type=AuditEventType.OUTBOX_DEAD_LETTER,
                    entity_type="outbox",
                    entity_id=entry.outbox_id,
                    new_state={"status": OutboxStatus.DEAD_LETTER.value},
                    metadata={"last_error": finished.last_error},
                    actor="outbox_worker",
                ))

    async def _audit_outcomes(self, entry: SettlementOutboxEntry, report: SideEffectReport) -> None:
        if not self.audit:
            return
        for outcome in report.outcomes:
            if outcome.error is not None:
                event_type = AuditEventType.SIDE_EFFECT_FAILED
                metadata = {"error": outcome.error, "attempt": entry.attempt_count}
            elif outcome.status in ("completed", "skipped"):
                event_type = AuditEventType.SIDE_EFFECT_COMPLETED
                metadata = {"attempt": entry.attempt_count}
            else:
                continue
            await self.audit.append(AuditLogEntry(
                correlation_id=entry.reference,
                event_type=event_type,
                entity_type="outbox",
                entity_id=entry.outbox_id,
                new_state={"effect": outcome.effect.value, "outcome": outcome.status},
                metadata=metadata,
                actor="outbox_worker",
            ))

    async def due_entries(self, limit: int, force: bool = False) -> List[str]:
        """Ids of entries a claim would accept right now, oldest first."""
        now = datetime.utcnow()
        ids: List[str] = []
        for status in (OutboxStatus.PENDING, OutboxStatus.PROCESSING):
            for doc in await self.store.query(OUTBOX, {"status": status.value}, config.SCAN_LIMIT):
                entry = SettlementOutboxEntry.model_validate(doc)
                if status == OutboxStatus.PROCESSING and entry.lease_expires_at and entry.lease_expires_at > now:
                    continue
                if not force and entry.next_attempt_at and entry.next_attempt_at > now:
                    continue
                ids.append(entry.outbox_id)
        return ids[:limit]

    async def drain(self, limit: Optional[int] = None, force: bool = False) -> Dict[str, int]:
        """Process every due entry once. Returns counts per resulting outcome."""
        summary = {"claimed": 0, "completed": 0, "retrying": 0}
        for outbox_id in await self.due_entries(limit or config.BATCH_SIZE, force=force):
            report = await self.process(outbox_id, force=force)
            if report is None:
                continue
            summary["claimed"] += 1
            if report.failed:
                summary["retrying"] += 1
            else:
                summary["completed"] += 1
        return summary

    async def stats(self) -> Dict[str, int]:
        counts = {}
        for status in OutboxStatus:
            counts[status.value] = len(await self.store.query(OUTBOX, {"status": status.value}, 10_000))
        return counts


# =============================================================================
# BACKGROUND LOOP
# =============================================================================

async def outbox_loop(processor: OutboxProcessor):
    """Re-drain pending outbox entries every OUTBOX_INTERVAL seconds."""
    logger.info(
        "outbox_loop_started",
        interval=config.CHECK_INTERVAL,
        batch_size=config.BATCH_SIZE,
        enabled=config.ENABLED,
    )

    if not config.ENABLED:
        logger.info("outbox_loop_disabled")
        return

    while True:
        try:
            summary = await processor.drain()
            if summary["claimed"]:
                logger.info("outbox_cycle_complete", **summary)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("outbox_loop_error", error=str(e), error_type=type(e).__name__)

        await asyncio.sleep(config.CHECK_INTERVAL)
