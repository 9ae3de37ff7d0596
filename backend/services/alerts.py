# services/alerts.py
# ============================================================================
# PAYMENT SETTLEMENT ENGINE — OPERATIONAL ALERTS
# ============================================================================
# Post-commit failures never reach the gateway. They land here instead so a
# missing points/commission credit can be investigated.
# ============================================================================

import asyncio
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger().bind(component="alerts")

AlertSeverity = Literal["WARN", "ERROR", "CRITICAL"]


class SettlementAlert(BaseModel):
    alert_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: Optional[str] = None
    source: str
    severity: AlertSeverity = "ERROR"
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    raised_at: datetime = Field(default_factory=datetime.utcnow)


class IAlertService(ABC):
    """Interface for alert sinks (pager, chat, in-memory for tests)."""

    @abstractmethod
    async def raise_alert(self, alert: SettlementAlert) -> None:
        pass

    @abstractmethod
    async def recent(self, limit: int = 50) -> List[SettlementAlert]:
        pass


class InMemoryAlertService(IAlertService):
    """Keeps the last `capacity` alerts and mirrors each to the log."""

    def __init__(self, capacity: int = 500):
        self._alerts: List[SettlementAlert] = []
        self._capacity = capacity
        self._lock = asyncio.Lock()

    async def raise_alert(self, alert: SettlementAlert) -> None:
        log_method = logger.critical if alert.severity == "CRITICAL" else logger.error
        if alert.severity == "WARN":
            log_method = logger.warning
        log_method(
            "settlement_alert",
            alert_id=alert.alert_id,
            correlation_id=alert.correlation_id,
            source=alert.source,
            message=alert.message,
        )
        async with self._lock:
            self._alerts.append(alert)
            if len(self._alerts) > self._capacity:
                del self._alerts[: len(self._alerts) - self._capacity]

    async def recent(self, limit: int = 50) -> List[SettlementAlert]:
        async with self._lock:
            return list(reversed(self._alerts[-limit:]))
