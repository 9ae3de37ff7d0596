"""
Points Ledger - loyalty point grants.

Each grant is an append-only PointsLedgerEvent whose document id is derived
from the logical grant (user, reason, grant key). Re-awarding the same grant
collides on that id and is reported as already applied, so callers can retry
freely.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from schemas.settlement_models import PointsLedgerEvent, to_document
from storage.document_store import DuplicateKeyError, IDocumentStore

logger = structlog.get_logger().bind(component="points_ledger")

POINTS_LEDGER_EVENTS = "pointsLedgerEvents"

PURCHASE_COMPLETE = "PURCHASE_COMPLETE"
SALE_COMPLETE = "SALE_COMPLETE"


def grant_id(user_id: str, reason_code: str, grant_key: str) -> str:
    digest = hashlib.sha256(f"{user_id}|{reason_code}|{grant_key}".encode("utf-8")).hexdigest()
    return f"pts_{digest[:32]}"


def event_hash(payload: Dict[str, Any]) -> str:
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class IPointsLedger(ABC):
    @abstractmethod
    async def award(
        self,
        user_id: str,
        points: int,
        reason_code: str,
        metadata: Optional[Dict[str, Any]] = None,
        grant_key: Optional[str] = None,
    ) -> bool:
        """Record a grant. Returns False when this grant was already recorded."""
        pass


class DocumentPointsLedger(IPointsLedger):
    def __init__(self, store: IDocumentStore):
        self._store = store

    async def award(
        self,
        user_id: str,
        points: int,
        reason_code: str,
        metadata: Optional[Dict[str, Any]] = None,
        grant_key: Optional[str] = None,
    ) -> bool:
        metadata = metadata or {}
        key = grant_key or json.dumps(metadata, sort_keys=True, default=str)
        event_id = grant_id(user_id, reason_code, key)

        payload = {
            "event_id": event_id,
            "user_id": user_id,
            "points": points,
            "action": "award",
            "reason_code": reason_code,
            "metadata": metadata,
            "timestamp": datetime.utcnow().isoformat(),
        }
        event = PointsLedgerEvent(**payload, event_hash=event_hash(payload))

        try:
            await self._store.create(POINTS_LEDGER_EVENTS, event_id, to_document(event))
        except DuplicateKeyError:
            logger.info("points_already_awarded", user_id=user_id, reason_code=reason_code, event_id=event_id)
            return False

        logger.info("points_awarded", user_id=user_id, points=points, reason_code=reason_code, event_id=event_id)
        return True
