# services/platform_config.py
# ============================================================================
# PAYMENT SETTLEMENT ENGINE — PLATFORM CONFIG SNAPSHOT
# ============================================================================
# Loads platformSettings/config once per settlement. The frozen snapshot is
# stored on the outbox entry, so retried side effects compute with the same
# multipliers as the first attempt.
# ============================================================================

from typing import Optional

import structlog
from pydantic import ValidationError

from schemas.settlement_models import PlatformConfig
from storage.document_store import IDocumentStore

logger = structlog.get_logger().bind(component="platform_config")

PLATFORM_SETTINGS = "platformSettings"
CONFIG_DOC_ID = "config"


class PlatformConfigProvider:
    def __init__(self, store: IDocumentStore, override: Optional[PlatformConfig] = None):
        self._store = store
        self._override = override

    async def snapshot(self) -> PlatformConfig:
        if self._override is not None:
            return self._override

        doc = await self._store.get(PLATFORM_SETTINGS, CONFIG_DOC_ID)
        if not doc:
            return PlatformConfig()
        try:
            return PlatformConfig.model_validate({"pointsConfig": doc.get("pointsConfig") or {}})
        except ValidationError as e:
            # Fall back to defaults rather than block settlement on bad settings
            logger.warning("platform_config_invalid", error=str(e))
            return PlatformConfig()
