# leadbot/services/conversion_ledger.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.conversion import ConversionResult
from leadbot.schemas.ledger import SLOT_COUNT, LedgerEntry
from leadbot.services.dedup import utcnow

logger = get_structlog_logger(__name__)

CONVERSATION_SLOT = 0
CHARGED_SLOT = 1


class ConversionLedgerWriter:
    """Records every conversion send against its extracted code."""

    def __init__(
        self,
        *,
        store,
        event_slots: Dict[str, int],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.event_slots = event_slots
        self.clock = clock

    def slot_for(self, event_name: str) -> int:
        try:
            return self.event_slots[event_name]
        except KeyError:
            raise ValueError(f"no ledger slot for conversion event {event_name!r}") from None

    async def upsert(
        self,
        code: str,
        slot_index: int,
        conversion_data: Dict[str, Any],
        conversion_result: ConversionResult,
        *,
        lead_id: Optional[str] = None,
        message_data: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        if slot_index not in range(SLOT_COUNT):
            raise ValueError(f"slot_index must be 0 or 1, got {slot_index}")

        slot = {
            "event_name": conversion_data.get("event_name"),
            "data": conversion_data,
            "result": conversion_result.to_dict(),
            "sent_at": self.clock().isoformat(),
        }

        entry = await self.store.upsert_conversion_slot(
            code=code,
            slot_index=slot_index,
            slot=slot,
            success=conversion_result.success,
            lead_id=lead_id,
            message_data=message_data,
        )

        logger.info(
            "conversion_ledger.upserted",
            code=code,
            slot_index=slot_index,
            event_name=slot["event_name"],
            slot_success=conversion_result.success,
            entry_success=entry.success,
        )

        if entry.lead_id:
            try:
                await self.store.update_lead_snapshot(entry.lead_id, entry.to_snapshot())
            except Exception as e:
                logger.warning(
                    "conversion_ledger.snapshot_failed",
                    code=code,
                    lead_id=entry.lead_id,
                    error=str(e),
                )

        return entry
