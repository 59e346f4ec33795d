# leadbot/services/conversions.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from leadbot.core.exceptions import ConversionDataError, NotFoundError
from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.conversion import ConversionEvent, ConversionResult, UserData
from leadbot.services.conversion_ledger import CONVERSATION_SLOT, ConversionLedgerWriter
from leadbot.services.dedup import DedupEngine, utcnow

logger = get_structlog_logger(__name__)


class ConversionService:
    """Guard, send and record ad-conversion events for promotional codes."""

    def __init__(
        self,
        *,
        dedup: DedupEngine,
        ledger: ConversionLedgerWriter,
        meta_client,
        crm_store,
        ledger_store,
        conversation_event: str,
        charged_event: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dedup = dedup
        self.ledger = ledger
        self.meta_client = meta_client
        self.crm_store = crm_store
        self.ledger_store = ledger_store
        self.conversation_event = conversation_event
        self.charged_event = charged_event
        self.clock = clock

    def build_event(
        self,
        event_name: str,
        *,
        user_data: Dict[str, Any],
        event_source_url: Optional[str],
    ) -> Dict[str, Any]:
        event = ConversionEvent(
            event_name=event_name,
            event_time=int(self.clock().timestamp()),
            event_source_url=event_source_url,
            user_data=UserData.model_validate(user_data or {}),
        )
        return event.model_dump(exclude_none=True)

    async def send(
        self,
        code: str,
        event_name: str,
        *,
        user_data: Dict[str, Any],
        event_source_url: Optional[str],
        lead_id: Optional[str] = None,
        message_data: Optional[Dict[str, Any]] = None,
    ) -> ConversionResult:
        """Send ``event_name`` for ``code`` at most once per conversion window."""
        slot_index = self.ledger.slot_for(event_name)

        verdict = await self.dedup.claim_conversion(code, event_name)
        if verdict.duplicate:
            return ConversionResult.duplicate()

        event = self.build_event(event_name, user_data=user_data, event_source_url=event_source_url)
        try:
            result = await self.meta_client.send_event(event)
        except Exception:
            await self.dedup.release(verdict)
            raise

        if not result.success:
            await self.dedup.release(verdict)

        await self.ledger.upsert(
            code,
            slot_index,
            event,
            result,
            lead_id=lead_id,
            message_data=message_data,
        )

        if result.success:
            logger.info("conversion.sent", code=code, event_name=event_name, lead_id=lead_id)
        else:
            logger.warning("conversion.failed", code=code, event_name=event_name, error=result.error)

        return result

    async def conversation_started(
        self,
        code: str,
        *,
        lead_id: Optional[str],
        message_data: Optional[Dict[str, Any]] = None,
    ) -> Optional[ConversionResult]:
        """Send the conversation-started event when ``code`` matches a landing-page visit.

        Returns None when no visit was recorded for the code.
        """
        visit = await self.crm_store.get_token_visit(code)
        if visit is None:
            logger.info("conversion.no_token_visit", code=code, lead_id=lead_id)
            return None

        user_data = {
            "client_ip_address": visit.get("client_ip_address"),
            "client_user_agent": visit.get("client_user_agent"),
            "fbp": visit.get("fbp"),
            "fbc": visit.get("fbc"),
        }
        return await self.send(
            code,
            self.conversation_event,
            user_data=user_data,
            event_source_url=visit.get("event_source_url"),
            lead_id=lead_id,
            message_data=message_data,
        )

    async def charged(self, lead_id: str) -> ConversionResult:
        """Send the charged event for a lead, reusing the click data of its first conversion.

        Raises ``NotFoundError`` when no conversion was ever recorded for the lead
        and ``ConversionDataError`` when the first conversion kept no user data.
        """
        entry = await self.ledger_store.get_conversion_by_lead(lead_id)
        if entry is None:
            raise NotFoundError(
                f"No conversion record for lead {lead_id}",
                code="conversion_not_found",
                details={"lead_id": lead_id},
            )

        first = entry.slot(CONVERSATION_SLOT) or {}
        original = first.get("data") or {}
        user_data = original.get("user_data")
        if not user_data:
            raise ConversionDataError(
                f"Conversion record for lead {lead_id} carries no user data",
                code="conversion_user_data_missing",
                details={"lead_id": lead_id, "code": entry.extracted_code},
            )

        return await self.send(
            entry.extracted_code,
            self.charged_event,
            user_data=user_data,
            event_source_url=original.get("event_source_url"),
            lead_id=lead_id,
            message_data={"trigger": "charged", "lead_id": lead_id},
        )
