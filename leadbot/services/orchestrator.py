# leadbot/services/orchestrator.py
from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from leadbot.clients.kommo import StatusUpdateResult
from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.decision import AIDecision
from leadbot.schemas.ledger import BotActionRecord, MessageKey

logger = get_structlog_logger(__name__)


class TransitionState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    SKIPPED = "SKIPPED"
    AI_DECIDED = "AI_DECIDED"
    STATUS_UPDATED = "STATUS_UPDATED"
    STATUS_UPDATE_FAILED = "STATUS_UPDATE_FAILED"
    NO_CHANGE_NEEDED = "NO_CHANGE_NEEDED"


TERMINAL_STATES = frozenset(
    {
        TransitionState.SKIPPED,
        TransitionState.STATUS_UPDATED,
        TransitionState.STATUS_UPDATE_FAILED,
        TransitionState.NO_CHANGE_NEEDED,
    }
)


@dataclass(frozen=True)
class TransitionOutcome:
    state: TransitionState
    decision: AIDecision
    status_update: StatusUpdateResult
    audit_written: bool


class StatusTransitionOrchestrator:
    """Applies an AI decision to the CRM and writes its bot action.

    Failed status updates are terminal for the message; nothing is retried.
    """

    def __init__(self, *, kommo_client, store):
        self.kommo = kommo_client
        self.store = store

    async def apply(
        self,
        key: MessageKey,
        decision: AIDecision,
        *,
        started_at: Optional[float] = None,
    ) -> TransitionOutcome:
        if decision.should_change:
            try:
                update = await self.kommo.update_lead_status(key.lead_id, decision.new_status)
            except Exception as e:
                logger.error(
                    "transition.status_update_error",
                    lead_id=key.lead_id,
                    new_status=decision.new_status,
                    error=str(e),
                )
                update = StatusUpdateResult(success=False, error=str(e) or type(e).__name__)

            state = (
                TransitionState.STATUS_UPDATED if update.success else TransitionState.STATUS_UPDATE_FAILED
            )
        else:
            update = StatusUpdateResult(success=True)
            state = TransitionState.NO_CHANGE_NEEDED

        processing_time_ms = None
        if started_at is not None:
            processing_time_ms = int((time.monotonic() - started_at) * 1000)

        record = BotActionRecord(
            key=key,
            ai_decision=decision.to_record(),
            status_update_result=update.to_dict(),
            final_state=state.value,
            processing_time_ms=processing_time_ms,
        )

        audit_written = True
        try:
            await self.store.add_bot_action(record)
        except Exception as e:
            audit_written = False
            logger.error(
                "bot_action.write_failed",
                talk_id=key.talk_id,
                lead_id=key.lead_id,
                state=state.value,
                error=str(e),
            )

        logger.info(
            "transition.completed",
            talk_id=key.talk_id,
            lead_id=key.lead_id,
            state=state.value,
            current_status=decision.current_status,
            new_status=decision.new_status,
            should_change=decision.should_change,
        )

        return TransitionOutcome(
            state=state,
            decision=decision,
            status_update=update,
            audit_written=audit_written,
        )
