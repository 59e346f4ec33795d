# leadbot/services/message_pipeline.py
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from leadbot.core.exceptions import ConversionDataError, NotFoundError
from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.conversion import ConversionResult
from leadbot.schemas.decision import FUNDS_CONFIRMED_STATUS, LEAD_STATUSES, AIDecisionRequest
from leadbot.schemas.ledger import MessageKey
from leadbot.schemas.responses import WebhookResponse
from leadbot.schemas.webhook import (
    EventKind,
    LeadAdd,
    LeadStatusChange,
    MessageAdd,
    TalkEvent,
    UnsortedAdd,
    WebhookEvent,
)
from leadbot.services.code_extractor import extract_code
from leadbot.services.dedup import DedupEngine, DedupVerdict, utcnow

logger = get_structlog_logger(__name__)


def _duplicate_response(verdict: DedupVerdict, message: str) -> WebhookResponse:
    return WebhookResponse(
        success=True,
        processed=False,
        duplicate=True,
        reason=verdict.reason,
        state="SKIPPED",
        message=message,
    )


def _conversion_body(result: Optional[ConversionResult]) -> Optional[Dict[str, Any]]:
    if result is None:
        return None
    body = result.to_dict()
    if result.is_duplicate:
        body["duplicate"] = True
    return body


class MessagePipeline:
    """Routes a normalized webhook event to the work it triggers."""

    def __init__(
        self,
        *,
        dedup: DedupEngine,
        conversions,
        agents_client,
        kommo_client,
        orchestrator,
        crm_store,
        pipeline_id: Optional[str] = None,
        context_hours: int = 24,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.dedup = dedup
        self.conversions = conversions
        self.agents = agents_client
        self.kommo = kommo_client
        self.orchestrator = orchestrator
        self.crm_store = crm_store
        self.pipeline_id = pipeline_id
        self.context_window = timedelta(hours=context_hours)
        self.clock = clock

        self._handlers: Dict[EventKind, Callable[[WebhookEvent], Awaitable[WebhookResponse]]] = {
            EventKind.MESSAGE_ADD: self.handle_message,
            EventKind.UNSORTED_ADD: self.handle_unsorted,
            EventKind.LEADS_STATUS: self.handle_lead_status,
            EventKind.LEADS_ADD: self.handle_lead_add,
            EventKind.TALK_ADD: self.handle_talk,
            EventKind.TALK_UPDATE: self.handle_talk,
        }

    async def handle(self, event: WebhookEvent) -> WebhookResponse:
        if self.pipeline_id and event.pipeline_id and event.pipeline_id != self.pipeline_id:
            logger.info(
                "webhook.pipeline_rejected",
                kind=event.kind.value,
                pipeline_id=event.pipeline_id,
                expected=self.pipeline_id,
            )
            return WebhookResponse(
                success=False,
                processed=False,
                reason="pipeline_mismatch",
                message=f"Pipeline {event.pipeline_id} is not handled by this service",
            )

        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.info("webhook.ignored", kind=event.kind.value)
            return WebhookResponse(
                success=True,
                processed=False,
                message="Webhook received but not processed",
            )

        return await handler(event)

    async def handle_message(self, event: WebhookEvent) -> WebhookResponse:
        message: MessageAdd = event.item
        lead_id = message.lead_id

        await self.crm_store.upsert_message(
            message_id=message.id,
            talk_id=message.talk_id,
            chat_id=message.chat_id,
            contact_id=message.contact_id,
            lead_id=lead_id,
            text_body=message.text,
            message_type=message.type,
            author_name=message.author.name if message.author else None,
            sent_at=datetime.fromtimestamp(message.created_at, tz=timezone.utc) if message.created_at else None,
        )

        if message.type != "incoming":
            return WebhookResponse(success=True, processed=False, message="Outgoing message stored")

        text = message.text.strip()
        if not text and message.attachment_payload is None:
            return WebhookResponse(success=True, processed=False, message="Message without text")

        key = MessageKey(
            talk_id=message.talk_id,
            lead_id=lead_id,
            contact_id=message.contact_id,
            message_text=message.text,
        )

        verdict = await self.dedup.check_message(key)
        if verdict.duplicate:
            return _duplicate_response(verdict, "Message already processed")

        code = extract_code(text)
        conversion = None
        if code:
            conversion = await self.conversions.conversation_started(
                code,
                lead_id=lead_id,
                message_data={
                    "message_id": message.id,
                    "talk_id": message.talk_id,
                    "chat_id": message.chat_id,
                    "contact_id": message.contact_id,
                    "text": message.text,
                },
            )

        current_status = await self.kommo.get_lead_status(lead_id)
        contact_context = await self.crm_store.contact_context(
            message.contact_id,
            since=self.clock() - self.context_window,
        )

        verdict = await self.dedup.claim_ai_processing(key)
        if verdict.duplicate:
            return _duplicate_response(verdict, "Message already processed")

        started_at = time.monotonic()
        try:
            decision = await self.agents.decide(
                AIDecisionRequest(
                    message_text=message.text,
                    current_status=current_status,
                    talk_id=message.talk_id,
                    contact_context=contact_context,
                    statuses=list(LEAD_STATUSES),
                    attachment=message.attachment_payload,
                )
            )
            outcome = await self.orchestrator.apply(key, decision, started_at=started_at)
        except Exception:
            await self.dedup.release(verdict)
            raise

        return WebhookResponse(
            success=True,
            processed=True,
            message="Message processed",
            state=outcome.state.value,
            decision=decision.to_record(),
            current_status=current_status,
            extracted_code=code,
            conversion=_conversion_body(conversion),
        )

    async def handle_unsorted(self, event: WebhookEvent) -> WebhookResponse:
        unsorted: UnsortedAdd = event.item
        contact_id = unsorted.contact_id
        source_name = unsorted.source_data.source_name if unsorted.source_data else None

        if contact_id:
            client = unsorted.source_data.client if unsorted.source_data else None
            await self.crm_store.upsert_contact(
                contact_id=contact_id,
                client_id=client.id if client else None,
                name=unsorted.client_name,
                source_name=source_name,
            )

        await self.crm_store.upsert_lead(
            uid=unsorted.uid,
            lead_id=unsorted.lead_id,
            contact_id=contact_id,
            pipeline_id=unsorted.pipeline_id,
            client_name=unsorted.client_name,
            source_name=source_name,
            first_message=unsorted.first_message,
        )

        code = extract_code(unsorted.first_message)
        conversion = None
        if code:
            conversion = await self.conversions.conversation_started(
                code,
                lead_id=unsorted.lead_id,
                message_data={
                    "uid": unsorted.uid,
                    "contact_id": contact_id,
                    "text": unsorted.first_message,
                },
            )

        return WebhookResponse(
            success=True,
            processed=True,
            message="Unsorted lead stored",
            extracted_code=code,
            conversion=_conversion_body(conversion),
        )

    async def handle_lead_add(self, event: WebhookEvent) -> WebhookResponse:
        lead: LeadAdd = event.item
        await self.crm_store.upsert_lead(
            uid=f"lead:{lead.id}",
            lead_id=lead.id,
            pipeline_id=lead.pipeline_id,
            status_id=lead.status_id,
            client_name=lead.name,
        )
        return WebhookResponse(success=True, processed=True, message="Lead stored")

    async def handle_lead_status(self, event: WebhookEvent) -> WebhookResponse:
        change: LeadStatusChange = event.item
        await self.crm_store.update_lead_status(
            lead_id=change.id,
            status_id=change.status_id,
            pipeline_id=change.pipeline_id,
        )

        status_name = self.kommo.status_name(change.status_id)
        if status_name != FUNDS_CONFIRMED_STATUS:
            return WebhookResponse(
                success=True,
                processed=False,
                current_status=status_name,
                message="Status change recorded",
            )

        try:
            result = await self.conversions.charged(change.id)
        except (NotFoundError, ConversionDataError) as e:
            logger.info("conversion.charged_skipped", lead_id=change.id, reason=e.code)
            return WebhookResponse(
                success=True,
                processed=False,
                current_status=status_name,
                message=e.message,
            )

        return WebhookResponse(
            success=result.success or result.is_duplicate,
            processed=True,
            duplicate=True if result.is_duplicate else None,
            current_status=status_name,
            message="Charged conversion handled",
            conversion=_conversion_body(result),
        )

    async def handle_talk(self, event: WebhookEvent) -> WebhookResponse:
        talk: TalkEvent = event.item
        await self.crm_store.upsert_talk(
            talk_id=talk.talk_id,
            contact_id=talk.contact_id,
            chat_id=talk.chat_id,
            entity_id=talk.entity_id,
            entity_type=talk.entity_type,
            origin=talk.origin,
            is_in_work=talk.is_in_work,
            is_read=talk.is_read,
        )
        return WebhookResponse(success=True, processed=True, message="Talk stored")
