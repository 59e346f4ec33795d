# leadbot/dependencies.py
"""
FastAPI dependency providers.

Each request gets lightweight service objects wired to the shared engine
and Redis pool. Tests swap whole providers through ``app.dependency_overrides``.
"""
from __future__ import annotations

from fastapi import Depends

from leadbot.clients.agents import AgentsClient
from leadbot.clients.kommo import KommoClient
from leadbot.clients.meta_capi import MetaConversionsClient
from leadbot.core.config import settings
from leadbot.db.session import get_session_factory
from leadbot.services.conversion_ledger import CHARGED_SLOT, CONVERSATION_SLOT, ConversionLedgerWriter
from leadbot.services.conversions import ConversionService
from leadbot.services.crm_store import CrmStore
from leadbot.services.dedup import DedupEngine
from leadbot.services.ledger_store import LedgerStore
from leadbot.services.message_pipeline import MessagePipeline
from leadbot.services.orchestrator import StatusTransitionOrchestrator
from leadbot.services.redis import ReservationStore, get_redis_client


def get_ledger_store() -> LedgerStore:
    return LedgerStore(get_session_factory())


def get_crm_store() -> CrmStore:
    return CrmStore(get_session_factory())


def get_reservation_store() -> ReservationStore:
    return ReservationStore(get_redis_client())


def get_kommo_client() -> KommoClient:
    return KommoClient(
        subdomain=settings.kommo_subdomain,
        access_token=settings.kommo_access_token,
        status_ids=settings.status_ids(),
        timeout=settings.http_timeout_seconds,
    )


def get_agents_client() -> AgentsClient:
    return AgentsClient(base_url=settings.agents_api_url, timeout=settings.ai_timeout_seconds)


def get_meta_client() -> MetaConversionsClient:
    return MetaConversionsClient(
        access_token=settings.meta_access_token,
        pixel_id=settings.meta_pixel_id,
        api_version=settings.meta_api_version,
        test_event_code=settings.meta_test_event_code,
        timeout=settings.http_timeout_seconds,
    )


def get_dedup_engine(
    store: LedgerStore = Depends(get_ledger_store),
    reservations: ReservationStore = Depends(get_reservation_store),
) -> DedupEngine:
    return DedupEngine(
        store=store,
        reservations=reservations,
        timezone_name=settings.timezone,
        ai_window_minutes=settings.ai_dedup_window_minutes,
        conversion_window_minutes=settings.conversion_dedup_window_minutes,
    )


def get_conversion_service(
    dedup: DedupEngine = Depends(get_dedup_engine),
    ledger_store: LedgerStore = Depends(get_ledger_store),
    crm_store: CrmStore = Depends(get_crm_store),
    meta_client: MetaConversionsClient = Depends(get_meta_client),
) -> ConversionService:
    ledger = ConversionLedgerWriter(
        store=ledger_store,
        event_slots={
            settings.meta_event_conversation: CONVERSATION_SLOT,
            settings.meta_event_charged: CHARGED_SLOT,
        },
    )
    return ConversionService(
        dedup=dedup,
        ledger=ledger,
        meta_client=meta_client,
        crm_store=crm_store,
        ledger_store=ledger_store,
        conversation_event=settings.meta_event_conversation,
        charged_event=settings.meta_event_charged,
    )


def get_message_pipeline(
    dedup: DedupEngine = Depends(get_dedup_engine),
    conversions: ConversionService = Depends(get_conversion_service),
    ledger_store: LedgerStore = Depends(get_ledger_store),
    crm_store: CrmStore = Depends(get_crm_store),
    kommo_client: KommoClient = Depends(get_kommo_client),
    agents_client: AgentsClient = Depends(get_agents_client),
) -> MessagePipeline:
    return MessagePipeline(
        dedup=dedup,
        conversions=conversions,
        agents_client=agents_client,
        kommo_client=kommo_client,
        orchestrator=StatusTransitionOrchestrator(kommo_client=kommo_client, store=ledger_store),
        crm_store=crm_store,
        pipeline_id=settings.kommo_pipeline_id,
        context_hours=settings.contact_context_hours,
    )
