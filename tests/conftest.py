import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("KOMMO_STATUS_REVISAR", "1001")
os.environ.setdefault("KOMMO_STATUS_PIDIO_USUARIO", "1002")
os.environ.setdefault("KOMMO_STATUS_PIDIO_CBU_ALIAS", "1003")
os.environ.setdefault("KOMMO_STATUS_CARGO", "1004")
os.environ.setdefault("KOMMO_STATUS_REVISAR_IMAGEN", "1005")
os.environ.setdefault("KOMMO_STATUS_NO_CARGO", "1006")
os.environ.setdefault("KOMMO_STATUS_NO_ATENDER", "1007")
os.environ.setdefault("KOMMO_STATUS_SEGUIMIENTO", "1008")

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from leadbot.clients.kommo import StatusUpdateResult
from leadbot.schemas.conversion import ConversionResult
from leadbot.schemas.decision import UNKNOWN_STATUS, AIDecision
from leadbot.schemas.ledger import SLOT_COUNT, BotActionRecord, LedgerEntry, MessageKey
from leadbot.services.conversion_ledger import (
    CHARGED_SLOT,
    CONVERSATION_SLOT,
    ConversionLedgerWriter,
)
from leadbot.services.conversions import ConversionService
from leadbot.services.dedup import DedupEngine
from leadbot.services.message_pipeline import MessagePipeline
from leadbot.services.orchestrator import StatusTransitionOrchestrator
from leadbot.services.redis import Reservation

CONVERSATION_EVENT = "ConversacionCRM1"
CHARGED_EVENT = "CargoCRM1"

STATUS_IDS = {
    "Revisar": "1001",
    "PidioUsuario": "1002",
    "PidioCbuAlias": "1003",
    "Cargo": "1004",
    "RevisarImagen": "1005",
    "NoCargo": "1006",
    "NoAtender": "1007",
    "Seguimiento": "1008",
    "Ganado": "142",
    "Perdido": "143",
}


class FrozenClock:
    def __init__(self, now: Optional[datetime] = None):
        # 15:00 in Buenos Aires, well clear of local midnight
        self.now = now or datetime(2024, 5, 10, 18, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def merge_slots(slots, slot_index, slot):
    """Python copy of the slot rule in the ledger upsert statement.

    A slot holding a successful send is kept, the other slot is left as it is.
    """
    merged = list(slots) + [None] * (SLOT_COUNT - len(slots))
    current = merged[slot_index]
    if not (current and (current.get("result") or {}).get("success")):
        merged[slot_index] = slot
    return merged


class FakeLedgerStore:
    """In-memory stand-in for LedgerStore."""

    def __init__(self, clock: FrozenClock):
        self.clock = clock
        self.processing_attempts: List[Tuple[MessageKey, datetime]] = []
        self.bot_actions: List[Tuple[BotActionRecord, datetime]] = []
        self.entries: Dict[str, LedgerEntry] = {}
        self.snapshots: Dict[str, Dict[str, Any]] = {}
        self.fail_bot_actions = False
        self.fail_processing_attempts = False

    async def has_processing_attempt(self, key: MessageKey, *, since: datetime) -> bool:
        return any(k == key and at >= since for k, at in self.processing_attempts)

    async def add_processing_attempt(self, key: MessageKey) -> None:
        if self.fail_processing_attempts:
            raise RuntimeError("processing_attempts insert failed")
        self.processing_attempts.append((key, self.clock()))

    async def has_recent_bot_action(self, key: MessageKey, *, since: datetime) -> bool:
        return any(r.key == key and at >= since for r, at in self.bot_actions)

    async def add_bot_action(self, record: BotActionRecord) -> None:
        if self.fail_bot_actions:
            raise RuntimeError("bot_actions insert failed")
        self.bot_actions.append((record, self.clock()))

    async def get_conversion(self, code: str) -> Optional[LedgerEntry]:
        return self.entries.get(code)

    async def get_conversion_by_lead(self, lead_id: str) -> Optional[LedgerEntry]:
        matches = [e for e in self.entries.values() if e.lead_id == lead_id]
        if not matches:
            return None
        return max(matches, key=lambda e: e.updated_at)

    async def upsert_conversion_slot(
        self,
        *,
        code: str,
        slot_index: int,
        slot: Dict[str, Any],
        success: bool,
        lead_id: Optional[str] = None,
        message_data: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        now = self.clock()
        existing = self.entries.get(code)
        if existing is None:
            entry = LedgerEntry(
                extracted_code=code,
                conversion_slots=merge_slots([None, None], slot_index, slot),
                success=success,
                lead_id=lead_id,
                message_data=message_data,
                created_at=now,
                updated_at=now,
            )
        else:
            entry = LedgerEntry(
                extracted_code=code,
                conversion_slots=merge_slots(existing.conversion_slots, slot_index, slot),
                success=existing.success or success,
                lead_id=existing.lead_id or lead_id,
                message_data=existing.message_data or message_data,
                created_at=existing.created_at,
                updated_at=now,
            )
        self.entries[code] = entry
        return entry

    async def update_lead_snapshot(self, lead_id: str, snapshot: Dict[str, Any]) -> int:
        self.snapshots[lead_id] = snapshot
        return 1


class FakeCrmStore:
    """In-memory stand-in for CrmStore."""

    def __init__(self):
        self.contacts: Dict[str, Dict[str, Any]] = {}
        self.leads: Dict[str, Dict[str, Any]] = {}
        self.talks: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.token_visits: Dict[str, Dict[str, Any]] = {}
        self.status_updates: List[Dict[str, Any]] = []

    async def upsert_contact(self, *, contact_id: str, **fields) -> None:
        self.contacts.setdefault(contact_id, {}).update({k: v for k, v in fields.items() if v is not None})

    async def upsert_lead(self, *, uid: str, **fields) -> None:
        self.leads.setdefault(uid, {}).update({k: v for k, v in fields.items() if v is not None})

    async def update_lead_status(self, *, lead_id: str, status_id: str, pipeline_id: Optional[str] = None) -> int:
        self.status_updates.append({"lead_id": lead_id, "status_id": status_id, "pipeline_id": pipeline_id})
        return 1

    async def upsert_talk(self, *, talk_id: str, **fields) -> None:
        self.talks.setdefault(talk_id, {}).update({k: v for k, v in fields.items() if v is not None})

    async def upsert_message(self, *, message_id: str, **fields) -> None:
        self.messages[message_id] = fields

    async def create_token_visit(self, *, token: str, visit: Dict[str, Any]) -> bool:
        if token in self.token_visits:
            return False
        self.token_visits[token] = dict(visit, token=token)
        return True

    async def get_token_visit(self, token: str) -> Optional[Dict[str, Any]]:
        return self.token_visits.get(token)

    async def contact_context(
        self, contact_id: str, *, since: datetime, message_limit: int = 100, action_limit: int = 50
    ) -> Dict[str, Any]:
        messages = [m for m in self.messages.values() if m.get("contact_id") == contact_id]
        return {
            "contact": self.contacts.get(contact_id),
            "messages": messages[-message_limit:],
            "leads": [],
            "bot_actions": [],
        }


class FakeReservationStore:
    """SET NX semantics over a dict. ``available=False`` mimics Redis being down."""

    def __init__(self, available: bool = True):
        self.available = available
        self.held: Dict[str, str] = {}
        self.released: List[str] = []

    async def acquire(self, key: str, ttl_seconds: int) -> Reservation:
        token = str(uuid.uuid4())
        if not self.available:
            return Reservation(key=key, token=token, acquired=True, degraded=True)
        if key in self.held:
            return Reservation(key=key, token=token, acquired=False)
        self.held[key] = token
        return Reservation(key=key, token=token, acquired=True)

    async def release(self, reservation: Reservation) -> bool:
        if self.held.get(reservation.key) == reservation.token:
            del self.held[reservation.key]
            self.released.append(reservation.key)
            return True
        return False


class FakeKommoClient:
    def __init__(self, current_status: str = "Revisar"):
        self.current_status = current_status
        self.status_ids = dict(STATUS_IDS)
        self.status_names = {v: k for k, v in STATUS_IDS.items()}
        self.updates: List[Tuple[str, str]] = []
        self.update_result = StatusUpdateResult(success=True)

    def status_name(self, status_id: Optional[str]) -> Optional[str]:
        return self.status_names.get(str(status_id)) if status_id is not None else None

    async def get_lead_status(self, lead_id: str) -> str:
        return self.current_status or UNKNOWN_STATUS

    async def update_lead_status(self, lead_id: str, status_name: str) -> StatusUpdateResult:
        self.updates.append((lead_id, status_name))
        return self.update_result


class FakeAgentsClient:
    def __init__(self, decision: Optional[AIDecision] = None):
        self.decision = decision
        self.requests = []

    async def decide(self, request) -> AIDecision:
        self.requests.append(request)
        if self.decision is None:
            return AIDecision.fallback(request.current_status, "no decision configured")
        return self.decision


class FakeMetaClient:
    def __init__(self):
        self.events: List[Dict[str, Any]] = []
        self.fail_with: Optional[str] = None

    async def send_event(self, event: Dict[str, Any]) -> ConversionResult:
        self.events.append(event)
        if self.fail_with:
            return ConversionResult(success=False, error=self.fail_with)
        return ConversionResult(success=True, data={"events_received": 1})


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def ledger_store(clock):
    return FakeLedgerStore(clock)


@pytest.fixture
def crm_store():
    return FakeCrmStore()


@pytest.fixture
def reservations():
    return FakeReservationStore()


@pytest.fixture
def kommo_client():
    return FakeKommoClient()


@pytest.fixture
def agents_client():
    return FakeAgentsClient(
        AIDecision(
            current_status="Revisar",
            new_status="PidioUsuario",
            should_change=True,
            reasoning="customer asked for a username",
            confidence=0.92,
        )
    )


@pytest.fixture
def meta_client():
    return FakeMetaClient()


@pytest.fixture
def dedup(ledger_store, reservations, clock):
    return DedupEngine(
        store=ledger_store,
        reservations=reservations,
        timezone_name="America/Argentina/Buenos_Aires",
        ai_window_minutes=30,
        conversion_window_minutes=30,
        clock=clock,
    )


@pytest.fixture
def ledger_writer(ledger_store, clock):
    return ConversionLedgerWriter(
        store=ledger_store,
        event_slots={CONVERSATION_EVENT: CONVERSATION_SLOT, CHARGED_EVENT: CHARGED_SLOT},
        clock=clock,
    )


@pytest.fixture
def conversions(dedup, ledger_writer, meta_client, crm_store, ledger_store, clock):
    return ConversionService(
        dedup=dedup,
        ledger=ledger_writer,
        meta_client=meta_client,
        crm_store=crm_store,
        ledger_store=ledger_store,
        conversation_event=CONVERSATION_EVENT,
        charged_event=CHARGED_EVENT,
        clock=clock,
    )


@pytest.fixture
def orchestrator(kommo_client, ledger_store):
    return StatusTransitionOrchestrator(kommo_client=kommo_client, store=ledger_store)


@pytest.fixture
def pipeline(dedup, conversions, agents_client, kommo_client, orchestrator, crm_store, clock):
    return MessagePipeline(
        dedup=dedup,
        conversions=conversions,
        agents_client=agents_client,
        kommo_client=kommo_client,
        orchestrator=orchestrator,
        crm_store=crm_store,
        pipeline_id=None,
        context_hours=24,
        clock=clock,
    )


@pytest.fixture
def token_visit(crm_store):
    crm_store.token_visits["fauqwPlA"] = {
        "token": "fauqwPlA",
        "event_source_url": "https://promo.example.com/landing",
        "client_ip_address": "181.23.45.67",
        "client_user_agent": "Mozilla/5.0 (Linux; Android 13)",
        "fbp": "fb.1.1715300000000.123456789",
        "fbc": "fb.1.1715300000000.AbCdEf",
    }
    return crm_store.token_visits["fauqwPlA"]
