# leadbot/services/ledger_store.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leadbot.db.session import transaction_session
from leadbot.schemas.ledger import SLOT_COUNT, BotActionRecord, LedgerEntry, MessageKey

_KEY_MATCH = """
    fingerprint = :fingerprint
    AND talk_id = :talk_id
    AND lead_id = :lead_id
    AND contact_id = :contact_id
    AND message_text = :message_text
"""

_LEDGER_COLUMNS = "extracted_code, lead_id, message_data, conversion_slots, success, created_at, updated_at"

# One statement per upsert. The target slot is only written while it holds no
# successful send, the other slot is never touched, success is OR-merged.
_UPSERT_SLOT_SQL = f"""
    INSERT INTO conversion_ledger
        (extracted_code, lead_id, message_data, conversion_slots, success, created_at, updated_at)
    VALUES
        (:code, :lead_id, CAST(:message_data AS JSONB), CAST(:initial_slots AS JSONB), :success, now(), now())
    ON CONFLICT (extracted_code) DO UPDATE SET
        conversion_slots = CASE
            WHEN COALESCE(
                (conversion_ledger.conversion_slots -> CAST(:slot_index AS integer) -> 'result' ->> 'success')::boolean,
                false
            )
            THEN conversion_ledger.conversion_slots
            ELSE jsonb_set(
                conversion_ledger.conversion_slots,
                CAST(:slot_path AS text[]),
                CAST(:slot AS JSONB),
                true
            )
        END,
        success = conversion_ledger.success OR EXCLUDED.success,
        lead_id = COALESCE(conversion_ledger.lead_id, EXCLUDED.lead_id),
        message_data = COALESCE(conversion_ledger.message_data, EXCLUDED.message_data),
        updated_at = now()
    RETURNING {_LEDGER_COLUMNS}
"""


def _entry_from_row(row: Mapping[str, Any]) -> LedgerEntry:
    slots = row["conversion_slots"]
    if isinstance(slots, str):
        slots = json.loads(slots)
    message_data = row["message_data"]
    if isinstance(message_data, str):
        message_data = json.loads(message_data)

    slots = list(slots or [])
    slots += [None] * (SLOT_COUNT - len(slots))

    return LedgerEntry(
        extracted_code=row["extracted_code"],
        lead_id=row["lead_id"],
        message_data=message_data,
        conversion_slots=slots,
        success=bool(row["success"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class LedgerStore:
    """PostgreSQL access for the processing, audit and conversion ledgers."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def has_processing_attempt(self, key: MessageKey, *, since: datetime) -> bool:
        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text(f"""
                    SELECT 1 FROM processing_attempts
                    WHERE {_KEY_MATCH}
                    AND created_at >= :since
                    LIMIT 1
                """),
                {**key.as_params(), "since": since},
            )
            return result.first() is not None

    async def add_processing_attempt(self, key: MessageKey) -> None:
        async with transaction_session(self._session_factory) as session:
            await session.execute(
                text("""
                    INSERT INTO processing_attempts
                        (talk_id, lead_id, contact_id, message_text, fingerprint, created_at)
                    VALUES
                        (:talk_id, :lead_id, :contact_id, :message_text, :fingerprint, now())
                """),
                key.as_params(),
            )

    async def has_recent_bot_action(self, key: MessageKey, *, since: datetime) -> bool:
        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text(f"""
                    SELECT 1 FROM bot_actions
                    WHERE {_KEY_MATCH}
                    AND created_at >= :since
                    LIMIT 1
                """),
                {**key.as_params(), "since": since},
            )
            return result.first() is not None

    async def add_bot_action(self, record: BotActionRecord) -> None:
        async with transaction_session(self._session_factory) as session:
            await session.execute(
                text("""
                    INSERT INTO bot_actions
                        (talk_id, lead_id, contact_id, message_text, fingerprint,
                         ai_decision, status_update_result, final_state, processing_time_ms, created_at)
                    VALUES
                        (:talk_id, :lead_id, :contact_id, :message_text, :fingerprint,
                         CAST(:ai_decision AS JSONB), CAST(:status_update_result AS JSONB),
                         :final_state, :processing_time_ms, now())
                """),
                {
                    **record.key.as_params(),
                    "ai_decision": json.dumps(record.ai_decision),
                    "status_update_result": json.dumps(record.status_update_result),
                    "final_state": record.final_state,
                    "processing_time_ms": record.processing_time_ms,
                },
            )

    async def get_conversion(self, code: str) -> Optional[LedgerEntry]:
        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text(f"SELECT {_LEDGER_COLUMNS} FROM conversion_ledger WHERE extracted_code = :code"),
                {"code": code},
            )
            row = result.mappings().first()
            return _entry_from_row(row) if row else None

    async def get_conversion_by_lead(self, lead_id: str) -> Optional[LedgerEntry]:
        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text(f"""
                    SELECT {_LEDGER_COLUMNS} FROM conversion_ledger
                    WHERE lead_id = :lead_id
                    ORDER BY updated_at DESC
                    LIMIT 1
                """),
                {"lead_id": lead_id},
            )
            row = result.mappings().first()
            return _entry_from_row(row) if row else None

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
        initial_slots: List[Optional[Dict[str, Any]]] = [None] * SLOT_COUNT
        initial_slots[slot_index] = slot

        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text(_UPSERT_SLOT_SQL),
                {
                    "code": code,
                    "lead_id": lead_id,
                    "message_data": json.dumps(message_data) if message_data is not None else None,
                    "initial_slots": json.dumps(initial_slots),
                    "success": success,
                    "slot_index": slot_index,
                    "slot_path": [str(slot_index)],
                    "slot": json.dumps(slot),
                },
            )
            return _entry_from_row(result.mappings().one())

    async def update_lead_snapshot(self, lead_id: str, snapshot: Dict[str, Any]) -> int:
        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text("""
                    UPDATE leads
                    SET conversion_snapshot = CAST(:snapshot AS JSONB),
                        updated_at = now()
                    WHERE lead_id = :lead_id
                """),
                {"lead_id": lead_id, "snapshot": json.dumps(snapshot)},
            )
            return result.rowcount
