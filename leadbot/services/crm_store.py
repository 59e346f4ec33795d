# leadbot/services/crm_store.py
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from leadbot.db.session import transaction_session


def _jsonable(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in row.items()
    }


class CrmStore:
    """Local copies of CRM records plus landing-page token visits."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def upsert_contact(
        self,
        *,
        contact_id: str,
        client_id: Optional[str] = None,
        name: Optional[str] = None,
        source_name: Optional[str] = None,
    ) -> None:
        async with transaction_session(self._session_factory) as session:
            await session.execute(
                text("""
                    INSERT INTO contacts (contact_id, client_id, name, source_name, created_at, updated_at)
                    VALUES (:contact_id, :client_id, :name, :source_name, now(), now())
                    ON CONFLICT (contact_id) DO UPDATE SET
                        client_id = COALESCE(EXCLUDED.client_id, contacts.client_id),
                        name = COALESCE(EXCLUDED.name, contacts.name),
                        source_name = COALESCE(EXCLUDED.source_name, contacts.source_name),
                        updated_at = now()
                """),
                {
                    "contact_id": contact_id,
                    "client_id": client_id,
                    "name": name,
                    "source_name": source_name,
                },
            )

    async def upsert_lead(
        self,
        *,
        uid: str,
        lead_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        pipeline_id: Optional[str] = None,
        status_id: Optional[str] = None,
        client_name: Optional[str] = None,
        source_name: Optional[str] = None,
        first_message: Optional[str] = None,
    ) -> None:
        async with transaction_session(self._session_factory) as session:
            await session.execute(
                text("""
                    INSERT INTO leads
                        (uid, lead_id, contact_id, pipeline_id, status_id,
                         client_name, source_name, first_message, created_at, updated_at)
                    VALUES
                        (:uid, :lead_id, :contact_id, :pipeline_id, :status_id,
                         :client_name, :source_name, :first_message, now(), now())
                    ON CONFLICT (uid) DO UPDATE SET
                        lead_id = COALESCE(EXCLUDED.lead_id, leads.lead_id),
                        contact_id = COALESCE(EXCLUDED.contact_id, leads.contact_id),
                        pipeline_id = COALESCE(EXCLUDED.pipeline_id, leads.pipeline_id),
                        status_id = COALESCE(EXCLUDED.status_id, leads.status_id),
                        client_name = COALESCE(EXCLUDED.client_name, leads.client_name),
                        source_name = COALESCE(EXCLUDED.source_name, leads.source_name),
                        first_message = COALESCE(leads.first_message, EXCLUDED.first_message),
                        updated_at = now()
                """),
                {
                    "uid": uid,
                    "lead_id": lead_id,
                    "contact_id": contact_id,
                    "pipeline_id": pipeline_id,
                    "status_id": status_id,
                    "client_name": client_name,
                    "source_name": source_name,
                    "first_message": first_message,
                },
            )

    async def update_lead_status(self, *, lead_id: str, status_id: str, pipeline_id: Optional[str] = None) -> int:
        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text("""
                    UPDATE leads
                    SET status_id = :status_id,
                        pipeline_id = COALESCE(:pipeline_id, pipeline_id),
                        updated_at = now()
                    WHERE lead_id = :lead_id
                """),
                {"lead_id": lead_id, "status_id": status_id, "pipeline_id": pipeline_id},
            )
            return result.rowcount

    async def upsert_talk(
        self,
        *,
        talk_id: str,
        contact_id: Optional[str] = None,
        chat_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        origin: Optional[str] = None,
        is_in_work: Optional[bool] = None,
        is_read: Optional[bool] = None,
    ) -> None:
        async with transaction_session(self._session_factory) as session:
            await session.execute(
                text("""
                    INSERT INTO talks
                        (talk_id, contact_id, chat_id, entity_id, entity_type, origin,
                         is_in_work, is_read, created_at, updated_at)
                    VALUES
                        (:talk_id, :contact_id, :chat_id, :entity_id, :entity_type, :origin,
                         :is_in_work, :is_read, now(), now())
                    ON CONFLICT (talk_id) DO UPDATE SET
                        contact_id = COALESCE(EXCLUDED.contact_id, talks.contact_id),
                        chat_id = COALESCE(EXCLUDED.chat_id, talks.chat_id),
                        entity_id = COALESCE(EXCLUDED.entity_id, talks.entity_id),
                        entity_type = COALESCE(EXCLUDED.entity_type, talks.entity_type),
                        origin = COALESCE(EXCLUDED.origin, talks.origin),
                        is_in_work = COALESCE(EXCLUDED.is_in_work, talks.is_in_work),
                        is_read = COALESCE(EXCLUDED.is_read, talks.is_read),
                        updated_at = now()
                """),
                {
                    "talk_id": talk_id,
                    "contact_id": contact_id,
                    "chat_id": chat_id,
                    "entity_id": entity_id,
                    "entity_type": entity_type,
                    "origin": origin,
                    "is_in_work": is_in_work,
                    "is_read": is_read,
                },
            )

    async def upsert_message(
        self,
        *,
        message_id: str,
        talk_id: Optional[str],
        chat_id: Optional[str],
        contact_id: Optional[str],
        lead_id: Optional[str],
        text_body: Optional[str],
        message_type: Optional[str],
        author_name: Optional[str],
        sent_at: Optional[datetime],
    ) -> None:
        async with transaction_session(self._session_factory) as session:
            await session.execute(
                text("""
                    INSERT INTO messages
                        (message_id, talk_id, chat_id, contact_id, lead_id, text,
                         message_type, author_name, sent_at, created_at)
                    VALUES
                        (:message_id, :talk_id, :chat_id, :contact_id, :lead_id, :text,
                         :message_type, :author_name, :sent_at, now())
                    ON CONFLICT (message_id) DO UPDATE SET
                        text = EXCLUDED.text,
                        author_name = COALESCE(EXCLUDED.author_name, messages.author_name)
                """),
                {
                    "message_id": message_id,
                    "talk_id": talk_id,
                    "chat_id": chat_id,
                    "contact_id": contact_id,
                    "lead_id": lead_id,
                    "text": text_body,
                    "message_type": message_type,
                    "author_name": author_name,
                    "sent_at": sent_at,
                },
            )

    async def create_token_visit(self, *, token: str, visit: Dict[str, Any]) -> bool:
        """Store click data under ``token``. False when the token is already taken."""
        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text("""
                    INSERT INTO token_visits
                        (token, event_source_url, client_ip_address, client_user_agent, fbp, fbc, payload, created_at)
                    VALUES
                        (:token, :event_source_url, :client_ip_address, :client_user_agent, :fbp, :fbc,
                         CAST(:payload AS JSONB), now())
                    ON CONFLICT (token) DO NOTHING
                    RETURNING id
                """),
                {
                    "token": token,
                    "event_source_url": visit.get("event_source_url"),
                    "client_ip_address": visit.get("client_ip_address"),
                    "client_user_agent": visit.get("client_user_agent"),
                    "fbp": visit.get("fbp"),
                    "fbc": visit.get("fbc"),
                    "payload": json.dumps(visit),
                },
            )
            return result.first() is not None

    async def get_token_visit(self, token: str) -> Optional[Dict[str, Any]]:
        async with transaction_session(self._session_factory) as session:
            result = await session.execute(
                text("""
                    SELECT token, event_source_url, client_ip_address, client_user_agent, fbp, fbc, created_at
                    FROM token_visits
                    WHERE token = :token
                """),
                {"token": token},
            )
            row = result.mappings().first()
            return _jsonable(dict(row)) if row else None

    async def contact_context(
        self,
        contact_id: str,
        *,
        since: datetime,
        message_limit: int = 100,
        action_limit: int = 50,
    ) -> Dict[str, Any]:
        """Recent messages, leads and bot actions for one contact.

        The newest ``message_limit`` messages are returned oldest first. Bot
        actions are newest first.
        """
        async with transaction_session(self._session_factory) as session:
            contact = await session.execute(
                text("SELECT contact_id, client_id, name, source_name FROM contacts WHERE contact_id = :contact_id"),
                {"contact_id": contact_id},
            )
            messages = await session.execute(
                text("""
                    SELECT message_id, talk_id, text, message_type, author_name, sent_at, created_at
                    FROM messages
                    WHERE contact_id = :contact_id AND created_at >= :since
                    ORDER BY created_at DESC
                    LIMIT :message_limit
                """),
                {"contact_id": contact_id, "since": since, "message_limit": message_limit},
            )
            leads = await session.execute(
                text("""
                    SELECT lead_id, pipeline_id, status_id, client_name, first_message, created_at
                    FROM leads
                    WHERE contact_id = :contact_id AND created_at >= :since
                    ORDER BY created_at ASC
                """),
                {"contact_id": contact_id, "since": since},
            )
            bot_actions = await session.execute(
                text("""
                    SELECT talk_id, lead_id, message_text, ai_decision, status_update_result, final_state, created_at
                    FROM bot_actions
                    WHERE contact_id = :contact_id AND created_at >= :since
                    ORDER BY created_at DESC
                    LIMIT :action_limit
                """),
                {"contact_id": contact_id, "since": since, "action_limit": action_limit},
            )

            contact_row = contact.mappings().first()
            context: Dict[str, Any] = {
                "contact": _jsonable(dict(contact_row)) if contact_row else None,
                "messages": [_jsonable(dict(row)) for row in reversed(messages.mappings().all())],
                "leads": [_jsonable(dict(row)) for row in leads.mappings().all()],
                "bot_actions": [_jsonable(dict(row)) for row in bot_actions.mappings().all()],
            }
            return context

