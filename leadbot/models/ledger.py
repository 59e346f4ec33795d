# leadbot/models/ledger.py
from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from leadbot.db.base import Base


class ProcessingAttempt(Base):
    """One row per message that was handed to the AI decision service."""

    __tablename__ = "processing_attempts"

    id = Column(Integer, primary_key=True)
    talk_id = Column(String(64), nullable=False)
    lead_id = Column(String(64), nullable=False)
    contact_id = Column(String(64), nullable=False)
    message_text = Column(Text, nullable=False)
    # sha256 over the four key fields
    fingerprint = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_processing_attempts_fingerprint_created_at", "fingerprint", "created_at"),
    )


class BotAction(Base):
    __tablename__ = "bot_actions"

    id = Column(Integer, primary_key=True)
    talk_id = Column(String(64), nullable=False)
    lead_id = Column(String(64), nullable=False)
    contact_id = Column(String(64), nullable=False, index=True)
    message_text = Column(Text, nullable=False)
    fingerprint = Column(String(64), nullable=False)

    ai_decision = Column(JSONB, nullable=False)
    status_update_result = Column(JSONB, nullable=False)
    final_state = Column(String(32), nullable=False)
    processing_time_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_bot_actions_fingerprint_created_at", "fingerprint", "created_at"),
    )


class ConversionLedgerEntry(Base):
    """Per-code record of ad-conversion sends.

    ``conversion_slots`` is always a two element JSON array. Slot 0 holds the
    conversation-started event, slot 1 the charged event. A slot is either
    null or ``{"event_name", "data", "result", "sent_at"}``.
    """

    __tablename__ = "conversion_ledger"

    id = Column(Integer, primary_key=True)
    extracted_code = Column(String(32), nullable=False, unique=True)
    lead_id = Column(String(64), nullable=True, index=True)
    message_data = Column(JSONB, nullable=True)
    conversion_slots = Column(JSONB, nullable=False, server_default=text("'[null, null]'::jsonb"))
    success = Column(Boolean, nullable=False, server_default="false")

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
