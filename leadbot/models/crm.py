# leadbot/models/crm.py
from __future__ import annotations

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from leadbot.db.base import Base


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True)
    contact_id = Column(String(64), nullable=False, unique=True)
    client_id = Column(String(128), nullable=True, index=True)
    name = Column(String(200), nullable=True)
    source_name = Column(String(200), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True)
    # unsorted uid, or "lead:<id>" for leads that never went through the unsorted inbox
    uid = Column(String(128), nullable=False, unique=True)
    lead_id = Column(String(64), nullable=True, index=True)
    contact_id = Column(String(64), nullable=True, index=True)
    pipeline_id = Column(String(64), nullable=True)
    status_id = Column(String(64), nullable=True)
    client_name = Column(String(200), nullable=True)
    source_name = Column(String(200), nullable=True)
    first_message = Column(Text, nullable=True)

    # Denormalized copy of the conversion ledger entry for display
    conversion_snapshot = Column(JSONB, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Talk(Base):
    __tablename__ = "talks"

    id = Column(Integer, primary_key=True)
    talk_id = Column(String(64), nullable=False, unique=True)
    contact_id = Column(String(64), nullable=True, index=True)
    chat_id = Column(String(128), nullable=True)
    entity_id = Column(String(64), nullable=True)
    entity_type = Column(String(32), nullable=True)
    origin = Column(String(64), nullable=True)
    is_in_work = Column(Boolean, nullable=True)
    is_read = Column(Boolean, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    message_id = Column(String(128), nullable=False, unique=True)
    talk_id = Column(String(64), nullable=True)
    chat_id = Column(String(128), nullable=True)
    contact_id = Column(String(64), nullable=True, index=True)
    lead_id = Column(String(64), nullable=True)
    text = Column(Text, nullable=True)
    message_type = Column(String(16), nullable=True)
    author_name = Column(String(200), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class TokenVisit(Base):
    """Landing-page click data keyed by the short code handed to the visitor."""

    __tablename__ = "token_visits"

    id = Column(Integer, primary_key=True)
    token = Column(String(32), nullable=False, unique=True)
    event_source_url = Column(Text, nullable=True)
    client_ip_address = Column(String(64), nullable=True)
    client_user_agent = Column(Text, nullable=True)
    fbp = Column(String(255), nullable=True)
    fbc = Column(String(255), nullable=True)
    payload = Column(JSONB, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
