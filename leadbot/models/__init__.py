# leadbot/models/__init__.py
"""
SQLAlchemy ORM models for database entities.
"""

from leadbot.models.crm import Contact, Lead, Message, Talk, TokenVisit
from leadbot.models.ledger import BotAction, ConversionLedgerEntry, ProcessingAttempt

__all__ = [
    "BotAction",
    "Contact",
    "ConversionLedgerEntry",
    "Lead",
    "Message",
    "ProcessingAttempt",
    "Talk",
    "TokenVisit",
]
