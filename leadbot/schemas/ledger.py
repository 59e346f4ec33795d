# leadbot/schemas/ledger.py
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

SLOT_COUNT = 2


@dataclass(frozen=True)
class MessageKey:
    """Content identity of an inbound message.

    Retried webhooks may wrap the same text in a new envelope with a new
    message id, so dedup keys on conversation + lead + contact + text.
    """

    talk_id: str
    lead_id: str
    contact_id: str
    message_text: str

    @property
    def fingerprint(self) -> str:
        joined = "\x1f".join((self.talk_id, self.lead_id, self.contact_id, self.message_text))
        return hashlib.sha256(joined.encode("utf-8")).hexdigest()

    def as_params(self) -> Dict[str, str]:
        return {
            "talk_id": self.talk_id,
            "lead_id": self.lead_id,
            "contact_id": self.contact_id,
            "message_text": self.message_text,
            "fingerprint": self.fingerprint,
        }


@dataclass(frozen=True)
class BotActionRecord:
    key: MessageKey
    ai_decision: Dict[str, Any]
    status_update_result: Dict[str, Any]
    final_state: str
    processing_time_ms: Optional[int] = None


@dataclass(frozen=True)
class LedgerEntry:
    extracted_code: str
    conversion_slots: List[Optional[Dict[str, Any]]] = field(default_factory=lambda: [None] * SLOT_COUNT)
    success: bool = False
    lead_id: Optional[str] = None
    message_data: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def slot(self, index: int) -> Optional[Dict[str, Any]]:
        if 0 <= index < len(self.conversion_slots):
            return self.conversion_slots[index]
        return None

    def to_snapshot(self) -> Dict[str, Any]:
        return {
            "extracted_code": self.extracted_code,
            "lead_id": self.lead_id,
            "conversion_slots": self.conversion_slots,
            "success": self.success,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
