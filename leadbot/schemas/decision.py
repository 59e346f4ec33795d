# leadbot/schemas/decision.py
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field

LeadStatus = Literal[
    "Revisar",
    "PidioUsuario",
    "PidioCbuAlias",
    "Cargo",
    "RevisarImagen",
    "NoCargo",
    "NoAtender",
    "Seguimiento",
    "Ganado",
    "Perdido",
    "sin-status",
]

# Cargo (funds confirmed) is only ever set by a human.
BotAssignableStatus = Literal[
    "Revisar",
    "PidioUsuario",
    "PidioCbuAlias",
    "RevisarImagen",
    "NoCargo",
    "NoAtender",
    "sin-status",
]

LEAD_STATUSES = get_args(LeadStatus)
BOT_ASSIGNABLE_STATUSES = get_args(BotAssignableStatus)

FUNDS_CONFIRMED_STATUS = "Cargo"
REVIEW_STATUS = "Revisar"
UNKNOWN_STATUS = "sin-status"


class AIDecision(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_status: LeadStatus = Field(alias="currentStatus")
    new_status: BotAssignableStatus = Field(alias="newStatus")
    should_change: bool = Field(alias="shouldChange")
    reasoning: str = ""
    confidence: float = Field(ge=0.0, le=1.0)
    attachment: Optional[Any] = None

    @classmethod
    def fallback(cls, current_status: str, reason: str) -> "AIDecision":
        """Decision used whenever the AI service cannot be trusted.

        Keeps the lead where it is, except that a lead sitting in Cargo is sent
        back to Revisar so a human confirms the payment. Statuses the bot may
        not assign are answered with Revisar but left untouched.
        """
        if current_status not in LEAD_STATUSES:
            current_status = UNKNOWN_STATUS

        if current_status == FUNDS_CONFIRMED_STATUS:
            return cls(
                current_status=current_status,
                new_status=REVIEW_STATUS,
                should_change=True,
                reasoning=f"fallback: {reason}; funds-confirmed status needs manual review",
                confidence=0.0,
            )

        if current_status in BOT_ASSIGNABLE_STATUSES:
            new_status = current_status
        else:
            new_status = REVIEW_STATUS

        return cls(
            current_status=current_status,
            new_status=new_status,
            should_change=False,
            reasoning=f"fallback: {reason}",
            confidence=0.0,
        )

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class AIDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_text: str = Field(alias="messageText")
    current_status: str = Field(alias="currentStatus")
    talk_id: str = Field(alias="talkId")
    contact_context: Optional[Dict[str, Any]] = Field(default=None, alias="contactContext")
    rules: Optional[List[Dict[str, Any]]] = None
    settings: Optional[Dict[str, Any]] = None
    statuses: Optional[List[str]] = None
    attachment: Optional[Dict[str, Any]] = None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
