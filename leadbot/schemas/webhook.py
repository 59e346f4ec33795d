# leadbot/schemas/webhook.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StringConstraints,
    model_validator,
)


def _to_str(value: Any) -> Any:
    # Form bodies carry strings, JSON bodies carry numbers for the same ids.
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value)) if float(value).is_integer() else str(value)
    return value


def _blank_to_none(value: Any) -> Any:
    value = _to_str(value)
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


IdStr = Annotated[str, BeforeValidator(_to_str), StringConstraints(strip_whitespace=True, min_length=1)]
OptionalIdStr = Annotated[Optional[str], BeforeValidator(_blank_to_none)]
OptionalTimestamp = Annotated[Optional[int], BeforeValidator(_blank_to_none)]
OptionalFlag = Annotated[Optional[bool], BeforeValidator(_blank_to_none)]


class EventKind(str, Enum):
    MESSAGE_ADD = "message.add"
    TALK_ADD = "talk.add"
    TALK_UPDATE = "talk.update"
    LEADS_ADD = "leads.add"
    LEADS_STATUS = "leads.status"
    UNSORTED_ADD = "unsorted.add"
    UNKNOWN = "unknown"


class _WebhookItem(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class Account(_WebhookItem):
    id: OptionalIdStr = None
    subdomain: Optional[str] = None


class Author(_WebhookItem):
    id: OptionalIdStr = None
    type: Optional[str] = None
    name: Optional[str] = None


class Attachment(_WebhookItem):
    type: Optional[str] = None
    link: Optional[str] = None
    file_name: Optional[str] = None


class MessageAdd(_WebhookItem):
    id: IdStr
    talk_id: IdStr
    contact_id: IdStr
    chat_id: OptionalIdStr = None
    text: str = ""
    created_at: OptionalTimestamp = None
    type: Literal["incoming", "outgoing"] = "incoming"
    element_type: OptionalIdStr = None
    entity_type: Optional[str] = None
    element_id: OptionalIdStr = None
    entity_id: OptionalIdStr = None
    author: Optional[Author] = None
    attachment: Optional[Attachment] = None

    @model_validator(mode="after")
    def require_lead_reference(self) -> "MessageAdd":
        if not (self.entity_id or self.element_id):
            raise ValueError("message requires entity_id or element_id")
        return self

    @property
    def lead_id(self) -> str:
        return self.entity_id or self.element_id

    @property
    def attachment_payload(self) -> Optional[Dict[str, Any]]:
        if self.attachment and self.attachment.link:
            return self.attachment.model_dump(exclude_none=True)
        return None


class TalkEvent(_WebhookItem):
    talk_id: IdStr
    contact_id: OptionalIdStr = None
    chat_id: OptionalIdStr = None
    entity_id: OptionalIdStr = None
    entity_type: Optional[str] = None
    origin: Optional[str] = None
    is_in_work: OptionalFlag = None
    is_read: OptionalFlag = None
    created_at: OptionalTimestamp = None
    updated_at: OptionalTimestamp = None


class LeadAdd(_WebhookItem):
    id: IdStr
    name: Optional[str] = None
    status_id: OptionalIdStr = None
    pipeline_id: OptionalIdStr = None
    responsible_user_id: OptionalIdStr = None
    account_id: OptionalIdStr = None
    created_at: OptionalTimestamp = None


class LeadStatusChange(_WebhookItem):
    id: IdStr
    status_id: IdStr
    old_status_id: OptionalIdStr = None
    pipeline_id: OptionalIdStr = None
    old_pipeline_id: OptionalIdStr = None
    name: Optional[str] = None


class UnsortedClient(_WebhookItem):
    id: OptionalIdStr = None
    name: Optional[str] = None


class UnsortedOrigin(_WebhookItem):
    provider: Optional[str] = None
    chat_id: OptionalIdStr = None


class UnsortedMessage(_WebhookItem):
    id: OptionalIdStr = None
    text: Optional[str] = None
    manager: Optional[str] = None
    date: OptionalTimestamp = None


class UnsortedSourceData(_WebhookItem):
    name: Optional[str] = None
    service: Optional[str] = None
    source_name: Optional[str] = None
    client: Optional[UnsortedClient] = None
    origin: Optional[UnsortedOrigin] = None
    data: List[UnsortedMessage] = Field(default_factory=list)


class UnsortedContact(_WebhookItem):
    id: IdStr


class UnsortedData(_WebhookItem):
    contacts: List[UnsortedContact] = Field(default_factory=list)


class UnsortedAdd(_WebhookItem):
    uid: IdStr
    lead_id: OptionalIdStr = None
    pipeline_id: OptionalIdStr = None
    source_uid: OptionalIdStr = None
    category: Optional[str] = None
    source_data: Optional[UnsortedSourceData] = None
    data: Optional[UnsortedData] = None
    created_at: OptionalTimestamp = None

    @property
    def contact_id(self) -> Optional[str]:
        if self.data and self.data.contacts:
            return self.data.contacts[0].id
        return None

    @property
    def first_message(self) -> Optional[str]:
        if self.source_data and self.source_data.data:
            return self.source_data.data[0].text
        return None

    @property
    def client_name(self) -> Optional[str]:
        if self.source_data and self.source_data.client:
            return self.source_data.client.name
        return None


@dataclass(frozen=True)
class WebhookEvent:
    """Canonical record for one inbound CRM webhook."""

    kind: EventKind
    item: Optional[_WebhookItem] = None
    account: Optional[Account] = None
    lead_id: Optional[str] = None
    pipeline_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
