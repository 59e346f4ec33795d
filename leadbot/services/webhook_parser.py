# leadbot/services/webhook_parser.py
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple, Type
from urllib.parse import parse_qsl

from pydantic import ValidationError

from leadbot.core.exceptions import WebhookParseError, WebhookValidationError
from leadbot.core.logging import get_structlog_logger
from leadbot.schemas.webhook import (
    Account,
    EventKind,
    LeadAdd,
    LeadStatusChange,
    MessageAdd,
    TalkEvent,
    UnsortedAdd,
    WebhookEvent,
    _WebhookItem,
)

logger = get_structlog_logger(__name__)

_KEY_RE = re.compile(r"^([^\[\]]+)((?:\[[^\[\]]*\])*)$")
_SEGMENT_RE = re.compile(r"\[([^\[\]]*)\]")

# Checked in order; the first kind present in the payload is the event.
EVENT_PATHS: Tuple[Tuple[EventKind, Tuple[str, str], Type[_WebhookItem]], ...] = (
    (EventKind.MESSAGE_ADD, ("message", "add"), MessageAdd),
    (EventKind.UNSORTED_ADD, ("unsorted", "add"), UnsortedAdd),
    (EventKind.LEADS_STATUS, ("leads", "status"), LeadStatusChange),
    (EventKind.LEADS_ADD, ("leads", "add"), LeadAdd),
    (EventKind.TALK_ADD, ("talk", "add"), TalkEvent),
    (EventKind.TALK_UPDATE, ("talk", "update"), TalkEvent),
)


def parse_body(raw: bytes, content_type: Optional[str] = None) -> Dict[str, Any]:
    """Decode a webhook body into a nested dict.

    JSON objects are returned as-is. Everything else is treated as
    ``application/x-www-form-urlencoded`` with bracketed keys.
    """
    if not raw or not raw.strip():
        raise WebhookParseError("Empty webhook body")

    try:
        body = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise WebhookParseError("Webhook body is not valid UTF-8") from e

    stripped = body.lstrip()
    if (content_type and "json" in content_type.lower()) or stripped.startswith("{"):
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as e:
            raise WebhookParseError("Webhook body is not valid JSON", details={"error": str(e)}) from e
        if not isinstance(payload, dict):
            raise WebhookParseError("Webhook JSON body must be an object")
        return payload

    try:
        pairs = parse_qsl(body, keep_blank_values=True, strict_parsing=True)
    except ValueError as e:
        raise WebhookParseError("Webhook form body could not be decoded", details={"error": str(e)}) from e

    return expand_form(pairs)


def expand_form(pairs: List[Tuple[str, str]]) -> Dict[str, Any]:
    """Expand ``a[b][0][c]=v`` style keys into nested dicts and lists."""
    root: Dict[str, Any] = {}

    for key, value in pairs:
        match = _KEY_RE.match(key)
        if match:
            path = [match.group(1)] + _SEGMENT_RE.findall(match.group(2))
        else:
            path = [key]

        node = root
        for segment in path[:-1]:
            if segment == "":
                segment = str(len(node))
            child = node.setdefault(segment, {})
            if not isinstance(child, dict):
                raise WebhookParseError("Conflicting webhook keys", details={"key": key})
            node = child

        leaf = path[-1] if path[-1] != "" else str(len(node))
        if isinstance(node.get(leaf), dict):
            raise WebhookParseError("Conflicting webhook keys", details={"key": key})
        node[leaf] = value

    return _listify(root)


def _listify(node: Any) -> Any:
    if not isinstance(node, dict):
        return node

    converted = {key: _listify(value) for key, value in node.items()}
    if converted and all(key.isdigit() for key in converted):
        return [converted[key] for key in sorted(converted, key=int)]
    return converted


def _first_item(section: Any) -> Optional[Dict[str, Any]]:
    if isinstance(section, list):
        section = section[0] if section else None
    return section if isinstance(section, dict) else None


def _present(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def normalize_event(payload: Dict[str, Any]) -> WebhookEvent:
    """Map a decoded webhook payload onto its canonical event."""
    account = None
    if isinstance(payload.get("account"), dict):
        account = Account.model_validate(payload["account"])

    for kind, (section, action), model in EVENT_PATHS:
        container = payload.get(section)
        if not isinstance(container, dict) or action not in container:
            continue

        data = _first_item(container[action])
        if data is None:
            raise WebhookValidationError(
                f"{kind.value} webhook carries no item",
                details={"event": kind.value},
            )

        try:
            item = model.model_validate(data)
        except ValidationError as e:
            errors = [
                {"loc": list(error.get("loc", [])), "msg": error.get("msg", "Validation error")}
                for error in e.errors()
            ]
            logger.warning("webhook.validation_failed", kind=kind.value, errors=errors)
            raise WebhookValidationError(
                f"{kind.value} webhook is missing required fields",
                details={"event": kind.value, "errors": errors},
            ) from e

        return WebhookEvent(
            kind=kind,
            item=item,
            account=account,
            lead_id=_lead_id_for(item),
            pipeline_id=getattr(item, "pipeline_id", None),
            raw=payload,
        )

    return WebhookEvent(kind=EventKind.UNKNOWN, account=account, raw=payload)


def _lead_id_for(item: _WebhookItem) -> Optional[str]:
    if isinstance(item, MessageAdd):
        return item.lead_id
    if isinstance(item, (LeadAdd, LeadStatusChange)):
        return item.id
    if isinstance(item, UnsortedAdd):
        return item.lead_id
    if isinstance(item, TalkEvent) and item.entity_type in (None, "lead", "leads"):
        return item.entity_id
    return None


def extract_lead_id(payload: Dict[str, Any]) -> str:
    """Find the lead id in a trigger payload.

    Looks at ``leadId``, ``lead_id``, ``id``, ``leads[id]``,
    ``leads[add][0][id]`` and finally any ``leads`` object or list.
    """
    for key in ("leadId", "lead_id", "id", "leads[id]", "leads[add][0][id]"):
        if _present(payload.get(key)):
            return str(payload[key]).strip()

    leads = payload.get("leads")
    if isinstance(leads, dict):
        if _present(leads.get("id")):
            return str(leads["id"]).strip()
        first = _first_item(leads.get("add"))
        if first and _present(first.get("id")):
            return str(first["id"]).strip()
        for section in leads.values():
            first = _first_item(section)
            if first and _present(first.get("id")):
                return str(first["id"]).strip()
    elif isinstance(leads, list):
        first = _first_item(leads)
        if first and _present(first.get("id")):
            return str(first["id"]).strip()

    raise WebhookValidationError("No lead id found in webhook", code="missing_lead_id")
