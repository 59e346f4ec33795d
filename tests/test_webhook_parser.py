from urllib.parse import urlencode

import pytest

from leadbot.core.exceptions import WebhookParseError, WebhookValidationError
from leadbot.schemas.webhook import EventKind, LeadStatusChange, MessageAdd, UnsortedAdd
from leadbot.services.webhook_parser import (
    expand_form,
    extract_lead_id,
    normalize_event,
    parse_body,
)


def message_form(**overrides) -> bytes:
    fields = {
        "account[id]": "30112233",
        "account[subdomain]": "promo",
        "message[add][0][id]": "b1f3c2d4-msg",
        "message[add][0][chat_id]": "a8e2-chat",
        "message[add][0][talk_id]": "174",
        "message[add][0][contact_id]": "9382110",
        "message[add][0][text]": "Necesito el usuario",
        "message[add][0][created_at]": "1715364000",
        "message[add][0][element_type]": "2",
        "message[add][0][entity_type]": "lead",
        "message[add][0][element_id]": "11714144",
        "message[add][0][entity_id]": "11714144",
        "message[add][0][type]": "incoming",
        "message[add][0][author][name]": "Juan",
    }
    fields.update(overrides)
    return urlencode({k: v for k, v in fields.items() if v is not None}).encode()


def test_expand_form_builds_lists_and_dicts():
    payload = expand_form(
        [
            ("leads[status][0][id]", "11714144"),
            ("leads[status][0][status_id]", "1004"),
            ("leads[status][1][id]", "11714145"),
            ("account[id]", "1"),
        ]
    )
    assert payload["leads"]["status"][0] == {"id": "11714144", "status_id": "1004"}
    assert payload["leads"]["status"][1]["id"] == "11714145"
    assert payload["account"] == {"id": "1"}


def test_expand_form_rejects_conflicting_keys():
    with pytest.raises(WebhookParseError):
        expand_form([("leads", "x"), ("leads[id]", "1")])


def test_parse_form_message():
    event = normalize_event(parse_body(message_form(), "application/x-www-form-urlencoded"))

    assert event.kind == EventKind.MESSAGE_ADD
    assert isinstance(event.item, MessageAdd)
    assert event.item.talk_id == "174"
    assert event.item.contact_id == "9382110"
    assert event.item.text == "Necesito el usuario"
    assert event.item.author.name == "Juan"
    assert event.lead_id == "11714144"
    assert event.account.subdomain == "promo"


def test_parse_json_message_coerces_numeric_ids():
    body = (
        b'{"message": {"add": [{"id": "m1", "talk_id": 174, "contact_id": 9382110,'
        b' "entity_id": 11714144, "text": "hola", "type": "incoming"}]}}'
    )
    event = normalize_event(parse_body(body, "application/json"))

    assert event.item.talk_id == "174"
    assert event.item.lead_id == "11714144"


def test_element_id_used_when_entity_id_missing():
    event = normalize_event(parse_body(message_form(**{"message[add][0][entity_id]": None})))
    assert event.lead_id == "11714144"


@pytest.mark.parametrize("field", ["talk_id", "contact_id"])
def test_message_missing_required_field(field):
    with pytest.raises(WebhookValidationError) as exc_info:
        normalize_event(parse_body(message_form(**{f"message[add][0][{field}]": None})))

    assert exc_info.value.status_code == 400
    locs = [error["loc"] for error in exc_info.value.details["errors"]]
    assert [field] in locs


def test_message_without_lead_reference():
    body = message_form(**{"message[add][0][entity_id]": None, "message[add][0][element_id]": None})
    with pytest.raises(WebhookValidationError):
        normalize_event(parse_body(body))


def test_json_message_without_talk_id_is_rejected():
    payload = {
        "message": {
            "add": [{"id": "m1", "contact_id": "9382110", "entity_id": "11714144", "text": "hola"}]
        }
    }
    with pytest.raises(WebhookValidationError) as exc_info:
        normalize_event(payload)

    assert exc_info.value.details["event"] == "message.add"
    assert exc_info.value.code == "invalid_webhook_payload"


def test_blank_talk_id_is_rejected():
    with pytest.raises(WebhookValidationError):
        normalize_event(parse_body(message_form(**{"message[add][0][talk_id]": "  "})))


def test_message_takes_priority_over_other_sections():
    body = message_form(**{"talk[update][0][talk_id]": "174", "leads[add][0][id]": "1"})
    assert normalize_event(parse_body(body)).kind == EventKind.MESSAGE_ADD


def test_unsorted_add():
    body = urlencode(
        {
            "unsorted[add][0][uid]": "uid-1",
            "unsorted[add][0][lead_id]": "11714144",
            "unsorted[add][0][pipeline_id]": "77",
            "unsorted[add][0][source_data][client][name]": "Juan",
            "unsorted[add][0][source_data][data][0][text]": "Descuento: Nv5M-ilY.",
            "unsorted[add][0][data][contacts][0][id]": "9382110",
        }
    ).encode()
    event = normalize_event(parse_body(body))

    assert event.kind == EventKind.UNSORTED_ADD
    assert isinstance(event.item, UnsortedAdd)
    assert event.item.contact_id == "9382110"
    assert event.item.first_message == "Descuento: Nv5M-ilY."
    assert event.item.client_name == "Juan"
    assert event.pipeline_id == "77"


def test_lead_status_change():
    body = urlencode({"leads[status][0][id]": "11714144", "leads[status][0][status_id]": "1004"}).encode()
    event = normalize_event(parse_body(body))

    assert event.kind == EventKind.LEADS_STATUS
    assert isinstance(event.item, LeadStatusChange)
    assert event.lead_id == "11714144"


def test_talk_update():
    body = urlencode({"talk[update][0][talk_id]": "174", "talk[update][0][is_read]": "1"}).encode()
    event = normalize_event(parse_body(body))

    assert event.kind == EventKind.TALK_UPDATE
    assert event.item.is_read is True


def test_unknown_event():
    event = normalize_event(parse_body(b"account[id]=1&contacts[update][0][id]=5"))
    assert event.kind == EventKind.UNKNOWN
    assert event.item is None


@pytest.mark.parametrize("body", [b"", b"   ", b"{not json", b"[1, 2]", b"a=1&&=="])
def test_unparseable_bodies(body):
    with pytest.raises(WebhookParseError) as exc_info:
        parse_body(body)
    assert exc_info.value.status_code == 400


@pytest.mark.parametrize(
    "payload",
    [
        {"leadId": "11714144"},
        {"lead_id": 11714144},
        {"id": "11714144"},
        {"leads[id]": "11714144"},
        {"leads": {"id": "11714144"}},
        {"leads": {"add": [{"id": "11714144"}]}},
        {"leads": {"status": [{"id": "11714144", "status_id": "1004"}]}},
        {"leads": [{"id": "11714144"}]},
    ],
)
def test_extract_lead_id(payload):
    assert extract_lead_id(payload) == "11714144"


def test_extract_lead_id_missing():
    with pytest.raises(WebhookValidationError) as exc_info:
        extract_lead_id({"contact": {"id": "1"}})
    assert exc_info.value.code == "missing_lead_id"
