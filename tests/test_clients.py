from unittest.mock import AsyncMock, patch

import pytest

from leadbot.clients.agents import AgentsClient
from leadbot.clients.kommo import KommoClient
from leadbot.clients.meta_capi import MetaConversionsClient
from leadbot.schemas.decision import AIDecisionRequest

STATUS_IDS = {"Revisar": "1001", "PidioUsuario": "1002", "Cargo": "1004"}


def decision_request(current_status="Revisar"):
    return AIDecisionRequest(
        message_text="Necesito el usuario",
        current_status=current_status,
        talk_id="174",
    )


@pytest.fixture
def agents():
    return AgentsClient(base_url="http://agents:8080/", timeout=5)


@pytest.fixture
def kommo():
    return KommoClient(subdomain="promo", access_token="secret", status_ids=STATUS_IDS, timeout=5)


def test_agents_request_payload_uses_camel_case():
    payload = decision_request().to_payload()
    assert payload == {
        "messageText": "Necesito el usuario",
        "currentStatus": "Revisar",
        "talkId": "174",
    }


@pytest.mark.asyncio
async def test_agents_decision_parsed(agents):
    body = {
        "decision": {
            "currentStatus": "Revisar",
            "newStatus": "PidioUsuario",
            "shouldChange": True,
            "reasoning": "username requested",
            "confidence": 0.88,
        }
    }
    with patch("leadbot.clients.http.request_json", AsyncMock(return_value=(True, 200, body, None))) as mock:
        decision = await agents.decide(decision_request())

    assert decision.new_status == "PidioUsuario"
    assert decision.should_change is True
    assert mock.call_args.args == ("POST", "http://agents:8080/api/agents/sales")


@pytest.mark.asyncio
async def test_agents_timeout_falls_back(agents):
    with patch("leadbot.clients.http.request_json", AsyncMock(return_value=(False, None, None, "Request timeout"))):
        decision = await agents.decide(decision_request("PidioUsuario"))

    assert decision.new_status == "PidioUsuario"
    assert decision.should_change is False
    assert decision.confidence == 0
    assert "Request timeout" in decision.reasoning


@pytest.mark.asyncio
async def test_agents_cargo_proposal_falls_back(agents):
    body = {
        "currentStatus": "Revisar",
        "newStatus": "Cargo",
        "shouldChange": True,
        "reasoning": "payment screenshot",
        "confidence": 0.99,
    }
    with patch("leadbot.clients.http.request_json", AsyncMock(return_value=(True, 200, body, None))):
        decision = await agents.decide(decision_request())

    assert decision.new_status == "Revisar"
    assert decision.should_change is False


@pytest.mark.asyncio
async def test_agents_fallback_from_cargo(agents):
    with patch("leadbot.clients.http.request_json", AsyncMock(return_value=(False, 502, "bad gateway", "HTTP 502"))):
        decision = await agents.decide(decision_request("Cargo"))

    assert decision.new_status == "Revisar"
    assert decision.should_change is True


@pytest.mark.asyncio
async def test_kommo_status_lookup(kommo):
    with patch(
        "leadbot.clients.http.request_json",
        AsyncMock(return_value=(True, 200, {"id": 11714144, "status_id": 1004}, None)),
    ):
        assert await kommo.get_lead_status("11714144") == "Cargo"


@pytest.mark.asyncio
async def test_kommo_status_lookup_failure(kommo):
    with patch("leadbot.clients.http.request_json", AsyncMock(return_value=(False, 404, None, "HTTP 404"))):
        assert await kommo.get_lead_status("11714144") == "sin-status"


@pytest.mark.asyncio
async def test_kommo_unmapped_status(kommo):
    with patch(
        "leadbot.clients.http.request_json",
        AsyncMock(return_value=(True, 200, {"status_id": 999}, None)),
    ):
        assert await kommo.get_lead_status("11714144") == "sin-status"


@pytest.mark.asyncio
async def test_kommo_update_status(kommo):
    with patch("leadbot.clients.http.request_json", AsyncMock(return_value=(True, 200, {}, None))) as mock:
        result = await kommo.update_lead_status("11714144", "PidioUsuario")

    assert result.success
    assert mock.call_args.args == ("PATCH", "https://promo.kommo.com/api/v4/leads/11714144")
    assert mock.call_args.kwargs["json"] == {"status_id": 1002}
    assert mock.call_args.kwargs["headers"] == {"Authorization": "Bearer secret"}


@pytest.mark.asyncio
async def test_kommo_update_unconfigured_status(kommo):
    with patch("leadbot.clients.http.request_json", AsyncMock()) as mock:
        result = await kommo.update_lead_status("11714144", "NoAtender")

    assert not result.success
    mock.assert_not_called()


@pytest.mark.asyncio
async def test_kommo_update_failure(kommo):
    with patch("leadbot.clients.http.request_json", AsyncMock(return_value=(False, 401, {}, "HTTP 401: {}"))):
        result = await kommo.update_lead_status("11714144", "PidioUsuario")

    assert result.to_dict() == {"success": False, "error": "HTTP 401: {}"}


@pytest.mark.asyncio
async def test_meta_send_event():
    client = MetaConversionsClient(access_token="tok", pixel_id="123", test_event_code="TEST42")
    event = {"event_name": "ConversacionCRM1", "event_time": 1715364000, "action_source": "website"}

    with patch(
        "leadbot.clients.http.request_json",
        AsyncMock(return_value=(True, 200, {"events_received": 1}, None)),
    ) as mock:
        result = await client.send_event(event)

    assert result.success
    assert result.data == {"events_received": 1}
    assert mock.call_args.args[1] == "https://graph.facebook.com/v18.0/123/events?access_token=tok"
    assert mock.call_args.kwargs["json"] == {"data": [event], "test_event_code": "TEST42"}


@pytest.mark.asyncio
async def test_meta_failure_returns_result():
    client = MetaConversionsClient(access_token="tok", pixel_id="123")
    error_body = {"error": {"message": "Invalid parameter"}}

    with patch("leadbot.clients.http.request_json", AsyncMock(return_value=(False, 400, error_body, "HTTP 400"))):
        result = await client.send_event({"event_name": "CargoCRM1"})

    assert not result.success
    assert result.error == error_body


@pytest.mark.asyncio
async def test_meta_not_configured():
    client = MetaConversionsClient(access_token="", pixel_id="")
    result = await client.send_event({"event_name": "CargoCRM1"})

    assert not result.success
