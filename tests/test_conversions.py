from datetime import timedelta

import pytest

from leadbot.core.exceptions import ConversionDataError, NotFoundError
from leadbot.schemas.conversion import DUPLICATE_CONVERSION
from leadbot.schemas.ledger import LedgerEntry


@pytest.mark.asyncio
async def test_conversation_started_sends_and_records(conversions, meta_client, ledger_store, token_visit, clock):
    result = await conversions.conversation_started("fauqwPlA", lead_id="11714144")

    assert result.success
    event = meta_client.events[0]
    assert event["event_name"] == "ConversacionCRM1"
    assert event["event_time"] == int(clock().timestamp())
    assert event["action_source"] == "website"
    assert event["event_source_url"] == token_visit["event_source_url"]
    assert event["user_data"]["fbp"] == token_visit["fbp"]

    entry = ledger_store.entries["fauqwPlA"]
    assert entry.lead_id == "11714144"
    assert entry.conversion_slots[0]["event_name"] == "ConversacionCRM1"


@pytest.mark.asyncio
async def test_conversation_started_without_visit(conversions, meta_client, ledger_store):
    assert await conversions.conversation_started("unknownX", lead_id="1") is None
    assert meta_client.events == []
    assert ledger_store.entries == {}


@pytest.mark.asyncio
async def test_second_send_within_window_is_duplicate(conversions, meta_client, token_visit, clock):
    await conversions.conversation_started("fauqwPlA", lead_id="11714144")
    clock.advance(minutes=5)
    result = await conversions.conversation_started("fauqwPlA", lead_id="11714144")

    assert result.is_duplicate
    assert result.error == DUPLICATE_CONVERSION
    assert len(meta_client.events) == 1


@pytest.mark.asyncio
async def test_charged_follows_conversation(conversions, meta_client, ledger_store, token_visit):
    await conversions.conversation_started("fauqwPlA", lead_id="11714144")
    duplicate = await conversions.conversation_started("fauqwPlA", lead_id="11714144")
    charged = await conversions.charged("11714144")

    assert duplicate.is_duplicate
    assert charged.success
    assert [e["event_name"] for e in meta_client.events] == ["ConversacionCRM1", "CargoCRM1"]
    assert meta_client.events[1]["user_data"] == meta_client.events[0]["user_data"]

    entry = ledger_store.entries["fauqwPlA"]
    assert entry.conversion_slots[0]["event_name"] == "ConversacionCRM1"
    assert entry.conversion_slots[1]["event_name"] == "CargoCRM1"


@pytest.mark.asyncio
async def test_failed_send_is_recorded_and_retryable(conversions, meta_client, ledger_store, token_visit, reservations):
    meta_client.fail_with = "HTTP 500: upstream"
    failed = await conversions.conversation_started("fauqwPlA", lead_id="11714144")

    assert not failed.success
    assert not failed.is_duplicate
    assert ledger_store.entries["fauqwPlA"].success is False
    assert reservations.held == {}

    meta_client.fail_with = None
    retried = await conversions.conversation_started("fauqwPlA", lead_id="11714144")

    assert retried.success
    assert ledger_store.entries["fauqwPlA"].success is True


@pytest.mark.asyncio
async def test_resend_allowed_after_window(conversions, meta_client, token_visit, clock, reservations):
    await conversions.conversation_started("fauqwPlA", lead_id="11714144")
    clock.advance(minutes=31)
    # The Redis claim would have expired by now
    reservations.held.clear()

    result = await conversions.conversation_started("fauqwPlA", lead_id="11714144")
    assert result.success
    assert len(meta_client.events) == 2


@pytest.mark.asyncio
async def test_charged_without_entry(conversions):
    with pytest.raises(NotFoundError) as exc_info:
        await conversions.charged("999")
    assert exc_info.value.code == "conversion_not_found"
    assert exc_info.value.status_code == 404


@pytest.mark.asyncio
async def test_charged_without_user_data(conversions, ledger_store, clock):
    ledger_store.entries["abc12345"] = LedgerEntry(
        extracted_code="abc12345",
        lead_id="555",
        conversion_slots=[None, None],
        updated_at=clock() - timedelta(minutes=1),
    )
    with pytest.raises(ConversionDataError) as exc_info:
        await conversions.charged("555")
    assert exc_info.value.code == "conversion_user_data_missing"
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_meta_exception_releases_claim(conversions, meta_client, token_visit, reservations):
    async def boom(event):
        raise RuntimeError("connection reset")

    meta_client.send_event = boom

    with pytest.raises(RuntimeError):
        await conversions.conversation_started("fauqwPlA", lead_id="11714144")
    assert reservations.held == {}
