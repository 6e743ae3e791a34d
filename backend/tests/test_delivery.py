"""Tests for broadcast and directed delivery."""
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeTransport
from relaychat.chat.delivery import RECIPIENT_NOT_FOUND, SEND_FAILED, TEXT_REQUIRED
from relaychat.chat.models import DirectedStatus


# ---------------------------------------------------------------------------
# Broadcast
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_broadcast_reaches_every_connection_including_sender(gateway, connect, store):
    alice = await connect("alice")
    bob = await connect("bob")
    carol = await connect("carol")
    for conn in (alice, bob, carol):
        conn.transport.clear()

    message = await gateway.delivery.send_broadcast(alice, "hello room")

    frames = [conn.transport.of_type("new_broadcast_message") for conn in (alice, bob, carol)]
    assert all(len(f) == 1 for f in frames)
    assert frames[0] == frames[1] == frames[2]
    payload = frames[0][0]
    assert payload["senderId"] == alice.user_id
    assert payload["senderName"] == "alice"
    assert payload["text"] == "hello room"
    assert payload["id"] == message.id

    history = await store.list_recent_broadcasts(10)
    assert [m.text for m in history] == ["hello room"]


@pytest.mark.asyncio
async def test_broadcast_counts_sent_for_sender(gateway, connect):
    alice = await connect("alice")

    await gateway.delivery.send_broadcast(alice, "one")
    await gateway.delivery.send_broadcast(alice, "two")

    assert gateway.sampler.network_stats(alice.connection_id).packetsSent == 2


@pytest.mark.asyncio
async def test_broadcast_fans_out_when_persistence_fails(gateway, connect, store):
    alice = await connect("alice")
    bob = await connect("bob")
    bob.transport.clear()

    with patch.object(
        store, "insert_broadcast_message", AsyncMock(side_effect=RuntimeError("disk full"))
    ):
        message = await gateway.delivery.send_broadcast(alice, "still here")

    assert message.id is None
    (frame,) = bob.transport.of_type("new_broadcast_message")
    assert frame["id"] is None
    assert frame["text"] == "still here"


@pytest.mark.asyncio
async def test_empty_broadcast_is_rejected(gateway, connect, store):
    alice = await connect("alice")
    bob = await connect("bob")
    alice.transport.clear()
    bob.transport.clear()

    assert await gateway.delivery.send_broadcast(alice, "   ") is None

    assert alice.transport.types() == ["error"]
    assert bob.transport.sent == []
    assert await store.list_recent_broadcasts(10) == []


# ---------------------------------------------------------------------------
# Directed
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_directed_to_live_recipient_is_delivered(gateway, connect, store):
    alice = await connect("alice")
    bob = await connect("bob")
    alice.transport.clear()
    bob.transport.clear()

    message = await gateway.delivery.send_directed(alice, bob.user_id, "hi bob")

    assert message.status == DirectedStatus.DELIVERED
    (pushed,) = bob.transport.of_type("new_directed_message")
    assert pushed["status"] == "delivered"
    assert pushed["fromUserId"] == alice.user_id
    assert pushed["toUsername"] == "bob"
    assert pushed["deliveredAt"] is not None

    (ack,) = alice.transport.of_type("directed_message_sent_ack")
    assert ack["id"] == message.id
    assert ack["status"] == "delivered"
    assert alice.transport.of_type("new_directed_message") == []

    (stored,) = await store.find_directed_messages([message.id])
    assert stored.status == DirectedStatus.DELIVERED
    assert stored.deliveredAt is not None


@pytest.mark.asyncio
async def test_directed_to_offline_recipient_stays_sent(gateway, connect, store):
    alice = await connect("alice")
    bob = await store.create_user("bob", "555-bob", "x")
    alice.transport.clear()

    message = await gateway.delivery.send_directed(alice, bob.id, "are you there?")

    assert message.status == DirectedStatus.SENT
    (ack,) = alice.transport.of_type("directed_message_sent_ack")
    assert ack["status"] == "sent"
    assert ack["deliveredAt"] is None

    (stored,) = await store.find_directed_messages([message.id])
    assert stored.status == DirectedStatus.SENT


@pytest.mark.asyncio
async def test_delivered_status_is_persisted_before_push(gateway, connect, store):
    log = []
    alice = await connect("alice")
    bob = await connect("bob", FakeTransport(log=log))
    log.clear()

    original = store.update_directed_message_status

    async def tracking_update(*args, **kwargs):
        log.append("persist:delivered")
        return await original(*args, **kwargs)

    with patch.object(store, "update_directed_message_status", side_effect=tracking_update):
        await gateway.delivery.send_directed(alice, bob.user_id, "ordered")

    assert log == ["persist:delivered", "send:new_directed_message"]


@pytest.mark.asyncio
async def test_recipient_leaving_during_persist_is_not_pushed(gateway, connect, store):
    alice = await connect("alice")
    bob = await connect("bob")
    bob.transport.clear()

    original = store.insert_directed_message

    async def insert_then_disconnect(*args, **kwargs):
        message_id = await original(*args, **kwargs)
        await gateway.disconnect(bob)
        return message_id

    with patch.object(store, "insert_directed_message", side_effect=insert_then_disconnect):
        message = await gateway.delivery.send_directed(alice, bob.user_id, "too late")

    assert message.status == DirectedStatus.SENT
    assert bob.transport.of_type("new_directed_message") == []
    (stored,) = await store.find_directed_messages([message.id])
    assert stored.status == DirectedStatus.SENT


@pytest.mark.asyncio
async def test_recipient_leaving_during_delivered_update(gateway, connect, store):
    alice = await connect("alice")
    bob = await connect("bob")
    alice.transport.clear()
    bob.transport.clear()

    original = store.update_directed_message_status

    async def update_then_disconnect(*args, **kwargs):
        updated = await original(*args, **kwargs)
        await gateway.disconnect(bob)
        return updated

    with patch.object(store, "update_directed_message_status", side_effect=update_then_disconnect):
        message = await gateway.delivery.send_directed(alice, bob.user_id, "just missed")

    # The delivered write stands; the message waits in history instead
    assert bob.transport.of_type("new_directed_message") == []
    assert message.status == DirectedStatus.DELIVERED
    (ack,) = alice.transport.of_type("directed_message_sent_ack")
    assert ack["status"] == "delivered"
    (stored,) = await store.find_directed_messages([message.id])
    assert stored.status == DirectedStatus.DELIVERED

    (history,) = [
        m for m in await store.find_directed_conversation(alice.user_id, bob.user_id)
        if m.id == message.id
    ]
    assert history.text == "just missed"


@pytest.mark.asyncio
async def test_unknown_recipient_is_reported_to_sender_only(gateway, connect, store):
    alice = await connect("alice")
    bob = await connect("bob")
    alice.transport.clear()
    bob.transport.clear()

    assert await gateway.delivery.send_directed(alice, 9999, "hello?") is None

    assert alice.transport.sent == [
        {"type": "directed_send_error", "reason": RECIPIENT_NOT_FOUND}
    ]
    assert bob.transport.sent == []
    assert await store.find_directed_conversation(alice.user_id, 9999) == []


@pytest.mark.asyncio
async def test_recipient_lookup_failure(gateway, connect, store):
    alice = await connect("alice")
    alice.transport.clear()

    with patch.object(
        store, "find_user_by_id", AsyncMock(side_effect=RuntimeError("db locked"))
    ):
        assert await gateway.delivery.send_directed(alice, 2, "hello") is None

    assert alice.transport.sent == [{"type": "directed_send_error", "reason": SEND_FAILED}]


@pytest.mark.asyncio
async def test_empty_directed_text_is_rejected(gateway, connect):
    alice = await connect("alice")
    bob = await connect("bob")
    alice.transport.clear()

    assert await gateway.delivery.send_directed(alice, bob.user_id, "") is None

    assert alice.transport.sent == [{"type": "directed_send_error", "reason": TEXT_REQUIRED}]


@pytest.mark.asyncio
async def test_directed_insert_failure_still_delivers_live(gateway, connect, store):
    alice = await connect("alice")
    bob = await connect("bob")
    alice.transport.clear()
    bob.transport.clear()

    with patch.object(
        store, "insert_directed_message", AsyncMock(side_effect=RuntimeError("disk full"))
    ):
        message = await gateway.delivery.send_directed(alice, bob.user_id, "unsaved")

    assert message.id is None
    (pushed,) = bob.transport.of_type("new_directed_message")
    assert pushed["text"] == "unsaved"
    (ack,) = alice.transport.of_type("directed_message_sent_ack")
    assert ack["id"] is None
