from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from barter_federation.core.security import current_millis
from barter_federation.models.federation import (
    FederationEventType,
    FederationOutcome,
    FederationScope,
    TrustLevel,
)
from barter_federation.schemas import MessageRelayRequest, MessageRelayResponse
from barter_federation.services import (
    FederationNotInitializedError,
    RemoteServerError,
    parse_federated_address,
)

CHAT_ONLY = FederationScope(chat=True)


@pytest.fixture
def pair(make_node, helpers):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    a.repository.upsert_federated_server(helpers.peer_record("b1", b.private_key, scopes=CHAT_ONLY))
    b.repository.upsert_federated_server(helpers.peer_record("a1", a.private_key, scopes=CHAT_ONLY))
    b.chat.users.update({"bob", "carol"})
    b.chat.online.add("bob")

    async def post_message_relay(server_url, request):
        assert server_url == "http://b1.test"
        return (await b.relay.receive_relayed_message(request, "10.0.0.1")).response

    a.client.post_message_relay = AsyncMock(side_effect=post_message_relay)
    return a, b


def _relay_request(
    node, *, recipient="bob", payload="ciphertext", timestamp=None, sender_key=None
) -> MessageRelayRequest:
    signer = node.identity.signer()
    request = MessageRelayRequest(
        requesting_server_id=signer.identity.server_id,
        sender_user_id="alice",
        recipient_user_id=recipient,
        encrypted_payload=payload,
        sender_name="Alice",
        sender_public_key=sender_key,
        timestamp=timestamp if timestamp is not None else current_millis(),
    )
    request.signature = signer.sign(request.signing_payload())
    return request


@pytest.mark.parametrize(
    "address,expected",
    [
        ("bob@b1", ("bob", "b1")),
        ("bob", None),
        ("@b1", None),
        ("bob@", None),
        ("bob@b1@c1", None),
        ("", None),
    ],
)
def test_parse_federated_address(address, expected):
    assert parse_federated_address(address) == expected


@pytest.mark.asyncio
async def test_message_reaches_online_recipient(pair):
    a, b = pair

    message_id = await a.relay.send_message_to_federated_user("bob@b1", "alice", "Alice", "ciphertext")

    assert message_id is not None
    assert len(b.chat.live) == 1
    delivered = b.chat.live[0]
    assert delivered.sender_user_id == "alice@a1"
    assert delivered.sender_server_id == "a1"
    assert delivered.encrypted_payload == "ciphertext"

    sent = a.audit.get_audit_logs(event_type=FederationEventType.MESSAGE_RELAY)[0]
    assert (sent.action, sent.outcome) == ("SEND_MESSAGE_RELAY", FederationOutcome.SUCCESS)
    received = b.audit.get_audit_logs(event_type=FederationEventType.MESSAGE_RELAY)[0]
    assert (received.action, received.outcome) == ("RECEIVE_MESSAGE_RELAY", FederationOutcome.SUCCESS)


@pytest.mark.asyncio
async def test_offline_recipient_is_still_delivered(pair):
    a, b = pair

    result = await b.relay.receive_relayed_message(_relay_request(a, recipient="carol"))

    assert result.status_code == 200
    assert result.response.delivered is True
    assert result.response.reason == "stored for delivery when recipient is online"
    assert [m.recipient_user_id for m in b.chat.offline] == ["carol"]


@pytest.mark.asyncio
async def test_unknown_recipient_is_not_found(pair):
    a, b = pair

    result = await b.relay.receive_relayed_message(_relay_request(a, recipient="nobody"))

    assert result.status_code == 404
    assert result.response.delivered is False
    assert b.chat.live == [] and b.chat.offline == []


@pytest.mark.asyncio
async def test_replayed_relay_is_rejected(pair):
    a, b = pair
    request = _relay_request(a)

    first = await b.relay.receive_relayed_message(request)
    second = await b.relay.receive_relayed_message(request)

    assert first.status_code == 200
    assert second.status_code == 409
    assert len(b.chat.live) == 1


@pytest.mark.asyncio
async def test_inbound_relay_without_chat_scope(pair, helpers):
    a, b = pair
    b.repository.upsert_federated_server(
        helpers.peer_record("a1", a.private_key, scopes=FederationScope(users=True))
    )

    result = await b.relay.receive_relayed_message(_relay_request(a))

    assert result.status_code == 403
    assert b.chat.live == []


@pytest.mark.asyncio
async def test_inbound_relay_with_tampered_payload(pair):
    a, b = pair
    request = _relay_request(a)
    request.encrypted_payload = "swapped"

    result = await b.relay.receive_relayed_message(request)

    assert result.status_code == 401
    assert result.response.delivered is False


@pytest.mark.asyncio
async def test_outbound_requires_chat_scope(pair, helpers):
    a, b = pair
    a.repository.upsert_federated_server(
        helpers.peer_record("b1", b.private_key, scopes=FederationScope(users=True))
    )

    assert await a.relay.send_message_to_federated_user("bob@b1", "alice", "Alice", "ciphertext") is None

    a.client.post_message_relay.assert_not_called()
    entry = a.audit.get_audit_logs()[0]
    assert entry.outcome == FederationOutcome.FAILURE
    assert entry.error_message == "chat scope not granted"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "recipient,reason",
    [
        ("bob", "invalid federated address"),
        ("bob@zz", "target server not federated"),
    ],
)
async def test_outbound_rejects_bad_targets(pair, recipient, reason):
    a, _ = pair

    assert await a.relay.send_message_to_federated_user(recipient, "alice", None, "ciphertext") is None
    assert a.audit.get_audit_logs()[0].error_message == reason


@pytest.mark.asyncio
async def test_outbound_to_blocked_server(pair):
    a, _ = pair
    a.repository.update_server_trust_level("b1", TrustLevel.BLOCKED)

    assert await a.relay.send_message_to_federated_user("bob@b1", "alice", None, "ciphertext") is None
    assert a.audit.get_audit_logs()[0].error_message == "target server is blocked"


@pytest.mark.asyncio
async def test_outbound_network_failure_returns_none(pair):
    a, _ = pair
    a.client.post_message_relay = AsyncMock(side_effect=RemoteServerError("timed out", timed_out=True))

    assert await a.relay.send_message_to_federated_user("bob@b1", "alice", None, "ciphertext") is None
    assert a.audit.get_audit_logs()[0].outcome == FederationOutcome.TIMEOUT


@pytest.mark.asyncio
async def test_outbound_not_delivered_returns_none(pair):
    a, _ = pair
    a.client.post_message_relay = AsyncMock(
        return_value=MessageRelayResponse(delivered=False, reason="Recipient user not found on this server")
    )

    assert await a.relay.send_message_to_federated_user("bob@b1", "alice", None, "ciphertext") is None
    assert a.audit.get_audit_logs()[0].error_message == "Recipient user not found on this server"


@pytest.mark.asyncio
async def test_outbound_without_identity_raises(make_node, helpers, key_pool):
    a = make_node("a1", initialized=False)
    a.repository.upsert_federated_server(helpers.peer_record("b1", key_pool[1], scopes=CHAT_ONLY))

    with pytest.raises(FederationNotInitializedError):
        await a.relay.send_message_to_federated_user("bob@b1", "alice", None, "ciphertext")
    assert a.audit.get_audit_logs()[0].outcome == FederationOutcome.FAILURE


@pytest.mark.asyncio
async def test_unknown_recipient_does_not_burn_the_request(pair):
    a, b = pair
    request = _relay_request(a, recipient="dave")

    missing = await b.relay.receive_relayed_message(request)
    b.chat.users.add("dave")
    retried = await b.relay.receive_relayed_message(request)

    assert missing.status_code == 404
    assert retried.status_code == 200
    assert [m.recipient_user_id for m in b.chat.offline] == ["dave"]


@pytest.mark.asyncio
async def test_relay_remembers_the_remote_sender(pair):
    a, b = pair

    await b.relay.receive_relayed_message(_relay_request(a, sender_key="alice-key"))
    await b.relay.receive_relayed_message(_relay_request(a, recipient="carol"))

    sender = b.repository.get_federated_user("alice", "a1")
    assert sender is not None
    assert sender.display_name == "Alice"
    assert sender.public_key == "alice-key"
    assert sender.expires_at > sender.last_updated
    assert [u.remote_user_id for u in b.repository.list_federated_users("a1")] == ["alice"]


@pytest.mark.asyncio
async def test_rejected_relay_does_not_remember_the_sender(pair):
    a, b = pair

    await b.relay.receive_relayed_message(_relay_request(a, recipient="nobody", sender_key="alice-key"))

    assert b.repository.get_federated_user("alice", "a1") is None
