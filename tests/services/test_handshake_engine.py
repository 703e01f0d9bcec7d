from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from barter_federation.core import crypto
from barter_federation.core.security import REPLAY_WINDOW_MS, current_millis
from barter_federation.models.federation import (
    FederationEventType,
    FederationOutcome,
    FederationScope,
    TrustLevel,
)
from barter_federation.schemas import HandshakeRequest
from barter_federation.services import (
    FederationNotInitializedError,
    HandshakeSecurityError,
    RemoteServerError,
)

PROPOSED = FederationScope(users=True, postings=True, chat=True)
GRANTED = FederationScope(users=True, postings=True, chat=False)


def _wire(initiator, acceptor, accepted=GRANTED):
    """Routes the initiator's outbound handshake straight into the acceptor."""

    async def post_handshake(target_url, request):
        return acceptor.handshake.accept_handshake(request, accepted)

    initiator.client.post_handshake = AsyncMock(side_effect=post_handshake)


def _signed_request(node, *, timestamp=None, scopes=PROPOSED) -> HandshakeRequest:
    signer = node.identity.signer()
    local = signer.identity
    request = HandshakeRequest(
        server_id=local.server_id,
        server_url=local.server_url,
        server_name=local.server_name,
        public_key=local.public_key,
        protocol_version=local.protocol_version,
        proposed_scopes=scopes,
        timestamp=timestamp if timestamp is not None else current_millis(),
    )
    request.signature = signer.sign(request.signing_payload())
    return request


@pytest.mark.asyncio
async def test_both_sides_record_pending_peer_with_granted_scopes(make_node):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    _wire(a, b)

    response = await a.handshake.initiate_handshake("http://b1.test", PROPOSED)

    assert response.accepted is True
    assert response.accepted_scopes == GRANTED

    b_at_a = a.repository.get_federated_server("b1")
    a_at_b = b.repository.get_federated_server("a1")
    for peer in (b_at_a, a_at_b):
        assert peer.trust_level == TrustLevel.PENDING
        assert peer.scope_permissions.chat is False
        assert peer.scope_permissions.users is True
        assert peer.federation_agreement_hash == response.agreement_hash

    for node in (a, b):
        successes = [
            entry
            for entry in node.audit.get_audit_logs()
            if entry.outcome == FederationOutcome.SUCCESS
        ]
        assert len(successes) == 1
        assert successes[0].event_type == FederationEventType.HANDSHAKE_ACCEPT


@pytest.mark.asyncio
async def test_initiate_requires_local_identity(make_node):
    a = make_node("a1", initialized=False)

    with pytest.raises(FederationNotInitializedError):
        await a.handshake.initiate_handshake("http://b1.test", PROPOSED)
    a.client.post_handshake.assert_not_called()


@pytest.mark.asyncio
async def test_tampered_response_is_a_security_failure(make_node):
    a = make_node("a1", 0)
    b = make_node("b1", 1)

    async def post_handshake(target_url, request):
        response = b.handshake.accept_handshake(request, GRANTED)
        return response.model_copy(update={"accepted_scopes": FederationScope.all()})

    a.client.post_handshake = AsyncMock(side_effect=post_handshake)

    with pytest.raises(HandshakeSecurityError):
        await a.handshake.initiate_handshake("http://b1.test", PROPOSED)

    assert a.repository.get_federated_server("b1") is None
    failures = a.audit.get_audit_logs(event_type=FederationEventType.HANDSHAKE_REJECT)
    assert [entry.outcome for entry in failures] == [FederationOutcome.FAILURE]


@pytest.mark.asyncio
async def test_rejection_is_returned_without_persisting(make_node, helpers):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    b.repository.upsert_federated_server(
        helpers.peer_record("a1", a.private_key, trust_level=TrustLevel.BLOCKED)
    )
    _wire(a, b)

    response = await a.handshake.initiate_handshake("http://b1.test", PROPOSED)

    assert response.accepted is False
    assert response.reason == "server is blocked"
    assert a.repository.get_federated_server("b1") is None
    rejected = a.audit.get_audit_logs(event_type=FederationEventType.HANDSHAKE_REJECT)
    assert rejected[0].outcome == FederationOutcome.REJECTED


@pytest.mark.asyncio
async def test_network_failure_is_logged_and_raised(make_node):
    a = make_node("a1", 0)
    a.client.post_handshake = AsyncMock(side_effect=RemoteServerError("handshake timed out", timed_out=True))

    with pytest.raises(RemoteServerError):
        await a.handshake.initiate_handshake("http://b1.test", PROPOSED)

    entries = a.audit.get_audit_logs()
    assert [entry.outcome for entry in entries] == [FederationOutcome.TIMEOUT]
    assert a.repository.list_federated_servers() == []


def test_accept_rejects_stale_request(make_node):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    request = _signed_request(a, timestamp=current_millis() - REPLAY_WINDOW_MS - 1000)

    response = b.handshake.accept_handshake(request, GRANTED)

    assert response.accepted is False
    assert response.reason == "request timestamp outside allowed window"
    assert b.repository.get_federated_server("a1") is None
    entry = b.audit.get_audit_logs()[0]
    assert entry.event_type == FederationEventType.HANDSHAKE_REJECT
    assert entry.outcome == FederationOutcome.FAILURE


def test_accept_rejects_bad_signature(make_node):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    request = _signed_request(a)
    request.server_name = "Impostor"

    response = b.handshake.accept_handshake(request, GRANTED)

    assert response.accepted is False
    assert response.reason == "invalid signature"
    assert b.repository.get_federated_server("a1") is None
    assert b.audit.get_audit_logs()[0].error_message == "invalid signature"


def test_repeated_handshake_keeps_a_single_row(make_node):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    request = _signed_request(a)

    first = b.handshake.accept_handshake(request, GRANTED)
    second = b.handshake.accept_handshake(request, GRANTED)

    assert first.accepted and second.accepted
    assert len(b.repository.list_federated_servers()) == 1


def test_blocked_peer_cannot_handshake_its_way_out(make_node):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    b.handshake.accept_handshake(_signed_request(a), GRANTED)
    b.repository.update_server_trust_level("a1", TrustLevel.BLOCKED)

    response = b.handshake.accept_handshake(_signed_request(a), GRANTED)

    assert response.accepted is False
    assert b.repository.get_federated_server("a1").trust_level == TrustLevel.BLOCKED


def test_grantable_scopes_cap_the_proposal(make_node):
    b = make_node("b1", 1, handshake_grantable_scopes={"chat": False, "geolocation": False})

    granted = b.handshake.grantable_scopes(FederationScope.all())

    assert granted == FederationScope(users=True, postings=True, attributes=True)


def _request_signed_with(private_key, server_id: str) -> HandshakeRequest:
    request = HandshakeRequest(
        server_id=server_id,
        server_url=f"http://{server_id}.test",
        server_name=f"Server {server_id}",
        public_key=crypto.public_key_to_pem(private_key.public_key()),
        protocol_version="1.0",
        proposed_scopes=FederationScope.all(),
        timestamp=current_millis(),
    )
    request.signature = crypto.sign(request.signing_payload(), private_key)
    return request


def test_known_server_id_with_a_new_key_is_rejected(make_node, key_pool):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    b.handshake.accept_handshake(_signed_request(a), GRANTED)
    b.repository.update_server_trust_level("a1", TrustLevel.FULL)
    original_key = b.repository.get_federated_server("a1").public_key

    response = b.handshake.accept_handshake(_request_signed_with(key_pool[2], "a1"), FederationScope.all())

    assert response.accepted is False
    assert response.reason == "key mismatch"
    assert crypto.verify_with_pem(response.signing_payload(), response.signature, b.identity.require_identity().public_key)
    stored = b.repository.get_federated_server("a1")
    assert stored.public_key == original_key
    assert stored.trust_level == TrustLevel.FULL
    assert stored.scope_permissions == GRANTED
    entry = b.audit.get_audit_logs(event_type=FederationEventType.HANDSHAKE_REJECT)[0]
    assert (entry.outcome, entry.error_message) == (FederationOutcome.REJECTED, "key mismatch")


def test_repeated_handshake_keeps_trust_and_cannot_widen_scopes(make_node):
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    b.handshake.accept_handshake(_signed_request(a), GRANTED)
    b.repository.update_server_trust_level("a1", TrustLevel.FULL)

    response = b.handshake.accept_handshake(
        _signed_request(a, scopes=FederationScope.all()), FederationScope.all()
    )

    assert response.accepted is True
    assert response.accepted_scopes == GRANTED
    stored = b.repository.get_federated_server("a1")
    assert stored.trust_level == TrustLevel.FULL
    assert stored.scope_permissions == GRANTED
    assert stored.federation_agreement_hash == response.agreement_hash


@pytest.mark.asyncio
async def test_initiator_refuses_a_response_with_a_new_key(make_node, helpers, key_pool):
    a = make_node("a1", 0)
    a.repository.upsert_federated_server(
        helpers.peer_record("b1", key_pool[1], trust_level=TrustLevel.PARTIAL)
    )
    impostor = make_node("b1", 2)
    _wire(a, impostor)

    with pytest.raises(HandshakeSecurityError, match="key mismatch"):
        await a.handshake.initiate_handshake("http://b1.test", PROPOSED)

    stored = a.repository.get_federated_server("b1")
    assert stored.public_key == crypto.public_key_to_pem(key_pool[1].public_key())
    assert stored.trust_level == TrustLevel.PARTIAL
    entry = a.audit.get_audit_logs(event_type=FederationEventType.HANDSHAKE_REJECT)[0]
    assert (entry.outcome, entry.error_message) == (FederationOutcome.REJECTED, "key mismatch")
