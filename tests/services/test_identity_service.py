import pytest

from barter_federation.core import crypto
from barter_federation.models.federation import FederationEventType, FederationOutcome
from barter_federation.services import FederationNotInitializedError


@pytest.mark.asyncio
async def test_initialize_creates_identity_once(make_node):
    node = make_node("a1", initialized=False)

    first, created = await node.identity.initialize(
        "http://a.test/", "Server A", admin_contact="ops@a.test"
    )
    second, created_again = await node.identity.initialize("http://other.test", "Other")

    assert created is True
    assert created_again is False
    assert second == first
    assert first.server_url == "http://a.test"
    assert first.key_size >= 2048
    assert first.key_rotation_due > first.key_generated_at
    assert not hasattr(first, "private_key")

    actions = [entry.action for entry in node.audit.get_audit_logs()]
    assert sorted(actions) == ["INITIALIZE_SERVER", "SERVER_ALREADY_INITIALIZED"]
    assert all(
        entry.event_type == FederationEventType.KEY_ROTATION for entry in node.audit.get_audit_logs()
    )


def test_require_identity_fails_before_initialization(make_node):
    node = make_node("a1", initialized=False)

    assert node.identity.get_public_identity() is None
    with pytest.raises(FederationNotInitializedError):
        node.identity.require_identity()
    with pytest.raises(FederationNotInitializedError):
        node.identity.signer()


def test_signatures_verify_with_published_key(make_node):
    node = make_node("a1")
    signer = node.identity.signer()

    signature = signer.sign("hello")

    assert crypto.verify_with_pem("hello", signature, signer.identity.public_key)
    assert "PRIVATE" not in repr(signer)


@pytest.mark.asyncio
async def test_rotate_keys_replaces_keypair(make_node):
    node = make_node("a1")
    before = node.identity.require_identity()

    after = await node.identity.rotate_keys()

    assert after.server_id == before.server_id
    assert after.public_key != before.public_key
    assert node.repository.get_local_identity().public_key == after.public_key
    signature = node.identity.sign("payload")
    assert crypto.verify_with_pem("payload", signature, after.public_key)
    assert not crypto.verify_with_pem("payload", signature, before.public_key)

    entries = node.audit.get_audit_logs(event_type=FederationEventType.KEY_ROTATION)
    assert [(e.action, e.outcome) for e in entries] == [("ROTATE_KEYS", FederationOutcome.SUCCESS)]


@pytest.mark.asyncio
async def test_rotate_keys_requires_identity(make_node):
    node = make_node("a1", initialized=False)

    with pytest.raises(FederationNotInitializedError):
        await node.identity.rotate_keys()


@pytest.mark.asyncio
async def test_initialize_refuses_field_separator(make_node):
    node = make_node("a1", initialized=False)

    with pytest.raises(ValueError):
        await node.identity.initialize("http://a1.test", "Server|A")

    assert node.identity.get_public_identity() is None
