import hashlib
import hmac

import pytest
from pydantic import ValidationError

from barter_federation.core import canonical
from barter_federation.core.security import (
    REPLAY_WINDOW_MS,
    compute_bootstrap_digest,
    envelope_fingerprint,
    is_timestamp_fresh,
    parse_timestamp,
    verify_bootstrap_digest,
)
from barter_federation.models.federation import FederationScope
from barter_federation.schemas import HandshakeRequest, MessageRelayRequest

NOW = 1_700_000_000_000


def test_replay_window_is_five_minutes():
    assert REPLAY_WINDOW_MS == 300_000


def test_freshness_is_symmetric_around_server_time():
    assert is_timestamp_fresh(NOW, NOW)
    assert is_timestamp_fresh(NOW - REPLAY_WINDOW_MS, NOW)
    assert is_timestamp_fresh(NOW + REPLAY_WINDOW_MS, NOW)
    assert not is_timestamp_fresh(NOW - REPLAY_WINDOW_MS - 1, NOW)
    assert not is_timestamp_fresh(NOW + REPLAY_WINDOW_MS + 1, NOW)


def test_parse_timestamp():
    assert parse_timestamp("1700000000000") == NOW
    assert parse_timestamp(" 42 ") == 42
    assert parse_timestamp("abc") is None
    assert parse_timestamp(None) is None


def test_bootstrap_digest_matches_independent_hmac():
    secret, timestamp = "s3cret", str(NOW)
    expected = hmac.new(secret.encode(), timestamp.encode(), hashlib.sha256).hexdigest()

    assert compute_bootstrap_digest(secret, timestamp) == expected
    assert verify_bootstrap_digest(secret, timestamp, expected, now_ms=NOW)


def test_bootstrap_digest_mismatch_rejected_even_when_fresh():
    digest = compute_bootstrap_digest("other-secret", str(NOW))

    assert not verify_bootstrap_digest("s3cret", str(NOW), digest, now_ms=NOW)


def test_bootstrap_digest_rejected_when_stale():
    timestamp = str(NOW - REPLAY_WINDOW_MS - 1)
    digest = compute_bootstrap_digest("s3cret", timestamp)

    assert not verify_bootstrap_digest("s3cret", timestamp, digest, now_ms=NOW)


def test_envelope_fingerprint_respects_field_boundaries():
    assert envelope_fingerprint([b"ab", b"c"]) != envelope_fingerprint([b"a", b"bc"])
    assert envelope_fingerprint([b"ab", b"c"]) == envelope_fingerprint([b"ab", b"c"])


def test_query_payloads_bind_values_as_given():
    assert canonical.nearby_users_payload("a1", "52.5", "13.4", "10", NOW) == "a1|52.5|13.4|10|1700000000000"
    assert canonical.posting_search_payload("a1", "bike", "20", None, NOW) == "a1|bike|20||1700000000000"
    assert canonical.posting_search_payload("a1", "bike", "20", "true", NOW) == "a1|bike|20|true|1700000000000"
    assert canonical.message_relay_payload("a1", NOW, "cipher") == "a1|1700000000000|cipher"


def test_change_payloads_are_prefixed_by_kind():
    scopes = FederationScope(users=True).canonical()

    trust = canonical.trust_change_payload("a1", "b1", "FULL", NOW)
    scope = canonical.scope_change_payload("a1", "b1", scopes, NOW)

    assert trust == "TRUST_CHANGE|a1|b1|FULL|1700000000000"
    assert scope.startswith("SCOPE_CHANGE|a1|b1|users=true,postings=false")


def test_scope_canonical_form_is_stable():
    assert FederationScope.all().canonical() == (
        "users=true,postings=true,chat=true,geolocation=true,attributes=true"
    )


def test_has_delimiter():
    assert canonical.has_delimiter("a", "b|c")
    assert not canonical.has_delimiter("a", None, "")


@pytest.mark.parametrize("field", ["serverId", "serverUrl", "serverName", "protocolVersion"])
def test_handshake_request_refuses_field_separator(field):
    body = {
        "serverId": "x1",
        "serverUrl": "http://x1.test",
        "serverName": "X",
        "publicKey": "key",
        "protocolVersion": "1.0",
        "proposedScopes": {},
        "timestamp": NOW,
    }
    body[field] = body[field] + "|extra"

    with pytest.raises(ValidationError):
        HandshakeRequest.model_validate(body)


def test_relay_request_refuses_field_separator_in_server_id():
    with pytest.raises(ValidationError):
        MessageRelayRequest.model_validate(
            {
                "requestingServerId": "a1|b1",
                "senderUserId": "alice",
                "recipientUserId": "bob",
                "encryptedPayload": "ciphertext",
                "timestamp": NOW,
            }
        )
