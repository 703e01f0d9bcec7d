from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from barter_federation.core import canonical
from barter_federation.core.security import current_millis
from barter_federation.models.federation import (
    FederationEventType,
    FederationOutcome,
    FederationScope,
)
from barter_federation.schemas import (
    FederatedAttribute,
    FederatedLocation,
    FederatedPostingData,
    FederatedUserProfile,
    UserSyncRequest,
)
from barter_federation.services import FederatedSearch, RemoteServerError

BERLIN = (52.52, 13.405)


def _profile(user_id, name, lat, lon):
    return FederatedUserProfile(
        user_id=user_id,
        name=name,
        location=FederatedLocation(lat=lat, lon=lon, city="Berlin"),
        attributes=[FederatedAttribute(attribute_id="bikes", type=1, relevancy=0.9)],
    )


def _posting(posting_id, title, *, is_offer=True, status="active"):
    return FederatedPostingData(
        posting_id=posting_id,
        user_id="u1",
        title=title,
        description=f"{title} in good condition",
        is_offer=is_offer,
        status=status,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def pair(make_node, helpers):
    """``a1`` queries ``b1``; ``b1`` holds the data."""
    a = make_node("a1", 0)
    b = make_node("b1", 1)
    a.repository.upsert_federated_server(helpers.peer_record("b1", b.private_key))
    b.repository.upsert_federated_server(
        helpers.peer_record("a1", a.private_key, scopes=FederationScope(users=True, postings=True, geolocation=True))
    )
    b.users.add(_profile("u1", "Ada", *BERLIN))
    b.users.add(_profile("u2", "Grace", 52.53, 13.41))
    b.users.add(_profile("u3", "Far Away", 48.85, 2.35))
    b.postings.add(_posting("p1", "Road bike"))
    b.postings.add(_posting("p2", "Bike repair", is_offer=False))
    b.postings.add(_posting("p3", "Old bike", status="closed"))
    return a, b


def _signed_nearby(node, lat="52.52", lon="13.405", radius="10", timestamp=None):
    ts = timestamp if timestamp is not None else current_millis()
    signature = node.identity.sign(canonical.nearby_users_payload("a1", lat, lon, radius, ts))
    return dict(server_id="a1", lat=lat, lon=lon, radius=radius, timestamp=str(ts), signature=signature)


@pytest.mark.asyncio
async def test_nearby_users_strips_attributes_without_scope(pair):
    a, b = pair

    result = await b.queries.nearby_users(**_signed_nearby(a))

    assert result.status_code == 200
    assert [user.user_id for user in result.data.users] == ["u1", "u2"]
    assert all(user.location is not None for user in result.data.users)
    assert all(user.attributes == [] for user in result.data.users)
    assert b.repository.get_federated_server("a1").last_sync_timestamp is not None
    entry = b.audit.get_audit_logs()[0]
    assert (entry.action, entry.outcome) == ("NEARBY_USERS", FederationOutcome.SUCCESS)


@pytest.mark.asyncio
async def test_nearby_users_needs_geolocation_scope(pair, helpers):
    a, b = pair
    b.repository.upsert_federated_server(
        helpers.peer_record("a1", a.private_key, scopes=FederationScope(users=True))
    )

    result = await b.queries.nearby_users(**_signed_nearby(a))

    assert result.status_code == 403
    assert result.data is None


@pytest.mark.asyncio
async def test_nearby_users_rejects_tampered_parameters(pair):
    a, b = pair
    params = _signed_nearby(a)
    params["radius"] = "5000"

    result = await b.queries.nearby_users(**params)

    assert result.status_code == 401


@pytest.mark.asyncio
async def test_nearby_users_rejects_bad_coordinates(pair):
    a, b = pair

    result = await b.queries.nearby_users(**_signed_nearby(a, lat="123"))

    assert result.status_code == 400
    assert result.error == "coordinates out of range"
    assert b.audit.get_audit_logs()[0].outcome == FederationOutcome.FAILURE


@pytest.mark.asyncio
async def test_missing_signature_is_bad_request(pair):
    _, b = pair

    result = await b.queries.nearby_users(
        server_id="a1", lat="1", lon="1", radius=None, timestamp=None, signature=None
    )

    assert result.status_code == 400


@pytest.mark.asyncio
async def test_posting_search_filters_and_caps(pair):
    a, b = pair
    ts = current_millis()
    signature = a.identity.sign(canonical.posting_search_payload("a1", "bike", "1", "true", ts))

    result = await b.queries.search_postings(
        server_id="a1", query="bike", limit="1", is_offer="true", timestamp=str(ts), signature=signature
    )

    assert result.status_code == 200
    assert [p.posting_id for p in result.data.postings] == ["p1"]
    assert result.data.has_more is False


@pytest.mark.asyncio
async def test_profile_search_reports_local_server(pair):
    a, b = pair
    ts = current_millis()
    signature = a.identity.sign(canonical.profile_search_payload("a1", "grace", "", ts))

    result = await b.queries.search_profiles(
        server_id="a1", query="grace", limit="", timestamp=str(ts), signature=signature
    )

    assert result.status_code == 200
    assert result.data.server_id == "b1"
    assert [u.user_id for u in result.data.users] == ["u2"]


@pytest.mark.asyncio
async def test_user_sync_pages(pair):
    a, b = pair
    request = UserSyncRequest(
        requesting_server_id="a1",
        page=0,
        page_size=2,
        updated_since=(datetime.now(timezone.utc) - timedelta(days=1)).strftime("%Y-%m-%dT%H:%M:%SZ"),
        timestamp=current_millis(),
    )
    request.signature = a.identity.sign(request.signing_payload())

    result = await b.queries.sync_users(request)

    assert result.status_code == 200
    assert result.data.total_count == 3
    assert len(result.data.users) == 2
    assert result.data.has_more is True
    entry = b.audit.get_audit_logs(event_type=FederationEventType.USER_SYNC)[0]
    assert entry.action == "SYNC_USERS"


def _signed_sync(node, updated_since):
    request = UserSyncRequest(
        requesting_server_id="a1",
        page=0,
        page_size=10,
        updated_since=updated_since,
        timestamp=current_millis(),
    )
    request.signature = node.identity.sign(request.signing_payload())
    return request


@pytest.mark.asyncio
async def test_user_sync_verifies_the_timestamp_text_as_sent(pair):
    a, b = pair

    result = await b.queries.sync_users(_signed_sync(a, "2999-01-01T00:00:00.000Z"))

    assert result.status_code == 200
    assert result.data.total_count == 0
    entry = b.audit.get_audit_logs(event_type=FederationEventType.USER_SYNC)[0]
    assert entry.details["updatedSince"] == "2999-01-01T00:00:00.000Z"


@pytest.mark.asyncio
async def test_user_sync_rejects_unparseable_updated_since(pair):
    a, b = pair

    result = await b.queries.sync_users(_signed_sync(a, "last tuesday"))

    assert result.status_code == 400
    assert result.error == "updatedSince must be an ISO-8601 timestamp"
    assert b.audit.get_audit_logs()[0].outcome == FederationOutcome.FAILURE


@pytest.mark.asyncio
async def test_search_text_with_field_separator_is_bad_request(pair):
    a, b = pair
    ts = current_millis()
    signature = a.identity.sign(canonical.posting_search_payload("a1", "bike|10", "1", "", ts))

    result = await b.queries.search_postings(
        server_id="a1", query="bike|10", limit="1", is_offer="", timestamp=str(ts), signature=signature
    )

    assert result.status_code == 400
    assert result.error == "q must not contain '|'"


@pytest.mark.asyncio
async def test_federated_search_round_trip(pair):
    a, b = pair

    async def search_remote_postings(server_url, params):
        result = await b.queries.search_postings(
            server_id=params["serverId"],
            query=params["q"],
            limit=params["limit"],
            is_offer=params.get("isOffer"),
            timestamp=params["timestamp"],
            signature=params["signature"],
        )
        return result.data

    async def search_remote_nearby_users(server_url, params):
        result = await b.queries.nearby_users(
            server_id=params["serverId"],
            lat=params["lat"],
            lon=params["lon"],
            radius=params["radius"],
            timestamp=params["timestamp"],
            signature=params["signature"],
        )
        return result.data

    a.client.search_remote_postings = AsyncMock(side_effect=search_remote_postings)
    a.client.search_remote_nearby_users = AsyncMock(side_effect=search_remote_nearby_users)
    search = FederatedSearch(identity=a.identity, repository=a.repository, audit=a.audit, client=a.client)

    postings = await search.search_postings("b1", "bike")
    users = await search.nearby_users("b1", *BERLIN, 5.0)

    assert {p.posting_id for p in postings.postings} == {"p1", "p2"}
    assert [u.user_id for u in users.users] == ["u1", "u2"]
    assert {e.outcome for e in a.audit.get_audit_logs()} == {FederationOutcome.SUCCESS}


@pytest.mark.asyncio
async def test_federated_search_failures_return_none(pair):
    a, _ = pair
    a.client.search_remote_postings = AsyncMock(side_effect=RemoteServerError("HTTP 500", status_code=500))
    search = FederatedSearch(identity=a.identity, repository=a.repository, audit=a.audit, client=a.client)

    assert await search.search_postings("b1", "bike") is None
    assert await search.search_postings("zz", "bike") is None

    outcomes = sorted(e.outcome.value for e in a.audit.get_audit_logs())
    assert outcomes == ["FAILURE", "REJECTED"]


@pytest.mark.asyncio
async def test_federated_search_refuses_field_separator(pair):
    a, _ = pair
    search = FederatedSearch(identity=a.identity, repository=a.repository, audit=a.audit, client=a.client)

    assert await search.search_postings("b1", "bike|10") is None

    a.client.search_remote_postings.assert_not_called()
    assert a.audit.get_audit_logs()[0].error_message == "query must not contain '|'"
