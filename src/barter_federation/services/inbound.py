from __future__ import annotations

import dataclasses
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from barter_federation.core import canonical
from barter_federation.core.security import parse_timestamp
from barter_federation.core.settings import FederationSettings
from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import (
    FederatedServer,
    FederationEventType,
    FederationOutcome,
    ScopeType,
)
from barter_federation.schemas import (
    ApiModel,
    FederatedUserProfile,
    PostingSearchResponse,
    ProfileSearchResponse,
    UserSearchResponse,
    UserSyncRequest,
    UserSyncResponse,
)

from .audit import AuditLogger
from .directory import PostingDirectory, UserDirectory
from .identity import IdentityService
from .verifier import SignedRequestVerifier

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 20
DEFAULT_RADIUS_KM = 50.0


@dataclasses.dataclass
class QueryResult:
    """Result of an inbound query, rendered by the route into the response envelope."""

    status_code: int
    data: Optional[ApiModel] = None
    error: Optional[str] = None


class InvalidQueryError(ValueError):
    """Raised when a verified query carries unusable parameter values."""


def _parse_float(name: str, value: Optional[str], default: Optional[float] = None) -> float:
    if value is None or value == "":
        if default is None:
            raise InvalidQueryError(f"{name} is required")
        return default
    try:
        return float(value)
    except ValueError:
        raise InvalidQueryError(f"{name} must be a number") from None


def _parse_limit(value: Optional[str], cap: int) -> int:
    if value is None or value == "":
        return min(DEFAULT_SEARCH_LIMIT, cap)
    try:
        limit = int(value)
    except ValueError:
        raise InvalidQueryError("limit must be an integer") from None
    return max(1, min(limit, cap))


def _parse_bool(value: Optional[str]) -> Optional[bool]:
    if value is None or value == "":
        return None
    lowered = value.lower()
    if lowered in ("true", "1"):
        return True
    if lowered in ("false", "0"):
        return False
    raise InvalidQueryError("isOffer must be true or false")


def _parse_instant(name: str, value: Optional[str]) -> Optional[datetime]:
    """Parses an ISO-8601 instant; a trailing ``Z`` and naive values mean UTC."""
    if not value:
        return None
    text = value.strip()
    if text[-1:] in ("Z", "z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise InvalidQueryError(f"{name} must be an ISO-8601 timestamp") from None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _search_text(value: Optional[str]) -> str:
    if not value:
        raise InvalidQueryError("q is required")
    if canonical.has_delimiter(value):
        raise InvalidQueryError(f"q must not contain {canonical.DELIMITER!r}")
    return value


def sanitize_profile(profile: FederatedUserProfile, server: FederatedServer) -> FederatedUserProfile:
    """Drops fields the peer has no scope for."""
    updates = {}
    if not server.scope_permissions.allows(ScopeType.GEOLOCATION):
        updates["location"] = None
    if not server.scope_permissions.allows(ScopeType.ATTRIBUTES):
        updates["attributes"] = []
    return profile.model_copy(update=updates) if updates else profile


class InboundQueryService:
    """Serves verified read queries from federated servers."""

    def __init__(
        self,
        *,
        settings: FederationSettings,
        identity: IdentityService,
        repository: FederationRepository,
        audit: AuditLogger,
        verifier: SignedRequestVerifier,
        users: UserDirectory,
        postings: PostingDirectory,
    ) -> None:
        self._settings = settings
        self._identity = identity
        self._repository = repository
        self._audit = audit
        self._verifier = verifier
        self._users = users
        self._postings = postings

    async def _run(
        self,
        *,
        server_id: Optional[str],
        timestamp: Optional[int],
        signature: Optional[str],
        payload: str,
        scope: ScopeType,
        event_type: FederationEventType,
        action: str,
        remote_ip: Optional[str],
        details: dict,
        handler: Callable[[FederatedServer], Awaitable[ApiModel]],
    ) -> QueryResult:
        started = time.perf_counter()
        verification = self._verifier.verify(
            server_id=server_id,
            required_scope=scope,
            payload=payload,
            signature=signature,
            timestamp=timestamp,
            action=action,
            event_type=event_type,
            remote_ip=remote_ip,
        )
        if not verification.ok:
            return QueryResult(status_code=verification.status_code, error=verification.message)

        server = verification.server
        try:
            data = await handler(server)
        except InvalidQueryError as exc:
            outcome, status_code, error, message = FederationOutcome.FAILURE, 400, str(exc), str(exc)
        except Exception as exc:
            logger.exception("%s for %s failed", action, server_id)
            outcome, status_code, error, message = (
                FederationOutcome.FAILURE,
                500,
                "Query failed",
                str(exc),
            )
        else:
            self._repository.update_server_last_sync(server.server_id)
            self._audit.log_federation_event(
                event_type,
                server.server_id,
                action,
                FederationOutcome.SUCCESS,
                details=dict(details, resultCount=getattr(data, "count", None)),
                duration_ms=int((time.perf_counter() - started) * 1000),
                remote_ip=remote_ip,
            )
            return QueryResult(status_code=200, data=data)

        self._audit.log_federation_event(
            event_type,
            server.server_id,
            action,
            outcome,
            details=details,
            error_message=message,
            duration_ms=int((time.perf_counter() - started) * 1000),
            remote_ip=remote_ip,
        )
        return QueryResult(status_code=status_code, error=error)

    async def nearby_users(
        self,
        *,
        server_id: Optional[str],
        lat: Optional[str],
        lon: Optional[str],
        radius: Optional[str],
        timestamp: Optional[str],
        signature: Optional[str],
        remote_ip: Optional[str] = None,
    ) -> QueryResult:
        """Users near a point. Parameters arrive as transmitted and are signed that way."""
        ts = parse_timestamp(timestamp)
        payload = canonical.nearby_users_payload(server_id or "", lat, lon, radius, ts)

        async def handler(server: FederatedServer) -> UserSearchResponse:
            latitude = _parse_float("lat", lat)
            longitude = _parse_float("lon", lon)
            radius_km = _parse_float("radius", radius, DEFAULT_RADIUS_KM)
            if not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0:
                raise InvalidQueryError("coordinates out of range")
            users = await self._users.nearby_users(
                latitude, longitude, radius_km, self._settings.max_query_limit
            )
            shared = [sanitize_profile(user, server) for user in users]
            return UserSearchResponse(users=shared, count=len(shared))

        return await self._run(
            server_id=server_id,
            timestamp=ts,
            signature=signature,
            payload=payload,
            scope=ScopeType.GEOLOCATION,
            event_type=FederationEventType.USER_SEARCH,
            action="NEARBY_USERS",
            remote_ip=remote_ip,
            details={"lat": lat, "lon": lon, "radius": radius},
            handler=handler,
        )

    async def search_postings(
        self,
        *,
        server_id: Optional[str],
        query: Optional[str],
        limit: Optional[str],
        is_offer: Optional[str],
        timestamp: Optional[str],
        signature: Optional[str],
        remote_ip: Optional[str] = None,
    ) -> QueryResult:
        ts = parse_timestamp(timestamp)
        payload = canonical.posting_search_payload(server_id or "", query, limit, is_offer, ts)

        async def handler(server: FederatedServer) -> PostingSearchResponse:
            text = _search_text(query)
            cap = _parse_limit(limit, self._settings.max_query_limit)
            offer = _parse_bool(is_offer)
            postings = await self._postings.search_postings(text, cap + 1, offer)
            page = postings[:cap]
            return PostingSearchResponse(postings=page, count=len(page), has_more=len(postings) > cap)

        return await self._run(
            server_id=server_id,
            timestamp=ts,
            signature=signature,
            payload=payload,
            scope=ScopeType.POSTINGS,
            event_type=FederationEventType.POSTING_SEARCH,
            action="POSTING_SEARCH",
            remote_ip=remote_ip,
            details={"query": query, "limit": limit, "isOffer": is_offer},
            handler=handler,
        )

    async def search_profiles(
        self,
        *,
        server_id: Optional[str],
        query: Optional[str],
        limit: Optional[str],
        timestamp: Optional[str],
        signature: Optional[str],
        remote_ip: Optional[str] = None,
    ) -> QueryResult:
        ts = parse_timestamp(timestamp)
        payload = canonical.profile_search_payload(server_id or "", query, limit, ts)

        async def handler(server: FederatedServer) -> ProfileSearchResponse:
            text = _search_text(query)
            cap = _parse_limit(limit, self._settings.max_query_limit)
            users = await self._users.search_profiles(text, cap)
            shared = [sanitize_profile(user, server) for user in users]
            local = self._identity.require_identity()
            return ProfileSearchResponse(
                users=shared,
                count=len(shared),
                server_id=local.server_id,
                server_name=local.server_name,
            )

        return await self._run(
            server_id=server_id,
            timestamp=ts,
            signature=signature,
            payload=payload,
            scope=ScopeType.USERS,
            event_type=FederationEventType.USER_SEARCH,
            action="PROFILE_SEARCH",
            remote_ip=remote_ip,
            details={"query": query, "limit": limit},
            handler=handler,
        )

    async def sync_users(
        self, request: UserSyncRequest, remote_ip: Optional[str] = None
    ) -> QueryResult:
        """One page of local users for a federated server's sync."""

        async def handler(server: FederatedServer) -> UserSyncResponse:
            updated_since = _parse_instant("updatedSince", request.updated_since)
            page_size = min(request.page_size, self._settings.max_query_limit)
            users, total = await self._users.users_for_sync(request.page, page_size, updated_since)
            shared: List[FederatedUserProfile] = [sanitize_profile(user, server) for user in users]
            return UserSyncResponse(
                users=shared,
                total_count=total,
                page=request.page,
                has_more=(request.page + 1) * page_size < total,
            )

        return await self._run(
            server_id=request.requesting_server_id,
            timestamp=request.timestamp,
            signature=request.signature,
            payload=request.signing_payload(),
            scope=ScopeType.USERS,
            event_type=FederationEventType.USER_SYNC,
            action="SYNC_USERS",
            remote_ip=remote_ip,
            details={
                "page": request.page,
                "pageSize": request.page_size,
                "updatedSince": request.updated_since,
            },
            handler=handler,
        )


__all__ = ["InboundQueryService", "InvalidQueryError", "QueryResult", "sanitize_profile"]
