from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from barter_federation.core import canonical
from barter_federation.core.security import current_millis
from barter_federation.core.trust import grants_access
from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import (
    FederatedServer,
    FederationEventType,
    FederationOutcome,
)
from barter_federation.schemas import PostingSearchResponse, UserSearchResponse

from .audit import AuditLogger
from .identity import IdentityService
from .remote_client import RemoteFederationClient, RemoteServerError

logger = logging.getLogger(__name__)

R = TypeVar("R")


class FederatedSearch:
    """Signed read queries against other federated servers.

    Query values are formatted to strings once; the same strings are signed
    and sent, so the receiving side can rebuild the payload exactly.
    """

    def __init__(
        self,
        *,
        identity: IdentityService,
        repository: FederationRepository,
        audit: AuditLogger,
        client: RemoteFederationClient,
    ) -> None:
        self._identity = identity
        self._repository = repository
        self._audit = audit
        self._client = client

    async def _query(
        self,
        server_id: str,
        event_type: FederationEventType,
        action: str,
        build: Callable[[str, int], Tuple[str, Dict[str, str]]],
        send: Callable[[str, Dict[str, str]], Awaitable[R]],
    ) -> Optional[R]:
        started = time.perf_counter()
        server: Optional[FederatedServer] = self._repository.get_federated_server(server_id)
        if server is None or not grants_access(server.trust_level) or not server.is_active:
            reason = "target server not federated" if server is None else "target server unavailable"
            self._audit.log_federation_event(
                event_type, server_id, action, FederationOutcome.REJECTED, error_message=reason
            )
            return None

        signer = self._identity.signer()
        timestamp = current_millis()
        payload, params = build(signer.identity.server_id, timestamp)
        params.update(
            serverId=signer.identity.server_id,
            timestamp=str(timestamp),
            signature=signer.sign(payload),
        )
        try:
            result = await send(server.server_url, params)
        except RemoteServerError as exc:
            self._audit.log_federation_event(
                event_type,
                server_id,
                action,
                FederationOutcome.TIMEOUT if exc.timed_out else FederationOutcome.FAILURE,
                error_message=str(exc),
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            return None

        self._repository.update_server_last_sync(server_id)
        self._audit.log_federation_event(
            event_type,
            server_id,
            action,
            FederationOutcome.SUCCESS,
            details={"resultCount": getattr(result, "count", None)},
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return result

    async def search_postings(
        self, server_id: str, query: str, limit: int = 20, is_offer: Optional[bool] = None
    ) -> Optional[PostingSearchResponse]:
        if canonical.has_delimiter(query):
            self._audit.log_federation_event(
                FederationEventType.POSTING_SEARCH,
                server_id,
                "REMOTE_POSTING_SEARCH",
                FederationOutcome.FAILURE,
                error_message=f"query must not contain {canonical.DELIMITER!r}",
            )
            return None
        limit_text = str(limit)
        offer_text = None if is_offer is None else ("true" if is_offer else "false")

        def build(local_id: str, timestamp: int):
            params = {"q": query, "limit": limit_text}
            if offer_text is not None:
                params["isOffer"] = offer_text
            payload = canonical.posting_search_payload(local_id, query, limit_text, offer_text, timestamp)
            return payload, params

        return await self._query(
            server_id,
            FederationEventType.POSTING_SEARCH,
            "REMOTE_POSTING_SEARCH",
            build,
            self._client.search_remote_postings,
        )

    async def nearby_users(
        self, server_id: str, lat: float, lon: float, radius_km: float
    ) -> Optional[UserSearchResponse]:
        lat_text, lon_text, radius_text = repr(float(lat)), repr(float(lon)), repr(float(radius_km))

        def build(local_id: str, timestamp: int):
            params = {"lat": lat_text, "lon": lon_text, "radius": radius_text}
            payload = canonical.nearby_users_payload(local_id, lat_text, lon_text, radius_text, timestamp)
            return payload, params

        return await self._query(
            server_id,
            FederationEventType.USER_SEARCH,
            "REMOTE_NEARBY_USERS",
            build,
            self._client.search_remote_nearby_users,
        )


__all__ = ["FederatedSearch"]
