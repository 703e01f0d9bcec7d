from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from barter_federation.core.security import current_millis
from barter_federation.schemas import (
    FederationApiResponse,
    HandshakeRequest,
    MessageRelayRequest,
    ServerInfo,
    UserSyncRequest,
)
from barter_federation.services import (
    FederationNotInitializedError,
    HandshakeEngine,
    IdentityService,
    InboundQueryService,
    MessageRelay,
    QueryResult,
)

logger = logging.getLogger(__name__)


async def enforce_rate_limit(request: Request) -> None:
    """Applies the per-peer rate limiter stored on the application."""
    await request.app.state.rate_limiter(request)


router = APIRouter(
    prefix="/federation/v1",
    tags=["federation"],
    dependencies=[Depends(enforce_rate_limit)],
)


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


def get_handshake_engine(request: Request) -> HandshakeEngine:
    return request.app.state.handshake_engine


def get_inbound_queries(request: Request) -> InboundQueryService:
    return request.app.state.inbound_queries


def get_message_relay(request: Request) -> MessageRelay:
    return request.app.state.message_relay


def _remote_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _envelope(
    status_code: int, data: Any = None, error: Optional[str] = None
) -> JSONResponse:
    body = FederationApiResponse[Any](
        success=error is None,
        data=data.to_wire() if hasattr(data, "to_wire") else data,
        error=error,
        timestamp=current_millis(),
    )
    return JSONResponse(status_code=status_code, content=body.to_wire())


def _query_response(result: QueryResult) -> JSONResponse:
    return _envelope(result.status_code, data=result.data, error=result.error)


@router.get("/server-info")
async def server_info(identity: IdentityService = Depends(get_identity_service)):
    """Public identity of this server, used by peers before a handshake."""
    public = identity.get_public_identity()
    if public is None:
        return _envelope(status.HTTP_404_NOT_FOUND, error="Server not initialized for federation")
    return _envelope(status.HTTP_200_OK, data=ServerInfo.from_identity(public))


@router.post("/handshake")
async def receive_handshake(
    handshake: HandshakeRequest,
    request: Request,
    engine: HandshakeEngine = Depends(get_handshake_engine),
):
    """Answers an inbound handshake with a signed response, returned unwrapped.

    Scopes granted are the proposal intersected with local policy. An
    unsigned request is rejected and audited like any bad signature.
    """
    try:
        response = engine.accept_handshake(
            handshake,
            engine.grantable_scopes(handshake.proposed_scopes),
            remote_ip=_remote_ip(request),
        )
    except FederationNotInitializedError:
        return _envelope(
            status.HTTP_503_SERVICE_UNAVAILABLE, error="Server not initialized for federation"
        )
    return JSONResponse(status_code=status.HTTP_200_OK, content=response.to_wire())


@router.get("/users/nearby")
async def nearby_users(
    request: Request,
    server_id: Optional[str] = Query(None, alias="serverId"),
    lat: Optional[str] = Query(None),
    lon: Optional[str] = Query(None),
    radius: Optional[str] = Query(None),
    timestamp: Optional[str] = Query(None),
    signature: Optional[str] = Query(None),
    queries: InboundQueryService = Depends(get_inbound_queries),
):
    result = await queries.nearby_users(
        server_id=server_id,
        lat=lat,
        lon=lon,
        radius=radius,
        timestamp=timestamp,
        signature=signature,
        remote_ip=_remote_ip(request),
    )
    return _query_response(result)


@router.get("/postings/search")
async def search_postings(
    request: Request,
    server_id: Optional[str] = Query(None, alias="serverId"),
    q: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    is_offer: Optional[str] = Query(None, alias="isOffer"),
    timestamp: Optional[str] = Query(None),
    signature: Optional[str] = Query(None),
    queries: InboundQueryService = Depends(get_inbound_queries),
):
    result = await queries.search_postings(
        server_id=server_id,
        query=q,
        limit=limit,
        is_offer=is_offer,
        timestamp=timestamp,
        signature=signature,
        remote_ip=_remote_ip(request),
    )
    return _query_response(result)


@router.get("/profiles/search")
async def search_profiles(
    request: Request,
    server_id: Optional[str] = Query(None, alias="serverId"),
    q: Optional[str] = Query(None),
    limit: Optional[str] = Query(None),
    timestamp: Optional[str] = Query(None),
    signature: Optional[str] = Query(None),
    queries: InboundQueryService = Depends(get_inbound_queries),
):
    result = await queries.search_profiles(
        server_id=server_id,
        query=q,
        limit=limit,
        timestamp=timestamp,
        signature=signature,
        remote_ip=_remote_ip(request),
    )
    return _query_response(result)


@router.post("/sync-users")
async def sync_users(
    sync_request: UserSyncRequest,
    request: Request,
    queries: InboundQueryService = Depends(get_inbound_queries),
):
    result = await queries.sync_users(sync_request, remote_ip=_remote_ip(request))
    return _query_response(result)


@router.post("/messages/relay")
async def relay_message(
    relay_request: MessageRelayRequest,
    request: Request,
    relay: MessageRelay = Depends(get_message_relay),
):
    """Receives an encrypted chat message for a local user."""
    result = await relay.receive_relayed_message(relay_request, remote_ip=_remote_ip(request))
    body = FederationApiResponse[Any](
        success=result.status_code == status.HTTP_200_OK,
        data=result.response.to_wire(),
        error=result.error,
        timestamp=current_millis(),
    )
    return JSONResponse(status_code=result.status_code, content=body.to_wire())
