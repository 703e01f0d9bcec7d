from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status

from barter_federation.core.trust import (
    ConsentRequiredError,
    InvalidConsentError,
    RemoteConsent,
    ServerNotFoundError,
    parse_trust_level,
)
from barter_federation.models.federation import FederationEventType, TrustLevel
from barter_federation.schemas import (
    AuditLogEntryInfo,
    ConsentResponse,
    FederatedServerInfo,
    FederatedServersListResponse,
    FederatedUserInfo,
    InitializeServerRequest,
    InitializeServerResponse,
    InitiateHandshakeRequest,
    InitiateHandshakeResponse,
    RemoteConsentPayload,
    ScopeConsentRequest,
    ServerInfo,
    TrustConsentRequest,
    UpdateScopesRequest,
    UpdateTrustLevelRequest,
)
from barter_federation.services import (
    AuditLogger,
    FederationNotInitializedError,
    HandshakeEngine,
    HandshakeSecurityError,
    IdentityService,
    RemoteServerError,
    TrustAdministration,
)

logger = logging.getLogger(__name__)


async def require_admin(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> str:
    """Authenticates the operator; returns their id."""
    return await request.app.state.admin_auth(request, authorization)


async def require_bootstrap(
    request: Request,
    init_timestamp: Optional[str] = Header(None, alias="X-Federation-Init-Timestamp"),
    init_token: Optional[str] = Header(None, alias="X-Federation-Init-Token"),
) -> None:
    await request.app.state.bootstrap_auth(request, init_timestamp, init_token)


router = APIRouter(prefix="/api/v1/federation/admin", tags=["federation-admin"])


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


def get_handshake_engine(request: Request) -> HandshakeEngine:
    return request.app.state.handshake_engine


def get_trust_admin(request: Request) -> TrustAdministration:
    return request.app.state.trust_admin


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger


def _consent(payload: Optional[RemoteConsentPayload]) -> Optional[RemoteConsent]:
    if payload is None:
        return None
    return RemoteConsent(timestamp=payload.timestamp, signature=payload.signature)


def _trust_level(value: str) -> TrustLevel:
    level = parse_trust_level(value)
    if level is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid trust level: {value}. Must be one of {[t.value for t in TrustLevel]}",
        )
    return level


def _not_initialized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_412_PRECONDITION_FAILED,
        detail="Server not initialized. Call /initialize first.",
    )


@router.post("/initialize", dependencies=[Depends(require_bootstrap)])
async def initialize_server(
    body: InitializeServerRequest,
    identity: IdentityService = Depends(get_identity_service),
):
    """Creates this server's federation identity. Guarded by the bootstrap HMAC."""
    public, created = await identity.initialize(
        body.server_url,
        body.server_name,
        admin_contact=body.admin_contact,
        description=body.description,
        location_hint=body.location_hint,
    )
    return InitializeServerResponse(
        success=True,
        server_id=public.server_id,
        server_url=public.server_url,
        server_name=public.server_name,
        message="Server initialized for federation" if created else "Server already initialized",
    ).to_wire()


@router.get("/identity")
async def get_identity(
    _: str = Depends(require_admin),
    identity: IdentityService = Depends(get_identity_service),
):
    public = identity.get_public_identity()
    if public is None:
        raise _not_initialized()
    return ServerInfo.from_identity(public).to_wire()


@router.post("/rotate-keys")
async def rotate_keys(
    _: str = Depends(require_admin),
    identity: IdentityService = Depends(get_identity_service),
):
    """Generates a new keypair. Peers learn it on their next handshake."""
    try:
        public = await identity.rotate_keys()
    except FederationNotInitializedError:
        raise _not_initialized() from None
    return ServerInfo.from_identity(public).to_wire()


@router.post("/handshake")
async def initiate_handshake(
    body: InitiateHandshakeRequest,
    _: str = Depends(require_admin),
    engine: HandshakeEngine = Depends(get_handshake_engine),
):
    """Introduces this server to another federation server."""
    try:
        response = await engine.initiate_handshake(body.target_server_url, body.proposed_scopes)
    except FederationNotInitializedError:
        raise _not_initialized() from None
    except RemoteServerError as exc:
        raise HTTPException(
            status_code=status.HTTP_504_GATEWAY_TIMEOUT if exc.timed_out else status.HTTP_502_BAD_GATEWAY,
            detail=f"Handshake failed: {exc}",
        ) from None
    except HandshakeSecurityError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Handshake rejected for security reasons: {exc}",
        ) from None
    return InitiateHandshakeResponse(
        success=response.accepted,
        response=response,
        message="Handshake accepted" if response.accepted else response.reason,
    ).to_wire()


@router.get("/servers")
async def list_servers(
    trust_level: Optional[str] = Query(None, alias="trustLevel"),
    _: str = Depends(require_admin),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    level = _trust_level(trust_level) if trust_level else None
    servers = trust_admin.list_federated_servers(level)
    return FederatedServersListResponse(
        success=True,
        count=len(servers),
        servers=[FederatedServerInfo.from_server(server) for server in servers],
    ).to_wire()


@router.get("/servers/{server_id}")
async def get_server(
    server_id: str,
    _: str = Depends(require_admin),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    server = trust_admin.get_federated_server(server_id)
    if server is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found")
    return FederatedServerInfo.from_server(server).to_wire()


@router.delete("/servers/{server_id}")
async def delete_server(
    server_id: str,
    operator: str = Depends(require_admin),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    if not trust_admin.delete_federated_server(server_id, operator=operator):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found")
    return {"success": True, "serverId": server_id}


@router.get("/servers/{server_id}/users")
async def list_federated_users(
    server_id: str,
    limit: int = Query(100, ge=1, le=1000),
    _: str = Depends(require_admin),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    """Remote users from ``server_id`` cached when they relayed messages here."""
    try:
        users = trust_admin.list_federated_users(server_id, limit)
    except ServerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found") from None
    return {
        "success": True,
        "count": len(users),
        "users": [FederatedUserInfo.from_user(user).to_wire() for user in users],
    }


@router.get("/servers/{server_id}/users/{user_id}")
async def get_federated_user(
    server_id: str,
    user_id: str,
    _: str = Depends(require_admin),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    user = trust_admin.get_federated_user(user_id, server_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Federated user not found")
    return FederatedUserInfo.from_user(user).to_wire()


@router.get("/federated-users/stale")
async def list_stale_federated_users(
    older_than_days: int = Query(7, ge=0, le=3650, alias="olderThanDays"),
    _: str = Depends(require_admin),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    users = trust_admin.list_stale_federated_users(timedelta(days=older_than_days))
    return {
        "success": True,
        "count": len(users),
        "users": [FederatedUserInfo.from_user(user).to_wire() for user in users],
    }


@router.post("/servers/{server_id}/trust")
async def update_trust_level(
    server_id: str,
    body: UpdateTrustLevelRequest,
    operator: str = Depends(require_admin),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    """Changes a peer's trust level. Anything but BLOCKED needs the peer's consent."""
    level = _trust_level(body.trust_level)
    try:
        server = trust_admin.update_server_trust_level(
            server_id, level, consent=_consent(body.consent), operator=operator
        )
    except ServerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found") from None
    except ConsentRequiredError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from None
    except InvalidConsentError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from None
    except FederationNotInitializedError:
        raise _not_initialized() from None
    return FederatedServerInfo.from_server(server).to_wire()


@router.post("/servers/{server_id}/scopes")
async def update_scopes(
    server_id: str,
    body: UpdateScopesRequest,
    operator: str = Depends(require_admin),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    try:
        server = trust_admin.update_server_scopes(
            server_id, body.scopes, consent=_consent(body.consent), operator=operator
        )
    except ServerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found") from None
    except ConsentRequiredError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from None
    except InvalidConsentError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from None
    except FederationNotInitializedError:
        raise _not_initialized() from None
    return FederatedServerInfo.from_server(server).to_wire()


@router.post("/servers/{server_id}/consent/trust")
async def create_trust_consent(
    server_id: str,
    body: TrustConsentRequest,
    _: str = Depends(require_admin),
    identity: IdentityService = Depends(get_identity_service),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    """Signs this server's approval for ``server_id`` to change its trust in us."""
    level = _trust_level(body.trust_level)
    try:
        consent = trust_admin.create_trust_consent(server_id, level)
        local_id = identity.require_identity().server_id
    except ServerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found") from None
    except FederationNotInitializedError:
        raise _not_initialized() from None
    return ConsentResponse(
        applying_server_id=server_id,
        consenting_server_id=local_id,
        timestamp=consent.timestamp,
        signature=consent.signature,
    ).to_wire()


@router.post("/servers/{server_id}/consent/scopes")
async def create_scope_consent(
    server_id: str,
    body: ScopeConsentRequest,
    _: str = Depends(require_admin),
    identity: IdentityService = Depends(get_identity_service),
    trust_admin: TrustAdministration = Depends(get_trust_admin),
):
    try:
        consent = trust_admin.create_scope_consent(server_id, body.scopes)
        local_id = identity.require_identity().server_id
    except ServerNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Server not found") from None
    except FederationNotInitializedError:
        raise _not_initialized() from None
    return ConsentResponse(
        applying_server_id=server_id,
        consenting_server_id=local_id,
        timestamp=consent.timestamp,
        signature=consent.signature,
    ).to_wire()


@router.get("/audit-logs")
async def get_audit_logs(
    server_id: Optional[str] = Query(None, alias="serverId"),
    event_type: Optional[str] = Query(None, alias="eventType"),
    limit: int = Query(100, ge=1, le=1000),
    _: str = Depends(require_admin),
    audit: AuditLogger = Depends(get_audit_logger),
):
    parsed_type: Optional[FederationEventType] = None
    if event_type:
        try:
            parsed_type = FederationEventType(event_type.upper())
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid event type: {event_type}",
            ) from None
    entries = audit.get_audit_logs(server_id=server_id, event_type=parsed_type, limit=limit)
    return {
        "success": True,
        "count": len(entries),
        "entries": [AuditLogEntryInfo.from_entry(entry).to_wire() for entry in entries],
    }
