from __future__ import annotations

from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from barter_federation.core import canonical
from barter_federation.models.federation import (
    AuditLogEntry,
    FederatedServer,
    FederatedUser,
    FederationScope,
    PublicServerIdentity,
)

T = TypeVar("T")


def _signable(value: str) -> str:
    if canonical.has_delimiter(value):
        raise ValueError(f"must not contain {canonical.DELIMITER!r}")
    return value


class ApiModel(BaseModel):
    """Base for wire models: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class FederationApiResponse(ApiModel, Generic[T]):
    """Generic envelope for server-to-server responses."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    timestamp: int


# Handshake ------------------------------------------------------------------


class HandshakeRequest(ApiModel):
    """Introduction sent by the initiating server."""

    server_id: str = Field(min_length=1)
    server_url: str = Field(min_length=1)
    server_name: str
    public_key: str = Field(min_length=1)
    protocol_version: str
    proposed_scopes: FederationScope
    timestamp: int
    signature: str = ""

    @field_validator("server_id", "server_url", "server_name", "protocol_version")
    @classmethod
    def _check_signable(cls, value: str) -> str:
        return _signable(value)

    def signing_payload(self) -> str:
        return canonical.handshake_request_payload(
            server_id=self.server_id,
            server_url=self.server_url,
            server_name=self.server_name,
            public_key=self.public_key,
            protocol_version=self.protocol_version,
            proposed_scopes=self.proposed_scopes.canonical(),
            timestamp=self.timestamp,
        )


class HandshakeResponse(ApiModel):
    """Reply from the accepting server, signed with its own key."""

    accepted: bool
    server_id: str
    server_url: str
    server_name: str
    public_key: str
    protocol_version: str
    accepted_scopes: FederationScope
    agreement_hash: str
    timestamp: int
    signature: str = ""
    reason: Optional[str] = None

    @field_validator("server_id", "server_url", "server_name", "protocol_version", "agreement_hash")
    @classmethod
    def _check_signable(cls, value: str) -> str:
        return _signable(value)

    def signing_payload(self) -> str:
        return canonical.handshake_response_payload(
            accepted=self.accepted,
            server_id=self.server_id,
            server_url=self.server_url,
            server_name=self.server_name,
            public_key=self.public_key,
            protocol_version=self.protocol_version,
            accepted_scopes=self.accepted_scopes.canonical(),
            agreement_hash=self.agreement_hash,
            timestamp=self.timestamp,
            reason=self.reason,
        )


# Message relay --------------------------------------------------------------


class MessageRelayRequest(ApiModel):
    requesting_server_id: str = Field(min_length=1)
    sender_user_id: str = Field(min_length=1)
    recipient_user_id: str = Field(min_length=1)
    encrypted_payload: str = Field(min_length=1, description="End-to-end encrypted message.")
    sender_public_key: Optional[str] = None
    sender_name: Optional[str] = None
    timestamp: int
    signature: str = ""

    @field_validator("requesting_server_id")
    @classmethod
    def _check_signable(cls, value: str) -> str:
        return _signable(value)

    def signing_payload(self) -> str:
        return canonical.message_relay_payload(
            self.requesting_server_id, self.timestamp, self.encrypted_payload
        )


class MessageRelayResponse(ApiModel):
    delivered: bool
    message_id: Optional[str] = None
    reason: Optional[str] = None


# Inbound queries ------------------------------------------------------------


class FederatedLocation(ApiModel):
    lat: float
    lon: float
    city: Optional[str] = None
    country: Optional[str] = None


class FederatedAttribute(ApiModel):
    attribute_id: str
    type: int = Field(description="0 = seeking, 1 = providing")
    relevancy: float


class FederatedUserProfile(ApiModel):
    """Sanitized profile shared with federated servers."""

    user_id: str
    name: Optional[str] = None
    location: Optional[FederatedLocation] = None
    attributes: List[FederatedAttribute] = Field(default_factory=list)
    last_online: Optional[datetime] = None
    public_key: Optional[str] = None


class FederatedPostingData(ApiModel):
    posting_id: str
    user_id: str
    title: str
    description: str
    value: Optional[float] = None
    image_urls: List[str] = Field(default_factory=list)
    is_offer: bool
    status: str
    attributes: List[str] = Field(default_factory=list)
    created_at: datetime
    expires_at: Optional[datetime] = None


class UserSearchResponse(ApiModel):
    users: List[FederatedUserProfile]
    count: int


class ProfileSearchResponse(ApiModel):
    users: List[FederatedUserProfile]
    count: int
    server_id: str
    server_name: Optional[str] = None


class PostingSearchResponse(ApiModel):
    postings: List[FederatedPostingData]
    count: int
    has_more: bool = False


class UserSyncRequest(ApiModel):
    requesting_server_id: str = Field(min_length=1)
    page: int = Field(default=0, ge=0)
    page_size: int = Field(default=50, ge=1)
    updated_since: Optional[str] = Field(
        default=None, description="ISO-8601 instant, signed exactly as transmitted."
    )
    timestamp: int
    signature: str = ""

    @field_validator("requesting_server_id")
    @classmethod
    def _check_signable(cls, value: str) -> str:
        return _signable(value)

    def signing_payload(self) -> str:
        return canonical.user_sync_payload(
            self.requesting_server_id,
            self.page,
            self.page_size,
            self.updated_since,
            self.timestamp,
        )


class UserSyncResponse(ApiModel):
    users: List[FederatedUserProfile]
    total_count: int
    page: int
    has_more: bool


# Identity -------------------------------------------------------------------


class ServerInfo(ApiModel):
    """Public identity of a server; never carries a private key."""

    server_id: str
    server_url: str
    server_name: str
    public_key: str
    key_algorithm: str
    key_size: int
    protocol_version: str
    admin_contact: Optional[str] = None
    description: Optional[str] = None
    location_hint: Optional[str] = None
    key_generated_at: Optional[datetime] = None
    key_rotation_due: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: PublicServerIdentity) -> "ServerInfo":
        return cls(
            server_id=identity.server_id,
            server_url=identity.server_url,
            server_name=identity.server_name,
            public_key=identity.public_key,
            key_algorithm=identity.key_algorithm,
            key_size=identity.key_size,
            protocol_version=identity.protocol_version,
            admin_contact=identity.admin_contact,
            description=identity.description,
            location_hint=identity.location_hint,
            key_generated_at=identity.key_generated_at,
            key_rotation_due=identity.key_rotation_due,
        )


# Administration -------------------------------------------------------------


class InitializeServerRequest(ApiModel):
    server_url: str = Field(min_length=1)
    server_name: str = Field(min_length=1)
    admin_contact: Optional[str] = None
    description: Optional[str] = None
    location_hint: Optional[str] = None

    @field_validator("server_url", "server_name")
    @classmethod
    def _check_signable(cls, value: str) -> str:
        return _signable(value)


class InitializeServerResponse(ApiModel):
    success: bool
    server_id: Optional[str] = None
    server_url: Optional[str] = None
    server_name: Optional[str] = None
    message: Optional[str] = None


class InitiateHandshakeRequest(ApiModel):
    target_server_url: str = Field(min_length=1)
    proposed_scopes: FederationScope = Field(default_factory=FederationScope)


class InitiateHandshakeResponse(ApiModel):
    success: bool
    response: Optional[HandshakeResponse] = None
    message: Optional[str] = None


class RemoteConsentPayload(ApiModel):
    """Co-signature produced by the remote server's operator."""

    timestamp: int
    signature: str = Field(min_length=1)


class UpdateTrustLevelRequest(ApiModel):
    trust_level: str = Field(min_length=1)
    consent: Optional[RemoteConsentPayload] = None


class UpdateScopesRequest(ApiModel):
    scopes: FederationScope
    consent: Optional[RemoteConsentPayload] = None


class TrustConsentRequest(ApiModel):
    trust_level: str = Field(min_length=1)


class ScopeConsentRequest(ApiModel):
    scopes: FederationScope


class ConsentResponse(ApiModel):
    """Signature this server issues so a peer may apply a change about it."""

    applying_server_id: str
    consenting_server_id: str
    timestamp: int
    signature: str


class FederatedServerInfo(ApiModel):
    server_id: str
    server_url: str
    server_name: Optional[str] = None
    trust_level: str
    scope_permissions: FederationScope
    protocol_version: str
    is_active: bool
    data_retention_days: int
    last_sync_timestamp: Optional[datetime] = None
    federation_agreement_hash: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_server(cls, server: FederatedServer) -> "FederatedServerInfo":
        return cls(
            server_id=server.server_id,
            server_url=server.server_url,
            server_name=server.server_name,
            trust_level=server.trust_level.value,
            scope_permissions=server.scope_permissions,
            protocol_version=server.protocol_version,
            is_active=server.is_active,
            data_retention_days=server.data_retention_days,
            last_sync_timestamp=server.last_sync_timestamp,
            federation_agreement_hash=server.federation_agreement_hash,
            created_at=server.created_at,
            updated_at=server.updated_at,
        )


class FederatedUserInfo(ApiModel):
    federated_user_id: str
    remote_user_id: str
    origin_server_id: str
    display_name: Optional[str] = None
    public_key: Optional[str] = None
    last_updated: datetime
    expires_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: FederatedUser) -> "FederatedUserInfo":
        return cls(
            federated_user_id=user.federated_user_id,
            remote_user_id=user.remote_user_id,
            origin_server_id=user.origin_server_id,
            display_name=user.display_name,
            public_key=user.public_key,
            last_updated=user.last_updated,
            expires_at=user.expires_at,
            created_at=user.created_at,
        )


class FederatedServersListResponse(ApiModel):
    success: bool
    count: int
    servers: List[FederatedServerInfo]


class AuditLogEntryInfo(ApiModel):
    id: str
    event_type: str
    server_id: Optional[str] = None
    action: str
    outcome: str
    details: Optional[dict] = None
    error_message: Optional[str] = None
    remote_ip: Optional[str] = None
    duration_ms: Optional[int] = None
    timestamp: datetime

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogEntryInfo":
        return cls(
            id=entry.id,
            event_type=entry.event_type.value,
            server_id=entry.server_id,
            action=entry.action,
            outcome=entry.outcome.value,
            details=entry.details,
            error_message=entry.error_message,
            remote_ip=entry.remote_ip,
            duration_ms=entry.duration_ms,
            timestamp=entry.timestamp,
        )
