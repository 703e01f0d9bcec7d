from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class TrustLevel(str, enum.Enum):
    """Administrative classification of a federated server."""

    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    FULL = "FULL"
    BLOCKED = "BLOCKED"


class FederationEventType(str, enum.Enum):
    HANDSHAKE = "HANDSHAKE"
    HANDSHAKE_ACCEPT = "HANDSHAKE_ACCEPT"
    HANDSHAKE_REJECT = "HANDSHAKE_REJECT"
    USER_SYNC = "USER_SYNC"
    USER_SEARCH = "USER_SEARCH"
    POSTING_SEARCH = "POSTING_SEARCH"
    MESSAGE_RELAY = "MESSAGE_RELAY"
    TRUST_LEVEL_CHANGE = "TRUST_LEVEL_CHANGE"
    SCOPE_UPDATE = "SCOPE_UPDATE"
    KEY_ROTATION = "KEY_ROTATION"
    ERROR = "ERROR"


class FederationOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    TIMEOUT = "TIMEOUT"
    REJECTED = "REJECTED"
    PARTIAL = "PARTIAL"


class ScopeType(str, enum.Enum):
    """Named data categories a federated server may be granted."""

    USERS = "users"
    POSTINGS = "postings"
    CHAT = "chat"
    GEOLOCATION = "geolocation"
    ATTRIBUTES = "attributes"


SCOPE_FIELDS = tuple(scope.value for scope in ScopeType)


class FederationScope(BaseModel):
    """Set of independent scope permissions shared with a federated server."""

    model_config = ConfigDict(frozen=True)

    users: bool = False
    postings: bool = False
    chat: bool = False
    geolocation: bool = False
    attributes: bool = False

    @classmethod
    def none(cls) -> "FederationScope":
        return cls()

    @classmethod
    def all(cls) -> "FederationScope":
        return cls(users=True, postings=True, chat=True, geolocation=True, attributes=True)

    @classmethod
    def from_mapping(cls, mapping: Optional[Dict[str, Any]]) -> "FederationScope":
        """Builds a scope from a stored JSON map, ignoring unknown keys."""
        mapping = mapping or {}
        return cls(**{name: bool(mapping.get(name, False)) for name in SCOPE_FIELDS})

    def allows(self, scope: ScopeType) -> bool:
        return bool(getattr(self, scope.value))

    def intersect(self, other: "FederationScope") -> "FederationScope":
        """Scopes enabled in both sets."""
        return FederationScope(
            **{name: getattr(self, name) and getattr(other, name) for name in SCOPE_FIELDS}
        )

    def to_mapping(self) -> Dict[str, bool]:
        return {name: bool(getattr(self, name)) for name in SCOPE_FIELDS}

    def canonical(self) -> str:
        """Stable textual form used inside signed payloads and agreement hashes."""
        return ",".join(
            f"{name}={'true' if getattr(self, name) else 'false'}" for name in SCOPE_FIELDS
        )


@dataclass(frozen=True)
class PublicServerIdentity:
    """The shareable part of this server's identity."""

    server_id: str
    server_url: str
    server_name: str
    public_key: str
    key_algorithm: str
    key_size: int
    protocol_version: str
    admin_contact: Optional[str]
    description: Optional[str]
    location_hint: Optional[str]
    key_generated_at: datetime
    key_rotation_due: Optional[datetime]


@dataclass(frozen=True)
class LocalServerIdentity:
    """This server's own identity, including its signing key.

    The private key never leaves the identity service; query-facing code
    works with :class:`PublicServerIdentity`.
    """

    server_id: str
    server_url: str
    server_name: str
    public_key: str
    private_key: str = field(repr=False)
    key_algorithm: str = "RSA"
    key_size: int = 2048
    protocol_version: str = "1.0"
    admin_contact: Optional[str] = None
    description: Optional[str] = None
    location_hint: Optional[str] = None
    key_generated_at: Optional[datetime] = None
    key_rotation_due: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_public(self) -> PublicServerIdentity:
        return PublicServerIdentity(
            server_id=self.server_id,
            server_url=self.server_url,
            server_name=self.server_name,
            public_key=self.public_key,
            key_algorithm=self.key_algorithm,
            key_size=self.key_size,
            protocol_version=self.protocol_version,
            admin_contact=self.admin_contact,
            description=self.description,
            location_hint=self.location_hint,
            key_generated_at=self.key_generated_at,
            key_rotation_due=self.key_rotation_due,
        )

    def with_keys(
        self,
        *,
        public_key: str,
        private_key: str,
        key_size: int,
        key_generated_at: datetime,
        key_rotation_due: datetime,
    ) -> "LocalServerIdentity":
        return replace(
            self,
            public_key=public_key,
            private_key=private_key,
            key_size=key_size,
            key_generated_at=key_generated_at,
            key_rotation_due=key_rotation_due,
            updated_at=key_generated_at,
        )


@dataclass
class FederatedServer:
    """This server's own record of a remote server it has interacted with."""

    server_id: str
    server_url: str
    server_name: Optional[str]
    public_key: str
    trust_level: TrustLevel
    scope_permissions: FederationScope
    federation_agreement_hash: Optional[str]
    last_sync_timestamp: Optional[datetime]
    server_metadata: Dict[str, str]
    protocol_version: str
    is_active: bool
    data_retention_days: int
    created_at: datetime
    updated_at: datetime


@dataclass
class FederatedUser:
    """A user on another server that has reached local users through relay."""

    remote_user_id: str
    origin_server_id: str
    federated_user_id: str
    display_name: Optional[str]
    public_key: Optional[str]
    last_updated: datetime
    expires_at: Optional[datetime]
    created_at: datetime


@dataclass(frozen=True)
class AuditLogEntry:
    id: str
    event_type: FederationEventType
    server_id: Optional[str]
    action: str
    outcome: FederationOutcome
    details: Optional[Dict[str, Any]]
    error_message: Optional[str]
    remote_ip: Optional[str]
    duration_ms: Optional[int]
    timestamp: datetime
