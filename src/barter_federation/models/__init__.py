"""Domain models for Barter Federation."""

from .federation import (
    AuditLogEntry,
    FederatedServer,
    FederatedUser,
    FederationEventType,
    FederationOutcome,
    FederationScope,
    LocalServerIdentity,
    PublicServerIdentity,
    ScopeType,
    TrustLevel,
)

__all__ = [
    "AuditLogEntry",
    "FederatedServer",
    "FederatedUser",
    "FederationEventType",
    "FederationOutcome",
    "FederationScope",
    "LocalServerIdentity",
    "PublicServerIdentity",
    "ScopeType",
    "TrustLevel",
]
