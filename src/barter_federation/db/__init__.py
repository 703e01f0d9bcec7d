from .base import DatabaseSessionManager, Base
from .models import (
    AdminTokenCache,
    FederatedServerRecord,
    FederatedUserRecord,
    FederationAuditLogRecord,
    LocalServerIdentityRecord,
    RelayEnvelopeCache,
)

__all__ = [
    "DatabaseSessionManager",
    "Base",
    "AdminTokenCache",
    "FederatedServerRecord",
    "FederatedUserRecord",
    "FederationAuditLogRecord",
    "LocalServerIdentityRecord",
    "RelayEnvelopeCache",
]
