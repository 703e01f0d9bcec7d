from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from barter_federation.core import crypto
from barter_federation.core.security import is_timestamp_fresh
from barter_federation.core.trust import grants_access
from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import (
    FederatedServer,
    FederationEventType,
    FederationOutcome,
    ScopeType,
)

from .audit import AuditLogger

logger = logging.getLogger(__name__)


class RejectionReason(str, enum.Enum):
    """Machine-readable reasons a signed server-to-server call was refused."""

    MISSING_FIELDS = "missing_fields"
    STALE_TIMESTAMP = "stale_timestamp"
    UNKNOWN_SERVER = "unknown_server"
    INACTIVE_SERVER = "inactive_server"
    BLOCKED_SERVER = "blocked_server"
    SCOPE_NOT_GRANTED = "scope_not_granted"
    INVALID_SIGNATURE = "invalid_signature"


# (HTTP status, generic message returned to the remote, audit outcome)
_REJECTIONS = {
    RejectionReason.MISSING_FIELDS: (400, "Missing required federation parameters", FederationOutcome.FAILURE),
    RejectionReason.STALE_TIMESTAMP: (401, "Request timestamp outside allowed window", FederationOutcome.FAILURE),
    RejectionReason.UNKNOWN_SERVER: (404, "Server not found. Please initiate handshake first.", FederationOutcome.REJECTED),
    RejectionReason.INACTIVE_SERVER: (403, "Server is not active", FederationOutcome.REJECTED),
    RejectionReason.BLOCKED_SERVER: (403, "Server is blocked", FederationOutcome.REJECTED),
    RejectionReason.SCOPE_NOT_GRANTED: (403, "Scope not authorized for this server", FederationOutcome.REJECTED),
    RejectionReason.INVALID_SIGNATURE: (401, "Invalid signature", FederationOutcome.FAILURE),
}


@dataclass(frozen=True)
class VerificationResult:
    """Either the verified peer, or why it was refused."""

    server: Optional[FederatedServer] = None
    reason: Optional[RejectionReason] = None

    @property
    def ok(self) -> bool:
        return self.server is not None

    @property
    def status_code(self) -> int:
        return _REJECTIONS[self.reason][0] if self.reason else 200

    @property
    def message(self) -> Optional[str]:
        return _REJECTIONS[self.reason][1] if self.reason else None


class SignedRequestVerifier:
    """Authenticates and authorizes inbound server-to-server calls.

    Checks run in a fixed order: required fields, freshness, peer exists,
    peer active, peer not blocked, scope granted, signature. The first
    failure is audited and returned; the remote only ever sees the generic
    message for the reason.
    """

    def __init__(self, *, repository: FederationRepository, audit: AuditLogger) -> None:
        self._repository = repository
        self._audit = audit

    def verify(
        self,
        *,
        server_id: Optional[str],
        required_scope: Optional[ScopeType],
        payload: str,
        signature: Optional[str],
        timestamp: Optional[int],
        action: str,
        event_type: FederationEventType,
        remote_ip: Optional[str] = None,
    ) -> VerificationResult:
        """Runs every check against one inbound call.

        Args:
            server_id: The calling server's id as claimed by the request.
            required_scope: Scope the endpoint needs, or None for no scope check.
            payload: Canonical signing payload rebuilt from the request as received.
            signature: Base64 signature sent with the request.
            timestamp: Millisecond timestamp bound into the payload.
            action: Audit action label.
            event_type: Audit event type for rejections.
            remote_ip: Caller address for the audit entry.

        Returns:
            A VerificationResult carrying the peer on success.
        """
        if not server_id or not signature or timestamp is None:
            return self._reject(
                RejectionReason.MISSING_FIELDS, server_id or None, action, event_type, remote_ip
            )

        if not is_timestamp_fresh(timestamp):
            return self._reject(
                RejectionReason.STALE_TIMESTAMP,
                server_id,
                action,
                event_type,
                remote_ip,
                details={"requestTimestamp": timestamp},
            )

        server = self._repository.get_federated_server(server_id)
        if server is None:
            return self._reject(RejectionReason.UNKNOWN_SERVER, server_id, action, event_type, remote_ip)
        if not server.is_active:
            return self._reject(RejectionReason.INACTIVE_SERVER, server_id, action, event_type, remote_ip)
        if not grants_access(server.trust_level):
            return self._reject(RejectionReason.BLOCKED_SERVER, server_id, action, event_type, remote_ip)
        if required_scope is not None and not server.scope_permissions.allows(required_scope):
            return self._reject(
                RejectionReason.SCOPE_NOT_GRANTED,
                server_id,
                action,
                event_type,
                remote_ip,
                details={
                    "requiredScope": required_scope.value,
                    "currentScopes": server.scope_permissions.to_mapping(),
                },
            )

        valid = crypto.verify_with_pem(payload, signature, server.public_key)
        logger.debug(
            "Federation signature verification: server=%s payload=%r valid=%s",
            server_id,
            payload,
            valid,
        )
        if not valid:
            return self._reject(
                RejectionReason.INVALID_SIGNATURE, server_id, action, event_type, remote_ip
            )
        return VerificationResult(server=server)

    def _reject(
        self,
        reason: RejectionReason,
        server_id: Optional[str],
        action: str,
        event_type: FederationEventType,
        remote_ip: Optional[str],
        details: Optional[dict] = None,
    ) -> VerificationResult:
        _, message, outcome = _REJECTIONS[reason]
        logger.warning("Rejected %s from %s: %s", action, server_id, reason.value)
        self._audit.log_federation_event(
            event_type,
            server_id,
            action,
            outcome,
            details=dict(details or {}, reason=reason.value),
            error_message=message,
            remote_ip=remote_ip,
        )
        return VerificationResult(reason=reason)


__all__ = ["RejectionReason", "SignedRequestVerifier", "VerificationResult"]
