from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from barter_federation.core import crypto
from barter_federation.core.security import current_millis, is_timestamp_fresh
from barter_federation.core.settings import FederationSettings
from barter_federation.core.trust import grants_access
from barter_federation.db.repository import FederationRepository, ServerUrlConflictError
from barter_federation.models.federation import (
    FederatedServer,
    FederationEventType,
    FederationOutcome,
    FederationScope,
    TrustLevel,
)
from barter_federation.schemas import HandshakeRequest, HandshakeResponse

from .audit import AuditLogger
from .identity import IdentityService, Signer
from .remote_client import RemoteFederationClient, RemoteServerError

logger = logging.getLogger(__name__)


class HandshakeSecurityError(RuntimeError):
    """Raised when a handshake response fails cryptographic validation."""


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class HandshakeEngine:
    """Runs both halves of the two-message federation handshake.

    Each side persists its own, independent view of the other as a
    ``PENDING`` peer. Operators promote peers afterwards through trust
    administration.
    """

    def __init__(
        self,
        *,
        settings: FederationSettings,
        identity: IdentityService,
        repository: FederationRepository,
        audit: AuditLogger,
        client: RemoteFederationClient,
    ) -> None:
        self._settings = settings
        self._identity = identity
        self._repository = repository
        self._audit = audit
        self._client = client

    def grantable_scopes(self, proposed: FederationScope) -> FederationScope:
        """Scopes granted to an inbound handshake: the proposal capped by local policy."""
        policy = FederationScope.model_validate(
            self._settings.handshake_grantable_scopes.model_dump()
        )
        return proposed.intersect(policy)

    # Initiator --------------------------------------------------------------

    async def initiate_handshake(
        self, target_url: str, proposed_scopes: FederationScope
    ) -> HandshakeResponse:
        """Introduces this server to ``target_url``.

        Returns:
            The remote's verified response. Rejections are returned, not raised.

        Raises:
            FederationNotInitializedError: If there is no local identity.
            RemoteServerError: If the remote could not be reached or replied badly.
            HandshakeSecurityError: If the response signature or agreement hash is invalid.
        """
        started = time.perf_counter()
        signer = self._identity.signer()
        local = signer.identity
        target_url = target_url.rstrip("/")

        request = HandshakeRequest(
            server_id=local.server_id,
            server_url=local.server_url,
            server_name=local.server_name,
            public_key=local.public_key,
            protocol_version=local.protocol_version,
            proposed_scopes=proposed_scopes,
            timestamp=current_millis(),
        )
        request.signature = signer.sign(request.signing_payload())

        try:
            response = await self._client.post_handshake(target_url, request)
        except RemoteServerError as exc:
            self._audit.log_federation_event(
                FederationEventType.HANDSHAKE,
                None,
                "INITIATE_HANDSHAKE",
                FederationOutcome.TIMEOUT if exc.timed_out else FederationOutcome.FAILURE,
                details={"targetServer": target_url},
                error_message=str(exc),
                duration_ms=_elapsed_ms(started),
            )
            raise

        if not crypto.verify_with_pem(
            response.signing_payload(), response.signature, response.public_key
        ):
            self._security_failure(
                response, target_url, "Invalid signature in handshake response", started
            )

        if not response.accepted:
            logger.info("Handshake to %s rejected: %s", target_url, response.reason)
            self._audit.log_federation_event(
                FederationEventType.HANDSHAKE_REJECT,
                response.server_id or None,
                "INITIATE_HANDSHAKE",
                FederationOutcome.REJECTED,
                details={"targetServer": target_url},
                error_message=response.reason,
                duration_ms=_elapsed_ms(started),
            )
            return response

        expected_hash = crypto.generate_agreement_hash(
            response.server_id,
            local.server_id,
            response.accepted_scopes.canonical(),
            response.timestamp,
        )
        if response.agreement_hash != expected_hash:
            self._security_failure(
                response, target_url, "Agreement hash does not match accepted terms", started
            )

        existing = self._repository.get_federated_server(response.server_id)
        if existing is not None and not grants_access(existing.trust_level):
            logger.warning("Ignoring handshake acceptance from blocked server %s", response.server_id)
            self._audit.log_federation_event(
                FederationEventType.HANDSHAKE,
                response.server_id,
                "INITIATE_HANDSHAKE",
                FederationOutcome.REJECTED,
                details={"targetServer": target_url},
                error_message="server is blocked",
                duration_ms=_elapsed_ms(started),
            )
            return response
        if existing is not None and existing.public_key != response.public_key:
            logger.warning("Handshake response from %s carries a different key", response.server_id)
            self._audit.log_federation_event(
                FederationEventType.HANDSHAKE_REJECT,
                response.server_id,
                "INITIATE_HANDSHAKE",
                FederationOutcome.REJECTED,
                details={"targetServer": target_url, "storedServerUrl": existing.server_url},
                error_message="key mismatch",
                duration_ms=_elapsed_ms(started),
            )
            raise HandshakeSecurityError("key mismatch")

        peer = self._peer_record(
            existing,
            server_id=response.server_id,
            server_url=response.server_url,
            server_name=response.server_name,
            public_key=response.public_key,
            protocol_version=response.protocol_version,
            scopes=response.accepted_scopes,
            agreement_hash=response.agreement_hash,
            metadata={
                "protocolVersion": response.protocol_version,
                "handshakeTimestamp": str(response.timestamp),
                "proposedScopes": proposed_scopes.canonical(),
            },
        )
        try:
            self._repository.upsert_federated_server(peer)
        except ServerUrlConflictError as exc:
            self._audit.log_federation_event(
                FederationEventType.HANDSHAKE,
                response.server_id,
                "INITIATE_HANDSHAKE",
                FederationOutcome.FAILURE,
                details={"targetServer": target_url, "serverUrl": response.server_url},
                error_message="server url already registered",
                duration_ms=_elapsed_ms(started),
            )
            raise HandshakeSecurityError("server url already registered to another server") from exc

        logger.info(
            "Federated with %s (%s), scopes %s",
            response.server_id,
            response.server_url,
            response.accepted_scopes.canonical(),
        )
        self._audit.log_federation_event(
            FederationEventType.HANDSHAKE_ACCEPT,
            response.server_id,
            "INITIATE_HANDSHAKE",
            FederationOutcome.SUCCESS,
            details={
                "targetServer": target_url,
                "agreementHash": response.agreement_hash,
                "acceptedScopes": response.accepted_scopes.to_mapping(),
            },
            duration_ms=_elapsed_ms(started),
        )
        return response

    def _security_failure(
        self, response: HandshakeResponse, target_url: str, message: str, started: float
    ) -> None:
        logger.warning("Handshake with %s failed validation: %s", target_url, message)
        self._audit.log_federation_event(
            FederationEventType.HANDSHAKE_REJECT,
            response.server_id or None,
            "INITIATE_HANDSHAKE",
            FederationOutcome.FAILURE,
            details={"targetServer": target_url},
            error_message=message,
            duration_ms=_elapsed_ms(started),
        )
        raise HandshakeSecurityError(message)

    # Acceptor ---------------------------------------------------------------

    def accept_handshake(
        self,
        request: HandshakeRequest,
        accepted_scopes: FederationScope,
        remote_ip: Optional[str] = None,
    ) -> HandshakeResponse:
        """Answers an inbound handshake.

        Every outcome is a signed :class:`HandshakeResponse`; rejections carry
        ``accepted=False`` and a generic reason.

        Raises:
            FederationNotInitializedError: If there is no local identity.
        """
        started = time.perf_counter()
        signer = self._identity.signer()
        now = current_millis()

        if not is_timestamp_fresh(request.timestamp, now):
            return self._reject(
                signer,
                request,
                now,
                reason="request timestamp outside allowed window",
                outcome=FederationOutcome.FAILURE,
                error_message="Handshake request timestamp outside replay window",
                details={"requestTimestamp": request.timestamp, "currentTimestamp": now},
                remote_ip=remote_ip,
                started=started,
            )

        if not crypto.verify_with_pem(request.signing_payload(), request.signature, request.public_key):
            return self._reject(
                signer,
                request,
                now,
                reason="invalid signature",
                outcome=FederationOutcome.FAILURE,
                error_message="invalid signature",
                details={"serverUrl": request.server_url},
                remote_ip=remote_ip,
                started=started,
            )

        if request.server_id == signer.identity.server_id:
            return self._reject(
                signer,
                request,
                now,
                reason="invalid server id",
                outcome=FederationOutcome.REJECTED,
                error_message="handshake carries this server's own id",
                details={"serverUrl": request.server_url},
                remote_ip=remote_ip,
                started=started,
            )

        existing = self._repository.get_federated_server(request.server_id)
        if existing is not None and not grants_access(existing.trust_level):
            return self._reject(
                signer,
                request,
                now,
                reason="server is blocked",
                outcome=FederationOutcome.REJECTED,
                error_message="server is blocked",
                details={"serverUrl": request.server_url},
                remote_ip=remote_ip,
                started=started,
            )
        if existing is not None and existing.public_key != request.public_key:
            return self._reject(
                signer,
                request,
                now,
                reason="key mismatch",
                outcome=FederationOutcome.REJECTED,
                error_message="key mismatch",
                details={"serverUrl": request.server_url, "storedServerUrl": existing.server_url},
                remote_ip=remote_ip,
                started=started,
            )
        if existing is not None:
            # A repeated handshake may narrow what was agreed, never widen it.
            accepted_scopes = accepted_scopes.intersect(existing.scope_permissions)

        local = signer.identity
        agreement_hash = crypto.generate_agreement_hash(
            local.server_id, request.server_id, accepted_scopes.canonical(), now
        )
        response = self._response(signer, accepted=True, scopes=accepted_scopes, agreement_hash=agreement_hash, now=now)

        peer = self._peer_record(
            existing,
            server_id=request.server_id,
            server_url=request.server_url,
            server_name=request.server_name,
            public_key=request.public_key,
            protocol_version=request.protocol_version,
            scopes=accepted_scopes,
            agreement_hash=agreement_hash,
            metadata={
                "protocolVersion": request.protocol_version,
                "handshakeTimestamp": str(request.timestamp),
                "proposedScopes": request.proposed_scopes.canonical(),
            },
        )
        try:
            _, created = self._repository.upsert_federated_server(peer)
        except ServerUrlConflictError:
            return self._reject(
                signer,
                request,
                now,
                reason="server url already registered",
                outcome=FederationOutcome.REJECTED,
                error_message="server url already registered to a different server id",
                details={"serverUrl": request.server_url},
                remote_ip=remote_ip,
                started=started,
            )

        logger.info(
            "Accepted handshake from %s (%s), scopes %s",
            request.server_id,
            request.server_url,
            accepted_scopes.canonical(),
        )
        self._audit.log_federation_event(
            FederationEventType.HANDSHAKE_ACCEPT,
            request.server_id,
            "ACCEPT_HANDSHAKE",
            FederationOutcome.SUCCESS,
            details={
                "serverUrl": request.server_url,
                "agreementHash": agreement_hash,
                "proposedScopes": request.proposed_scopes.to_mapping(),
                "acceptedScopes": accepted_scopes.to_mapping(),
                "newServer": created,
            },
            duration_ms=_elapsed_ms(started),
            remote_ip=remote_ip,
        )
        return response

    def _response(
        self,
        signer: Signer,
        *,
        accepted: bool,
        scopes: FederationScope,
        agreement_hash: str,
        now: int,
        reason: Optional[str] = None,
    ) -> HandshakeResponse:
        local = signer.identity
        response = HandshakeResponse(
            accepted=accepted,
            server_id=local.server_id,
            server_url=local.server_url,
            server_name=local.server_name,
            public_key=local.public_key,
            protocol_version=local.protocol_version,
            accepted_scopes=scopes,
            agreement_hash=agreement_hash,
            timestamp=now,
            reason=reason,
        )
        response.signature = signer.sign(response.signing_payload())
        return response

    def _reject(
        self,
        signer: Signer,
        request: HandshakeRequest,
        now: int,
        *,
        reason: str,
        outcome: FederationOutcome,
        error_message: str,
        details: dict,
        remote_ip: Optional[str],
        started: float,
    ) -> HandshakeResponse:
        logger.warning("Rejected handshake from %s: %s", request.server_id, error_message)
        self._audit.log_federation_event(
            FederationEventType.HANDSHAKE_REJECT,
            request.server_id,
            "ACCEPT_HANDSHAKE",
            outcome,
            details=details,
            error_message=error_message,
            duration_ms=_elapsed_ms(started),
            remote_ip=remote_ip,
        )
        return self._response(
            signer,
            accepted=False,
            scopes=FederationScope.none(),
            agreement_hash="",
            now=now,
            reason=reason,
        )

    def _peer_record(
        self,
        existing: Optional[FederatedServer],
        *,
        server_id: str,
        server_url: str,
        server_name: str,
        public_key: str,
        protocol_version: str,
        scopes: FederationScope,
        agreement_hash: str,
        metadata: dict,
    ) -> FederatedServer:
        """Row to store after a handshake. An existing peer keeps its trust level."""
        now = datetime.now(timezone.utc)
        return FederatedServer(
            server_id=server_id,
            server_url=server_url.rstrip("/"),
            server_name=server_name,
            public_key=public_key,
            trust_level=existing.trust_level if existing else TrustLevel.PENDING,
            scope_permissions=scopes,
            federation_agreement_hash=agreement_hash,
            last_sync_timestamp=existing.last_sync_timestamp if existing else None,
            server_metadata=metadata,
            protocol_version=protocol_version,
            is_active=True,
            data_retention_days=(
                existing.data_retention_days if existing else self._settings.default_data_retention_days
            ),
            created_at=now,
            updated_at=now,
        )


__all__ = ["HandshakeEngine", "HandshakeSecurityError"]
