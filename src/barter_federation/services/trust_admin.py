from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from barter_federation.core import canonical, crypto
from barter_federation.core.security import current_millis, is_timestamp_fresh
from barter_federation.core.trust import (
    ConsentRequiredError,
    InvalidConsentError,
    RemoteConsent,
    ServerNotFoundError,
    scope_change_requires_consent,
    trust_change_requires_consent,
)
from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import (
    FederatedServer,
    FederatedUser,
    FederationEventType,
    FederationOutcome,
    FederationScope,
    TrustLevel,
)

from .audit import AuditLogger
from .identity import IdentityService

logger = logging.getLogger(__name__)


class TrustAdministration:
    """Operator-facing management of federated servers.

    Any change that grants a peer data access must be co-signed by that
    peer. Blocking is the exception: it is unilateral and immediate.
    """

    def __init__(
        self,
        *,
        identity: IdentityService,
        repository: FederationRepository,
        audit: AuditLogger,
    ) -> None:
        self._identity = identity
        self._repository = repository
        self._audit = audit

    def list_federated_servers(self, trust_level: Optional[TrustLevel] = None) -> List[FederatedServer]:
        return self._repository.list_federated_servers(trust_level)

    def get_federated_server(self, server_id: str) -> Optional[FederatedServer]:
        return self._repository.get_federated_server(server_id)

    def _require_server(self, server_id: str) -> FederatedServer:
        server = self._repository.get_federated_server(server_id)
        if server is None:
            raise ServerNotFoundError(server_id)
        return server

    def _check_consent(
        self,
        server: FederatedServer,
        consent: Optional[RemoteConsent],
        payload_for: Callable[[int], str],
        event_type: FederationEventType,
        action: str,
        details: dict,
        operator: Optional[str],
    ) -> None:
        if consent is None:
            self._audit.log_federation_event(
                event_type,
                server.server_id,
                action,
                FederationOutcome.REJECTED,
                details=dict(details, operator=operator),
                error_message="remote consent required",
            )
            raise ConsentRequiredError(
                f"changing {server.server_id} requires a signature from that server"
            )

        payload = payload_for(consent.timestamp)
        if not is_timestamp_fresh(consent.timestamp):
            problem = "remote consent timestamp outside allowed window"
        elif not crypto.verify_with_pem(payload, consent.signature, server.public_key):
            problem = "remote consent signature invalid"
        else:
            return

        logger.warning("Rejected %s for %s: %s", action, server.server_id, problem)
        self._audit.log_federation_event(
            event_type,
            server.server_id,
            action,
            FederationOutcome.FAILURE,
            details=dict(details, operator=operator, consentTimestamp=consent.timestamp),
            error_message=problem,
        )
        raise InvalidConsentError(problem)

    def update_server_trust_level(
        self,
        server_id: str,
        trust_level: TrustLevel,
        consent: Optional[RemoteConsent] = None,
        operator: Optional[str] = None,
    ) -> FederatedServer:
        """Changes the trust level of a federated server.

        Raises:
            ServerNotFoundError: If the server is unknown.
            ConsentRequiredError: If the change needs consent and none was given.
            InvalidConsentError: If the consent is stale or does not verify.
        """
        server = self._require_server(server_id)
        previous = server.trust_level
        details = {"from": previous.value, "to": trust_level.value}

        if previous == trust_level:
            return server

        needs_consent = trust_change_requires_consent(previous, trust_level)
        if needs_consent:
            local_id = self._identity.require_identity().server_id
            self._check_consent(
                server,
                consent,
                lambda ts: canonical.trust_change_payload(local_id, server_id, trust_level.value, ts),
                FederationEventType.TRUST_LEVEL_CHANGE,
                "UPDATE_TRUST_LEVEL",
                details,
                operator,
            )

        if not self._repository.update_server_trust_level(server_id, trust_level):
            raise ServerNotFoundError(server_id)

        logger.info("Trust level of %s changed %s -> %s", server_id, previous.value, trust_level.value)
        self._audit.log_federation_event(
            FederationEventType.TRUST_LEVEL_CHANGE,
            server_id,
            "UPDATE_TRUST_LEVEL",
            FederationOutcome.SUCCESS,
            details=dict(details, operator=operator, coSigned=needs_consent),
        )
        return self._require_server(server_id)

    def update_server_scopes(
        self,
        server_id: str,
        scopes: FederationScope,
        consent: Optional[RemoteConsent] = None,
        operator: Optional[str] = None,
    ) -> FederatedServer:
        """Replaces the scopes granted to a federated server. Always co-signed.

        Raises:
            ServerNotFoundError: If the server is unknown.
            ConsentRequiredError: If no consent was given.
            InvalidConsentError: If the consent is stale or does not verify.
        """
        server = self._require_server(server_id)
        if not scope_change_requires_consent(server.scope_permissions, scopes):
            return server

        details = {
            "from": server.scope_permissions.to_mapping(),
            "to": scopes.to_mapping(),
        }
        local_id = self._identity.require_identity().server_id
        self._check_consent(
            server,
            consent,
            lambda ts: canonical.scope_change_payload(local_id, server_id, scopes.canonical(), ts),
            FederationEventType.SCOPE_UPDATE,
            "UPDATE_SCOPES",
            details,
            operator,
        )

        if not self._repository.update_server_scopes(server_id, scopes):
            raise ServerNotFoundError(server_id)

        logger.info("Scopes of %s changed to %s", server_id, scopes.canonical())
        self._audit.log_federation_event(
            FederationEventType.SCOPE_UPDATE,
            server_id,
            "UPDATE_SCOPES",
            FederationOutcome.SUCCESS,
            details=dict(details, operator=operator),
        )
        return self._require_server(server_id)

    def delete_federated_server(self, server_id: str, operator: Optional[str] = None) -> bool:
        deleted = self._repository.delete_federated_server(server_id)
        self._audit.log_federation_event(
            FederationEventType.TRUST_LEVEL_CHANGE,
            server_id,
            "DELETE_SERVER",
            FederationOutcome.SUCCESS if deleted else FederationOutcome.FAILURE,
            details={"operator": operator},
            error_message=None if deleted else "server not found",
        )
        return deleted

    def update_server_last_sync(self, server_id: str) -> bool:
        return self._repository.update_server_last_sync(server_id)

    # Cached remote users ----------------------------------------------------

    def list_federated_users(self, server_id: str, limit: int = 100) -> List[FederatedUser]:
        """Remote users from ``server_id`` that have messaged local users.

        Raises:
            ServerNotFoundError: If ``server_id`` is not federated.
        """
        self._require_server(server_id)
        return self._repository.list_federated_users(server_id, limit)

    def get_federated_user(self, user_id: str, server_id: str) -> Optional[FederatedUser]:
        return self._repository.get_federated_user(user_id, server_id)

    def list_stale_federated_users(self, max_age: timedelta) -> List[FederatedUser]:
        """Cached users not refreshed within ``max_age`` or past their expiry."""
        return self._repository.list_stale_federated_users(datetime.now(timezone.utc) - max_age)

    # Consent issued by this server ------------------------------------------

    def create_trust_consent(self, peer_server_id: str, trust_level: TrustLevel) -> RemoteConsent:
        """Signs approval for ``peer_server_id`` to give this server ``trust_level``.

        The operator of the peer submits the result with their trust change.
        """
        self._require_server(peer_server_id)
        signer = self._identity.signer()
        timestamp = current_millis()
        signature = signer.sign(
            canonical.trust_change_payload(
                peer_server_id, signer.identity.server_id, trust_level.value, timestamp
            )
        )
        self._audit.log_federation_event(
            FederationEventType.TRUST_LEVEL_CHANGE,
            peer_server_id,
            "CREATE_TRUST_CONSENT",
            FederationOutcome.SUCCESS,
            details={"trustLevel": trust_level.value, "consentTimestamp": timestamp},
        )
        return RemoteConsent(timestamp=timestamp, signature=signature)

    def create_scope_consent(self, peer_server_id: str, scopes: FederationScope) -> RemoteConsent:
        self._require_server(peer_server_id)
        signer = self._identity.signer()
        timestamp = current_millis()
        signature = signer.sign(
            canonical.scope_change_payload(
                peer_server_id, signer.identity.server_id, scopes.canonical(), timestamp
            )
        )
        self._audit.log_federation_event(
            FederationEventType.SCOPE_UPDATE,
            peer_server_id,
            "CREATE_SCOPE_CONSENT",
            FederationOutcome.SUCCESS,
            details={"scopes": scopes.to_mapping(), "consentTimestamp": timestamp},
        )
        return RemoteConsent(timestamp=timestamp, signature=signature)


__all__ = ["TrustAdministration"]
