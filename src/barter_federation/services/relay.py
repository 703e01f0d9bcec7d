from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from barter_federation.core.security import current_millis, envelope_fingerprint
from barter_federation.core.settings import FederationSettings
from barter_federation.core.trust import grants_access
from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import (
    FederatedServer,
    FederationEventType,
    FederationOutcome,
    ScopeType,
)
from barter_federation.schemas import MessageRelayRequest, MessageRelayResponse

from .audit import AuditLogger
from .directory import ChatDelivery, RelayedMessage
from .identity import FederationNotInitializedError, IdentityService
from .remote_client import RemoteFederationClient, RemoteServerError
from .verifier import SignedRequestVerifier

logger = logging.getLogger(__name__)


def parse_federated_address(address: str) -> Optional[Tuple[str, str]]:
    """Splits ``userId@serverId``; returns None unless both parts are present."""
    if not address or address.count("@") != 1:
        return None
    user_id, _, server_id = address.partition("@")
    if not user_id or not server_id:
        return None
    return user_id, server_id


@dataclasses.dataclass
class RelayResult:
    """Outcome of an inbound relay, ready to be rendered by the route."""

    status_code: int
    response: MessageRelayResponse
    error: Optional[str] = None


class MessageRelay:
    """Forwards end-to-end encrypted chat messages between federated servers.

    Outbound relays never raise for rejections or network failures; the
    caller is usually a background task and gets ``None`` instead. Nothing
    is retried here.
    """

    def __init__(
        self,
        *,
        settings: FederationSettings,
        identity: IdentityService,
        repository: FederationRepository,
        audit: AuditLogger,
        client: RemoteFederationClient,
        verifier: SignedRequestVerifier,
        chat: ChatDelivery,
    ) -> None:
        self._settings = settings
        self._identity = identity
        self._repository = repository
        self._audit = audit
        self._client = client
        self._verifier = verifier
        self._chat = chat

    def _fail(
        self,
        server_id: Optional[str],
        reason: str,
        details: dict,
        started: float,
        outcome: FederationOutcome = FederationOutcome.FAILURE,
    ) -> None:
        logger.warning("Message relay to %s aborted: %s", details.get("recipient"), reason)
        self._audit.log_federation_event(
            FederationEventType.MESSAGE_RELAY,
            server_id,
            "SEND_MESSAGE_RELAY",
            outcome,
            details=details,
            error_message=reason,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    async def send_message_to_federated_user(
        self,
        recipient: str,
        sender_user_id: str,
        sender_name: Optional[str],
        encrypted_payload: str,
        sender_public_key: Optional[str] = None,
    ) -> Optional[str]:
        """Relays one message to ``recipient`` (``userId@serverId``).

        Returns:
            A locally generated message id once the remote confirms delivery,
            otherwise None.

        Raises:
            FederationNotInitializedError: If there is no local identity.
        """
        started = time.perf_counter()
        details = {"recipient": recipient, "senderUserId": sender_user_id}

        address = parse_federated_address(recipient)
        if address is None:
            self._fail(None, "invalid federated address", details, started)
            return None
        recipient_user_id, server_id = address

        server = self._repository.get_federated_server(server_id)
        if server is None:
            self._fail(server_id, "target server not federated", details, started)
            return None
        if not grants_access(server.trust_level):
            self._fail(server_id, "target server is blocked", details, started)
            return None
        if not server.is_active:
            self._fail(server_id, "target server is not active", details, started)
            return None
        if not server.scope_permissions.allows(ScopeType.CHAT):
            self._fail(server_id, "chat scope not granted", details, started)
            return None

        try:
            signer = self._identity.signer()
        except FederationNotInitializedError as exc:
            self._fail(server_id, str(exc), details, started)
            raise

        request = MessageRelayRequest(
            requesting_server_id=signer.identity.server_id,
            sender_user_id=sender_user_id,
            recipient_user_id=recipient_user_id,
            encrypted_payload=encrypted_payload,
            sender_public_key=sender_public_key,
            sender_name=sender_name,
            timestamp=current_millis(),
        )
        request.signature = signer.sign(request.signing_payload())

        try:
            response = await self._client.post_message_relay(server.server_url, request)
        except RemoteServerError as exc:
            self._fail(
                server_id,
                str(exc),
                details,
                started,
                outcome=FederationOutcome.TIMEOUT if exc.timed_out else FederationOutcome.FAILURE,
            )
            return None

        if not response.delivered:
            self._fail(server_id, response.reason or "message not delivered", details, started)
            return None

        message_id = str(uuid.uuid4())
        logger.info("Relayed message %s to %s", message_id, recipient)
        self._audit.log_federation_event(
            FederationEventType.MESSAGE_RELAY,
            server_id,
            "SEND_MESSAGE_RELAY",
            FederationOutcome.SUCCESS,
            details=dict(details, messageId=message_id, remoteMessageId=response.message_id),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return message_id

    async def receive_relayed_message(
        self, request: MessageRelayRequest, remote_ip: Optional[str] = None
    ) -> RelayResult:
        """Verifies an inbound relay and hands it to the chat subsystem."""
        started = time.perf_counter()
        action = "RECEIVE_MESSAGE_RELAY"
        verification = self._verifier.verify(
            server_id=request.requesting_server_id,
            required_scope=ScopeType.CHAT,
            payload=request.signing_payload(),
            signature=request.signature,
            timestamp=request.timestamp,
            action=action,
            event_type=FederationEventType.MESSAGE_RELAY,
            remote_ip=remote_ip,
        )
        if not verification.ok:
            return RelayResult(
                status_code=verification.status_code,
                response=MessageRelayResponse(delivered=False, reason=verification.message),
                error=verification.message,
            )

        details = {
            "senderUserId": request.sender_user_id,
            "recipientUserId": request.recipient_user_id,
        }

        if not await self._chat.user_exists(request.recipient_user_id):
            return self._inbound_failure(
                request,
                404,
                "Recipient user not found on this server",
                FederationOutcome.FAILURE,
                details,
                remote_ip,
                started,
            )

        fingerprint = envelope_fingerprint(
            value.encode("utf-8")
            for value in (
                request.requesting_server_id,
                str(request.timestamp),
                request.signature,
                request.recipient_user_id,
                request.encrypted_payload,
            )
        )
        if not self._repository.remember_relay_fingerprint(
            fingerprint,
            request.requesting_server_id,
            self._settings.relay_replay_cache_ttl_seconds,
        ):
            return self._inbound_failure(
                request, 409, "duplicate message", FederationOutcome.REJECTED, details, remote_ip, started
            )

        self._remember_sender(request, verification.server)

        message = RelayedMessage(
            message_id=str(uuid.uuid4()),
            sender_user_id=f"{request.sender_user_id}@{request.requesting_server_id}",
            sender_server_id=request.requesting_server_id,
            recipient_user_id=request.recipient_user_id,
            encrypted_payload=request.encrypted_payload,
            sender_name=request.sender_name or verification.server.server_name,
            sender_public_key=request.sender_public_key,
            timestamp=request.timestamp,
        )
        try:
            receipt = await self._chat.deliver(message)
        except Exception as exc:
            logger.exception("Chat delivery failed for relayed message %s", message.message_id)
            return self._inbound_failure(
                request, 500, "delivery failed", FederationOutcome.FAILURE, details, remote_ip, started, str(exc)
            )

        if not receipt.accepted:
            return self._inbound_failure(
                request, 503, "delivery not accepted", FederationOutcome.FAILURE, details, remote_ip, started
            )

        self._audit.log_federation_event(
            FederationEventType.MESSAGE_RELAY,
            request.requesting_server_id,
            action,
            FederationOutcome.SUCCESS,
            details=dict(details, messageId=message.message_id, deliveryMethod=receipt.method),
            duration_ms=int((time.perf_counter() - started) * 1000),
            remote_ip=remote_ip,
        )
        reason = None if receipt.method == "live" else "stored for delivery when recipient is online"
        return RelayResult(
            status_code=200,
            response=MessageRelayResponse(delivered=True, message_id=message.message_id, reason=reason),
        )

    def _remember_sender(self, request: MessageRelayRequest, server: FederatedServer) -> None:
        """Caches the remote sender so replies can reach them with their key."""
        expires_at = datetime.now(timezone.utc) + timedelta(days=server.data_retention_days)
        try:
            self._repository.upsert_federated_user(
                remote_user_id=request.sender_user_id,
                origin_server_id=request.requesting_server_id,
                display_name=request.sender_name,
                public_key=request.sender_public_key,
                expires_at=expires_at,
            )
        except SQLAlchemyError:
            logger.exception(
                "Could not cache federated sender %s@%s",
                request.sender_user_id,
                request.requesting_server_id,
            )

    def _inbound_failure(
        self,
        request: MessageRelayRequest,
        status_code: int,
        reason: str,
        outcome: FederationOutcome,
        details: dict,
        remote_ip: Optional[str],
        started: float,
        error_message: Optional[str] = None,
    ) -> RelayResult:
        logger.warning("Inbound relay from %s failed: %s", request.requesting_server_id, reason)
        self._audit.log_federation_event(
            FederationEventType.MESSAGE_RELAY,
            request.requesting_server_id,
            "RECEIVE_MESSAGE_RELAY",
            outcome,
            details=details,
            error_message=error_message or reason,
            duration_ms=int((time.perf_counter() - started) * 1000),
            remote_ip=remote_ip,
        )
        return RelayResult(
            status_code=status_code,
            response=MessageRelayResponse(delivered=False, reason=reason),
            error=reason,
        )


__all__ = ["MessageRelay", "RelayResult", "parse_federated_address"]
