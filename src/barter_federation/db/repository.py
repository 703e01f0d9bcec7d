from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from barter_federation.models.federation import (
    AuditLogEntry,
    FederatedServer,
    FederatedUser,
    FederationEventType,
    FederationOutcome,
    FederationScope,
    LocalServerIdentity,
    TrustLevel,
)

from .base import DatabaseSessionManager
from .models import (
    AdminTokenCache,
    FederatedServerRecord,
    FederatedUserRecord,
    FederationAuditLogRecord,
    LocalServerIdentityRecord,
    RelayEnvelopeCache,
)


class ServerUrlConflictError(ValueError):
    """Raised when a server URL is already registered under a different server id."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def to_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def from_millis(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _identity_from_record(record: LocalServerIdentityRecord) -> LocalServerIdentity:
    return LocalServerIdentity(
        server_id=record.server_id,
        server_url=record.server_url,
        server_name=record.server_name,
        public_key=record.public_key,
        private_key=record.private_key,
        key_algorithm=record.key_algorithm,
        key_size=record.key_size,
        protocol_version=record.protocol_version,
        admin_contact=record.admin_contact,
        description=record.description,
        location_hint=record.location_hint,
        key_generated_at=from_millis(record.key_generated_at),
        key_rotation_due=from_millis(record.key_rotation_due),
        created_at=from_millis(record.created_at),
        updated_at=from_millis(record.updated_at),
    )


def _server_from_record(record: FederatedServerRecord) -> FederatedServer:
    return FederatedServer(
        server_id=record.server_id,
        server_url=record.server_url,
        server_name=record.server_name,
        public_key=record.public_key,
        trust_level=TrustLevel(record.trust_level),
        scope_permissions=FederationScope.from_mapping(record.scope_permissions),
        federation_agreement_hash=record.federation_agreement_hash,
        last_sync_timestamp=from_millis(record.last_sync_timestamp),
        server_metadata=dict(record.server_metadata or {}),
        protocol_version=record.protocol_version,
        is_active=record.is_active,
        data_retention_days=record.data_retention_days,
        created_at=from_millis(record.created_at),
        updated_at=from_millis(record.updated_at),
    )


def _user_from_record(record: FederatedUserRecord) -> FederatedUser:
    return FederatedUser(
        remote_user_id=record.remote_user_id,
        origin_server_id=record.origin_server_id,
        federated_user_id=record.federated_user_id,
        display_name=record.display_name,
        public_key=record.public_key,
        last_updated=from_millis(record.last_updated),
        expires_at=from_millis(record.expires_at),
        created_at=from_millis(record.created_at),
    )


def _audit_from_record(record: FederationAuditLogRecord) -> AuditLogEntry:
    return AuditLogEntry(
        id=record.id,
        event_type=FederationEventType(record.event_type),
        server_id=record.server_id,
        action=record.action,
        outcome=FederationOutcome(record.outcome),
        details=record.details,
        error_message=record.error_message,
        remote_ip=record.remote_ip,
        duration_ms=record.duration_ms,
        timestamp=from_millis(record.timestamp),
    )


class FederationRepository:
    """Persistence primitives backed by SQLAlchemy for federation data."""

    def __init__(self, db: DatabaseSessionManager) -> None:
        """Initializes the FederationRepository with a database session manager.

        Args:
            db: The DatabaseSessionManager instance.
        """
        self._db = db

    # Local identity ---------------------------------------------------------

    def get_local_identity(self) -> Optional[LocalServerIdentity]:
        """Returns the single local identity row, if it has been created."""
        with self._db.session() as session:
            record = session.execute(
                select(LocalServerIdentityRecord).where(LocalServerIdentityRecord.singleton == 1)
            ).scalar_one_or_none()
            return _identity_from_record(record) if record else None

    def save_local_identity(self, identity: LocalServerIdentity) -> Tuple[LocalServerIdentity, bool]:
        """Inserts the local identity unless one already exists.

        The table's constant ``singleton`` key makes a concurrent second
        insert fail; the loser re-reads and returns the winner's identity.

        Returns:
            The stored identity and whether this call created it.
        """
        try:
            with self._db.session() as session:
                existing = session.execute(
                    select(LocalServerIdentityRecord).where(LocalServerIdentityRecord.singleton == 1)
                ).scalar_one_or_none()
                if existing is not None:
                    return _identity_from_record(existing), False
                session.add(
                    LocalServerIdentityRecord(
                        singleton=1,
                        server_id=identity.server_id,
                        server_url=identity.server_url,
                        server_name=identity.server_name,
                        public_key=identity.public_key,
                        private_key=identity.private_key,
                        key_algorithm=identity.key_algorithm,
                        key_size=identity.key_size,
                        protocol_version=identity.protocol_version,
                        admin_contact=identity.admin_contact,
                        description=identity.description,
                        location_hint=identity.location_hint,
                        key_generated_at=to_millis(identity.key_generated_at),
                        key_rotation_due=to_millis(identity.key_rotation_due),
                        created_at=to_millis(identity.created_at),
                        updated_at=to_millis(identity.updated_at),
                    )
                )
        except IntegrityError:
            stored = self.get_local_identity()
            if stored is None:
                raise
            return stored, False
        return identity, True

    def replace_local_keys(self, identity: LocalServerIdentity) -> bool:
        """Swaps the keypair of the local identity in a single UPDATE."""
        with self._db.session() as session:
            result = session.execute(
                update(LocalServerIdentityRecord)
                .where(LocalServerIdentityRecord.server_id == identity.server_id)
                .values(
                    public_key=identity.public_key,
                    private_key=identity.private_key,
                    key_size=identity.key_size,
                    key_generated_at=to_millis(identity.key_generated_at),
                    key_rotation_due=to_millis(identity.key_rotation_due),
                    updated_at=_now_ms(),
                )
            )
            return result.rowcount > 0

    # Federated servers ------------------------------------------------------

    def get_federated_server(self, server_id: str) -> Optional[FederatedServer]:
        with self._db.session() as session:
            record = session.get(FederatedServerRecord, server_id)
            return _server_from_record(record) if record else None

    def list_federated_servers(self, trust_level: Optional[TrustLevel] = None) -> List[FederatedServer]:
        """Lists known servers, optionally filtered by trust level, oldest first."""
        with self._db.session() as session:
            query = select(FederatedServerRecord).order_by(FederatedServerRecord.created_at)
            if trust_level is not None:
                query = query.where(FederatedServerRecord.trust_level == trust_level.value)
            return [_server_from_record(r) for r in session.execute(query).scalars()]

    def upsert_federated_server(self, server: FederatedServer) -> Tuple[FederatedServer, bool]:
        """Inserts or updates the row keyed by ``server.server_id``.

        ``created_at`` is preserved on update. A concurrent insert of the same
        id surfaces as an IntegrityError on commit and is retried once as an
        update, so repeated handshakes never produce duplicate rows.

        Returns:
            The stored server and whether a new row was created.

        Raises:
            ServerUrlConflictError: If another server id already owns the URL.
        """
        for attempt in range(2):
            try:
                return self._upsert_once(server)
            except IntegrityError:
                if attempt:
                    raise
        raise AssertionError("unreachable")

    def _upsert_once(self, server: FederatedServer) -> Tuple[FederatedServer, bool]:
        now = _now_ms()
        with self._db.session() as session:
            url_owner = session.execute(
                select(FederatedServerRecord.server_id).where(
                    FederatedServerRecord.server_url == server.server_url,
                    FederatedServerRecord.server_id != server.server_id,
                )
            ).scalar_one_or_none()
            if url_owner is not None:
                raise ServerUrlConflictError(server.server_url)

            record = session.get(FederatedServerRecord, server.server_id)
            created = record is None
            if created:
                record = FederatedServerRecord(server_id=server.server_id, created_at=now)
                session.add(record)
            record.server_url = server.server_url
            record.server_name = server.server_name
            record.public_key = server.public_key
            record.trust_level = server.trust_level.value
            record.scope_permissions = server.scope_permissions.to_mapping()
            record.federation_agreement_hash = server.federation_agreement_hash
            record.last_sync_timestamp = to_millis(server.last_sync_timestamp)
            record.server_metadata = dict(server.server_metadata)
            record.protocol_version = server.protocol_version
            record.is_active = server.is_active
            record.data_retention_days = server.data_retention_days
            record.updated_at = now
            session.flush()
            return _server_from_record(record), created

    def _update_server(self, server_id: str, values: Dict[str, Any]) -> bool:
        values = dict(values, updated_at=_now_ms())
        with self._db.session() as session:
            result = session.execute(
                update(FederatedServerRecord)
                .where(FederatedServerRecord.server_id == server_id)
                .values(**values)
            )
            return result.rowcount > 0

    def update_server_trust_level(self, server_id: str, trust_level: TrustLevel) -> bool:
        return self._update_server(server_id, {"trust_level": trust_level.value})

    def update_server_scopes(self, server_id: str, scopes: FederationScope) -> bool:
        return self._update_server(server_id, {"scope_permissions": scopes.to_mapping()})

    def update_server_last_sync(self, server_id: str) -> bool:
        return self._update_server(server_id, {"last_sync_timestamp": _now_ms()})

    def delete_federated_server(self, server_id: str) -> bool:
        """Deletes the server together with its cached federated users."""
        with self._db.session() as session:
            session.execute(
                delete(FederatedUserRecord).where(FederatedUserRecord.origin_server_id == server_id)
            )
            result = session.execute(
                delete(FederatedServerRecord).where(FederatedServerRecord.server_id == server_id)
            )
            return result.rowcount > 0

    # Federated users --------------------------------------------------------

    def upsert_federated_user(
        self,
        *,
        remote_user_id: str,
        origin_server_id: str,
        display_name: Optional[str],
        public_key: Optional[str],
        expires_at: Optional[datetime],
    ) -> Tuple[FederatedUser, bool]:
        """Caches or refreshes a remote user.

        A missing ``display_name`` or ``public_key`` keeps the stored value.

        Returns:
            The stored user and whether a new row was created.
        """
        for attempt in range(2):
            try:
                return self._upsert_user_once(
                    remote_user_id, origin_server_id, display_name, public_key, expires_at
                )
            except IntegrityError:
                if attempt:
                    raise
        raise AssertionError("unreachable")

    def _upsert_user_once(
        self,
        remote_user_id: str,
        origin_server_id: str,
        display_name: Optional[str],
        public_key: Optional[str],
        expires_at: Optional[datetime],
    ) -> Tuple[FederatedUser, bool]:
        now = _now_ms()
        with self._db.session() as session:
            record = session.get(FederatedUserRecord, (remote_user_id, origin_server_id))
            created = record is None
            if created:
                record = FederatedUserRecord(
                    remote_user_id=remote_user_id,
                    origin_server_id=origin_server_id,
                    federated_user_id=f"{remote_user_id}@{origin_server_id}",
                    created_at=now,
                )
                session.add(record)
            if display_name is not None:
                record.display_name = display_name
            if public_key is not None:
                record.public_key = public_key
            record.last_updated = now
            record.expires_at = to_millis(expires_at)
            session.flush()
            return _user_from_record(record), created

    def get_federated_user(self, remote_user_id: str, origin_server_id: str) -> Optional[FederatedUser]:
        with self._db.session() as session:
            record = session.get(FederatedUserRecord, (remote_user_id, origin_server_id))
            return _user_from_record(record) if record else None

    def list_federated_users(self, origin_server_id: str, limit: int = 100) -> List[FederatedUser]:
        with self._db.session() as session:
            query = (
                select(FederatedUserRecord)
                .where(FederatedUserRecord.origin_server_id == origin_server_id)
                .order_by(FederatedUserRecord.created_at, FederatedUserRecord.remote_user_id)
                .limit(limit)
            )
            return [_user_from_record(r) for r in session.execute(query).scalars()]

    def list_stale_federated_users(self, older_than: datetime) -> List[FederatedUser]:
        """Cached users last refreshed before ``older_than``, or already expired."""
        cutoff = to_millis(older_than)
        now = _now_ms()
        with self._db.session() as session:
            query = (
                select(FederatedUserRecord)
                .where(
                    or_(
                        FederatedUserRecord.last_updated < cutoff,
                        FederatedUserRecord.expires_at < now,
                    )
                )
                .order_by(FederatedUserRecord.last_updated)
            )
            return [_user_from_record(r) for r in session.execute(query).scalars()]

    # Audit log --------------------------------------------------------------

    def append_audit_entry(
        self,
        *,
        event_type: FederationEventType,
        server_id: Optional[str],
        action: str,
        outcome: FederationOutcome,
        details: Optional[Dict[str, Any]],
        error_message: Optional[str],
        duration_ms: Optional[int],
        remote_ip: Optional[str],
    ) -> AuditLogEntry:
        record = FederationAuditLogRecord(
            id=str(uuid.uuid4()),
            event_type=event_type.value,
            server_id=server_id,
            action=action,
            outcome=outcome.value,
            details=details,
            error_message=error_message,
            remote_ip=remote_ip,
            duration_ms=duration_ms,
            timestamp=_now_ms(),
        )
        with self._db.session() as session:
            session.add(record)
            session.flush()
            return _audit_from_record(record)

    def get_audit_logs(
        self,
        server_id: Optional[str] = None,
        event_type: Optional[FederationEventType] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        """Returns audit entries newest first."""
        with self._db.session() as session:
            query = select(FederationAuditLogRecord)
            if server_id is not None:
                query = query.where(FederationAuditLogRecord.server_id == server_id)
            if event_type is not None:
                query = query.where(FederationAuditLogRecord.event_type == event_type.value)
            query = query.order_by(
                FederationAuditLogRecord.timestamp.desc(), FederationAuditLogRecord.id
            ).limit(limit)
            return [_audit_from_record(r) for r in session.execute(query).scalars()]

    # Relay replay cache -----------------------------------------------------

    def remember_relay_fingerprint(
        self, fingerprint: str, sender_server_id: str, ttl_seconds: int
    ) -> bool:
        """Stores a relayed message fingerprint.

        Returns:
            True if the fingerprint was new, False if it is a replay.
        """
        now = _now_ms()
        try:
            with self._db.session() as session:
                session.execute(
                    delete(RelayEnvelopeCache).where(RelayEnvelopeCache.expires_at < now)
                )
                if session.get(RelayEnvelopeCache, fingerprint) is not None:
                    return False
                session.add(
                    RelayEnvelopeCache(
                        fingerprint=fingerprint,
                        sender_server_id=sender_server_id,
                        expires_at=now + ttl_seconds * 1000,
                    )
                )
        except IntegrityError:
            return False
        return True

    # Admin token replay cache -----------------------------------------------

    def remember_admin_jti(self, jti: str, subject: str, expires_at_ms: int) -> bool:
        """Stores the id of an admin token so it cannot be presented twice.

        Args:
            jti: The token's unique id claim.
            subject: The operator the token was issued to.
            expires_at_ms: When the token expires; the entry is pruned after that.

        Returns:
            True if the id was new, False if the token was already used.
        """
        now = _now_ms()
        try:
            with self._db.session() as session:
                session.execute(delete(AdminTokenCache).where(AdminTokenCache.expires_at < now))
                if session.get(AdminTokenCache, jti) is not None:
                    return False
                session.add(AdminTokenCache(jti=jti, subject=subject, expires_at=expires_at_ms))
        except IntegrityError:
            return False
        return True


__all__ = [
    "FederationRepository",
    "ServerUrlConflictError",
    "from_millis",
    "to_millis",
]
