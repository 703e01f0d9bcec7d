from __future__ import annotations

import uuid

from sqlalchemy import JSON, BigInteger, Boolean, CheckConstraint, Column, Index, Integer, String, Text

from .base import Base

# All *_at columns hold epoch milliseconds.


class LocalServerIdentityRecord(Base):
    """Identity and keys of this server. Holds at most one row."""

    __tablename__ = "local_server_identity"
    __table_args__ = (
        CheckConstraint("singleton = 1", name="ck_local_server_identity_singleton"),
    )

    # Constant unique key; a second identity row fails on insert.
    singleton = Column(Integer, nullable=False, unique=True, default=1)
    server_id = Column(String(36), primary_key=True)
    server_url = Column(String(255), nullable=False)
    server_name = Column(String(255), nullable=False)
    public_key = Column(Text, nullable=False)
    private_key = Column(Text, nullable=False)
    key_algorithm = Column(String(20), nullable=False, default="RSA")
    key_size = Column(Integer, nullable=False, default=2048)
    protocol_version = Column(String(10), nullable=False, default="1.0")
    admin_contact = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    location_hint = Column(String(255), nullable=True)
    key_generated_at = Column(BigInteger, nullable=False)
    key_rotation_due = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class FederatedServerRecord(Base):
    """This server's view of one remote server: identity, trust and scopes."""

    __tablename__ = "federated_servers"

    server_id = Column(String(36), primary_key=True)
    server_url = Column(String(255), unique=True, nullable=False)
    server_name = Column(String(255), nullable=True)
    public_key = Column(Text, nullable=False)
    trust_level = Column(String(20), nullable=False, default="PENDING")
    scope_permissions = Column(JSON, nullable=False)
    federation_agreement_hash = Column(String(255), nullable=True)
    last_sync_timestamp = Column(BigInteger, nullable=True)
    server_metadata = Column(JSON, nullable=True)
    protocol_version = Column(String(10), nullable=False, default="1.0")
    is_active = Column(Boolean, nullable=False, default=True)
    data_retention_days = Column(Integer, nullable=False, default=30)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class FederationAuditLogRecord(Base):
    """Append-only history of federation events."""

    __tablename__ = "federation_audit_log"
    __table_args__ = (
        Index("ix_federation_audit_log_server_ts", "server_id", "timestamp"),
        Index("ix_federation_audit_log_event_ts", "event_type", "timestamp"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_type = Column(String(50), nullable=False)
    server_id = Column(String(255), nullable=True)
    action = Column(String(64), nullable=False)
    outcome = Column(String(20), nullable=False)
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    remote_ip = Column(String(45), nullable=True)
    duration_ms = Column(BigInteger, nullable=True)
    timestamp = Column(BigInteger, nullable=False)


class RelayEnvelopeCache(Base):
    """Fingerprints of relayed messages already accepted, to drop replays."""

    __tablename__ = "relay_envelope_cache"

    fingerprint = Column(String(128), primary_key=True)
    sender_server_id = Column(String(36), nullable=False)
    expires_at = Column(BigInteger, nullable=False)


class FederatedUserRecord(Base):
    """Cached reference to a user on another server, keyed by origin server."""

    __tablename__ = "federated_users"
    __table_args__ = (
        Index("ix_federated_users_last_updated", "last_updated"),
    )

    remote_user_id = Column(String(255), primary_key=True)
    origin_server_id = Column(String(36), primary_key=True, index=True)
    federated_user_id = Column(String(512), unique=True, nullable=False)
    display_name = Column(String(255), nullable=True)
    public_key = Column(Text, nullable=True)
    last_updated = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)


class AdminTokenCache(Base):
    """Ids (``jti``) of admin tokens already used, kept until the token expires."""

    __tablename__ = "admin_token_cache"

    jti = Column(String(256), primary_key=True)
    subject = Column(String(255), nullable=False)
    expires_at = Column(BigInteger, nullable=False)
