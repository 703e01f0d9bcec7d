from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from barter_federation.core import FederationSettings, crypto
from barter_federation.db import DatabaseSessionManager
from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import (
    FederatedServer,
    FederationScope,
    LocalServerIdentity,
    TrustLevel,
)
from barter_federation.services import (
    AuditLogger,
    HandshakeEngine,
    IdentityService,
    InboundQueryService,
    InMemoryChatDelivery,
    InMemoryPostingDirectory,
    InMemoryUserDirectory,
    MessageRelay,
    RemoteFederationClient,
    SignedRequestVerifier,
    TrustAdministration,
)


@pytest.fixture(scope="session")
def key_pool():
    """RSA keys are slow to generate; share a few across the whole run."""
    return [crypto.generate_keypair(2048) for _ in range(3)]


@pytest.fixture
def make_settings(tmp_path: Path):
    def factory(name: str = "federation", **overrides) -> FederationSettings:
        return FederationSettings(
            database_url=f"sqlite+pysqlite:///{tmp_path / (name + '.db')}",
            **overrides,
        )

    return factory


def seed_identity(
    repository: FederationRepository, private_key, server_id: str, server_url: str
) -> LocalServerIdentity:
    now = datetime.now(timezone.utc)
    identity = LocalServerIdentity(
        server_id=server_id,
        server_url=server_url,
        server_name=f"Server {server_id}",
        public_key=crypto.public_key_to_pem(private_key.public_key()),
        private_key=crypto.private_key_to_pem(private_key),
        key_generated_at=now,
        key_rotation_due=now + timedelta(days=30),
        created_at=now,
        updated_at=now,
    )
    repository.save_local_identity(identity)
    return identity


def peer_record(
    server_id: str,
    private_key,
    *,
    server_url: str | None = None,
    trust_level: TrustLevel = TrustLevel.PENDING,
    scopes: FederationScope | None = None,
    is_active: bool = True,
) -> FederatedServer:
    now = datetime.now(timezone.utc)
    return FederatedServer(
        server_id=server_id,
        server_url=server_url or f"http://{server_id}.test",
        server_name=f"Server {server_id}",
        public_key=crypto.public_key_to_pem(private_key.public_key()),
        trust_level=trust_level,
        scope_permissions=scopes if scopes is not None else FederationScope.all(),
        federation_agreement_hash="hash",
        last_sync_timestamp=None,
        server_metadata={},
        protocol_version="1.0",
        is_active=is_active,
        data_retention_days=30,
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def make_node(make_settings, key_pool):
    """Builds the full service graph for one server backed by its own SQLite file."""

    def factory(
        server_id: str = "a1",
        key_index: int = 0,
        *,
        initialized: bool = True,
        client: RemoteFederationClient | None = None,
        **settings_overrides,
    ) -> SimpleNamespace:
        settings = make_settings(server_id, **settings_overrides)
        db = DatabaseSessionManager(settings.database_url)
        db.create_all()
        repository = FederationRepository(db)
        audit = AuditLogger(repository)
        identity = IdentityService(settings=settings, repository=repository, audit=audit)
        if initialized:
            seed_identity(repository, key_pool[key_index], server_id, f"http://{server_id}.test")
        client = client or MagicMock(spec=RemoteFederationClient)
        verifier = SignedRequestVerifier(repository=repository, audit=audit)
        users = InMemoryUserDirectory()
        postings = InMemoryPostingDirectory()
        chat = InMemoryChatDelivery()
        return SimpleNamespace(
            server_id=server_id,
            private_key=key_pool[key_index],
            settings=settings,
            repository=repository,
            audit=audit,
            identity=identity,
            client=client,
            verifier=verifier,
            users=users,
            postings=postings,
            chat=chat,
            handshake=HandshakeEngine(
                settings=settings,
                identity=identity,
                repository=repository,
                audit=audit,
                client=client,
            ),
            trust=TrustAdministration(identity=identity, repository=repository, audit=audit),
            relay=MessageRelay(
                settings=settings,
                identity=identity,
                repository=repository,
                audit=audit,
                client=client,
                verifier=verifier,
                chat=chat,
            ),
            queries=InboundQueryService(
                settings=settings,
                identity=identity,
                repository=repository,
                audit=audit,
                verifier=verifier,
                users=users,
                postings=postings,
            ),
        )

    return factory


@pytest.fixture
def helpers():
    return SimpleNamespace(seed_identity=seed_identity, peer_record=peer_record)
