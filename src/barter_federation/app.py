from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Mapping, Optional

import httpx
from fastapi import FastAPI
from prometheus_client import start_http_server

from barter_federation.api import api_router
from barter_federation.core import FederationSettings
from barter_federation.core.admin_auth import AdminAuth, BootstrapAuth
from barter_federation.core.rate_limiter import RateLimiter
from barter_federation.db import DatabaseSessionManager
from barter_federation.db.repository import FederationRepository
from barter_federation.services import (
    AuditLogger,
    ChatDelivery,
    FederatedSearch,
    HandshakeEngine,
    IdentityService,
    InboundQueryService,
    InMemoryChatDelivery,
    InMemoryPostingDirectory,
    InMemoryUserDirectory,
    MessageRelay,
    PostingDirectory,
    RemoteFederationClient,
    SignedRequestVerifier,
    TrustAdministration,
    UserDirectory,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _load_settings() -> FederationSettings:
    """Loads federation settings, caching the result."""
    return FederationSettings()


def create_app(
    settings: Optional[FederationSettings] = None,
    *,
    users: Optional[UserDirectory] = None,
    postings: Optional[PostingDirectory] = None,
    chat: Optional[ChatDelivery] = None,
    outbound_mounts: Optional[Mapping[str, httpx.AsyncBaseTransport]] = None,
) -> FastAPI:
    """Creates and configures the FastAPI application for the federation service.

    Args:
        settings: Optional FederationSettings instance. If None, settings are loaded.
        users: Local user directory; in-memory when omitted.
        postings: Local posting directory; in-memory when omitted.
        chat: Chat delivery for relayed messages; in-memory when omitted.
        outbound_mounts: Optional httpx transports for outbound federation calls.

    Returns:
        A configured FastAPI application instance.
    """
    settings = settings or _load_settings()

    db_manager = DatabaseSessionManager(settings.database_url)
    db_manager.create_all()  # IMPORTANT: In production, use a dedicated migration tool (e.g., Alembic) for schema management.

    repository = FederationRepository(db_manager)
    audit = AuditLogger(repository)
    identity = IdentityService(settings=settings, repository=repository, audit=audit)
    client = RemoteFederationClient(
        timeout=settings.outbound_timeout_seconds, mounts=outbound_mounts
    )
    verifier = SignedRequestVerifier(repository=repository, audit=audit)

    users = users or InMemoryUserDirectory()
    postings = postings or InMemoryPostingDirectory()
    chat = chat or InMemoryChatDelivery()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await client.aclose()
        db_manager.dispose()

    app = FastAPI(title="Barter Federation", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db_manager = db_manager
    app.state.repository = repository
    app.state.audit_logger = audit
    app.state.identity_service = identity
    app.state.remote_client = client
    app.state.handshake_engine = HandshakeEngine(
        settings=settings,
        identity=identity,
        repository=repository,
        audit=audit,
        client=client,
    )
    app.state.trust_admin = TrustAdministration(
        identity=identity, repository=repository, audit=audit
    )
    app.state.inbound_queries = InboundQueryService(
        settings=settings,
        identity=identity,
        repository=repository,
        audit=audit,
        verifier=verifier,
        users=users,
        postings=postings,
    )
    app.state.message_relay = MessageRelay(
        settings=settings,
        identity=identity,
        repository=repository,
        audit=audit,
        client=client,
        verifier=verifier,
        chat=chat,
    )
    app.state.federated_search = FederatedSearch(
        identity=identity, repository=repository, audit=audit, client=client
    )

    app.state.rate_limiter = RateLimiter(settings=settings)
    app.state.admin_auth = AdminAuth(settings=settings, repository=repository)
    app.state.bootstrap_auth = BootstrapAuth(settings=settings)

    if settings.metrics_port > 0:
        start_http_server(settings.metrics_port)
        logger.info("Prometheus metrics exposed on port %d", settings.metrics_port)

    app.include_router(api_router)

    return app


__all__ = ["create_app"]
