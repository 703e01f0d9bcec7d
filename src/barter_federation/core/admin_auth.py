from __future__ import annotations

import ipaddress
import logging
import time
import uuid
from typing import Optional

from fastapi import Header, HTTPException, Request, status
from jose import JOSEError, jwt

from barter_federation.core.security import verify_bootstrap_digest
from barter_federation.core.settings import FederationSettings
from barter_federation.db.repository import FederationRepository

logger = logging.getLogger(__name__)

ADMIN_TOKEN_ALGORITHM = "HS256"


def _check_network(settings: FederationSettings, request: Request) -> None:
    """Enforces the optional admin CIDR allowlist."""
    if not settings.admin_allowed_networks:
        return
    host = request.client.host if request.client else None
    try:
        address = ipaddress.ip_address(host) if host else None
    except ValueError:
        address = None
    if address is None or not any(
        address in ipaddress.ip_network(network, strict=False)
        for network in settings.admin_allowed_networks
    ):
        logger.warning("Admin request from disallowed address %s", host)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied from this network",
        )


class AdminAuth:
    """Operator authentication dependency for the federation admin endpoints.

    Operators present ``Authorization: Bearer <jwt>``. The token is HS256-signed
    with ``admin_jwt_secret`` and must carry the configured audience and
    issuer, an expiry, a ``sub`` naming a configured operator and a ``jti``
    that has not been used before. Returns the operator id.
    """

    def __init__(self, settings: FederationSettings, repository: FederationRepository):
        """Initializes the AdminAuth dependency.

        Args:
            settings: Settings carrying the token key, audience, issuer and operator ids.
            repository: Repository used for ``jti`` replay protection.
        """
        self.settings = settings
        self.repository = repository

    async def __call__(
        self,
        request: Request,
        authorization: Optional[str] = Header(None),
    ) -> str:
        _check_network(self.settings, request)

        if authorization is None or not authorization.startswith("Bearer "):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated: Missing or invalid Authorization header",
            )
        token = authorization.split(" ", 1)[1].strip()

        secret = self.settings.admin_jwt_secret_value()
        if secret is None:
            logger.error("Admin request received but admin_jwt_secret is not configured")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Admin authentication is not configured on this server",
            )

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[ADMIN_TOKEN_ALGORITHM],
                audience=self.settings.admin_jwt_audience,
                issuer=self.settings.admin_jwt_issuer,
                options={
                    "verify_signature": True,
                    "verify_aud": True,
                    "verify_iss": True,
                    "verify_exp": True,
                    "require_exp": True,
                    "require_sub": True,
                    "require_jti": True,
                },
            )
        except JOSEError as e:
            logger.warning("Rejected admin token: %s", e)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid admin token: {e}",
            ) from e

        operator = payload["sub"]
        if operator not in self.settings.admin_user_ids:
            logger.warning("Rejected admin request from non-admin user %s", operator)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access denied. Admin privileges required.",
            )

        if not self.repository.remember_admin_jti(
            str(payload["jti"]), operator, int(payload["exp"]) * 1000
        ):
            logger.warning("Rejected replayed admin token for %s", operator)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid admin token: token already used",
            )
        return operator


def issue_admin_token(
    settings: FederationSettings, operator: str, ttl_seconds: Optional[int] = None
) -> str:
    """Mints a single-use operator token accepted by :class:`AdminAuth`.

    Raises:
        ValueError: If ``admin_jwt_secret`` is not configured.
    """
    secret = settings.admin_jwt_secret_value()
    if secret is None:
        raise ValueError("admin_jwt_secret is not configured")
    now = int(time.time())
    claims = {
        "iss": settings.admin_jwt_issuer,
        "aud": settings.admin_jwt_audience,
        "sub": operator,
        "iat": now,
        "exp": now + (ttl_seconds or settings.admin_token_ttl_seconds),
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(claims, secret, algorithm=ADMIN_TOKEN_ALGORITHM)


class BootstrapAuth:
    """Guards identity initialization with a pre-shared HMAC instead of a signature.

    The caller sends ``X-Federation-Init-Timestamp`` and
    ``X-Federation-Init-Token = hex(HMAC-SHA256(secret, timestamp))``; the
    secret itself never travels.
    """

    def __init__(self, settings: FederationSettings):
        self.settings = settings

    async def __call__(
        self,
        request: Request,
        init_timestamp: Optional[str] = Header(None, alias="X-Federation-Init-Timestamp"),
        init_token: Optional[str] = Header(None, alias="X-Federation-Init-Token"),
    ) -> None:
        _check_network(self.settings, request)

        secret = self.settings.init_secret_value()
        if secret is None:
            logger.error("Identity initialization attempted but init_secret is not configured")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Federation initialization is not configured on this server",
            )
        if not init_timestamp or not init_token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing initialization headers",
            )
        if not verify_bootstrap_digest(secret, init_timestamp, init_token):
            logger.warning("Rejected identity initialization: bad or stale init token")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired initialization token",
            )


__all__ = ["ADMIN_TOKEN_ALGORITHM", "AdminAuth", "BootstrapAuth", "issue_admin_token"]
