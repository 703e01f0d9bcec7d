from __future__ import annotations

import ipaddress
from typing import Optional, Tuple

from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GrantableScopes(BaseModel):
    """Upper bound on the scopes this server grants to an inbound handshake."""

    users: bool = True
    postings: bool = True
    chat: bool = True
    geolocation: bool = True
    attributes: bool = True


class FederationSettings(BaseSettings):
    """Configuration surface for the federation service."""

    database_url: str = Field(
        default="sqlite+pysqlite:///./federation.db",  # IMPORTANT: Use PostgreSQL in production
        description="SQLAlchemy-compatible database URL.",
    )
    protocol_version: str = Field(default="1.0")
    key_size: int = Field(
        default=2048,
        ge=2048,
        le=8192,
        description="RSA modulus size in bits for the local server identity.",
    )
    key_rotation_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Days after key generation at which rotation becomes due.",
    )
    outbound_timeout_seconds: float = Field(
        default=10.0,
        ge=1.0,
        le=60.0,
        description="Timeout applied to every outbound federation HTTP call.",
    )
    default_data_retention_days: int = Field(default=30, ge=1)
    handshake_grantable_scopes: GrantableScopes = Field(
        default_factory=GrantableScopes,
        description="Scopes this server is willing to grant when accepting a handshake.",
    )

    init_secret: Optional[SecretStr] = Field(
        default=None,  # IMPORTANT: Provision out-of-band before calling /initialize
        description="Shared secret for the bootstrap HMAC on identity initialization.",
    )
    admin_user_ids: Tuple[str, ...] = Field(
        default=(),
        description="Operator ids allowed to call the federation admin endpoints.",
    )
    admin_jwt_secret: Optional[SecretStr] = Field(
        default=None,
        description="HS256 key that signs operator bearer tokens for the admin endpoints.",
    )
    admin_jwt_audience: str = Field(default="barter-federation-admin")
    admin_jwt_issuer: str = Field(default="barter-federation-operators")
    admin_token_ttl_seconds: int = Field(
        default=300,
        ge=30,
        le=3600,
        description="Lifetime of operator tokens minted by issue_admin_token.",
    )
    admin_allowed_networks: Tuple[str, ...] = Field(
        default=(),
        description="Optional CIDR allowlist for admin endpoints. Empty allows any address.",
    )

    federation_rate_limits_default_rps: int = Field(default=10, ge=1)
    federation_rate_limits_burst: int = Field(default=50, ge=1)

    relay_replay_cache_ttl_seconds: int = Field(default=600, ge=300)
    max_query_limit: int = Field(default=100, ge=1, le=1000)

    metrics_port: int = Field(default=0, ge=0, le=65535)

    model_config = SettingsConfigDict(
        env_prefix="federation_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("admin_allowed_networks")
    @classmethod
    def _validate_networks(cls, value: Tuple[str, ...]) -> Tuple[str, ...]:
        """Rejects allowlist entries that are not valid CIDR networks."""
        for entry in value:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError as exc:
                raise ValueError(f"invalid network in admin_allowed_networks: {entry}") from exc
        return value

    def init_secret_value(self) -> Optional[str]:
        """Returns the bootstrap secret as plain text, or None when unset."""
        if self.init_secret is None:
            return None
        value = self.init_secret.get_secret_value()
        return value or None

    def admin_jwt_secret_value(self) -> Optional[str]:
        if self.admin_jwt_secret is None:
            return None
        value = self.admin_jwt_secret.get_secret_value()
        return value or None


__all__ = ["FederationSettings", "GrantableScopes"]
