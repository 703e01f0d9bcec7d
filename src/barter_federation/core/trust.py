from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from barter_federation.models.federation import FederationScope, TrustLevel


class ServerNotFoundError(KeyError):
    """Raised when a server id is not present in the trust store."""


class ConsentRequiredError(PermissionError):
    """Raised when a change that grants data access lacks a remote co-signature."""


class InvalidConsentError(PermissionError):
    """Raised when a remote co-signature is stale or does not verify."""


@dataclass(frozen=True)
class RemoteConsent:
    """A remote server's signature approving a change to its trust record here.

    The signature covers the canonical change payload (see
    :mod:`barter_federation.core.canonical`) at ``timestamp`` milliseconds.
    """

    timestamp: int
    signature: str


def trust_change_requires_consent(current: TrustLevel, requested: TrustLevel) -> bool:
    """Whether moving from ``current`` to ``requested`` needs the remote's co-signature.

    Blocking is unilateral self-protection. Everything else, including leaving
    ``BLOCKED``, needs consent; re-applying the current level is a no-op.
    """
    if requested == TrustLevel.BLOCKED:
        return False
    return requested != current


def scope_change_requires_consent(current: FederationScope, requested: FederationScope) -> bool:
    return requested != current


def grants_access(trust_level: TrustLevel) -> bool:
    """Blocked servers get nothing, whatever their stored scopes say."""
    return trust_level != TrustLevel.BLOCKED


def parse_trust_level(value: Optional[str]) -> Optional[TrustLevel]:
    """Case-insensitive lookup; returns None for unknown values."""
    if not value:
        return None
    try:
        return TrustLevel(value.strip().upper())
    except ValueError:
        return None


__all__ = [
    "ServerNotFoundError",
    "ConsentRequiredError",
    "InvalidConsentError",
    "RemoteConsent",
    "trust_change_requires_consent",
    "scope_change_requires_consent",
    "grants_access",
    "parse_trust_level",
]
