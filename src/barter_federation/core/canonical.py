"""Canonical signing payloads.

Every signed federation message has exactly one function here, used by both
the signing side and the verifying side. Each payload is a fixed, explicit
field order joined with ``|``; the signature itself is never part of it.
Free-text fields that precede others must not contain ``|``.
"""

from __future__ import annotations

from typing import Optional

DELIMITER = "|"


def _join(*fields: object) -> str:
    return DELIMITER.join("" if value is None else str(value) for value in fields)


def has_delimiter(*values: Optional[str]) -> bool:
    """True if any value contains the delimiter and so cannot be signed unambiguously."""
    return any(value is not None and DELIMITER in value for value in values)


def _flag(value: bool) -> str:
    return "true" if value else "false"


def handshake_request_payload(
    *,
    server_id: str,
    server_url: str,
    server_name: str,
    public_key: str,
    protocol_version: str,
    proposed_scopes: str,
    timestamp: int,
) -> str:
    return _join(
        "HANDSHAKE_REQUEST",
        server_id,
        server_url,
        server_name,
        public_key,
        protocol_version,
        proposed_scopes,
        timestamp,
    )


def handshake_response_payload(
    *,
    accepted: bool,
    server_id: str,
    server_url: str,
    server_name: str,
    public_key: str,
    protocol_version: str,
    accepted_scopes: str,
    agreement_hash: str,
    timestamp: int,
    reason: Optional[str],
) -> str:
    return _join(
        "HANDSHAKE_RESPONSE",
        _flag(accepted),
        server_id,
        server_url,
        server_name,
        public_key,
        protocol_version,
        accepted_scopes,
        agreement_hash,
        timestamp,
        reason,
    )


def nearby_users_payload(server_id: str, lat: str, lon: str, radius: str, timestamp: int) -> str:
    """Query parameters are bound exactly as transmitted, not re-formatted."""
    return _join(server_id, lat, lon, radius, timestamp)


def posting_search_payload(
    server_id: str, query: str, limit: str, is_offer: Optional[str], timestamp: int
) -> str:
    return _join(server_id, query, limit, is_offer, timestamp)


def profile_search_payload(server_id: str, query: str, limit: str, timestamp: int) -> str:
    return _join(server_id, query, limit, timestamp)


def user_sync_payload(
    server_id: str, page: int, page_size: int, updated_since: Optional[str], timestamp: int
) -> str:
    return _join(server_id, page, page_size, updated_since, timestamp)


def message_relay_payload(server_id: str, timestamp: int, encrypted_payload: str) -> str:
    return _join(server_id, timestamp, encrypted_payload)


def trust_change_payload(
    applying_server_id: str, consenting_server_id: str, trust_level: str, timestamp: int
) -> str:
    """Binds a trust change that ``applying_server_id`` will store about the consenting peer."""
    return _join("TRUST_CHANGE", applying_server_id, consenting_server_id, trust_level, timestamp)


def scope_change_payload(
    applying_server_id: str, consenting_server_id: str, scopes: str, timestamp: int
) -> str:
    return _join("SCOPE_CHANGE", applying_server_id, consenting_server_id, scopes, timestamp)


__all__ = [
    "DELIMITER",
    "has_delimiter",
    "handshake_request_payload",
    "handshake_response_payload",
    "nearby_users_payload",
    "posting_search_payload",
    "profile_search_payload",
    "user_sync_payload",
    "message_relay_payload",
    "trust_change_payload",
    "scope_change_payload",
]
