from __future__ import annotations

import hashlib
import hmac
import time
from typing import Iterable, Optional

from blake3 import blake3

# Maximum distance, in either direction, between a signed timestamp and server time.
REPLAY_WINDOW_MS = 5 * 60 * 1000


def current_millis() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def is_timestamp_fresh(timestamp_ms: int, now_ms: Optional[int] = None) -> bool:
    """True when the timestamp lies within the replay window of server time.

    Future timestamps are tolerated by the same amount to absorb clock skew.
    """
    now = current_millis() if now_ms is None else now_ms
    return abs(now - timestamp_ms) <= REPLAY_WINDOW_MS


def parse_timestamp(value: Optional[str]) -> Optional[int]:
    """Parses a millisecond timestamp from a header or query value."""
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def compute_bootstrap_digest(secret: str, timestamp: str) -> str:
    """hex(HMAC-SHA256(secret, timestamp)) as used by the identity bootstrap call."""
    return hmac.new(
        secret.encode("utf-8"), timestamp.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_bootstrap_digest(
    secret: str, timestamp: str, digest: str, now_ms: Optional[int] = None
) -> bool:
    """Checks a bootstrap digest: timestamp must be fresh and the digest must match."""
    parsed = parse_timestamp(timestamp)
    if parsed is None or not is_timestamp_fresh(parsed, now_ms):
        return False
    expected = compute_bootstrap_digest(secret, timestamp)
    return hmac.compare_digest(expected, digest.strip().lower())


def envelope_fingerprint(fields: Iterable[bytes]) -> str:
    """
    Produce a deterministic hexadecimal fingerprint for a relayed message.

    Using a length-prefix avoids collisions between concatenated field
    boundaries and keeps the hashing contract centralised.
    """
    hasher = blake3()
    for chunk in fields:
        hasher.update(len(chunk).to_bytes(4, "big"))
        hasher.update(chunk)
    return hasher.hexdigest()


__all__ = [
    "REPLAY_WINDOW_MS",
    "current_millis",
    "is_timestamp_fresh",
    "parse_timestamp",
    "compute_bootstrap_digest",
    "verify_bootstrap_digest",
    "envelope_fingerprint",
]
