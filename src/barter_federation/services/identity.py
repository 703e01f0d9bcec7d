from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from cryptography.hazmat.primitives.asymmetric import rsa

from barter_federation.core import canonical, crypto
from barter_federation.core.settings import FederationSettings
from barter_federation.db.repository import FederationRepository
from barter_federation.models.federation import (
    FederationEventType,
    FederationOutcome,
    LocalServerIdentity,
    PublicServerIdentity,
)

from .audit import AuditLogger

logger = logging.getLogger(__name__)


class FederationNotInitializedError(RuntimeError):
    """Raised when an operation needs the local identity before it has been created."""


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class Signer:
    """A public identity paired with the key that signs on its behalf.

    Messages built from ``identity`` and signed with :meth:`sign` always
    agree, even if the keys rotate in between.
    """

    __slots__ = ("identity", "_private_key")

    def __init__(self, identity: PublicServerIdentity, private_key: rsa.RSAPrivateKey) -> None:
        self.identity = identity
        self._private_key = private_key

    def sign(self, data: str) -> str:
        return crypto.sign(data, self._private_key)

    def __repr__(self) -> str:
        return f"Signer(server_id={self.identity.server_id!r})"


class IdentityService:
    """Owns this server's identity and the only code path that touches its private key.

    The identity and its parsed private key are held together as one immutable
    snapshot. Initialization and rotation build a complete new snapshot and
    swap the reference, so concurrent signers see either the old pair or the
    new pair, never a mix.
    """

    def __init__(
        self,
        *,
        settings: FederationSettings,
        repository: FederationRepository,
        audit: AuditLogger,
    ) -> None:
        self._settings = settings
        self._repository = repository
        self._audit = audit
        self._snapshot: Optional[Tuple[LocalServerIdentity, rsa.RSAPrivateKey]] = None
        self._lock = asyncio.Lock()

    def _load(self) -> Optional[Tuple[LocalServerIdentity, rsa.RSAPrivateKey]]:
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        stored = self._repository.get_local_identity()
        if stored is None:
            return None
        snapshot = (stored, crypto.pem_to_private_key(stored.private_key))
        self._snapshot = snapshot
        return snapshot

    async def _new_keys(self) -> Tuple[rsa.RSAPrivateKey, datetime, datetime]:
        private_key = await asyncio.to_thread(crypto.generate_keypair, self._settings.key_size)
        generated_at = datetime.now(timezone.utc)
        rotation_due = generated_at + timedelta(days=self._settings.key_rotation_days)
        return private_key, generated_at, rotation_due

    async def initialize(
        self,
        server_url: str,
        server_name: str,
        admin_contact: Optional[str] = None,
        description: Optional[str] = None,
        location_hint: Optional[str] = None,
    ) -> Tuple[PublicServerIdentity, bool]:
        """Creates the local identity once.

        Calling this again after the identity exists returns the stored
        identity unchanged.

        Returns:
            The public identity and whether this call created it.

        Raises:
            ValueError: If the url or name contains the signing-payload delimiter.
        """
        if canonical.has_delimiter(server_url, server_name):
            raise ValueError(f"server url and name must not contain {canonical.DELIMITER!r}")
        started = time.perf_counter()
        async with self._lock:
            existing = self._load()
            if existing is not None:
                identity = existing[0]
                logger.info("Federation identity already initialized as %s", identity.server_id)
                self._audit.log_federation_event(
                    FederationEventType.KEY_ROTATION,
                    identity.server_id,
                    "SERVER_ALREADY_INITIALIZED",
                    FederationOutcome.SUCCESS,
                    details={"serverUrl": identity.server_url},
                    duration_ms=_elapsed_ms(started),
                )
                return identity.to_public(), False

            try:
                private_key, generated_at, rotation_due = await self._new_keys()
                candidate = LocalServerIdentity(
                    server_id=crypto.generate_server_id(),
                    server_url=server_url.rstrip("/"),
                    server_name=server_name,
                    public_key=crypto.public_key_to_pem(private_key.public_key()),
                    private_key=crypto.private_key_to_pem(private_key),
                    key_algorithm=crypto.KEY_ALGORITHM,
                    key_size=self._settings.key_size,
                    protocol_version=self._settings.protocol_version,
                    admin_contact=admin_contact,
                    description=description,
                    location_hint=location_hint,
                    key_generated_at=generated_at,
                    key_rotation_due=rotation_due,
                    created_at=generated_at,
                    updated_at=generated_at,
                )
                stored, created = self._repository.save_local_identity(candidate)
                if created:
                    self._snapshot = (candidate, private_key)
                else:
                    # Another process won the race; adopt its identity.
                    self._snapshot = (stored, crypto.pem_to_private_key(stored.private_key))
            except Exception as exc:
                logger.exception("Failed to initialize federation identity")
                self._audit.log_federation_event(
                    FederationEventType.ERROR,
                    None,
                    "INITIALIZE_SERVER",
                    FederationOutcome.FAILURE,
                    details={"serverUrl": server_url},
                    error_message=str(exc),
                    duration_ms=_elapsed_ms(started),
                )
                raise

            identity = self._snapshot[0]
            logger.info("Initialized federation identity %s for %s", identity.server_id, identity.server_url)
            self._audit.log_federation_event(
                FederationEventType.KEY_ROTATION,
                identity.server_id,
                "INITIALIZE_SERVER",
                FederationOutcome.SUCCESS,
                details={
                    "serverUrl": identity.server_url,
                    "serverName": identity.server_name,
                    "keySize": identity.key_size,
                },
                duration_ms=_elapsed_ms(started),
            )
            return identity.to_public(), created

    def get_public_identity(self) -> Optional[PublicServerIdentity]:
        """The shareable identity, or None before initialization."""
        snapshot = self._load()
        return snapshot[0].to_public() if snapshot else None

    def require_identity(self) -> PublicServerIdentity:
        """Like :meth:`get_public_identity` but fails when there is no identity.

        Raises:
            FederationNotInitializedError: If the server has not been initialized.
        """
        identity = self.get_public_identity()
        if identity is None:
            raise FederationNotInitializedError("Local server identity not initialized")
        return identity

    def signer(self) -> Signer:
        """Binds the current identity and key for one protocol exchange.

        Raises:
            FederationNotInitializedError: If the server has not been initialized.
        """
        snapshot = self._load()
        if snapshot is None:
            raise FederationNotInitializedError("Local server identity not initialized")
        identity, private_key = snapshot
        return Signer(identity.to_public(), private_key)

    def sign(self, data: str) -> str:
        return self.signer().sign(data)

    async def rotate_keys(self) -> PublicServerIdentity:
        """Replaces the keypair and resets the rotation deadline.

        Peers keep the old public key and refuse a handshake carrying the new
        one until their operator deletes this server's record.
        """
        started = time.perf_counter()
        async with self._lock:
            snapshot = self._load()
            if snapshot is None:
                raise FederationNotInitializedError("Local server identity not initialized")
            current = snapshot[0]
            try:
                private_key, generated_at, rotation_due = await self._new_keys()
                rotated = current.with_keys(
                    public_key=crypto.public_key_to_pem(private_key.public_key()),
                    private_key=crypto.private_key_to_pem(private_key),
                    key_size=self._settings.key_size,
                    key_generated_at=generated_at,
                    key_rotation_due=rotation_due,
                )
                if not self._repository.replace_local_keys(rotated):
                    raise FederationNotInitializedError("Local server identity row is missing")
                self._snapshot = (rotated, private_key)
            except Exception as exc:
                logger.exception("Key rotation failed for %s", current.server_id)
                self._audit.log_federation_event(
                    FederationEventType.KEY_ROTATION,
                    current.server_id,
                    "ROTATE_KEYS",
                    FederationOutcome.FAILURE,
                    error_message=str(exc),
                    duration_ms=_elapsed_ms(started),
                )
                raise

        logger.info("Rotated federation keys for %s", rotated.server_id)
        self._audit.log_federation_event(
            FederationEventType.KEY_ROTATION,
            rotated.server_id,
            "ROTATE_KEYS",
            FederationOutcome.SUCCESS,
            details={
                "keySize": rotated.key_size,
                "keyRotationDue": rotation_due.isoformat(),
            },
            duration_ms=_elapsed_ms(started),
        )
        return rotated.to_public()


__all__ = ["FederationNotInitializedError", "IdentityService", "Signer"]
