from __future__ import annotations

import base64
import binascii
import hashlib
import uuid

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

KEY_ALGORITHM = "RSA"
PUBLIC_EXPONENT = 65537


class InvalidKeyError(ValueError):
    """Raised when a PEM string cannot be parsed as an RSA key."""


def generate_keypair(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """Generates a new RSA private key (the public half is derived from it)."""
    if key_size < 2048:
        raise ValueError("key_size must be at least 2048 bits")
    return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)


def public_key_to_pem(public_key: rsa.RSAPublicKey) -> str:
    """Encodes a public key as a SubjectPublicKeyInfo PEM string."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def private_key_to_pem(private_key: rsa.RSAPrivateKey) -> str:
    """Encodes a private key as an unencrypted PKCS#8 PEM string."""
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def pem_to_public_key(pem: str) -> rsa.RSAPublicKey:
    """Parses a PEM public key.

    Raises:
        InvalidKeyError: If the PEM is malformed or not an RSA public key.
    """
    try:
        key = serialization.load_pem_public_key(pem.encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as exc:
        raise InvalidKeyError("invalid PEM format for public key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise InvalidKeyError("public key is not an RSA key")
    return key


def pem_to_private_key(pem: str) -> rsa.RSAPrivateKey:
    """Parses a PEM private key (PKCS#8 or traditional OpenSSL format).

    Raises:
        InvalidKeyError: If the PEM is malformed or not an RSA private key.
    """
    try:
        key = serialization.load_pem_private_key(pem.encode("ascii"), password=None)
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm) as exc:
        raise InvalidKeyError("invalid PEM format for private key") from exc
    if not isinstance(key, rsa.RSAPrivateKey):
        raise InvalidKeyError("private key is not an RSA key")
    return key


def sign(data: str, private_key: rsa.RSAPrivateKey) -> str:
    """Signs UTF-8 data with SHA256withRSA and returns the base64 signature."""
    signature = private_key.sign(
        data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256()
    )
    return base64.b64encode(signature).decode("ascii")


def verify(data: str, signature_b64: str, public_key: rsa.RSAPublicKey) -> bool:
    """Verifies a base64 SHA256withRSA signature.

    Malformed base64 and wrong signatures both yield False; this never raises
    for attacker-controlled input.
    """
    if not signature_b64:
        return False
    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError):
        return False
    try:
        public_key.verify(signature, data.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


def verify_with_pem(data: str, signature_b64: str, public_key_pem: str) -> bool:
    """Like :func:`verify`, but parses the key first. Unparseable keys fail verification."""
    try:
        public_key = pem_to_public_key(public_key_pem)
    except InvalidKeyError:
        return False
    return verify(data, signature_b64, public_key)


def sha256_b64(data: str) -> str:
    """Returns the base64-encoded SHA-256 digest of UTF-8 data."""
    return base64.b64encode(hashlib.sha256(data.encode("utf-8")).digest()).decode("ascii")


def generate_server_id() -> str:
    """Generates a fresh opaque server identifier."""
    return str(uuid.uuid4())


def generate_agreement_hash(
    local_server_id: str, remote_server_id: str, scopes: str, timestamp: int
) -> str:
    """Deterministic digest binding two identities, the agreed scopes and a timestamp.

    Both parties can recompute it from the same inputs, so the value stored by
    each side can be compared during an audit.
    """
    return sha256_b64(f"{local_server_id}|{remote_server_id}|{scopes}|{timestamp}")


__all__ = [
    "KEY_ALGORITHM",
    "InvalidKeyError",
    "generate_keypair",
    "public_key_to_pem",
    "private_key_to_pem",
    "pem_to_public_key",
    "pem_to_private_key",
    "sign",
    "verify",
    "verify_with_pem",
    "sha256_b64",
    "generate_server_id",
    "generate_agreement_hash",
]
