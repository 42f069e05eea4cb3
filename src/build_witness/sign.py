"""
Ed25519 signing for build-witness.

Keys are 32-byte seeds, signatures are 64 bytes, both carried as standard
base64 text. Signatures always cover canonical manifest bytes, never the
pretty-printed manifest on disk.

SECURITY: The secret key MUST come from a secrets manager or a protected
file. It is loaded once per invocation and passed explicitly to whoever
signs; nothing in this module keeps it.
"""

import base64
import binascii
import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519

from .errors import ConfigurationError, ErrorCode, SignatureError

logger = logging.getLogger(__name__)


SIGNATURE_SCHEME = "ed25519"
SECRET_KEY_ENV = "BUILD_WITNESS_ED25519_SK_B64"
SECRET_KEY_FILENAME = "witness-builder.sk"
PUBLIC_KEY_FILENAME = "witness-builder.pk"


def keygen() -> tuple[str, str]:
    """
    Generate a new Ed25519 keypair from OS randomness.

    Returns:
        (secret_key_b64, public_key_b64)
    """
    private_key = ed25519.Ed25519PrivateKey.generate()
    seed = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return _b64(seed), _b64(_raw_public_bytes(private_key.public_key()))


def sign(secret_key_b64: str, data: bytes) -> str:
    """
    Sign bytes with a base64 Ed25519 seed.

    Args:
        secret_key_b64: Base64-encoded 32-byte seed
        data: Canonical bytes to sign

    Returns:
        Base64-encoded 64-byte signature

    Raises:
        ConfigurationError: If the secret key is malformed
    """
    private_key = _load_private_key(secret_key_b64)
    return _b64(private_key.sign(data))


def verify(public_key_b64: str, data: bytes, signature_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Returns True if valid, False if the signature does not match.

    Raises:
        SignatureError: If the key or signature bytes are malformed
    """
    public_key = load_public_key(public_key_b64)

    signature = _b64decode(signature_b64, "signature", SignatureError)
    if len(signature) != 64:
        raise SignatureError(
            f"Signature must be 64 bytes, got {len(signature)}",
            code=ErrorCode.SIGNATURE_INVALID,
        )

    try:
        public_key.verify(signature, data)
    except InvalidSignature:
        return False
    return True


def load_public_key(public_key_b64: str) -> ed25519.Ed25519PublicKey:
    """Load a raw 32-byte Ed25519 public key from base64 text."""
    raw = _b64decode(public_key_b64, "public key", SignatureError)
    if len(raw) != 32:
        raise SignatureError(
            f"Public key must be 32 bytes, got {len(raw)}",
            code=ErrorCode.SIGNATURE_INVALID,
        )
    try:
        return ed25519.Ed25519PublicKey.from_public_bytes(raw)
    except ValueError as exc:
        raise SignatureError(f"Invalid Ed25519 public key ({exc})") from exc


def public_key_from_secret(secret_key_b64: str) -> str:
    """Derive the base64 public key from a base64 secret seed."""
    return _b64(_raw_public_bytes(_load_private_key(secret_key_b64).public_key()))


def load_secret_key(keyfile: Path | None = None) -> str:
    """
    Load the signing key, checked in order:

    1. BUILD_WITNESS_ED25519_SK_B64 environment variable (preferred for CI)
    2. keyfile on disk (local development)

    Returns:
        The base64-encoded secret seed, validated

    Raises:
        ConfigurationError: If no key is available or it is malformed
    """
    key = os.environ.get(SECRET_KEY_ENV, "").strip()
    if key:
        logger.debug("Using signing key from %s", SECRET_KEY_ENV)
    elif keyfile is not None:
        try:
            key = Path(keyfile).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise ConfigurationError(f"Cannot read keyfile {keyfile}: {exc}") from exc
    else:
        raise ConfigurationError(
            f"No signing key found. Set {SECRET_KEY_ENV} or pass --keyfile <path>"
        )

    _load_private_key(key)
    return key


def write_keypair(directory: Path) -> tuple[Path, Path, str]:
    """
    Generate a keypair and write it as two base64 text files.

    Returns:
        (secret_key_path, public_key_path, public_key_b64)
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    secret_key, public_key = keygen()

    sk_path = directory / SECRET_KEY_FILENAME
    pk_path = directory / PUBLIC_KEY_FILENAME

    fd = os.open(sk_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(secret_key + "\n")
    pk_path.write_text(public_key + "\n", encoding="utf-8")

    return sk_path, pk_path, public_key


def _load_private_key(secret_key_b64: str) -> ed25519.Ed25519PrivateKey:
    seed = _b64decode(secret_key_b64, "secret key", ConfigurationError)
    if len(seed) != 32:
        raise ConfigurationError(f"Secret key must be 32 bytes, but was {len(seed)} bytes")
    return ed25519.Ed25519PrivateKey.from_private_bytes(seed)


def _raw_public_bytes(public_key: ed25519.Ed25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: str, what: str, error_cls: type) -> bytes:
    try:
        return base64.b64decode((text or "").strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise error_cls(f"{what.capitalize()} is not valid base64") from exc
