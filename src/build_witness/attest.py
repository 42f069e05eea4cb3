"""
Co-signatures: a second identity signs the same canonical manifest bytes.

Attesting only adds signatures/<key-id>.ed25519.sig. The manifest, its
hash file and every other document stay byte-for-byte untouched.
"""

import logging
import os
from pathlib import Path

from . import bundle as layout
from .bundle import BundleReader, cosignature_filename
from .errors import ConfigurationError, ErrorCode, IntegrityError
from .sign import public_key_from_secret, sign
from .verify import (
    check_bundle_path,
    check_closed_world,
    check_required_files,
    check_symlinks,
    read_signed_manifest,
)

logger = logging.getLogger(__name__)


DEFAULT_ATTEST_KEY_ID = "maintainer@local"


def attest_bundle(bundle_dir: Path, secret_key: str, key_id: str = DEFAULT_ATTEST_KEY_ID) -> Path:
    """
    Add a co-signature to an existing, builder-signed bundle.

    The manifest hash and builder signature must check out first; nobody
    should co-sign a manifest that is already broken.

    Args:
        bundle_dir: Bundle directory
        secret_key: Co-signer's base64 Ed25519 seed
        key_id: Co-signer identity; determines the signature file name

    Returns:
        Path of the written co-signature file

    Raises:
        ConfigurationError: key_id would collide with the builder signature
        IntegrityError / SignatureError: The bundle does not verify
    """
    filename = cosignature_filename(key_id)
    if f"{layout.SIGNATURES_DIR}/{filename}" == layout.BUILDER_SIGNATURE:
        raise ConfigurationError(f"Key id {key_id!r} is reserved for the builder signature")

    bundle_dir = Path(bundle_dir)
    check_bundle_path(bundle_dir)
    root = bundle_dir.resolve()
    check_required_files(root)
    check_closed_world(root)
    check_symlinks(root)
    reader = BundleReader(root)
    signed = read_signed_manifest(reader)

    signature = sign(secret_key, signed.canonical)
    sig_path = reader.cosignature_path(key_id)
    _write_new_file(sig_path, signature + "\n")

    logger.info("Attestation added: %s", key_id)
    logger.info("  Public key: %s", public_key_from_secret(secret_key))
    logger.info("  Signature: %s", sig_path)
    return sig_path


def _write_new_file(path: Path, text: str) -> None:
    """Write a co-signature without following a symlink at or above it."""
    for candidate in (path.parent, path):
        if candidate.is_symlink():
            raise IntegrityError(
                f"Refusing to write through symlink {candidate}",
                code=ErrorCode.SYMLINK_ESCAPE,
                details={"entry": str(candidate)},
            )

    flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_NOFOLLOW", 0)
    fd = os.open(path, flags, 0o644)
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
        handle.write(text)
