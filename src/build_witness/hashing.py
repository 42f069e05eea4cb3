"""
Content hashing for build-witness.

All hashes are SHA-256, rendered as 64 lowercase hex characters.
Uses hashlib only.
"""

import hashlib
import hmac
from pathlib import Path
from typing import Any

from .canonical import canonical_bytes


# Fixed read size for streaming file hashes; memory use does not grow with file size.
CHUNK_SIZE = 64 * 1024


def sha256_hex(data: bytes) -> str:
    """Compute SHA-256 of raw bytes. Returns 64-char lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def hash_file(path: Path) -> str:
    """
    Stream a file from disk through SHA-256.

    Args:
        path: File to hash

    Returns:
        64-char lowercase hex digest
    """
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def compute_content_hash(document: Any) -> str:
    """
    Compute SHA-256 of the canonical JSON representation of a document.

    Args:
        document: Any canonicalizable value

    Returns:
        64-char lowercase hex digest
    """
    return sha256_hex(canonical_bytes(document))


def safe_equal(left: str, right: str) -> bool:
    """
    Constant-time string comparison to prevent timing side-channel attacks.
    """
    left = left if isinstance(left, str) else str(left or "")
    right = right if isinstance(right, str) else str(right or "")
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
