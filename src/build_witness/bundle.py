"""
Witness bundle directory layout, writer and reader.

Layout (fixed names):

    manifest.json
    environment.json
    materials.lock.json
    outputs.json
    transcript.txt
    policy.json
    signatures/builder.ed25519.sig
    signatures/<co-signer>.ed25519.sig   (zero or more, added by attest)
    hashes/manifest.sha256

A bundle is written into a sibling staging directory and moved into
place only when every file is present, so it either exists whole or
not at all.
"""

import json
import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Any

from .canonical import pretty_json
from .errors import ErrorCode, IntegrityError
from .sign import SIGNATURE_SCHEME

logger = logging.getLogger(__name__)


MANIFEST = "manifest.json"
ENVIRONMENT = "environment.json"
MATERIALS_LOCK = "materials.lock.json"
OUTPUTS = "outputs.json"
TRANSCRIPT = "transcript.txt"
POLICY = "policy.json"
SIGNATURES_DIR = "signatures"
HASHES_DIR = "hashes"
SIGNATURE_SUFFIX = f".{SIGNATURE_SCHEME}.sig"
BUILDER_KEY_NAME = "builder"
BUILDER_SIGNATURE = f"{SIGNATURES_DIR}/{BUILDER_KEY_NAME}{SIGNATURE_SUFFIX}"
MANIFEST_HASH = f"{HASHES_DIR}/manifest.sha256"

REQUIRED_FILES: tuple[str, ...] = (
    MANIFEST,
    ENVIRONMENT,
    MATERIALS_LOCK,
    OUTPUTS,
    TRANSCRIPT,
    POLICY,
    BUILDER_SIGNATURE,
    MANIFEST_HASH,
)
EXPECTED_DIRECTORIES: frozenset[str] = frozenset({SIGNATURES_DIR, HASHES_DIR})

_COSIGNATURE_RE = re.compile(r"^[A-Za-z0-9._+-]+" + re.escape(SIGNATURE_SUFFIX) + r"$")


def cosignature_filename(key_id: str) -> str:
    """File name for a co-signer's signature, e.g. alice@example.com -> alice_example.com.ed25519.sig"""
    safe = re.sub(r"[^A-Za-z0-9._+-]", "_", key_id)
    return f"{safe}{SIGNATURE_SUFFIX}"


def is_cosignature_path(rel_path: str) -> bool:
    """True for signatures/<name>.ed25519.sig other than the builder's."""
    parts = rel_path.split("/")
    return (
        len(parts) == 2
        and parts[0] == SIGNATURES_DIR
        and rel_path != BUILDER_SIGNATURE
        and bool(_COSIGNATURE_RE.match(parts[1]))
    )


class BundleWriter:
    """
    Write-once bundle output.

    Usage:
        with BundleWriter(bundle_dir) as writer:
            writer.write_json(MANIFEST, manifest_dict)
            ...
        # committed on clean exit, discarded on exception
    """

    def __init__(self, bundle_dir: Path):
        self.bundle_dir = Path(bundle_dir)
        self.staging_dir = self.bundle_dir.parent / f".{self.bundle_dir.name}.staging-{uuid.uuid4().hex}"

    def __enter__(self) -> "BundleWriter":
        self.bundle_dir.parent.mkdir(parents=True, exist_ok=True)
        (self.staging_dir / SIGNATURES_DIR).mkdir(parents=True)
        (self.staging_dir / HASHES_DIR).mkdir()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            return
        self.commit()

    def write_json(self, name: str, document: Any) -> None:
        self.write_text(name, pretty_json(document))

    def write_text(self, name: str, text: str) -> None:
        path = self.staging_dir / name
        path.write_text(text, encoding="utf-8", newline="\n")

    def commit(self) -> None:
        missing = [name for name in REQUIRED_FILES if not (self.staging_dir / name).is_file()]
        if missing:
            shutil.rmtree(self.staging_dir, ignore_errors=True)
            raise IntegrityError(
                f"Refusing to write incomplete bundle, missing {', '.join(missing)}",
                code=ErrorCode.MISSING_REQUIRED_FILE,
            )

        if self.bundle_dir.is_symlink() or self.bundle_dir.is_file():
            self.bundle_dir.unlink()
        elif self.bundle_dir.exists():
            shutil.rmtree(self.bundle_dir)
        self.staging_dir.rename(self.bundle_dir)
        logger.info("Witness bundle written to %s", self.bundle_dir)


class BundleReader:
    """Read-only access to the files of an existing bundle."""

    def __init__(self, bundle_dir: Path):
        self.bundle_dir = Path(bundle_dir)

    def path(self, name: str) -> Path:
        return self.bundle_dir / name

    def read_bytes(self, name: str) -> bytes:
        try:
            return self.path(name).read_bytes()
        except OSError as exc:
            raise IntegrityError(
                f"Cannot read {name}: {exc}",
                code=ErrorCode.MISSING_REQUIRED_FILE,
                details={"file": name},
            ) from exc

    def read_text(self, name: str) -> str:
        try:
            return self.read_bytes(name).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IntegrityError(
                f"{name} is not valid UTF-8",
                code=ErrorCode.MALFORMED_DOCUMENT,
                details={"file": name},
            ) from exc

    def read_json(self, name: str) -> Any:
        """Parse a JSON document; duplicate keys and NaN are rejected."""
        text = self.read_text(name)
        try:
            return json.loads(
                text,
                object_pairs_hook=_reject_duplicate_keys,
                parse_constant=_reject_constant,
            )
        except ValueError as exc:
            raise IntegrityError(
                f"{name} is not valid JSON: {exc}",
                code=ErrorCode.MALFORMED_DOCUMENT,
                details={"file": name},
            ) from exc

    def cosignature_files(self) -> list[str]:
        """Relative paths of every co-signature present, sorted."""
        sig_dir = self.path(SIGNATURES_DIR)
        if not sig_dir.is_dir():
            return []
        found = []
        for entry in sorted(sig_dir.iterdir()):
            rel = f"{SIGNATURES_DIR}/{entry.name}"
            if is_cosignature_path(rel):
                found.append(rel)
        return found

    def cosignature_path(self, key_id: str) -> Path:
        return self.path(f"{SIGNATURES_DIR}/{cosignature_filename(key_id)}")


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise ValueError(f"duplicate key {key!r}")
        result[key] = value
    return result


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name}")
