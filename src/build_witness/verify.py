"""
Offline witness bundle verification.

A strict, fail-closed sequence of checks over a bundle directory:

     1. Bundle path exists and is a directory
     2. Every required file is present
     3. Nothing else is present (closed world)
     4. No entry is a symlink resolving outside the bundle
     5. Manifest re-canonicalizes to the stored manifest hash
     6. Builder signature verifies over the canonical manifest bytes
     7. Every sub-document matches the hash the manifest records
     8. Every output artifact path is safe and its content matches
     9. Co-signatures satisfy the policy
    10. Soft compliance checks

Any failure in 1-9 ends verification immediately with UNVERIFIED; no
partial trust is granted and no "how close" score is computed. Step 10
(and a few soft findings along the way) can only lower VERIFIED to
VERIFIED WITH VARIANCE.
"""

import logging
import os
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path, PurePosixPath
from typing import Any

from . import bundle as layout
from .bundle import BundleReader, cosignature_filename, is_cosignature_path
from .canonical import canonical_bytes
from .errors import (
    ErrorCode,
    IntegrityError,
    SignatureError,
    VerificationError,
    WitnessError,
)
from .hashing import compute_content_hash, hash_file, safe_equal, sha256_hex
from .model import EnvironmentRecord, Manifest, MaterialsLock, Outputs, Policy
from .policy import check_compliance
from .sign import verify as verify_signature

logger = logging.getLogger(__name__)


class Verdict(IntEnum):
    """Ordered by severity; a report's verdict is the maximum it has seen."""
    VERIFIED = 0
    VERIFIED_WITH_VARIANCE = 1
    UNVERIFIED = 2

    @property
    def label(self) -> str:
        return self.name.replace("_", " ")


@dataclass
class VerifyReport:
    verdict: Verdict = Verdict.VERIFIED
    errors: list[VerificationError] = field(default_factory=list)
    warnings: list[VerificationError] = field(default_factory=list)
    build_id: str | None = None
    manifest: dict[str, Any] | None = None

    @property
    def ok(self) -> bool:
        return self.verdict is not Verdict.UNVERIFIED

    def fail(self, error: VerificationError) -> None:
        self.errors.append(error)
        self.verdict = max(self.verdict, Verdict.UNVERIFIED)

    def variance(self, warning: VerificationError) -> None:
        self.warnings.append(warning)
        self.verdict = max(self.verdict, Verdict.VERIFIED_WITH_VARIANCE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.label,
            "build_id": self.build_id,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def verify_bundle(
    bundle_dir: Path,
    artifact_root: Path | None = None,
    policy_override: Policy | None = None,
) -> VerifyReport:
    """
    Verify a witness bundle directory.

    Args:
        bundle_dir: Bundle directory to check
        artifact_root: Directory artifact paths are relative to (default:
            the project root recorded in outputs.json, else the current
            working directory)
        policy_override: Verifier-supplied policy for co-signature and
            compliance checks, instead of the policy inside the bundle

    Returns:
        VerifyReport with verdict and diagnostics
    """
    report = VerifyReport()
    bundle_dir = Path(bundle_dir)

    try:
        _verify(bundle_dir, artifact_root, policy_override, report)
    except WitnessError as exc:
        logger.error("%s", exc.message)
        report.fail(exc.to_verification_error())

    _log_verdict(report)
    return report


def _verify(
    bundle_dir: Path,
    artifact_root: Path | None,
    policy_override: Policy | None,
    report: VerifyReport,
) -> None:
    # 1-4. Structure
    check_bundle_path(bundle_dir)
    root = bundle_dir.resolve()
    check_required_files(root)
    check_closed_world(root)
    check_symlinks(root)
    reader = BundleReader(root)

    # 5-6. Manifest hash and builder signature
    signed = read_signed_manifest(reader)
    manifest, manifest_bytes = signed.manifest, signed.canonical
    report.manifest = signed.document
    report.build_id = manifest.build_id

    # 7. Sub-documents
    environment_doc = _check_subdocument(reader, layout.ENVIRONMENT, manifest.environment_hash)
    materials_doc = _check_subdocument(reader, layout.MATERIALS_LOCK, manifest.materials_lock_hash)
    outputs_doc = _check_subdocument(reader, layout.OUTPUTS, manifest.outputs_hash)
    policy_doc = _check_subdocument(reader, layout.POLICY, manifest.policy_ref.hash_sha256)
    _check_transcript(reader, manifest.transcript_hash)

    outputs = _parse(Outputs.from_dict, outputs_doc, layout.OUTPUTS)
    materials = _parse(MaterialsLock.from_dict, materials_doc, layout.MATERIALS_LOCK)
    environment_mode = _parse(EnvironmentRecord.mode_from_dict, environment_doc, layout.ENVIRONMENT)
    policy = policy_override or _parse(Policy.from_dict, policy_doc, layout.POLICY)

    # 8. Artifacts
    base = Path(artifact_root) if artifact_root is not None else default_artifact_root(root, outputs)
    check_artifacts(outputs, base, report)

    # 9. Co-signatures
    check_cosignatures(reader, manifest_bytes, policy, report)

    # 10. Soft compliance
    for warning in check_compliance(manifest, policy, environment_mode, materials):
        report.variance(warning)


# ── Structural checks ───────────────────────────────────────────────────────

def check_bundle_path(bundle_dir: Path) -> None:
    """The bundle must be an existing directory (a symlink to one is fine; dangling is not)."""
    if not bundle_dir.exists():
        code = ErrorCode.BUNDLE_NOT_FOUND
        message = (
            f"Bundle path {bundle_dir} is a dangling symlink"
            if bundle_dir.is_symlink()
            else f"Bundle path {bundle_dir} does not exist"
        )
        raise IntegrityError(message, code=code, details={"path": str(bundle_dir)})
    if not bundle_dir.is_dir():
        raise IntegrityError(
            f"Bundle path {bundle_dir} is not a directory",
            code=ErrorCode.BUNDLE_NOT_DIRECTORY,
            details={"path": str(bundle_dir)},
        )


def check_required_files(root: Path) -> None:
    missing = [name for name in layout.REQUIRED_FILES if not (root / name).is_file()]
    if missing:
        raise IntegrityError(
            f"Missing required file(s): {', '.join(missing)}",
            code=ErrorCode.MISSING_REQUIRED_FILE,
            details={"missing": missing},
        )


def check_closed_world(root: Path) -> None:
    """Only the fixed layout plus co-signature files may exist."""
    unexpected = []
    for rel in _walk_entries(root):
        full = root / rel
        if full.is_dir() and not full.is_symlink():
            if rel not in layout.EXPECTED_DIRECTORIES:
                unexpected.append(rel + "/")
            continue
        if rel in layout.REQUIRED_FILES or is_cosignature_path(rel):
            continue
        unexpected.append(rel)

    if unexpected:
        raise IntegrityError(
            f"Unexpected file(s) in bundle: {', '.join(sorted(unexpected))}",
            code=ErrorCode.UNEXPECTED_FILE,
            details={"unexpected": sorted(unexpected)},
        )


def check_symlinks(root: Path) -> None:
    for rel in _walk_entries(root):
        full = root / rel
        if not full.is_symlink():
            continue
        target = Path(os.path.realpath(full))
        if not _is_within(target, root):
            raise IntegrityError(
                f"Symlink {rel} resolves outside the bundle",
                code=ErrorCode.SYMLINK_ESCAPE,
                details={"entry": rel, "target": str(target)},
            )


def _walk_entries(root: Path) -> list[str]:
    """Every file and directory under root as a POSIX relative path, without following symlinks."""
    entries = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        base = Path(dirpath)
        for name in sorted(dirnames) + sorted(filenames):
            entries.append((base / name).relative_to(root).as_posix())
    return entries


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


# ── Hash chain ──────────────────────────────────────────────────────────────

@dataclass
class SignedManifest:
    document: dict[str, Any]
    canonical: bytes
    manifest: Manifest


def read_signed_manifest(reader: BundleReader) -> SignedManifest:
    """
    Parse the manifest, check it against hashes/manifest.sha256 and the
    builder signature. Both comparisons use the re-canonicalized bytes,
    never the file as stored.

    Raises:
        IntegrityError: Unparsable manifest or hash mismatch
        SignatureError: Builder signature invalid or malformed
    """
    document = reader.read_json(layout.MANIFEST)
    manifest = _parse(Manifest.from_dict, document, layout.MANIFEST)
    canonical = canonical_bytes(document)

    stored_hash = reader.read_text(layout.MANIFEST_HASH).strip()
    computed_hash = sha256_hex(canonical)
    if not safe_equal(stored_hash, computed_hash):
        raise IntegrityError(
            "Manifest hash mismatch",
            code=ErrorCode.MANIFEST_HASH_MISMATCH,
            details={"stored": stored_hash, "computed": computed_hash},
        )
    logger.info("Manifest hash: OK")

    signature = reader.read_text(layout.BUILDER_SIGNATURE).strip()
    if not verify_signature(manifest.builder_identity.public_key_ed25519, canonical, signature):
        raise SignatureError(
            "Builder signature INVALID",
            code=ErrorCode.SIGNATURE_INVALID,
            details={"key_id": manifest.builder_identity.key_id},
        )
    logger.info("Builder signature: OK (%s)", manifest.builder_identity.key_id)

    return SignedManifest(document=document, canonical=canonical, manifest=manifest)


def _check_subdocument(reader: BundleReader, name: str, expected: str) -> Any:
    document = reader.read_json(name)
    computed = compute_content_hash(document)
    if not safe_equal(computed, expected):
        raise IntegrityError(
            f"{name} hash mismatch",
            code=ErrorCode.SUBDOCUMENT_HASH_MISMATCH,
            details={"file": name, "expected": expected, "computed": computed},
        )
    logger.info("%s: OK", name)
    return document


def _check_transcript(reader: BundleReader, expected: str) -> None:
    computed = sha256_hex(reader.read_bytes(layout.TRANSCRIPT))
    if not safe_equal(computed, expected):
        raise IntegrityError(
            f"{layout.TRANSCRIPT} hash mismatch",
            code=ErrorCode.SUBDOCUMENT_HASH_MISMATCH,
            details={"file": layout.TRANSCRIPT, "expected": expected, "computed": computed},
        )
    logger.info("%s: OK", layout.TRANSCRIPT)


def _parse(parser, document: Any, name: str) -> Any:
    try:
        return parser(document)
    except ValueError as exc:
        raise IntegrityError(
            f"{name}: {exc}",
            code=ErrorCode.MISSING_REQUIRED_FIELD,
            details={"file": name},
        ) from exc


# ── Artifacts ───────────────────────────────────────────────────────────────

def check_artifact_path(path: str) -> PurePosixPath:
    """
    Reject absolute paths and parent-directory segments. Pure: touches no files.
    """
    normalized = path.replace("\\", "/")
    candidate = PurePosixPath(normalized)
    if (
        not normalized
        or candidate.is_absolute()
        or ".." in candidate.parts
        or (len(normalized) > 1 and normalized[1] == ":")
    ):
        raise IntegrityError(
            f"Artifact path {path!r} escapes the artifact root",
            code=ErrorCode.PATH_TRAVERSAL,
            details={"path": path},
        )
    return candidate


def default_artifact_root(bundle_root: Path, outputs: Outputs) -> Path:
    """
    Walk back up from the bundle to the project root it was built in.

    Bundles built outside their project record no location; their artifacts
    are resolved against the current working directory.
    """
    if outputs.bundle_dir is None:
        return Path.cwd()
    location = check_artifact_path(outputs.bundle_dir)
    base = bundle_root
    for _ in location.parts:
        base = base.parent
    return base


def check_artifacts(outputs: Outputs, base: Path, report: VerifyReport) -> None:
    # Every path is validated before any artifact is read.
    checked = [(artifact, check_artifact_path(artifact.path)) for artifact in outputs.artifacts]

    base = base.resolve()
    for artifact, rel in checked:
        full = base.joinpath(*rel.parts)
        if not _is_within(full.resolve(), base):
            raise IntegrityError(
                f"Artifact {artifact.path} resolves outside the artifact root",
                code=ErrorCode.PATH_TRAVERSAL,
                details={"path": artifact.path},
            )
        if not full.is_file():
            report.variance(VerificationError(
                code=ErrorCode.ARTIFACT_MISSING,
                message=f"Artifact {artifact.path} not found (may have been deployed)",
                details={"path": artifact.path},
            ))
            continue

        actual = hash_file(full)
        if not safe_equal(actual, artifact.sha256):
            raise IntegrityError(
                f"Artifact {artifact.path} hash mismatch",
                code=ErrorCode.ARTIFACT_HASH_MISMATCH,
                details={"path": artifact.path, "expected": artifact.sha256, "actual": actual},
            )
        size = full.stat().st_size
        if size != artifact.size_bytes:
            raise IntegrityError(
                f"Artifact {artifact.path} size mismatch",
                code=ErrorCode.ARTIFACT_HASH_MISMATCH,
                details={"path": artifact.path, "expected": artifact.size_bytes, "actual": size},
            )

    logger.info("Output artifacts: %d checked", len(checked))


# ── Co-signatures ───────────────────────────────────────────────────────────

def check_cosignatures(
    reader: BundleReader,
    manifest_bytes: bytes,
    policy: Policy,
    report: VerifyReport,
) -> int:
    """
    Verify co-signatures against the policy's trusted keys.

    A co-signature from a trusted key id must verify. When the policy
    requires co-signing, at least one valid trusted co-signature must be
    present and any untrusted one is reported as variance; otherwise
    untrusted co-signatures are ignored.

    Returns:
        Number of valid trusted co-signatures
    """
    trusted_by_file = {
        f"{layout.SIGNATURES_DIR}/{cosignature_filename(key.key_id)}": key
        for key in policy.trusted_cosigner_keys
    }

    valid = 0
    for rel in reader.cosignature_files():
        key = trusted_by_file.get(rel)
        if key is None and not policy.require_maintainer_cosign:
            logger.info("Co-signature %s is not from a trusted key; ignored", rel)
            continue
        if key is None:
            report.variance(VerificationError(
                code=ErrorCode.UNTRUSTED_COSIGNATURE,
                message=f"Co-signature {rel} is not from a trusted key; ignored",
                details={"file": rel},
            ))
            continue

        signature = reader.read_text(rel).strip()
        try:
            ok = verify_signature(key.public_key_ed25519, manifest_bytes, signature)
        except SignatureError as exc:
            raise SignatureError(
                f"Co-signature {rel}: {exc.message}",
                code=ErrorCode.COSIGNATURE_INVALID,
                details={"file": rel, "key_id": key.key_id},
            ) from exc
        if not ok:
            raise SignatureError(
                f"Co-signature {rel} from {key.key_id} is INVALID",
                code=ErrorCode.COSIGNATURE_INVALID,
                details={"file": rel, "key_id": key.key_id},
            )
        logger.info("Co-signature: OK (%s)", key.key_id)
        valid += 1

    if policy.require_maintainer_cosign and valid == 0:
        raise SignatureError(
            "Policy requires a maintainer co-signature but no valid trusted co-signature is present",
            code=ErrorCode.COSIGNATURE_REQUIRED,
            details={"trusted_key_ids": [k.key_id for k in policy.trusted_cosigner_keys]},
        )
    return valid


def _log_verdict(report: VerifyReport) -> None:
    if report.verdict is Verdict.UNVERIFIED:
        logger.error("UNVERIFIED: %d error(s)", len(report.errors))
    elif report.verdict is Verdict.VERIFIED_WITH_VARIANCE:
        logger.warning("VERIFIED WITH VARIANCE: %d warning(s)", len(report.warnings))
        for warning in report.warnings:
            logger.warning("  %s", warning.message)
    else:
        logger.info("VERIFIED")
