"""
build-witness: signed, verifiable witness bundles for software builds.

A bundle ties a source state, a toolchain and environment, and the
artifacts they produced together through canonical-JSON content hashes
and an Ed25519 signature. Verification is offline and fail-closed.
"""

from .canonical import canonical_bytes, canonical_json, pretty_json
from .hashing import compute_content_hash, hash_file, sha256_hex
from .sign import keygen, public_key_from_secret, sign, verify
from .model import Manifest, Policy, ReproducibilityMode
from .build import BuildOptions, BuildResult, run_build
from .verify import Verdict, VerifyReport, verify_bundle
from .attest import attest_bundle
from .errors import (
    BuildFailure,
    CanonicalizationError,
    ConfigurationError,
    EnforcementShortfall,
    ErrorCode,
    IntegrityError,
    SignatureError,
    VerificationError,
    WitnessError,
)

__version__ = "1.0.0"
__all__ = [
    # Canonical JSON
    "canonical_json",
    "canonical_bytes",
    "pretty_json",
    # Hashing
    "compute_content_hash",
    "hash_file",
    "sha256_hex",
    # Signing
    "keygen",
    "sign",
    "verify",
    "public_key_from_secret",
    # Documents
    "Manifest",
    "Policy",
    "ReproducibilityMode",
    # Pipelines
    "BuildOptions",
    "BuildResult",
    "run_build",
    "Verdict",
    "VerifyReport",
    "verify_bundle",
    "attest_bundle",
    # Errors
    "ErrorCode",
    "VerificationError",
    "WitnessError",
    "ConfigurationError",
    "CanonicalizationError",
    "BuildFailure",
    "EnforcementShortfall",
    "IntegrityError",
    "SignatureError",
]
