"""
Error codes and types for build-witness.

Error codes are stable strings: they appear in verify reports and CLI
JSON output, so audit tooling can match on them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """
    Verification and pipeline error codes.
    """
    # Structural (UNVERIFIED)
    BUNDLE_NOT_FOUND = "BUNDLE_NOT_FOUND"
    BUNDLE_NOT_DIRECTORY = "BUNDLE_NOT_DIRECTORY"
    MISSING_REQUIRED_FILE = "MISSING_REQUIRED_FILE"
    UNEXPECTED_FILE = "UNEXPECTED_FILE"
    SYMLINK_ESCAPE = "SYMLINK_ESCAPE"
    MALFORMED_DOCUMENT = "MALFORMED_DOCUMENT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    # Hash chain (UNVERIFIED)
    MANIFEST_HASH_MISMATCH = "MANIFEST_HASH_MISMATCH"
    SUBDOCUMENT_HASH_MISMATCH = "SUBDOCUMENT_HASH_MISMATCH"
    ARTIFACT_HASH_MISMATCH = "ARTIFACT_HASH_MISMATCH"
    PATH_TRAVERSAL = "PATH_TRAVERSAL"
    # Signatures (UNVERIFIED)
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    COSIGNATURE_INVALID = "COSIGNATURE_INVALID"
    COSIGNATURE_REQUIRED = "COSIGNATURE_REQUIRED"
    # Soft compliance (VERIFIED WITH VARIANCE)
    DIRTY_SOURCE_TREE = "DIRTY_SOURCE_TREE"
    LOCKFILES_MISSING = "LOCKFILES_MISSING"
    MODE_NOT_ENFORCED = "MODE_NOT_ENFORCED"
    MODE_MISMATCH = "MODE_MISMATCH"
    SOURCE_DATE_EPOCH_UNSET = "SOURCE_DATE_EPOCH_UNSET"
    ARTIFACT_MISSING = "ARTIFACT_MISSING"
    UNTRUSTED_COSIGNATURE = "UNTRUSTED_COSIGNATURE"
    # Pipeline
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    CANONICALIZATION_ERROR = "CANONICALIZATION_ERROR"
    BUILD_FAILED = "BUILD_FAILED"
    ENFORCEMENT_SHORTFALL = "ENFORCEMENT_SHORTFALL"


@dataclass
class VerificationError:
    """
    A single verification finding with typed code and audit details.
    """
    code: ErrorCode
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class WitnessError(Exception):
    """Base exception for all build-witness errors."""

    default_code = ErrorCode.CONFIGURATION_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_verification_error(self) -> VerificationError:
        return VerificationError(code=self.code, message=self.message, details=self.details)


class ConfigurationError(WitnessError):
    """No signing key, malformed key or policy, bad build options."""
    default_code = ErrorCode.CONFIGURATION_ERROR


class CanonicalizationError(WitnessError):
    """A document cannot be encoded canonically."""
    default_code = ErrorCode.CANONICALIZATION_ERROR


class BuildFailure(WitnessError):
    """The build command failed or its outputs are unusable. No bundle is written."""
    default_code = ErrorCode.BUILD_FAILED


class EnforcementShortfall(WitnessError):
    """
    A reproducibility guarantee could not be established on this host.

    Never fatal: the enforcement engine catches it and records
    mode_enforced=false with the message as a note.
    """
    default_code = ErrorCode.ENFORCEMENT_SHORTFALL


class IntegrityError(WitnessError):
    """Hash mismatch, missing/unexpected file, symlink escape, path traversal."""
    default_code = ErrorCode.MALFORMED_DOCUMENT


class SignatureError(WitnessError):
    """Invalid builder signature or missing/invalid required co-signature."""
    default_code = ErrorCode.SIGNATURE_INVALID
