"""
Policy loading, reproducibility-mode enforcement and compliance checks.

Honesty contract: Enforcement.mode_enforced is true only when the
requested mode's guarantees were actually established. Any shortfall
flips it to false with a note, and nothing flips it back.

Build-time enforcement:
- Mode A: run the command inside a network-isolation capability and
  pin SOURCE_DATE_EPOCH. If isolation is unavailable on this host the
  build still runs, recorded as not enforced.
- Mode B: lockfile hashes are snapshotted before the build and compared
  after it.
- Mode C: nothing to enforce.
"""

import json
import logging
import os
import platform
import shutil
import subprocess
from pathlib import Path
from typing import Protocol

from .errors import (
    ConfigurationError,
    EnforcementShortfall,
    ErrorCode,
    VerificationError,
)
from .git import commit_timestamp
from .materials import diff_snapshots, scan_materials
from .model import Enforcement, Manifest, MaterialsLock, Policy, ReproducibilityMode

logger = logging.getLogger(__name__)


SOURCE_DATE_EPOCH_ENV = "SOURCE_DATE_EPOCH"


def load_policy(path: Path | None) -> Policy:
    """
    Load a policy file, or synthesize the default (Mode B) if it is absent.

    Raises:
        ConfigurationError: If the file exists but is not a valid policy
    """
    if path is None or not Path(path).exists():
        logger.info("No policy found at %s, using default (Mode B)", path)
        return Policy.default()

    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        policy = Policy.from_dict(data)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(
            f"Malformed policy {path}: {exc}",
            details={"path": str(path)},
        ) from exc

    logger.info("Policy %s: mode %s", path, policy.mode.value)
    return policy


# ── Isolation capabilities ──────────────────────────────────────────────────

class IsolationCapability(Protocol):
    """Something that can run a command without network access."""

    name: str

    def wrap(self, argv: list[str]) -> list[str]:
        """Return argv rewritten to run isolated, or raise EnforcementShortfall."""
        ...


class NoIsolation:
    """Fallback: isolation unavailable. Always an honest shortfall."""

    name = "none"

    def __init__(self, reason: str = "network isolation is not available on this host"):
        self.reason = reason

    def wrap(self, argv: list[str]) -> list[str]:
        raise EnforcementShortfall(self.reason)


class UnshareNetworkIsolation:
    """
    Linux user + network namespace via `unshare -rn`.

    The capability is checked once by running `true` inside a fresh
    namespace; unprivileged user namespaces are often disabled.
    """

    name = "unshare"

    def __init__(self, unshare_path: str = "unshare"):
        self.unshare_path = unshare_path
        self._available: bool | None = None

    def available(self) -> bool:
        if self._available is None:
            try:
                result = subprocess.run(
                    [self.unshare_path, "-rn", "--", "true"],
                    capture_output=True,
                    timeout=10,
                )
                self._available = result.returncode == 0
            except (OSError, subprocess.TimeoutExpired):
                self._available = False
        return self._available

    def wrap(self, argv: list[str]) -> list[str]:
        if not self.available():
            raise EnforcementShortfall("unshare -rn failed: user network namespaces unavailable")
        return [self.unshare_path, "-rn", "--", *argv]


def default_isolation() -> IsolationCapability:
    if platform.system() == "Linux" and shutil.which("unshare"):
        return UnshareNetworkIsolation(shutil.which("unshare"))
    return NoIsolation(f"network isolation is not implemented on {platform.system() or 'this host'}")


# ── Enforcement ─────────────────────────────────────────────────────────────

class Enforcer:
    """
    Drives one build's enforcement attempt: prepare() before the command
    runs, finish() after it exits successfully.
    """

    def __init__(
        self,
        policy: Policy,
        root: Path,
        isolation: IsolationCapability | None = None,
    ):
        self.policy = policy
        self.root = Path(root)
        self.isolation = isolation
        self.enforcement = Enforcement(mode_requested=policy.mode, mode_enforced=True)
        self.source_date_epoch: int | None = None
        self._lockfiles_before: dict[str, str] | None = None

    def prepare(
        self,
        argv: list[str],
        env: dict[str, str],
        materials: MaterialsLock,
    ) -> list[str]:
        """
        Apply pre-build enforcement for the requested mode.

        Args:
            argv: Build command
            env: Child environment; modified in place (SOURCE_DATE_EPOCH)
            materials: Lockfile scan taken before the build

        Returns:
            The argv to actually run
        """
        self._record_existing_epoch(env)
        mode = self.policy.mode

        if mode is ReproducibilityMode.A_DETERMINISTIC:
            return self._prepare_deterministic(argv, env)

        if mode is ReproducibilityMode.B_LOCKED_NETWORK:
            self._lockfiles_before = materials.snapshot()
            logger.info("Mode B: snapshotted %d lockfile(s)", len(self._lockfiles_before))

        return list(argv)

    def finish(self) -> Enforcement:
        """Post-build checks. Returns the final enforcement record."""
        if self.policy.mode is ReproducibilityMode.B_LOCKED_NETWORK:
            after = scan_materials(self.root).snapshot()
            changes = diff_snapshots(self._lockfiles_before or {}, after)
            for change in changes:
                self._shortfall(change)

        logger.info(
            "Enforcement: mode %s %s",
            self.enforcement.mode_requested.value,
            "enforced" if self.enforcement.mode_enforced else "NOT enforced",
        )
        return self.enforcement

    def _prepare_deterministic(self, argv: list[str], env: dict[str, str]) -> list[str]:
        if self.source_date_epoch is None:
            epoch = commit_timestamp(self.root)
            if epoch is None:
                self._shortfall("cannot normalize timestamps: no SOURCE_DATE_EPOCH and no commit time")
            else:
                env[SOURCE_DATE_EPOCH_ENV] = str(epoch)
                self.source_date_epoch = epoch
                self.enforcement.source_date_epoch_set = True

        if self.isolation is None:
            self.isolation = default_isolation()
        try:
            wrapped = self.isolation.wrap(list(argv))
        except EnforcementShortfall as exc:
            self._shortfall(exc.message)
            return list(argv)

        self.enforcement.network_blocked = True
        logger.info("Mode A: network isolated via %s", self.isolation.name)
        return wrapped

    def _record_existing_epoch(self, env: dict[str, str]) -> None:
        value = env.get(SOURCE_DATE_EPOCH_ENV, "").strip()
        if not value:
            return
        if value.isdigit():
            self.source_date_epoch = int(value)
            self.enforcement.source_date_epoch_set = True
        else:
            logger.warning("Ignoring non-numeric %s=%r", SOURCE_DATE_EPOCH_ENV, value)

    def _shortfall(self, note: str) -> None:
        logger.warning("Enforcement shortfall: %s", note)
        self.enforcement.shortfall(note)


def build_environment() -> dict[str, str]:
    """Copy of our environment for the child process."""
    return dict(os.environ)


# ── Compliance (verify time) ────────────────────────────────────────────────

def check_compliance(
    manifest: Manifest,
    policy: Policy,
    environment_mode: ReproducibilityMode | None,
    materials: MaterialsLock | None,
) -> list[VerificationError]:
    """
    Soft policy checks. Each finding downgrades a verdict to
    VERIFIED WITH VARIANCE; none of them can fail verification.
    """
    warnings: list[VerificationError] = []
    enforcement = manifest.enforcement

    if manifest.git.dirty:
        warnings.append(VerificationError(
            code=ErrorCode.DIRTY_SOURCE_TREE,
            message="Build from dirty source tree",
            details={"commit": manifest.git.commit},
        ))

    if policy.require_lockfile_hashes and materials is not None and not materials.lockfiles:
        warnings.append(VerificationError(
            code=ErrorCode.LOCKFILES_MISSING,
            message="Policy requires lockfile hashes but none were found",
        ))

    if not enforcement.mode_enforced:
        warnings.append(VerificationError(
            code=ErrorCode.MODE_NOT_ENFORCED,
            message=f"Mode {enforcement.mode_requested.value} was requested but not enforced",
            details={"notes": list(enforcement.notes)},
        ))

    if enforcement.mode_requested is not policy.mode:
        warnings.append(VerificationError(
            code=ErrorCode.MODE_MISMATCH,
            message=(
                f"Manifest requested mode {enforcement.mode_requested.value}, "
                f"policy requires {policy.mode.value}"
            ),
        ))

    if environment_mode is not None and environment_mode is not policy.mode:
        warnings.append(VerificationError(
            code=ErrorCode.MODE_MISMATCH,
            message=(
                f"Environment mode {environment_mode.value} differs from "
                f"policy {policy.mode.value}"
            ),
        ))

    if policy.require_source_date_epoch and not enforcement.source_date_epoch_set:
        warnings.append(VerificationError(
            code=ErrorCode.SOURCE_DATE_EPOCH_UNSET,
            message="Policy requires SOURCE_DATE_EPOCH but it was not set",
        ))

    return warnings
