"""
Dependency lockfile detection and hashing.

New ecosystems are supported by adding a row to LOCKFILE_KINDS.
"""

import logging
from pathlib import Path

from .hashing import hash_file
from .model import LockfileEntry, MaterialsLock

logger = logging.getLogger(__name__)


# Lockfile name -> material kind, in detection order.
LOCKFILE_KINDS: dict[str, str] = {
    "package-lock.json": "npm",
    "yarn.lock": "npm",
    "pnpm-lock.yaml": "npm",
    "Cargo.lock": "file",
    "go.sum": "file",
    "Gemfile.lock": "file",
    "poetry.lock": "file",
    "Pipfile.lock": "file",
    "uv.lock": "file",
    "composer.lock": "file",
}


def scan_materials(root: Path) -> MaterialsLock:
    """
    Hash every known lockfile present at the project root.

    Args:
        root: Project root directory

    Returns:
        MaterialsLock with one entry per lockfile found
    """
    lockfiles: list[LockfileEntry] = []
    for name, kind in LOCKFILE_KINDS.items():
        path = Path(root) / name
        if not path.is_file():
            continue
        lockfiles.append(LockfileEntry(path=name, sha256=hash_file(path), kind=kind))
        logger.debug("Lockfile %s: %s", name, lockfiles[-1].sha256)

    logger.info("Lockfiles: %d found", len(lockfiles))
    return MaterialsLock(lockfiles=lockfiles)


def diff_snapshots(before: dict[str, str], after: dict[str, str]) -> list[str]:
    """
    Describe every difference between two lockfile snapshots.

    Returns:
        Sorted human-readable change descriptions; empty when identical
    """
    changes = []
    for name in sorted(set(before) | set(after)):
        if name not in after:
            changes.append(f"{name} removed during build")
        elif name not in before:
            changes.append(f"{name} created during build")
        elif before[name] != after[name]:
            changes.append(f"{name} modified during build")
    return changes
