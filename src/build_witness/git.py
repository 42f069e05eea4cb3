"""
Source-control identity and canonical source-tree hashing.

Shells out to the `git` CLI. When the project is not a repository, or git
is not installed, every reader degrades to recorded "unknown" values
instead of aborting the build.
"""

import hashlib
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .hashing import hash_file, sha256_hex

logger = logging.getLogger(__name__)


UNKNOWN = "unknown"


@dataclass
class GitState:
    """Snapshot of the repository at build time."""
    commit: str
    branch: str | None
    tag: str | None
    dirty: bool

    @classmethod
    def unknown(cls) -> "GitState":
        return cls(commit=UNKNOWN, branch=None, tag=None, dirty=False)

    @property
    def is_known(self) -> bool:
        return self.commit != UNKNOWN


class GitError(RuntimeError):
    pass


def read_git_state(root: Path) -> GitState:
    """
    Gather commit, branch, exact tag and dirty status for the repository at root.
    """
    try:
        commit = _run_git(root, "rev-parse", "HEAD").strip()
        status = _run_git(root, "status", "--porcelain")
    except GitError as exc:
        logger.warning("Source control state unavailable, recording unknown: %s", exc)
        return GitState.unknown()

    branch = _try_git(root, "rev-parse", "--abbrev-ref", "HEAD")
    if branch == "HEAD":
        # detached
        branch = None

    return GitState(
        commit=commit,
        branch=branch,
        tag=_try_git(root, "describe", "--tags", "--exact-match", "HEAD"),
        dirty=bool(status.strip()),
    )


def source_commit_tree_hash(root: Path, commit: str) -> str:
    """
    SHA-256 of `git ls-tree -r <commit>`.

    git emits one sorted line per tracked blob (mode, type, object id, path),
    so two commits with identical tracked content hash identically.
    """
    if commit == UNKNOWN:
        return UNKNOWN
    try:
        listing = _run_git(root, "ls-tree", "-r", commit)
    except GitError as exc:
        logger.warning("Cannot hash source tree, recording unknown: %s", exc)
        return UNKNOWN
    return sha256_hex(listing.encode("utf-8"))


def source_worktree_hash(root: Path) -> str:
    """
    SHA-256 over the working copies of all tracked files.

    Each tracked file that exists contributes "<path>\\0<file sha256>\\n",
    in sorted path order. Untracked files are not included.
    """
    try:
        listing = _run_git(root, "ls-files", "-z")
    except GitError as exc:
        logger.warning("Cannot hash worktree, recording unknown: %s", exc)
        return UNKNOWN

    digest = hashlib.sha256()
    for name in sorted(p for p in listing.split("\0") if p):
        path = Path(root) / name
        if not path.is_file():
            continue
        digest.update(name.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hash_file(path).encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()


def commit_timestamp(root: Path) -> int | None:
    """Committer timestamp of HEAD in seconds, or None outside a repository."""
    value = _try_git(root, "log", "-1", "--format=%ct", "HEAD")
    if value and value.isdigit():
        return int(value)
    return None


def _try_git(root: Path, *args: str) -> str | None:
    try:
        return _run_git(root, *args).strip() or None
    except GitError:
        return None


def _run_git(root: Path, *args: str) -> str:
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=60,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        raise GitError(f"spawning git: {exc}") from exc

    if result.returncode != 0:
        raise GitError(f"git {' '.join(args)} failed: {result.stderr.strip()}")
    return result.stdout
