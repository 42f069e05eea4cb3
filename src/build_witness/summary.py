"""
Bundle summary utilities for human-readable inspection.

Extracts key metadata from a manifest document without modifying it.
"""

from typing import Any


def bundle_summary(manifest: dict[str, Any]) -> dict[str, Any]:
    """
    Extract a human-readable summary from a manifest document.

    Args:
        manifest: Parsed manifest.json

    Returns:
        Dict with build_id, project, commit, dirty, created_at, mode,
        mode_enforced and builder key id
    """
    git = manifest.get("git", {})
    enforcement = manifest.get("enforcement", {})
    return {
        "build_id": manifest.get("build_id", ""),
        "project": manifest.get("project", {}).get("name", ""),
        "created_at": manifest.get("created_at", ""),
        "commit": git.get("commit", ""),
        "dirty": bool(git.get("dirty", False)),
        "mode": enforcement.get("mode_requested", ""),
        "mode_enforced": bool(enforcement.get("mode_enforced", False)),
        "builder": manifest.get("builder_identity", {}).get("key_id", ""),
    }


def format_bundle_summary(manifest: dict[str, Any]) -> str:
    """
    Format a manifest as a single-line human-readable string.

    Returns:
        String like "demo 3f2a... @ 1a2b3c4d5e6f (dirty) | B_LOCKED_NETWORK enforced | builder@ci"
    """
    s = bundle_summary(manifest)
    commit_short = s["commit"][:12]
    dirty = " (dirty)" if s["dirty"] else ""
    enforced = "enforced" if s["mode_enforced"] else "NOT enforced"
    return (
        f"{s['project']} {s['build_id']} @ {commit_short}{dirty} | "
        f"{s['mode']} {enforced} | {s['builder']}"
    )
