"""
Build machine snapshot: OS facts, toolchain versions, container heuristics.

Every lookup is best effort. A fact that cannot be read is recorded as
"unknown" (or omitted, for optional fields); it never aborts the build.
Container detection is heuristic, not authoritative.
"""

import logging
import os
import platform
import shutil
import subprocess
from pathlib import Path

from .model import ContainerInfo, EnvironmentRecord, Policy, ToolInfo

logger = logging.getLogger(__name__)


# (tool name, argv that prints its version). Extend here for new ecosystems.
TOOL_VERSION_COMMANDS: list[tuple[str, list[str]]] = [
    ("node", ["--version"]),
    ("npm", ["--version"]),
    ("cargo", ["--version"]),
    ("rustc", ["--version"]),
    ("gcc", ["--version"]),
    ("python3", ["--version"]),
    ("go", ["version"]),
    ("git", ["--version"]),
]

VERSION_TIMEOUT_SECONDS = 10


def capture_environment(
    policy: Policy,
    source_date_epoch: int | None = None,
) -> EnvironmentRecord:
    """
    Snapshot the current build environment.

    Args:
        policy: Active policy; its mode and network policy are recorded
        source_date_epoch: Normalized build timestamp, if one is in force

    Returns:
        EnvironmentRecord ready to serialize
    """
    uname = platform.uname()
    record = EnvironmentRecord(
        os_name=uname.system or "unknown",
        os_version=uname.release or None,
        kernel=uname.version or None,
        arch=uname.machine or None,
        tools=detect_tools(),
        container=detect_container(),
        locale=os.environ.get("LANG"),
        timezone=os.environ.get("TZ"),
        mode=policy.mode,
        network=policy.network,
        source_date_epoch=source_date_epoch,
    )
    logger.info(
        "Environment: %s %s, %d tool(s)",
        record.os_name, record.arch or "unknown", len(record.tools),
    )
    return record


def detect_tools(commands: list[tuple[str, list[str]]] | None = None) -> list[ToolInfo]:
    """Record name, first version line and resolved path of each tool on PATH."""
    tools: list[ToolInfo] = []
    for name, args in commands if commands is not None else TOOL_VERSION_COMMANDS:
        path = shutil.which(name)
        if path is None:
            continue
        version = _read_version(path, args)
        tools.append(ToolInfo(name=name, version=version, path=path))
    return tools


def detect_container() -> ContainerInfo | None:
    """
    Best-effort container / CI runner detection. None for bare metal.

    GitHub Actions runners are VMs, not containers; they are recorded with
    type "none" so the environment still reflects the CI context.
    """
    if Path("/.dockerenv").exists():
        return ContainerInfo(
            container_type="docker",
            image=os.environ.get("CONTAINER_IMAGE"),
            image_digest=os.environ.get("CONTAINER_IMAGE_DIGEST", "unknown"),
        )

    try:
        cgroup = Path("/proc/self/cgroup").read_text(encoding="utf-8", errors="replace")
    except OSError:
        cgroup = ""
    if "docker" in cgroup or "containerd" in cgroup or "kubepods" in cgroup:
        return ContainerInfo(container_type="docker")

    if os.environ.get("GITHUB_ACTIONS"):
        return ContainerInfo(
            container_type="none",
            image="github-actions-runner",
            image_digest=os.environ.get("ImageOS", "unknown"),
        )

    return None


def _read_version(path: str, args: list[str]) -> str:
    try:
        result = subprocess.run(
            [path, *args],
            capture_output=True,
            text=True,
            timeout=VERSION_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.warning("Version check failed for %s: %s", path, exc)
        return "unknown"

    output = (result.stdout or result.stderr).strip()
    if result.returncode != 0 or not output:
        return "unknown"
    return output.splitlines()[0].strip()
