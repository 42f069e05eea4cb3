"""
Output artifact hashing.

Files are independent, so they are hashed in a thread pool; collection
returns only after every hash has completed.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path, PurePosixPath

from .errors import BuildFailure, ConfigurationError
from .hashing import hash_file
from .model import Artifact, Outputs

logger = logging.getLogger(__name__)


DEFAULT_MEDIA_TYPE = "application/octet-stream"

MEDIA_TYPES: dict[str, str] = {
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".mjs": "application/javascript",
    ".json": "application/json",
    ".map": "application/json",
    ".xml": "application/xml",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".ico": "image/x-icon",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
    ".ttf": "font/ttf",
    ".pdf": "application/pdf",
    ".wasm": "application/wasm",
    ".zip": "application/zip",
    ".gz": "application/gzip",
    ".tar": "application/x-tar",
    ".whl": "application/zip",
}


def guess_media_type(path: str) -> str:
    return MEDIA_TYPES.get(PurePosixPath(path).suffix.lower(), DEFAULT_MEDIA_TYPE)


def collect_outputs(root: Path, output_dir: Path, max_workers: int | None = None) -> Outputs:
    """
    Hash every regular file under output_dir.

    Args:
        root: Project root; artifact paths are recorded relative to it
        output_dir: Build output directory (relative to root, or absolute
            inside root)
        max_workers: Thread pool size (default: executor default)

    Returns:
        Outputs with artifacts sorted by path

    Raises:
        ConfigurationError: If output_dir is outside root
        BuildFailure: If output_dir does not exist
    """
    root = Path(root).resolve()
    out_dir = output_dir if Path(output_dir).is_absolute() else root / output_dir
    out_dir = Path(out_dir).resolve()

    try:
        out_dir.relative_to(root)
    except ValueError:
        raise ConfigurationError(
            f"Output directory {out_dir} is outside the project root {root}"
        ) from None

    if not out_dir.is_dir():
        raise BuildFailure(
            f"Output directory {out_dir} does not exist",
            details={"output_dir": str(out_dir)},
        )

    files = list(_walk_regular_files(out_dir))
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        artifacts = list(pool.map(lambda p: _hash_artifact(root, p), files))

    artifacts.sort(key=lambda a: a.path)
    logger.info("Artifacts: %d file(s)", len(artifacts))
    return Outputs(artifacts=artifacts)


def _walk_regular_files(directory: Path):
    for dirpath, dirnames, filenames in os.walk(directory, followlinks=False):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_symlink():
                logger.warning("Skipping symlinked output %s", path)
                continue
            if path.is_file():
                yield path


def _hash_artifact(root: Path, path: Path) -> Artifact:
    rel = path.relative_to(root).as_posix()
    return Artifact(
        path=rel,
        sha256=hash_file(path),
        size_bytes=path.stat().st_size,
        mime=guess_media_type(rel),
    )
