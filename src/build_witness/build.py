"""
Build orchestration: run a build command and produce a signed witness bundle.

Steps, each feeding the next; any fatal error leaves no bundle behind:

     1. Load policy (or the Mode B default) and the signing key
     2. Snapshot the environment
     3. Scan and hash lockfiles
     4. Read source-control identity and hash the source tree
     5. Attempt reproducibility-mode enforcement
     6. Run the command, capturing an interleaved transcript
     7. Post-build enforcement checks (Mode B lockfiles)
     8. Hash every output artifact
     9. Assemble the manifest from sub-document hashes
    10. Canonicalize, hash and sign the manifest; write the bundle
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from . import bundle as layout
from .artifacts import collect_outputs
from .bundle import BundleWriter
from .canonical import canonical_bytes
from .environment import capture_environment
from .errors import ConfigurationError
from .git import GitState, read_git_state, source_commit_tree_hash, source_worktree_hash
from .hashing import compute_content_hash, sha256_hex
from .materials import scan_materials
from .model import (
    BuilderIdentity,
    Enforcement,
    GitRef,
    Manifest,
    PolicyRef,
)
from .policy import Enforcer, IsolationCapability, build_environment, load_policy
from .sign import load_secret_key, public_key_from_secret, sign
from .transcript import run_command

logger = logging.getLogger(__name__)


DEFAULT_BUNDLE_DIR = "vbw"
DEFAULT_OUTPUT_DIR = "dist"
DEFAULT_BUILDER_KEY_ID = "builder@local"


@dataclass
class BuildOptions:
    """
    Where and how to build.

    root defaults to the current directory; bundle_dir and policy_path,
    when relative, are resolved against root.
    """
    root: Path = Path(".")
    project: str | None = None
    output_dir: str = DEFAULT_OUTPUT_DIR
    bundle_dir: Path | None = None
    policy_path: Path | None = None
    keyfile: Path | None = None
    key_id: str = DEFAULT_BUILDER_KEY_ID
    echo: bool = False

    def resolved_root(self) -> Path:
        return Path(self.root).resolve()

    def resolved_bundle_dir(self) -> Path:
        return (self.resolved_root() / (self.bundle_dir or DEFAULT_BUNDLE_DIR)).resolve()

    def resolved_policy_path(self) -> Path:
        if self.policy_path is not None:
            return self.resolved_root() / self.policy_path
        return self.resolved_bundle_dir() / layout.POLICY

    def project_name(self) -> str:
        return self.project or self.resolved_root().name or "unknown"


@dataclass
class BuildResult:
    build_id: str
    bundle_dir: Path
    manifest: Manifest
    manifest_hash: str
    artifact_count: int

    @property
    def enforcement(self) -> Enforcement:
        return self.manifest.enforcement


def run_build(
    argv: list[str],
    options: BuildOptions,
    secret_key: str | None = None,
    isolation: IsolationCapability | None = None,
) -> BuildResult:
    """
    Run the build command and write a signed witness bundle.

    Args:
        argv: Build command (no shell)
        options: Build configuration
        secret_key: Base64 Ed25519 seed; loaded from the environment or
            options.keyfile when None
        isolation: Network isolation capability for Mode A (default: the
            best available on this host)

    Returns:
        BuildResult describing the written bundle

    Raises:
        ConfigurationError: No usable signing key, malformed policy,
            bundle directory that would contain the project root
        BuildFailure: Command failed or output directory missing
    """
    root = options.resolved_root()
    bundle_dir = options.resolved_bundle_dir()
    bundle_location = _bundle_location(bundle_dir, root)

    # 1. Policy and signing key, before anything can be mutated
    policy_path = options.resolved_policy_path()
    policy = load_policy(policy_path)
    if secret_key is None:
        secret_key = load_secret_key(options.keyfile)
    public_key = public_key_from_secret(secret_key)

    # 2-4. Independent collectors
    environment = capture_environment(policy)
    materials = scan_materials(root)
    git_state = read_git_state(root)
    tree_hash = source_commit_tree_hash(root, git_state.commit)
    worktree_hash = source_worktree_hash(root) if git_state.dirty else None

    # 5. Enforcement attempt
    enforcer = Enforcer(policy, root, isolation)
    child_env = build_environment()
    command = enforcer.prepare(argv, child_env, materials)
    environment.source_date_epoch = enforcer.source_date_epoch

    # 6. Build
    logger.info("Running build: %s", " ".join(argv))
    transcript = run_command(command, cwd=root, env=child_env, echo=options.echo)

    # 7. Post-build enforcement
    enforcement = enforcer.finish()

    # 8. Outputs (barrier: all hashes complete before assembly)
    outputs = collect_outputs(root, Path(options.output_dir))
    outputs.bundle_dir = bundle_location

    # 9. Manifest
    environment_doc = environment.to_dict()
    materials_doc = materials.to_dict()
    outputs_doc = outputs.to_dict()
    policy_doc = policy.to_dict()
    transcript_text = transcript.render()

    manifest = assemble_manifest(
        project_name=options.project_name(),
        git_state=git_state,
        source_commit_tree_hash=tree_hash,
        source_worktree_hash=worktree_hash,
        environment_hash=compute_content_hash(environment_doc),
        materials_lock_hash=compute_content_hash(materials_doc),
        outputs_hash=compute_content_hash(outputs_doc),
        transcript_hash=sha256_hex(transcript_text.encode("utf-8")),
        policy_ref=PolicyRef(
            path=_display_path(policy_path, root),
            hash_sha256=compute_content_hash(policy_doc),
        ),
        builder=BuilderIdentity(key_id=options.key_id, public_key_ed25519=public_key),
        enforcement=enforcement,
    )

    # 10. Sign and write
    manifest_doc = manifest.to_dict()
    manifest_bytes = canonical_bytes(manifest_doc)
    manifest_hash = sha256_hex(manifest_bytes)
    signature = sign(secret_key, manifest_bytes)

    with BundleWriter(bundle_dir) as writer:
        writer.write_json(layout.MANIFEST, manifest_doc)
        writer.write_json(layout.ENVIRONMENT, environment_doc)
        writer.write_json(layout.MATERIALS_LOCK, materials_doc)
        writer.write_json(layout.OUTPUTS, outputs_doc)
        writer.write_text(layout.TRANSCRIPT, transcript_text)
        writer.write_json(layout.POLICY, policy_doc)
        writer.write_text(layout.BUILDER_SIGNATURE, signature + "\n")
        writer.write_text(layout.MANIFEST_HASH, manifest_hash + "\n")

    logger.info("Build ID: %s", manifest.build_id)
    logger.info("Manifest hash: %s", manifest_hash)

    return BuildResult(
        build_id=manifest.build_id,
        bundle_dir=bundle_dir,
        manifest=manifest,
        manifest_hash=manifest_hash,
        artifact_count=len(outputs.artifacts),
    )


def assemble_manifest(
    project_name: str,
    git_state: GitState,
    source_commit_tree_hash: str,
    source_worktree_hash: str | None,
    environment_hash: str,
    materials_lock_hash: str,
    outputs_hash: str,
    transcript_hash: str,
    policy_ref: PolicyRef,
    builder: BuilderIdentity,
    enforcement: Enforcement,
) -> Manifest:
    """
    Compose the root document. Takes hashes only, never document content.

    A fresh build id and UTC timestamp are assigned here.
    """
    return Manifest(
        build_id=str(uuid.uuid4()),
        created_at=datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        project_name=project_name,
        git=GitRef(
            commit=git_state.commit,
            branch=git_state.branch,
            tag=git_state.tag,
            dirty=git_state.dirty,
        ),
        source_commit_tree_hash=source_commit_tree_hash,
        source_worktree_hash=source_worktree_hash,
        environment_hash=environment_hash,
        materials_lock_hash=materials_lock_hash,
        outputs_hash=outputs_hash,
        transcript_hash=transcript_hash,
        builder_identity=builder,
        policy_ref=policy_ref,
        enforcement=enforcement,
    )


def _display_path(path: Path, root: Path) -> str:
    try:
        return Path(path).resolve().relative_to(root).as_posix()
    except ValueError:
        return Path(path).as_posix()


def _bundle_location(bundle_dir: Path, root: Path) -> str | None:
    """
    Bundle directory relative to the project root, recorded so verify can
    find the root again. None when the bundle lives outside the project.

    Raises:
        ConfigurationError: If replacing the bundle would delete the project
    """
    try:
        root.relative_to(bundle_dir)
    except ValueError:
        pass
    else:
        raise ConfigurationError(
            f"Bundle directory {bundle_dir} must not contain the project root {root}"
        )

    try:
        return bundle_dir.relative_to(root).as_posix()
    except ValueError:
        logger.warning(
            "Bundle %s is outside the project root; verify resolves artifacts "
            "against its working directory unless given --root",
            bundle_dir,
        )
        return None
