"""
Data model for witness bundle documents.

Each dataclass maps 1:1 to one JSON document (or a nested object in one).
Optional fields that are None are omitted from to_dict() so that the
file written at build time and the document re-parsed at verify time
canonicalize to the same bytes.

from_dict() raises ValueError on missing or mistyped fields; callers
translate that into the error appropriate for their pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


WITNESS_VERSION = "1.0"
POLICY_VERSION = "1.0"


class ReproducibilityMode(str, Enum):
    """
    Declared build-determinism intent.

    A: isolate the network and normalize timestamps.
    B: lockfiles must be identical before and after the build (default).
    C: no reproducibility promise; trivially enforced.
    """
    A_DETERMINISTIC = "A_DETERMINISTIC"
    B_LOCKED_NETWORK = "B_LOCKED_NETWORK"
    C_WITNESSED_ND = "C_WITNESSED_ND"

    @classmethod
    def parse(cls, value: Any) -> "ReproducibilityMode":
        try:
            return cls(value)
        except ValueError:
            raise ValueError(f"Unknown reproducibility mode: {value!r}") from None


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _require(data: Any, key: str, kind: type | tuple[type, ...], where: str) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"{where} must be an object")
    if key not in data:
        raise ValueError(f"{where} missing required field: {key}")
    value = data[key]
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ValueError(f"{where}.{key} has wrong type {type(value).__name__}")
    return value


def _optional(data: dict[str, Any], key: str, kind: type | tuple[type, ...], where: str) -> Any:
    if data.get(key) is None:
        return None
    return _require(data, key, kind, where)


def _flag(data: dict[str, Any], key: str, default: bool, where: str) -> bool:
    value = _optional(data, key, bool, where)
    return default if value is None else value


# ── Manifest ────────────────────────────────────────────────────────────────

@dataclass
class GitRef:
    commit: str
    dirty: bool
    branch: str | None = None
    tag: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "commit": self.commit,
            "branch": self.branch,
            "tag": self.tag,
            "dirty": self.dirty,
        })

    @classmethod
    def from_dict(cls, data: Any) -> "GitRef":
        return cls(
            commit=_require(data, "commit", str, "git"),
            dirty=_require(data, "dirty", bool, "git"),
            branch=_optional(data, "branch", str, "git"),
            tag=_optional(data, "tag", str, "git"),
        )


@dataclass
class BuilderIdentity:
    key_id: str
    public_key_ed25519: str

    def to_dict(self) -> dict[str, Any]:
        return {"key_id": self.key_id, "public_key_ed25519": self.public_key_ed25519}

    @classmethod
    def from_dict(cls, data: Any) -> "BuilderIdentity":
        return cls(
            key_id=_require(data, "key_id", str, "builder_identity"),
            public_key_ed25519=_require(data, "public_key_ed25519", str, "builder_identity"),
        )


@dataclass
class PolicyRef:
    path: str
    hash_sha256: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "hash_sha256": self.hash_sha256}

    @classmethod
    def from_dict(cls, data: Any) -> "PolicyRef":
        return cls(
            path=_require(data, "path", str, "policy_ref"),
            hash_sha256=_require(data, "hash_sha256", str, "policy_ref"),
        )


@dataclass
class Enforcement:
    """
    What the build actually enforced, versus what the policy requested.

    mode_enforced is only ever true when enforcement demonstrably succeeded.
    """
    mode_requested: ReproducibilityMode
    mode_enforced: bool
    network_blocked: bool = False
    source_date_epoch_set: bool = False
    notes: list[str] = field(default_factory=list)

    def shortfall(self, note: str) -> None:
        """Record an enforcement gap. There is no way back to enforced."""
        self.mode_enforced = False
        self.notes.append(note)

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode_requested": self.mode_requested.value,
            "mode_enforced": self.mode_enforced,
            "network_blocked": self.network_blocked,
            "source_date_epoch_set": self.source_date_epoch_set,
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Enforcement":
        return cls(
            mode_requested=ReproducibilityMode.parse(
                _require(data, "mode_requested", str, "enforcement")
            ),
            mode_enforced=_require(data, "mode_enforced", bool, "enforcement"),
            network_blocked=_flag(data, "network_blocked", False, "enforcement"),
            source_date_epoch_set=_flag(data, "source_date_epoch_set", False, "enforcement"),
            notes=[str(n) for n in data.get("notes") or []],
        )


@dataclass
class Manifest:
    """
    Root document of a witness bundle.

    References every other bundle document by hash only; never embeds
    their content. Signatures cover canonical_bytes(manifest.to_dict()).
    """
    build_id: str
    created_at: str
    project_name: str
    git: GitRef
    source_commit_tree_hash: str
    environment_hash: str
    materials_lock_hash: str
    outputs_hash: str
    transcript_hash: str
    builder_identity: BuilderIdentity
    policy_ref: PolicyRef
    enforcement: Enforcement
    source_worktree_hash: str | None = None
    witness_version: str = WITNESS_VERSION

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "witness_version": self.witness_version,
            "build_id": self.build_id,
            "created_at": self.created_at,
            "project": {"name": self.project_name},
            "git": self.git.to_dict(),
            "source_commit_tree_hash": self.source_commit_tree_hash,
            "source_worktree_hash": self.source_worktree_hash,
            "environment_hash": self.environment_hash,
            "materials_lock_hash": self.materials_lock_hash,
            "outputs_hash": self.outputs_hash,
            "transcript_hash": self.transcript_hash,
            "builder_identity": self.builder_identity.to_dict(),
            "policy_ref": self.policy_ref.to_dict(),
            "enforcement": self.enforcement.to_dict(),
        })

    @classmethod
    def from_dict(cls, data: Any) -> "Manifest":
        project = _require(data, "project", dict, "manifest")
        return cls(
            witness_version=_require(data, "witness_version", str, "manifest"),
            build_id=_require(data, "build_id", str, "manifest"),
            created_at=_require(data, "created_at", str, "manifest"),
            project_name=_require(project, "name", str, "project"),
            git=GitRef.from_dict(_require(data, "git", dict, "manifest")),
            source_commit_tree_hash=_require(data, "source_commit_tree_hash", str, "manifest"),
            source_worktree_hash=_optional(data, "source_worktree_hash", str, "manifest"),
            environment_hash=_require(data, "environment_hash", str, "manifest"),
            materials_lock_hash=_require(data, "materials_lock_hash", str, "manifest"),
            outputs_hash=_require(data, "outputs_hash", str, "manifest"),
            transcript_hash=_require(data, "transcript_hash", str, "manifest"),
            builder_identity=BuilderIdentity.from_dict(
                _require(data, "builder_identity", dict, "manifest")
            ),
            policy_ref=PolicyRef.from_dict(_require(data, "policy_ref", dict, "manifest")),
            enforcement=Enforcement.from_dict(_require(data, "enforcement", dict, "manifest")),
        )


# ── Environment ─────────────────────────────────────────────────────────────

@dataclass
class ToolInfo:
    name: str
    version: str
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({"name": self.name, "version": self.version, "path": self.path})


@dataclass
class ContainerInfo:
    container_type: str
    image_digest: str = "unknown"
    image: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "type": self.container_type,
            "image": self.image,
            "image_digest": self.image_digest,
        })


@dataclass
class NetworkPolicy:
    allowed: bool
    allowlist: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "allowlist": list(self.allowlist)}

    @classmethod
    def from_dict(cls, data: Any, where: str = "network") -> "NetworkPolicy":
        allowlist = _optional(data, "allowlist", list, where) or []
        return cls(
            allowed=_require(data, "allowed", bool, where),
            allowlist=[str(host) for host in allowlist],
        )


@dataclass
class EnvironmentRecord:
    os_name: str
    mode: ReproducibilityMode
    network: NetworkPolicy
    tools: list[ToolInfo] = field(default_factory=list)
    os_version: str | None = None
    kernel: str | None = None
    arch: str | None = None
    container: ContainerInfo | None = None
    locale: str | None = None
    timezone: str | None = None
    source_date_epoch: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "os": _drop_none({
                "name": self.os_name,
                "version": self.os_version,
                "kernel": self.kernel,
                "arch": self.arch,
            }),
            "container": self.container.to_dict() if self.container else None,
            "tools": [tool.to_dict() for tool in self.tools],
            "locale": self.locale,
            "timezone": self.timezone,
            "reproducibility": _drop_none({
                "mode": self.mode.value,
                "source_date_epoch": self.source_date_epoch,
                "network": self.network.to_dict(),
            }),
        })

    @classmethod
    def mode_from_dict(cls, data: Any) -> ReproducibilityMode:
        """Extract just the declared mode; the only field verify reasons about."""
        repro = _require(data, "reproducibility", dict, "environment")
        return ReproducibilityMode.parse(_require(repro, "mode", str, "reproducibility"))


# ── Materials ───────────────────────────────────────────────────────────────

@dataclass
class LockfileEntry:
    path: str
    sha256: str
    kind: str = "file"


@dataclass
class MaterialsLock:
    lockfiles: list[LockfileEntry] = field(default_factory=list)

    def snapshot(self) -> dict[str, str]:
        """Lockfile name -> content hash."""
        return {entry.path: entry.sha256 for entry in self.lockfiles}

    def to_dict(self) -> dict[str, Any]:
        return {
            "lockfiles": [{"path": e.path, "sha256": e.sha256} for e in self.lockfiles],
            "materials": [
                {"name": e.path, "kind": e.kind, "sha256": e.sha256} for e in self.lockfiles
            ],
        }

    @classmethod
    def from_dict(cls, data: Any) -> "MaterialsLock":
        entries = _require(data, "lockfiles", list, "materials_lock")
        kinds = {
            m.get("name"): m.get("kind", "file")
            for m in data.get("materials") or []
            if isinstance(m, dict)
        }
        lockfiles = []
        for entry in entries:
            path = _require(entry, "path", str, "lockfile")
            lockfiles.append(LockfileEntry(
                path=path,
                sha256=_require(entry, "sha256", str, "lockfile"),
                kind=str(kinds.get(path, "file")),
            ))
        return cls(lockfiles=lockfiles)


# ── Outputs ─────────────────────────────────────────────────────────────────

@dataclass
class Artifact:
    path: str
    sha256: str
    size_bytes: int
    mime: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "path": self.path,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "mime": self.mime,
        })

    @classmethod
    def from_dict(cls, data: Any) -> "Artifact":
        return cls(
            path=_require(data, "path", str, "artifact"),
            sha256=_require(data, "sha256", str, "artifact"),
            size_bytes=_require(data, "size_bytes", int, "artifact"),
            mime=_optional(data, "mime", str, "artifact"),
        )


@dataclass
class Outputs:
    """
    Artifacts with paths relative to the project root. bundle_dir is where
    the bundle sits relative to that same root (omitted when outside it).
    """
    artifacts: list[Artifact] = field(default_factory=list)
    bundle_dir: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _drop_none({
            "artifacts": [a.to_dict() for a in self.artifacts],
            "bundle_dir": self.bundle_dir,
        })

    @classmethod
    def from_dict(cls, data: Any) -> "Outputs":
        return cls(
            artifacts=[
                Artifact.from_dict(a) for a in _require(data, "artifacts", list, "outputs")
            ],
            bundle_dir=_optional(data, "bundle_dir", str, "outputs"),
        )


# ── Policy ──────────────────────────────────────────────────────────────────

@dataclass
class TrustedCosignerKey:
    key_id: str
    public_key_ed25519: str

    def to_dict(self) -> dict[str, Any]:
        return {"key_id": self.key_id, "public_key_ed25519": self.public_key_ed25519}


@dataclass
class Policy:
    """
    What the build SHOULD do. Recorded at build time, checked at verify time.
    """
    mode: ReproducibilityMode = ReproducibilityMode.B_LOCKED_NETWORK
    network: NetworkPolicy = field(default_factory=lambda: NetworkPolicy(allowed=True))
    require_source_date_epoch: bool = False
    require_lockfile_hashes: bool = True
    require_maintainer_cosign: bool = False
    trusted_cosigner_keys: list[TrustedCosignerKey] = field(default_factory=list)
    policy_version: str = POLICY_VERSION

    @classmethod
    def default(cls) -> "Policy":
        """Mode B, network allowed, lockfile hashes required, no co-signing."""
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "policy_version": self.policy_version,
            "requirements": {
                "network": self.network.to_dict(),
                "reproducibility": {
                    "mode": self.mode.value,
                    "require_source_date_epoch": self.require_source_date_epoch,
                },
                "materials": {"require_lockfile_hashes": self.require_lockfile_hashes},
                "signing": {
                    "require_maintainer_cosign": self.require_maintainer_cosign,
                    "trusted_cosigner_keys": [k.to_dict() for k in self.trusted_cosigner_keys],
                },
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Policy":
        requirements = _require(data, "requirements", dict, "policy")
        repro = _require(requirements, "reproducibility", dict, "requirements")
        materials = _optional(requirements, "materials", dict, "requirements") or {}
        signing = _optional(requirements, "signing", dict, "requirements") or {}

        keys = []
        for entry in _optional(signing, "trusted_cosigner_keys", list, "signing") or []:
            keys.append(TrustedCosignerKey(
                key_id=_require(entry, "key_id", str, "trusted_cosigner_key"),
                public_key_ed25519=_require(
                    entry, "public_key_ed25519", str, "trusted_cosigner_key"
                ),
            ))

        return cls(
            policy_version=str(data.get("policy_version", POLICY_VERSION)),
            mode=ReproducibilityMode.parse(_require(repro, "mode", str, "reproducibility")),
            network=NetworkPolicy.from_dict(
                _require(requirements, "network", dict, "requirements"),
                where="requirements.network",
            ),
            require_source_date_epoch=_flag(
                repro, "require_source_date_epoch", False, "reproducibility"
            ),
            require_lockfile_hashes=_flag(
                materials, "require_lockfile_hashes", True, "materials"
            ),
            require_maintainer_cosign=_flag(
                signing, "require_maintainer_cosign", False, "signing"
            ),
            trusted_cosigner_keys=keys,
        )
