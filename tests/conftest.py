"""Shared fixtures: signing keys and a throwaway project that builds dist/a.txt."""

import sys
from pathlib import Path

import pytest

# Add parent src to path for development
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from build_witness import BuildOptions, Policy, keygen, run_build  # noqa: E402
from build_witness.canonical import pretty_json  # noqa: E402
from build_witness.sign import SECRET_KEY_ENV  # noqa: E402


DEMO_BUILD = [
    sys.executable,
    "-c",
    "import pathlib; d = pathlib.Path('dist'); d.mkdir(exist_ok=True); "
    "(d / 'a.txt').write_bytes(b'hello')",
]


@pytest.fixture(autouse=True)
def _no_ambient_key(monkeypatch):
    """Tests pass keys explicitly; never pick one up from the host."""
    monkeypatch.delenv(SECRET_KEY_ENV, raising=False)


@pytest.fixture
def builder_key() -> tuple[str, str]:
    return keygen()


@pytest.fixture
def project(tmp_path) -> Path:
    root = tmp_path / "demo"
    root.mkdir()
    return root


def write_policy(root: Path, policy: Policy | None = None) -> Path:
    """Write a policy that a lockfile-less demo project fully satisfies."""
    policy = policy or Policy(require_lockfile_hashes=False)
    path = root / "policy.json"
    path.write_text(pretty_json(policy.to_dict()), encoding="utf-8")
    return path


def build_demo(root: Path, secret_key: str, policy: Policy | None = None, argv=None, **options):
    policy_path = write_policy(root, policy)
    opts = BuildOptions(root=root, project="demo", policy_path=policy_path, **options)
    return run_build(argv or DEMO_BUILD, opts, secret_key=secret_key)
