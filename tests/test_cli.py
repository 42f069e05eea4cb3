"""Command-line interface tests."""

import json

import pytest

from build_witness.cli import main
from build_witness.sign import PUBLIC_KEY_FILENAME, SECRET_KEY_ENV, SECRET_KEY_FILENAME

from conftest import DEMO_BUILD, write_policy


@pytest.fixture
def workdir(project, builder_key, monkeypatch):
    """Project directory as cwd, with the builder key in the environment."""
    monkeypatch.chdir(project)
    monkeypatch.setenv(SECRET_KEY_ENV, builder_key[0])
    write_policy(project)
    return project


def cli_build(capsys, *extra):
    code = main(["build", "--quiet", "--project", "demo", "--policy", "policy.json", *extra, "--", *DEMO_BUILD])
    capsys.readouterr()
    return code


def test_no_command(capsys):
    assert main([]) == 1


def test_keygen(tmp_path, capsys):
    assert main(["keygen", "--quiet", "--output", str(tmp_path / "keys")]) == 0

    out = capsys.readouterr().out.strip()
    assert (tmp_path / "keys" / SECRET_KEY_FILENAME).is_file()
    assert (tmp_path / "keys" / PUBLIC_KEY_FILENAME).read_text().strip() == out


def test_build_then_verify(workdir, capsys):
    assert main(["build", "--quiet", "--project", "demo", "--policy", "policy.json", "--", *DEMO_BUILD]) == 0
    summary = capsys.readouterr().out
    assert summary.startswith("demo ")
    assert "B_LOCKED_NETWORK enforced" in summary
    assert (workdir / "vbw" / "manifest.json").is_file()

    assert main(["verify", "--quiet"]) == 0
    out = capsys.readouterr().out
    assert out.splitlines()[-1] == "VERIFIED"


def test_verify_tampered_exits_non_zero(workdir, capsys):
    assert cli_build(capsys) == 0
    (workdir / "dist" / "a.txt").write_bytes(b"HELLO")

    assert main(["verify", "--quiet"]) == 1
    out = capsys.readouterr().out
    assert "UNVERIFIED" in out
    assert "ARTIFACT_HASH_MISMATCH" in out


def test_verify_variance_exits_zero(workdir, capsys):
    assert cli_build(capsys) == 0
    (workdir / "dist" / "a.txt").unlink()

    assert main(["verify", "--quiet"]) == 0
    out = capsys.readouterr().out
    assert "VERIFIED WITH VARIANCE" in out
    assert "WARNING [ARTIFACT_MISSING]" in out


def test_verify_json(workdir, capsys):
    assert cli_build(capsys) == 0

    assert main(["verify", "--quiet", "--json"]) == 0
    report = json.loads(capsys.readouterr().out)
    assert report["verdict"] == "VERIFIED"
    assert report["errors"] == []


def test_verify_missing_bundle(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["verify", "--quiet", "--json"]) == 1
    report = json.loads(capsys.readouterr().out)
    assert report["errors"][0]["code"] == "BUNDLE_NOT_FOUND"


def test_verify_missing_policy_override(workdir, capsys):
    assert cli_build(capsys) == 0
    assert main(["verify", "--quiet", "--policy", "absent.json"]) == 1


def test_build_without_command(workdir, capsys):
    assert main(["build", "--quiet"]) == 1
    assert not (workdir / "vbw").exists()


def test_build_without_key(workdir, monkeypatch, capsys):
    monkeypatch.delenv(SECRET_KEY_ENV)
    assert cli_build(capsys) == 1
    assert not (workdir / "vbw").exists()


def test_build_failure_exits_non_zero(workdir, capsys):
    code = main(["build", "--quiet", "--policy", "policy.json", "--", "python-that-does-not-exist-xyz"])
    assert code == 1
    assert not (workdir / "vbw").exists()


def test_attest(workdir, tmp_path, monkeypatch, capsys):
    assert cli_build(capsys) == 0
    assert main(["keygen", "--quiet", "--output", str(tmp_path / "maintainer")]) == 0
    capsys.readouterr()

    # The environment key would win over --keyfile
    monkeypatch.delenv(SECRET_KEY_ENV)
    keyfile = tmp_path / "maintainer" / SECRET_KEY_FILENAME
    assert main(["attest", "--quiet", "--keyfile", str(keyfile), "--key-id", "alice@example.com"]) == 0

    sig_path = capsys.readouterr().out.strip()
    assert sig_path.endswith("alice_example.com.ed25519.sig")
    assert (workdir / "vbw" / "signatures" / "alice_example.com.ed25519.sig").is_file()
