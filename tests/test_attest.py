"""Co-signature (attest) tests."""

import json
import os

import pytest

from build_witness import (
    ConfigurationError,
    ErrorCode,
    IntegrityError,
    Policy,
    Verdict,
    attest_bundle,
    keygen,
    verify_bundle,
)
from build_witness.bundle import cosignature_filename, is_cosignature_path
from build_witness.model import TrustedCosignerKey

from conftest import build_demo


def snapshot(bundle):
    return {
        p.relative_to(bundle).as_posix(): p.read_bytes()
        for p in bundle.rglob("*")
        if p.is_file()
    }


@pytest.fixture
def maintainer_key():
    return keygen()


@pytest.fixture
def gated(project, builder_key, maintainer_key):
    """A bundle whose policy requires a co-signature from maintainer@local."""
    policy = Policy(
        require_lockfile_hashes=False,
        require_maintainer_cosign=True,
        trusted_cosigner_keys=[TrustedCosignerKey("maintainer@local", maintainer_key[1])],
    )
    return build_demo(project, builder_key[0], policy=policy).bundle_dir


class TestAttest:

    def test_only_adds_a_signature_file(self, project, builder_key, maintainer_key):
        bundle = build_demo(project, builder_key[0]).bundle_dir
        before = snapshot(bundle)

        sig_path = attest_bundle(bundle, maintainer_key[0], "maintainer@local")

        after = snapshot(bundle)
        added = set(after) - set(before)
        assert added == {"signatures/maintainer_local.ed25519.sig"}
        assert {name: after[name] for name in before} == before
        assert sig_path == (bundle / "signatures" / "maintainer_local.ed25519.sig").resolve()

    def test_untrusted_cosignature_without_requirement(self, project, builder_key, maintainer_key):
        """An endorsement the policy does not ask for never lowers the verdict."""
        bundle = build_demo(project, builder_key[0]).bundle_dir
        attest_bundle(bundle, maintainer_key[0], "maintainer@local")

        report = verify_bundle(bundle)
        assert report.verdict is Verdict.VERIFIED
        assert report.warnings == []

    @pytest.mark.skipif(os.name != "posix", reason="symlinks need POSIX")
    def test_refuses_symlinked_signature_outside_bundle(self, project, builder_key, maintainer_key, tmp_path):
        bundle = build_demo(project, builder_key[0]).bundle_dir
        outside = tmp_path / "outside.txt"
        outside.write_text("precious")
        (bundle / "signatures" / "maintainer_local.ed25519.sig").symlink_to(outside)

        with pytest.raises(IntegrityError) as exc_info:
            attest_bundle(bundle, maintainer_key[0], "maintainer@local")

        assert exc_info.value.code is ErrorCode.SYMLINK_ESCAPE
        assert outside.read_text() == "precious"

    @pytest.mark.skipif(os.name != "posix", reason="symlinks need POSIX")
    def test_refuses_symlinked_signature_inside_bundle(self, project, builder_key, maintainer_key):
        bundle = build_demo(project, builder_key[0]).bundle_dir
        manifest_before = (bundle / "manifest.json").read_bytes()
        (bundle / "signatures" / "maintainer_local.ed25519.sig").symlink_to(bundle / "manifest.json")

        with pytest.raises(IntegrityError) as exc_info:
            attest_bundle(bundle, maintainer_key[0], "maintainer@local")

        assert exc_info.value.code is ErrorCode.SYMLINK_ESCAPE
        assert (bundle / "manifest.json").read_bytes() == manifest_before

    def test_refuses_bundle_with_unexpected_file(self, project, builder_key, maintainer_key):
        bundle = build_demo(project, builder_key[0]).bundle_dir
        (bundle / "notes.txt").write_text("extra")

        with pytest.raises(IntegrityError) as exc_info:
            attest_bundle(bundle, maintainer_key[0], "maintainer@local")

        assert exc_info.value.code is ErrorCode.UNEXPECTED_FILE
        assert not (bundle / "signatures" / "maintainer_local.ed25519.sig").exists()

    def test_refuses_builder_key_id(self, project, builder_key, maintainer_key):
        bundle = build_demo(project, builder_key[0]).bundle_dir
        with pytest.raises(ConfigurationError):
            attest_bundle(bundle, maintainer_key[0], "builder")

    def test_refuses_tampered_bundle(self, project, builder_key, maintainer_key):
        bundle = build_demo(project, builder_key[0]).bundle_dir
        manifest = json.loads((bundle / "manifest.json").read_text())
        manifest["project"]["name"] = "evil"
        (bundle / "manifest.json").write_text(json.dumps(manifest))

        with pytest.raises(IntegrityError) as exc_info:
            attest_bundle(bundle, maintainer_key[0], "maintainer@local")

        assert exc_info.value.code is ErrorCode.MANIFEST_HASH_MISMATCH
        assert not (bundle / "signatures" / "maintainer_local.ed25519.sig").exists()

    def test_missing_bundle(self, tmp_path, maintainer_key):
        with pytest.raises(IntegrityError):
            attest_bundle(tmp_path / "vbw", maintainer_key[0])

    def test_cosignature_filenames(self):
        assert cosignature_filename("alice@example.com") == "alice_example.com.ed25519.sig"
        assert cosignature_filename("team/release bot") == "team_release_bot.ed25519.sig"
        assert is_cosignature_path("signatures/alice_example.com.ed25519.sig")
        assert not is_cosignature_path("signatures/builder.ed25519.sig")
        assert not is_cosignature_path("signatures/notes.txt")
        assert not is_cosignature_path("hashes/alice.ed25519.sig")


class TestCosignatureGating:

    def test_required_but_absent(self, gated):
        report = verify_bundle(gated)
        assert report.verdict is Verdict.UNVERIFIED
        assert [e.code for e in report.errors] == [ErrorCode.COSIGNATURE_REQUIRED]

    def test_trusted_cosignature(self, gated, maintainer_key):
        attest_bundle(gated, maintainer_key[0], "maintainer@local")

        report = verify_bundle(gated)
        assert report.verdict is Verdict.VERIFIED
        assert report.warnings == []

    def test_untrusted_only(self, gated):
        stranger_secret, _ = keygen()
        attest_bundle(gated, stranger_secret, "stranger@example.com")

        report = verify_bundle(gated)
        assert report.verdict is Verdict.UNVERIFIED
        assert [e.code for e in report.errors] == [ErrorCode.COSIGNATURE_REQUIRED]
        assert [w.code for w in report.warnings] == [ErrorCode.UNTRUSTED_COSIGNATURE]

    def test_trusted_id_wrong_key(self, gated):
        impostor_secret, _ = keygen()
        attest_bundle(gated, impostor_secret, "maintainer@local")

        report = verify_bundle(gated)
        assert report.verdict is Verdict.UNVERIFIED
        assert [e.code for e in report.errors] == [ErrorCode.COSIGNATURE_INVALID]

    def test_malformed_cosignature(self, gated):
        (gated / "signatures" / "maintainer_local.ed25519.sig").write_text("not-base64!!")

        report = verify_bundle(gated)
        assert [e.code for e in report.errors] == [ErrorCode.COSIGNATURE_INVALID]

    def test_verifier_policy_override(self, project, builder_key, maintainer_key):
        """A verifier can demand co-signing even when the bundled policy does not."""
        bundle = build_demo(project, builder_key[0]).bundle_dir
        strict = Policy(
            require_lockfile_hashes=False,
            require_maintainer_cosign=True,
            trusted_cosigner_keys=[TrustedCosignerKey("maintainer@local", maintainer_key[1])],
        )
        assert verify_bundle(bundle, policy_override=strict).verdict is Verdict.UNVERIFIED

        attest_bundle(bundle, maintainer_key[0], "maintainer@local")
        assert verify_bundle(bundle, policy_override=strict).verdict is Verdict.VERIFIED
