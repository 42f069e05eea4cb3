"""Ed25519 signing and key loading tests."""

import base64
import json
import os
import stat

import pytest

from build_witness import ConfigurationError, SignatureError, canonical_bytes
from build_witness.sign import (
    PUBLIC_KEY_FILENAME,
    SECRET_KEY_ENV,
    SECRET_KEY_FILENAME,
    keygen,
    load_secret_key,
    public_key_from_secret,
    sign,
    verify,
    write_keypair,
)


MANIFEST = {"build_id": "test-build-00000000", "project": {"name": "golden-test"}}


def test_keygen_sizes():
    secret_key, public_key = keygen()
    assert len(base64.b64decode(secret_key)) == 32
    assert len(base64.b64decode(public_key)) == 32
    assert public_key_from_secret(secret_key) == public_key


def test_sign_and_verify_canonical_bytes():
    secret_key, public_key = keygen()
    data = canonical_bytes(MANIFEST)
    signature = sign(secret_key, data)

    assert len(base64.b64decode(signature)) == 64
    assert verify(public_key, data, signature)


def test_signature_does_not_cover_pretty_form():
    secret_key, public_key = keygen()
    signature = sign(secret_key, canonical_bytes(MANIFEST))
    pretty = json.dumps(MANIFEST, indent=2).encode("utf-8")

    assert not verify(public_key, pretty, signature)


def test_wrong_key_fails():
    secret_key, _ = keygen()
    _, other_public = keygen()
    data = canonical_bytes(MANIFEST)
    assert not verify(other_public, data, sign(secret_key, data))


def test_malformed_signature_raises():
    _, public_key = keygen()
    with pytest.raises(SignatureError):
        verify(public_key, b"data", "AAAA")
    with pytest.raises(SignatureError):
        verify(public_key, b"data", "not base64!!")


def test_malformed_public_key_raises():
    secret_key, _ = keygen()
    signature = sign(secret_key, b"data")
    with pytest.raises(SignatureError):
        verify(base64.b64encode(b"short").decode(), b"data", signature)


def test_malformed_secret_key_raises():
    with pytest.raises(ConfigurationError):
        sign(base64.b64encode(b"x" * 31).decode(), b"data")


class TestLoadSecretKey:

    def test_no_source(self):
        with pytest.raises(ConfigurationError) as exc_info:
            load_secret_key(None)
        assert SECRET_KEY_ENV in exc_info.value.message

    def test_keyfile(self, tmp_path):
        secret_key, _ = keygen()
        keyfile = tmp_path / "builder.sk"
        keyfile.write_text(secret_key + "\n")
        assert load_secret_key(keyfile) == secret_key

    def test_environment_wins(self, tmp_path, monkeypatch):
        env_key, _ = keygen()
        file_key, _ = keygen()
        keyfile = tmp_path / "builder.sk"
        keyfile.write_text(file_key)
        monkeypatch.setenv(SECRET_KEY_ENV, env_key)
        assert load_secret_key(keyfile) == env_key

    def test_missing_keyfile(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_secret_key(tmp_path / "absent.sk")

    def test_invalid_key_content(self, tmp_path):
        keyfile = tmp_path / "builder.sk"
        keyfile.write_text("definitely-not-a-key")
        with pytest.raises(ConfigurationError):
            load_secret_key(keyfile)


def test_write_keypair(tmp_path):
    sk_path, pk_path, public_key = write_keypair(tmp_path / "keys")

    assert sk_path.name == SECRET_KEY_FILENAME
    assert pk_path.name == PUBLIC_KEY_FILENAME
    assert pk_path.read_text().strip() == public_key
    assert public_key_from_secret(sk_path.read_text().strip()) == public_key
    if os.name == "posix":
        assert stat.S_IMODE(sk_path.stat().st_mode) == 0o600
