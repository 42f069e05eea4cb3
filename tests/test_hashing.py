"""Streaming file hash tests."""

from build_witness.hashing import CHUNK_SIZE, hash_file, safe_equal, sha256_hex


EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
HELLO_SHA256 = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


def test_known_vectors():
    assert sha256_hex(b"") == EMPTY_SHA256
    assert sha256_hex(b"hello") == HELLO_SHA256


def test_hash_file_empty(tmp_path):
    path = tmp_path / "empty.bin"
    path.write_bytes(b"")
    assert hash_file(path) == EMPTY_SHA256


def test_hash_file_streaming_matches_in_memory(tmp_path):
    path = tmp_path / "big.bin"
    pattern = bytes(range(256))
    # 3 MiB plus a partial chunk, so the last read is short
    data = pattern * (3 * 1024 * 1024 // len(pattern)) + b"tail"
    path.write_bytes(data)

    assert len(data) % CHUNK_SIZE != 0
    assert hash_file(path) == sha256_hex(data)


def test_hash_file_is_pure(tmp_path):
    path = tmp_path / "a.txt"
    path.write_bytes(b"hello")
    assert hash_file(path) == hash_file(path) == HELLO_SHA256


def test_safe_equal():
    assert safe_equal("abc", "abc")
    assert not safe_equal("abc", "abd")
    assert not safe_equal("abc", None)
