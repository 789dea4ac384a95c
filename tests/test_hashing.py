"""Tests for content hashing."""

from __future__ import annotations

import pytest

from ledgerfs.hashing import (
    DEFAULT_ALGORITHM,
    FALLBACK_ALGORITHM,
    ContentHasher,
    compute_file_hash,
    compute_file_info,
    fnv1a_64,
    has_content_changed,
    hashes_equal,
)


class TestFnv1a:
    def test_empty_is_offset_basis(self):
        assert fnv1a_64(b"") == "cbf29ce484222325"

    def test_known_vector(self):
        assert fnv1a_64(b"a") == "af63dc4c8601ec8c"

    def test_fixed_width(self):
        for data in (b"", b"x", b"hello world" * 100):
            assert len(fnv1a_64(data)) == 16


class TestContentHasher:
    def test_default_is_xxh64(self):
        hasher = ContentHasher()
        assert hasher.algorithm == DEFAULT_ALGORITHM
        assert hasher.is_fallback is False
        assert hasher.hash_bytes(b"") == "ef46db3751d8e999"

    def test_unknown_algorithm_falls_back(self, caplog):
        hasher = ContentHasher("sha-nope")
        assert hasher.algorithm == FALLBACK_ALGORITHM
        assert hasher.is_fallback is True
        assert hasher.hash_bytes(b"a") == fnv1a_64(b"a")
        assert "falling back" in caplog.text

    @pytest.mark.parametrize("algorithm", ["xxh32", "xxh64", "xxh3_64", "xxh3_128"])
    def test_stable(self, algorithm):
        hasher = ContentHasher(algorithm)
        assert hasher.hash_bytes(b"same") == hasher.hash_bytes(b"same")
        assert hasher.hash_bytes(b"same") != hasher.hash_bytes(b"diff")

    async def test_stream_matches_bytes(self):
        hasher = ContentHasher()

        async def chunks():
            yield b"hel"
            yield b"lo"

        assert await hasher.hash_stream(chunks()) == hasher.hash_bytes(b"hello")
        assert await hasher.hash_stream([b"he", b"llo"]) == hasher.hash_bytes(b"hello")

    async def test_hash_file(self, tmp_path):
        f = tmp_path / "f.bin"
        f.write_bytes(b"payload")
        hasher = ContentHasher()
        assert await hasher.hash_file(f) == hasher.hash_bytes(b"payload")

    def test_compute_file_info(self):
        file_hash, size = compute_file_info(b"hello")
        assert size == 5
        assert file_hash == compute_file_hash(b"hello")


class TestComparison:
    def test_hashes_equal_case_insensitive(self):
        assert hashes_equal("ABCDEF", "abcdef")

    def test_missing_never_equal(self):
        assert not hashes_equal(None, None)
        assert not hashes_equal("", "abc")

    def test_has_content_changed(self):
        stored = compute_file_hash(b"v1")
        assert has_content_changed(stored, b"v1") is False
        assert has_content_changed(stored, b"v2") is True
        assert has_content_changed(None, b"v1") is True
