"""
Unit tests for content hashing.
"""

import hashlib
import os
from pathlib import Path

import pytest

from toolgate.errors import HashError
from toolgate.trust.hashing import digests_match, hash_file, normalize_digest


class TestHashFile:
    """Tests for hash_file()."""

    def test_matches_hashlib(self, tmp_path: Path) -> None:
        """The digest is plain sha256 of the bytes."""
        path = tmp_path / "bin"
        data = os.urandom(20_000)
        path.write_bytes(data)

        result = hash_file(path)
        assert result.algorithm == "sha256"
        assert result.digest == hashlib.sha256(data).hexdigest()
        assert result.formatted == f"sha256:{result.digest}"

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty"
        path.write_bytes(b"")
        assert hash_file(path).digest == hashlib.sha256(b"").hexdigest()

    def test_missing_file(self, tmp_path: Path) -> None:
        """Missing binaries raise BINARY_NOT_FOUND."""
        with pytest.raises(HashError) as exc_info:
            hash_file(tmp_path / "missing")
        assert exc_info.value.kind == "BINARY_NOT_FOUND"

    def test_directory(self, tmp_path: Path) -> None:
        """Directories cannot be hashed."""
        with pytest.raises(HashError) as exc_info:
            hash_file(tmp_path)
        assert exc_info.value.kind == "HASH_COMPUTATION_FAILED"

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can read any file")
    def test_permission_denied(self, tmp_path: Path) -> None:
        """Unreadable binaries raise PERMISSION_DENIED."""
        path = tmp_path / "secret"
        path.write_bytes(b"x")
        path.chmod(0)
        try:
            with pytest.raises(HashError) as exc_info:
                hash_file(path)
            assert exc_info.value.kind == "PERMISSION_DENIED"
        finally:
            path.chmod(0o600)


class TestDigestHelpers:
    """Tests for digest normalization and comparison."""

    def test_normalize(self) -> None:
        assert normalize_digest("SHA256:ABCDEF") == "abcdef"
        assert normalize_digest(" abc ") == "abc"

    def test_match_ignores_prefix_and_case(self) -> None:
        assert digests_match("sha256:ABC", "abc")
        assert not digests_match("sha256:abc", "abd")

