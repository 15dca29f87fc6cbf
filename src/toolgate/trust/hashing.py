"""
Content hashing for binaries.

Hashes identify bytes, not names: the cache is keyed by them and the
trust evaluator compares them against declared checksums before any other
check runs.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path

from toolgate.errors import HashError

ALGORITHM = "sha256"
PREFIX = f"{ALGORITHM}:"
CHUNK_SIZE = 8192


@dataclass(frozen=True)
class HashResult:
    """A computed digest in both bare and prefixed forms."""

    algorithm: str
    digest: str

    @property
    def formatted(self) -> str:
        return f"{self.algorithm}:{self.digest}"


def hash_file(path: Path | str) -> HashResult:
    """
    Compute the SHA256 digest of a file, streaming in 8 KiB chunks.

    Raises:
        HashError: BINARY_NOT_FOUND, PERMISSION_DENIED, or
            HASH_COMPUTATION_FAILED (directories, I/O errors)
    """
    path = Path(path)
    digest = hashlib.sha256()
    try:
        with path.open("rb") as f:
            while chunk := f.read(CHUNK_SIZE):
                digest.update(chunk)
    except FileNotFoundError as e:
        raise HashError(path=str(path), kind="BINARY_NOT_FOUND") from e
    except PermissionError as e:
        raise HashError(path=str(path), kind="PERMISSION_DENIED") from e
    except IsADirectoryError as e:
        raise HashError(
            path=str(path),
            kind="HASH_COMPUTATION_FAILED",
            message=f"Cannot hash {path}: is a directory",
        ) from e
    except OSError as e:
        raise HashError(
            path=str(path),
            kind="HASH_COMPUTATION_FAILED",
            message=f"Cannot hash {path}: {e}",
        ) from e
    return HashResult(algorithm=ALGORITHM, digest=digest.hexdigest())



def normalize_digest(value: str) -> str:
    """Strip an optional sha256: prefix and lowercase."""
    value = value.strip()
    if value.lower().startswith(PREFIX):
        value = value[len(PREFIX):]
    return value.lower()


def digests_match(expected: str, actual: str) -> bool:
    """Compare two digests, ignoring prefix and case."""
    return normalize_digest(expected) == normalize_digest(actual)
