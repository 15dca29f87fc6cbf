"""
On-disk discovery cache.

Layout under the data directory:

    objects/<sha256-hex>.json   descriptor, content-addressed by binary hash
    registry.json               path index (RegistryEntry records)

Design Principles:
    - Content-addressed: an object file is valid forever for its hash
    - Path entries are dropped as soon as the file's mtime or hash changes
    - Atomic: every write goes to a temp file in the same directory and is
      renamed into place, so readers never see a partial file
    - Single writer: a thread lock plus an advisory flock serialize
      writers across threads and processes; readers take no lock
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from toolgate.errors import CacheReadError, CacheWriteError, HashError
from toolgate.schema import RegistryEntry, RegistrySource, ToolDescriptor
from toolgate.trust.hashing import hash_file, normalize_digest

logger = logging.getLogger(__name__)

REGISTRY_FILE = "registry.json"
LOCK_FILE = ".registry.lock"
OBJECTS_DIR = "objects"
REGISTRY_VERSION = 1


def _key(path: Path | str) -> str:
    return os.path.abspath(str(path))


class DiscoveryCache:
    """
    Content-addressed descriptor store plus a path registry.

    Usage:
        cache = DiscoveryCache(settings.data_dir)
        descriptor = cache.lookup("/usr/local/bin/gh")
        if descriptor is None:
            descriptor = await probe(path)
            cache.store(path, descriptor, checksum, mod_time)

    Pass one instance by reference to everything that needs it; there is
    no process-wide cache.
    """

    def __init__(self, root: Path | str) -> None:
        """
        Initialize the cache.

        Args:
            root: Data directory. Created lazily on first write.
        """
        self.root = Path(root)
        self.objects_dir = self.root / OBJECTS_DIR
        self.registry_path = self.root / REGISTRY_FILE
        self._write_lock = threading.Lock()

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """
        Hold the writer lock for a read-modify-write of the registry.

        The thread lock covers this instance; an advisory flock on
        .registry.lock covers other processes sharing the data directory.
        """
        with self._write_lock:
            try:
                self.root.mkdir(parents=True, exist_ok=True)
                lock_file = (self.root / LOCK_FILE).open("a")
            except OSError as e:
                raise CacheWriteError(cache_path=str(self.root / LOCK_FILE), underlying_error=str(e)) from e
            with lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    # -------------------------------------------------------------------------
    # Low-level file access
    # -------------------------------------------------------------------------

    def _atomic_write(self, target: Path, data: Any) -> None:
        """Write JSON to target via temp file + fsync + rename."""
        payload = json.dumps(data, indent=2, sort_keys=True)
        tmp_path: Path | None = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=target.parent,
                prefix=f".{target.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp_file:
                tmp_path = Path(tmp_file.name)
                tmp_file.write(payload)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            tmp_path.replace(target)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise CacheWriteError(cache_path=str(target), underlying_error=str(e)) from e

    @staticmethod
    def _read_json(path: Path) -> Any | None:
        """Read a JSON file; None if it does not exist."""
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheReadError(cache_path=str(path), underlying_error=str(e)) from e
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise CacheReadError(cache_path=str(path), underlying_error=f"invalid JSON: {e}") from e

    def _load_registry(self) -> dict[str, RegistryEntry]:
        data = self._read_json(self.registry_path)
        if data is None:
            return {}
        if not isinstance(data, dict) or not isinstance(data.get("tools"), list):
            raise CacheReadError(
                cache_path=str(self.registry_path),
                underlying_error="registry must be an object with a 'tools' list",
            )
        try:
            entries = [RegistryEntry.model_validate(item) for item in data["tools"]]
        except ValidationError as e:
            raise CacheReadError(cache_path=str(self.registry_path), underlying_error=str(e)) from e
        return {entry.path: entry for entry in entries}

    def _save_registry(self, entries: dict[str, RegistryEntry]) -> None:
        ordered = sorted(entries.values(), key=lambda e: (e.name, e.path))
        self._atomic_write(
            self.registry_path,
            {
                "version": REGISTRY_VERSION,
                "updated_at": datetime.now(UTC).isoformat(),
                "tools": [entry.model_dump(mode="json") for entry in ordered],
            },
        )

    def _object_path(self, checksum: str) -> Path:
        return self.objects_dir / f"{normalize_digest(checksum)}.json"

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_by_hash(self, checksum: str) -> ToolDescriptor | None:
        """Content-addressed lookup of a descriptor by binary hash."""
        path = self._object_path(checksum)
        data = self._read_json(path)
        if data is None:
            return None
        try:
            return ToolDescriptor.model_validate(data)
        except ValidationError as e:
            raise CacheReadError(cache_path=str(path), underlying_error=str(e)) from e

    def entry_for_path(self, path: Path | str) -> RegistryEntry | None:
        """Registry entry for an executable path, without freshness checks."""
        return self._load_registry().get(_key(path))

    def lookup(self, path: Path | str) -> ToolDescriptor | None:
        """
        Cached descriptor for an executable, if still fresh.

        The entry is used only when the file's mtime and sha256 both match
        what was recorded. Otherwise the path entry is dropped and None is
        returned, so the caller re-probes.
        """
        entry = self.entry_for_path(path)
        if entry is None:
            return None

        try:
            mod_time = Path(path).stat().st_mtime_ns
        except OSError:
            self.invalidate(path)
            return None
        if mod_time != entry.mod_time:
            logger.debug("%s: mtime changed, invalidating cache entry", path)
            self.invalidate(path)
            return None

        try:
            checksum = hash_file(path).formatted
        except HashError:
            self.invalidate(path)
            return None
        if checksum != entry.checksum:
            logger.info("%s: content changed, invalidating cache entry", path)
            self.invalidate(path)
            return None

        descriptor = self.get_by_hash(checksum)
        if descriptor is None:
            self.invalidate(path)
        return descriptor

    def list_entries(self) -> list[RegistryEntry]:
        """All registry entries, sorted by tool name."""
        return sorted(self._load_registry().values(), key=lambda e: (e.name, e.path))

    def get_entry(self, name: str) -> RegistryEntry | None:
        """First registry entry for a tool name."""
        for entry in self.list_entries():
            if entry.name == name:
                return entry
        return None

    def get_descriptor(self, name: str) -> ToolDescriptor | None:
        entry = self.get_entry(name)
        if entry is None:
            return None
        return self.get_by_hash(entry.checksum)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def store(
        self,
        path: Path | str,
        descriptor: ToolDescriptor,
        checksum: str,
        mod_time: int,
        source: RegistrySource = RegistrySource.NATIVE,
    ) -> RegistryEntry:
        """
        Record a descriptor for an executable.

        Writes the content-addressed object first, then the path entry, so
        a registry entry never points at a missing object.

        Returns:
            The stored RegistryEntry
        """
        key = _key(path)
        now = datetime.now(UTC)
        with self._locked():
            self._atomic_write(
                self._object_path(checksum),
                descriptor.model_dump(mode="json", by_alias=True, exclude_none=True),
            )
            entries = self._load_registry()
            previous = entries.get(key)
            entry = RegistryEntry(
                name=descriptor.name,
                version=descriptor.version,
                path=key,
                source=source,
                discovered_at=previous.discovered_at if previous else now,
                last_verified=now,
                mod_time=mod_time,
                checksum=checksum,
            )
            entries[key] = entry
            self._save_registry(entries)
        logger.debug("Cached %s %s for %s", entry.name, entry.version, key)
        return entry

    def invalidate(self, path: Path | str) -> bool:
        """
        Drop the path entry for an executable.

        Object files are left alone; they stay valid for their hash.

        Returns:
            True if an entry was removed
        """
        key = _key(path)
        with self._locked():
            entries = self._load_registry()
            if entries.pop(key, None) is None:
                return False
            self._save_registry(entries)
        return True

    def clear(self) -> None:
        """Remove every registry entry and cached object."""
        with self._locked():
            if self.objects_dir.is_dir():
                for item in self.objects_dir.glob("*.json"):
                    item.unlink(missing_ok=True)
            self.registry_path.unlink(missing_ok=True)
