"""
Content-keyed cache store for dependency and tooling directories.

Entries are gzip tarballs of a step's declared paths. Writes are append-only:
storing under a key that already exists is a no-op. A lookup that misses the
exact key falls back to the restore-key prefixes, in the order given.
"""

import io
import logging
import os
import shutil
import tarfile
import tempfile
import time
from abc import ABC, abstractmethod
from bisect import bisect_left
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence
from urllib.parse import quote, unquote

import redis

from controller.src.errors import CacheError

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class CacheLookup:
    key: str
    blob: bytes
    exact: bool

def prefix_matches(sorted_keys: Sequence[str], prefix: str) -> List[str]:
    """All keys starting with `prefix`, found by bisecting a sorted key list."""
    matches = []
    i = bisect_left(sorted_keys, prefix)
    while i < len(sorted_keys) and sorted_keys[i].startswith(prefix):
        matches.append(sorted_keys[i])
        i += 1
    return matches

class CacheStore(ABC):

    @abstractmethod
    def lookup(self, key: str) -> Optional[bytes]:
        """Blob stored under exactly `key`, or None."""

    @abstractmethod
    def store(self, key: str, blob: bytes) -> bool:
        """Store `blob` under `key`. Returns False if the key already existed."""

    @abstractmethod
    def entries(self) -> Dict[str, float]:
        """Every stored key with its creation time."""

    def restore(self, key: str, restore_keys: Sequence[str] = ()) -> Optional[CacheLookup]:
        """
        Exact lookup, then prefix fallback.
        For each restore key in order, the most recently stored matching entry wins.
        """
        blob = self.lookup(key)
        if blob is not None:
            return CacheLookup(key=key, blob=blob, exact=True)

        if not restore_keys:
            return None

        entries = self.entries()
        keys = sorted(entries)
        for prefix in restore_keys:
            matches = prefix_matches(keys, prefix)
            if not matches:
                continue
            best = max(matches, key=lambda k: (entries[k], k))
            blob = self.lookup(best)
            if blob is not None:
                return CacheLookup(key=best, blob=blob, exact=False)
        return None

class FileCacheStore(CacheStore):
    """Cache entries as files in a shared directory."""

    SUFFIX = ".tar.gz"

    def __init__(self, root):
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        return self.root / (quote(key, safe="") + self.SUFFIX)

    def lookup(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"Failed to read cache entry '{key}': {e}") from e

    def store(self, key: str, blob: bytes) -> bool:
        path = self._path(key)
        if path.exists():
            return False
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + f".tmp-{os.getpid()}-{time.time_ns()}")
            with open(tmp, "wb") as f:
                f.write(blob)
                f.flush()
                os.fsync(f.fileno())
            # Concurrent writers of the same key: last rename wins
            os.replace(tmp, path)
        except OSError as e:
            raise CacheError(f"Failed to write cache entry '{key}': {e}") from e
        return True

    def entries(self) -> Dict[str, float]:
        if not self.root.exists():
            return {}
        try:
            return {
                unquote(p.name[: -len(self.SUFFIX)]): p.stat().st_mtime
                for p in self.root.iterdir()
                if p.name.endswith(self.SUFFIX)
            }
        except OSError as e:
            raise CacheError(f"Failed to list cache entries: {e}") from e

class RedisCacheStore(CacheStore):
    """Cache entries in Redis, shared between controller workers."""

    def __init__(self, client: redis.Redis, namespace: str = "relayci:cache"):
        self.client = client
        self.blobs_key = f"{namespace}:blobs"
        self.index_key = f"{namespace}:index"

    @classmethod
    def from_url(cls, url: str, namespace: str = "relayci:cache") -> "RedisCacheStore":
        return cls(redis.from_url(url), namespace=namespace)

    def lookup(self, key: str) -> Optional[bytes]:
        try:
            return self.client.hget(self.blobs_key, key)
        except redis.RedisError as e:
            raise CacheError(f"Failed to read cache entry '{key}': {e}") from e

    def store(self, key: str, blob: bytes) -> bool:
        try:
            if not self.client.hsetnx(self.blobs_key, key, blob):
                return False
            self.client.zadd(self.index_key, {key: time.time()})
        except redis.RedisError as e:
            raise CacheError(f"Failed to write cache entry '{key}': {e}") from e
        return True

    def entries(self) -> Dict[str, float]:
        try:
            members = self.client.zrange(self.index_key, 0, -1, withscores=True)
        except redis.RedisError as e:
            raise CacheError(f"Failed to list cache entries: {e}") from e
        return {
            (m.decode() if isinstance(m, bytes) else m): float(score)
            for m, score in members
        }

def resolve_path(path: str, workspace: Path) -> Path:
    resolved = Path(os.path.expanduser(path))
    if not resolved.is_absolute():
        resolved = Path(workspace) / resolved
    return resolved

def pack_paths(paths: Sequence[str], workspace: Path) -> bytes:
    """Archive the declared cache paths; member names are the path's index."""
    buffer = io.BytesIO()
    try:
        with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
            for i, path in enumerate(paths):
                resolved = resolve_path(path, workspace)
                if not resolved.exists():
                    logger.warning(f"Cache path {path} does not exist, skipping")
                    continue
                tar.add(str(resolved), arcname=str(i))
    except (tarfile.TarError, OSError) as e:
        raise CacheError(f"Failed to archive cache paths: {e}") from e
    return buffer.getvalue()

def unpack_paths(blob: bytes, paths: Sequence[str], workspace: Path):
    """Extract an archive made by pack_paths back onto the declared paths."""
    try:
        with tempfile.TemporaryDirectory(prefix="relayci_cache_") as tmp:
            with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
                for member in tar.getmembers():
                    if member.name.startswith("/") or ".." in Path(member.name).parts:
                        raise CacheError(f"Refusing unsafe cache member {member.name}")
                tar.extractall(tmp)

            for i, path in enumerate(paths):
                source = Path(tmp) / str(i)
                if not source.exists():
                    continue
                target = resolve_path(path, workspace)
                if source.is_dir():
                    shutil.copytree(source, target, symlinks=True, dirs_exist_ok=True)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(source, target)
    except (tarfile.TarError, OSError) as e:
        raise CacheError(f"Failed to extract cache entry: {e}") from e
