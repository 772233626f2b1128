"""
Remote sinks that published artifacts are mirrored into.

A sink only needs two operations: list the sha256 digest of every object
under a prefix, and put one object.
"""

import hashlib
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote

import httpx

from controller.src.errors import SinkError

logger = logging.getLogger(__name__)

CHUNK = 1024 * 1024 * 8

def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            b = f.read(CHUNK)
            if not b:
                break
            h.update(b)
    return h.hexdigest()

class Sink(ABC):

    @abstractmethod
    def list_digests(self, prefix: str = "") -> Dict[str, str]:
        """Map of object key to sha256 hex digest for keys under the `prefix` directory."""

    @abstractmethod
    def put(self, key: str, path: Path, digest: str):
        """Upload the file at `path` as object `key`."""

    def close(self):
        pass

class HttpObjectSink(Sink):
    """
    Object store reached over HTTP.

    GET  {endpoint}/{bucket}?prefix=...  -> {"objects": [{"key": ..., "sha256": ...}]}
    PUT  {endpoint}/{bucket}/{key}       body is the object, x-content-sha256 header
    """

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        access_key: str = "",
        secret_key: str = "",
        region: str = "auto",
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not endpoint or not bucket:
            raise SinkError("HTTP sink requires an endpoint and a bucket")
        self.bucket = bucket
        self.region = region
        auth = httpx.BasicAuth(access_key, secret_key) if access_key else None
        self.client = httpx.Client(
            base_url=endpoint.rstrip("/"),
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    def list_digests(self, prefix: str = "") -> Dict[str, str]:
        try:
            response = self.client.get(f"/{self.bucket}", params={"prefix": prefix})
            response.raise_for_status()
            objects = response.json().get("objects", [])
            return {obj["key"]: obj.get("sha256", "") for obj in objects}
        except (httpx.HTTPError, ValueError) as e:
            raise SinkError(f"Failed to list {self.bucket}/{prefix}: {e}") from e
        except (KeyError, TypeError, AttributeError) as e:
            raise SinkError(f"Malformed listing for {self.bucket}/{prefix}: {e!r}") from e

    def put(self, key: str, path: Path, digest: str):
        try:
            with open(path, "rb") as f:
                response = self.client.put(
                    f"/{self.bucket}/{quote(key)}",
                    content=f.read(),
                    headers={"x-content-sha256": digest, "x-region": self.region},
                )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SinkError(f"Failed to upload {key}: {e}") from e

    def close(self):
        self.client.close()

class DirectorySink(Sink):
    """Mirror objects into a local (or mounted) directory."""

    def __init__(self, root):
        self.root = Path(root)

    def list_digests(self, prefix: str = "") -> Dict[str, str]:
        digests = {}
        base = self.root / prefix.strip("/") if prefix.strip("/") else self.root
        if not base.is_dir():
            return digests
        try:
            for path in base.rglob("*"):
                if not path.is_file() or ".tmp-" in path.name:
                    continue
                digests[path.relative_to(self.root).as_posix()] = sha256_file(path)
        except OSError as e:
            raise SinkError(f"Failed to list {base}: {e}") from e
        return digests

    def put(self, key: str, path: Path, digest: str):
        target = self.root / key
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f"{target.name}.tmp-{time.time_ns()}")
            shutil.copyfile(path, tmp)
            os.replace(tmp, target)
        except OSError as e:
            raise SinkError(f"Failed to write {key}: {e}") from e

def create_sink(config: Dict[str, str]) -> Sink:
    """Build a sink from a rendered `sink` configuration block."""
    sink_type = config.get("type", "http")
    if sink_type == "http":
        return HttpObjectSink(
            endpoint=config.get("endpoint", ""),
            bucket=config.get("bucket", ""),
            access_key=config.get("access_key", ""),
            secret_key=config.get("secret_key", ""),
            region=config.get("region", "auto"),
        )
    if sink_type == "directory":
        if not config.get("path"):
            raise SinkError("Directory sink requires a path")
        return DirectorySink(config["path"])
    raise SinkError(f"Unknown sink type '{sink_type}'")
