"""
Blob storage for raw HTML staged between fetch and parse.
"""

import hashlib
import time
from abc import ABC, abstractmethod
from pathlib import Path


class BlobStore(ABC):

    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        """Raises KeyError when the key does not exist."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


def crawl_key(url: str, category: str, clock=time.time) -> str:
    """Timestamp-salted key so refetches of the same URL never collide."""
    digest = hashlib.sha256(f"{url}{clock()}".encode("utf-8")).hexdigest()
    return f"crawl/{category}/{digest}.html"


class FileBlobStore(BlobStore):
    """Keys are relative paths under a root directory."""

    def __init__(self, root):
        self._root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise ValueError(f"Blob key escapes storage root: {key}")
        return path

    def put(self, key, data):
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    def get(self, key):
        path = self._path(key)
        if not path.exists():
            raise KeyError(key)
        return path.read_bytes()

    def exists(self, key):
        return self._path(key).exists()

    def delete(self, key):
        self._path(key).unlink(missing_ok=True)
