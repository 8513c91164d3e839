from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Protocol

from app.core.config import get_settings


class ObjectStorage(Protocol):
    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str: ...


class LocalObjectStorage:
    """Bucket/path object store on the local filesystem, served under a public base URL."""

    def __init__(self, root: Path | None = None, public_base_url: str | None = None) -> None:
        settings = get_settings()
        configured_root = Path(settings.storage_root) if settings.storage_root else None
        self.root = root or configured_root or Path(tempfile.gettempdir()) / "leadflow_storage"
        self.public_base_url = (public_base_url or settings.storage_public_base_url).rstrip("/")

    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        target = self._resolve(bucket, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
        return f"{self.public_base_url}/{bucket}/{path}"

    def read(self, bucket: str, path: str) -> bytes:
        target = self._resolve(bucket, path)
        if not target.exists():
            raise FileNotFoundError(f"object not found: {bucket}/{path}")
        return target.read_bytes()

    def _resolve(self, bucket: str, path: str) -> Path:
        base = (self.root / bucket).resolve()
        target = (base / path).resolve()
        if base not in target.parents:
            raise ValueError(f"invalid object path: {path}")
        return target


_storage: ObjectStorage | None = None


def get_object_storage() -> ObjectStorage:
    global _storage
    if _storage is None:
        _storage = LocalObjectStorage()
    return _storage


def set_object_storage(storage: ObjectStorage | None) -> None:
    global _storage
    _storage = storage
