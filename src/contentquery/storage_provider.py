"""
Staging area for uploaded files.
Default implementation uses the local filesystem; the interface allows other backends later.
"""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Protocol

from .config import UPLOAD_DIR
from .observability import get_logger

logger = get_logger(__name__)


class UploadStorageProvider(Protocol):
    @property
    def root(self) -> Path:
        ...

    def ensure_ready(self):
        ...

    def save_bytes(self, data: bytes, original_name: str) -> Path:
        ...

    def discard(self, path: Path):
        ...


class LocalUploadStorage:
    def __init__(self, root: Path = UPLOAD_DIR):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def ensure_ready(self):
        self._root.mkdir(parents=True, exist_ok=True)

    def save_bytes(self, data: bytes, original_name: str) -> Path:
        self.ensure_ready()
        suffix = Path(str(original_name or "")).suffix.lower() or ".bin"
        destination = self._root / f"upload_{uuid.uuid4().hex}{suffix}"
        destination.write_bytes(data)
        return destination

    def discard(self, path: Path):
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("upload_cleanup_failed", path=str(path), error=str(exc))


@contextmanager
def staged_upload(storage: UploadStorageProvider, data: bytes, original_name: str) -> Iterator[Path]:
    """Writes the upload to storage and removes it on exit, success or failure."""
    path = storage.save_bytes(data, original_name)
    try:
        yield path
    finally:
        storage.discard(path)
