"""Blob storage for uploaded files.

Blobs are plain files under ``UPLOAD_DIR``, one per upload, named
``{time_ns}-{random}-{original name}`` so that two uploads never share a key.
"""
import logging
import os
import re
import secrets
import time
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator

from app.settings import Settings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_name(original: str) -> str:
    name = os.path.basename(original.replace("\\", "/")).strip()
    name = _UNSAFE_CHARS.sub("_", name).lstrip(".")
    return name[:200] or "upload"


class BlobWriter:
    def __init__(self, fh: BinaryIO, path: Path):
        self._fh = fh
        self.path = path
        self.bytes_written = 0

    def write(self, chunk: bytes) -> int:
        self._fh.write(chunk)
        self.bytes_written += len(chunk)
        return self.bytes_written


class LocalBlobStore:
    def __init__(self, settings: Settings):
        self.root = Path(settings.UPLOAD_DIR).resolve()

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    def generate_name(self, original: str) -> str:
        return f"{time.time_ns()}-{secrets.token_hex(4)}-{sanitize_name(original)}"

    def path_for(self, stored_name: str) -> Path:
        return self.root / stored_name

    def exists(self, storage_path: str) -> bool:
        try:
            return os.path.isfile(storage_path)
        except OSError:
            return False

    def delete(self, storage_path: str) -> bool:
        """Remove a blob. Returns False when it was already gone."""
        try:
            os.unlink(storage_path)
        except FileNotFoundError:
            return False
        logger.info("Removed blob %s", storage_path)
        return True

    @contextmanager
    def writer(self, stored_name: str) -> Iterator[BlobWriter]:
        """
        Open a new blob for writing. If the block raises, the partial blob is
        removed before the exception propagates.
        """
        self.ensure_root()
        path = self.path_for(stored_name)
        fh = path.open("xb")
        try:
            with fh:
                yield BlobWriter(fh, path)
        except BaseException:
            self.delete(str(path))
            raise
