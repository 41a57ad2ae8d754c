"""Object storage for recording audio, keyed ``{user_id}/{recording_id}/{filename}``."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

from callinsights.errors import BlobStoreError

logger = logging.getLogger("callinsights.blob_store")


class BlobStore(Protocol):
    async def put(self, path: str, data: bytes, content_type: str | None = None) -> None: ...

    async def get(self, path: str) -> bytes: ...

    async def delete(self, path: str) -> bool: ...


def _check_key(path: str) -> PurePosixPath:
    key = PurePosixPath(path)
    if not path or key.is_absolute() or any(part in ("", ".", "..") for part in key.parts):
        raise BlobStoreError(f"Invalid blob path: {path!r}")
    return key


class LocalBlobStore:
    """Filesystem-backed blob store rooted at ``Settings.blob_dir``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self.root.joinpath(*_check_key(path).parts)

    async def put(self, path: str, data: bytes, content_type: str | None = None) -> None:
        target = self._resolve(path)
        if target.exists():
            raise BlobStoreError(f"Blob already exists: {path}")
        try:
            await asyncio.to_thread(self._write, target, data)
        except OSError as exc:
            raise BlobStoreError(f"Failed to store blob {path}") from exc
        logger.info("Stored blob %s (%d bytes)", path, len(data))

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as exc:
            raise BlobStoreError(f"Failed to read blob {path}") from exc

    async def delete(self, path: str) -> bool:
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise BlobStoreError(f"Failed to delete blob {path}") from exc
        # Drop now-empty per-recording directory
        try:
            target.parent.rmdir()
        except OSError:
            pass
        return True

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)

