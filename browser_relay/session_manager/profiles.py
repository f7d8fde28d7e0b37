"""Disposable browser profile directories under a single base directory."""

from __future__ import annotations

import asyncio
import logging
import shutil
import sys
import uuid
from pathlib import Path

from ..errors import StorageError

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


class ProfileStore:
    """Allocates and deletes per-owner profile directories.

    Each directory belongs to exactly one streaming session or scrape job.
    Deletion is idempotent and never touches anything outside ``base``.
    """

    def __init__(self, base: Path | str):
        self.base = Path(base).resolve()

    def owns(self, path: Path | str) -> bool:
        """True when ``path`` resolves strictly inside the base directory."""
        try:
            resolved = Path(path).resolve()
        except OSError:
            return False
        return resolved != self.base and self.base in resolved.parents

    def list_profiles(self) -> list[Path]:
        if not self.base.is_dir():
            return []
        return sorted(p for p in self.base.iterdir())

    async def allocate(self) -> Path:
        """Create a fresh, empty profile directory and return its path."""
        return await asyncio.to_thread(self._allocate_sync)

    def _allocate_sync(self) -> Path:
        path = self.base / uuid.uuid4().hex
        try:
            self.base.mkdir(parents=True, exist_ok=True)
            path.mkdir()
        except OSError as e:
            raise StorageError(
                "Failed to allocate profile directory", details=f"{self.base}: {e}"
            ) from e
        logger.info(f"Allocated profile {path.name}")
        return path

    async def release(self, path: Path | str | None) -> None:
        """Delete a profile directory. Never raises."""
        if path is None:
            return
        await asyncio.to_thread(self._release_sync, Path(path))

    def _release_sync(self, path: Path) -> None:
        if not self.owns(path):
            logger.warning(f"Refusing to delete {path}: outside profile base {self.base}")
            return
        if not path.exists():
            return
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
            logger.info(f"Released profile {path.name}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to delete profile {path}: {e}")

    async def release_all(self) -> int:
        return await asyncio.to_thread(self.release_all_sync)

    def release_all_sync(self) -> int:
        """Delete every profile under the base and recreate it empty.

        Safe to call from signal and atexit handlers.
        """
        try:
            entries = self.list_profiles()
        except OSError as e:
            logger.warning(f"Failed to list profiles under {self.base}: {e}")
            entries = []
        for entry in entries:
            self._release_sync(entry)
        try:
            self.base.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Failed to recreate profile base {self.base}: {e}")
        if entries:
            logger.info(f"Cleaned up {len(entries)} profile director{'y' if len(entries) == 1 else 'ies'}")
        return len(entries)
