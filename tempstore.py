"""Shared temporary directory for produced media files.

Handlers allocate uniquely named files here, the response deletes them once
sent, and a periodic sweep removes anything that outlived the retention window.
"""
from __future__ import annotations

import asyncio
import logging
import os
import secrets
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

logger = logging.getLogger("clipcutter.storage")


class TempFiles:
    """A group of paths sharing one random token."""

    def __init__(self, token: str, paths: List[Path]) -> None:
        self.token = token
        self.paths = paths
        self.released = False

    def release(self) -> None:
        """Hand ownership of the files to someone else (usually the response)."""
        self.released = True


class TempStorage:
    def __init__(self, directory: Path, retention_seconds: float, sweep_interval_seconds: float) -> None:
        self._directory = Path(directory)
        self.retention_seconds = retention_seconds
        self.sweep_interval_seconds = sweep_interval_seconds

    @property
    def path(self) -> Path:
        return self._directory

    def ensure_directory(self) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def allocate(self, *suffixes: str) -> Iterator[TempFiles]:
        """Yield fresh paths for ``suffixes``; delete them on exit unless released."""
        token = secrets.token_hex(8)
        files = TempFiles(token, [self._directory / f"{token}{suffix}" for suffix in suffixes])
        try:
            yield files
        finally:
            if not files.released:
                self.discard(*files.paths)

    def discard(self, *paths: Path) -> None:
        for path in paths:
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError:
                logger.exception("Error deleting file %s", path)

    def sweep(self, now: Optional[float] = None) -> int:
        """Delete files older than the retention window. Returns how many were removed."""
        now = time.time() if now is None else now
        try:
            entries = list(os.scandir(self._directory))
        except FileNotFoundError:
            return 0
        except OSError:
            logger.exception("Error listing temp directory %s", self._directory)
            return 0

        removed = 0
        for entry in entries:
            try:
                if not entry.is_file():
                    continue
                if now - entry.stat().st_mtime <= self.retention_seconds:
                    continue
                os.remove(entry.path)
                removed += 1
            except FileNotFoundError:
                # already cleaned up by the request that produced it
                continue
            except OSError:
                logger.exception("Error cleaning up %s", entry.path)
        if removed:
            logger.info("Sweep removed %d stale file(s) from %s", removed, self._directory)
        return removed

    async def run_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await asyncio.to_thread(self.sweep)
            except Exception:
                logger.exception("Temp directory sweep failed")
