"""Atomic file replacement for session snapshots, task files and config."""

from __future__ import annotations

import asyncio
import os
import sys
import tempfile
from pathlib import Path


def atomic_write(path: Path, content: str, *, mode: int | None = None) -> None:
    """Replace ``path`` with ``content`` so readers see the old or new file, never a mix.

    ``mode`` is applied to the temporary file before the rename, so a private
    file is never visible with wider permissions.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        if mode is not None and sys.platform != "win32":
            os.fchmod(fd, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        tmp_path.replace(path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


async def atomic_write_async(path: Path, content: str, *, mode: int | None = None) -> None:
    """``atomic_write`` on a worker thread; fsync must not block the event loop."""
    await asyncio.to_thread(atomic_write, path, content, mode=mode)


__all__ = ["atomic_write", "atomic_write_async"]
