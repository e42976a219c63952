"""One engine per project: an advisory lock keyed by the project path.

Lock files are kept under the state directory (``get_locks_dir()``), never
inside the project tree. Each lock has a sibling ``.info`` file naming the
holder, because filelock truncates the lock file itself on every attempt.
"""

from __future__ import annotations

import contextlib
import hashlib
import os
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING

import psutil
from filelock import FileLock, Timeout

from treadle.errors import SessionLockedError
from treadle.paths import get_locks_dir

if TYPE_CHECKING:
    from pathlib import Path

_LOCAL_HOSTNAMES = frozenset({"", "unknown"})


@dataclass(frozen=True, slots=True)
class LockInfo:
    pid: int
    hostname: str
    project_path: str | None = None

    @classmethod
    def current(cls, project_root: Path) -> LockInfo:
        return cls(pid=os.getpid(), hostname=socket.gethostname(), project_path=str(project_root))

    @classmethod
    def parse(cls, text: str) -> LockInfo | None:
        """Read ``pid``, ``hostname`` and ``project_path`` lines; later lines are optional."""
        lines = text.strip().splitlines()
        if not lines:
            return None
        try:
            pid = int(lines[0])
        except ValueError:
            return None
        hostname = lines[1] if len(lines) > 1 else "unknown"
        project_path = lines[2] if len(lines) > 2 else None
        return cls(pid=pid, hostname=hostname, project_path=project_path)

    def render(self) -> str:
        return f"{self.pid}\n{self.hostname}\n{self.project_path or ''}\n"

    def is_stale(self) -> bool:
        """True when the holder ran on this host and its process is gone."""
        if self.pid == os.getpid():
            return False
        if self.hostname not in _LOCAL_HOSTNAMES | {socket.gethostname()}:
            return False
        return self.pid <= 0 or not psutil.pid_exists(self.pid)


def lock_key(project_root: Path) -> str:
    return hashlib.sha256(str(project_root.resolve()).encode()).hexdigest()[:16]


class SessionLock:
    """Non-blocking per-project lock.

    The OS drops a filelock when its holder dies, so a crashed engine never
    leaves the project locked; a leftover ``.info`` for a dead local PID is
    treated as stale and cleared.

    ``with SessionLock(root):`` acquires or raises ``SessionLockedError``.
    """

    def __init__(self, project_root: Path, *, locks_dir: Path | None = None) -> None:
        self._project_root = project_root.resolve()
        locks_dir = locks_dir if locks_dir is not None else get_locks_dir()
        locks_dir.mkdir(parents=True, exist_ok=True)
        key = lock_key(self._project_root)
        self._lock_path = locks_dir / f"{key}.lock"
        self._info_path = locks_dir / f"{key}.info"
        self._lock = self._new_filelock()
        self._held = False

    @property
    def is_held(self) -> bool:
        return self._held

    def _new_filelock(self) -> FileLock:
        return FileLock(str(self._lock_path), blocking=False)

    def _try_lock(self) -> bool:
        try:
            self._lock.acquire(timeout=0)
        except Timeout:
            return False
        with contextlib.suppress(OSError):
            self._info_path.write_text(LockInfo.current(self._project_root).render())
        self._held = True
        return True

    def _discard_files(self) -> None:
        for path in (self._lock_path, self._info_path):
            with contextlib.suppress(OSError):
                path.unlink(missing_ok=True)
        self._lock = self._new_filelock()

    def get_holder_info(self) -> LockInfo | None:
        try:
            return LockInfo.parse(self._info_path.read_text())
        except OSError:
            return None

    def acquire(self) -> bool:
        """Take the lock if free or stale; False while another live engine holds it."""
        if self._held or self._try_lock():
            return True
        holder = self.get_holder_info()
        if holder is None or not holder.is_stale():
            return False
        self._discard_files()
        return self._try_lock()

    def acquire_or_raise(self, *, force: bool = False) -> None:
        """Acquire or raise ``SessionLockedError``.

        With ``force`` the other holder's files are discarded first; that
        process keeps running but no longer owns the session.
        """
        if self.acquire():
            return
        holder = self.get_holder_info()
        if force:
            self._discard_files()
            if self._try_lock():
                return
        raise SessionLockedError(
            holder.pid if holder else None, holder.hostname if holder else None
        )

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        with contextlib.suppress(OSError):
            self._lock.release()
            self._lock_path.unlink(missing_ok=True)
            self._info_path.unlink(missing_ok=True)

    def __enter__(self) -> SessionLock:
        self.acquire_or_raise()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()


__all__ = ["LockInfo", "SessionLock", "lock_key"]
