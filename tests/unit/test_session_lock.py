"""Unit tests for the per-project session lock."""

from __future__ import annotations

import os
import socket
from typing import TYPE_CHECKING

import pytest

from treadle.errors import SessionLockedError
from treadle.session_lock import LockInfo, SessionLock

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.unit

_DEAD_PID = 2**22 + 12345


class TestSessionLock:
    @staticmethod
    def _make_lock(tmp_path: Path, project: str = "project") -> SessionLock:
        root = tmp_path / project
        root.mkdir(exist_ok=True)
        return SessionLock(root, locks_dir=tmp_path / "locks")

    def test_acquire_is_idempotent(self, tmp_path: Path) -> None:
        lock = self._make_lock(tmp_path)

        assert lock.acquire() is True
        assert lock.acquire() is True
        assert lock.is_held is True

        lock.release()
        assert lock.is_held is False

    def test_holder_info_names_this_process(self, tmp_path: Path) -> None:
        lock = self._make_lock(tmp_path)
        with lock:
            info = lock.get_holder_info()

        assert info is not None
        assert info.pid == os.getpid()
        assert info.hostname == socket.gethostname()
        assert info.project_path == str((tmp_path / "project").resolve())

    def test_second_instance_is_refused(self, tmp_path: Path) -> None:
        first = self._make_lock(tmp_path)
        second = self._make_lock(tmp_path)
        first.acquire()

        with pytest.raises(SessionLockedError) as exc_info:
            second.acquire_or_raise()

        assert exc_info.value.pid == os.getpid()
        assert "--force" in str(exc_info.value)
        first.release()
        assert second.acquire() is True
        second.release()

    def test_different_projects_do_not_conflict(self, tmp_path: Path) -> None:
        one = self._make_lock(tmp_path, "one")
        two = self._make_lock(tmp_path, "two")

        assert one.acquire() is True
        assert two.acquire() is True
        one.release()
        two.release()

    def test_force_takes_over(self, tmp_path: Path) -> None:
        first = self._make_lock(tmp_path)
        second = self._make_lock(tmp_path)
        first.acquire()

        second.acquire_or_raise(force=True)

        assert second.is_held is True
        second.release()
        first.release()

    def test_stale_holder_is_replaced(self, tmp_path: Path) -> None:
        first = self._make_lock(tmp_path)
        second = self._make_lock(tmp_path)
        first.acquire()
        info_path = next((tmp_path / "locks").glob("*.info"))
        info_path.write_text(f"{_DEAD_PID}\n{socket.gethostname()}\n/elsewhere\n")

        assert second.acquire() is True
        second.release()
        first.release()

    def test_remote_holder_is_never_stale(self, tmp_path: Path) -> None:
        first = self._make_lock(tmp_path)
        second = self._make_lock(tmp_path)
        first.acquire()
        info_path = next((tmp_path / "locks").glob("*.info"))
        info_path.write_text(f"{_DEAD_PID}\nother-host.example\n")

        assert second.acquire() is False
        first.release()

    def test_context_manager_releases_on_exception(self, tmp_path: Path) -> None:
        lock = self._make_lock(tmp_path)

        with pytest.raises(ValueError), lock:
            raise ValueError("boom")

        assert lock.is_held is False

    @pytest.mark.parametrize(
        ("content", "expected"),
        [
            ("42\nhost\n/p\n", LockInfo(pid=42, hostname="host", project_path="/p")),
            ("42\nhost\n", LockInfo(pid=42, hostname="host")),
            ("42\n", LockInfo(pid=42, hostname="unknown")),
            ("not-a-pid\n", None),
        ],
    )
    def test_holder_info_parsing(
        self, tmp_path: Path, content: str, expected: LockInfo | None
    ) -> None:
        lock = self._make_lock(tmp_path)
        lock.acquire()
        next((tmp_path / "locks").glob("*.info")).write_text(content)

        assert lock.get_holder_info() == expected
        lock.release()
