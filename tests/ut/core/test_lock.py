"""全局锁测试"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from upstream.core import lock as lock_mod
from upstream.core.exceptions import AlreadyLockedError, LockNotHeldError
from upstream.core.lock import LockManager, require_lock


@pytest.fixture()
def manager(tmp_path: Path) -> LockManager:
    return LockManager(tmp_path / "metadata" / "upstream.lock")


class TestAcquire:
    def test_acquire_writes_holder(self, manager: LockManager) -> None:
        with manager.acquire("install") as handle:
            holder = manager.inspect()
            assert holder is not None
            assert holder.pid == os.getpid()
            assert holder.operation == "install"
            assert handle.active
        assert not manager.is_locked()

    def test_second_acquire_fails_immediately(self, manager: LockManager) -> None:
        with manager.acquire("install"):
            with pytest.raises(AlreadyLockedError) as exc_info:
                manager.acquire("upgrade")
        assert "install" in str(exc_info.value)

    def test_release_is_idempotent(self, manager: LockManager) -> None:
        handle = manager.acquire("install")
        handle.release()
        handle.release()
        assert not handle.active
        assert not manager.is_locked()

    def test_release_on_exception(self, manager: LockManager) -> None:
        with pytest.raises(RuntimeError):
            with manager.acquire("install"):
                raise RuntimeError("boom")
        assert not manager.is_locked()

    def test_release_keeps_foreign_lock(self, manager: LockManager) -> None:
        handle = manager.acquire("install")
        manager.lock_file.write_text("pid: 999999\noperation: other\nacquired_at: x\n")
        handle.release()
        assert manager.is_locked()


class TestStale:
    def test_dead_holder_is_reclaimed(self, manager: LockManager, monkeypatch: pytest.MonkeyPatch) -> None:
        manager.lock_file.parent.mkdir(parents=True)
        manager.lock_file.write_text("pid: 424242\noperation: install\nacquired_at: x\n")
        monkeypatch.setattr(lock_mod, "pid_alive", lambda pid: False)

        assert manager.is_stale()
        with manager.acquire("upgrade") as handle:
            assert handle.operation == "upgrade"
            assert manager.inspect().pid == os.getpid()

    def test_live_holder_blocks(self, manager: LockManager, monkeypatch: pytest.MonkeyPatch) -> None:
        manager.lock_file.parent.mkdir(parents=True)
        manager.lock_file.write_text("pid: 424242\noperation: install\nacquired_at: x\n")
        monkeypatch.setattr(lock_mod, "pid_alive", lambda pid: True)

        assert not manager.is_stale()
        with pytest.raises(AlreadyLockedError):
            manager.acquire("upgrade")

    def test_unreadable_record_within_grace(self, manager: LockManager) -> None:
        manager.lock_file.parent.mkdir(parents=True)
        manager.lock_file.write_text("")
        with pytest.raises(AlreadyLockedError):
            manager.acquire("install")

    def test_unreadable_record_after_grace(self, tmp_path: Path) -> None:
        manager = LockManager(tmp_path / "upstream.lock", grace_seconds=0)
        manager.lock_file.write_text("not: [valid")
        old = manager.lock_file.stat().st_mtime - 10
        os.utime(manager.lock_file, (old, old))
        with manager.acquire("install"):
            assert manager.inspect() is not None

    def test_clear_stale(self, manager: LockManager, monkeypatch: pytest.MonkeyPatch) -> None:
        manager.lock_file.parent.mkdir(parents=True)
        manager.lock_file.write_text("pid: 424242\noperation: install\nacquired_at: x\n")
        monkeypatch.setattr(lock_mod, "pid_alive", lambda pid: False)
        assert manager.clear_stale() is True
        assert manager.clear_stale() is False


    def test_concurrent_reclaim_keeps_single_holder(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        lock_file = tmp_path / "upstream.lock"
        lock_file.write_text("pid: 999999\noperation: install\nacquired_at: x\n")
        monkeypatch.setattr(lock_mod, "pid_alive", lambda pid: pid != 999999)
        first = LockManager(lock_file)
        second = LockManager(lock_file)
        held: dict[str, lock_mod.LockHandle] = {}
        real_is_stale = LockManager._is_stale

        def interleaved(self: LockManager, *args: object) -> bool:
            stale = real_is_stale(self, *args)
            # first 在 second 判定陈旧之后、移走锁文件之前抢先回收并取得锁
            if self is second and stale and "first" not in held:
                held["first"] = first.acquire("install")
            return stale

        monkeypatch.setattr(LockManager, "_is_stale", interleaved)
        with pytest.raises(AlreadyLockedError):
            second.acquire("upgrade")

        assert held["first"].active
        assert first.inspect().operation == "install"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["upstream.lock"]
        held["first"].release()
        assert not lock_file.exists()

    def test_clear_stale_spares_fresh_lock(
        self, manager: LockManager, monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        manager.lock_file.parent.mkdir(parents=True)
        manager.lock_file.write_text("pid: 999999\noperation: install\nacquired_at: x\n")
        monkeypatch.setattr(lock_mod, "pid_alive", lambda pid: pid != 999999)
        real_reclaim = LockManager._reclaim

        def replaced_meanwhile(self: LockManager, holder: object) -> bool:
            self.lock_file.unlink()
            self.lock_file.write_text(f"pid: {os.getpid()}\noperation: remove\nacquired_at: y\n")
            return real_reclaim(self, holder)

        monkeypatch.setattr(LockManager, "_reclaim", replaced_meanwhile)
        assert manager.clear_stale() is False
        assert manager.inspect().operation == "remove"



class TestGuard:
    def test_require_lock_rejects_none(self) -> None:
        with pytest.raises(LockNotHeldError):
            require_lock(None, "install")

    def test_require_lock_rejects_released(self, manager: LockManager) -> None:
        handle = manager.acquire("install")
        handle.release()
        with pytest.raises(LockNotHeldError):
            require_lock(handle, "install")
        with pytest.raises(LockNotHeldError):
            handle.ensure_active()
