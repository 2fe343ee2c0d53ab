"""PackageService 测试：加锁调度与受管环境初始化"""

from __future__ import annotations

from pathlib import Path

import pytest

from upstream.core.exceptions import AlreadyLockedError, PackageExistsError
from upstream.core.models import InstallOptions

BIN = "tool-linux-x86_64"


@pytest.fixture
def svc(env):
    env.provider.publish("v1.0.0", {BIN: b"#!/bin/sh\n"})
    return env.container.packages


class TestLocking:
    def test_mutations_release_lock(self, env, svc) -> None:
        svc.install("tool", "acme/tool")
        svc.pin("tool")
        svc.unpin("tool")
        svc.remove(["tool"])
        assert not env.lock.is_locked()

    def test_busy_lock_rejected(self, env, svc) -> None:
        with env.lock.acquire("other"):
            with pytest.raises(AlreadyLockedError):
                svc.install("tool", "acme/tool")
            # 只读操作不受影响
            assert svc.list() == []
            assert svc.doctor() is not None

    def test_lock_released_on_failure(self, env, svc) -> None:
        svc.install("tool", "acme/tool")
        with pytest.raises(PackageExistsError):
            svc.install("tool", "acme/tool")
        assert not env.lock.is_locked()


class TestOperations:
    def test_desktop_default_from_config(self, env, svc, config) -> None:
        config.desktop_entry = True
        svc.install("tool", "acme/tool", InstallOptions())
        assert env.store.require("tool").desktop_entry_path

    def test_check_and_upgrade(self, env, svc) -> None:
        svc.install("tool", "acme/tool")
        env.provider.publish("v1.1.0", {BIN: b"#!/bin/sh\necho new\n"})
        [info] = svc.check()
        assert info.available and info.latest == "v1.1.0"
        [outcome] = svc.upgrade()
        assert outcome.new_version == "v1.1.0"

    def test_metadata_and_keys(self, svc) -> None:
        svc.install("tool", "acme/tool")
        meta = svc.metadata("tool")
        assert meta["name"] == "tool"
        assert meta["installed_version"] == "v1.0.0"
        svc.set_key("tool", "match_pattern", "musl")
        assert svc.get_key("tool", "match_pattern") == "musl"

    def test_rename(self, env, svc) -> None:
        svc.install("tool", "acme/tool")
        svc.rename("tool", "t")
        assert env.paths.symlink_for("t").is_symlink()
        assert not env.paths.symlink_for("tool").is_symlink()

    def test_rename_then_upgrade_and_remove_leaves_nothing_behind(self, env, svc) -> None:
        svc.install("tool", "acme/tool")
        svc.rename("tool", "t")
        assert sorted(p.name for p in env.paths.packages_dir.iterdir()) == ["t"]
        assert env.store.require("t").install_path == str(env.paths.install_dir("t"))

        env.provider.publish("v1.1.0", {BIN: b"#!/bin/sh\necho new\n"})
        [outcome] = svc.upgrade(["t"])
        assert outcome.new_version == "v1.1.0"
        assert sorted(p.name for p in env.paths.packages_dir.iterdir()) == ["t"]

        svc.remove(["t"])
        assert list(env.paths.packages_dir.iterdir()) == []
        # 旧名字可以重新安装
        svc.install("tool", "acme/tool")
        assert env.paths.symlink_for("tool").is_symlink()

    def test_upgrade_drops_install_dir_left_under_old_name(self, env, svc) -> None:
        svc.install("tool", "acme/tool")
        record = env.store.require("tool")
        old_dir = env.paths.install_dir("tool")
        stray = env.paths.install_dir("legacy-tool")
        old_dir.rename(stray)
        record.install_path = str(stray)
        record.exec_path = str(stray / Path(record.exec_path).relative_to(old_dir))
        env.store.update(record)

        env.provider.publish("v1.1.0", {BIN: b"#!/bin/sh\necho new\n"})
        svc.upgrade(["tool"])

        assert sorted(p.name for p in env.paths.packages_dir.iterdir()) == ["tool"]
        assert env.store.require("tool").install_path == str(old_dir)

    def test_probe(self, svc) -> None:
        [result] = svc.probe("acme/tool")
        assert result.release.tag == "v1.0.0"
        assert result.candidate.asset.name == BIN

    def test_probe_no_candidate(self, env, svc) -> None:
        env.provider.publish("v2.0.0", {"tool-windows.exe": b"MZ"})
        results = svc.probe("acme/tool")
        assert results[0].candidate is None
        assert results[0].note


class TestInit:
    def test_init_writes_paths_file(self, env, svc) -> None:
        env.paths.icons_dir.rmdir()
        created = svc.init()
        assert env.paths.icons_dir in created
        assert env.paths.paths_file.read_text() == env.paths.paths_script()

    def test_clean_keeps_nothing_but_layout(self, env, svc) -> None:
        svc.install("tool", "acme/tool")
        svc.init(clean=True)
        assert env.store.list() == []
        assert not env.paths.install_dir("tool").exists()
        assert not env.paths.symlink_for("tool").is_symlink()
        assert all(d.is_dir() for d in env.paths.managed_dirs())
        assert not env.lock.is_locked()

    def test_doctor_repair_takes_lock(self, env, svc, tmp_path: Path) -> None:
        svc.install("tool", "acme/tool")
        (env.paths.symlinks_dir / "stray").symlink_to(tmp_path / "x")
        svc.doctor(repair=True)
        assert not (env.paths.symlinks_dir / "stray").is_symlink()
        assert not env.lock.is_locked()
