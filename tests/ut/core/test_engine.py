"""安装引擎测试：install / upgrade / remove / 回滚"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

import upstream.core.engine.installer as installer_mod
from upstream.core.checksum import file_digest
from upstream.core.engine.states import InstallState
from upstream.core.exceptions import (
    InstallFailed,
    IntegrityError,
    LockNotHeldError,
    PackageExistsError,
    PackageNotFoundError,
)
from upstream.core.models import InstallOptions, Kind
from tests.helpers import tar_gz

BIN = "tool-linux-x86_64"


def _leftovers(env) -> list[str]:
    hidden = [p.name for p in env.paths.packages_dir.iterdir() if p.name.startswith(".")]
    staged = list(env.paths.staging_root.iterdir()) if env.paths.staging_root.exists() else []
    return hidden + [p.name for p in staged]


class TestInstall:
    def test_install_single_binary(self, env, handle) -> None:
        env.provider.publish("v1.0.0", {BIN: b"#!/bin/sh\necho 1\n"})
        outcome = env.engine.install("tool", "acme/tool", handle=handle)

        assert outcome.ok and outcome.new_version == "v1.0.0"
        record = env.store.require("tool")
        exec_path = Path(record.exec_path)
        assert exec_path == env.paths.install_dir("tool") / BIN
        assert os.access(exec_path, os.X_OK)
        link = env.paths.symlink_for("tool")
        assert link.is_symlink() and link.resolve() == exec_path.resolve()
        assert record.checksum == file_digest(exec_path)
        assert record.source_fingerprint.startswith("etag:")
        assert _leftovers(env) == []

    def test_install_archive_locates_executable(self, env, handle) -> None:
        payload = tar_gz({
            "tool-1.2.0/README.md": b"docs",
            "tool-1.2.0/bin/tool": b"\x7fELF",
            "tool-1.2.0/lib/libtool.so": b"lib",
        })
        env.provider.publish("v1.2.0", {"tool-1.2.0-linux-x86_64.tar.gz": payload})
        env.engine.install("tool", "acme/tool", handle=handle)

        record = env.store.require("tool")
        assert record.exec_path.endswith("tool-1.2.0/bin/tool")
        assert record.checksum == ""
        assert Path(record.symlink_path).resolve() == Path(record.exec_path).resolve()

    def test_install_requires_lock(self, env) -> None:
        env.provider.publish("v1.0.0", {BIN: b"x"})
        with pytest.raises(LockNotHeldError):
            env.engine.install("tool", "acme/tool", handle=None)

    def test_released_handle_rejected(self, env) -> None:
        h = env.lock.acquire("install")
        h.release()
        with pytest.raises(LockNotHeldError):
            env.engine.install("tool", "acme/tool", handle=h)

    def test_duplicate_name_rejected(self, env, handle) -> None:
        env.provider.publish("v1.0.0", {BIN: b"x"})
        env.engine.install("tool", "acme/tool", handle=handle)
        with pytest.raises(PackageExistsError):
            env.engine.install("tool", "acme/other", handle=handle)

    def test_checksum_mismatch_leaves_nothing(self, env, handle) -> None:
        env.provider.publish("v1.0.0", {
            BIN: b"real",
            "checksums.txt": f"{'0' * 64}  {BIN}\n".encode(),
        })
        with pytest.raises(InstallFailed) as exc:
            env.engine.install("tool", "acme/tool", handle=handle)

        assert exc.value.state is InstallState.VERIFYING
        assert isinstance(exc.value.cause, IntegrityError)
        assert not env.store.exists("tool")
        assert not env.paths.install_dir("tool").exists()
        assert not env.paths.symlink_for("tool").is_symlink()
        assert _leftovers(env) == []

    def test_require_checksum_without_checksum_file(self, env, handle) -> None:
        env.provider.publish("v1.0.0", {BIN: b"x"})
        with pytest.raises(InstallFailed):
            env.engine.install(
                "tool", "acme/tool", InstallOptions(require_checksum=True), handle=handle,
            )

    def test_matching_checksum_passes(self, env, handle, tmp_path: Path) -> None:
        blob = tmp_path / "blob"
        blob.write_bytes(b"payload")
        digest = file_digest(blob)
        env.provider.publish("v1.0.0", {BIN: b"payload", f"{BIN}.sha256": f"{digest}\n".encode()})
        env.engine.install(
            "tool", "acme/tool", InstallOptions(require_checksum=True), handle=handle,
        )
        assert env.store.require("tool").checksum == digest

    def test_desktop_entry_written(self, env, handle) -> None:
        env.provider.publish("v2.0.0", {"Tool-2.0.0-x86_64.AppImage": b"appimage"})
        env.engine.install(
            "tool", "acme/tool", InstallOptions(desktop_entry=True), handle=handle,
        )
        record = env.store.require("tool")
        desktop = Path(record.desktop_entry_path)
        assert desktop == env.paths.desktop_entry_for("tool")
        text = desktop.read_text()
        assert f"Exec={record.exec_path}" in text
        assert "Name=tool" in text


class TestRemove:
    def test_install_then_remove_restores_tree(self, env, handle) -> None:
        before = sorted(str(p) for p in env.paths.root.rglob("*") if p.name != "upstream.lock")
        env.provider.publish("v1.0.0", {BIN: b"x"})
        env.engine.install("tool", "acme/tool", handle=handle)
        outcomes = env.engine.remove(["tool"], handle=handle)

        assert [o.ok for o in outcomes] == [True]
        after = sorted(
            str(p) for p in env.paths.root.rglob("*")
            if p.name not in ("upstream.lock", "packages.yml")
        )
        assert after == before
        assert env.store.list() == []

    def test_remove_keeps_foreign_link(self, env, handle, tmp_path: Path) -> None:
        env.provider.publish("v1.0.0", {BIN: b"x"})
        env.engine.install("tool", "acme/tool", handle=handle)
        link = env.paths.symlink_for("tool")
        foreign = tmp_path / "elsewhere"
        foreign.write_text("not ours")
        link.unlink()
        link.symlink_to(foreign)

        env.engine.remove(["tool"], handle=handle)
        assert link.is_symlink()
        assert foreign.exists()

    def test_purge_removes_user_dirs(self, env, handle) -> None:
        env.provider.publish("v1.0.0", {BIN: b"x"})
        env.engine.install("tool", "acme/tool", handle=handle)
        for d in env.paths.purge_dirs("tool"):
            d.mkdir(parents=True)
        env.engine.remove(["tool"], handle=handle, purge=True)
        assert not any(d.exists() for d in env.paths.purge_dirs("tool"))

    def test_batch_continues_after_unknown_name(self, env, handle) -> None:
        env.provider.publish("v1.0.0", {BIN: b"x"})
        env.engine.install("tool", "acme/tool", handle=handle)
        outcomes = env.engine.remove(["ghost", "tool"], handle=handle)

        assert outcomes[0].failed
        assert isinstance(outcomes[0].error, PackageNotFoundError)
        assert outcomes[1].ok
        assert not env.store.exists("tool")


class TestUpgrade:
    def _install_v1(self, env, handle) -> Path:
        env.provider.publish("v1.0.0", {BIN: b"old"})
        env.engine.install("tool", "acme/tool", handle=handle)
        return Path(env.store.require("tool").exec_path)

    def test_upgrade_replaces_install(self, env, handle) -> None:
        exec_path = self._install_v1(env, handle)
        env.provider.publish("v1.1.0", {BIN: b"new"})
        outcomes = env.engine.upgrade(handle=handle)

        assert [(o.old_version, o.new_version) for o in outcomes] == [("v1.0.0", "v1.1.0")]
        assert exec_path.read_bytes() == b"new"
        assert env.paths.symlink_for("tool").resolve() == exec_path.resolve()
        assert _leftovers(env) == []

    def test_up_to_date_is_skipped(self, env, handle) -> None:
        self._install_v1(env, handle)
        outcomes = env.engine.upgrade(handle=handle)
        assert outcomes[0].skipped
        assert env.provider.downloads == [BIN]

    def test_pinned_skipped_unless_forced(self, env, handle) -> None:
        self._install_v1(env, handle)
        env.store.pin("tool")
        env.provider.publish("v2.0.0", {BIN: b"v2"})

        assert env.engine.upgrade(handle=handle) == []
        skipped = env.engine.upgrade(["tool"], handle=handle)
        assert skipped[0].skipped
        assert env.store.require("tool").installed_version == "v1.0.0"

        forced = env.engine.upgrade(handle=handle, force=True)
        assert forced[0].new_version == "v2.0.0"

    def test_check_reports_without_mutation(self, env, handle) -> None:
        exec_path = self._install_v1(env, handle)
        env.provider.publish("v1.1.0", {BIN: b"new"})
        infos = env.engine.check_updates()

        assert [(i.name, i.current, i.latest, i.available) for i in infos] == [
            ("tool", "v1.0.0", "v1.1.0", True),
        ]
        assert exec_path.read_bytes() == b"old"

    def test_failure_in_finalizing_rolls_back(self, env, handle, monkeypatch) -> None:
        exec_path = self._install_v1(env, handle)
        old_record = env.store.require("tool")
        env.provider.publish("v1.1.0", {BIN: b"new"})

        def boom(record):
            raise OSError("disk full")

        monkeypatch.setattr(env.store, "upsert", boom)
        outcomes = env.engine.upgrade(["tool"], handle=handle)

        assert outcomes[0].failed
        assert outcomes[0].state is InstallState.FINALIZING
        assert exec_path.read_bytes() == b"old"
        assert env.paths.symlink_for("tool").resolve() == exec_path.resolve()
        assert env.store.require("tool") == old_record
        assert _leftovers(env) == []

    def test_rollback_restores_dangling_link_literally(self, env, handle, monkeypatch) -> None:
        self._install_v1(env, handle)
        link = env.paths.symlink_for("tool")
        link.unlink()
        link.symlink_to("/nonexistent/tool-binary")
        env.provider.publish("v1.1.0", {BIN: b"new"})

        def broken_desktop(*args, **kwargs):
            raise OSError("read-only applications dir")

        monkeypatch.setattr(installer_mod, "write_desktop_entry", broken_desktop)
        record = env.store.require("tool")
        record.desktop_entry_path = str(env.paths.desktop_entry_for("tool"))
        env.store.update(record)

        outcomes = env.engine.upgrade(["tool"], handle=handle)
        assert outcomes[0].failed
        assert isinstance(outcomes[0].error, InstallFailed)
        assert outcomes[0].error.rolled_back
        assert os.readlink(link) == "/nonexistent/tool-binary"

    def test_staging_failure_keeps_old_install(self, env, handle) -> None:
        exec_path = self._install_v1(env, handle)
        env.provider.publish("v1.1.0", {"tool-linux-x86_64.tar.gz": b"not a tarball"})
        outcomes = env.engine.upgrade(["tool"], handle=handle)

        assert outcomes[0].failed
        assert outcomes[0].state is InstallState.STAGING
        assert exec_path.read_bytes() == b"old"
        assert env.store.require("tool").installed_version == "v1.0.0"
        assert _leftovers(env) == []

    def test_unknown_name_reported(self, env, handle) -> None:
        outcomes = env.engine.upgrade(["ghost"], handle=handle)
        assert outcomes[0].failed


class TestKindOption:
    def test_explicit_kind_filters_assets(self, env, handle) -> None:
        env.provider.publish("v1.0.0", {
            "tool-linux-x86_64.tar.gz": tar_gz({"tool": b"bin"}),
            "tool-x86_64.AppImage": b"appimage",
        })
        env.engine.install("tool", "acme/tool", InstallOptions(kind=Kind.ARCHIVE), handle=handle)
        assert env.store.require("tool").asset_name == "tool-linux-x86_64.tar.gz"
