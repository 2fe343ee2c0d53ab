"""包存储测试"""

from __future__ import annotations

from pathlib import Path

import pytest

from upstream.core.exceptions import (
    FilesystemError,
    PackageExistsError,
    PackageNotFoundError,
    ValidationError,
)
from upstream.core.models import Channel, Kind, PackageRecord, Provider
from upstream.core.store import PackageStore, validate_package_name


@pytest.fixture()
def store(tmp_path: Path) -> PackageStore:
    return PackageStore(tmp_path / "metadata" / "packages.yml", tmp_path / "symlinks", tmp_path / "packages")


def _record(name: str = "rg", **kw) -> PackageRecord:
    return PackageRecord(name=name, repo_reference="BurntSushi/ripgrep", **kw)


class TestCrud:
    def test_add_get_roundtrip(self, store: PackageStore) -> None:
        store.add(_record(kind=Kind.ARCHIVE, installed_version="14.1.0"))
        again = PackageStore(store.registry_file)
        got = again.require("rg")
        assert got.kind is Kind.ARCHIVE
        assert got.installed_version == "14.1.0"

    def test_every_field_survives_reload(self, store: PackageStore) -> None:
        original = _record(
            provider=Provider.GITLAB, kind=Kind.BINARY, channel=Channel.NIGHTLY, pinned=True,
            installed_version="14.1.0", install_path="/p/rg", exec_path="/p/rg/rg",
            asset_name="rg-x86_64", checksum="ab" * 32, symlink_path="/s/rg",
            desktop_entry_path="/a/upstream-rg.desktop", icon_path="/i/rg.png",
            base_url="https://gitlab.example.com", match_pattern="musl", exclude_pattern="debug",
            source_fingerprint="etag:1", last_checked_at="2026-01-01T00:00:00+00:00",
            last_updated_at="2026-01-02T00:00:00+00:00",
        )
        store.add(original)
        assert PackageStore(store.registry_file).require("rg") == original

    def test_set_key_right_after_add(self, store: PackageStore) -> None:
        store.add(_record())
        assert store.set_key("rg", "match_pattern", "musl").match_pattern == "musl"
        assert PackageStore(store.registry_file).get_key("rg", "match_pattern") == "musl"

    def test_add_duplicate(self, store: PackageStore) -> None:
        store.add(_record())
        with pytest.raises(PackageExistsError):
            store.add(_record())

    def test_require_missing(self, store: PackageStore) -> None:
        with pytest.raises(PackageNotFoundError):
            store.require("ghost")

    def test_update_missing(self, store: PackageStore) -> None:
        with pytest.raises(PackageNotFoundError):
            store.update(_record())

    def test_list_sorted(self, store: PackageStore) -> None:
        store.add(_record("zoxide"))
        store.add(_record("bat"))
        assert [r.name for r in store.list()] == ["bat", "zoxide"]

    def test_delete(self, store: PackageStore) -> None:
        store.add(_record())
        assert store.delete("rg") is True
        assert store.get("rg") is None

    def test_pin_unpin(self, store: PackageStore) -> None:
        store.add(_record())
        assert store.pin("rg").pinned is True
        assert store.unpin("rg").pinned is False


class TestNullTolerance:
    def test_null_fields_take_defaults(self, store: PackageStore) -> None:
        store.registry_file.parent.mkdir(parents=True, exist_ok=True)
        store.registry_file.write_text(
            "packages:\n"
            "  rg:\n"
            "    repo_reference: BurntSushi/ripgrep\n"
            "    provider: null\n"
            "    kind: null\n"
            "    channel: null\n"
            "    pinned: null\n"
            "    installed_version: null\n"
            "    checksum: null\n"
            "  empty: null\n",
            encoding="utf-8",
        )
        store.reload()
        rg = store.require("rg")
        assert rg.provider is Provider.GITHUB
        assert rg.kind is Kind.AUTO
        assert rg.channel is Channel.STABLE
        assert rg.pinned is False
        assert rg.installed_version == ""
        assert [r.name for r in store.list()] == ["empty", "rg"]

    def test_unknown_fields_ignored(self, store: PackageStore) -> None:
        store.registry_file.parent.mkdir(parents=True, exist_ok=True)
        store.registry_file.write_text(
            "packages:\n  rg:\n    repo_reference: a/b\n    future_field: 1\n", encoding="utf-8",
        )
        store.reload()
        assert store.require("rg").repo_reference == "a/b"

    @pytest.mark.parametrize("raw, expected", [
        ('"false"', False), ('"no"', False), ("'0'", False), ('"yes"', True), ("on", True), ('"maybe"', False),
    ])
    def test_pinned_strings_parsed(self, store: PackageStore, raw: str, expected: bool) -> None:
        store.registry_file.parent.mkdir(parents=True, exist_ok=True)
        store.registry_file.write_text(
            f"packages:\n  rg:\n    repo_reference: a/b\n    pinned: {raw}\n", encoding="utf-8",
        )
        store.reload()
        assert store.require("rg").pinned is expected


class TestKeys:
    def test_set_bool_variants(self, store: PackageStore) -> None:
        store.add(_record())
        for raw, expected in (("yes", True), ("off", False), ("1", True), ("false", False)):
            assert store.set_key("rg", "pinned", raw).pinned is expected

    def test_set_enum_validated(self, store: PackageStore) -> None:
        store.add(_record())
        assert store.set_key("rg", "channel", "NIGHTLY").channel is Channel.NIGHTLY
        with pytest.raises(ValidationError):
            store.set_key("rg", "kind", "deb")

    def test_name_not_settable(self, store: PackageStore) -> None:
        store.add(_record())
        with pytest.raises(ValidationError, match="rename"):
            store.set_key("rg", "name", "ripgrep")

    @pytest.mark.parametrize("key", ["install_path", "exec_path", "symlink_path", "checksum", "installed_version"])
    def test_install_derived_keys_rejected(self, store: PackageStore, key: str) -> None:
        store.add(_record(install_path="/p/rg", exec_path="/p/rg/rg"))
        with pytest.raises(ValidationError, match="upgrade --force"):
            store.set_key("rg", key, "/etc")
        again = PackageStore(store.registry_file).require("rg")
        assert again.install_path == "/p/rg"
        assert again.exec_path == "/p/rg/rg"

    def test_empty_repo_reference_rejected(self, store: PackageStore) -> None:
        store.add(_record())
        with pytest.raises(ValidationError):
            store.set_key("rg", "repo_reference", "  ")
        assert store.set_key("rg", "repo_reference", " sharkdp/fd ").repo_reference == "sharkdp/fd"

    def test_unknown_key(self, store: PackageStore) -> None:
        store.add(_record())
        with pytest.raises(ValidationError):
            store.set_key("rg", "colour", "red")
        with pytest.raises(ValidationError):
            store.get_key("rg", "colour")

    def test_get_enum_key_returns_value(self, store: PackageStore) -> None:
        store.add(_record(provider=Provider.GITEA))
        assert store.get_key("rg", "provider") == "gitea"


class TestRename:
    def test_rename_moves_record_and_link(self, store: PackageStore, tmp_path: Path) -> None:
        target = tmp_path / "bin-rg"
        target.write_text("x")
        links = tmp_path / "symlinks"
        links.mkdir()
        (links / "rg").symlink_to(target)
        store.add(_record(symlink_path=str(links / "rg")))

        renamed = store.rename("rg", "ripgrep")

        assert renamed.symlink_path == str(links / "ripgrep")
        assert (links / "ripgrep").resolve() == target.resolve()
        assert not (links / "rg").is_symlink()
        assert store.get("rg") is None
        assert store.require("ripgrep").repo_reference == "BurntSushi/ripgrep"

    def test_rename_moves_install_dir(self, store: PackageStore, tmp_path: Path) -> None:
        old_dir = tmp_path / "packages" / "rg"
        (old_dir / "bin").mkdir(parents=True)
        (old_dir / "bin" / "rg").write_text("x")
        links = tmp_path / "symlinks"
        links.mkdir()
        (links / "rg").symlink_to(old_dir / "bin" / "rg")
        entry = tmp_path / "upstream-rg.desktop"
        entry.write_text(f"[Desktop Entry]\nName=rg\nExec={old_dir / 'bin' / 'rg'}\n", encoding="utf-8")
        store.add(_record(
            install_path=str(old_dir), exec_path=str(old_dir / "bin" / "rg"),
            symlink_path=str(links / "rg"), desktop_entry_path=str(entry),
        ))

        renamed = store.rename("rg", "ripgrep")

        new_dir = tmp_path / "packages" / "ripgrep"
        assert sorted(p.name for p in (tmp_path / "packages").iterdir()) == ["ripgrep"]
        assert renamed.install_path == str(new_dir)
        assert renamed.exec_path == str(new_dir / "bin" / "rg")
        assert (links / "ripgrep").resolve() == (new_dir / "bin" / "rg").resolve()
        assert not (links / "rg").is_symlink()
        assert f"Exec={new_dir / 'bin' / 'rg'}" in entry.read_text(encoding="utf-8")
        assert PackageStore(store.registry_file).require("ripgrep").install_path == str(new_dir)

    def test_rename_refuses_occupied_install_dir(self, store: PackageStore, tmp_path: Path) -> None:
        old_dir = tmp_path / "packages" / "rg"
        old_dir.mkdir(parents=True)
        (tmp_path / "packages" / "ripgrep").mkdir()
        store.add(_record(install_path=str(old_dir)))
        with pytest.raises(FilesystemError):
            store.rename("rg", "ripgrep")
        assert old_dir.is_dir()
        assert store.require("rg").install_path == str(old_dir)

    def test_rename_to_existing(self, store: PackageStore) -> None:
        store.add(_record("a"))
        store.add(_record("b"))
        with pytest.raises(PackageExistsError):
            store.rename("a", "b")


class TestNames:
    @pytest.mark.parametrize("name", ["rg", "fd-find", "node18", "yt_dlp", "g++"])
    def test_valid(self, name: str) -> None:
        assert validate_package_name(name) == name

    @pytest.mark.parametrize("name", ["", "../x", "a/b", ".hidden", "-flag"])
    def test_invalid(self, name: str) -> None:
        with pytest.raises(ValidationError):
            validate_package_name(name)
