"""包存储

<metadata_dir>/packages.yml 以包名为键保存 PackageRecord。
每次变更在返回前原子写入；读取不需要锁。
"""

from __future__ import annotations

import dataclasses
import logging
import os
import re
from pathlib import Path
from typing import Any

from upstream.core.config import parse_bool
from upstream.core.exceptions import (
    FilesystemError,
    PackageExistsError,
    PackageNotFoundError,
    ValidationError,
)
from upstream.core.models import Channel, Kind, PackageRecord, Provider, parse_enum
from upstream.core.registry import YamlRegistry
from upstream.utils.fsops import replace_symlink
from upstream.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")

_ENUM_KEYS: dict[str, type] = {"provider": Provider, "kind": Kind, "channel": Channel}
_BOOL_KEYS = frozenset(("pinned",))
_READONLY_KEYS = frozenset(("name",))
# 由安装流程写入，手动修改会让记录与磁盘上的安装不一致
_DERIVED_KEYS = frozenset((
    "installed_version", "install_path", "exec_path", "symlink_path", "asset_name", "checksum",
    "source_fingerprint", "desktop_entry_path", "icon_path", "last_checked_at", "last_updated_at",
))


def validate_package_name(name: str) -> str:
    name = (name or "").strip()
    if not name or not _NAME_RE.match(name) or name in (".", ".."):
        raise ValidationError(
            f"包名无效: '{name}'（只能包含字母、数字和 . _ + -，且以字母或数字开头）"
        )
    return name


def _rebase(path: str, old_root: Path, new_root: Path) -> str:
    """把位于 old_root 之下的 path 改写到 new_root 之下；其他路径原样返回"""
    if not path:
        return path
    try:
        return str(new_root / Path(path).relative_to(old_root))
    except ValueError:
        return path


def _retarget_desktop_entry(entry: Path, old_exec: str, new_exec: str) -> None:
    if not entry.is_file():
        return
    lines = entry.read_text(encoding="utf-8").splitlines()
    changed = [
        f"Exec={new_exec}" if line.strip() == f"Exec={old_exec}" else line
        for line in lines
    ]
    if changed != lines:
        atomic_write(entry, "\n".join(changed) + "\n")


class PackageStore(YamlRegistry):
    """已安装包的持久化记录"""

    section_key = "packages"

    def __init__(
        self, packages_file: str | Path, symlinks_dir: str | Path = "", packages_dir: str | Path = "",
    ) -> None:
        super().__init__(packages_file)
        self.symlinks_dir = Path(symlinks_dir) if symlinks_dir else None
        self.packages_dir = Path(packages_dir) if packages_dir else None

    # ---- 查询 ----

    def get(self, name: str) -> PackageRecord | None:
        if not self.exists(name):
            return None
        return PackageRecord.from_dict(name, self._get_raw(name) or {})

    def require(self, name: str) -> PackageRecord:
        record = self.get(name)
        if record is None:
            raise PackageNotFoundError(f"包未安装: {name}")
        return record

    def exists(self, name: str) -> bool:
        return name in self._section()

    def list(self) -> list[PackageRecord]:
        return [PackageRecord.from_dict(n, raw) for n, raw in self._items()]

    def names(self) -> list[str]:
        return [n for n, _ in self._items()]

    # ---- 变更 ----

    def add(self, record: PackageRecord) -> PackageRecord:
        validate_package_name(record.name)
        if self.exists(record.name):
            raise PackageExistsError(f"包已存在: {record.name}")
        self._put(record.name, record.to_dict())
        logger.info("包记录已添加: %s", record.name)
        return record

    def update(self, record: PackageRecord) -> PackageRecord:
        if not self.exists(record.name):
            raise PackageNotFoundError(f"包未安装: {record.name}")
        self._put(record.name, record.to_dict())
        return record

    def upsert(self, record: PackageRecord) -> PackageRecord:
        self._put(record.name, record.to_dict())
        return record

    def delete(self, name: str) -> bool:
        removed = self._remove(name)
        if removed:
            logger.info("包记录已删除: %s", name)
        return removed

    def pin(self, name: str) -> PackageRecord:
        return self._set_pinned(name, True)

    def unpin(self, name: str) -> PackageRecord:
        return self._set_pinned(name, False)

    def _set_pinned(self, name: str, pinned: bool) -> PackageRecord:
        record = self.require(name)
        record.pinned = pinned
        return self.update(record)

    # ---- 单字段读写 ----

    @staticmethod
    def _field_names() -> list[str]:
        return [f.name for f in dataclasses.fields(PackageRecord)]

    def get_key(self, name: str, key: str) -> Any:
        record = self.require(name)
        if key not in self._field_names():
            raise ValidationError(f"未知字段: {key}（可用: {', '.join(self._field_names())}）")
        value = getattr(record, key)
        return value.value if key in _ENUM_KEYS else value

    def set_key(self, name: str, key: str, raw: Any) -> PackageRecord:
        """设置单个字段（类型转换 + 校验）；name 不可设置，改名请用 rename"""
        record = self.require(name)
        if key in _READONLY_KEYS:
            raise ValidationError("name 不能直接修改，请使用 package rename")
        if key in _DERIVED_KEYS:
            raise ValidationError(f"{key} 由安装流程维护，不能手动修改（需要时运行 upgrade --force）")
        if key not in self._field_names():
            raise ValidationError(f"未知字段: {key}（可用: {', '.join(self._field_names())}）")
        if key in _BOOL_KEYS:
            value: Any = parse_bool(raw)
        elif key in _ENUM_KEYS:
            value = parse_enum(_ENUM_KEYS[key], raw, key)
        elif key == "repo_reference":
            value = str(raw or "").strip()
            if not value:
                raise ValidationError("repo_reference 不能为空")
        else:
            value = "" if raw is None else str(raw)
        setattr(record, key, value)
        self.update(record)
        logger.info("包字段已更新: %s.%s = %r", name, key, value)
        return record

    def rename(self, old: str, new: str) -> PackageRecord:
        """改名：移动记录键，并把 packages/<old>、<symlinks_dir>/<old> 一并改为 <new>

        记录中的 install_path / exec_path 随安装目录改写，链接重新指向新的可执行文件，
        桌面入口里的 Exec 同步更新。任一步失败时已完成的移动会被撤回。
        """
        record = self.require(old)
        new = validate_package_name(new)
        if old == new:
            return record
        if self.exists(new):
            raise PackageExistsError(f"包已存在: {new}")

        old_dir = new_dir = None
        if self.packages_dir is not None and record.install_path:
            candidate = Path(record.install_path)
            if candidate == self.packages_dir / old and candidate.is_dir():
                old_dir, new_dir = candidate, self.packages_dir / new
                if new_dir.exists() or new_dir.is_symlink():
                    raise FilesystemError(f"安装目录已被占用: {new_dir}")

        old_link = new_link = None
        if self.symlinks_dir is not None and (self.symlinks_dir / old).is_symlink():
            old_link, new_link = self.symlinks_dir / old, self.symlinks_dir / new
            if new_link.exists() or new_link.is_symlink():
                raise FilesystemError(f"链接位置已被占用: {new_link}")

        old_exec = record.exec_path
        if old_dir is not None and new_dir is not None:
            try:
                os.rename(old_dir, new_dir)
            except OSError as e:
                raise FilesystemError(f"移动安装目录失败 {old_dir} -> {new_dir}: {e}") from e
            record.install_path = str(new_dir)
            record.exec_path = _rebase(record.exec_path, old_dir, new_dir)

        if old_link is not None and new_link is not None:
            try:
                if record.exec_path != old_exec:
                    replace_symlink(new_link, record.exec_path)
                    old_link.unlink()
                else:
                    os.rename(old_link, new_link)
            except (OSError, FilesystemError) as e:
                if new_link.is_symlink() and old_link.is_symlink():
                    new_link.unlink()
                if old_dir is not None and new_dir is not None:
                    os.rename(new_dir, old_dir)
                raise FilesystemError(f"重命名链接失败 {old_link} -> {new_link}: {e}") from e
            record.symlink_path = str(new_link)

        if old_exec and record.exec_path != old_exec and record.desktop_entry_path:
            _retarget_desktop_entry(Path(record.desktop_entry_path), old_exec, record.exec_path)

        record.name = new
        self._move(old, new, record.to_dict())
        logger.info("包已改名: %s -> %s", old, new)
        return record
