"""YAML 注册表基类

一个文件 = {version: N, <section_key>: {name: entry}}。每次变更在返回前
原子写回；文件的 version 高于当前支持的版本时拒绝加载，避免旧版本
upstream 覆写新版本写入的数据。
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import yaml

from upstream.core.exceptions import ConfigError
from upstream.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)


class YamlRegistry:
    """子类指定 section_key（以及需要时的 schema_version）即可"""

    section_key: str = "entries"
    schema_version: int = 1

    def __init__(self, registry_file: str | Path) -> None:
        self.registry_file = Path(registry_file)
        self._data: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        try:
            data = load_yaml(self.registry_file)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"无法读取 {self.registry_file}: {e}") from e
        version = data.get("version", self.schema_version)
        if not isinstance(version, int):
            raise ConfigError(f"{self.registry_file} 的格式版本无效: {version!r}")
        if version > self.schema_version:
            raise ConfigError(
                f"{self.registry_file} 的格式版本 {version} 高于当前支持的 {self.schema_version}，请升级 upstream",
            )
        return data

    def reload(self) -> None:
        self._data = self._load()

    def _section(self) -> dict[str, dict[str, Any]]:
        section = self._data.get(self.section_key)
        if not isinstance(section, dict):
            if section is not None:
                logger.warning("%s 中的 %s 不是映射，已忽略", self.registry_file, self.section_key)
            section = {}
            self._data[self.section_key] = section
        return section

    def _items(self) -> Iterator[tuple[str, dict[str, Any]]]:
        for name in sorted(self._section()):
            yield name, self._section()[name] or {}

    def _save(self) -> None:
        self._data["version"] = self.schema_version
        ordered = {"version": self.schema_version, **{k: v for k, v in self._data.items() if k != "version"}}
        save_yaml(self.registry_file, ordered)

    def _put(self, name: str, entry: dict[str, Any]) -> dict[str, Any]:
        self._section()[name] = entry
        self._save()
        return entry

    def _get_raw(self, name: str) -> dict[str, Any] | None:
        return self._section().get(name)

    def _remove(self, name: str) -> bool:
        section = self._section()
        if name not in section:
            return False
        del section[name]
        self._save()
        return True

    def _move(self, old: str, new: str, entry: dict[str, Any]) -> None:
        """一次写入完成改键"""
        section = self._section()
        section.pop(old, None)
        section[new] = entry
        self._save()
