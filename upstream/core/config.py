"""集中配置管理

配置文件为 YAML（默认 ~/.config/upstream/config.yml），只保存用户覆盖的键；
读取时与内置默认值深度合并。
ConfigStore 提供点路径（http.timeout / providers.github.api_token）的
get / set / list / reset，写入一律原子替换。
"""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml

from upstream.core.exceptions import ConfigError, ValidationError
from upstream.core.paths import UpstreamPaths, default_config_file
from upstream.utils.yaml_io import load_yaml, save_yaml

logger = logging.getLogger(__name__)

_TRUE = frozenset(("true", "yes", "1", "on", "y"))
_FALSE = frozenset(("false", "no", "0", "off", "n"))

DEFAULT_WEIGHTS: dict[str, int] = {
    "match_pattern": 1000,
    "os": 200,
    "arch": 100,
    "compatible_arch": 30,
    "kind": 50,
    "name": 20,
    "format_best": 15,
    "format_good": 10,
    "format_ok": 5,
    "static": 5,
    "debug": -20,
    "checksum": -500,
}


def parse_bool(raw: Any) -> bool:
    """宽松布尔解析：true/false/yes/no/1/0/on/off"""
    if isinstance(raw, bool):
        return raw
    text = str(raw).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValidationError(f"无法解析为布尔值: '{raw}'（可用 true/false/yes/no/1/0/on/off）")


def coerce_value(raw: Any, template: Any, key: str = "") -> Any:
    """按默认值的类型转换用户输入"""
    try:
        if isinstance(template, bool):
            return parse_bool(raw)
        if isinstance(template, int):
            return int(str(raw).strip())
        if isinstance(template, float):
            return float(str(raw).strip())
    except ValueError:
        raise ValidationError(
            f"配置项 {key} 需要 {type(template).__name__} 类型，收到: '{raw}'"
        ) from None
    if isinstance(template, (dict, list)):
        raise ValidationError(f"配置项 {key} 是一个分组，请指定具体的子键")
    return "" if raw is None else str(raw)


@dataclass
class HttpSettings:
    timeout: float = 30.0
    retries: int = 3
    backoff: float = 0.5


@dataclass
class ProviderSettings:
    api_token: str = ""
    base_url: str = ""
    rate_limit: int = 5000


@dataclass
class Config:
    """全局配置"""

    # 目录（空值表示使用默认布局）
    root: str = ""
    desktop_dir: str = ""
    staging_dir: str = ""

    http: HttpSettings = field(default_factory=HttpSettings)
    weights: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    providers: dict[str, ProviderSettings] = field(default_factory=lambda: {
        "github": ProviderSettings(),
        "gitlab": ProviderSettings(),
        "gitea": ProviderSettings(),
    })

    # 安装默认行为
    require_checksum: bool = False
    desktop_entry: bool = False
    lock_grace_seconds: float = 5.0

    config_file: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any], config_file: str = "") -> Config:
        paths = data.get("paths") or {}
        http = data.get("http") or {}
        install = data.get("install") or {}
        selector = data.get("selector") or {}
        cfg = cls(
            root=str(paths.get("root") or ""),
            desktop_dir=str(paths.get("desktop_dir") or ""),
            staging_dir=str(paths.get("staging_dir") or ""),
            http=HttpSettings(
                timeout=float(http.get("timeout", 30.0)),
                retries=int(http.get("retries", 3)),
                backoff=float(http.get("backoff", 0.5)),
            ),
            require_checksum=bool(install.get("require_checksum", False)),
            desktop_entry=bool(install.get("desktop_entry", False)),
            lock_grace_seconds=float((data.get("lock") or {}).get("stale_grace_seconds", 5.0)),
            config_file=config_file,
        )
        cfg.weights.update({
            k: int(v) for k, v in (selector.get("weights") or {}).items() if k in DEFAULT_WEIGHTS
        })
        for name, settings in (data.get("providers") or {}).items():
            settings = settings or {}
            cfg.providers[name] = ProviderSettings(
                api_token=str(settings.get("api_token") or ""),
                base_url=str(settings.get("base_url") or ""),
                rate_limit=int(settings.get("rate_limit", 5000)),
            )
        return cfg

    @classmethod
    def from_file(cls, path: str | Path = "") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        p = Path(path) if path else default_config_file()
        data = ConfigStore(p).load()
        try:
            return cls.from_dict(data, config_file=str(p))
        except (TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"配置文件内容无效 {p}: {e}") from e

    @property
    def paths(self) -> UpstreamPaths:
        return UpstreamPaths.build(
            self.root, desktop_dir=self.desktop_dir, staging_dir=self.staging_dir,
        )

    def provider(self, name: str) -> ProviderSettings:
        return self.providers.get(name) or ProviderSettings()

    def to_dict(self) -> dict:
        return asdict(self)


def default_document() -> dict[str, Any]:
    """配置文件的完整默认结构（点路径的合法键集合）"""
    return {
        "paths": {"root": "", "desktop_dir": "", "staging_dir": ""},
        "http": asdict(HttpSettings()),
        "install": {"require_checksum": False, "desktop_entry": False},
        "lock": {"stale_grace_seconds": 5.0},
        "selector": {"weights": dict(DEFAULT_WEIGHTS)},
        "providers": {
            name: asdict(ProviderSettings()) for name in ("github", "gitlab", "gitea")
        },
    }


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _flatten(data: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    items: list[tuple[str, Any]] = []
    for k, v in data.items():
        key = f"{prefix}.{k}" if prefix else str(k)
        if isinstance(v, dict) and v:
            items.extend(_flatten(v, key))
        else:
            items.append((key, v))
    return items


class ConfigStore:
    """点路径配置读写"""

    def __init__(self, path: str | Path = "") -> None:
        self.path = Path(path) if path else default_config_file()

    def _read_overrides(self) -> dict[str, Any]:
        try:
            return load_yaml(self.path)
        except (OSError, ValueError) as e:
            raise ConfigError(f"无法读取配置文件 {self.path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"配置文件格式错误 {self.path}: {e}") from e

    def load(self) -> dict[str, Any]:
        """返回默认值与文件覆盖合并后的配置"""
        return _deep_merge(default_document(), self._read_overrides())

    @staticmethod
    def _split(key: str) -> list[str]:
        parts = [p for p in key.strip().split(".") if p]
        if not parts:
            raise ValidationError("配置键不能为空")
        return parts

    def _template(self, parts: list[str]) -> Any:
        node: Any = default_document()
        for i, part in enumerate(parts):
            # providers.<任意名称>.* 允许自定义来源（自托管实例）
            if i == 1 and parts[0] == "providers" and part not in node:
                node = asdict(ProviderSettings())
                continue
            if not isinstance(node, dict) or part not in node:
                raise ValidationError(f"未知配置项: {'.'.join(parts)}")
            node = node[part]
        return node

    def get(self, key: str) -> Any:
        parts = self._split(key)
        self._template(parts)
        node: Any = self.load()
        for part in parts:
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def set(self, key: str, raw: Any) -> Any:
        """设置单个叶子键，返回类型转换后的值"""
        parts = self._split(key)
        value = coerce_value(raw, self._template(parts), key)
        data = self._read_overrides()
        node = data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
        save_yaml(self.path, data)
        logger.info("配置已更新: %s = %r", key, value)
        return value

    def list(self) -> list[tuple[str, Any]]:
        return _flatten(self.load())

    def reset(self, key: str = "") -> None:
        """删除某个键的覆盖值；不指定键时清空全部覆盖"""
        if not key:
            save_yaml(self.path, {})
            logger.info("配置已重置为默认值: %s", self.path)
            return
        parts = self._split(key)
        self._template(parts)
        data = self._read_overrides()
        node = data
        for part in parts[:-1]:
            node = node.get(part)
            if not isinstance(node, dict):
                return
        if node.pop(parts[-1], None) is not None:
            save_yaml(self.path, data)
            logger.info("配置项已重置: %s", key)

    def ensure_file(self) -> Path:
        """确保配置文件存在（供 config edit 打开）"""
        if not self.path.exists():
            save_yaml(self.path, {})
        return self.path


# 全局单例，首次 import 时不加载文件；由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str | Path = "") -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    _current = Config.from_file(path)
    logger.info("配置已加载: %s", _current.config_file)
    return _current
