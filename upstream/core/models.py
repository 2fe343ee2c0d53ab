"""核心数据模型

来源解析得到的 Release / Asset 是临时对象；PackageRecord 由包存储持久化；
ManifestEntry 是导出清单中的单个条目。
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from upstream.core.config import parse_bool
from upstream.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

# =========================================================================
# 枚举
# =========================================================================


class Provider(str, Enum):
    """发布来源类型"""
    GITHUB = "github"
    GITLAB = "gitlab"
    GITEA = "gitea"
    DIRECT = "direct"
    SCRAPER = "scraper"


class Kind(str, Enum):
    """资产类型"""
    APPIMAGE = "appimage"
    ARCHIVE = "archive"
    COMPRESSED = "compressed"
    BINARY = "binary"
    WINEXE = "winexe"
    MACAPP = "macapp"
    CHECKSUM = "checksum"
    AUTO = "auto"

    @property
    def single_file(self) -> bool:
        """安装结果是否为单个可执行文件（可直接校验 sha256）"""
        return self in (Kind.APPIMAGE, Kind.BINARY, Kind.WINEXE)


class Channel(str, Enum):
    """发布通道"""
    STABLE = "stable"
    NIGHTLY = "nightly"


def parse_enum(enum_cls: type[Enum], value: Any, field_name: str = "") -> Any:
    """把字符串（大小写不敏感）转换为枚举成员，非法值抛 ValidationError"""
    if isinstance(value, enum_cls):
        return value
    raw = str(value).strip().lower()
    try:
        return enum_cls(raw)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)  # type: ignore[attr-defined]
        label = field_name or enum_cls.__name__
        raise ValidationError(f"{label} 取值无效: '{value}'（可选: {allowed}）") from None


def utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="seconds")


def _record_flag(name: str, raw: Any) -> bool:
    """包记录中的布尔字段；手工改坏的值按 False 处理，不让整个存储不可读"""
    if raw is None:
        return False
    try:
        return parse_bool(raw)
    except ValidationError:
        logger.warning("包 %s 的 pinned 值无效 (%r)，按 false 处理", name, raw)
        return False


# =========================================================================
# 来源模型（临时）
# =========================================================================


@dataclass
class Asset:
    """release 中的单个可下载文件"""

    name: str
    download_url: str
    size: int = 0
    content_type: str = ""
    last_modified: str = ""
    etag: str = ""

    @property
    def fingerprint(self) -> str:
        """etag 优先，否则 last-modified + size；都没有时为空"""
        if self.etag:
            return f"etag:{self.etag}"
        if self.last_modified:
            return f"lm:{self.last_modified}:{self.size}"
        return ""


@dataclass
class Release:
    """一个发布版本"""

    tag: str
    published_at: str = ""
    assets: list[Asset] = field(default_factory=list)
    prerelease: bool = False
    draft: bool = False
    name: str = ""
    body: str = ""
    version: str = ""


# =========================================================================
# 持久化模型
# =========================================================================


@dataclass
class PackageRecord:
    """已安装包的元数据记录（以 name 为唯一键）"""

    name: str
    repo_reference: str
    provider: Provider = Provider.GITHUB
    kind: Kind = Kind.AUTO
    channel: Channel = Channel.STABLE
    pinned: bool = False
    installed_version: str = ""
    install_path: str = ""
    exec_path: str = ""
    asset_name: str = ""
    checksum: str = ""
    symlink_path: str = ""
    desktop_entry_path: str = ""
    icon_path: str = ""
    base_url: str = ""
    match_pattern: str = ""
    exclude_pattern: str = ""
    source_fingerprint: str = ""
    last_checked_at: str = ""
    last_updated_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        """序列化为 YAML 友好的字典（不含 name，name 作为键）"""
        data = asdict(self)
        data.pop("name")
        for key in ("provider", "kind", "channel"):
            data[key] = getattr(self, key).value
        return data

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any]) -> PackageRecord:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known and k not in ("name", "repo_reference")}
        for key in ("installed_version", "install_path", "exec_path", "checksum",
                    "symlink_path", "desktop_entry_path", "icon_path", "base_url",
                    "match_pattern", "exclude_pattern", "source_fingerprint",
                    "last_checked_at", "last_updated_at", "asset_name"):
            if kwargs.get(key) is None:
                kwargs.pop(key, None)
            else:
                kwargs[key] = str(kwargs[key])
        kwargs["provider"] = parse_enum(Provider, data.get("provider") or "github", "provider")
        kwargs["kind"] = parse_enum(Kind, data.get("kind") or "auto", "kind")
        kwargs["channel"] = parse_enum(Channel, data.get("channel") or "stable", "channel")
        kwargs["pinned"] = _record_flag(name, data.get("pinned"))
        return cls(name=name, repo_reference=str(data.get("repo_reference") or ""), **kwargs)


@dataclass
class InstallOptions:
    """install / upgrade 的可选参数"""

    provider: Provider = Provider.GITHUB
    kind: Kind = Kind.AUTO
    channel: Channel = Channel.STABLE
    tag: str = ""
    match_pattern: str = ""
    exclude_pattern: str = ""
    base_url: str = ""
    require_checksum: bool = False
    ignore_checksums: bool = False
    desktop_entry: bool = False
    force: bool = False

    @classmethod
    def from_record(cls, record: PackageRecord, **overrides: Any) -> InstallOptions:
        opts = cls(
            provider=record.provider,
            kind=record.kind,
            channel=record.channel,
            match_pattern=record.match_pattern,
            exclude_pattern=record.exclude_pattern,
            base_url=record.base_url,
            desktop_entry=bool(record.desktop_entry_path),
        )
        for k, v in overrides.items():
            setattr(opts, k, v)
        return opts


@dataclass
class ManifestEntry:
    """导出清单中的一个包"""

    name: str
    repo_reference: str
    provider: str = Provider.GITHUB.value
    kind: str = Kind.AUTO.value
    channel: str = Channel.STABLE.value
    pinned: bool = False
    version: str = ""
    base_url: str = ""
    match_pattern: str = ""
    exclude_pattern: str = ""

    @classmethod
    def from_record(cls, record: PackageRecord) -> ManifestEntry:
        return cls(
            name=record.name,
            repo_reference=record.repo_reference,
            provider=record.provider.value,
            kind=record.kind.value,
            channel=record.channel.value,
            pinned=record.pinned,
            version=record.installed_version,
            base_url=record.base_url,
            match_pattern=record.match_pattern,
            exclude_pattern=record.exclude_pattern,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ManifestEntry:
        name = str(data.get("name") or "").strip()
        ref = str(data.get("repo_reference") or "").strip()
        if not name or not ref:
            raise ValidationError(f"清单条目缺少 name 或 repo_reference: {data}")
        return cls(
            name=name,
            repo_reference=ref,
            provider=parse_enum(Provider, data.get("provider") or "github", "provider").value,
            kind=parse_enum(Kind, data.get("kind") or "auto", "kind").value,
            channel=parse_enum(Channel, data.get("channel") or "stable", "channel").value,
            pinned=data.get("pinned") is not None and parse_bool(data["pinned"]),
            version=str(data.get("version") or ""),
            base_url=str(data.get("base_url") or ""),
            match_pattern=str(data.get("match_pattern") or ""),
            exclude_pattern=str(data.get("exclude_pattern") or ""),
        )

    def to_options(self) -> InstallOptions:
        return InstallOptions(
            provider=Provider(self.provider),
            kind=Kind(self.kind),
            channel=Channel(self.channel),
            match_pattern=self.match_pattern,
            exclude_pattern=self.exclude_pattern,
            base_url=self.base_url,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
