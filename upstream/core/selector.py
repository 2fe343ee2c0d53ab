"""资产选择器

从 release 的资产列表中选出最适合目标平台的一个：
  1. 剔除命中 exclude_pattern 的资产
  2. 显式指定类型时剔除类型不符的资产（auto 不剔除，改为按主机偏好加权）
  3. 剔除文件名声明了其他 OS 或不兼容架构的资产
  4. 按可配置权重打分
  5. 取最高分；同分时文件名更短者优先，再按字典序

纯函数：相同输入永远得到相同结果，不访问网络与文件系统。
"""

from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field

from upstream.core.config import DEFAULT_WEIGHTS
from upstream.core.exceptions import NoMatchingAssetError
from upstream.core.models import Asset, Kind, Release
from upstream.core.platform import (
    CpuArch,
    Host,
    OSKind,
    contains_marker,
    detect_kind,
    is_checksum_name,
    parse_arch,
    parse_os,
)

logger = logging.getLogger(__name__)

# (扩展名, 权重键)，按顺序匹配
_FORMAT_SCORES: tuple[tuple[str, str], ...] = (
    (".tar.gz", "format_best"),
    (".tgz", "format_best"),
    (".tar.xz", "format_good"),
    (".txz", "format_good"),
    (".zip", "format_ok"),
    (".tar.bz2", "format_ok"),
    (".tbz2", "format_ok"),
    (".tar", "format_ok"),
    (".gz", "format_good"),
    (".xz", "format_ok"),
    (".bz2", "format_ok"),
)

_STATIC_MARKERS = ("static", "musl")
_DEBUG_MARKERS = ("debug", "dbg", "symbols", "debuginfo")


@dataclass
class TargetSpec:
    """选择目标"""

    os: OSKind
    arch: CpuArch
    kind: Kind = Kind.AUTO
    match_pattern: str = ""
    exclude_pattern: str = ""
    package_name: str = ""

    @classmethod
    def for_host(cls, host: Host | None = None, **kwargs) -> TargetSpec:
        host = host or Host.detect()
        return cls(os=host.os, arch=host.arch, **kwargs)


@dataclass
class ScoredAsset:
    asset: Asset
    kind: Kind
    score: int
    reasons: list[str] = field(default_factory=list)


def pattern_matches(pattern: str, filename: str) -> bool:
    """大小写不敏感；含通配符时按 glob 匹配，否则按子串匹配"""
    if not pattern:
        return False
    p, name = pattern.lower(), filename.lower()
    if any(c in p for c in "*?["):
        return fnmatch.fnmatchcase(name, p)
    return p in name


def _normalize(text: str) -> str:
    return text.lower().replace("_", "-")


class AssetSelector:
    """带权重配置的资产选择器"""

    def __init__(self, weights: dict[str, int] | None = None) -> None:
        self.weights = dict(DEFAULT_WEIGHTS)
        if weights:
            self.weights.update(weights)

    # ---- 过滤 ----

    def _effective_os(self, target: TargetSpec) -> OSKind:
        if target.kind is Kind.WINEXE:
            return OSKind.WINDOWS
        if target.kind is Kind.MACAPP:
            return OSKind.MACOS
        return target.os

    def _rejection(self, asset: Asset, kind: Kind, target: TargetSpec) -> str:
        """返回剔除原因；可保留时返回空串"""
        if target.exclude_pattern and pattern_matches(target.exclude_pattern, asset.name):
            return "exclude_pattern"
        if target.kind is not Kind.AUTO and kind is not target.kind:
            return f"kind={kind.value}"
        declared_os = parse_os(asset.name)
        if declared_os is not None and declared_os is not self._effective_os(target):
            return f"os={declared_os.value}"
        declared_arch = parse_arch(asset.name)
        if declared_arch is not None:
            host = Host(os=target.os, arch=target.arch)
            if not host.accepts_arch(declared_arch):
                return f"arch={declared_arch.value}"
        return ""

    # ---- 打分 ----

    def _score(self, asset: Asset, kind: Kind, target: TargetSpec) -> ScoredAsset:
        w = self.weights
        name = asset.name.lower()
        scored = ScoredAsset(asset=asset, kind=kind, score=0)

        def add(key: str, amount: int | None = None) -> None:
            value = w[key] if amount is None else amount
            scored.score += value
            scored.reasons.append(f"{key}{value:+d}")

        if target.match_pattern and pattern_matches(target.match_pattern, asset.name):
            add("match_pattern")

        if parse_os(name) is self._effective_os(target):
            add("os")

        arch = parse_arch(name)
        if arch is target.arch:
            add("arch")
        elif arch is not None:
            add("compatible_arch")

        if target.kind is Kind.AUTO:
            prefs = Host(os=target.os, arch=target.arch).kind_preference()
            if kind in prefs:
                add("kind", w["kind"] * (len(prefs) - prefs.index(kind)) // len(prefs))
        elif kind is target.kind:
            add("kind")

        if target.package_name and _normalize(target.package_name) in _normalize(name):
            add("name")

        for ext, key in _FORMAT_SCORES:
            if name.endswith(ext):
                add(key)
                break
        else:
            if kind is Kind.BINARY and "." not in name:
                add("format_good")

        if any(contains_marker(name, m) for m in _STATIC_MARKERS):
            add("static")
        if any(contains_marker(name, m) for m in _DEBUG_MARKERS):
            add("debug")
        if target.kind is not Kind.CHECKSUM and is_checksum_name(name):
            add("checksum")
        return scored

    # ---- 公共接口 ----

    def rank(self, release: Release, target: TargetSpec) -> list[ScoredAsset]:
        """返回通过过滤的资产，按得分从高到低（同分按文件名长度、字典序）"""
        survivors: list[ScoredAsset] = []
        for asset in release.assets:
            kind = detect_kind(asset.name)
            reason = self._rejection(asset, kind, target)
            if reason:
                logger.debug("剔除资产 %s: %s", asset.name, reason)
                continue
            survivors.append(self._score(asset, kind, target))
        survivors.sort(key=lambda s: (-s.score, len(s.asset.name), s.asset.name))
        return survivors

    def select(self, release: Release, target: TargetSpec) -> ScoredAsset:
        ranked = self.rank(release, target)
        if not ranked:
            names = ", ".join(a.name for a in release.assets) or "(无资产)"
            raise NoMatchingAssetError(
                f"release {release.tag} 中没有适配 {target.os.value}/{target.arch.value} "
                f"(kind={target.kind.value}) 的资产: {names}"
            )
        best = ranked[0]
        logger.info(
            "选中资产: %s (score=%d, %s)", best.asset.name, best.score, " ".join(best.reasons),
        )
        return best


def select_asset(
    release: Release, target: TargetSpec, weights: dict[str, int] | None = None,
) -> Asset:
    """便捷函数：直接返回最佳资产"""
    return AssetSelector(weights).select(release, target).asset
