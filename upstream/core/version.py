"""版本号解析与比较

从 tag（v1.2.3 / release-1.2 / 1.2.3-rc1）或文件名（tool-1.4.0-linux-x86_64.tar.gz）
中提取版本，按 (major, minor, patch, 非预发布) 排序。
无法解析的版本退化为 tag 字符串比较。
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_VERSION_RE = re.compile(
    r"(?<![\d.])v?(?P<major>\d+)\.(?P<minor>\d+)(?:\.(?P<patch>\d+))?"
    r"(?P<suffix>[-.+_]?(?:preview|alpha|beta|rc|pre|dev|nightly|canary)(?![a-z])[\w.]*)?",
    re.IGNORECASE,
)
# 仅对 tag 生效：v5 / release-7 这类单段版本
_MAJOR_ONLY_RE = re.compile(r"^(?:v|version|release)?[-_]?(?P<major>\d+)$", re.IGNORECASE)

_PREFIX_RE = re.compile(r"^(?:release|version|ver|rel)[-_]?", re.IGNORECASE)


@dataclass(frozen=True)
class Version:
    """语义化版本（仅保留比较所需字段）"""

    major: int
    minor: int = 0
    patch: int = 0
    prerelease: bool = False

    @property
    def key(self) -> tuple[int, int, int, bool]:
        return (self.major, self.minor, self.patch, not self.prerelease)

    def __lt__(self, other: Version) -> bool:
        return self.key < other.key

    def __le__(self, other: Version) -> bool:
        return self.key <= other.key

    def __gt__(self, other: Version) -> bool:
        return self.key > other.key

    def __ge__(self, other: Version) -> bool:
        return self.key >= other.key

    def __str__(self) -> str:
        base = f"{self.major}.{self.minor}.{self.patch}"
        return f"{base}-pre" if self.prerelease else base


def parse_version(text: str) -> Version | None:
    """从任意字符串中提取第一个版本号，找不到返回 None"""
    if not text or not text.strip():
        return None
    raw = _PREFIX_RE.sub("", text.strip())
    m = _VERSION_RE.search(raw)
    if m:
        return Version(
            major=int(m.group("major")),
            minor=int(m.group("minor")),
            patch=int(m.group("patch") or 0),
            prerelease=bool(m.group("suffix")),
        )
    m = _MAJOR_ONLY_RE.match(text.strip())
    if m:
        return Version(major=int(m.group("major")))
    return None


def is_newer(candidate: str, current: str) -> bool:
    """candidate 是否比 current 新

    两边都能解析时按版本比较；否则退化为 tag 字符串的字典序比较。
    """
    if not current:
        return bool(candidate)
    a, b = parse_version(candidate), parse_version(current)
    if a is not None and b is not None:
        return a > b
    return candidate != current and candidate > current


def sort_key(tag: str) -> tuple[int, tuple[int, int, int, bool], str]:
    """用于排序的键：可解析版本排在不可解析之后（升序时），再按 tag 字符串"""
    v = parse_version(tag)
    if v is None:
        return (0, (0, 0, 0, False), tag)
    return (1, v.key, tag)
