"""主机平台识别与文件名解析

从文件名中识别操作系统、CPU 架构和资产类型。OS/架构标记必须落在
单词边界上（前后不是字母数字），避免 "darwin" 命中 "win"、"marmalade" 命中 "arm"。
以 "." 开头的标记只匹配扩展名。
"""

from __future__ import annotations

import platform as _platform
import sys
from dataclasses import dataclass
from enum import Enum

from upstream.core.models import Kind

ARCHIVE_EXTENSIONS = (
    ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz",
    ".zip", ".tar", ".7z", ".rar",
)
COMPRESSION_EXTENSIONS = (".gz", ".bz2", ".xz", ".br")
CHECKSUM_EXTENSIONS = (
    ".sha256", ".sha512", ".sha1", ".md5", ".sig", ".asc", ".minisig", ".sum",
    ".sha256sum", ".sha512sum", ".pem", ".sbom", ".intoto.jsonl",
)
CHECKSUM_NAMES = ("checksums", "sha256sums", "sha512sums", "sha256sum", "shasums")
MACAPP_EXTENSIONS = (".dmg", ".app", ".app.zip", ".pkg")
# 明显不是可执行文件的扩展名（scraper/auto 模式下剔除）
NON_BINARY_EXTENSIONS = (
    ".txt", ".md", ".json", ".yml", ".yaml", ".html", ".htm", ".deb", ".rpm",
    ".apk", ".msi", ".snap", ".flatpak", ".whl", ".jar", ".pdf", ".png", ".svg",
)


class OSKind(str, Enum):
    LINUX = "linux"
    MACOS = "macos"
    WINDOWS = "windows"
    FREEBSD = "freebsd"
    OPENBSD = "openbsd"
    NETBSD = "netbsd"
    ANDROID = "android"
    IOS = "ios"
    UNKNOWN = "unknown"


class CpuArch(str, Enum):
    X86 = "x86"
    X86_64 = "x86_64"
    ARM = "arm"
    AARCH64 = "aarch64"
    PPC64 = "ppc64"
    RISCV64 = "riscv64"
    S390X = "s390x"
    UNKNOWN = "unknown"


# 按顺序匹配，先命中者生效
_OS_MARKERS: list[tuple[OSKind, tuple[str, ...]]] = [
    (OSKind.WINDOWS, (".exe", ".msi", ".dll", "windows", "win64", "win32", "win", "msvc")),
    (OSKind.IOS, ("ios", "iphone", "ipad")),
    (OSKind.MACOS, ("macos", "darwin", "osx", "mac", "apple", ".dmg", ".app", ".pkg")),
    (OSKind.ANDROID, ("android", ".apk", ".aab")),
    (OSKind.LINUX, ("linux", "gnu", ".appimage", "musl")),
    (OSKind.FREEBSD, ("freebsd", "fbsd")),
    (OSKind.OPENBSD, ("openbsd", "obsd")),
    (OSKind.NETBSD, ("netbsd", "nbsd")),
]

_ARCH_MARKERS: list[tuple[CpuArch, tuple[str, ...]]] = [
    (CpuArch.AARCH64, ("aarch64", "arm64", "armv8")),
    (CpuArch.ARM, ("armv7", "armv7l", "armv7hf", "armhf", "armv6", "arm")),
    (CpuArch.X86_64, ("x86_64", "x86-64", "amd64", "x64", "win64")),
    (CpuArch.X86, ("x86_32", "x86-32", "i386", "i686", "386", "win32")),
    (CpuArch.PPC64, ("ppc64le", "ppc64", "powerpc64")),
    (CpuArch.RISCV64, ("riscv64",)),
    (CpuArch.S390X, ("s390x",)),
]

_COMPATIBLE_ARCH = {
    CpuArch.X86_64: frozenset((CpuArch.X86,)),
    CpuArch.AARCH64: frozenset((CpuArch.ARM,)),
}

_UNAME_ARCH = {
    "x86_64": CpuArch.X86_64, "amd64": CpuArch.X86_64,
    "i386": CpuArch.X86, "i686": CpuArch.X86, "x86": CpuArch.X86,
    "aarch64": CpuArch.AARCH64, "arm64": CpuArch.AARCH64,
    "armv7l": CpuArch.ARM, "armv6l": CpuArch.ARM, "arm": CpuArch.ARM,
    "ppc64le": CpuArch.PPC64, "ppc64": CpuArch.PPC64,
    "riscv64": CpuArch.RISCV64, "s390x": CpuArch.S390X,
}


def contains_marker(name: str, marker: str) -> bool:
    """marker 是否以单词边界出现在 name 中（name 需已小写）"""
    if marker.startswith("."):
        return name.endswith(marker)
    start = name.find(marker)
    while start != -1:
        end = start + len(marker)
        ok_start = start == 0 or not name[start - 1].isalnum()
        ok_end = end >= len(name) or not name[end].isalnum()
        if ok_start and ok_end:
            return True
        start = name.find(marker, start + 1)
    return False


def parse_os(filename: str) -> OSKind | None:
    name = filename.lower()
    for kind, markers in _OS_MARKERS:
        if any(contains_marker(name, m) for m in markers):
            return kind
    return None


def parse_arch(filename: str) -> CpuArch | None:
    name = filename.lower()
    for arch, markers in _ARCH_MARKERS:
        if any(contains_marker(name, m) for m in markers):
            return arch
    # 裸 "x86" 含糊：带 32 视为 32 位，否则按 64 位处理
    if contains_marker(name, "x86"):
        return CpuArch.X86 if "32" in name else CpuArch.X86_64
    return None


def is_checksum_name(filename: str) -> bool:
    name = filename.lower()
    if name.endswith(CHECKSUM_EXTENSIONS):
        return True
    stem = name.rsplit(".", 1)[0] if "." in name else name
    return any(contains_marker(stem, n) for n in CHECKSUM_NAMES)


def detect_kind(filename: str) -> Kind:
    """按扩展名判断资产类型；无法识别的一律视为裸二进制"""
    name = filename.lower()
    if name.endswith(".appimage"):
        return Kind.APPIMAGE
    if name.endswith(".exe"):
        return Kind.WINEXE
    if name.endswith(MACAPP_EXTENSIONS):
        return Kind.MACAPP
    if is_checksum_name(name):
        return Kind.CHECKSUM
    if name.endswith(ARCHIVE_EXTENSIONS):
        return Kind.ARCHIVE
    if name.endswith(COMPRESSION_EXTENSIONS):
        return Kind.COMPRESSED
    return Kind.BINARY


def looks_installable(filename: str) -> bool:
    """scraper 链接过滤：可安装的资产扩展名或无扩展名的二进制"""
    name = filename.lower()
    if not name or name.endswith(NON_BINARY_EXTENSIONS) or is_checksum_name(name):
        return False
    kind = detect_kind(name)
    if kind is not Kind.BINARY:
        return True
    # 裸二进制：无扩展名，或带平台标记
    return "." not in name or parse_os(name) is not None or parse_arch(name) is not None


@dataclass(frozen=True)
class Host:
    """当前主机的 OS + 架构"""

    os: OSKind
    arch: CpuArch

    @classmethod
    def detect(cls) -> Host:
        if sys.platform.startswith("linux"):
            os_kind = OSKind.LINUX
        elif sys.platform == "darwin":
            os_kind = OSKind.MACOS
        elif sys.platform.startswith(("win", "cygwin")):
            os_kind = OSKind.WINDOWS
        elif sys.platform.startswith("freebsd"):
            os_kind = OSKind.FREEBSD
        else:
            os_kind = OSKind.UNKNOWN
        arch = _UNAME_ARCH.get(_platform.machine().lower(), CpuArch.UNKNOWN)
        return cls(os=os_kind, arch=arch)

    def accepts_arch(self, arch: CpuArch) -> bool:
        return arch == self.arch or arch in _COMPATIBLE_ARCH.get(self.arch, frozenset())

    def kind_preference(self) -> list[Kind]:
        """auto 模式下的类型偏好，越靠前越优先"""
        if self.os is OSKind.MACOS:
            return [Kind.MACAPP, Kind.ARCHIVE, Kind.COMPRESSED, Kind.BINARY]
        if self.os is OSKind.WINDOWS:
            return [Kind.WINEXE, Kind.ARCHIVE, Kind.COMPRESSED, Kind.BINARY]
        return [Kind.APPIMAGE, Kind.ARCHIVE, Kind.COMPRESSED, Kind.BINARY]
