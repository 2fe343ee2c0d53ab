"""校验和查找与验证

在 release 中按顺序查找校验文件：
  <asset>.sha256 / <asset>.sha512 / checksums.txt / sha256sums.txt / sha256sum.txt /
  以及其他名字里带 checksums、sha256sums 的文件
支持的文本格式：
  "<digest>  <filename>"、"<digest> *<filename>"、单独一行 "<digest>"、
  BSD 风格 "SHA256 (<filename>) = <digest>"
摘要算法由摘要长度决定。
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from upstream.core.exceptions import IntegrityError, ProviderError
from upstream.core.models import Asset, Release
from upstream.core.platform import is_checksum_name

logger = logging.getLogger(__name__)

_ALGO_BY_LENGTH = {32: "md5", 40: "sha1", 64: "sha256", 128: "sha512"}
_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_BSD_RE = re.compile(r"^(?P<algo>\w+)\s*\((?P<name>.+)\)\s*=\s*(?P<digest>[0-9a-fA-F]+)$")
_AGGREGATE_NAMES = ("checksums.txt", "sha256sums.txt", "sha256sum.txt", "sha512sums.txt")
# 签名文件和其他资产专属的校验文件
_SKIP_SUFFIXES = (
    ".sig", ".asc", ".minisig", ".pem",
    ".sha256", ".sha512", ".sha256sum", ".sha512sum",
)

STATUS_VERIFIED = "verified"
STATUS_MISSING = "missing"
STATUS_SKIPPED = "skipped"


def file_digest(path: Path, algo: str = "sha256") -> str:
    h = hashlib.new(algo)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def algo_for(digest: str) -> str | None:
    if not _HEX_RE.match(digest):
        return None
    return _ALGO_BY_LENGTH.get(len(digest))


def parse_checksum_text(text: str, filename: str) -> str | None:
    """从校验文件内容中提取 filename 对应的摘要；找不到返回 None

    只有一行且只有摘要时，视为该文件自己的摘要。
    """
    lines = [ln.strip() for ln in text.splitlines() if ln.strip() and not ln.startswith("#")]
    for line in lines:
        m = _BSD_RE.match(line)
        if m and Path(m.group("name")).name == filename:
            return m.group("digest").lower()
        parts = line.split()
        if len(parts) >= 2 and algo_for(parts[0]):
            name = " ".join(parts[1:]).lstrip("*")
            if Path(name).name == filename:
                return parts[0].lower()
    if len(lines) == 1 and len(lines[0].split()) == 1 and algo_for(lines[0]):
        return lines[0].lower()
    return None


def checksum_candidates(release: Release, asset: Asset) -> list[Asset]:
    """按优先级返回可能包含 asset 摘要的校验文件"""
    by_name = {a.name.lower(): a for a in release.assets}
    ordered: list[Asset] = []
    for suffix in (".sha256", ".sha512", ".sha256sum", ".sha512sum"):
        hit = by_name.get(f"{asset.name.lower()}{suffix}")
        if hit is not None:
            ordered.append(hit)
    for name in _AGGREGATE_NAMES:
        hit = by_name.get(name)
        if hit is not None and hit not in ordered:
            ordered.append(hit)
    for a in release.assets:
        if a in ordered or a is asset:
            continue
        lower = a.name.lower()
        if not is_checksum_name(lower) or lower.endswith(_SKIP_SUFFIXES):
            continue
        ordered.append(a)
    return ordered


@dataclass
class ChecksumResult:
    status: str
    algo: str = ""
    digest: str = ""
    source: str = ""


class ChecksumVerifier:
    """根据 release 中的校验文件验证已下载的资产"""

    def __init__(self, fetch_text: Callable[[Asset], str]) -> None:
        self._fetch_text = fetch_text

    def expected_digest(self, release: Release, asset: Asset) -> tuple[str, str] | None:
        """返回 (摘要, 来源文件名)；release 中没有可用的校验文件时返回 None"""
        for candidate in checksum_candidates(release, asset):
            try:
                text = self._fetch_text(candidate)
            except (ProviderError, OSError, UnicodeDecodeError) as e:
                logger.warning("读取校验文件失败 %s: %s", candidate.name, e)
                continue
            digest = parse_checksum_text(text, asset.name)
            if digest:
                return digest, candidate.name
        return None

    def verify(
        self,
        release: Release,
        asset: Asset,
        path: Path,
        *,
        required: bool = False,
        ignore: bool = False,
    ) -> ChecksumResult:
        """验证 path 的摘要

        Raises:
            IntegrityError: 摘要不匹配，或 required=True 但找不到校验文件
        """
        if ignore:
            logger.info("已跳过校验和检查: %s", asset.name)
            return ChecksumResult(status=STATUS_SKIPPED)
        found = self.expected_digest(release, asset)
        if found is None:
            if required:
                raise IntegrityError(f"release {release.tag} 中找不到 {asset.name} 的校验和")
            logger.info("未找到校验和，跳过验证: %s", asset.name)
            return ChecksumResult(status=STATUS_MISSING)
        expected, source = found
        algo = algo_for(expected) or "sha256"
        actual = file_digest(path, algo)
        if actual != expected:
            raise IntegrityError(
                f"校验和不匹配 {asset.name}: 期望 {expected}, 实际 {actual}（来源 {source}）"
            )
        logger.info("校验和通过: %s (%s, 来源 %s)", asset.name, algo, source)
        return ChecksumResult(status=STATUS_VERIFIED, algo=algo, digest=actual, source=source)
