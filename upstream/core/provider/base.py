"""来源（Provider）公共接口 - Strategy Pattern

职责:
- 定义所有来源的统一契约（列出 release、获取指定 tag、检查更新、下载资产）
- 通道过滤与排序（stable / nightly）
- 基于 HttpClient 的下载与校验文件读取

来源类型:
- API: github, gitlab, gitea
- 非 API: direct（固定 URL）, scraper（下载页抓取）
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path

from upstream.core.exceptions import ProviderError, ProviderNotFoundError
from upstream.core.models import Asset, Channel, PackageRecord, Provider, Release
from upstream.core.platform import contains_marker
from upstream.core.version import is_newer, parse_version, sort_key
from upstream.utils.net import HttpClient

logger = logging.getLogger(__name__)

NIGHTLY_MARKERS = ("nightly", "canary", "edge", "unstable", "dev")

# 校验文件最大读取大小
MAX_CHECKSUM_BYTES = 1024 * 1024


def is_nightly(release: Release) -> bool:
    tag = release.tag.lower()
    return release.prerelease or any(contains_marker(tag, m) for m in NIGHTLY_MARKERS)


def filter_channel(releases: list[Release], channel: Channel) -> list[Release]:
    """stable: 非草稿、非预发布、非 nightly；nightly: nightly 标记或预发布"""
    if channel is Channel.NIGHTLY:
        return [r for r in releases if not r.draft and is_nightly(r)]
    return [r for r in releases if not r.draft and not is_nightly(r)]


def sort_releases(releases: list[Release]) -> list[Release]:
    """最新在前：先按版本，再按发布时间"""
    return sorted(
        releases,
        key=lambda r: (sort_key(r.version or r.tag), r.published_at),
        reverse=True,
    )


class BaseProvider(ABC):
    """来源公共接口"""

    kind: Provider

    def __init__(self, http: HttpClient, *, token: str = "", base_url: str = "") -> None:
        self.http = http
        self.token = token
        self.base_url = base_url.rstrip("/")

    # ---- 必须实现 ----

    @abstractmethod
    def list_releases(self, reference: str, channel: Channel = Channel.STABLE) -> list[Release]:
        """列出 release，最新在前"""

    @abstractmethod
    def fetch_release(self, reference: str, tag: str) -> Release:
        """获取指定 tag 的 release"""

    # ---- 通用实现 ----

    def latest_release(self, reference: str, channel: Channel = Channel.STABLE) -> Release:
        releases = self.list_releases(reference, channel)
        if not releases:
            raise ProviderNotFoundError(
                f"{self.kind.value}:{reference} 在 {channel.value} 通道没有可用的 release"
            )
        return releases[0]

    def check_for_update(self, record: PackageRecord) -> Release | None:
        """有更新时返回新 release，否则返回 None"""
        latest = self.latest_release(record.repo_reference, record.channel)
        if is_newer(latest.tag, record.installed_version):
            return latest
        logger.info("%s 已是最新: %s", record.name, record.installed_version)
        return None

    def resolve_asset_url(self, asset: Asset) -> str:
        return asset.download_url

    def request_headers(self) -> dict[str, str]:
        """下载与查询时附加的认证头"""
        return {}

    def download(
        self,
        asset: Asset,
        dest: Path,
        progress: Callable[[int, int], None] | None = None,
    ) -> Path:
        url = self.resolve_asset_url(asset)
        logger.info("下载 %s -> %s", url, dest)
        resp = self.http.download(url, dest, headers=self.request_headers(), progress=progress)
        if not asset.etag and resp.etag:
            asset.etag = resp.etag
        if not asset.last_modified and resp.header("last-modified"):
            asset.last_modified = resp.header("last-modified")
        if not asset.size:
            asset.size = dest.stat().st_size
        return dest

    def fetch_text(self, asset: Asset) -> str:
        """读取小型文本资产（校验文件）"""
        if asset.size and asset.size > MAX_CHECKSUM_BYTES:
            raise ProviderError(f"校验文件过大: {asset.name} ({asset.size} 字节)")
        resp = self.http.request(self.resolve_asset_url(asset), headers=self.request_headers())
        if resp is None:
            raise ProviderError(f"意外的 304 响应: {asset.name}")
        return resp.body[:MAX_CHECKSUM_BYTES].decode("utf-8", errors="replace")

    @staticmethod
    def with_version(release: Release) -> Release:
        """根据 tag 填充解析出的版本号"""
        if not release.version:
            v = parse_version(release.tag)
            release.version = str(v) if v is not None else ""
        return release
