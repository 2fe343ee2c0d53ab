"""直链来源：引用本身就是下载 URL

只有一个合成的 release 和一个资产；版本号尽量从文件名解析。
更新检查使用条件请求（If-Modified-Since / If-None-Match），
304 视为最新，否则比较版本号或资产指纹（etag，其次 last-modified + size）。
"""

from __future__ import annotations

import logging
from datetime import datetime

from upstream.core.exceptions import ProviderError, ValidationError
from upstream.core.models import Asset, Channel, PackageRecord, Provider, Release
from upstream.core.provider.base import BaseProvider
from upstream.core.version import is_newer, parse_version
from upstream.utils.net import HttpResponse, file_name_from_url, normalize_url

logger = logging.getLogger(__name__)

UNVERSIONED_TAG = "latest"


def parse_iso(value: str) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def fingerprint_changed(record: PackageRecord, asset: Asset) -> bool:
    """资产指纹与记录不一致；任一方没有指纹时视为未变化"""
    new = asset.fingerprint
    return bool(new and record.source_fingerprint and new != record.source_fingerprint)


def release_for_url(url: str, resp: HttpResponse | None = None) -> Release:
    """为单个 URL 构造合成 release"""
    final_url = resp.url if resp is not None and resp.url else url
    name = file_name_from_url(final_url) or file_name_from_url(url)
    if not name:
        raise ValidationError(f"无法从 URL 推导文件名: {url}")
    asset = Asset(name=name, download_url=url)
    if resp is not None:
        asset.size = resp.content_length
        asset.etag = resp.etag
        asset.last_modified = resp.header("last-modified")
        asset.content_type = resp.header("content-type")
    version = parse_version(name)
    return Release(
        tag=str(version) if version is not None else UNVERSIONED_TAG,
        version=str(version) if version is not None else "",
        published_at=asset.last_modified,
        assets=[asset],
    )


class DirectProvider(BaseProvider):
    kind = Provider.DIRECT

    def _probe(self, url: str) -> HttpResponse | None:
        """HEAD 获取元数据；服务端不支持 HEAD 时返回 None"""
        try:
            return self.http.probe(url, headers=self.request_headers())
        except ProviderError as e:
            logger.debug("HEAD 失败，继续使用无元数据的资产: %s - %s", url, e)
            return None

    def list_releases(self, reference: str, channel: Channel = Channel.STABLE) -> list[Release]:
        url = normalize_url(reference)
        return [release_for_url(url, self._probe(url))]

    def fetch_release(self, reference: str, tag: str) -> Release:
        release = self.list_releases(reference)[0]
        if tag and tag not in (release.tag, UNVERSIONED_TAG):
            logger.warning("直链来源不支持指定 tag，忽略: %s", tag)
        return release

    def check_for_update(self, record: PackageRecord) -> Release | None:
        url = normalize_url(record.repo_reference)
        etag = record.source_fingerprint[5:] if record.source_fingerprint.startswith("etag:") else ""
        resp = self.http.request(
            url,
            method="HEAD",
            headers=self.request_headers(),
            if_modified_since=parse_iso(record.last_updated_at),
            etag=etag,
        )
        if resp is None:
            logger.info("%s 未修改 (304)", record.name)
            return None
        release = release_for_url(url, resp)
        if release.version and parse_version(record.installed_version) is not None:
            return release if is_newer(release.version, record.installed_version) else None
        if fingerprint_changed(record, release.assets[0]):
            return release
        if not record.source_fingerprint and release.tag != record.installed_version:
            return release
        return None
