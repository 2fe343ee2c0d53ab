"""下载页抓取来源

抓取列表页：
  - 响应不是 HTML → URL 本身就是资产（退化为直链）
  - 否则提取 <a href>，拼接为绝对 URL，保留 http/https、扩展名在允许列表中的链接，
    去重并剔除校验文件；从文件名解析版本，release 只保留版本最高的那批资产
更新检查：条件请求 304 → 最新；否则比较版本号，或在无版本时比较资产指纹。
"""

from __future__ import annotations

import logging
from html.parser import HTMLParser
from urllib.parse import urljoin, urlparse

from upstream.core.exceptions import ProviderError, ProviderNotFoundError
from upstream.core.models import Asset, Channel, PackageRecord, Provider, Release
from upstream.core.platform import looks_installable
from upstream.core.provider.base import BaseProvider
from upstream.core.provider.direct import (
    UNVERSIONED_TAG,
    fingerprint_changed,
    parse_iso,
    release_for_url,
)
from upstream.core.version import is_newer, parse_version
from upstream.utils.net import HttpResponse, file_name_from_url, normalize_url

logger = logging.getLogger(__name__)

_SKIP_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")


class _LinkCollector(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.hrefs: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag.lower() != "a":
            return
        for key, value in attrs:
            if key.lower() == "href" and value:
                self.hrefs.append(value.strip())


def extract_links(html: str, base_url: str) -> list[str]:
    """提取可安装资产的绝对链接（保持页面顺序，去重）"""
    parser = _LinkCollector()
    parser.feed(html)
    parser.close()
    seen: set[str] = set()
    links: list[str] = []
    for href in parser.hrefs:
        if not href or href.lower().startswith(_SKIP_PREFIXES):
            continue
        url = urljoin(base_url, href).split("#", 1)[0]
        if urlparse(url).scheme not in ("http", "https") or url in seen:
            continue
        if not looks_installable(file_name_from_url(url)):
            continue
        seen.add(url)
        links.append(url)
    return links


def _is_html(resp: HttpResponse) -> bool:
    ctype = resp.header("content-type").lower()
    if "html" in ctype:
        return True
    if ctype:
        return False
    head = resp.body[:512].lstrip().lower()
    return head.startswith((b"<!doctype html", b"<html"))


def release_from_links(links: list[str]) -> Release:
    """按文件名中的版本分组，返回最高版本那一组；都没有版本时返回全部链接"""
    assets = [Asset(name=file_name_from_url(u), download_url=u) for u in links]
    versioned = [(parse_version(a.name), a) for a in assets]
    best = max((v for v, _ in versioned if v is not None), default=None)
    if best is None:
        return Release(tag=UNVERSIONED_TAG, assets=assets)
    chosen = [a for v, a in versioned if v is not None and v.key == best.key]
    return Release(tag=str(best), version=str(best), assets=chosen)


class ScraperProvider(BaseProvider):
    kind = Provider.SCRAPER

    def _release_from_response(self, url: str, resp: HttpResponse) -> Release:
        if not _is_html(resp):
            logger.info("非 HTML 响应，按直链处理: %s", url)
            return release_for_url(url, resp)
        links = extract_links(resp.text(), resp.url or url)
        if not links:
            raise ProviderNotFoundError(f"页面中没有可安装的下载链接: {url}")
        logger.debug("页面 %s 中发现 %d 个候选链接", url, len(links))
        return release_from_links(links)

    def list_releases(self, reference: str, channel: Channel = Channel.STABLE) -> list[Release]:
        url = normalize_url(reference)
        resp = self.http.request(url, headers=self.request_headers())
        if resp is None:
            raise ProviderError(f"意外的 304 响应: {url}")
        return [self._release_from_response(url, resp)]

    def fetch_release(self, reference: str, tag: str) -> Release:
        release = self.list_releases(reference)[0]
        if tag and tag != release.tag:
            raise ProviderNotFoundError(f"页面上找不到版本 {tag}（当前为 {release.tag}）")
        return release

    def check_for_update(self, record: PackageRecord) -> Release | None:
        url = normalize_url(record.repo_reference)
        resp = self.http.request(
            url,
            headers=self.request_headers(),
            if_modified_since=parse_iso(record.last_updated_at),
        )
        if resp is None:
            logger.info("%s 页面未修改 (304)", record.name)
            return None
        release = self._release_from_response(url, resp)
        if release.version and parse_version(record.installed_version) is not None:
            return release if is_newer(release.version, record.installed_version) else None
        if record.asset_name:
            # 无版本：探测上次安装的同名资产指纹
            current = next((a for a in release.assets if a.name == record.asset_name), None)
            if current is not None:
                probe = self.http.probe(current.download_url, headers=self.request_headers())
                current.etag = probe.etag
                current.last_modified = probe.header("last-modified")
                current.size = probe.content_length
                return release if fingerprint_changed(record, current) else None
        return release if release.tag != record.installed_version else None
