"""基于 REST API 的来源：GitHub / GitLab / Gitea

API 返回的 null 或缺失字段一律取默认值（空串、0、False），不抛异常。
自托管实例通过包记录的 base_url 或 providers.<name>.base_url 指定。
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from upstream.core.exceptions import ProviderError, ValidationError
from upstream.core.models import Asset, Channel, Provider, Release
from upstream.core.provider.base import BaseProvider, filter_channel, sort_releases
from upstream.utils.net import HttpClient, normalize_url

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50


def _s(value: Any) -> str:
    return "" if value is None else str(value)


def _i(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _b(value: Any) -> bool:
    return bool(value) if value is not None else False


def _slug(reference: str) -> str:
    """owner/repo；容忍完整 URL 和结尾的 .git"""
    ref = reference.strip().rstrip("/")
    if "://" in ref:
        ref = ref.split("://", 1)[1].split("/", 1)[-1]
    if ref.endswith(".git"):
        ref = ref[:-4]
    if ref.count("/") < 1 or not all(ref.split("/")):
        raise ValidationError(f"仓库引用应为 owner/repo 格式: '{reference}'")
    return ref


class ApiProvider(BaseProvider):
    """API 来源公共逻辑：分页查询 + DTO 解析"""

    default_base_url = ""

    def __init__(self, http: HttpClient, *, token: str = "", base_url: str = "") -> None:
        super().__init__(
            http, token=token, base_url=normalize_url(base_url or self.default_base_url),
        )

    def _get(self, url: str) -> Any:
        return self.http.get_json(url, headers=self.request_headers())

    def list_releases(self, reference: str, channel: Channel = Channel.STABLE) -> list[Release]:
        data = self._get(self._releases_url(_slug(reference)))
        if not isinstance(data, list):
            raise ProviderError(f"{self.kind.value} 返回了非列表的 release 数据: {reference}")
        releases = [self.with_version(self._parse_release(d)) for d in data if isinstance(d, dict)]
        return sort_releases(filter_channel(releases, channel))

    def fetch_release(self, reference: str, tag: str) -> Release:
        data = self._get(self._tag_url(_slug(reference), tag))
        if not isinstance(data, dict):
            raise ProviderError(f"{self.kind.value} 返回了无效的 release 数据: {reference}@{tag}")
        return self.with_version(self._parse_release(data))

    # ---- 子类实现 ----

    def _releases_url(self, slug: str) -> str:
        raise NotImplementedError

    def _tag_url(self, slug: str, tag: str) -> str:
        raise NotImplementedError

    def _parse_release(self, data: dict[str, Any]) -> Release:
        """GitHub / Gitea 共用的 DTO 格式"""
        assets = []
        for a in data.get("assets") or []:
            if not isinstance(a, dict):
                continue
            assets.append(Asset(
                name=_s(a.get("name")),
                download_url=_s(a.get("browser_download_url")),
                size=_i(a.get("size")),
                content_type=_s(a.get("content_type")),
                last_modified=_s(a.get("updated_at") or a.get("created_at")),
            ))
        return Release(
            tag=_s(data.get("tag_name")),
            published_at=_s(data.get("published_at") or data.get("created_at")),
            assets=[a for a in assets if a.name and a.download_url],
            prerelease=_b(data.get("prerelease")),
            draft=_b(data.get("draft")),
            name=_s(data.get("name")),
            body=_s(data.get("body")),
        )


class GitHubProvider(ApiProvider):
    kind = Provider.GITHUB
    default_base_url = "https://api.github.com"

    def request_headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _releases_url(self, slug: str) -> str:
        return f"{self.base_url}/repos/{slug}/releases?per_page={DEFAULT_PAGE_SIZE}"

    def _tag_url(self, slug: str, tag: str) -> str:
        return f"{self.base_url}/repos/{slug}/releases/tags/{quote(tag, safe='')}"


class GiteaProvider(ApiProvider):
    kind = Provider.GITEA
    default_base_url = "https://gitea.com"

    def request_headers(self) -> dict[str, str]:
        return {"Authorization": f"token {self.token}"} if self.token else {}

    def _releases_url(self, slug: str) -> str:
        return f"{self.base_url}/api/v1/repos/{slug}/releases?limit={DEFAULT_PAGE_SIZE}"

    def _tag_url(self, slug: str, tag: str) -> str:
        return f"{self.base_url}/api/v1/repos/{slug}/releases/tags/{quote(tag, safe='')}"


class GitLabProvider(ApiProvider):
    kind = Provider.GITLAB
    default_base_url = "https://gitlab.com"

    def request_headers(self) -> dict[str, str]:
        return {"PRIVATE-TOKEN": self.token} if self.token else {}

    def _project(self, slug: str) -> str:
        return quote(slug, safe="")

    def _releases_url(self, slug: str) -> str:
        return f"{self.base_url}/api/v4/projects/{self._project(slug)}/releases?per_page={DEFAULT_PAGE_SIZE}"

    def _tag_url(self, slug: str, tag: str) -> str:
        return f"{self.base_url}/api/v4/projects/{self._project(slug)}/releases/{quote(tag, safe='')}"

    def _parse_release(self, data: dict[str, Any]) -> Release:
        links = ((data.get("assets") or {}).get("links")) or []
        assets = []
        for link in links:
            if not isinstance(link, dict):
                continue
            url = _s(link.get("direct_asset_url") or link.get("url"))
            name = _s(link.get("name")) or url.rstrip("/").rsplit("/", 1)[-1]
            if name and url:
                assets.append(Asset(name=name, download_url=url))
        return Release(
            tag=_s(data.get("tag_name")),
            published_at=_s(data.get("released_at") or data.get("created_at")),
            assets=assets,
            prerelease=_b(data.get("upcoming_release")),
            name=_s(data.get("name")),
            body=_s(data.get("description")),
        )
