"""测试替身：内存来源与伪造 HTTP"""

from __future__ import annotations

import email.message
import io
import tarfile
import urllib.error
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from upstream.core.exceptions import ProviderNotFoundError
from upstream.core.models import Asset, Channel, Provider, Release
from upstream.core.platform import CpuArch, Host, OSKind
from upstream.core.provider.base import BaseProvider, filter_channel, sort_releases

LINUX_X64 = Host(os=OSKind.LINUX, arch=CpuArch.X86_64)


# =========================================================================
# 来源替身
# =========================================================================


def make_release(tag: str, blobs: dict[str, bytes], *, prerelease: bool = False) -> Release:
    """按 blobs 的键生成资产列表"""
    return Release(
        tag=tag,
        published_at=f"2024-01-{len(tag):02d}T00:00:00Z",
        prerelease=prerelease,
        assets=[
            Asset(name=n, download_url=f"https://example.invalid/{tag}/{n}", size=len(b))
            for n, b in blobs.items()
        ],
    )


def tar_gz(members: dict[str, bytes], mode: int = 0o755) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeProvider(BaseProvider):
    """内存中的 release 与资产内容，不访问网络"""

    kind = Provider.GITHUB

    def __init__(self) -> None:
        super().__init__(http=None)  # type: ignore[arg-type]
        self.releases: list[Release] = []
        self.blobs: dict[str, bytes] = {}
        self.downloads: list[str] = []

    def publish(self, tag: str, blobs: dict[str, bytes], **kw: Any) -> Release:
        release = self.with_version(make_release(tag, blobs, **kw))
        self.releases.append(release)
        self.blobs.update({f"{tag}/{n}": b for n, b in blobs.items()})
        return release

    def list_releases(self, reference: str, channel: Channel = Channel.STABLE) -> list[Release]:
        return sort_releases(filter_channel(self.releases, channel))

    def fetch_release(self, reference: str, tag: str) -> Release:
        for r in self.releases:
            if r.tag == tag:
                return r
        raise ProviderNotFoundError(f"no such tag {tag}")

    def _blob(self, asset: Asset) -> bytes:
        tag = asset.download_url.rsplit("/", 2)[-2]
        return self.blobs[f"{tag}/{asset.name}"]

    def download(self, asset: Asset, dest: Path, progress: Any = None) -> Path:
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self._blob(asset))
        asset.etag = f"{asset.name}-{len(self._blob(asset))}"
        self.downloads.append(asset.name)
        return dest

    def fetch_text(self, asset: Asset) -> str:
        return self._blob(asset).decode("utf-8")


# =========================================================================
# HTTP 替身
# =========================================================================


class FakeResponse(io.BytesIO):
    def __init__(self, url: str, body: bytes, status: int = 200, headers: dict[str, str] | None = None):
        super().__init__(body)
        self.url = url
        self.status = status
        self.headers = email.message.Message()
        for k, v in (headers or {}).items():
            self.headers[k] = v

    def geturl(self) -> str:
        return self.url

    def getcode(self) -> int:
        return self.status


@dataclass
class FakeOpener:
    """按 URL 返回预设响应；status >= 300 时抛 HTTPError"""

    routes: dict[str, tuple[int, bytes, dict[str, str]]] = field(default_factory=dict)
    requests: list[Any] = field(default_factory=list)

    def add(self, url: str, body: bytes = b"", status: int = 200, **headers: str) -> None:
        self.routes[url] = (status, body, {k.replace("_", "-"): v for k, v in headers.items()})

    def __call__(self, req: Any, timeout: float = 0) -> FakeResponse:
        self.requests.append(req)
        url = req.full_url
        if url not in self.routes:
            raise urllib.error.HTTPError(url, 404, "Not Found", email.message.Message(), None)
        status, body, headers = self.routes[url]
        if status >= 300:
            hdrs = email.message.Message()
            for k, v in headers.items():
                hdrs[k] = v
            raise urllib.error.HTTPError(url, status, "error", hdrs, io.BytesIO(body))
        return FakeResponse(url, body, status, headers)

