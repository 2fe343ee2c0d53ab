"""网络工具 — URL 校验 + 带重试的 HTTP 客户端

HttpClient 基于 urllib.request，提供:
  - JSON 查询（来源 API）
  - 条件请求（If-Modified-Since / If-None-Match），304 返回 None
  - 流式下载到文件（先写 .part 再 rename）
  - 有界超时；超时/连接失败/5xx 归类为 NetworkError 并按指数退避重试
"""

from __future__ import annotations

import json
import logging
import socket
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

from upstream import __version__
from upstream.core.exceptions import (
    NetworkError,
    ProviderError,
    ProviderNotFoundError,
    RateLimitedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = frozenset(("http", "https"))

DEFAULT_CHUNK_SIZE = 64 * 1024

# 读取过程中的瞬时错误（HTTPError 是 URLError 子类，需先于此元组捕获）
_TRANSIENT_ERRORS = (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError)


def validate_url_scheme(url: str, *, context: str = "") -> None:
    """校验 URL 仅使用 http/https，防止 file:// 等非预期协议访问

    Raises:
        ValidationError: URL scheme 不在白名单内
    """
    parsed = urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        label = f" ({context})" if context else ""
        raise ValidationError(
            f"不允许的 URL 协议 '{parsed.scheme}'{label}，"
            f"仅支持 http/https: {url}"
        )


def normalize_url(url_or_host: str) -> str:
    """裸域名/路径补全为 https URL"""
    raw = url_or_host.strip()
    if raw.startswith(("http://", "https://")):
        return raw
    return f"https://{raw}"


def file_name_from_url(url: str) -> str:
    """从 URL 路径最后一段推导文件名（去掉 query/fragment）"""
    path = urlparse(url).path
    name = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    return name


def format_http_date(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)


def parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).astimezone(timezone.utc)
    except (TypeError, ValueError):
        return None


# =========================================================================
# 响应与重试策略
# =========================================================================

@dataclass
class HttpResponse:
    """HTTP 响应（与 urllib 解耦，header 名统一小写）"""

    status: int
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: str = "") -> str:
        return self.headers.get(name.lower(), default)

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))

    @property
    def etag(self) -> str:
        return self.header("etag").strip().strip('"')

    @property
    def last_modified(self) -> datetime | None:
        return parse_http_date(self.header("last-modified"))

    @property
    def content_length(self) -> int:
        try:
            return int(self.header("content-length", "0"))
        except ValueError:
            return 0


@dataclass
class RetryPolicy:
    """可重试错误（NetworkError）的重试策略"""

    attempts: int = 3
    backoff: float = 0.5      # 首次退避秒数，之后翻倍
    max_backoff: float = 8.0

    def delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** (attempt - 1)), self.max_backoff)


Opener = Callable[..., Any]


class HttpClient:
    """带超时与重试的 HTTP 客户端"""

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        retry: RetryPolicy | None = None,
        user_agent: str = "",
        opener: Opener | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.retry = retry or RetryPolicy()
        self.user_agent = user_agent or f"upstream/{__version__}"
        self._opener = opener or urllib.request.urlopen
        self._sleep = sleep

    # ------------------------------------------------------------------
    # 公共接口
    # ------------------------------------------------------------------

    def request(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        if_modified_since: datetime | None = None,
        etag: str = "",
    ) -> HttpResponse | None:
        """发送请求并读取完整响应体；条件请求命中 304 时返回 None"""
        validate_url_scheme(url, context=f"{method} request")
        hdrs = dict(headers or {})
        if if_modified_since is not None:
            hdrs["If-Modified-Since"] = format_http_date(if_modified_since)
        if etag:
            hdrs["If-None-Match"] = f'"{etag}"'

        def _do() -> HttpResponse | None:
            req = self._build_request(url, method, hdrs)
            try:
                with self._open(req) as resp:
                    body = resp.read() if method != "HEAD" else b""
                    return self._to_response(resp, body)
            except urllib.error.HTTPError as e:
                if e.code == 304:
                    return None
                raise self._classify_http_error(url, e) from e
            except _TRANSIENT_ERRORS as e:
                raise NetworkError(f"读取响应失败: {url} - {e}") from e

        return self._with_retry(url, _do)

    def get_json(self, url: str, headers: dict[str, str] | None = None) -> Any:
        """GET 并解析 JSON；非法 JSON 归类为 ProviderError"""
        resp = self.request(url, headers={"Accept": "application/json", **(headers or {})})
        if resp is None:
            raise ProviderError(f"意外的 304 响应: {url}")
        try:
            return resp.json()
        except (ValueError, UnicodeDecodeError) as e:
            raise ProviderError(f"响应不是合法 JSON: {url} - {e}") from e

    def probe(self, url: str, headers: dict[str, str] | None = None) -> HttpResponse:
        """HEAD 请求获取 size / etag / last-modified"""
        resp = self.request(url, method="HEAD", headers=headers)
        if resp is None:
            raise ProviderError(f"意外的 304 响应: {url}")
        return resp

    def download(
        self,
        url: str,
        dest: Path,
        *,
        headers: dict[str, str] | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        progress: Callable[[int, int], None] | None = None,
    ) -> HttpResponse:
        """流式下载到 dest；先写 dest.part，完成后 rename，失败清理残留"""
        validate_url_scheme(url, context="download")
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        hdrs = {"Accept": "application/octet-stream", **(headers or {})}

        def _do() -> HttpResponse:
            req = self._build_request(url, "GET", hdrs)
            try:
                with self._open(req) as resp, open(part, "wb") as out:
                    total = _int_header(resp, "Content-Length")
                    done = 0
                    for chunk in iter(lambda: resp.read(chunk_size), b""):
                        out.write(chunk)
                        done += len(chunk)
                        if progress is not None:
                            progress(done, total)
                    result = self._to_response(resp, b"")
            except urllib.error.HTTPError as e:
                part.unlink(missing_ok=True)
                raise self._classify_http_error(url, e) from e
            except _TRANSIENT_ERRORS as e:
                part.unlink(missing_ok=True)
                raise NetworkError(f"下载中断: {url} - {e}") from e
            except BaseException:
                part.unlink(missing_ok=True)
                raise
            part.replace(dest)
            return result

        resp = self._with_retry(url, _do)
        logger.info("已下载: %s -> %s", url, dest)
        return resp

    # ------------------------------------------------------------------
    # 内部实现
    # ------------------------------------------------------------------

    def _build_request(
        self, url: str, method: str, headers: dict[str, str],
    ) -> urllib.request.Request:
        req = urllib.request.Request(url, method=method)
        req.add_header("User-Agent", self.user_agent)
        for k, v in headers.items():
            req.add_header(k, v)
        return req

    def _open(self, req: urllib.request.Request) -> Any:
        try:
            return self._opener(req, timeout=self.timeout)  # nosec B310
        except urllib.error.HTTPError:
            raise
        except _TRANSIENT_ERRORS as e:
            raise NetworkError(f"请求失败: {req.full_url} - {e}") from e

    @staticmethod
    def _to_response(resp: Any, body: bytes) -> HttpResponse:
        headers = {k.lower(): v for k, v in resp.headers.items()}
        status = getattr(resp, "status", None) or resp.getcode()
        return HttpResponse(status=status, url=resp.geturl(), headers=headers, body=body)

    @staticmethod
    def _classify_http_error(url: str, e: urllib.error.HTTPError) -> ProviderError:
        headers = e.headers or {}
        if e.code in (404, 410):
            return ProviderNotFoundError(f"资源不存在 (HTTP {e.code}): {url}")
        if e.code == 429 or (e.code == 403 and headers.get("X-RateLimit-Remaining") == "0"):
            return RateLimitedError(
                f"被限流 (HTTP {e.code}): {url}",
                reset_at=headers.get("X-RateLimit-Reset", "") or "",
            )
        if e.code >= 500:
            return NetworkError(f"服务端错误 (HTTP {e.code}): {url}")
        return ProviderError(f"请求被拒绝 (HTTP {e.code}): {url}")

    def _with_retry(self, url: str, fn: Callable[[], Any]) -> Any:
        attempts = max(1, self.retry.attempts)
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except NetworkError as e:
                if attempt >= attempts:
                    logger.error("重试耗尽 (%d 次): %s - %s", attempts, url, e)
                    raise
                delay = self.retry.delay(attempt)
                logger.warning(
                    "网络错误，%.1fs 后重试 (%d/%d): %s - %s",
                    delay, attempt, attempts, url, e,
                )
                self._sleep(delay)
        raise AssertionError("unreachable")


def _int_header(resp: Any, name: str) -> int:
    try:
        return int(resp.headers.get(name) or 0)
    except (TypeError, ValueError):
        return 0
