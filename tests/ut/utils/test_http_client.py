"""HttpClient 测试（urllib opener 替身）"""

from __future__ import annotations

import email.message
import urllib.error
from pathlib import Path

import pytest

from tests.helpers import FakeOpener, FakeResponse
from upstream.core.exceptions import (
    NetworkError,
    ProviderError,
    ProviderNotFoundError,
    RateLimitedError,
    ValidationError,
)
from upstream.utils.net import HttpClient, RetryPolicy, file_name_from_url, validate_url_scheme

URL = "https://example.com/file"


def _client(opener, attempts: int = 3, sleeps: list[float] | None = None) -> HttpClient:
    sink = sleeps if sleeps is not None else []
    return HttpClient(opener=opener, retry=RetryPolicy(attempts=attempts, backoff=0.5), sleep=sink.append)


class _Flaky:
    """前 failures 次返回 503，之后返回 body"""

    def __init__(self, failures: int, body: bytes = b"ok") -> None:
        self.failures = failures
        self.body = body
        self.calls = 0

    def __call__(self, req, timeout: float = 0):
        self.calls += 1
        if self.calls <= self.failures:
            raise urllib.error.HTTPError(req.full_url, 503, "busy", email.message.Message(), None)
        return FakeResponse(req.full_url, self.body)


class TestRequest:
    def test_get(self) -> None:
        opener = FakeOpener()
        opener.add(URL, b"hello", etag='"v1"')
        resp = _client(opener).request(URL)
        assert resp.text() == "hello"
        assert resp.etag == "v1"
        assert opener.requests[0].get_header("User-agent").startswith("upstream/")

    def test_conditional_304(self) -> None:
        opener = FakeOpener()
        opener.add(URL, status=304)
        assert _client(opener).request(URL, etag="v1") is None
        assert opener.requests[0].get_header("If-none-match") == '"v1"'

    def test_retry_then_success(self) -> None:
        sleeps: list[float] = []
        opener = _Flaky(failures=2)
        resp = _client(opener, sleeps=sleeps).request(URL)
        assert resp.body == b"ok"
        assert opener.calls == 3
        assert sleeps == [0.5, 1.0]

    def test_retry_exhausted(self) -> None:
        opener = _Flaky(failures=5)
        with pytest.raises(NetworkError):
            _client(opener, attempts=2).request(URL)
        assert opener.calls == 2

    def test_not_found_not_retried(self) -> None:
        opener = FakeOpener()
        with pytest.raises(ProviderNotFoundError):
            _client(opener).request(URL)
        assert len(opener.requests) == 1

    def test_rate_limited(self) -> None:
        opener = FakeOpener()
        opener.add(URL, status=403, X_RateLimit_Remaining="0", X_RateLimit_Reset="1700000000")
        with pytest.raises(RateLimitedError) as exc_info:
            _client(opener).request(URL)
        assert exc_info.value.reset_at == "1700000000"

    def test_connection_error_is_network_error(self) -> None:
        def refuse(req, timeout: float = 0):
            raise urllib.error.URLError("connection refused")

        with pytest.raises(NetworkError):
            _client(refuse, attempts=1).request(URL)

    def test_invalid_json(self) -> None:
        opener = FakeOpener()
        opener.add(URL, b"<html>")
        with pytest.raises(ProviderError):
            _client(opener).get_json(URL)

    def test_file_scheme_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _client(FakeOpener()).request("file:///etc/passwd")


class TestDownload:
    def test_streams_to_file(self, tmp_path: Path) -> None:
        opener = FakeOpener()
        opener.add(URL, b"x" * 100_000, Content_Length="100000")
        progress: list[tuple[int, int]] = []
        dest = tmp_path / "out" / "file"
        _client(opener).download(URL, dest, chunk_size=40_000, progress=lambda d, t: progress.append((d, t)))
        assert dest.read_bytes() == b"x" * 100_000
        assert progress[-1] == (100_000, 100_000)
        assert not (tmp_path / "out" / "file.part").exists()

    def test_failure_leaves_no_part(self, tmp_path: Path) -> None:
        opener = FakeOpener()
        opener.add(URL, status=500)
        dest = tmp_path / "file"
        with pytest.raises(NetworkError):
            _client(opener, attempts=1).download(URL, dest)
        assert not dest.exists()
        assert not (tmp_path / "file.part").exists()


def test_file_name_from_url() -> None:
    assert file_name_from_url("https://x/a/tool%20v1.tar.gz?token=1#frag") == "tool v1.tar.gz"


def test_validate_url_scheme() -> None:
    validate_url_scheme("http://example.com")
    with pytest.raises(ValidationError):
        validate_url_scheme("ftp://example.com")
