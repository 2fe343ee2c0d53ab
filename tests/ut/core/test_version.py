"""版本解析测试"""

import pytest

from upstream.core.version import Version, is_newer, parse_version, sort_key


class TestParse:
    @pytest.mark.parametrize(("text", "expected"), [
        ("v1.2.3", Version(1, 2, 3)),
        ("1.2", Version(1, 2, 0)),
        ("release-1.2", Version(1, 2, 0)),
        ("1.2.3-rc1", Version(1, 2, 3, prerelease=True)),
        ("tool-1.4.0-linux-x86_64.tar.gz", Version(1, 4, 0)),
        ("v5", Version(5)),
    ])
    def test_parse(self, text: str, expected: Version) -> None:
        assert parse_version(text) == expected

    @pytest.mark.parametrize("text", ["", "   ", "nightly", "latest"])
    def test_unparseable(self, text: str) -> None:
        assert parse_version(text) is None


class TestCompare:
    def test_numeric_not_lexicographic(self) -> None:
        assert is_newer("v1.10.0", "v1.9.0")
        assert not is_newer("v1.9.0", "v1.10.0")

    def test_release_beats_prerelease(self) -> None:
        assert is_newer("1.0.0", "1.0.0-rc1")
        assert not is_newer("1.0.0-rc1", "1.0.0")

    def test_same_version(self) -> None:
        assert not is_newer("v2.0.0", "2.0.0")

    def test_empty_current(self) -> None:
        assert is_newer("v1.0.0", "")
        assert not is_newer("", "")

    def test_fallback_string_compare(self) -> None:
        assert is_newer("nightly-b", "nightly-a")
        assert not is_newer("nightly-a", "nightly-a")

    def test_sort_key(self) -> None:
        tags = ["v1.10.0", "nightly", "v1.2.0", "v1.2.0-beta"]
        assert sorted(tags, key=sort_key) == ["nightly", "v1.2.0-beta", "v1.2.0", "v1.10.0"]
