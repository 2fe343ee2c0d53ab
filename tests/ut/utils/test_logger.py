"""日志配置测试"""

from __future__ import annotations

import io
import json
import logging

from upstream.utils.logger import JSONFormatter, reset_logging, setup_logging


class TestSetupLogging:
    def teardown_method(self) -> None:
        reset_logging()

    def test_single_handler(self) -> None:
        setup_logging("INFO")
        setup_logging("DEBUG")
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.DEBUG

    def test_unknown_level_defaults_to_warning(self) -> None:
        setup_logging("chatty")
        assert logging.getLogger().level == logging.WARNING

    def test_json_formatter_selected(self) -> None:
        setup_logging(json_output=True)
        assert isinstance(logging.getLogger().handlers[0].formatter, JSONFormatter)

    def test_brief_format_for_users(self) -> None:
        buf = io.StringIO()
        setup_logging("WARNING", stream=buf)
        logging.getLogger("upstream.core.doctor").warning("链接 %s 悬空", "rg")
        assert buf.getvalue() == "upstream: WARNING: 链接 rg 悬空\n"

    def test_debug_includes_logger_name(self) -> None:
        buf = io.StringIO()
        setup_logging("DEBUG", stream=buf)
        logging.getLogger("upstream.core.lock").debug("已获取锁")
        assert "upstream.core.lock: 已获取锁" in buf.getvalue()


class TestJSONFormatter:
    def _record(self, **extra: object) -> logging.LogRecord:
        record = logging.LogRecord(
            "upstream.core.store", logging.INFO, __file__, 7, "包记录已添加: %s", ("rg",), None,
        )
        record.__dict__.update(extra)
        return record

    def test_fields(self) -> None:
        data = json.loads(JSONFormatter().format(self._record()))
        assert data["level"] == "INFO"
        assert data["logger"] == "upstream.core.store"
        assert data["message"] == "包记录已添加: rg"
        assert "package" not in data
        assert "exception" not in data

    def test_package_extra(self) -> None:
        data = json.loads(JSONFormatter().format(self._record(package="rg")))
        assert data["package"] == "rg"
