"""日志配置

日志一律写 stderr，stdout 只留给命令结果（list、config get、package metadata
会被管道消费）。UPSTREAM_LOG_JSON=1 时输出一行一个 JSON 对象。
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

# DEBUG 时带上时间与 logger 名，其余级别只给用户看消息本身
_VERBOSE_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"
_BRIEF_FORMAT = "upstream: %(levelname)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """每条记录一个 JSON 对象

    字段: timestamp、level、logger、message、location；
    通过 extra={"package": name} 传入的包名输出为 package；
    有异常时附加 exception。
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        package = getattr(record, "package", None)
        if package:
            entry["package"] = package
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(level: str = "WARNING", json_output: bool = False, stream: TextIO | None = None) -> None:
    """配置根日志器；重复调用只保留最后一次的 handler

    无法识别的级别名按 WARNING 处理。
    """
    reset_logging()
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.WARNING

    handler = logging.StreamHandler(stream or sys.stderr)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT if numeric <= logging.DEBUG else _BRIEF_FORMAT))

    root = logging.getLogger()
    root.setLevel(numeric)
    root.addHandler(handler)


def reset_logging() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
