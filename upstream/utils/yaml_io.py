"""受管文件的读写

packages.yml、config.yml、导出清单、paths.sh、桌面入口都经由这里落盘：
同目录临时文件 + fsync + os.replace，读者看到的只会是完整的旧文件或新文件。
"""

from __future__ import annotations

import logging
import os
import stat
import tempfile
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# 元数据文件的读取上限；包记录即使上千条也远小于此
MAX_YAML_SIZE = 10 * 1024 * 1024
DEFAULT_FILE_MODE = 0o644


def _target_mode(path: Path) -> int:
    try:
        return stat.S_IMODE(path.stat().st_mode)
    except FileNotFoundError:
        return DEFAULT_FILE_MODE


def atomic_write(path: Path, content: str) -> None:
    """原子替换 path 的内容

    已存在的文件保留原权限，新文件为 0644（mkstemp 默认的 0600 会让
    桌面环境读不到 .desktop 文件）。失败时删除临时文件并原样抛出。
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    mode = _target_mode(path)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def load_yaml(path: str | Path) -> dict[str, Any]:
    """读取一个顶层为映射的 YAML 文件

    文件不存在或为空时返回 {}；顶层不是映射时记录警告并返回 {}。
    解析错误（yaml.YAMLError）与 IO 错误原样抛出，由调用方转换成
    ConfigError / ValidationError；超过 MAX_YAML_SIZE 抛 ValueError。
    """
    p = Path(path)
    try:
        size = p.stat().st_size
    except FileNotFoundError:
        return {}
    if size > MAX_YAML_SIZE:
        raise ValueError(f"YAML 文件过大: {p} ({size} 字节，上限 {MAX_YAML_SIZE})")

    with p.open(encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError:
            logger.error("YAML 解析失败: %s", p)
            raise

    if data is None:
        return {}
    if isinstance(data, dict):
        return data
    logger.warning("%s 顶层不是映射 (%s)，按空文件处理", p, type(data).__name__)
    return {}


def dump_yaml(data: Any) -> str:
    return yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)


def save_yaml(path: str | Path, data: Any) -> None:
    """序列化后原子写入"""
    atomic_write(Path(path), dump_yaml(data))
    logger.debug("已写入 %s", path)
