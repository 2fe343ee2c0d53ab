"""暂存区

每次安装/升级在 staging_root 下获得一个全新的槽位目录，下载、校验、解包都在
槽位内完成，绝不触碰安装目录。槽位在成功或失败后都会被清理。

prepare() 把下载的资产整理成待安装的载荷目录并定位可执行文件。
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from upstream.core.exceptions import ArchiveError, FilesystemError
from upstream.core.models import Kind
from upstream.core.platform import detect_kind
from upstream.utils.archive import extract
from upstream.utils.fsops import is_executable, make_executable, remove_path

logger = logging.getLogger(__name__)

# 解包后定位可执行文件时跳过的扩展名
_NON_EXEC_SUFFIXES = (
    ".so", ".dylib", ".dll", ".a", ".o", ".h", ".txt", ".md", ".rst", ".html", ".json",
    ".yml", ".yaml", ".toml", ".ini", ".cfg", ".conf", ".png", ".svg", ".ico", ".xpm",
    ".desktop", ".1", ".gz", ".sig", ".asc", ".pem", ".license", ".py", ".pyc",
)
_ICON_SUFFIXES = (".svg", ".png", ".xpm")


@dataclass
class StagedPayload:
    """整理好的待安装载荷"""

    payload_dir: Path
    exec_relpath: str
    kind: Kind
    desktop_file: Path | None = None
    icon_file: Path | None = None
    files: list[Path] = field(default_factory=list)


class StagingArea:
    """暂存槽位管理"""

    def __init__(self, staging_root: Path) -> None:
        self.staging_root = staging_root

    @contextmanager
    def slot(self, name: str) -> Iterator[Path]:
        """创建一次性槽位；退出时（无论成败）删除"""
        try:
            self.staging_root.mkdir(parents=True, exist_ok=True)
            path = Path(tempfile.mkdtemp(prefix=f"{name}-", dir=self.staging_root))
        except PermissionError as e:
            raise FilesystemError(
                f"无法创建暂存目录: {self.staging_root}", hint="请检查受管目录的写权限",
            ) from e
        logger.debug("暂存槽位: %s", path)
        try:
            yield path
        finally:
            try:
                remove_path(path)
            except OSError as e:
                logger.warning("清理暂存槽位失败: %s - %s", path, e)

    def leftovers(self) -> list[Path]:
        """残留槽位（异常退出时可能留下），供 doctor 报告"""
        if not self.staging_root.is_dir():
            return []
        return sorted(self.staging_root.iterdir())

    # ---- 载荷整理 ----

    def prepare(self, slot: Path, download: Path, package: str, kind: Kind) -> StagedPayload:
        """把下载文件整理到 slot/payload 下并定位可执行文件"""
        actual = detect_kind(download.name) if kind is Kind.AUTO else kind
        payload = slot / "payload"
        payload.mkdir()

        if actual in (Kind.ARCHIVE, Kind.COMPRESSED) or (
            actual is Kind.MACAPP and download.name.lower().endswith(".zip")
        ):
            files = extract(download, payload)
            if not files:
                raise ArchiveError(f"归档为空: {download.name}")
        elif actual is Kind.MACAPP:
            raise ArchiveError(f"暂不支持该 macOS 安装格式: {download.name}")
        else:
            target = payload / download.name
            shutil.move(str(download), target)
            files = [target]

        if len(files) == 1 and files[0].is_file():
            exec_file = files[0]
        elif actual is Kind.MACAPP:
            exec_file = _find_app_binary(payload)
        else:
            exec_file = find_executable(files, package)

        if actual is not Kind.CHECKSUM:
            make_executable(exec_file)
        staged = StagedPayload(
            payload_dir=payload,
            exec_relpath=os.path.relpath(exec_file, payload),
            kind=actual,
            desktop_file=_find_by_suffix(files, (".desktop",), package),
            icon_file=_find_by_suffix(files, _ICON_SUFFIXES, package),
            files=files,
        )
        logger.info("已整理载荷 %s: 可执行文件 %s", package, staged.exec_relpath)
        return staged


def _candidate_rank(path: Path, package: str) -> tuple[int, int, int, str]:
    name = path.name.lower()
    stem = name.split(".", 1)[0]
    pkg = package.lower()
    exact = 0 if stem == pkg else (1 if pkg in name else 2)
    executable = 0 if is_executable(path) else 1
    in_bin = 0 if path.parent.name == "bin" else 1
    return (exact, executable, in_bin + len(path.parts), str(path))


def find_executable(files: list[Path], package: str) -> Path:
    """在解包结果中定位主可执行文件

    优先级：文件名等于包名 > 包含包名；已有执行位；位于 bin/；路径更浅。
    """
    candidates = [
        f for f in files
        if f.is_file() and not f.name.lower().endswith(_NON_EXEC_SUFFIXES)
        and not f.name.startswith(".")
    ]
    if not candidates:
        raise ArchiveError(f"载荷中找不到可执行文件: {package}")
    candidates.sort(key=lambda p: _candidate_rank(p, package))
    return candidates[0]


def _find_app_binary(payload: Path) -> Path:
    for app in sorted(payload.rglob("*.app")):
        macos = app / "Contents" / "MacOS"
        if macos.is_dir():
            bins = sorted(p for p in macos.iterdir() if p.is_file())
            if bins:
                return bins[0]
    raise ArchiveError("找不到 .app/Contents/MacOS 下的可执行文件")


def _find_by_suffix(files: list[Path], suffixes: tuple[str, ...], package: str) -> Path | None:
    matches = [f for f in files if f.name.lower().endswith(suffixes)]
    if not matches:
        return None
    matches.sort(key=lambda p: (package.lower() not in p.name.lower(), len(p.parts), str(p)))
    return matches[0]
