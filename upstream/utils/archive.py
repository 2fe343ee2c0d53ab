"""归档解包

extract(path, dest) 把归档或压缩文件解到 dest 目录，返回解出的文件列表。
  - tar / tar.gz / tgz / tar.bz2 / tbz2 / tar.xz / txz  → tarfile
  - zip                                                → zipfile（保留 unix 权限位）
  - 单文件 .gz / .bz2 / .xz                             → gzip / bz2 / lzma
拒绝绝对路径、".." 越界和指向目录外的链接。
"""

from __future__ import annotations

import bz2
import gzip
import logging
import lzma
import os
import shutil
import tarfile
import zipfile
from pathlib import Path

from upstream.core.exceptions import ArchiveError

logger = logging.getLogger(__name__)

TAR_SUFFIXES = (".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar.xz", ".txz", ".tar")
ZIP_SUFFIXES = (".zip", ".app.zip")
_SINGLE_FILE = {".gz": gzip.open, ".bz2": bz2.open, ".xz": lzma.open}
UNSUPPORTED_SUFFIXES = (".7z", ".rar", ".br", ".zst")


def is_extractable(filename: str) -> bool:
    name = filename.lower()
    return name.endswith(TAR_SUFFIXES + ZIP_SUFFIXES + tuple(_SINGLE_FILE))


def _safe_target(dest: Path, member_name: str) -> Path:
    target = (dest / member_name).resolve()
    root = dest.resolve()
    if target != root and root not in target.parents:
        raise ArchiveError(f"归档成员越界: {member_name}")
    return target


def _extract_tar(path: Path, dest: Path) -> None:
    try:
        with tarfile.open(path, "r:*") as tar:
            for member in tar.getmembers():
                _safe_target(dest, member.name)
                if member.issym():
                    _safe_target(dest, os.path.join(os.path.dirname(member.name), member.linkname))
                elif member.islnk():
                    _safe_target(dest, member.linkname)
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest, filter="data")
            else:
                tar.extractall(dest)  # nosec B202 - 成员已在上方校验
    except (tarfile.TarError, EOFError) as e:
        raise ArchiveError(f"tar 归档损坏: {path.name} - {e}") from e


def _extract_zip(path: Path, dest: Path) -> None:
    try:
        with zipfile.ZipFile(path) as zf:
            for info in zf.infolist():
                target = _safe_target(dest, info.filename)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
                mode = (info.external_attr >> 16) & 0o777
                if mode:
                    target.chmod(mode)
    except zipfile.BadZipFile as e:
        raise ArchiveError(f"zip 归档损坏: {path.name} - {e}") from e


def _decompress(path: Path, dest: Path, suffix: str) -> None:
    out_name = path.name[: -len(suffix)] or "payload"
    target = dest / out_name
    try:
        with _SINGLE_FILE[suffix](path, "rb") as src, open(target, "wb") as out:
            shutil.copyfileobj(src, out)
    except (OSError, EOFError, lzma.LZMAError) as e:
        target.unlink(missing_ok=True)
        raise ArchiveError(f"解压失败: {path.name} - {e}") from e


def extract(path: Path, dest: Path) -> list[Path]:
    """解包到 dest，返回 dest 下所有普通文件（排序后）"""
    name = path.name.lower()
    dest.mkdir(parents=True, exist_ok=True)
    if name.endswith(TAR_SUFFIXES):
        _extract_tar(path, dest)
    elif name.endswith(ZIP_SUFFIXES):
        _extract_zip(path, dest)
    elif name.endswith(UNSUPPORTED_SUFFIXES):
        raise ArchiveError(f"不支持的归档格式: {path.name}")
    else:
        for suffix in _SINGLE_FILE:
            if name.endswith(suffix):
                _decompress(path, dest, suffix)
                break
        else:
            raise ArchiveError(f"无法识别的归档格式: {path.name}")
    files = sorted(p for p in dest.rglob("*") if p.is_file() and not p.is_symlink())
    logger.info("已解包 %s: %d 个文件", path.name, len(files))
    return files
