"""文件系统原语

- move_path: 原子 rename，跨设备 (EXDEV) 时回退为 copy + remove
- replace_symlink: 临时链接 + os.replace 原子替换
- make_executable / is_executable
- remove_path: 文件/目录/链接统一删除
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
import uuid
from collections.abc import Callable
from pathlib import Path

from upstream.core.exceptions import FilesystemError

logger = logging.getLogger(__name__)

_PERMISSION_HINT = "请检查目标目录的写权限，或确认未以其他用户身份安装过"

RenameFn = Callable[[str, str], None]


def is_cross_device(err: OSError) -> bool:
    return err.errno == errno.EXDEV


def move_path(src: Path, dst: Path, *, rename: RenameFn = os.rename) -> None:
    """移动文件或目录到 dst（dst 不得已存在）

    同一文件系统内使用 rename（原子）；跨设备时复制后删除源，
    保留权限位与目录内的符号链接。
    """
    if dst.exists() or dst.is_symlink():
        raise FilesystemError(f"目标已存在: {dst}")
    dst.parent.mkdir(parents=True, exist_ok=True)
    try:
        rename(str(src), str(dst))
        return
    except PermissionError as e:
        raise FilesystemError(f"移动失败 {src} -> {dst}: {e}", hint=_PERMISSION_HINT) from e
    except OSError as e:
        if not is_cross_device(e):
            raise FilesystemError(f"移动失败 {src} -> {dst}: {e}") from e
        logger.info("跨设备移动，回退为复制: %s -> %s", src, dst)

    try:
        _copy_then_remove(src, dst)
    except PermissionError as e:
        raise FilesystemError(f"复制失败 {src} -> {dst}: {e}", hint=_PERMISSION_HINT) from e
    except OSError as e:
        remove_path(dst)
        raise FilesystemError(f"复制失败 {src} -> {dst}: {e}") from e


def _copy_then_remove(src: Path, dst: Path) -> None:
    if src.is_symlink():
        os.symlink(os.readlink(src), dst)
        src.unlink()
    elif src.is_dir():
        shutil.copytree(src, dst, symlinks=True, copy_function=shutil.copy2)
        shutil.rmtree(src)
    else:
        shutil.copy2(src, dst)
        src.unlink()


def remove_path(path: Path) -> bool:
    """删除文件/目录/符号链接（含悬空链接），不存在时返回 False"""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def make_executable(path: Path) -> None:
    """为 owner/group/other 中已有读权限的位补上执行位"""
    mode = path.stat().st_mode
    exec_bits = stat.S_IXUSR
    if mode & stat.S_IRGRP:
        exec_bits |= stat.S_IXGRP
    if mode & stat.S_IROTH:
        exec_bits |= stat.S_IXOTH
    try:
        path.chmod(mode | exec_bits)
    except PermissionError as e:
        raise FilesystemError(f"无法设置可执行权限: {path}", hint=_PERMISSION_HINT) from e


def is_executable(path: Path) -> bool:
    try:
        return path.is_file() and bool(path.stat().st_mode & stat.S_IXUSR)
    except OSError:
        return False


def replace_symlink(link: Path, target: Path | str) -> None:
    """原子地把 link 指向 target（不要求 target 存在）

    先在同目录创建临时链接，再 os.replace 覆盖，避免出现
    "旧链接已删、新链接未建" 的窗口。
    """
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.exists() and not link.is_symlink():
        raise FilesystemError(f"链接位置被普通文件占用: {link}")
    tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        os.symlink(str(target), tmp)
        os.replace(tmp, link)
    except PermissionError as e:
        _silent_unlink(tmp)
        raise FilesystemError(f"创建链接失败: {link}", hint=_PERMISSION_HINT) from e
    except OSError as e:
        _silent_unlink(tmp)
        raise FilesystemError(f"创建链接失败: {link} -> {target}: {e}") from e


def read_link(link: Path) -> str | None:
    """返回链接的字面目标；不是链接时返回 None"""
    if not link.is_symlink():
        return None
    return os.readlink(link)


def link_points_to(link: Path, target: Path) -> bool:
    """link 是否为解析到 target 的符号链接"""
    if not link.is_symlink():
        return False
    try:
        return link.resolve(strict=True) == target.resolve(strict=True)
    except (OSError, RuntimeError):
        return False


def is_within(path: Path, root: Path) -> bool:
    """path 是否位于 root 之内（不跟随末端链接）"""
    try:
        Path(os.path.abspath(path)).relative_to(os.path.abspath(root))
        return True
    except ValueError:
        return False


def _silent_unlink(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
