"""健康检查

只读检查受管目录、配置、锁、每个包的安装与链接、孤立链接、PATH 集成文件
以及残留暂存槽位。repair=True 时（需持有锁）修复可安全修复的问题：
重建可执行文件仍存在的链接、删除孤立链接与陈旧锁、重写 PATH 集成文件。

verify() 复算单文件安装的 sha256 并确认链接指向可执行文件。
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from upstream.core.checksum import file_digest
from upstream.core.engine.staging import StagingArea
from upstream.core.exceptions import ConfigError, UpstreamError
from upstream.core.lock import LockHandle, LockManager, require_lock
from upstream.core.models import PackageRecord
from upstream.core.paths import UpstreamPaths
from upstream.core.store import PackageStore
from upstream.utils.fsops import (
    is_executable,
    is_within,
    link_points_to,
    read_link,
    remove_path,
    replace_symlink,
)
from upstream.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)

OK = "ok"
WARN = "warn"
FAIL = "fail"


@dataclass
class Finding:
    level: str
    message: str
    package: str = ""
    path: str = ""
    repaired: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "level": self.level, "package": self.package, "path": self.path,
            "message": self.message, "repaired": self.repaired,
        }


def has_failures(findings: list[Finding]) -> bool:
    return any(f.level == FAIL and not f.repaired for f in findings)


class Doctor:
    """受管环境的健康检查与修复"""

    def __init__(
        self,
        paths: UpstreamPaths,
        store: PackageStore,
        lock: LockManager,
        load_config: Callable[[], object] | None = None,
    ) -> None:
        self.paths = paths
        self.store = store
        self.lock = lock
        self._load_config = load_config

    def run(self, *, repair: bool = False, handle: LockHandle | None = None) -> list[Finding]:
        if repair:
            require_lock(handle, "doctor --repair")
        findings: list[Finding] = []
        findings += self._check_dirs(repair)
        findings += self._check_config()
        findings += self._check_lock(repair, handle)
        records = self._load_records(findings)
        for record in records:
            findings += self._check_package(record, repair)
        findings += self._check_orphans(records, repair)
        findings += self._check_paths_file(repair)
        findings += self._check_staging()
        return findings

    # ---- 全局检查 ----

    def _check_dirs(self, repair: bool) -> list[Finding]:
        out = []
        for d in self.paths.managed_dirs():
            if d.is_dir():
                continue
            if repair:
                d.mkdir(parents=True, exist_ok=True)
                out.append(Finding(WARN, "目录缺失，已创建", path=str(d), repaired=True))
            else:
                out.append(Finding(FAIL, "受管目录不存在（运行 upstream init）", path=str(d)))
        if not out:
            out.append(Finding(OK, "受管目录完整", path=str(self.paths.root)))
        return out

    def _check_config(self) -> list[Finding]:
        if self._load_config is None:
            return []
        try:
            self._load_config()
        except ConfigError as e:
            return [Finding(FAIL, f"配置无效: {e}")]
        return [Finding(OK, "配置可解析")]

    def _check_lock(self, repair: bool, handle: LockHandle | None) -> list[Finding]:
        holder = self.lock.inspect()
        if not self.lock.is_locked():
            return [Finding(OK, "没有进程持有锁")]
        if handle is not None and handle.active:
            return [Finding(OK, "锁由当前进程持有", path=str(self.lock.lock_file))]
        if self.lock.is_stale():
            if repair and self.lock.clear_stale():
                return [Finding(WARN, "陈旧锁已删除", path=str(self.lock.lock_file), repaired=True)]
            return [Finding(FAIL, f"陈旧锁 (holder={holder})", path=str(self.lock.lock_file))]
        op = holder.operation if holder else "?"
        return [Finding(WARN, f"另一个进程正在执行 {op}", path=str(self.lock.lock_file))]

    def _load_records(self, findings: list[Finding]) -> list[PackageRecord]:
        try:
            return self.store.list()
        except UpstreamError as e:
            findings.append(Finding(FAIL, f"包记录无法读取: {e}", path=str(self.paths.packages_file)))
            return []

    # ---- 单包检查 ----

    def _check_package(self, record: PackageRecord, repair: bool) -> list[Finding]:
        name = record.name
        out: list[Finding] = []
        install = Path(record.install_path) if record.install_path else None
        if install is None:
            return [Finding(FAIL, "记录缺少安装路径", package=name)]
        if not is_within(install, self.paths.root):
            out.append(Finding(FAIL, "安装路径不在受管根目录内", package=name, path=str(install)))

        exec_path = Path(record.exec_path) if record.exec_path else None
        if not install.exists():
            out.append(Finding(FAIL, "安装目录不存在", package=name, path=str(install)))
        elif exec_path is None or not exec_path.is_file():
            out.append(Finding(FAIL, "可执行文件不存在", package=name, path=record.exec_path))
        elif not is_executable(exec_path):
            out.append(Finding(FAIL, "文件没有执行权限", package=name, path=str(exec_path)))

        # 可执行文件缺失时只报告链接状态，不重建
        runnable = exec_path is not None and exec_path.is_file()
        out += self._check_link(record, exec_path if runnable else None, repair and runnable)
        if not any(f.level != OK for f in out):
            out.append(Finding(OK, f"{record.installed_version or '?'} 正常", package=name, path=str(install)))
        return out

    def _check_link(self, record: PackageRecord, exec_path: Path | None, repair: bool) -> list[Finding]:
        if not record.symlink_path:
            return []
        link = Path(record.symlink_path)
        if exec_path is not None and link_points_to(link, exec_path):
            return []
        literal = read_link(link)
        if literal is not None and not link.exists():
            problem = f"悬空链接 -> {literal}"
        elif literal is not None:
            problem = f"链接指向错误的目标 -> {literal}"
        elif link.exists():
            return [Finding(FAIL, "链接位置被普通文件占用", package=record.name, path=str(link))]
        else:
            problem = "链接不存在"
        if repair and exec_path is not None:
            replace_symlink(link, exec_path)
            return [Finding(WARN, f"{problem}，已重建", package=record.name, path=str(link), repaired=True)]
        return [Finding(FAIL, problem, package=record.name, path=str(link))]

    # ---- 孤立项 ----

    def _check_orphans(self, records: list[PackageRecord], repair: bool) -> list[Finding]:
        links_dir = self.paths.symlinks_dir
        if not links_dir.is_dir():
            return []
        owned = {Path(r.symlink_path).name for r in records if r.symlink_path}
        owned |= {r.name for r in records}
        out = []
        for entry in sorted(links_dir.iterdir()):
            if entry.name in owned or entry.name.startswith("."):
                continue
            if not entry.is_symlink():
                out.append(Finding(WARN, "链接目录中存在非链接文件", path=str(entry)))
                continue
            target = read_link(entry)
            if repair:
                remove_path(entry)
                out.append(Finding(WARN, f"孤立链接已删除 (-> {target})", path=str(entry), repaired=True))
            else:
                out.append(Finding(WARN, f"孤立链接 -> {target}", path=str(entry)))
        return out

    def _check_paths_file(self, repair: bool) -> list[Finding]:
        pf = self.paths.paths_file
        expected = self.paths.paths_script()
        try:
            actual = pf.read_text(encoding="utf-8")
        except FileNotFoundError:
            actual = None
        except OSError as e:
            return [Finding(FAIL, f"PATH 集成文件不可读: {e}", path=str(pf))]
        if actual == expected:
            return [Finding(OK, "PATH 集成文件正常", path=str(pf))]
        problem = "PATH 集成文件缺失" if actual is None else "PATH 集成文件内容过期"
        if repair:
            atomic_write(pf, expected)
            return [Finding(WARN, f"{problem}，已重写", path=str(pf), repaired=True)]
        return [Finding(WARN, f"{problem}（运行 upstream init）", path=str(pf))]

    def _check_staging(self) -> list[Finding]:
        leftovers = StagingArea(self.paths.staging_root).leftovers()
        leftovers += sorted(self.paths.packages_dir.glob(".incoming-*")) if self.paths.packages_dir.is_dir() else []
        return [Finding(WARN, "中断操作的残留", path=str(p)) for p in leftovers]

    # =====================================================================
    # verify
    # =====================================================================

    def verify(self, names: list[str] | None = None) -> list[Finding]:
        """复算单文件安装的 sha256，并确认可执行文件与链接；只读"""
        records = [self.store.require(n) for n in names] if names else self.store.list()
        out: list[Finding] = []
        for record in records:
            out += self._verify_one(record)
        return out

    def _verify_one(self, record: PackageRecord) -> list[Finding]:
        name = record.name
        exec_path = Path(record.exec_path) if record.exec_path else None
        if exec_path is None or not exec_path.is_file():
            return [Finding(FAIL, "可执行文件不存在", package=name, path=record.exec_path)]
        out = []
        if record.kind.single_file or (record.checksum and exec_path.name == record.asset_name):
            if not record.checksum:
                out.append(Finding(WARN, "没有记录校验和", package=name, path=str(exec_path)))
            elif file_digest(exec_path) != record.checksum.lower():
                out.append(Finding(FAIL, "sha256 与安装时不一致", package=name, path=str(exec_path)))
            else:
                out.append(Finding(OK, "sha256 一致", package=name, path=str(exec_path)))
        if record.symlink_path and not link_points_to(Path(record.symlink_path), exec_path):
            literal = read_link(Path(record.symlink_path))
            out.append(Finding(
                FAIL, f"链接未指向可执行文件 (-> {literal})", package=name, path=record.symlink_path,
            ))
        if not out:
            out.append(Finding(OK, "可执行文件与链接正常", package=name, path=str(exec_path)))
        return out
