"""包管理服务

CLI 与核心之间的门面。所有变更操作在 `with lock.acquire(op) as handle`
内执行并把 handle 传给核心；只读操作（list、probe、verify、
不带 repair 的 doctor）不获取锁。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from upstream.core.doctor import Finding
from upstream.core.exceptions import NoMatchingAssetError
from upstream.core.lock import LockHandle, require_lock
from upstream.core.models import Channel, InstallOptions, PackageRecord, Provider, Release, parse_enum
from upstream.core.selector import ScoredAsset, TargetSpec
from upstream.core.engine.installer import UpdateInfo
from upstream.core.engine.states import PackageOutcome
from upstream.utils.fsops import remove_path
from upstream.utils.yaml_io import atomic_write

if TYPE_CHECKING:
    from upstream.services.container import ServiceContainer

logger = logging.getLogger(__name__)


@dataclass
class ProbeResult:
    release: Release
    candidate: ScoredAsset | None
    note: str = ""


class PackageService:
    """加锁调度 install / upgrade / remove / import 等操作"""

    def __init__(self, container: ServiceContainer) -> None:
        self._c = container

    # ---- 安装 / 升级 / 卸载 ----

    def install(self, name: str, reference: str, options: InstallOptions | None = None) -> PackageOutcome:
        options = options or InstallOptions()
        if self._c.config.desktop_entry:
            options.desktop_entry = True
        with self._c.lock.acquire("install") as handle:
            return self._c.engine.install(name, reference, options, handle=handle)

    def upgrade(
        self, names: list[str] | None = None, *, force: bool = False, ignore_checksums: bool = False,
    ) -> list[PackageOutcome]:
        with self._c.lock.acquire("upgrade") as handle:
            return self._c.engine.upgrade(
                names, handle=handle, force=force, ignore_checksums=ignore_checksums,
            )

    def check(self, names: list[str] | None = None, *, force: bool = False) -> list[UpdateInfo]:
        return self._c.engine.check_updates(names, force=force)

    def remove(self, names: list[str], *, purge: bool = False) -> list[PackageOutcome]:
        with self._c.lock.acquire("remove") as handle:
            return self._c.engine.remove(names, handle=handle, purge=purge)

    def list(self) -> list[PackageRecord]:
        return self._c.store.list()

    # ---- 包记录 ----

    def metadata(self, name: str) -> dict[str, Any]:
        record = self._c.store.require(name)
        return {"name": record.name, **record.to_dict()}

    def pin(self, name: str) -> PackageRecord:
        with self._c.lock.acquire("pin"):
            return self._c.store.pin(name)

    def unpin(self, name: str) -> PackageRecord:
        with self._c.lock.acquire("unpin"):
            return self._c.store.unpin(name)

    def get_key(self, name: str, key: str) -> Any:
        return self._c.store.get_key(name, key)

    def set_key(self, name: str, key: str, value: str) -> PackageRecord:
        with self._c.lock.acquire("set-key"):
            return self._c.store.set_key(name, key, value)

    def rename(self, old: str, new: str) -> PackageRecord:
        with self._c.lock.acquire("rename"):
            return self._c.store.rename(old, new)

    # ---- 受管环境 ----

    def init(self, *, clean: bool = False) -> list[Path]:
        """创建受管目录与 PATH 集成文件；clean 时先清空根目录"""
        paths = self._c.paths
        if clean:
            with self._c.lock.acquire("init --clean") as handle:
                self._clean_root(handle)
                created = paths.ensure()
                self._c.store.reload()
        else:
            created = paths.ensure()
        atomic_write(paths.paths_file, paths.paths_script())
        for d in created:
            logger.info("已创建目录: %s", d)
        return created

    def _clean_root(self, handle: LockHandle) -> None:
        require_lock(handle, "init --clean")
        paths = self._c.paths
        if not paths.root.is_dir():
            return
        for child in sorted(paths.root.iterdir()):
            if child == paths.metadata_dir:
                for item in sorted(child.iterdir()):
                    if item != paths.lock_file:
                        remove_path(item)
                continue
            remove_path(child)
        if paths.staging_root.is_dir():
            remove_path(paths.staging_root)
        logger.warning("已清空受管根目录: %s", paths.root)

    def doctor(self, *, repair: bool = False) -> list[Finding]:
        if not repair:
            return self._c.doctor.run()
        with self._c.lock.acquire("doctor") as handle:
            return self._c.doctor.run(repair=True, handle=handle)

    def verify(self, names: list[str] | None = None) -> list[Finding]:
        return self._c.doctor.verify(names)

    # ---- 导入 / 导出 ----

    def export(self, dest: str | Path, *, full: bool = False) -> Path:
        return self._c.transfer.export(dest, full=full)

    def import_(self, source: str | Path, *, skip_failed: bool = False, force: bool = False) -> list[PackageOutcome]:
        with self._c.lock.acquire("import") as handle:
            return self._c.transfer.import_(source, handle=handle, skip_failed=skip_failed, force=force)

    # ---- probe ----

    def probe(
        self,
        reference: str,
        *,
        provider: str = Provider.GITHUB.value,
        channel: str = Channel.STABLE.value,
        base_url: str = "",
        limit: int = 5,
    ) -> list[ProbeResult]:
        """列出最近的 release 及每个 release 在本机的最佳资产"""
        source = self._c.providers.get(provider, base_url)
        releases = source.list_releases(reference, parse_enum(Channel, channel, "channel"))
        target = TargetSpec.for_host(self._c.host)
        results = []
        for release in releases[: max(1, limit)]:
            try:
                results.append(ProbeResult(release, self._c.selector.select(release, target)))
            except NoMatchingAssetError as e:
                results.append(ProbeResult(release, None, note=str(e)))
        return results
