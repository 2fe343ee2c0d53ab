"""安装 / 升级 / 卸载引擎

所有变更入口都要求调用方传入活动的 LockHandle。
单个包的安装与升级走同一条流水线：

    RESOLVING   解析 release 并选出资产
    FETCHING    下载到全新的暂存槽位
    VERIFYING   校验和
    STAGING     解包、定位可执行文件
    SWAPPING    移入 packages/.incoming-*，旧安装改名为备份，新安装就位，原子重建链接
    FINALIZING  桌面入口、图标，最后写入包记录
    DONE        删除备份

SWAPPING / FINALIZING 中的每一步都在事务中登记补偿；失败时逆序执行，
旧安装与旧链接（包括悬空链接）按原样恢复。
批量操作不会因单个包失败而中断，每个包产出一个 PackageOutcome。
"""

from __future__ import annotations

import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from upstream.core.checksum import ChecksumVerifier, file_digest
from upstream.core.exceptions import (
    FilesystemError,
    PackageExistsError,
    UpstreamError,
    UserError,
)
from upstream.core.lock import LockHandle, require_lock
from upstream.core.models import (
    InstallOptions,
    PackageRecord,
    Release,
    utc_now,
)
from upstream.core.paths import UpstreamPaths
from upstream.core.platform import Host
from upstream.core.provider.base import BaseProvider
from upstream.core.provider.registry import ProviderRegistry
from upstream.core.selector import AssetSelector, TargetSpec
from upstream.core.store import PackageStore, validate_package_name
from upstream.core.engine.integration import install_icon, write_desktop_entry
from upstream.core.engine.staging import StagedPayload, StagingArea
from upstream.core.engine.states import InstallState, PackageOutcome, Transaction
from upstream.utils.fsops import (
    is_within,
    link_points_to,
    move_path,
    read_link,
    remove_path,
    replace_symlink,
)

logger = logging.getLogger(__name__)


@dataclass
class UpdateInfo:
    """upgrade --check 的单条结果"""

    name: str
    current: str
    latest: str
    available: bool
    pinned: bool = False
    message: str = ""


def _stamp() -> str:
    return f"{datetime.now(tz=timezone.utc):%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6]}"


class InstallEngine:
    """安装/升级/卸载状态机"""

    def __init__(
        self,
        paths: UpstreamPaths,
        store: PackageStore,
        providers: ProviderRegistry,
        selector: AssetSelector | None = None,
        host: Host | None = None,
        *,
        require_checksum: bool = False,
    ) -> None:
        self.paths = paths
        self.store = store
        self.providers = providers
        self.selector = selector or AssetSelector()
        self.host = host or Host.detect()
        self.staging = StagingArea(paths.staging_root)
        self.require_checksum = require_checksum

    # =====================================================================
    # install
    # =====================================================================

    def install(
        self,
        name: str,
        reference: str,
        options: InstallOptions | None = None,
        *,
        handle: LockHandle | None,
    ) -> PackageOutcome:
        """安装新包；包名已存在时抛 PackageExistsError"""
        require_lock(handle, "install")
        options = options or InstallOptions()
        name = validate_package_name(name)
        if not reference or not reference.strip():
            raise UserError("缺少仓库引用")
        if self.store.exists(name):
            raise PackageExistsError(f"包已安装: {name}（如需更新请使用 upgrade）")
        if self.paths.install_dir(name).exists():
            raise FilesystemError(
                f"安装目录已存在但没有对应记录: {self.paths.install_dir(name)}",
                hint="运行 upstream doctor 检查，或手动删除该目录",
            )

        record = PackageRecord(
            name=name,
            repo_reference=reference.strip(),
            provider=options.provider,
            kind=options.kind,
            channel=options.channel,
            base_url=options.base_url,
            match_pattern=options.match_pattern,
            exclude_pattern=options.exclude_pattern,
        )
        txn = Transaction(name, "install")
        self._run(txn, record, options, previous=None, release=None)
        return PackageOutcome(
            name=name, action="install", new_version=record.installed_version,
            message=f"已安装 {name} {record.installed_version}",
        )

    # =====================================================================
    # upgrade
    # =====================================================================

    def _targets(self, names: list[str] | None, force: bool) -> tuple[list[PackageRecord], list[PackageOutcome]]:
        """返回 (待处理记录, 预先产生的跳过/失败结果)"""
        pre: list[PackageOutcome] = []
        if not names:
            records = self.store.list()
            todo = [r for r in records if force or not r.pinned]
            return todo, pre
        todo = []
        for n in names:
            record = self.store.get(n)
            if record is None:
                pre.append(PackageOutcome.failure(n, "upgrade", UserError(f"包未安装: {n}")))
            elif record.pinned and not force:
                pre.append(PackageOutcome(
                    name=n, action="upgrade", skipped=True,
                    old_version=record.installed_version, message="已固定版本，跳过（使用 --force 强制）",
                ))
            else:
                todo.append(record)
        return todo, pre

    def check_updates(self, names: list[str] | None = None, *, force: bool = False) -> list[UpdateInfo]:
        """只读检查可用更新，不修改任何状态"""
        records, pre = self._targets(names, force)
        infos = [
            UpdateInfo(name=o.name, current=o.old_version, latest="", available=False,
                       pinned=o.skipped, message=o.message)
            for o in pre
        ]
        for record in records:
            try:
                release = self._provider_for(record).check_for_update(record)
            except UpstreamError as e:
                infos.append(UpdateInfo(
                    name=record.name, current=record.installed_version, latest="",
                    available=False, pinned=record.pinned, message=str(e),
                ))
                continue
            infos.append(UpdateInfo(
                name=record.name,
                current=record.installed_version,
                latest=release.tag if release else record.installed_version,
                available=release is not None,
                pinned=record.pinned,
            ))
        return infos

    def upgrade(
        self,
        names: list[str] | None = None,
        *,
        handle: LockHandle | None,
        force: bool = False,
        ignore_checksums: bool = False,
    ) -> list[PackageOutcome]:
        """升级指定包（为空则升级全部未固定的包）"""
        require_lock(handle, "upgrade")
        records, outcomes = self._targets(names, force)
        for record in records:
            try:
                outcomes.append(self._upgrade_one(record, force, ignore_checksums))
            except UpstreamError as e:
                outcomes.append(PackageOutcome.failure(record.name, "upgrade", e))
        return outcomes

    def _upgrade_one(self, record: PackageRecord, force: bool, ignore_checksums: bool) -> PackageOutcome:
        provider = self._provider_for(record)
        old_version = record.installed_version
        release = provider.check_for_update(record)
        if release is None and not force:
            record.last_checked_at = utc_now()
            self.store.update(record)
            return PackageOutcome(
                name=record.name, action="upgrade", skipped=True,
                old_version=old_version, new_version=old_version, message="已是最新",
            )
        options = InstallOptions.from_record(
            record, force=force, ignore_checksums=ignore_checksums,
        )
        previous = PackageRecord.from_dict(record.name, record.to_dict())
        txn = Transaction(record.name, "upgrade")
        self._run(txn, record, options, previous=previous, release=release)
        return PackageOutcome(
            name=record.name, action="upgrade",
            old_version=old_version, new_version=record.installed_version,
            message=f"{old_version or '?'} → {record.installed_version}",
        )

    # =====================================================================
    # remove
    # =====================================================================

    def remove(
        self, names: list[str], *, handle: LockHandle | None, purge: bool = False,
    ) -> list[PackageOutcome]:
        require_lock(handle, "remove")
        outcomes = []
        for name in names:
            try:
                outcomes.append(self._remove_one(name, purge))
            except UpstreamError as e:
                outcomes.append(PackageOutcome.failure(name, "remove", e))
            except OSError as e:
                outcomes.append(PackageOutcome.failure(
                    name, "remove", FilesystemError(f"删除 {name} 失败: {e}"),
                ))
        return outcomes

    def _remove_one(self, name: str, purge: bool) -> PackageOutcome:
        record = self.store.require(name)

        link = Path(record.symlink_path) if record.symlink_path else self.paths.symlink_for(name)
        if self._link_is_ours(link, record):
            remove_path(link)
        elif link.is_symlink():
            logger.warning("链接 %s 不指向 %s 的安装，保留", link, name)

        for extra in (record.desktop_entry_path, record.icon_path):
            if extra:
                remove_path(Path(extra))

        if record.install_path:
            install = Path(record.install_path)
            if is_within(install, self.paths.packages_dir):
                remove_path(install)
            else:
                logger.warning("安装路径不在受管目录内，跳过删除: %s", install)

        if purge:
            for d in self.paths.purge_dirs(name):
                if remove_path(d):
                    logger.info("已清除用户数据: %s", d)

        self.store.delete(name)
        logger.info("已卸载: %s", name)
        return PackageOutcome(
            name=name, action="remove", old_version=record.installed_version,
            message=f"已卸载 {name}",
        )

    def _link_is_ours(self, link: Path, record: PackageRecord) -> bool:
        if not link.is_symlink():
            return False
        target = read_link(link) or ""
        if record.exec_path and target == record.exec_path:
            return True
        if record.exec_path and link_points_to(link, Path(record.exec_path)):
            return True
        return bool(record.install_path) and is_within(Path(target), Path(record.install_path))

    # =====================================================================
    # 流水线
    # =====================================================================

    def _provider_for(self, record: PackageRecord) -> BaseProvider:
        return self.providers.get(record.provider, record.base_url)

    def _run(
        self,
        txn: Transaction,
        record: PackageRecord,
        options: InstallOptions,
        *,
        previous: PackageRecord | None,
        release: Release | None,
    ) -> None:
        """执行完整流水线；失败时抛 InstallFailed（必要时已回滚）"""
        try:
            txn.advance(InstallState.RESOLVING)
            provider = self.providers.get(options.provider, options.base_url)
            if release is None:
                if options.tag:
                    release = provider.fetch_release(record.repo_reference, options.tag)
                else:
                    release = provider.latest_release(record.repo_reference, options.channel)
            target = TargetSpec(
                os=self.host.os, arch=self.host.arch, kind=options.kind,
                match_pattern=options.match_pattern, exclude_pattern=options.exclude_pattern,
                package_name=record.name,
            )
            asset = self.selector.select(release, target).asset

            with self.staging.slot(record.name) as slot:
                txn.advance(InstallState.FETCHING)
                download = slot / "download" / asset.name
                provider.download(asset, download)

                txn.advance(InstallState.VERIFYING)
                ChecksumVerifier(provider.fetch_text).verify(
                    release, asset, download,
                    required=(options.require_checksum or self.require_checksum)
                    and not options.ignore_checksums,
                    ignore=options.ignore_checksums,
                )
                digest = file_digest(download)

                txn.advance(InstallState.STAGING)
                staged = self.staging.prepare(slot, download, record.name, options.kind)

                txn.advance(InstallState.SWAPPING)
                install_dir, backup = self._swap(txn, record.name, staged)
                exec_path = install_dir / staged.exec_relpath
                link = self._relink(txn, record.name, exec_path)

                txn.advance(InstallState.FINALIZING)
                self._integrate(txn, record, staged, install_dir, exec_path, options)
                now = utc_now()
                record.installed_version = release.tag
                record.install_path = str(install_dir)
                record.exec_path = str(exec_path)
                record.symlink_path = str(link)
                record.asset_name = asset.name
                record.checksum = digest if staged.kind.single_file else ""
                record.source_fingerprint = asset.fingerprint
                record.last_checked_at = now
                record.last_updated_at = now
                self._write_record(txn, record, previous)
                txn.commit()
        except KeyboardInterrupt as e:
            txn.fail(e)
            raise
        except UpstreamError as e:
            raise txn.fail(e) from e
        except OSError as e:
            raise txn.fail(FilesystemError(str(e))) from e

        stale = [backup]
        if previous is not None and previous.icon_path and previous.icon_path != record.icon_path:
            stale.append(Path(previous.icon_path))
        if previous is not None and previous.install_path:
            # 记录中的旧安装位置与当前名字不一致时，旧目录已无记录指向
            old_dir = Path(previous.install_path)
            if (
                old_dir != install_dir
                and old_dir.parent == self.paths.packages_dir
                and not any(r.install_path == previous.install_path
                            for r in self.store.list() if r.name != record.name)
            ):
                stale.append(old_dir)
        for path in stale:
            if path is None:
                continue
            try:
                remove_path(path)
            except OSError as e:
                logger.warning("清理旧版本残留失败: %s - %s", path, e)
        logger.info("%s %s 完成: %s", txn.operation, record.name, record.installed_version)

    def _swap(self, txn: Transaction, name: str, staged: StagedPayload) -> tuple[Path, Path | None]:
        """载荷就位；返回 (安装目录, 旧安装备份)"""
        packages = self.paths.packages_dir
        packages.mkdir(parents=True, exist_ok=True)
        stamp = _stamp()
        incoming = packages / f".incoming-{name}-{stamp}"
        install_dir = self.paths.install_dir(name)

        move_path(staged.payload_dir, incoming)
        txn.journal(f"删除 {incoming.name}", lambda: remove_path(incoming))

        backup: Path | None = None
        if install_dir.exists() or install_dir.is_symlink():
            backup = packages / f".backup-{name}-{stamp}"
            os.rename(install_dir, backup)

            def _restore() -> None:
                if install_dir.exists() or install_dir.is_symlink():
                    remove_path(install_dir)
                os.rename(backup, install_dir)

            txn.journal(f"恢复旧安装 {install_dir.name}", _restore)

        os.rename(incoming, install_dir)
        txn.journal(f"移除新安装 {install_dir.name}", lambda: remove_path(install_dir))
        return install_dir, backup

    def _relink(self, txn: Transaction, name: str, exec_path: Path) -> Path:
        link = self.paths.symlink_for(name)
        old_target = read_link(link)
        replace_symlink(link, exec_path)
        if old_target is not None:
            txn.journal(f"恢复链接 {link.name} -> {old_target}",
                        lambda: replace_symlink(link, old_target))
        else:
            txn.journal(f"删除链接 {link.name}", lambda: remove_path(link))
        return link

    def _integrate(
        self,
        txn: Transaction,
        record: PackageRecord,
        staged: StagedPayload,
        install_dir: Path,
        exec_path: Path,
        options: InstallOptions,
    ) -> None:
        """桌面入口与图标；包内文件已随载荷移入 install_dir"""
        if not options.desktop_entry:
            return

        def moved(path: Path) -> Path:
            return install_dir / os.path.relpath(path, staged.payload_dir)

        icon_path: Path | None = None
        if staged.icon_file is not None:
            icon_src = moved(staged.icon_file)
            icon_path = self._guarded_write(
                txn, self.paths.icons_dir / f"{record.name}{icon_src.suffix.lower()}",
                lambda: install_icon(self.paths.icons_dir, record.name, icon_src),
            )
        template = moved(staged.desktop_file) if staged.desktop_file is not None else None
        desktop = self.paths.desktop_entry_for(record.name)
        self._guarded_write(
            txn, desktop,
            lambda: write_desktop_entry(desktop, record.name, exec_path, icon_path, template),
        )
        record.desktop_entry_path = str(desktop)
        record.icon_path = str(icon_path) if icon_path else ""

    @staticmethod
    def _guarded_write(txn: Transaction, dest: Path, write) -> Path:
        """写文件前保存旧内容，登记恢复补偿"""
        old = dest.read_bytes() if dest.is_file() else None

        def _undo() -> None:
            if old is None:
                remove_path(dest)
            else:
                dest.write_bytes(old)

        txn.journal(f"恢复 {dest.name}", _undo)
        return write()

    def _write_record(
        self, txn: Transaction, record: PackageRecord, previous: PackageRecord | None,
    ) -> None:
        self.store.upsert(record)
        if previous is None:
            txn.journal(f"删除记录 {record.name}", lambda: self.store.delete(record.name))
        else:
            txn.journal(f"恢复记录 {record.name}", lambda: self.store.upsert(previous))
