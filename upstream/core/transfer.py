"""导入 / 导出

两种格式：
  - 清单（YAML）：{version: 1, exported_at, packages: [...]}，只记录来源与选项，
    导入时重新安装
  - 快照（tar.gz）：整个受管根目录，顶层目录为 upstream/；
    不含锁文件、暂存区与链接目录，链接在导入后按包记录重建

快照导入会把记录中的绝对路径从导出时的根目录改写到当前根目录。
"""

from __future__ import annotations

import logging
import tarfile
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from upstream.core.exceptions import (
    PartialBatchFailure,
    UpstreamError,
    UserError,
    ValidationError,
)
from upstream.core.lock import LockHandle, require_lock
from upstream.core.models import ManifestEntry, PackageRecord
from upstream.core.paths import UpstreamPaths
from upstream.core.store import PackageStore
from upstream.core.engine.installer import InstallEngine
from upstream.core.engine.states import PackageOutcome
from upstream.utils.archive import extract
from upstream.utils.fsops import move_path, remove_path, replace_symlink
from upstream.utils.yaml_io import dump_yaml, load_yaml, save_yaml

logger = logging.getLogger(__name__)

MANIFEST_VERSION = 1
SNAPSHOT_TOP = "upstream"
SNAPSHOT_INFO = ".snapshot.yml"


@dataclass
class Manifest:
    packages: list[ManifestEntry] = field(default_factory=list)
    exported_at: str = ""
    version: int = MANIFEST_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "exported_at": self.exported_at,
            "packages": [e.to_dict() for e in self.packages],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        version = data.get("version", MANIFEST_VERSION)
        if version != MANIFEST_VERSION:
            raise ValidationError(f"不支持的清单版本: {version}")
        raw = data.get("packages") or []
        if not isinstance(raw, list):
            raise ValidationError("清单的 packages 必须是列表")
        return cls(
            packages=[ManifestEntry.from_dict(item or {}) for item in raw],
            exported_at=str(data.get("exported_at") or ""),
        )


class TransferService:
    """清单与快照的导入导出"""

    def __init__(self, paths: UpstreamPaths, store: PackageStore, engine: InstallEngine) -> None:
        self.paths = paths
        self.store = store
        self.engine = engine

    # =====================================================================
    # export
    # =====================================================================

    def export(self, dest: str | Path, *, full: bool = False) -> Path:
        dest = Path(dest)
        if full:
            return self._export_snapshot(dest)
        manifest = Manifest(
            packages=[ManifestEntry.from_record(r) for r in self.store.list()],
            exported_at=datetime.now(tz=timezone.utc).isoformat(),
        )
        save_yaml(dest, manifest.to_dict())
        logger.info("清单已导出: %s (%d 个包)", dest, len(manifest.packages))
        return dest

    def _export_snapshot(self, dest: Path) -> Path:
        root = self.paths.root
        if not root.is_dir():
            raise UserError(f"受管根目录不存在: {root}")
        skip = {
            self.paths.lock_file.resolve(),
            self.paths.staging_root.resolve(),
            self.paths.symlinks_dir.resolve(),
            dest.resolve(),
        }

        def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
            rel = Path(info.name).relative_to(SNAPSHOT_TOP) if info.name != SNAPSHOT_TOP else Path()
            if (root / rel).resolve() in skip:
                return None
            return info

        info = dump_yaml({
            "root": str(root),
            "exported_at": datetime.now(tz=timezone.utc).isoformat(),
        }).encode("utf-8")
        dest.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile("wb", suffix=".yml", delete=False) as tmp:
            tmp.write(info)
        try:
            with tarfile.open(dest, "w:gz") as tar:
                tar.add(str(root), arcname=SNAPSHOT_TOP, filter=_filter)
                tar.add(tmp.name, arcname=f"{SNAPSHOT_TOP}/{SNAPSHOT_INFO}")
        finally:
            Path(tmp.name).unlink(missing_ok=True)
        logger.info("快照已导出: %s", dest)
        return dest

    # =====================================================================
    # import
    # =====================================================================

    def import_(
        self,
        source: str | Path,
        *,
        handle: LockHandle | None,
        skip_failed: bool = False,
        force: bool = False,
    ) -> list[PackageOutcome]:
        require_lock(handle, "import")
        source = Path(source)
        if not source.is_file():
            raise UserError(f"文件不存在: {source}")
        if tarfile.is_tarfile(source):
            return self._import_snapshot(source, force)
        try:
            data = load_yaml(source)
        except (yaml.YAMLError, ValueError, OSError) as e:
            raise ValidationError(f"无法解析清单 {source}: {e}") from e
        manifest = Manifest.from_dict(data)
        return self._import_manifest(manifest, handle, skip_failed)

    def _import_manifest(
        self, manifest: Manifest, handle: LockHandle | None, skip_failed: bool,
    ) -> list[PackageOutcome]:
        outcomes: list[PackageOutcome] = []
        for entry in manifest.packages:
            outcome = self._apply_entry(entry, handle)
            outcomes.append(outcome)
            if outcome.failed and not skip_failed:
                raise outcome.error or UserError(outcome.message)
        failures = [o for o in outcomes if o.failed]
        if failures:
            names = ", ".join(o.name for o in failures)
            raise PartialBatchFailure(f"{len(failures)} 个包导入失败: {names}", outcomes)
        return outcomes

    def _apply_entry(self, entry: ManifestEntry, handle: LockHandle | None) -> PackageOutcome:
        try:
            if self.store.exists(entry.name):
                outcome = self.engine.upgrade([entry.name], handle=handle, force=True)[0]
            else:
                outcome = self.engine.install(
                    entry.name, entry.repo_reference, entry.to_options(), handle=handle,
                )
            if outcome.failed:
                return outcome
            record = self.store.require(entry.name)
            if record.pinned != entry.pinned:
                record.pinned = entry.pinned
                self.store.update(record)
            return outcome
        except UpstreamError as e:
            return PackageOutcome.failure(entry.name, "import", e)

    def _import_snapshot(self, source: Path, force: bool) -> list[PackageOutcome]:
        if self.store.list() and not force:
            raise UserError("受管根目录已有安装的包，使用 --force 覆盖")
        root = self.paths.root
        root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="upstream-import-", dir=root) as tmp:
            extract(source, Path(tmp))
            top = Path(tmp) / SNAPSHOT_TOP
            if not top.is_dir():
                raise ValidationError(f"快照缺少顶层目录 {SNAPSHOT_TOP}/: {source}")
            info = load_yaml(top / SNAPSHOT_INFO)
            (top / SNAPSHOT_INFO).unlink(missing_ok=True)
            for child in sorted(top.iterdir()):
                target = root / child.name
                if child.name == self.paths.metadata_dir.name and target.is_dir():
                    self._merge_metadata(child, target)
                    continue
                remove_path(target)
                move_path(child, target)
        self.store.reload()
        old_root = str(info.get("root") or "")
        outcomes = [self._restore_record(r, old_root) for r in self.store.list()]
        logger.info("快照已导入: %s (%d 个包)", source, len(outcomes))
        return outcomes

    def _merge_metadata(self, src: Path, dst: Path) -> None:
        """metadata 目录里保留当前进程的锁文件"""
        for item in sorted(src.iterdir()):
            if item.name == self.paths.lock_file.name:
                continue
            remove_path(dst / item.name)
            move_path(item, dst / item.name)

    def _restore_record(self, record: PackageRecord, old_root: str) -> PackageOutcome:
        new_root = str(self.paths.root)

        def rebase(value: str) -> str:
            if old_root and old_root != new_root and value.startswith(old_root + "/"):
                return new_root + value[len(old_root):]
            return value

        record.install_path = rebase(record.install_path)
        record.exec_path = rebase(record.exec_path)
        record.icon_path = rebase(record.icon_path)
        link = self.paths.symlink_for(record.name)
        if record.exec_path:
            replace_symlink(link, record.exec_path)
            record.symlink_path = str(link)
        self.store.update(record)
        return PackageOutcome(
            name=record.name, action="import", new_version=record.installed_version,
            message="已从快照恢复",
        )
