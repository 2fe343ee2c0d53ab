"""全局锁

同一时刻只允许一个变更操作。锁文件 <metadata_dir>/upstream.lock 以
O_CREAT | O_EXCL 创建，内容为持有者记录（pid / operation / acquired_at）。

冲突时读取持有者记录：
  - 持有进程已不存在 → 回收锁
  - 记录不可读且锁文件早于宽限期 → 视为陈旧，回收
  - 其他情况 → 立即抛出 AlreadyLockedError（不等待）

回收时先把锁文件原子地改名到一旁，确认移走的正是判定为陈旧的那份记录
后才删除；若移走的是其他进程刚取得的新锁，用硬链接原样放回。

用法:
    with LockManager(path).acquire("install") as handle:
        engine.install(..., handle=handle)
"""

from __future__ import annotations

import errno
import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from upstream.core.exceptions import AlreadyLockedError, FilesystemError, LockNotHeldError
from upstream.core.models import utc_now
from upstream.utils.yaml_io import dump_yaml

logger = logging.getLogger(__name__)

DEFAULT_GRACE_SECONDS = 5.0


@dataclass
class LockRecord:
    """锁持有者"""

    pid: int
    operation: str
    acquired_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"pid": self.pid, "operation": self.operation, "acquired_at": self.acquired_at}


def pid_alive(pid: int) -> bool:
    """pid 对应的进程是否存在"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 进程存在但属于其他用户
        return True
    except OSError as e:
        return e.errno != errno.ESRCH
    return True


class LockHandle:
    """已获取的锁；作为上下文管理器在所有退出路径上释放"""

    def __init__(self, manager: LockManager, record: LockRecord) -> None:
        self._manager = manager
        self.record = record
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def operation(self) -> str:
        return self.record.operation

    def ensure_active(self) -> None:
        if not self._active:
            raise LockNotHeldError(f"锁已释放，无法执行 {self.record.operation}")

    def release(self) -> None:
        """释放锁（幂等）"""
        if not self._active:
            return
        self._active = False
        self._manager._release(self.record)

    def __enter__(self) -> LockHandle:
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


def require_lock(handle: LockHandle | None, operation: str) -> None:
    """变更入口的守卫：没有持有活动锁时拒绝执行"""
    if handle is None or not handle.active:
        raise LockNotHeldError(f"{operation} 需要在持有全局锁时执行")


class LockManager:
    """基于锁文件的跨进程互斥"""

    def __init__(self, lock_file: str | Path, grace_seconds: float = DEFAULT_GRACE_SECONDS) -> None:
        self.lock_file = Path(lock_file)
        self.grace_seconds = grace_seconds

    def acquire(self, operation: str) -> LockHandle:
        """获取锁；已被存活进程持有时抛 AlreadyLockedError"""
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        record = LockRecord(pid=os.getpid(), operation=operation, acquired_at=utc_now())
        for _ in range(3):
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = self.inspect()
                if self._is_stale(holder):
                    if self._reclaim(holder):
                        logger.warning("已回收陈旧锁: %s (holder=%s)", self.lock_file, holder)
                    continue
                raise AlreadyLockedError(
                    self._busy_message(holder), holder=holder,
                ) from None
            except PermissionError as e:
                raise FilesystemError(
                    f"无法创建锁文件 {self.lock_file}", hint="请检查元数据目录的写权限",
                ) from e
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(dump_yaml(record.to_dict()))
                f.flush()
                os.fsync(f.fileno())
            logger.debug("已获取锁: %s (%s)", self.lock_file, operation)
            return LockHandle(self, record)
        holder = self.inspect()
        raise AlreadyLockedError(self._busy_message(holder), holder=holder)

    def inspect(self) -> LockRecord | None:
        """读取当前持有者；无锁或记录不可读时返回 None"""
        return self._read_record(self.lock_file)

    @staticmethod
    def _read_record(path: Path) -> LockRecord | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("读取锁文件失败: %s", e)
            return None
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError:
            return None
        if not isinstance(data, dict):
            return None
        try:
            return LockRecord(
                pid=int(data.get("pid", 0)),
                operation=str(data.get("operation", "")),
                acquired_at=str(data.get("acquired_at", "")),
            )
        except (TypeError, ValueError):
            return None

    def is_locked(self) -> bool:
        return self.lock_file.exists()

    def is_stale(self) -> bool:
        """锁文件存在但持有者已失效"""
        if not self.lock_file.exists():
            return False
        return self._is_stale(self.inspect())

    def clear_stale(self) -> bool:
        """删除陈旧锁（doctor --repair 使用），返回是否删除"""
        if not self.lock_file.exists():
            return False
        holder = self.inspect()
        if self._is_stale(holder) and self._reclaim(holder):
            logger.info("已删除陈旧锁: %s", self.lock_file)
            return True
        return False

    # ---- 内部实现 ----

    def _is_stale(self, holder: LockRecord | None, path: Path | None = None) -> bool:
        if holder is not None and holder.pid > 0:
            return not pid_alive(holder.pid)
        # 记录为空/不可读：可能是对方刚创建尚未写入，宽限期内不回收
        try:
            age = time.time() - (path or self.lock_file).stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self.grace_seconds

    def _reclaim(self, holder: LockRecord | None) -> bool:
        """移走陈旧锁文件；返回是否确实删除了陈旧的那一份"""
        aside = self.lock_file.with_name(
            f".{self.lock_file.name}.stale-{os.getpid()}-{uuid.uuid4().hex[:8]}"
        )
        try:
            os.rename(self.lock_file, aside)
        except FileNotFoundError:
            return False
        taken = self._read_record(aside)
        if taken == holder and self._is_stale(taken, aside):
            aside.unlink(missing_ok=True)
            return True
        # 移走的是另一个进程刚取得的锁
        try:
            os.link(aside, self.lock_file)
        except OSError as e:
            logger.error("无法放回 %s 持有的锁文件: %s", taken, e)
        finally:
            aside.unlink(missing_ok=True)
        return False

    def _busy_message(self, holder: LockRecord | None) -> str:
        if holder is None:
            return f"另一个 upstream 进程正在运行（锁文件: {self.lock_file}），请稍后重试"
        return (
            f"另一个 upstream 进程正在执行 {holder.operation} "
            f"(pid={holder.pid}, 开始于 {holder.acquired_at})，请稍后重试"
        )

    def _release(self, record: LockRecord) -> None:
        current = self.inspect()
        if current is not None and current.pid != record.pid:
            logger.warning("锁已被其他进程持有，跳过释放: %s", current)
            return
        self._unlink()
        logger.debug("已释放锁: %s", self.lock_file)

    def _unlink(self) -> None:
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
