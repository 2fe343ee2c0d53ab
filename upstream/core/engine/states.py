"""安装状态机与补偿事务

状态流转:
    IDLE → RESOLVING → FETCHING → VERIFYING → STAGING → SWAPPING → FINALIZING → DONE
任一非终态可进入 FAILED；SWAPPING / FINALIZING 失败时逆序执行已登记的补偿，
成功回滚后进入 ROLLED_BACK。
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from upstream.core.exceptions import InstallFailed, UpstreamError

logger = logging.getLogger(__name__)


class InstallState(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    STAGING = "staging"
    SWAPPING = "swapping"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def terminal(self) -> bool:
        return self in (InstallState.DONE, InstallState.FAILED, InstallState.ROLLED_BACK)


_ORDER = [
    InstallState.IDLE,
    InstallState.RESOLVING,
    InstallState.FETCHING,
    InstallState.VERIFYING,
    InstallState.STAGING,
    InstallState.SWAPPING,
    InstallState.FINALIZING,
    InstallState.DONE,
]

_ROLLBACK_STATES = frozenset((InstallState.SWAPPING, InstallState.FINALIZING))


@dataclass
class Compensation:
    description: str
    action: Callable[[], None]


class Transaction:
    """单个包的安装事务：记录状态流转与补偿日志"""

    def __init__(self, package: str, operation: str) -> None:
        self.package = package
        self.operation = operation
        self.state = InstallState.IDLE
        self.history: list[InstallState] = [InstallState.IDLE]
        self._journal: list[Compensation] = []

    def advance(self, state: InstallState) -> None:
        """前进到下一个状态；只允许按顺序前进一步"""
        if self.state.terminal:
            raise RuntimeError(f"事务已结束 ({self.state.value})，不能进入 {state.value}")
        expected = _ORDER[_ORDER.index(self.state) + 1]
        if state is not expected:
            raise RuntimeError(f"非法状态流转: {self.state.value} → {state.value}")
        self.state = state
        self.history.append(state)
        logger.debug("[%s] %s → %s", self.package, self.history[-2].value, state.value)

    def journal(self, description: str, action: Callable[[], None]) -> None:
        """登记一个补偿动作（回滚时逆序执行）"""
        self._journal.append(Compensation(description, action))

    @property
    def compensations(self) -> list[str]:
        return [c.description for c in self._journal]

    def fail(self, cause: BaseException) -> InstallFailed:
        """进入失败；需要时执行补偿，返回待抛出的 InstallFailed"""
        failed_at = self.state
        rolled_back = False
        if failed_at in _ROLLBACK_STATES and self._journal:
            rolled_back = self._rollback()
            self.state = InstallState.ROLLED_BACK if rolled_back else InstallState.FAILED
        else:
            self.state = InstallState.FAILED
        self.history.append(self.state)
        message = f"{self.operation} {self.package} 在 {failed_at.value} 阶段失败: {cause}"
        if rolled_back:
            message += "（已回滚）"
        logger.error("%s", message, extra={"package": self.package})
        return InstallFailed(message, state=failed_at, rolled_back=rolled_back, cause=cause)

    def _rollback(self) -> bool:
        ok = True
        while self._journal:
            comp = self._journal.pop()
            try:
                comp.action()
                logger.info("[%s] 已回滚: %s", self.package, comp.description, extra={"package": self.package})
            except (OSError, UpstreamError) as e:
                ok = False
                logger.error("[%s] 回滚步骤失败: %s - %s", self.package, comp.description, e)
        return ok

    def commit(self) -> None:
        """完成：丢弃补偿日志并进入 DONE"""
        self.advance(InstallState.DONE)
        self._journal.clear()


@dataclass
class PackageOutcome:
    """批量操作中单个包的结果"""

    name: str
    action: str
    ok: bool = True
    old_version: str = ""
    new_version: str = ""
    message: str = ""
    state: InstallState = InstallState.DONE
    skipped: bool = False
    error: UpstreamError | None = field(default=None, repr=False)

    @property
    def failed(self) -> bool:
        return not self.ok

    @classmethod
    def failure(cls, name: str, action: str, error: UpstreamError) -> PackageOutcome:
        state = error.state if isinstance(error, InstallFailed) else InstallState.FAILED
        return cls(name=name, action=action, ok=False, message=str(error), state=state, error=error)
