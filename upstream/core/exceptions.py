"""统一异常体系

所有业务异常继承 UpstreamError。
CLI 层据此输出一行友好提示并返回非零退出码；批量操作据此把单个包的失败
归档为该包的结果，而不是中断整批。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from upstream.core.engine.states import InstallState, PackageOutcome


class UpstreamError(Exception):
    """基础异常"""

    code: str = "UNKNOWN"
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)


# =========================================================================
# 用户错误：不会尝试任何变更
# =========================================================================

class UserError(UpstreamError):
    """参数错误、未知包等用户可修正的问题"""

    code = "USER_ERROR"


class ValidationError(UserError):
    """输入数据校验失败"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class PackageNotFoundError(UserError):
    """包不在本地存储中"""

    code = "PACKAGE_NOT_FOUND"


class PackageExistsError(UserError):
    """包名已被占用"""

    code = "PACKAGE_EXISTS"


class ConfigError(UpstreamError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


# =========================================================================
# 来源（Provider）错误
# =========================================================================

class ProviderError(UpstreamError):
    """来源查询或下载失败"""

    code = "PROVIDER_ERROR"


class ProviderNotFoundError(ProviderError):
    """仓库或 release 不存在"""

    code = "NOT_FOUND"


class RateLimitedError(ProviderError):
    """被来源 API 限流"""

    code = "RATE_LIMITED"

    def __init__(self, message: str, reset_at: str = "") -> None:
        super().__init__(message)
        self.reset_at = reset_at


class NetworkError(ProviderError):
    """网络超时、连接失败、5xx — 可重试"""

    code = "NETWORK_ERROR"
    retryable = True


class NoMatchingAssetError(UpstreamError):
    """release 中没有适配目标平台/类型的资产"""

    code = "NO_MATCHING_ASSET"


# =========================================================================
# 安装流程错误
# =========================================================================

class IntegrityError(UpstreamError):
    """校验和不匹配或缺失必需的校验和"""

    code = "INTEGRITY_ERROR"


class FilesystemError(UpstreamError):
    """文件系统操作失败（权限、空间等）"""

    code = "FILESYSTEM_ERROR"

    def __init__(self, message: str, hint: str = "") -> None:
        super().__init__(f"{message}（{hint}）" if hint else message)
        self.hint = hint


class ArchiveError(UpstreamError):
    """归档损坏、格式不支持或含越界路径"""

    code = "ARCHIVE_ERROR"


class InstallFailed(UpstreamError):
    """安装/升级状态机进入 FAILED，记录失败时所处的状态"""

    code = "INSTALL_FAILED"

    def __init__(
        self, message: str, *, state: InstallState,
        rolled_back: bool = False, cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.state = state
        self.rolled_back = rolled_back
        self.cause = cause


# =========================================================================
# 并发错误
# =========================================================================

class ConcurrencyError(UpstreamError):
    """全局锁相关错误"""

    code = "CONCURRENCY_ERROR"


class AlreadyLockedError(ConcurrencyError):
    """另一个存活进程持有全局锁"""

    code = "ALREADY_LOCKED"

    def __init__(self, message: str, holder: Any = None) -> None:
        super().__init__(message)
        self.holder = holder


class LockNotHeldError(ConcurrencyError):
    """变更操作在未持有锁的情况下被调用"""

    code = "LOCK_NOT_HELD"


# =========================================================================
# 批量操作
# =========================================================================

class PartialBatchFailure(UpstreamError):
    """批量升级/导入中部分条目失败；成功的条目保留"""

    code = "PARTIAL_BATCH_FAILURE"

    def __init__(self, message: str, outcomes: list[PackageOutcome]) -> None:
        super().__init__(message)
        self.outcomes = outcomes

    @property
    def failures(self) -> list[PackageOutcome]:
        return [o for o in self.outcomes if o.failed]
