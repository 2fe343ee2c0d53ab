"""安装引擎

- states.py: 状态机与补偿事务
- staging.py: 暂存槽位与载荷整理
- integration.py: 桌面入口与图标
- installer.py: install / upgrade / remove
"""

from upstream.core.engine.installer import InstallEngine, UpdateInfo
from upstream.core.engine.states import InstallState, PackageOutcome, Transaction

__all__ = ["InstallEngine", "InstallState", "PackageOutcome", "Transaction", "UpdateInfo"]
