"""服务容器 — 统一依赖注入

核心组件都通过容器获取，同一容器内的实例共享状态（来源缓存、包记录等）。
CLI 通过 get_container() 获取，测试可传入自定义 Config 或替换实例。

依赖关系（→ 表示依赖）:
  engine   → store, providers, selector
  transfer → store, engine
  doctor   → store, lock
  packages → 以上全部

另一个根目录（快照导入测试）:
    other = ServiceContainer(Config(root=str(tmp_path / "root2")))
    other.packages.import_(snapshot, force=True)
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from upstream.core.config import Config
    from upstream.core.doctor import Doctor
    from upstream.core.engine.installer import InstallEngine
    from upstream.core.lock import LockManager
    from upstream.core.paths import UpstreamPaths
    from upstream.core.platform import Host
    from upstream.core.provider.registry import ProviderRegistry
    from upstream.core.selector import AssetSelector
    from upstream.core.store import PackageStore
    from upstream.core.transfer import TransferService
    from upstream.services.package_service import PackageService

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器"""

    def __init__(self, config: Config | None = None) -> None:
        self._instances: dict[str, object] = {}
        if config is None:
            from upstream.core.config import get_config
            config = get_config()
        self._config = config

    @property
    def config(self) -> Config:
        return self._config

    @property
    def paths(self) -> UpstreamPaths:
        if "paths" not in self._instances:
            self._instances["paths"] = self._config.paths
        return self._instances["paths"]  # type: ignore[return-value]

    # ---- 核心组件 ----

    @property
    def store(self) -> PackageStore:
        if "store" not in self._instances:
            from upstream.core.store import PackageStore
            self._instances["store"] = PackageStore(
                packages_file=self.paths.packages_file,
                symlinks_dir=self.paths.symlinks_dir,
                packages_dir=self.paths.packages_dir,
            )
        return self._instances["store"]  # type: ignore[return-value]

    @property
    def lock(self) -> LockManager:
        if "lock" not in self._instances:
            from upstream.core.lock import LockManager
            self._instances["lock"] = LockManager(
                self.paths.lock_file, grace_seconds=self._config.lock_grace_seconds,
            )
        return self._instances["lock"]  # type: ignore[return-value]

    @property
    def providers(self) -> ProviderRegistry:
        if "providers" not in self._instances:
            from upstream.core.provider.registry import ProviderRegistry
            self._instances["providers"] = ProviderRegistry(self._config)
        return self._instances["providers"]  # type: ignore[return-value]

    @property
    def selector(self) -> AssetSelector:
        if "selector" not in self._instances:
            from upstream.core.selector import AssetSelector
            self._instances["selector"] = AssetSelector(self._config.weights)
        return self._instances["selector"]  # type: ignore[return-value]

    @property
    def host(self) -> Host:
        if "host" not in self._instances:
            from upstream.core.platform import Host
            self._instances["host"] = Host.detect()
        return self._instances["host"]  # type: ignore[return-value]

    @property
    def engine(self) -> InstallEngine:
        if "engine" not in self._instances:
            from upstream.core.engine.installer import InstallEngine
            self._instances["engine"] = InstallEngine(
                self.paths, self.store, self.providers, self.selector, self.host,
                require_checksum=self._config.require_checksum,
            )
        return self._instances["engine"]  # type: ignore[return-value]

    @property
    def doctor(self) -> Doctor:
        if "doctor" not in self._instances:
            from upstream.core.config import Config
            from upstream.core.doctor import Doctor
            config_file = self._config.config_file
            self._instances["doctor"] = Doctor(
                self.paths, self.store, self.lock,
                load_config=(lambda: Config.from_file(config_file)) if config_file else None,
            )
        return self._instances["doctor"]  # type: ignore[return-value]

    @property
    def transfer(self) -> TransferService:
        if "transfer" not in self._instances:
            from upstream.core.transfer import TransferService
            self._instances["transfer"] = TransferService(self.paths, self.store, self.engine)
        return self._instances["transfer"]  # type: ignore[return-value]

    # ---- 服务层 ----

    @property
    def packages(self) -> PackageService:
        if "packages" not in self._instances:
            from upstream.services.package_service import PackageService
            self._instances["packages"] = PackageService(self)
        return self._instances["packages"]  # type: ignore[return-value]


# ---- 全局单例 ----

_global: ServiceContainer | None = None
_global_lock = threading.Lock()


def get_container() -> ServiceContainer:
    """CLI 进程内共享的容器；首次调用时按当前配置创建"""
    global _global  # noqa: PLW0603
    if _global is not None:
        return _global
    with _global_lock:
        if _global is None:
            _global = ServiceContainer()
        return _global


def reset_container() -> None:
    """丢弃全局容器，下次 get_container() 按新配置重建"""
    global _global  # noqa: PLW0603
    with _global_lock:
        _global = None
