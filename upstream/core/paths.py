"""受管目录布局

    ~/.upstream/                  UPSTREAM_HOME 可覆盖
      metadata/packages.yml       包记录
      metadata/upstream.lock      全局锁
      metadata/paths.sh           PATH 集成脚本
      packages/<name>/            已安装的包
      symlinks/<name>             指向可执行文件的链接（加入 PATH）
      icons/                      桌面图标
      staging/                    下载与解包的临时槽位
    ~/.config/upstream/config.yml 配置文件（UPSTREAM_CONFIG 可覆盖）
    ~/.local/share/applications/  桌面入口
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ENV_HOME = "UPSTREAM_HOME"
ENV_CONFIG = "UPSTREAM_CONFIG"


def default_root() -> Path:
    env = os.environ.get(ENV_HOME, "").strip()
    return Path(env).expanduser() if env else Path.home() / ".upstream"


def default_config_file() -> Path:
    env = os.environ.get(ENV_CONFIG, "").strip()
    if env:
        return Path(env).expanduser()
    xdg = os.environ.get("XDG_CONFIG_HOME", "").strip()
    base = Path(xdg).expanduser() if xdg else Path.home() / ".config"
    return base / "upstream" / "config.yml"


def _xdg(var: str, fallback: str) -> Path:
    value = os.environ.get(var, "").strip()
    return Path(value).expanduser() if value else Path.home() / fallback


@dataclass(frozen=True)
class UpstreamPaths:
    """所有受管路径的集中定义"""

    root: Path
    desktop_dir: Path
    staging_root: Path
    cache_home: Path
    config_home: Path
    data_home: Path

    @classmethod
    def build(
        cls,
        root: str | Path = "",
        *,
        desktop_dir: str | Path = "",
        staging_dir: str | Path = "",
    ) -> UpstreamPaths:
        root_path = Path(root).expanduser() if root else default_root()
        return cls(
            root=root_path,
            desktop_dir=(
                Path(desktop_dir).expanduser() if desktop_dir
                else _xdg("XDG_DATA_HOME", ".local/share") / "applications"
            ),
            staging_root=(
                Path(staging_dir).expanduser() if staging_dir else root_path / "staging"
            ),
            cache_home=_xdg("XDG_CACHE_HOME", ".cache"),
            config_home=_xdg("XDG_CONFIG_HOME", ".config"),
            data_home=_xdg("XDG_DATA_HOME", ".local/share"),
        )

    @property
    def metadata_dir(self) -> Path:
        return self.root / "metadata"

    @property
    def packages_file(self) -> Path:
        return self.metadata_dir / "packages.yml"

    @property
    def lock_file(self) -> Path:
        return self.metadata_dir / "upstream.lock"

    @property
    def paths_file(self) -> Path:
        return self.metadata_dir / "paths.sh"

    @property
    def packages_dir(self) -> Path:
        return self.root / "packages"

    @property
    def symlinks_dir(self) -> Path:
        return self.root / "symlinks"

    @property
    def icons_dir(self) -> Path:
        return self.root / "icons"

    def managed_dirs(self) -> list[Path]:
        """init / doctor 需要保证存在的目录"""
        return [
            self.root, self.metadata_dir, self.packages_dir,
            self.symlinks_dir, self.icons_dir, self.staging_root,
        ]

    def install_dir(self, name: str) -> Path:
        return self.packages_dir / name

    def symlink_for(self, name: str) -> Path:
        return self.symlinks_dir / name

    def desktop_entry_for(self, name: str) -> Path:
        return self.desktop_dir / f"upstream-{name}.desktop"

    def purge_dirs(self, name: str) -> list[Path]:
        """--purge 时额外删除的用户数据目录"""
        return [self.cache_home / name, self.config_home / name, self.data_home / name]

    def ensure(self) -> list[Path]:
        """创建缺失的受管目录，返回新建的目录列表"""
        created = []
        for d in self.managed_dirs():
            if not d.is_dir():
                d.mkdir(parents=True, exist_ok=True)
                created.append(d)
        return created

    def paths_script(self) -> str:
        """PATH 集成脚本内容"""
        return (
            "# Generated by upstream. Source this file from your shell profile.\n"
            f'export PATH="{self.symlinks_dir}:$PATH"\n'
        )
