"""共享 fixture：隔离的受管根目录与服务容器"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

import upstream.core.config as cfgmod
from upstream.core.config import Config
from upstream.core.models import Provider
from upstream.services.container import ServiceContainer, reset_container
from tests.helpers import LINUX_X64, FakeProvider


@dataclass
class UpstreamEnv:
    container: ServiceContainer
    provider: FakeProvider

    @property
    def paths(self):
        return self.container.paths

    @property
    def store(self):
        return self.container.store

    @property
    def engine(self):
        return self.container.engine

    @property
    def lock(self):
        return self.container.lock


@pytest.fixture
def config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Config:
    """所有路径都落在 tmp_path 下"""
    for var, sub in (("XDG_CACHE_HOME", "cache"), ("XDG_CONFIG_HOME", "xdg-config"),
                     ("XDG_DATA_HOME", "data")):
        monkeypatch.setenv(var, str(tmp_path / sub))
    monkeypatch.setenv("UPSTREAM_CONFIG", str(tmp_path / "config.yml"))
    cfg = Config(
        root=str(tmp_path / "root"),
        desktop_dir=str(tmp_path / "applications"),
        config_file=str(tmp_path / "config.yml"),
    )
    monkeypatch.setattr(cfgmod, "_current", cfg)
    return cfg


@pytest.fixture
def env(config: Config) -> UpstreamEnv:
    container = ServiceContainer(config)
    container._instances["host"] = LINUX_X64
    provider = FakeProvider()
    container.providers.register(Provider.GITHUB, provider)
    container.paths.ensure()
    reset_container()
    return UpstreamEnv(container=container, provider=provider)


@pytest.fixture
def handle(env: UpstreamEnv):
    with env.lock.acquire("test") as h:
        yield h
