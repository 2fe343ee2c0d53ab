"""来源解析模块

- base.py: 公共接口、通道过滤与排序
- api.py: GitHub / GitLab / Gitea
- direct.py: 直链
- scraper.py: 下载页抓取
- registry.py: 按类型创建并缓存实例
"""

from upstream.core.provider.api import GiteaProvider, GitHubProvider, GitLabProvider
from upstream.core.provider.base import BaseProvider, filter_channel, is_nightly, sort_releases
from upstream.core.provider.direct import DirectProvider
from upstream.core.provider.registry import ProviderRegistry, http_client_from_config
from upstream.core.provider.scraper import ScraperProvider

__all__ = [
    "BaseProvider",
    "GitHubProvider",
    "GitLabProvider",
    "GiteaProvider",
    "DirectProvider",
    "ScraperProvider",
    "ProviderRegistry",
    "http_client_from_config",
    "filter_channel",
    "is_nightly",
    "sort_releases",
]
