"""来源工厂

按 Provider 类型和 base_url 创建并缓存来源实例；API 令牌与默认 base_url
从配置 providers.<name> 读取。
"""

from __future__ import annotations

import logging

from upstream.core.config import Config
from upstream.core.exceptions import ValidationError
from upstream.core.models import Provider, parse_enum
from upstream.core.provider.api import GiteaProvider, GitHubProvider, GitLabProvider
from upstream.core.provider.base import BaseProvider
from upstream.core.provider.direct import DirectProvider
from upstream.core.provider.scraper import ScraperProvider
from upstream.utils.net import HttpClient, RetryPolicy

logger = logging.getLogger(__name__)

_PROVIDERS: dict[Provider, type[BaseProvider]] = {
    Provider.GITHUB: GitHubProvider,
    Provider.GITLAB: GitLabProvider,
    Provider.GITEA: GiteaProvider,
    Provider.DIRECT: DirectProvider,
    Provider.SCRAPER: ScraperProvider,
}


def http_client_from_config(config: Config) -> HttpClient:
    return HttpClient(
        timeout=config.http.timeout,
        retry=RetryPolicy(attempts=max(1, config.http.retries), backoff=config.http.backoff),
    )


class ProviderRegistry:
    """来源实例缓存：同一 (类型, base_url) 只创建一次"""

    def __init__(self, config: Config, http: HttpClient | None = None) -> None:
        self.config = config
        self.http = http or http_client_from_config(config)
        self._instances: dict[tuple[Provider, str], BaseProvider] = {}

    def get(self, provider: Provider | str, base_url: str = "") -> BaseProvider:
        kind = parse_enum(Provider, provider, "provider")
        cls = _PROVIDERS.get(kind)
        if cls is None:
            raise ValidationError(f"不支持的来源类型: {provider}")
        key = (kind, base_url)
        if key not in self._instances:
            settings = self.config.provider(kind.value)
            self._instances[key] = cls(
                self.http,
                token=settings.api_token,
                base_url=base_url or settings.base_url,
            )
            logger.debug("创建来源实例: %s (base_url=%s)", kind.value, base_url or "默认")
        return self._instances[key]

    def register(self, provider: Provider, instance: BaseProvider, base_url: str = "") -> None:
        """注入自定义实例（测试替身或插件）"""
        self._instances[(provider, base_url)] = instance
