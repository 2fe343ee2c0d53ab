"""upstream 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
UpstreamError 统一转换为一行错误信息并以 1 退出；用法错误由 click 以 2 退出。
"""

import logging
import os
from typing import Any

import click

from upstream import __version__
from upstream.core.exceptions import ConfigError, UpstreamError
from upstream.services.container import get_container
from upstream.utils.logger import setup_logging

logger = logging.getLogger(__name__)


def _svc() -> Any:
    """获取全局服务容器的快捷方式"""
    return get_container()


def _echo_outcomes(outcomes: list, verb: str) -> None:
    """逐项输出批量结果；存在失败时以 1 退出"""
    failed = 0
    for o in outcomes:
        if o.failed:
            failed += 1
            click.echo(f"  ✗ {o.name:20s} {o.message}", err=True)
        elif o.skipped:
            click.echo(f"  - {o.name:20s} {o.message}")
        else:
            click.echo(f"  ✓ {o.name:20s} {o.message}")
    if not outcomes:
        click.echo(f"没有需要{verb}的包。")
    if failed:
        click.echo(f"{failed} 个包{verb}失败", err=True)
        click.get_current_context().exit(1)


class UpstreamGroup(click.Group):
    """把领域异常映射为 click 错误（退出码 1）"""

    def invoke(self, ctx: click.Context) -> Any:
        try:
            return super().invoke(ctx)
        except UpstreamError as e:
            raise click.ClickException(str(e)) from e


@click.group(cls=UpstreamGroup)
@click.version_option(version=__version__)
@click.option("--config", "config_path", default="", envvar="UPSTREAM_CONFIG", help="配置文件路径")
@click.pass_context
def main(ctx: click.Context, config_path: str) -> None:
    """upstream - 免 root 的多来源软件包管理器"""
    setup_logging(
        level=os.getenv("UPSTREAM_LOG_LEVEL", "WARNING"),
        json_output=os.getenv("UPSTREAM_LOG_JSON", "") == "1",
    )
    from upstream.core.config import init_config
    try:
        init_config(config_path)
    except ConfigError as e:
        # 配置损坏时仍允许 config / doctor 修复
        if ctx.invoked_subcommand not in ("config", "doctor"):
            raise ConfigError(f"{e}（可运行 upstream config reset 恢复默认配置）") from e
        logger.warning("%s，使用默认配置", e)


# 注册各领域子命令
from upstream.cli.cmd_packages import register as _reg_packages  # noqa: E402
from upstream.cli.cmd_package import register as _reg_package  # noqa: E402
from upstream.cli.cmd_config import register as _reg_config  # noqa: E402
from upstream.cli.cmd_misc import register as _reg_misc  # noqa: E402

_reg_packages(main)
_reg_package(main)
_reg_config(main)
_reg_misc(main)
