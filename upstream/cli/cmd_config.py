"""CLI — 配置管理（点路径键）"""

from __future__ import annotations

import click

from upstream.core.config import Config, ConfigStore, get_config
from upstream.core.exceptions import ConfigError
from upstream.utils.yaml_io import dump_yaml


def register(group: click.Group) -> None:
    group.add_command(config_group)


def _store() -> ConfigStore:
    return ConfigStore(get_config().config_file)


def _fmt(value: object) -> str:
    if isinstance(value, (dict, list)):
        return dump_yaml(value).rstrip()
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


@click.group(name="config")
def config_group() -> None:
    """查看与修改配置"""


@config_group.command(name="get")
@click.argument("key")
def config_get(key: str) -> None:
    """读取配置项，例如 http.timeout"""
    click.echo(_fmt(_store().get(key)))


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str) -> None:
    """设置配置项（按默认值类型转换）"""
    stored = _store().set(key, value)
    click.echo(f"{key} = {_fmt(stored)}")


@config_group.command(name="list")
def config_list() -> None:
    """列出全部配置（默认值合并文件覆盖）"""
    for key, value in _store().list():
        if key.endswith("api_token") and value:
            value = "********"
        click.echo(f"  {key} = {_fmt(value)}")


@config_group.command(name="edit")
def config_edit() -> None:
    """用 $EDITOR 打开配置文件"""
    store = _store()
    click.edit(filename=str(store.ensure_file()))
    try:
        Config.from_file(store.path)
    except ConfigError as e:
        click.echo(f"警告: {e}", err=True)
        click.get_current_context().exit(1)
    click.echo(f"配置文件: {store.path}")


@config_group.command(name="reset")
@click.argument("key", required=False, default="")
def config_reset(key: str) -> None:
    """恢复默认值（不指定键时重置全部）"""
    _store().reset(key)
    click.echo(f"已重置: {key or '全部配置'}")
