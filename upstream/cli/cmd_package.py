"""CLI — 单包记录操作"""

from __future__ import annotations

import click

from upstream.cli import _svc
from upstream.utils.yaml_io import dump_yaml


def register(group: click.Group) -> None:
    group.add_command(package_group)


@click.group(name="package")
def package_group() -> None:
    """查看与修改包记录"""


@package_group.command(name="pin")
@click.argument("name")
def pin(name: str) -> None:
    """固定版本：批量升级时跳过"""
    _svc().packages.pin(name)
    click.echo(f"已固定: {name}")


@package_group.command(name="unpin")
@click.argument("name")
def unpin(name: str) -> None:
    """取消固定"""
    _svc().packages.unpin(name)
    click.echo(f"已取消固定: {name}")


@package_group.command(name="get-key")
@click.argument("name")
@click.argument("key")
def get_key(name: str, key: str) -> None:
    """读取记录中的一个字段"""
    value = _svc().packages.get_key(name, key)
    click.echo("" if value is None else str(value))


@package_group.command(name="set-key")
@click.argument("name")
@click.argument("key")
@click.argument("value")
def set_key(name: str, key: str, value: str) -> None:
    """修改记录中的一个字段（自动转换类型）"""
    _svc().packages.set_key(name, key, value)
    click.echo(f"{name}.{key} = {value}")


@package_group.command(name="metadata")
@click.argument("name")
def metadata(name: str) -> None:
    """输出完整的包记录（YAML）"""
    click.echo(dump_yaml(_svc().packages.metadata(name)), nl=False)


@package_group.command(name="rename")
@click.argument("old")
@click.argument("new")
def rename(old: str, new: str) -> None:
    """重命名包（同时重命名链接）"""
    _svc().packages.rename(old, new)
    click.echo(f"已重命名: {old} → {new}")
