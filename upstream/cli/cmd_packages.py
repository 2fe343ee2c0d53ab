"""CLI — 安装 / 升级 / 卸载 / 列表"""

from __future__ import annotations

import click

from upstream.cli import _echo_outcomes, _svc
from upstream.core.models import Channel, InstallOptions, Kind, Provider, parse_enum


def register(group: click.Group) -> None:
    group.add_command(install)
    group.add_command(remove)
    group.add_command(upgrade)
    group.add_command(list_packages)


_PROVIDERS = [p.value for p in Provider]
_KINDS = [k.value for k in Kind]
_CHANNELS = [c.value for c in Channel]


@click.command()
@click.argument("name")
@click.argument("reference")
@click.option("--provider", "-p", default=Provider.GITHUB.value, type=click.Choice(_PROVIDERS), help="来源类型")
@click.option("--kind", "-k", default=Kind.AUTO.value, type=click.Choice(_KINDS), help="资产类型")
@click.option("--channel", "-c", default=Channel.STABLE.value, type=click.Choice(_CHANNELS), help="发布通道")
@click.option("--tag", default="", help="安装指定 tag（默认最新）")
@click.option("--match", "match_pattern", default="", help="资产名必须包含（或匹配 glob）")
@click.option("--exclude", "exclude_pattern", default="", help="排除资产名包含（或匹配 glob）")
@click.option("--base-url", default="", help="自建实例 API 地址")
@click.option("--require-checksum", is_flag=True, help="找不到校验和时拒绝安装")
@click.option("--ignore-checksums", is_flag=True, help="跳过校验和验证")
@click.option("--desktop", "desktop_entry", is_flag=True, help="创建桌面入口")
def install(
    name: str, reference: str, provider: str, kind: str, channel: str, tag: str,
    match_pattern: str, exclude_pattern: str, base_url: str,
    require_checksum: bool, ignore_checksums: bool, desktop_entry: bool,
) -> None:
    """安装 REFERENCE（owner/repo 或 URL）并命名为 NAME"""
    options = InstallOptions(
        provider=parse_enum(Provider, provider, "provider"),
        kind=parse_enum(Kind, kind, "kind"),
        channel=parse_enum(Channel, channel, "channel"),
        tag=tag,
        match_pattern=match_pattern,
        exclude_pattern=exclude_pattern,
        base_url=base_url,
        require_checksum=require_checksum,
        ignore_checksums=ignore_checksums,
        desktop_entry=desktop_entry,
    )
    outcome = _svc().packages.install(name, reference, options)
    click.echo(outcome.message)


@click.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--purge", is_flag=True, help="同时删除缓存/配置/数据目录")
def remove(names: tuple[str, ...], purge: bool) -> None:
    """卸载一个或多个包"""
    _echo_outcomes(_svc().packages.remove(list(names), purge=purge), "卸载")


@click.command()
@click.argument("names", nargs=-1)
@click.option("--force", is_flag=True, help="包括已固定的包，且即使已是最新也重装")
@click.option("--check", is_flag=True, help="只检查可用更新，不做修改")
@click.option("--ignore-checksums", is_flag=True, help="跳过校验和验证")
def upgrade(names: tuple[str, ...], force: bool, check: bool, ignore_checksums: bool) -> None:
    """升级指定包（不指定则升级全部未固定的包）"""
    svc = _svc().packages
    if check:
        infos = svc.check(list(names) or None, force=force)
        if not infos:
            click.echo("没有已安装的包。")
        for i in infos:
            if i.available:
                click.echo(f"  ↑ {i.name:20s} {i.current or '?'} → {i.latest}")
            else:
                note = i.message or "已是最新"
                click.echo(f"  = {i.name:20s} {i.current or '?'}  {note}")
        return
    _echo_outcomes(
        svc.upgrade(list(names) or None, force=force, ignore_checksums=ignore_checksums), "升级",
    )


@click.command(name="list")
def list_packages() -> None:
    """列出已安装的包"""
    records = _svc().packages.list()
    if not records:
        click.echo("没有已安装的包。")
        return
    for r in records:
        pin = " [pinned]" if r.pinned else ""
        click.echo(
            f"  {r.name:20s} {r.installed_version or '?':14s} "
            f"[{r.provider.value}] {r.repo_reference}{pin}"
        )
