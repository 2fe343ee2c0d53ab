"""CLI — 环境维护（init / doctor / verify / import / export / probe）"""

from __future__ import annotations

import click

from upstream.cli import _echo_outcomes, _svc
from upstream.core.doctor import FAIL, OK, WARN, has_failures
from upstream.core.exceptions import PartialBatchFailure
from upstream.core.models import Channel, Provider


def register(group: click.Group) -> None:
    group.add_command(init)
    group.add_command(doctor)
    group.add_command(verify)
    group.add_command(import_cmd)
    group.add_command(export)
    group.add_command(probe)


_MARK = {OK: "✓", WARN: "!", FAIL: "✗"}


def _echo_findings(findings: list, verbose: bool = True) -> None:
    for f in findings:
        if f.level == OK and not verbose:
            continue
        who = f"[{f.package}] " if f.package else ""
        where = f"  ({f.path})" if f.path else ""
        click.echo(f"  {_MARK.get(f.level, '?')} {who}{f.message}{where}")
    if has_failures(findings):
        click.get_current_context().exit(1)


@click.command()
@click.option("--clean", is_flag=True, help="先删除整个受管根目录")
def init(clean: bool) -> None:
    """创建受管目录与 PATH 集成文件"""
    if clean:
        root = _svc().paths.root
        click.confirm(f"将删除 {root} 下的全部内容，继续？", abort=True)
    svc = _svc()
    svc.packages.init(clean=clean)
    click.echo(f"受管根目录: {svc.paths.root}")
    click.echo(f"在 shell 配置中加入: . {svc.paths.paths_file}")


@click.command()
@click.option("--repair", is_flag=True, help="修复可安全修复的问题")
@click.option("--quiet", "-q", is_flag=True, help="只显示问题")
def doctor(repair: bool, quiet: bool) -> None:
    """检查受管环境"""
    _echo_findings(_svc().packages.doctor(repair=repair), verbose=not quiet)


@click.command()
@click.argument("names", nargs=-1)
def verify(names: tuple[str, ...]) -> None:
    """复算安装文件的校验和并检查链接"""
    _echo_findings(_svc().packages.verify(list(names) or None))


@click.command(name="import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.option("--skip-failed", is_flag=True, help="单个包失败时继续，最后汇总报告")
@click.option("--force", is_flag=True, help="快照导入时覆盖已有的包")
def import_cmd(source: str, skip_failed: bool, force: bool) -> None:
    """从清单或快照导入"""
    try:
        outcomes = _svc().packages.import_(source, skip_failed=skip_failed, force=force)
    except PartialBatchFailure as e:
        _echo_outcomes(e.outcomes, "导入")
        return
    _echo_outcomes(outcomes, "导入")


@click.command()
@click.argument("dest", type=click.Path(dir_okay=False))
@click.option("--full", is_flag=True, help="导出整个根目录快照（tar.gz）")
def export(dest: str, full: bool) -> None:
    """导出清单（YAML）或完整快照"""
    path = _svc().packages.export(dest, full=full)
    click.echo(f"已导出: {path}")


@click.command()
@click.argument("reference")
@click.option("--provider", "-p", default=Provider.GITHUB.value, type=click.Choice([p.value for p in Provider]))
@click.option("--channel", "-c", default=Channel.STABLE.value, type=click.Choice([c.value for c in Channel]))
@click.option("--base-url", default="", help="自建实例 API 地址")
@click.option("--limit", default=5, show_default=True, help="最多显示的 release 数")
def probe(reference: str, provider: str, channel: str, base_url: str, limit: int) -> None:
    """列出 release 及本机的最佳资产（不安装）"""
    results = _svc().packages.probe(
        reference, provider=provider, channel=channel, base_url=base_url, limit=limit,
    )
    if not results:
        click.echo("没有找到 release。")
        return
    for r in results:
        click.echo(f"{r.release.tag}  {r.release.published_at or ''}  ({len(r.release.assets)} 个资产)")
        if r.candidate is not None:
            click.echo(f"    → {r.candidate.asset.name}  [{r.candidate.kind.value}, score={r.candidate.score}]")
        else:
            click.echo(f"    → 无匹配资产: {r.note}")
