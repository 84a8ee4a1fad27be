"""
OpsHostGuard 命令行入口模块。

提供 CLI 命令：check（验证配置）、probe、wake、shutdown、update、verify 和 cycle（完整周期）。
目标主机可以是命名组（--group）、主机列表（--hosts）或单台主机（--host）。
"""
import asyncio
import functools
import logging
import sys
from pathlib import Path

import click

from opshostguard import __version__
from opshostguard.config import default_config_path, load_config
from opshostguard.cycle import FleetCycle
from opshostguard.errors import ConfigurationError
from opshostguard.reporter import FleetReporter


def target_options(f):
    """--group / --hosts / --host 三选一。"""
    f = click.option("--host", default=None, help="Single host name")(f)
    f = click.option("--hosts", default=None, help="Comma-separated host list")(f)
    f = click.option("--group", "-g", default=None, help="Host group name")(f)
    return f


def _split_hosts(hosts):
    if not hosts:
        return None
    return [h.strip() for h in hosts.split(",") if h.strip()]


def handle_config_errors(f):
    """配置错误：输出到 stderr 并以非零退出码结束。"""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except ConfigurationError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
    return wrapper


def _cycle(ctx) -> FleetCycle:
    cfg = load_config(ctx.obj["config_path"])
    return FleetCycle.from_config(cfg)


@click.group(invoke_without_command=True)
@click.option("--config", "-c", default=default_config_path, help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, config, verbose):
    """OpsHostGuard - 机群唤醒、补丁与关机编排。"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # 未指定子命令时，显示基本信息
    if ctx.invoked_subcommand is None:
        click.echo(f"OpsHostGuard v{__version__}")
        click.echo(f"Config: {config}")
        click.echo("Use --help for available commands")


@cli.command()
@click.pass_context
def check(ctx):
    """验证配置文件和主机组文件是否正确。"""
    config_path = ctx.obj["config_path"]
    try:
        cycle = _cycle(ctx)
        cfg = cycle.config
        click.echo(f"✅ Config OK: {config_path}")
        click.echo(f"   Groups: {', '.join(cycle.groups.group_names()) or '(none)'}")
        click.echo(f"   Update strategy: {cfg.updates.strategy}")
        click.echo(f"   Wake wait: {cfg.wake.wait_interval}s, shutdown wait: {cfg.shutdown.wait_interval}s")
        click.echo(f"   Workers: {cfg.concurrency.workers}")
        click.echo(f"   Credentials: {'set' if cfg.credentials.username and cfg.credentials.password else 'missing'}")
    except Exception as e:
        click.echo(f"❌ Config error: {e}", err=True)
        sys.exit(1)


@cli.command()
@target_options
@click.option("--no-dns", is_flag=True, help="Connect to the host name without resolving addresses")
@click.pass_context
@handle_config_errors
def probe(ctx, group, hosts, host, no_dns):
    """探测主机是否在线且可管理。"""
    cycle = _cycle(ctx)
    target = cycle.groups.select(group, _split_hosts(hosts), host)
    use_dns = False if no_dns else None
    results = asyncio.run(cycle.probe.probe_many(target.host_names, use_dns))
    for r in results:
        click.echo(f"{r.host}: {r.classification.value} (ping={r.ping_reachable}, mgmt={r.management_port_reachable})")


@cli.command()
@target_options
@click.pass_context
@handle_config_errors
def wake(ctx, group, hosts, host):
    """发送唤醒包并在等待间隔后确认上线。"""
    cycle = _cycle(ctx)
    target = cycle.groups.select(group, _split_hosts(hosts), host)
    results = asyncio.run(cycle.wake.wake_batch(target))
    for r in results.values():
        click.echo(f"{r.host}: {r.status.value}{f' ({r.message})' if r.message else ''}")


@cli.command()
@target_options
@click.pass_context
@handle_config_errors
def shutdown(ctx, group, hosts, host):
    """关闭没有活动会话的主机并确认其已下线。"""
    cycle = _cycle(ctx)
    target = cycle.groups.select(group, _split_hosts(hosts), host)
    cycle.prepare()
    results = asyncio.run(cycle.shutdown.shutdown(target.host_names))
    for r in results.values():
        detail = r.reason or r.message
        click.echo(f"{r.host}: {r.status.value}{f' ({detail})' if detail else ''}")


@cli.command()
@target_options
@click.option("--force/--no-force", default=None, help="Update even if a user is logged in")
@click.option("--strategy", type=click.Choice(["native", "extended"]), default=None)
@click.pass_context
@handle_config_errors
def update(ctx, group, hosts, host, force, strategy):
    """安装可用更新。"""
    cycle = _cycle(ctx)
    target = cycle.groups.select(group, _split_hosts(hosts), host)
    cycle.prepare()
    provider = cycle.providers.get(strategy or cycle.config.updates.strategy)
    force = cycle.config.updates.force if force is None else force
    entries = asyncio.run(cycle.updates.apply(target.host_names, provider, force=force))
    for e in entries:
        click.echo(f"{e.host}: [{e.status.value}] {e.update_title}")
    if not entries:
        click.echo("No updates applied")


@cli.command()
@target_options
@click.option("--days", type=int, required=True, help="Lookback window in days")
@click.option("--strategy", type=click.Choice(["native", "extended"]), default=None)
@click.pass_context
@handle_config_errors
def verify(ctx, group, hosts, host, days, strategy):
    """查询回看窗口内的更新历史。"""
    cycle = _cycle(ctx)
    target = cycle.groups.select(group, _split_hosts(hosts), host)
    cycle.prepare()
    provider = cycle.providers.get(strategy or cycle.config.updates.strategy)
    entries = asyncio.run(cycle.updates.verify(target.host_names, provider, days))
    for e in entries:
        click.echo(f"{e.host}: {e.timestamp:%Y-%m-%d} [{e.status.value}] {e.update_title}")


@cli.command(name="cycle")
@target_options
@click.option("--updates/--no-updates", "apply_updates", default=False, help="Apply updates")
@click.option("--force/--no-force", default=None, help="Update even if a user is logged in")
@click.option("--verify-days", type=int, default=None, help="Verify update history over N days")
@click.option("--shutdown/--no-shutdown", default=True, help="Shut down idle hosts at the end")
@click.option("--inventory", is_flag=True, help="Collect hardware inventory")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write records JSON")
@click.pass_context
@handle_config_errors
def run_cycle(ctx, group, hosts, host, apply_updates, force, verify_days, shutdown, inventory, output):
    """运行完整周期：唤醒、采样、更新、核查、关机、汇总。"""
    cycle = _cycle(ctx)
    reporter = FleetReporter(cycle.config.server)

    async def _main():
        try:
            report = await cycle.run(
                group,
                _split_hosts(hosts),
                host,
                apply_updates=apply_updates,
                force=force,
                verify_days=verify_days,
                shutdown=shutdown,
                inventory=inventory,
            )
            await reporter.publish(report)
            return report
        finally:
            await reporter.close()

    report = asyncio.run(_main())
    s = report.summary
    click.echo(f"Group: {report.group}")
    click.echo(f"Hosts: {s.total_hosts}, failed: {s.failed_hosts_count} ({s.failed_percentage}%)")
    click.echo(f"Failed wake: {s.failed_wake_count}, failed shutdown: {s.failed_shutdown_count}")
    click.echo(f"Active sessions: {s.active_session_count}, high load: {s.high_load_count}")
    click.echo(f"Updates installed: {s.total_updates_installed}, pending reboot: {s.pending_reboot_count}")
    click.echo(f"Overall: {s.overall_status.value}")

    if output:
        Path(output).write_text(report.model_dump_json(indent=2), encoding="utf-8")
        click.echo(f"Records written to {output}")


def main():
    """CLI 入口函数。"""
    cli()


if __name__ == "__main__":
    main()
