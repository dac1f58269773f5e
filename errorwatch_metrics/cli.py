"""
ErrorWatch 指标 Agent 命令行入口模块。

提供 CLI 命令：start（前台运行 Agent）、init（生成示例配置）、
config show / config reset（查看、重置配置）以及 version。
"""
import asyncio
import logging
import signal
import sys

import click

from errorwatch_metrics import __version__
from errorwatch_metrics.config import (
    DEFAULT_CONFIG_FILE,
    ENV_HELP,
    mask_api_key,
    reset_config_files,
    resolve_config,
    write_default_config,
)
from errorwatch_metrics.exceptions import ConfigError

PROG_NAME = "errorwatch-metrics"


@click.group(invoke_without_command=True)
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__, prog_name=PROG_NAME)
@click.pass_context
def cli(ctx, config_path, verbose):
    """ErrorWatch metrics agent - sends CPU, RAM and network metrics."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if ctx.invoked_subcommand is None:
        click.echo(f"{PROG_NAME} v{__version__}")
        click.echo(f"Run '{PROG_NAME} start' to begin collecting metrics")


@cli.command()
@click.pass_context
def start(ctx):
    """以前台模式运行 Agent。"""
    logger = logging.getLogger("errorwatch-metrics")
    cfg = resolve_config(ctx.obj["config_path"])

    # API Key 缺失是唯一的致命错误
    if not cfg.api_key:
        click.echo(
            "Error: API key is required. Set METRICS_API_KEY environment variable or provide config file",
            err=True,
        )
        sys.exit(1)

    logger.info(f"Starting {PROG_NAME} v{__version__}")
    logger.info(f"Endpoint: {cfg.endpoint}")
    logger.info(f"Host: {cfg.hostname} ({cfg.host_id})")
    logger.info(f"Collection interval: {cfg.collection_interval}s")

    from errorwatch_metrics.agent import MetricsAgent

    agent = MetricsAgent(cfg)
    loop = asyncio.new_event_loop()

    # 注册信号处理，优雅关闭
    def _shutdown(sig, frame):
        logger.info(f"Received {signal.Signals(sig).name}, shutting down...")
        loop.call_soon_threadsafe(agent.stop)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        loop.run_until_complete(agent.run())
    except Exception:
        logger.exception("Agent crashed")
        sys.exit(1)
    finally:
        loop.close()


@cli.command()
@click.option("--output", "-o", default=DEFAULT_CONFIG_FILE, show_default=True, help="File to create")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init(output, force):
    """生成示例配置文件。"""
    try:
        write_default_config(output, force=force)
    except (ConfigError, OSError) as e:
        click.echo(f"Error creating config: {e}", err=True)
        sys.exit(1)
    click.echo(f"Created {output}")
    click.echo(f"Edit the file with your settings, then run with: {PROG_NAME} -c {output} start")


@cli.group()
def config():
    """Manage configuration."""


@config.command("show")
@click.pass_context
def config_show(ctx):
    """显示当前生效的配置。"""
    cfg = resolve_config(ctx.obj["config_path"])
    click.echo("Current configuration:")
    click.echo(f"  Endpoint: {cfg.endpoint}")
    click.echo(f"  API Key: {mask_api_key(cfg.api_key)}")
    click.echo(f"  Host ID: {cfg.host_id}")
    click.echo(f"  Hostname: {cfg.hostname}")
    click.echo(f"  Collection Interval: {cfg.collection_interval}s")
    tags = ", ".join(f"{k}={v}" for k, v in sorted(cfg.tags.items())) or "(none)"
    click.echo(f"  Tags: {tags}")
    t = cfg.transport
    click.echo(
        f"  Transport: use_sse={t.use_sse} retry_interval={t.retry_interval}s "
        f"max_retries={t.max_retries} buffer_size={t.buffer_size}"
    )


@config.command("reset")
@click.pass_context
def config_reset(ctx):
    """删除配置文件，恢复为环境变量默认配置。"""
    paths = None
    if ctx.obj["config_path"]:
        paths = [ctx.obj["config_path"]]
    removed = reset_config_files(paths)
    for path in removed:
        click.echo(f"Removed: {path}")
    if not removed:
        click.echo("No config files found to remove")

    click.echo("\nConfiguration reset to defaults via environment variables:")
    for name, desc in ENV_HELP.items():
        click.echo(f"  {name} - {desc}")


@cli.command()
def version():
    """Print version information."""
    click.echo(f"{PROG_NAME} version {__version__}")


def main():
    """CLI 入口函数。"""
    cli()


if __name__ == "__main__":
    main()
