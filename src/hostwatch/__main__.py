"""CLI entry point for hostwatch."""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click

from .config import Config
from .engine import InventoryEngine
from .exceptions import HostwatchError
from .models.common import HostStatus, PurgeCategory, ScanMode, SortField, SortOrder


def _echo_json(data: Any) -> None:
    if hasattr(data, "model_dump"):
        data = data.model_dump(mode="json", by_alias=True)
    elif isinstance(data, list):
        data = [item.model_dump(mode="json", by_alias=True) if hasattr(item, "model_dump") else item for item in data]
    click.echo(json.dumps(data, indent=2, default=str))


def _parse_value(text: str) -> Any:
    """JSON scalars (numbers, true/false) when they parse, the raw string otherwise."""
    try:
        return json.loads(text)
    except ValueError:
        return text


def _run(ctx: click.Context, action: Callable[[InventoryEngine], Awaitable[Any]], start: bool = False) -> Any:
    """Builds an engine, runs `action` against it and always stops the engine."""
    config: Config = ctx.obj["config"]

    async def workflow():
        engine = InventoryEngine(app_config=config)
        try:
            if start:
                await engine.start()
            return await action(engine)
        finally:
            await engine.stop()

    try:
        return asyncio.run(workflow())
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user.", err=True)
        sys.exit(130)
    except (HostwatchError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group()
@click.option(
    "--config-file", "-c",
    type=click.Path(exists=True, dir_okay=False, resolve_path=True),
    help="Path to a JSON configuration file.",
    envvar="HOSTWATCH_CONFIG_FILE"
)
@click.option(
    "--log-level", "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Override the logging level (e.g., DEBUG, INFO).",
    envvar="HOSTWATCH_LOGGING_LEVEL"
)
@click.option(
    "--log-format",
    type=click.Choice(["console", "json"], case_sensitive=False),
    default=None,
    help="Override logging format.",
    envvar="HOSTWATCH_LOGGING_FORMAT"
)
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str], log_level: Optional[str], log_format: Optional[str]) -> None:
    """hostwatch - discovers hosts on the local network and keeps an inventory of them."""
    try:
        if config_file:
            cfg = Config.from_file(Path(config_file))
        else:
            cfg = Config()
    except Exception as e:
        click.echo(f"Error loading configuration: {e}", err=True)
        sys.exit(1)

    if log_level:
        cfg.logging.level = log_level.upper()
    if log_format:
        cfg.logging.format = log_format.lower()

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg


@cli.command()
@click.option("--range", "-r", "range_spec", default=None, help="CIDR, dashed range or comma separated list. Defaults to auto-detection.")
@click.option("--mode", "-m", type=click.Choice([m.value for m in ScanMode]), default=ScanMode.FULL.value, show_default=True)
@click.pass_context
def scan(ctx: click.Context, range_spec: Optional[str], mode: str) -> None:
    """Sweeps a range and stores what answers."""
    _echo_json(_run(ctx, lambda engine: engine.run_scan(range_spec, ScanMode(mode))))


@cli.command()
@click.option("--mode", "-m", type=click.Choice([m.value for m in ScanMode]), default=ScanMode.QUICK.value, show_default=True)
@click.pass_context
def refresh(ctx: click.Context, mode: str) -> None:
    """Re-probes every known host."""
    _echo_json(_run(ctx, lambda engine: engine.run_refresh(ScanMode(mode))))


@cli.command()
@click.argument("range_spec", required=False)
@click.pass_context
def resolve(ctx: click.Context, range_spec: Optional[str]) -> None:
    """Prints the addresses a range expands to."""
    async def action(engine: InventoryEngine):
        return engine.resolve_range(range_spec)

    for address in _run(ctx, action):
        click.echo(address)


@cli.command()
@click.option("--status", type=click.Choice([s.value for s in HostStatus]), default=None)
@click.option("--prefix", "ip_prefix", default=None, help="Only addresses starting with this prefix.")
@click.option("--search", "-s", default=None, help="Free text matched against ip, mac, hostname, vendor and open ports.")
@click.option("--limit", type=click.IntRange(1, 1000), default=100, show_default=True)
@click.option("--offset", type=click.IntRange(0), default=0, show_default=True)
@click.option("--sort-by", type=click.Choice([f.value for f in SortField]), default=SortField.LAST_SEEN.value, show_default=True)
@click.option("--sort-order", type=click.Choice([o.value for o in SortOrder]), default=SortOrder.DESC.value, show_default=True)
@click.pass_context
def hosts(ctx: click.Context, status, ip_prefix, search, limit, offset, sort_by, sort_order) -> None:
    """Lists known hosts."""
    _echo_json(_run(ctx, lambda engine: engine.list_hosts(
        status=status, ip_prefix=ip_prefix, search=search, limit=limit,
        offset=offset, sort_by=sort_by, sort_order=sort_order,
    )))


@cli.command()
@click.argument("ip")
@click.option("--history", "-H", "history_limit", type=int, default=0, help="Also print this many history entries.")
@click.option("--set-hostname", default=None, help="Set a manual hostname.")
@click.option("--clear-hostname", is_flag=True, help="Remove the hostname.")
@click.option("--delete", is_flag=True, help="Delete the host.")
@click.pass_context
def host(ctx: click.Context, ip: str, history_limit: int, set_hostname: Optional[str], clear_hostname: bool, delete: bool) -> None:
    """Shows, edits or deletes one host."""
    async def action(engine: InventoryEngine):
        if delete:
            return {"deleted": await engine.delete_host(ip)}
        if set_hostname or clear_hostname:
            record = await engine.update_hostname(ip, None if clear_hostname else set_hostname)
        else:
            record = await engine.get_host(ip)
        if record is None:
            return None
        data = record.model_dump(mode="json", by_alias=True)
        if history_limit:
            entries = await engine.get_host_history(ip, limit=history_limit)
            data["history"] = [entry.model_dump(mode="json", by_alias=True) for entry in entries]
        return data

    result = _run(ctx, action)
    if result is None:
        click.echo(f"Host {ip} not found", err=True)
        sys.exit(1)
    _echo_json(result)


@cli.command("port-scan")
@click.pass_context
def port_scan(ctx: click.Context) -> None:
    """Scans the open ports of the online hosts with nmap."""
    _echo_json(_run(ctx, lambda engine: engine.port_scanner.run()))


@cli.command()
@click.option("--category", type=click.Choice([c.value for c in PurgeCategory]), default=None, help="Purge only this category.")
@click.option("--days", type=click.IntRange(0), default=None, help="Override the retention window. 0 deletes every row.")
@click.option("--all", "clear_everything", is_flag=True, help="Delete every host, history entry and latency sample.")
@click.confirmation_option(prompt="This deletes inventory data. Continue?")
@click.pass_context
def purge(ctx: click.Context, category: Optional[str], days: Optional[int], clear_everything: bool) -> None:
    """Deletes data that fell out of its retention window."""
    async def action(engine: InventoryEngine):
        if clear_everything:
            return await engine.clear_all()
        result = await engine.purge(PurgeCategory(category) if category else None, days)
        return result.as_report()

    _echo_json(_run(ctx, action))


@cli.command()
@click.pass_context
def estimate(ctx: click.Context) -> None:
    """Dry run of the purge: current and projected storage footprint."""
    _echo_json(_run(ctx, lambda engine: engine.estimate_purge_size()))


@cli.command()
@click.option("--set", "updates", multiple=True, metavar="KEY=VALUE", help="Update a retention setting, e.g. historyRetentionDays=14.")
@click.pass_context
def retention(ctx: click.Context, updates) -> None:
    """Shows or updates the retention configuration."""
    parsed = {}
    for item in updates:
        key, sep, value = item.partition("=")
        if not sep:
            raise click.BadParameter(f"expected KEY=VALUE, got '{item}'", param_hint="--set")
        parsed[key.strip()] = _parse_value(value.strip())

    async def action(engine: InventoryEngine):
        return engine.set_retention_config(parsed) if parsed else engine.get_retention_config()

    _echo_json(_run(ctx, action))


@cli.command()
@click.option("--file", "config_file", type=click.Path(exists=True, dir_okay=False), default=None, help="JSON file holding a unified schedule config to apply.")
@click.pass_context
def schedule(ctx: click.Context, config_file: Optional[str]) -> None:
    """Shows or updates the automatic scan schedule.

    Pausing is held in memory by a running `serve` process and is not
    controlled from here.
    """
    async def action(engine: InventoryEngine):
        if config_file:
            with open(config_file, encoding="utf-8") as f:
                engine.set_schedule_config(json.load(f))
        data = engine.get_schedule_config().model_dump(mode="json", by_alias=True)
        data["lastAutoRun"] = engine.coordinator.last_auto_run()
        return data

    _echo_json(_run(ctx, action))


@cli.group()
def blacklist() -> None:
    """Manages blacklisted addresses."""


@blacklist.command("list")
@click.pass_context
def blacklist_list(ctx: click.Context) -> None:
    async def action(engine: InventoryEngine):
        return engine.list_blacklist()

    _echo_json(_run(ctx, action))


@blacklist.command("add")
@click.argument("ip")
@click.pass_context
def blacklist_add(ctx: click.Context, ip: str) -> None:
    """Blacklists an address and deletes its host record."""
    if not _run(ctx, lambda engine: engine.add_to_blacklist(ip)):
        click.echo(f"Invalid IPv4 address: {ip}", err=True)
        sys.exit(1)
    click.echo(f"{ip} blacklisted")


@blacklist.command("remove")
@click.argument("ip")
@click.pass_context
def blacklist_remove(ctx: click.Context, ip: str) -> None:
    async def action(engine: InventoryEngine):
        return engine.remove_from_blacklist(ip)

    if not _run(ctx, action):
        click.echo(f"Invalid IPv4 address: {ip}", err=True)
        sys.exit(1)
    click.echo(f"{ip} removed from blacklist")


@cli.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Runs the automatic scans and purges until interrupted."""
    async def action(engine: InventoryEngine):
        click.echo("hostwatch running, press Ctrl+C to stop.")
        await asyncio.Event().wait()

    _run(ctx, action, start=True)


@cli.command()
@click.pass_context
def version(ctx: click.Context) -> None:
    """Show version information."""
    from . import __version__
    click.echo(f"hostwatch v{__version__}")


@cli.command()
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Show current configuration."""
    config = ctx.obj["config"]
    click.echo(config.model_dump_json(indent=2))


if __name__ == "__main__":
    cli()
