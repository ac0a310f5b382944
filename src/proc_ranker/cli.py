"""CLI commands for proc-ranker."""

from typing import NoReturn

import click

FORMATS = ["table", "json"]


def _fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    click.echo(f"Error: {message}", err=True)
    raise SystemExit(1)


@click.group()
@click.version_option(package_name="proc-ranker")
def main() -> None:
    """Rank the processes that use the most CPU, memory and disk."""
    pass


@main.command()
def daemon() -> None:
    """Run the background sampler."""
    import asyncio

    from proc_ranker.daemon import run_daemon

    asyncio.run(run_daemon())


@main.command()
def status() -> None:
    """Quick health check."""
    from datetime import datetime

    from proc_ranker.config import Config
    from proc_ranker.storage import DatabaseNotAvailable, StorageError, require_database

    config = Config.load()

    # Check daemon status via socket file
    daemon_running = config.socket_path.exists()
    click.echo(f"Daemon: {'running' if daemon_running else 'stopped'}")

    try:
        with require_database(config.db_path) as store:
            summary = store.summary()
    except DatabaseNotAvailable:
        return
    except StorageError as e:
        _fail(str(e))

    segments = summary["segments"]
    click.echo(f"Database: {config.db_path}")
    span = f" ({segments[0]} .. {segments[-1]})" if segments else ""
    click.echo(f"Segments: {len(segments)}{span}")
    if summary["legacy_table"]:
        click.echo("Legacy table: present")
    click.echo(f"Metric rows: {summary['metric_rows']}")
    click.echo(f"Latest report: {summary['latest_timestamp'] or 'none'}")
    if summary["leaderboard_days"]:
        click.echo(
            f"Leaderboard: {summary['leaderboard_days']} days "
            f"({summary['first_day']} to {summary['last_day']})"
        )
    else:
        click.echo("Leaderboard: empty")
    if summary["last_prune"]:
        last = datetime.fromtimestamp(summary["last_prune"])
        click.echo(f"Last prune: {last.strftime('%Y-%m-%d %H:%M')}")


@main.command()
@click.option("--date", "-d", "day", default=None, help="Day to list (YYYY-MM-DD, default today)")
@click.option("--hour", "-H", type=int, default=None, help="Only this hour (0-23)")
def timestamps(day: str | None, hour: int | None) -> None:
    """List report timestamps for a day, newest first."""
    from datetime import date

    from proc_ranker.config import Config
    from proc_ranker.storage import (
        DatabaseNotAvailable,
        QueryValidationError,
        StorageError,
        require_database,
    )

    config = Config.load()
    day = day or date.today().isoformat()

    try:
        with require_database(config.db_path) as store:
            found = store.list_timestamps(day, hour)
    except DatabaseNotAvailable:
        return
    except (QueryValidationError, StorageError) as e:
        _fail(str(e))

    if not found:
        click.echo(f"No reports for {day}" + (f" at hour {hour}" if hour is not None else "") + ".")
        return
    for ts in found:
        click.echo(ts)


@main.command()
@click.argument("timestamp")
@click.option("--format", "-f", "fmt", type=click.Choice(FORMATS), default="table")
def report(timestamp: str, fmt: str) -> None:
    """Show the report stored at TIMESTAMP (YYYY-MM-DD HH:MM:SS)."""
    import json

    from proc_ranker.config import Config
    from proc_ranker.formatting import format_bytes, format_cpu_time, truncate
    from proc_ranker.storage import (
        DatabaseNotAvailable,
        QueryValidationError,
        StorageError,
        require_database,
    )

    config = Config.load()

    try:
        with require_database(config.db_path) as store:
            rows = store.get_report_at(timestamp)
    except DatabaseNotAvailable:
        return
    except (QueryValidationError, StorageError) as e:
        _fail(str(e))

    if fmt == "json":
        click.echo(json.dumps([row.to_dict() for row in rows], indent=2))
        return

    if not rows:
        click.echo(f"No report at {timestamp}.")
        return

    click.echo(f"Report {rows[0].timestamp}: {len(rows)} processes")
    click.echo(
        f"{'Name':24}  {'CPU%':>6}  {'CPU time':>9}  {'Memory':>9}  "
        f"{'Read':>9}  {'Write':>9}  Path"
    )
    click.echo("-" * 100)
    for row in sorted(rows, key=lambda r: r.cpu_usage_percent, reverse=True):
        click.echo(
            f"{truncate(row.name, 24):24}  {row.cpu_usage_percent:>6.1f}  "
            f"{format_cpu_time(row.cpu_time_total_ms):>9}  "
            f"{format_bytes(row.memory_usage_bytes):>9}  "
            f"{format_bytes(row.disk_read_bytes):>9}  {format_bytes(row.disk_write_bytes):>9}  "
            f"{row.path}"
        )


@main.command()
@click.option("--start", "-s", required=True, help="First day (YYYY-MM-DD)")
@click.option("--end", "-e", required=True, help="Last day (YYYY-MM-DD)")
@click.option(
    "--output", "-o", type=click.Path(dir_okay=False, writable=True), default=None,
    help="Write CSV to this file instead of stdout",
)
def export(start: str, end: str, output: str | None) -> None:
    """Export raw report rows in a day range as CSV."""
    from proc_ranker.config import Config
    from proc_ranker.storage import (
        DatabaseNotAvailable,
        QueryValidationError,
        StorageError,
        require_database,
    )

    config = Config.load()

    try:
        with require_database(config.db_path) as store:
            if output is None:
                click.echo(store.export_range(start, end), nl=False)
                return
            with open(output, "w", newline="", encoding="utf-8") as f:
                count = store.export_range_to(start, end, f)
    except DatabaseNotAvailable:
        return
    except (QueryValidationError, StorageError, OSError) as e:
        _fail(str(e))

    click.echo(f"Exported {count} rows to {output}", err=True)


@main.command()
@click.option("--period", "-p", default=None, help="Named period (e.g. today, this-week, total)")
@click.option("--start", "-s", default=None, help="First day (YYYY-MM-DD)")
@click.option("--end", "-e", default=None, help="Last day (YYYY-MM-DD)")
@click.option("--limit", "-n", type=int, default=None, help="Number of entries to show")
@click.option(
    "--format", "-f", "fmt", type=click.Choice(["table", "csv", "json"]), default="table"
)
def leaderboard(
    period: str | None, start: str | None, end: str | None, limit: int | None, fmt: str
) -> None:
    """Rank processes by how often they were in the top of a report.

    Counts come from the daily leaderboard: one point per report and
    dimension (CPU, memory, disk) in which a process placed in the top K.
    Defaults to the whole history.
    """
    import io
    import json

    from proc_ranker.config import Config
    from proc_ranker.export import write_leaderboard
    from proc_ranker.formatting import truncate
    from proc_ranker.periods import resolve_period
    from proc_ranker.storage import (
        DatabaseNotAvailable,
        QueryValidationError,
        StorageError,
        require_database,
    )

    config = Config.load()
    if limit is None:
        limit = config.ranking.leaderboard_limit

    if period and (start or end):
        _fail("Use either --period or --start/--end, not both")
    if bool(start) != bool(end):
        _fail("--start and --end must be given together")

    try:
        if start and end:
            first, last = start, end
        else:
            first, last = resolve_period(period or "total")
        with require_database(config.db_path) as store:
            entries = store.get_leaderboard(first, last, limit=limit)
    except DatabaseNotAvailable:
        return
    except (QueryValidationError, StorageError) as e:
        _fail(str(e))

    if fmt == "json":
        click.echo(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return
    if fmt == "csv":
        buf = io.StringIO()
        write_leaderboard(entries, buf)
        click.echo(buf.getvalue(), nl=False)
        return

    if not entries:
        click.echo("No leaderboard data for this range.")
        return

    click.echo(f"{'#':>4}  {'Name':28}  {'Total':>6}  {'CPU':>5}  {'Mem':>5}  {'IO':>5}  Path")
    click.echo("-" * 100)
    for entry in entries:
        click.echo(
            f"{entry.rank:>4}  {truncate(entry.name, 28):28}  {entry.total:>6}  "
            f"{entry.cpu_count:>5}  {entry.memory_count:>5}  {entry.io_count:>5}  {entry.path}"
        )


@main.command()
@click.option("--before", "-b", default=None, help="Delete data dated before this day")
@click.option("--keep", "-k", default=None, help="Retention preset: 1week, 1month, 3months")
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
def prune(before: str | None, keep: str | None, dry_run: bool, force: bool) -> None:
    """Delete old report segments and leaderboard days.

    Without options, keeps retention.keep_days days of history.
    """
    from datetime import date, timedelta

    from proc_ranker.config import Config
    from proc_ranker.periods import format_day, parse_day, retention_cutoff
    from proc_ranker.storage import (
        DatabaseNotAvailable,
        QueryValidationError,
        StorageError,
        require_database,
    )

    config = Config.load()

    if before and keep:
        _fail("Use either --before or --keep, not both")

    try:
        if before:
            cutoff = parse_day(before)
        elif keep:
            cutoff = retention_cutoff(keep)
        else:
            cutoff = date.today() - timedelta(days=config.retention.keep_days)
    except QueryValidationError as e:
        _fail(str(e))

    try:
        with require_database(config.db_path) as store:
            if dry_run:
                result = store.prune(cutoff, dry_run=True)
                click.echo(
                    f"Would drop {len(result.segments_dropped)} segments, "
                    f"{result.legacy_rows_deleted} legacy rows and "
                    f"{result.leaderboard_rows_deleted} leaderboard rows "
                    f"before {format_day(cutoff)}"
                )
                for table in result.segments_dropped:
                    click.echo(f"  - {table}")
                return

            if not force:
                click.confirm(f"Delete data older than {format_day(cutoff)}?", abort=True)

            result = store.prune(cutoff)
    except DatabaseNotAvailable:
        return
    except StorageError as e:
        _fail(str(e))

    click.echo(
        f"Dropped {len(result.segments_dropped)} segments, "
        f"deleted {result.legacy_rows_deleted} legacy rows and "
        f"{result.leaderboard_rows_deleted} leaderboard rows"
    )


@main.command()
def rebuild() -> None:
    """Backfill the daily leaderboard from stored reports.

    Only runs when the leaderboard is empty.
    """
    from proc_ranker.config import Config
    from proc_ranker.storage import DatabaseNotAvailable, require_database

    config = Config.load()

    try:
        with require_database(config.db_path, top_k=config.ranking.top_k) as store:
            tables = store.rebuild_leaderboard()
    except DatabaseNotAvailable:
        return

    if tables:
        click.echo(f"Rebuilt leaderboard from {tables} tables")
    else:
        click.echo("Nothing to rebuild (leaderboard already populated or no data)")


@main.command()
@click.option("--count", "-c", type=int, default=None, help="Exit after this many reports")
def live(count: int | None) -> None:
    """Stream reports from the running daemon."""
    import asyncio

    from proc_ranker.config import Config

    config = Config.load()

    try:
        asyncio.run(_stream_live(config.socket_path, count))
    except FileNotFoundError:
        _fail("Daemon is not running (no socket found)")
    except ConnectionError as e:
        _fail(f"Lost connection to daemon: {e}")
    except KeyboardInterrupt:
        pass


async def _stream_live(socket_path, count: int | None) -> None:
    from proc_ranker.formatting import format_bytes, truncate
    from proc_ranker.socket_client import SocketClient

    client = SocketClient(socket_path)
    await client.connect()
    received = 0
    try:
        while count is None or received < count:
            try:
                report = await client.read_report(timeout=5.0)
            except TimeoutError:
                continue
            if report is None:
                continue
            received += 1
            click.echo(f"\n{report.timestamp:%Y-%m-%d %H:%M:%S}  ({len(report)} processes)")
            ranked = sorted(report.items, key=lambda item: item.cpu_rank)[:10]
            for item in ranked:
                click.echo(
                    f"  cpu#{item.cpu_rank:<3} mem#{item.mem_rank:<3} io#{item.io_rank:<3} "
                    f"{truncate(item.name, 24):24} {item.cpu_avg_percent:>6.1f}%  "
                    f"{format_bytes(item.mem_avg_bytes):>9}  {format_bytes(item.disk_total):>9}"
                )
    finally:
        await client.disconnect()


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from proc_ranker.config import Config

    cfg = Config.load()

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    click.echo(f"Database: {cfg.db_path}")
    click.echo()
    click.echo("[retention]")
    click.echo(f"  keep_days = {cfg.retention.keep_days}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  sample_interval = {cfg.system.sample_interval}")
    click.echo(f"  window_ticks = {cfg.system.window_ticks}")
    click.echo(f"  heartbeat_windows = {cfg.system.heartbeat_windows}")
    click.echo(f"  auto_prune_interval_hours = {cfg.system.auto_prune_interval_hours}")
    click.echo()
    click.echo("[ranking]")
    click.echo(f"  top_k = {cfg.ranking.top_k}")
    click.echo(f"  leaderboard_limit = {cfg.ranking.leaderboard_limit}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from proc_ranker.config import Config

    cfg = Config.load()

    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from proc_ranker.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")
