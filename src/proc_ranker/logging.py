"""Console logging with Rich formatting plus structlog file output.

This module provides:
1. Icon vocabulary (Icon class namespace)
2. Core log functions (log, info, warn, error)
3. Domain helpers for daemon events (daemon_started, report_saved, heartbeat, etc.)
4. Structlog configuration (configure)

Console output uses Rich markup for colors. The JSON-lines log file written
through structlog stays machine-parseable.
"""

from __future__ import annotations

import logging
import logging.handlers
from datetime import datetime
from typing import TYPE_CHECKING

import structlog
from rich.console import Console

if TYPE_CHECKING:
    from proc_ranker.aggregator import AggregatedReport
    from proc_ranker.config import Config
    from proc_ranker.storage import PruneResult

_console = Console(highlight=False)


# ─────────────────────────────────────────────────────────────────────────────
# Icons
# ─────────────────────────────────────────────────────────────────────────────


class Icon:
    """Icon vocabulary for console output."""

    OK = "[bold green]✓[/]"
    FAIL = "[bold red]✗[/]"
    WAIT = "⏳"
    PRUNE = "🧹"
    SAVE = "💾"
    REBUILD = "🔁"
    REPORT = "[bright_cyan]▤[/]"
    HEARTBEAT = "[magenta]♡[/]"
    SIGNAL = "⚡"
    CONNECTED = "[green]⬤[/]"
    DISCONNECTED = "[red]⬤[/]"


_LEVEL_STYLES = {
    "info": "[bright_blue]\\[info][/]",
    "warn": "[yellow]\\[warn][/]",
    "error": "[bold red]\\[err][/] ",
}


# ─────────────────────────────────────────────────────────────────────────────
# Core Functions
# ─────────────────────────────────────────────────────────────────────────────


def log(level: str, msg: str, icon: str = "") -> None:
    """Print a log message with timestamp and level.

    Args:
        level: Log level (info, warn, error)
        msg: Message to print (can include Rich markup)
        icon: Optional icon to show after level (e.g., Icon.OK)
    """
    ts = datetime.now().strftime("%H:%M:%S")
    lvl = _LEVEL_STYLES.get(level, f"[{level}]")
    icon_part = f" {icon}" if icon else ""
    _console.print(f"[dim]{ts}[/] {lvl}{icon_part} {msg}")


def info(msg: str, icon: str = "") -> None:
    log("info", msg, icon)


def warn(msg: str, icon: str = "") -> None:
    log("warn", msg, icon)


def error(msg: str, icon: str = "") -> None:
    log("error", msg, icon)


def _short(name: str, width: int = 28) -> str:
    return name[:width] + ".." if len(name) > width else name


# ─────────────────────────────────────────────────────────────────────────────
# Domain Helpers
# ─────────────────────────────────────────────────────────────────────────────


def daemon_started() -> None:
    info("Daemon started", Icon.OK)


def daemon_stopping() -> None:
    info("Daemon stopping...", Icon.WAIT)


def daemon_stopped() -> None:
    info("Daemon stopped", Icon.OK)


def signal_received(name: str) -> None:
    info(f"Received [bold]{name}[/]", Icon.SIGNAL)


def config_summary(sample_interval: float, window_ticks: int, top_k: int) -> None:
    """Log the sampling cadence the daemon runs with."""
    info(
        f"Config: tick=[cyan]{sample_interval}s[/], window=[cyan]{window_ticks}[/] ticks, "
        f"top=[cyan]{top_k}[/]"
    )


def database_ready(path: str) -> None:
    info(f"Database ready at [cyan]{path}[/]")


def report_flushed(report: AggregatedReport) -> None:
    """Log a finished window with its CPU leader."""
    if not report.items:
        return
    leader = min(report.items, key=lambda item: item.cpu_rank)
    info(
        f"Window {report.timestamp:%H:%M:%S}: [cyan]{len(report)}[/] items, "
        f"top cpu [cyan]{_short(leader.name)}[/] [dim]({leader.cpu_avg_percent:.1f}%)[/]",
        Icon.REPORT,
    )


def report_saved(timestamp: str, item_count: int) -> None:
    info(f"[dim]Saved {item_count} rows for {timestamp}[/]", Icon.SAVE)


def report_save_failed(timestamp: str) -> None:
    error(f"Could not save report {timestamp}", Icon.FAIL)


def heartbeat(
    windows: int,
    tracked_pids: int,
    buffered_pids: int,
    client_count: int,
    rss_mb: float,
    db_size_mb: float,
) -> None:
    """Log periodic heartbeat stats."""
    info(
        f"[cyan]{windows}[/] windows, [cyan]{tracked_pids}[/] processes, "
        f"[dim]{buffered_pids} buffered, "
        f"{client_count} clients, "
        f"{round(rss_mb, 1)}MB RSS, {round(db_size_mb, 1)}MB DB[/]",
        Icon.HEARTBEAT,
    )


def client_connected(count: int) -> None:
    suffix = "s" if count != 1 else ""
    info(f"Live client connected [dim]({count} client{suffix})[/]", Icon.CONNECTED)


def client_disconnected(remaining: int) -> None:
    info(f"Live client disconnected [dim]({remaining} remaining)[/]", Icon.DISCONNECTED)


def socket_listening(path: str) -> None:
    info(f"Socket listening on [cyan]{path}[/]")


def socket_stopped() -> None:
    info("Socket server stopped")


def auto_prune_started() -> None:
    info("[dim]Auto-pruning...[/]", Icon.PRUNE)


def auto_prune_complete(result: PruneResult) -> None:
    """Log what an auto-prune pass removed."""
    parts = [f"{len(result.segments_dropped)} segments"]
    if result.legacy_rows_deleted > 0:
        parts.append(f"{result.legacy_rows_deleted} legacy rows")
    parts.append(f"{result.leaderboard_rows_deleted} leaderboard rows")
    info(f"[dim]Pruned {', '.join(parts)}[/]")


def rebuild_complete(tables: int) -> None:
    if tables:
        info(f"Leaderboard rebuilt from [cyan]{tables}[/] tables", Icon.REBUILD)


def sample_failed(error_msg: str) -> None:
    error(f"Sample failed: {error_msg}", Icon.FAIL)


def main_loop_cancelled() -> None:
    info("Main loop cancelled")


def version_info(name: str, version: str) -> None:
    info(f"[bold cyan]{name}[/] v{version}")


def invalid_client_message() -> None:
    warn("Invalid client message")


# ─────────────────────────────────────────────────────────────────────────────
# Structlog Configuration
# ─────────────────────────────────────────────────────────────────────────────


def _add_source(source: str) -> structlog.types.Processor:
    """Create a processor that adds a source field to log events."""

    def processor(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: structlog.types.EventDict,
    ) -> structlog.types.EventDict:
        event_dict["source"] = source
        return event_dict

    return processor


def configure(config: Config) -> None:
    """Route structlog events to a rotating JSON-lines file.

    Human-readable console output goes through the Rich helpers above;
    structlog only feeds the log file. Timestamps use local time to match
    report timestamps.
    """
    config.state_dir.mkdir(parents=True, exist_ok=True)

    file_handler = logging.handlers.RotatingFileHandler(
        config.log_path,
        maxBytes=config.system.log_max_bytes,
        backupCount=config.system.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(),
            foreign_pre_chain=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
                structlog.processors.add_log_level,
                _add_source("daemon"),
                structlog.processors.format_exc_info,
            ],
        )
    )

    stdlib_root = logging.getLogger()
    stdlib_root.setLevel(logging.INFO)
    stdlib_root.handlers.clear()
    stdlib_root.addHandler(file_handler)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso", utc=False, key="ts"),
            structlog.processors.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
