"""CSV output for raw metric rows and leaderboards."""

from __future__ import annotations

import csv
from typing import TYPE_CHECKING, Iterable, TextIO

if TYPE_CHECKING:
    from proc_ranker.storage import LeaderboardEntry, MetricRow

METRIC_HEADER = (
    "Timestamp",
    "PID",
    "Name",
    "Path",
    "CpuUsagePercent",
    "CpuTimeTotalMs",
    "MemoryUsageBytes",
    "DiskReadBytes",
    "DiskWriteBytes",
)
LEADERBOARD_HEADER = (
    "Rank",
    "Name",
    "Path",
    "Executions(Total)",
    "CpuCount",
    "MemoryCount",
    "IoCount",
)


def _writer(out: TextIO) -> csv.writer:
    # Fields are quoted only when they hold a comma, quote or line break
    return csv.writer(out, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)


def write_metric_rows(rows: Iterable[MetricRow], out: TextIO, *, header: bool = True) -> int:
    """Write raw metric rows as CSV. Returns the number of data rows written."""
    writer = _writer(out)
    if header:
        writer.writerow(METRIC_HEADER)
    count = 0
    for row in rows:
        writer.writerow(
            (
                row.timestamp,
                row.pid,
                row.name,
                row.path,
                row.cpu_usage_percent,
                row.cpu_time_total_ms,
                row.memory_usage_bytes,
                row.disk_read_bytes,
                row.disk_write_bytes,
            )
        )
        count += 1
    return count


def write_leaderboard(entries: Iterable[LeaderboardEntry], out: TextIO) -> int:
    """Write a ranked leaderboard as CSV. Returns the number of data rows."""
    writer = _writer(out)
    writer.writerow(LEADERBOARD_HEADER)
    count = 0
    for entry in entries:
        writer.writerow(
            (
                entry.rank,
                entry.name,
                entry.path,
                entry.total,
                entry.cpu_count,
                entry.memory_count,
                entry.io_count,
            )
        )
        count += 1
    return count
