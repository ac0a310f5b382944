"""SQLite storage for window reports and the daily leaderboard.

Raw report rows live in monthly segment tables (process_metrics_YYYYMM) so
retention can drop whole months. The daily_leaderboard table counts, per
day and identity, how many reports ranked the identity in the top-K of each
dimension.
"""

import heapq
import re
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from io import StringIO
from pathlib import Path
from typing import Generator, Iterator, TextIO

import structlog

from proc_ranker.aggregator import DEFAULT_TOP_K, AggregatedReport, top_k_identities
from proc_ranker.config import MAX_LEADERBOARD_LIMIT
from proc_ranker.export import write_metric_rows
from proc_ranker.periods import (
    QueryValidationError,
    format_day,
    format_timestamp,
    parse_day,
    parse_timestamp,
)

log = structlog.get_logger()

SCHEMA_VERSION = 1

SEGMENT_PREFIX = "process_metrics_"
LEGACY_TABLE = "process_metrics"  # Pre-sharding table, read but never written
_SEGMENT_RE = re.compile(r"^process_metrics_(\d{6})$")

SCHEMA = """
CREATE TABLE IF NOT EXISTS daemon_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at REAL
);

CREATE TABLE IF NOT EXISTS daily_leaderboard (
    day TEXT NOT NULL,
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    cpu_count INTEGER NOT NULL DEFAULT 0,
    memory_count INTEGER NOT NULL DEFAULT 0,
    io_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (day, name, path)
);
"""

_SEGMENT_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS {table} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    pid INTEGER NOT NULL,
    name TEXT NOT NULL,
    path TEXT NOT NULL,
    cpu_usage_percent REAL NOT NULL,
    cpu_time_total_ms REAL NOT NULL,
    memory_usage_bytes INTEGER NOT NULL,
    disk_read_bytes INTEGER NOT NULL,
    disk_write_bytes INTEGER NOT NULL
)
"""
_SEGMENT_INDEX_SQL = "CREATE INDEX IF NOT EXISTS idx_{table}_timestamp ON {table}(timestamp)"

_METRIC_COLUMNS = (
    "timestamp, pid, name, path, cpu_usage_percent, cpu_time_total_ms, "
    "memory_usage_bytes, disk_read_bytes, disk_write_bytes"
)

_UPSERT_COUNTS_SQL = """
INSERT INTO daily_leaderboard (day, name, path, cpu_count, memory_count, io_count)
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT(day, name, path) DO UPDATE SET
    cpu_count = cpu_count + excluded.cpu_count,
    memory_count = memory_count + excluded.memory_count,
    io_count = io_count + excluded.io_count
"""

# Ranks every row within its flush timestamp and counts top-K appearances.
# Ties break on id, which is the order save_report inserted the items in.
_REBUILD_SQL = """
INSERT INTO daily_leaderboard (day, name, path, cpu_count, memory_count, io_count)
SELECT day, name, path, cpu_count, memory_count, io_count FROM (
    SELECT
        substr(timestamp, 1, 10) AS day,
        name,
        path,
        SUM(cpu_rank <= :k) AS cpu_count,
        SUM(mem_rank <= :k) AS memory_count,
        SUM(io_rank <= :k) AS io_count
    FROM (
        SELECT
            timestamp, name, path,
            ROW_NUMBER() OVER (
                PARTITION BY timestamp ORDER BY cpu_usage_percent DESC, id
            ) AS cpu_rank,
            ROW_NUMBER() OVER (
                PARTITION BY timestamp ORDER BY memory_usage_bytes DESC, id
            ) AS mem_rank,
            ROW_NUMBER() OVER (
                PARTITION BY timestamp ORDER BY disk_read_bytes + disk_write_bytes DESC, id
            ) AS io_rank
        FROM {table}
    )
    GROUP BY day, name, path
)
WHERE cpu_count + memory_count + io_count > 0
ON CONFLICT(day, name, path) DO UPDATE SET
    cpu_count = cpu_count + excluded.cpu_count,
    memory_count = memory_count + excluded.memory_count,
    io_count = io_count + excluded.io_count
"""


class StorageError(Exception):
    """Raised when the database cannot be read or a query fails."""


class DatabaseNotAvailable(Exception):
    """Raised when database doesn't exist and command should exit gracefully."""

    pass


@dataclass
class MetricRow:
    """One stored item of one report."""

    timestamp: str
    pid: int
    name: str
    path: str
    cpu_usage_percent: float
    cpu_time_total_ms: float
    memory_usage_bytes: int
    disk_read_bytes: int
    disk_write_bytes: int

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "pid": self.pid,
            "name": self.name,
            "path": self.path,
            "cpu_usage_percent": self.cpu_usage_percent,
            "cpu_time_total_ms": self.cpu_time_total_ms,
            "memory_usage_bytes": self.memory_usage_bytes,
            "disk_read_bytes": self.disk_read_bytes,
            "disk_write_bytes": self.disk_write_bytes,
        }


@dataclass
class LeaderboardEntry:
    """Summed top-K appearances of one identity over a day range."""

    rank: int
    name: str
    path: str
    cpu_count: int
    memory_count: int
    io_count: int

    @property
    def total(self) -> int:
        return self.cpu_count + self.memory_count + self.io_count

    def to_dict(self) -> dict:
        return {
            "rank": self.rank,
            "name": self.name,
            "path": self.path,
            "total": self.total,
            "cpu_count": self.cpu_count,
            "memory_count": self.memory_count,
            "io_count": self.io_count,
        }


@dataclass
class PruneResult:
    """What a retention pass removed (or would remove, on a dry run)."""

    segments_dropped: list[str]
    legacy_rows_deleted: int
    leaderboard_rows_deleted: int

    @property
    def is_empty(self) -> bool:
        return not (
            self.segments_dropped or self.legacy_rows_deleted or self.leaderboard_rows_deleted
        )


# ─────────────────────────────────────────────────────────────────────────────
# Connection and schema helpers
# ─────────────────────────────────────────────────────────────────────────────


def get_connection(db_path: Path) -> sqlite3.Connection:
    """Get a database connection in autocommit mode.

    Transactions are opened explicitly with transaction().
    """
    return sqlite3.connect(db_path, timeout=30.0, isolation_level=None)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """BEGIN IMMEDIATE ... COMMIT, rolling back on any error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


def init_database(db_path: Path) -> None:
    """Initialize database with WAL mode and schema.

    Safe to call on an existing database. A different stored schema version is
    logged and restamped; metric data is never deleted here.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    is_new = not db_path.exists()

    conn = get_connection(db_path)
    try:
        # WAL mode for concurrent reads
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA journal_size_limit=16777216")

        conn.executescript(SCHEMA)

        existing_version = get_schema_version(conn)
        if existing_version and existing_version != SCHEMA_VERSION:
            log.info(
                "schema_mismatch",
                existing=existing_version,
                expected=SCHEMA_VERSION,
                action="restamp",
            )
        if existing_version != SCHEMA_VERSION:
            set_daemon_state(conn, "schema_version", str(SCHEMA_VERSION))
        if is_new:
            log.info("database_initialized", path=str(db_path), version=SCHEMA_VERSION)
    finally:
        conn.close()


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    try:
        row = conn.execute("SELECT value FROM daemon_state WHERE key = 'schema_version'").fetchone()
        return int(row[0]) if row else 0
    except sqlite3.OperationalError:
        return 0


def get_daemon_state(conn: sqlite3.Connection, key: str) -> str | None:
    """Get a value from daemon_state table."""
    try:
        row = conn.execute("SELECT value FROM daemon_state WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None
    except sqlite3.OperationalError:
        return None


def set_daemon_state(conn: sqlite3.Connection, key: str, value: str) -> None:
    """Set a value in daemon_state table."""
    conn.execute(
        "INSERT OR REPLACE INTO daemon_state (key, value, updated_at) VALUES (?, ?, ?)",
        (key, value, time.time()),
    )


def segment_name(value: date | datetime) -> str:
    """Name of the monthly segment table holding rows for this day."""
    return f"{SEGMENT_PREFIX}{value.year:04d}{value.month:02d}"


def _check_table(table: str) -> str:
    # Table names are interpolated into SQL, so only known shapes pass
    if table != LEGACY_TABLE and not _SEGMENT_RE.match(table):
        raise ValueError(f"Not a metrics table: {table!r}")
    return table


def ensure_segment(conn: sqlite3.Connection, table: str) -> None:
    """Create a segment table and its timestamp index if missing."""
    _check_table(table)
    conn.execute(_SEGMENT_TABLE_SQL.format(table=table))
    conn.execute(_SEGMENT_INDEX_SQL.format(table=table))


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    ).fetchone()
    return row is not None


def list_segments(conn: sqlite3.Connection) -> list[str]:
    """All monthly segment tables, oldest first."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name LIKE 'process_metrics_%'"
    ).fetchall()
    return sorted(name for (name,) in rows if _SEGMENT_RE.match(name))


def _metric_row(row: tuple) -> MetricRow:
    return MetricRow(
        timestamp=row[0],
        pid=row[1],
        name=row[2],
        path=row[3],
        cpu_usage_percent=row[4],
        cpu_time_total_ms=row[5],
        memory_usage_bytes=row[6],
        disk_read_bytes=row[7],
        disk_write_bytes=row[8],
    )


def _validate_range(start: date | str, end: date | str) -> tuple[date, date]:
    start_day = parse_day(start)
    end_day = parse_day(end)
    if start_day > end_day:
        raise QueryValidationError(
            f"Start day {format_day(start_day)} is after end day {format_day(end_day)}"
        )
    return start_day, end_day


@contextmanager
def require_database(
    db_path: Path, *, top_k: int = DEFAULT_TOP_K, exit_on_missing: bool = False
) -> Generator["RankStore", None, None]:
    """Context manager for commands requiring database access.

    Args:
        db_path: Path to the database file
        top_k: Per-dimension cutoff used by leaderboard writes
        exit_on_missing: If True, raise SystemExit(1) on missing database.
                        If False, raise DatabaseNotAvailable.

    Yields:
        RankStore: Store bound to the database

    Raises:
        DatabaseNotAvailable: If database doesn't exist and exit_on_missing is False
        SystemExit: If database doesn't exist and exit_on_missing is True
    """
    import click

    if not db_path.exists():
        if exit_on_missing:
            click.echo("Error: Database not found", err=True)
            raise SystemExit(1)
        click.echo("Database not found. Run 'proc-ranker daemon' first.")
        raise DatabaseNotAvailable()

    yield RankStore(db_path, top_k=top_k)


# ─────────────────────────────────────────────────────────────────────────────
# RankStore
# ─────────────────────────────────────────────────────────────────────────────


class RankStore:
    """Persists reports and answers history and leaderboard queries.

    Every call opens its own connection, so one store may be shared by the
    daemon's executor threads and the CLI.
    """

    def __init__(self, db_path: Path, top_k: int = DEFAULT_TOP_K):
        self.db_path = Path(db_path)
        self.top_k = top_k

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        if not self.db_path.exists():
            raise StorageError(f"Database not found: {self.db_path}")
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open database: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    # ─────────────────────────────────────────────────────────────
    # Writes
    # ─────────────────────────────────────────────────────────────

    def save_report(self, report: AggregatedReport) -> bool:
        """Persist one report and credit its top-K members on the leaderboard.

        Top-K membership is recomputed over the report's own items, not the
        full window the ranks were stamped against. Returns False (after
        logging) on any failure.
        """
        if not report.items:
            log.debug("save_report_skipped", reason="empty")
            return False

        timestamp = format_timestamp(report.timestamp)
        day = format_day(report.timestamp.date())
        table = segment_name(report.timestamp)

        rows = [
            (
                timestamp,
                item.pid,
                item.name,
                item.path,
                item.cpu_avg_percent,
                item.cpu_time_total_ms,
                item.mem_avg_bytes,
                item.disk_read_total,
                item.disk_write_total,
            )
            for item in report.items
        ]

        cpu_top, mem_top, io_top = top_k_identities(report.items, self.top_k)
        counts = []
        for identity in dict.fromkeys(item.identity for item in report.items):
            cpu, mem, io = identity in cpu_top, identity in mem_top, identity in io_top
            if cpu or mem or io:
                counts.append((day, *identity, int(cpu), int(mem), int(io)))

        try:
            with self._connect() as conn, transaction(conn):
                ensure_segment(conn, table)
                conn.executemany(
                    f"INSERT INTO {table} ({_METRIC_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
                conn.executemany(_UPSERT_COUNTS_SQL, counts)
        except StorageError as e:
            log.error("save_report_failed", timestamp=timestamp, error=str(e))
            return False

        log.debug("report_stored", timestamp=timestamp, rows=len(rows), credited=len(counts))
        return True

    def rebuild_leaderboard(self) -> int:
        """Backfill daily_leaderboard from stored rows if it is empty.

        The emptiness check and every table scan share one write transaction,
        so a report saved concurrently is counted by exactly one of
        save_report and the rebuild. Each table runs under a savepoint; a
        table that fails is logged and skipped. Returns the number of tables
        rebuilt (0 when the leaderboard already had data or the store failed).
        """
        try:
            with self._connect() as conn, transaction(conn):
                if conn.execute("SELECT 1 FROM daily_leaderboard LIMIT 1").fetchone():
                    tables = None
                else:
                    tables = list_segments(conn)
                    if table_exists(conn, LEGACY_TABLE):
                        tables.insert(0, LEGACY_TABLE)

                rebuilt = 0
                for table in tables or []:
                    conn.execute("SAVEPOINT rebuild_table")
                    try:
                        conn.execute(_REBUILD_SQL.format(table=table), {"k": self.top_k})
                    except sqlite3.Error as e:
                        conn.execute("ROLLBACK TO rebuild_table")
                        log.warning("rebuild_table_skipped", table=table, error=str(e))
                    else:
                        rebuilt += 1
                    conn.execute("RELEASE rebuild_table")
        except StorageError as e:
            log.error("rebuild_failed", error=str(e))
            return 0

        if tables is None:
            log.debug("rebuild_skipped", reason="leaderboard_not_empty")
            return 0

        log.info("leaderboard_rebuilt", tables=rebuilt)
        return rebuilt

    def prune(self, cutoff: date | datetime | str, *, dry_run: bool = False) -> PruneResult:
        """Remove data older than cutoff.

        Drops every segment whose month is before the cutoff's month and
        deletes legacy and leaderboard rows dated before the cutoff day, then
        compacts the file. With dry_run, only counts what would go.

        daemon_state.last_prune is stamped only by a pass that removed
        something, so repeating a prune leaves the database untouched. A
        failed compaction is logged; the deletes are already committed.

        Raises:
            QueryValidationError: cutoff is not a valid day
            StorageError: the database cannot be modified
        """
        cutoff_day = parse_day(cutoff)
        cutoff_text = format_day(cutoff_day)
        cutoff_segment = segment_name(cutoff_day)

        with self._connect() as conn:
            dropped = [t for t in list_segments(conn) if t < cutoff_segment]
            has_legacy = table_exists(conn, LEGACY_TABLE)

            if dry_run:
                legacy = 0
                if has_legacy:
                    legacy = conn.execute(
                        f"SELECT COUNT(*) FROM {LEGACY_TABLE} WHERE timestamp < ?",
                        (cutoff_text,),
                    ).fetchone()[0]
                leaderboard = conn.execute(
                    "SELECT COUNT(*) FROM daily_leaderboard WHERE day < ?", (cutoff_text,)
                ).fetchone()[0]
                return PruneResult(dropped, legacy, leaderboard)

            with transaction(conn):
                for table in dropped:
                    conn.execute(f"DROP TABLE IF EXISTS {_check_table(table)}")
                legacy = 0
                if has_legacy:
                    legacy = conn.execute(
                        f"DELETE FROM {LEGACY_TABLE} WHERE timestamp < ?", (cutoff_text,)
                    ).rowcount
                leaderboard = conn.execute(
                    "DELETE FROM daily_leaderboard WHERE day < ?", (cutoff_text,)
                ).rowcount
                result = PruneResult(dropped, legacy, leaderboard)
                if not result.is_empty:
                    set_daemon_state(conn, "last_prune", str(time.time()))

            if not result.is_empty:
                try:
                    conn.execute("VACUUM")
                except sqlite3.Error as e:
                    log.warning("vacuum_failed", error=str(e))

        log.info(
            "prune_complete",
            cutoff=cutoff_text,
            segments_dropped=len(dropped),
            legacy_rows_deleted=legacy,
            leaderboard_rows_deleted=leaderboard,
        )
        return result

    # ─────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────

    def list_timestamps(self, day: date | str, hour: int | None = None) -> list[str]:
        """Distinct flush timestamps for a day (optionally one hour), newest first."""
        target = parse_day(day)
        if hour is not None and not 0 <= hour <= 23:
            raise QueryValidationError(f"Hour must be between 0 and 23, got {hour}")

        prefix = format_day(target) + (f" {hour:02d}:" if hour is not None else " ")
        table = segment_name(target)
        with self._connect() as conn:
            if not table_exists(conn, table):
                return []
            rows = conn.execute(
                f"SELECT DISTINCT timestamp FROM {table} WHERE timestamp LIKE ? "
                "ORDER BY timestamp DESC",
                (prefix + "%",),
            ).fetchall()
        return [ts for (ts,) in rows]

    def get_report_at(self, timestamp: datetime | str) -> list[MetricRow]:
        """Stored rows of the report flushed at timestamp, in report order."""
        ts = parse_timestamp(timestamp)
        table = segment_name(ts)
        with self._connect() as conn:
            if not table_exists(conn, table):
                return []
            rows = conn.execute(
                f"SELECT {_METRIC_COLUMNS} FROM {table} WHERE timestamp = ? ORDER BY id",
                (format_timestamp(ts),),
            ).fetchall()
        return [_metric_row(r) for r in rows]

    def _range_tables(self, conn: sqlite3.Connection, start: date, end: date) -> list[str]:
        first, last = segment_name(start), segment_name(end)
        tables = [t for t in list_segments(conn) if first <= t <= last]
        if table_exists(conn, LEGACY_TABLE):
            tables.insert(0, LEGACY_TABLE)
        return tables

    def _iter_range(
        self, conn: sqlite3.Connection, start: date, end: date
    ) -> Iterator[MetricRow]:
        low = f"{format_day(start)} 00:00:00"
        high = f"{format_day(end)} 23:59:59"
        cursors = [
            map(
                _metric_row,
                conn.execute(
                    f"SELECT {_METRIC_COLUMNS} FROM {table} "
                    "WHERE timestamp >= ? AND timestamp <= ? ORDER BY timestamp, id",
                    (low, high),
                ),
            )
            for table in self._range_tables(conn, start, end)
        ]
        return heapq.merge(*cursors, key=lambda row: row.timestamp)

    def export_range_to(self, start: date | str, end: date | str, out: TextIO) -> int:
        """Stream metric rows in the inclusive day range to out as CSV.

        Returns the number of data rows written.
        """
        start_day, end_day = _validate_range(start, end)
        with self._connect() as conn:
            count = write_metric_rows(self._iter_range(conn, start_day, end_day), out)
        log.debug(
            "export_complete", start=format_day(start_day), end=format_day(end_day), rows=count
        )
        return count

    def export_range(self, start: date | str, end: date | str) -> str:
        """Metric rows in the inclusive day range as CSV text."""
        buf = StringIO()
        self.export_range_to(start, end, buf)
        return buf.getvalue()

    def get_leaderboard(
        self, start: date | str, end: date | str, limit: int = MAX_LEADERBOARD_LIMIT
    ) -> list[LeaderboardEntry]:
        """Identities ordered by summed top-K appearances over the day range."""
        start_day, end_day = _validate_range(start, end)
        if not 1 <= limit <= MAX_LEADERBOARD_LIMIT:
            raise QueryValidationError(
                f"Limit must be between 1 and {MAX_LEADERBOARD_LIMIT}, got {limit}"
            )

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT name, path,
                       SUM(cpu_count), SUM(memory_count), SUM(io_count),
                       SUM(cpu_count + memory_count + io_count) AS total
                FROM daily_leaderboard
                WHERE day >= ? AND day <= ?
                GROUP BY name, path
                ORDER BY total DESC, name, path
                LIMIT ?
                """,
                (format_day(start_day), format_day(end_day), limit),
            ).fetchall()

        return [
            LeaderboardEntry(
                rank=rank,
                name=name,
                path=path,
                cpu_count=cpu,
                memory_count=mem,
                io_count=io,
            )
            for rank, (name, path, cpu, mem, io, _total) in enumerate(rows, 1)
        ]

    def list_segments(self) -> list[str]:
        with self._connect() as conn:
            return list_segments(conn)

    def summary(self) -> dict:
        """Counts and recency figures for the status command."""
        with self._connect() as conn:
            segments = list_segments(conn)
            has_legacy = table_exists(conn, LEGACY_TABLE)
            metric_rows = 0
            latest = None
            for table in segments + ([LEGACY_TABLE] if has_legacy else []):
                count, newest = conn.execute(
                    f"SELECT COUNT(*), MAX(timestamp) FROM {table}"
                ).fetchone()
                metric_rows += count
                if newest is not None and (latest is None or newest > latest):
                    latest = newest
            days = conn.execute(
                "SELECT COUNT(DISTINCT day), MIN(day), MAX(day) FROM daily_leaderboard"
            ).fetchone()
            last_prune = get_daemon_state(conn, "last_prune")
            version = get_schema_version(conn)

        return {
            "schema_version": version,
            "segments": segments,
            "legacy_table": has_legacy,
            "metric_rows": metric_rows,
            "latest_timestamp": latest,
            "leaderboard_days": days[0],
            "first_day": days[1],
            "last_day": days[2],
            "last_prune": float(last_prune) if last_prune else None,
        }
