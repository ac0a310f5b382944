"""Window aggregation and ranking.

Every window_ticks ticks the buffered samples are reduced into one
AggregatedReport:

1. one AggregatedItem per pid (averages and first-to-last deltas)
2. items sharing (name, path) are merged by summing
3. three global ranks (cpu, memory, disk) are stamped on every merged item
4. the union of the top-K of each dimension is kept
"""

from __future__ import annotations

import asyncio
import json
import math
from collections.abc import Iterable, Sequence
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime

import structlog

from proc_ranker.sampler import ProcessSample
from proc_ranker.window import WindowBuffer, WindowSnapshot

log = structlog.get_logger()

MERGED_PID = 0  # pid of an item that stands for several processes
DEFAULT_TOP_K = 20
DEFAULT_WINDOW_TICKS = 60


@dataclass(frozen=True)
class AggregatedItem:
    """One (name, path) identity reduced over a window."""

    pid: int
    name: str
    path: str
    cpu_avg_percent: float
    cpu_time_total_ms: float
    mem_avg_bytes: int
    disk_read_total: int
    disk_write_total: int
    cpu_rank: int = 0
    mem_rank: int = 0
    io_rank: int = 0

    @property
    def identity(self) -> tuple[str, str]:
        return (self.name, self.path)

    @property
    def disk_total(self) -> int:
        return self.disk_read_total + self.disk_write_total

    def to_dict(self) -> dict:
        """Serialize to a dictionary."""
        return {
            "pid": self.pid,
            "name": self.name,
            "path": self.path,
            "cpu_avg_percent": self.cpu_avg_percent,
            "cpu_time_total_ms": self.cpu_time_total_ms,
            "mem_avg_bytes": self.mem_avg_bytes,
            "disk_read_total": self.disk_read_total,
            "disk_write_total": self.disk_write_total,
            "cpu_rank": self.cpu_rank,
            "mem_rank": self.mem_rank,
            "io_rank": self.io_rank,
        }

    @classmethod
    def from_dict(cls, data: dict) -> AggregatedItem:
        """Deserialize from a dictionary."""
        return cls(
            pid=data["pid"],
            name=data["name"],
            path=data["path"],
            cpu_avg_percent=data["cpu_avg_percent"],
            cpu_time_total_ms=data["cpu_time_total_ms"],
            mem_avg_bytes=data["mem_avg_bytes"],
            disk_read_total=data["disk_read_total"],
            disk_write_total=data["disk_write_total"],
            cpu_rank=data.get("cpu_rank", 0),
            mem_rank=data.get("mem_rank", 0),
            io_rank=data.get("io_rank", 0),
        )


@dataclass(frozen=True)
class AggregatedReport:
    """Leaderboard digest of one flush window."""

    timestamp: datetime
    items: tuple[AggregatedItem, ...]

    def __len__(self) -> int:
        return len(self.items)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(sep=" "),
            "items": [item.to_dict() for item in self.items],
        }

    @classmethod
    def from_dict(cls, data: dict) -> AggregatedReport:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            items=tuple(AggregatedItem.from_dict(i) for i in data["items"]),
        )

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, data: str) -> AggregatedReport:
        """Deserialize from JSON string."""
        return cls.from_dict(json.loads(data))


# ─────────────────────────────────────────────────────────────────────────────
# Reduction steps
# ─────────────────────────────────────────────────────────────────────────────


def build_item(pid: int, samples: Sequence[ProcessSample]) -> AggregatedItem:
    """Reduce one pid's samples for the window (samples must be non-empty)."""
    first = samples[0]
    last = samples[-1]
    return AggregatedItem(
        pid=pid,
        name=first.name,
        path=first.path,
        cpu_avg_percent=math.fsum(s.cpu_percent for s in samples) / len(samples),
        cpu_time_total_ms=max(0.0, last.cpu_time_ms - first.cpu_time_ms),
        mem_avg_bytes=int(sum(s.working_set_bytes for s in samples) / len(samples)),
        disk_read_total=max(0, last.disk_read_bytes - first.disk_read_bytes),
        disk_write_total=max(0, last.disk_write_bytes - first.disk_write_bytes),
    )


def merge_by_identity(items: Iterable[AggregatedItem]) -> list[AggregatedItem]:
    """Sum items sharing (name, path) into one merged item per identity.

    A logical application's footprint is the sum of its processes. Float sums
    use math.fsum so the result does not depend on pid order. Merged CPU is
    capped at 100 (percent of the whole machine).
    """
    groups: dict[tuple[str, str], list[AggregatedItem]] = {}
    for item in items:
        groups.setdefault(item.identity, []).append(item)

    merged = []
    for (name, path), group in groups.items():
        cpu = math.fsum(i.cpu_avg_percent for i in group)
        merged.append(
            AggregatedItem(
                pid=MERGED_PID,
                name=name,
                path=path,
                cpu_avg_percent=max(0.0, min(100.0, cpu)),
                cpu_time_total_ms=math.fsum(i.cpu_time_total_ms for i in group),
                mem_avg_bytes=sum(i.mem_avg_bytes for i in group),
                disk_read_total=sum(i.disk_read_total for i in group),
                disk_write_total=sum(i.disk_write_total for i in group),
            )
        )
    return merged


def _by_cpu(item: AggregatedItem) -> float:
    return item.cpu_avg_percent


def _by_memory(item: AggregatedItem) -> int:
    return item.mem_avg_bytes


def _by_disk(item: AggregatedItem) -> int:
    return item.disk_total


def rank_order(items: Sequence[AggregatedItem], key) -> list[AggregatedItem]:
    """Sort descending by key; equal keys keep their input order."""
    return sorted(items, key=key, reverse=True)


def assign_ranks(items: Sequence[AggregatedItem]) -> list[AggregatedItem]:
    """Stamp cpu/mem/io ranks (1..N, gap-free) over the full set."""
    cpu_ranks = {id(item): r for r, item in enumerate(rank_order(items, _by_cpu), 1)}
    mem_ranks = {id(item): r for r, item in enumerate(rank_order(items, _by_memory), 1)}
    io_ranks = {id(item): r for r, item in enumerate(rank_order(items, _by_disk), 1)}
    return [
        replace(
            item,
            cpu_rank=cpu_ranks[id(item)],
            mem_rank=mem_ranks[id(item)],
            io_rank=io_ranks[id(item)],
        )
        for item in items
    ]


def top_k_identities(
    items: Sequence[AggregatedItem], k: int
) -> tuple[set[tuple[str, str]], set[tuple[str, str]], set[tuple[str, str]]]:
    """Identities in the top k of each dimension, ranked within items."""
    return (
        {i.identity for i in rank_order(items, _by_cpu)[:k]},
        {i.identity for i in rank_order(items, _by_memory)[:k]},
        {i.identity for i in rank_order(items, _by_disk)[:k]},
    )


def select_top(items: Sequence[AggregatedItem], k: int = DEFAULT_TOP_K) -> list[AggregatedItem]:
    """Union of the top k by CPU, memory and disk, keyed by identity.

    An item that is top-k in any single dimension survives however it ranks
    elsewhere, so the result holds between min(k, N) and 3k items.
    """
    selected: dict[tuple[str, str], AggregatedItem] = {}
    for key in (_by_cpu, _by_memory, _by_disk):
        for item in rank_order(items, key)[:k]:
            selected.setdefault(item.identity, item)
    return list(selected.values())


def reduce_window(snapshot: WindowSnapshot, top_k: int = DEFAULT_TOP_K) -> AggregatedReport:
    """Reduce a drained window into its report."""
    per_pid = [
        build_item(pid, samples) for pid, samples in snapshot.samples_by_pid.items() if samples
    ]
    ranked = assign_ranks(merge_by_identity(per_pid))
    return AggregatedReport(
        timestamp=snapshot.flushed_at,
        items=tuple(select_top(ranked, top_k)),
    )


# ─────────────────────────────────────────────────────────────────────────────
# Aggregator
# ─────────────────────────────────────────────────────────────────────────────


class WindowAggregator:
    """Buffers ticks and publishes one AggregatedReport per window.

    add_samples() runs on the tick loop and only appends; the reduction of a
    full window runs in a worker executor, one at a time. Finished reports are
    put on every subscriber queue.
    """

    def __init__(
        self,
        window_ticks: int = DEFAULT_WINDOW_TICKS,
        top_k: int = DEFAULT_TOP_K,
        executor: Executor | None = None,
    ):
        if window_ticks < 1:
            raise ValueError(f"window_ticks must be >= 1, got {window_ticks}")
        self.window_ticks = window_ticks
        self.top_k = top_k
        self._buffer = WindowBuffer()
        self._tick_count = 0
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="window-reduce"
        )
        self._owns_executor = executor is None
        self._reduce_lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()
        self._subscribers: list[asyncio.Queue[AggregatedReport]] = []
        self.reports_published = 0

    @property
    def tick_count(self) -> int:
        """Ticks accumulated in the current window."""
        return self._tick_count

    @property
    def buffered_pids(self) -> int:
        return len(self._buffer)

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue[AggregatedReport]:
        """Register a new subscriber queue for finished reports."""
        queue: asyncio.Queue[AggregatedReport] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[AggregatedReport]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def add_samples(self, samples: list[ProcessSample]) -> WindowSnapshot | None:
        """Append one tick; on the last tick of a window, drain and return it."""
        self._buffer.append(samples)
        self._tick_count += 1
        if self._tick_count < self.window_ticks:
            return None
        self._tick_count = 0
        return self._buffer.drain()

    async def on_tick(self, samples: list[ProcessSample]) -> None:
        """Accumulate a tick and schedule the reduction when a window closes."""
        snapshot = self.add_samples(samples)
        if snapshot is None:
            return
        task = asyncio.create_task(self._reduce_and_publish(snapshot))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _reduce_and_publish(self, snapshot: WindowSnapshot) -> None:
        async with self._reduce_lock:
            loop = asyncio.get_running_loop()
            try:
                report = await loop.run_in_executor(
                    self._executor, reduce_window, snapshot, self.top_k
                )
            except Exception as e:
                log.exception("window_reduce_failed", error=str(e))
                return

        if not report.items:
            log.info("window_empty", timestamp=str(snapshot.flushed_at))
            return

        log.info(
            "window_flushed",
            timestamp=str(report.timestamp),
            pids=len(snapshot.samples_by_pid),
            samples=snapshot.sample_count,
            items=len(report),
        )
        self.publish(report)

    def publish(self, report: AggregatedReport) -> None:
        """Deliver a report to every subscriber."""
        self.reports_published += 1
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(report)
            except asyncio.QueueFull:
                log.warning("subscriber_queue_full", timestamp=str(report.timestamp))

    async def wait_idle(self) -> None:
        """Wait for every in-flight reduction to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        """Release the worker executor if this aggregator created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=True)
