"""Per-process sampler built on psutil.

One call to Sampler.collect() is one tick: every enumerable process is read
once and diffed against the previous tick to turn cumulative OS counters into
per-tick rates.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, TypeVar

import psutil
import structlog

log = structlog.get_logger()

T = TypeVar("T")

# Substituted when the executable path cannot be resolved
ACCESS_DENIED_PATH = "<Access Denied>"

# Field-level failures that leave the field at its default
_FIELD_ERRORS = (psutil.AccessDenied, NotImplementedError, AttributeError, OSError)


@dataclass
class ProcessSample:
    """Single process reading for one tick."""

    # ─────────────────────────────────────────────────────────────
    # Identity
    # ─────────────────────────────────────────────────────────────
    pid: int
    name: str
    path: str
    timestamp: datetime

    # ─────────────────────────────────────────────────────────────
    # CPU
    # ─────────────────────────────────────────────────────────────
    cpu_percent: float = 0.0  # Share of total machine capacity, 0-100
    cpu_time_ms: float = 0.0  # Cumulative user + system time

    # ─────────────────────────────────────────────────────────────
    # Memory
    # ─────────────────────────────────────────────────────────────
    working_set_bytes: int = 0
    memory_percent: float = 0.0  # Working set / total physical memory

    # ─────────────────────────────────────────────────────────────
    # Disk I/O
    # ─────────────────────────────────────────────────────────────
    disk_read_bytes: int = 0  # Cumulative
    disk_write_bytes: int = 0  # Cumulative
    disk_rate_bytes_per_sec: float = 0.0

    # ─────────────────────────────────────────────────────────────
    # Placeholders (not collected)
    # ─────────────────────────────────────────────────────────────
    network_sent_bytes: int = 0
    network_received_bytes: int = 0
    gpu_percent: float = 0.0

    @property
    def disk_total_bytes(self) -> int:
        return self.disk_read_bytes + self.disk_write_bytes


@dataclass
class _ProcessState:
    """Previous tick's counters for delta calculations."""

    cpu_time_ms: float
    disk_read_bytes: int
    disk_write_bytes: int
    sampled_at: float  # time.monotonic() when sampled
    create_time: float | None  # Detects pid reuse


def read_optional(reader: Callable[[], T]) -> T | None:
    """Call a psutil accessor, returning None when the field is unavailable.

    psutil.NoSuchProcess (and ZombieProcess) propagate: the process is gone
    and the whole sample is dropped by the caller.
    """
    try:
        return reader()
    except psutil.NoSuchProcess:
        raise
    except _FIELD_ERRORS:
        return None


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class Sampler:
    """Collects per-process samples and keeps per-pid state between ticks.

    Args:
        process_iter: Callable returning the processes to sample
            (defaults to psutil.process_iter)
        core_count: Logical CPU count used to normalize CPU percent
        total_memory: Physical memory in bytes used for memory_percent
        clock: Monotonic clock for wall-time deltas
    """

    def __init__(
        self,
        process_iter: Callable[[], Iterable[Any]] | None = None,
        core_count: int | None = None,
        total_memory: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._process_iter = process_iter or psutil.process_iter
        self._core_count = core_count or psutil.cpu_count(logical=True) or 1
        self._total_memory = total_memory or psutil.virtual_memory().total
        self._clock = clock
        self._states: dict[int, _ProcessState] = {}  # pid -> previous tick

    @property
    def tracked_pids(self) -> set[int]:
        """PIDs with delta state from the previous tick."""
        return set(self._states)

    def collect(self) -> list[ProcessSample]:
        """Sample every enumerable process except pid 0.

        Never raises because of a single process: a process that exits or
        refuses access mid-read is simply left out of this tick.
        """
        now = self._clock()
        timestamp = datetime.now()
        samples: list[ProcessSample] = []
        seen_pids: set[int] = set()

        for proc in self._process_iter():
            pid = proc.pid
            seen_pids.add(pid)
            if pid == 0:
                continue

            try:
                sample = self._sample_process(proc, now, timestamp)
            except psutil.Error as e:
                log.debug("process_sample_skipped", pid=pid, error=type(e).__name__)
                continue
            if sample is not None:
                samples.append(sample)

        # Evict state for pids that left the enumeration
        for pid in set(self._states) - seen_pids:
            del self._states[pid]

        return samples

    async def collect_async(self) -> list[ProcessSample]:
        """Run collection in executor (process reads are blocking)."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.collect)

    def _sample_process(
        self, proc: Any, now: float, timestamp: datetime
    ) -> ProcessSample | None:
        pid = proc.pid
        name = read_optional(proc.name)
        if not name:
            return None

        path = read_optional(proc.exe) or ACCESS_DENIED_PATH
        create_time = read_optional(proc.create_time)

        mem_info = read_optional(proc.memory_info)
        working_set = mem_info.rss if mem_info is not None else 0

        cpu_times = read_optional(proc.cpu_times)
        cpu_time_ms = (cpu_times.user + cpu_times.system) * 1000.0 if cpu_times else 0.0

        io = read_optional(proc.io_counters)
        disk_read = io.read_bytes if io is not None else 0
        disk_write = io.write_bytes if io is not None else 0

        cpu_percent = 0.0
        disk_rate = 0.0
        prev = self._states.get(pid)
        if prev is not None and prev.create_time != create_time:
            # Same pid, different process
            prev = None

        if prev is not None:
            wall_delta_ms = (now - prev.sampled_at) * 1000.0
            if wall_delta_ms > 0:
                cpu_delta = max(0.0, cpu_time_ms - prev.cpu_time_ms)
                cpu_percent = _clamp(
                    cpu_delta / wall_delta_ms / self._core_count * 100.0, 0.0, 100.0
                )
                read_delta = max(0, disk_read - prev.disk_read_bytes)
                write_delta = max(0, disk_write - prev.disk_write_bytes)
                disk_rate = (read_delta + write_delta) / (wall_delta_ms / 1000.0)

        self._states[pid] = _ProcessState(
            cpu_time_ms=cpu_time_ms,
            disk_read_bytes=disk_read,
            disk_write_bytes=disk_write,
            sampled_at=now,
            create_time=create_time,
        )

        memory_percent = (
            working_set / self._total_memory * 100.0 if self._total_memory > 0 else 0.0
        )

        return ProcessSample(
            pid=pid,
            name=name,
            path=path,
            timestamp=timestamp,
            cpu_percent=cpu_percent,
            cpu_time_ms=cpu_time_ms,
            working_set_bytes=working_set,
            memory_percent=memory_percent,
            disk_read_bytes=disk_read,
            disk_write_bytes=disk_write,
            disk_rate_bytes_per_sec=disk_rate,
        )
