"""Shared test fixtures for proc-ranker."""

import tempfile
from collections import namedtuple
from contextlib import ExitStack
from datetime import datetime
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import psutil
import pytest

from proc_ranker.aggregator import AggregatedItem, AggregatedReport
from proc_ranker.config import Config
from proc_ranker.sampler import ProcessSample
from proc_ranker.storage import RankStore, init_database

MemInfo = namedtuple("MemInfo", ["rss"])
CpuTimes = namedtuple("CpuTimes", ["user", "system"])
IoCounters = namedtuple("IoCounters", ["read_bytes", "write_bytes"])


@pytest.fixture
def tmp_db(tmp_path: Path) -> Path:
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def initialized_db(tmp_db: Path) -> Path:
    """Create an initialized database with schema."""
    init_database(tmp_db)
    return tmp_db


@pytest.fixture
def store(initialized_db: Path) -> RankStore:
    """RankStore over an initialized database."""
    return RankStore(initialized_db)


@pytest.fixture
def short_tmp_path() -> Iterator[Path]:
    """Create a short temporary path for Unix sockets.

    Unix socket paths are limited to ~104 characters and pytest's tmp_path
    is often longer, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="pr_") as tmpdir:
        yield Path(tmpdir)


def _make_path_prop(path: Path) -> property:
    """Create a property that returns the given path."""
    return property(lambda self: path)


@pytest.fixture
def home(short_tmp_path: Path) -> Iterator[Config]:
    """Default Config whose directories all live under a temp dir."""
    dirs = {
        "config_dir": short_tmp_path / "config",
        "data_dir": short_tmp_path / "data",
        "state_dir": short_tmp_path / "state",
        "runtime_dir": short_tmp_path / "run",
    }
    with ExitStack() as stack:
        for name, path in dirs.items():
            stack.enter_context(
                patch.object(Config, name, new_callable=lambda p=path: _make_path_prop(p))
            )
        yield Config()


class FakeProcess:
    """Stand-in for psutil.Process with scripted field values.

    Any field set to an exception instance raises it when read.
    """

    def __init__(
        self,
        pid: int,
        name: str | Exception = "proc",
        exe: str | Exception = "/usr/bin/proc",
        create_time: float = 1000.0,
        rss: int = 1024,
        cpu_user: float = 0.0,
        cpu_system: float = 0.0,
        read_bytes: int | None = 0,
        write_bytes: int | None = 0,
        io_error: Exception | None = None,
    ):
        self.pid = pid
        self._name = name
        self._exe = exe
        self._create_time = create_time
        self.rss = rss
        self.cpu_user = cpu_user
        self.cpu_system = cpu_system
        self.read_bytes = read_bytes
        self.write_bytes = write_bytes
        self.io_error = io_error

    @staticmethod
    def _value(value):
        if isinstance(value, Exception):
            raise value
        return value

    def name(self) -> str:
        return self._value(self._name)

    def exe(self) -> str:
        return self._value(self._exe)

    def create_time(self) -> float:
        return self._create_time

    def memory_info(self) -> MemInfo:
        return MemInfo(rss=self.rss)

    def cpu_times(self) -> CpuTimes:
        return CpuTimes(user=self.cpu_user, system=self.cpu_system)

    def io_counters(self) -> IoCounters:
        if self.io_error is not None:
            raise self.io_error
        return IoCounters(read_bytes=self.read_bytes, write_bytes=self.write_bytes)


def gone(pid: int) -> psutil.NoSuchProcess:
    """Exception a vanished process raises."""
    return psutil.NoSuchProcess(pid)


def make_sample(
    pid: int = 100,
    name: str = "app",
    path: str = "/usr/bin/app",
    cpu_percent: float = 0.0,
    cpu_time_ms: float = 0.0,
    working_set_bytes: int = 0,
    disk_read_bytes: int = 0,
    disk_write_bytes: int = 0,
    timestamp: datetime | None = None,
) -> ProcessSample:
    """Create a ProcessSample for testing."""
    return ProcessSample(
        pid=pid,
        name=name,
        path=path,
        timestamp=timestamp or datetime(2024, 3, 15, 12, 0, 0),
        cpu_percent=cpu_percent,
        cpu_time_ms=cpu_time_ms,
        working_set_bytes=working_set_bytes,
        disk_read_bytes=disk_read_bytes,
        disk_write_bytes=disk_write_bytes,
    )


def make_item(
    name: str = "app",
    path: str | None = None,
    cpu: float = 0.0,
    mem: int = 0,
    disk_read: int = 0,
    disk_write: int = 0,
    pid: int = 0,
    cpu_time_ms: float = 0.0,
) -> AggregatedItem:
    """Create an AggregatedItem for testing (path defaults to /bin/<name>)."""
    return AggregatedItem(
        pid=pid,
        name=name,
        path=path if path is not None else f"/bin/{name}",
        cpu_avg_percent=cpu,
        cpu_time_total_ms=cpu_time_ms,
        mem_avg_bytes=mem,
        disk_read_total=disk_read,
        disk_write_total=disk_write,
    )


def make_report(
    items: list[AggregatedItem],
    timestamp: datetime | None = None,
) -> AggregatedReport:
    """Create an AggregatedReport for testing."""
    return AggregatedReport(
        timestamp=timestamp or datetime(2024, 3, 15, 12, 0, 0),
        items=tuple(items),
    )
