"""Tests for the daemon pipeline."""

import asyncio
import signal
from datetime import date, datetime
from unittest.mock import patch

import pytest

from proc_ranker.config import Config
from proc_ranker.daemon import Daemon, DaemonState
from proc_ranker.sampler import Sampler
from proc_ranker.storage import RankStore, init_database
from tests.conftest import FakeProcess, make_item, make_report


async def wait_until(condition, timeout=5.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


def fake_sampler(procs=None) -> Sampler:
    procs = procs or [FakeProcess(pid=10, name="alpha"), FakeProcess(pid=11, name="beta")]
    return Sampler(process_iter=lambda: list(procs), core_count=1, total_memory=1 << 20)


@pytest.fixture
def fast_config(home: Config) -> Config:
    """Config with a tiny tick and two-tick windows."""
    home.system.sample_interval = 0.01
    home.system.window_ticks = 2
    home.system.heartbeat_windows = 1
    return home


def test_daemon_state_updates():
    state = DaemonState()
    state.update_tick()
    state.update_report(make_report([make_item("a")], timestamp=datetime(2024, 3, 15, 12, 0)))

    assert state.tick_count == 1
    assert state.last_tick_time is not None
    assert state.report_count == 1
    assert state.last_report_time == datetime(2024, 3, 15, 12, 0)


def test_daemon_uses_configured_window(fast_config: Config):
    daemon = Daemon(fast_config, sampler=fake_sampler())

    assert daemon.aggregator.window_ticks == 2
    assert daemon.store.db_path == fast_config.db_path
    assert daemon.store.top_k == fast_config.ranking.top_k
    daemon.aggregator.close()


@pytest.mark.asyncio
async def test_init_database_creates_config_and_db(home: Config):
    daemon = Daemon(home, sampler=fake_sampler())

    await daemon._init_database()
    daemon.aggregator.close()

    assert home.config_path.exists()
    assert home.db_path.exists()
    assert RankStore(home.db_path).list_segments() == []


@pytest.mark.asyncio
async def test_store_reports_persists_queue(home: Config):
    init_database(home.db_path)
    daemon = Daemon(home, sampler=fake_sampler())
    queue = asyncio.Queue()
    task = asyncio.create_task(daemon._store_reports(queue))

    await queue.put(make_report([make_item("a", cpu=5.0)], timestamp=datetime(2024, 3, 15, 12)))
    await asyncio.wait_for(queue.join(), timeout=5.0)
    task.cancel()
    daemon.aggregator.close()

    assert daemon.state.report_count == 1
    assert RankStore(home.db_path).list_timestamps("2024-03-15") == ["2024-03-15 12:00:00"]


@pytest.mark.asyncio
async def test_store_reports_survives_failed_save(home: Config):
    """A report that fails to save does not stop later reports."""
    daemon = Daemon(home, sampler=fake_sampler())
    queue = asyncio.Queue()
    task = asyncio.create_task(daemon._store_reports(queue))

    # No database yet: the save fails and is logged
    await queue.put(make_report([make_item("a")], timestamp=datetime(2024, 3, 15, 12)))
    await asyncio.wait_for(queue.join(), timeout=5.0)
    init_database(home.db_path)
    await queue.put(make_report([make_item("a")], timestamp=datetime(2024, 3, 15, 13)))
    await asyncio.wait_for(queue.join(), timeout=5.0)
    task.cancel()
    daemon.aggregator.close()

    assert daemon.state.report_count == 1
    assert RankStore(home.db_path).list_timestamps("2024-03-15") == ["2024-03-15 13:00:00"]


@pytest.mark.asyncio
async def test_prune_now_uses_keep_days(home: Config):
    home.retention.keep_days = 30
    init_database(home.db_path)
    store = RankStore(home.db_path)
    store.save_report(make_report([make_item("old")], timestamp=datetime(2024, 1, 10, 12)))
    store.save_report(make_report([make_item("new")], timestamp=datetime(2024, 3, 10, 12)))
    daemon = Daemon(home, sampler=fake_sampler())

    result = await daemon.prune_now(today=date(2024, 3, 15))
    daemon.aggregator.close()

    assert result.segments_dropped == ["process_metrics_202401"]
    assert store.list_segments() == ["process_metrics_202403"]


@pytest.mark.asyncio
async def test_prune_now_without_database_returns_none(home: Config):
    daemon = Daemon(home, sampler=fake_sampler())

    assert await daemon.prune_now() is None
    daemon.aggregator.close()


@pytest.mark.asyncio
async def test_main_loop_produces_stored_reports(fast_config: Config):
    """Ticks flow through the aggregator into storage until shutdown."""
    daemon = Daemon(fast_config, sampler=fake_sampler())
    await daemon._init_database()
    daemon._storage_queue = daemon.aggregator.subscribe()
    daemon._storage_task = asyncio.create_task(daemon._store_reports(daemon._storage_queue))

    loop_task = asyncio.create_task(daemon._main_loop())
    await wait_until(lambda: daemon.state.report_count >= 2)
    daemon._shutdown_event.set()
    await asyncio.wait_for(loop_task, timeout=5.0)
    await daemon.stop()

    assert daemon.state.tick_count >= 4
    store = RankStore(fast_config.db_path)
    assert store.summary()["metric_rows"] >= 4
    entries = store.get_leaderboard(date.min, date.max)
    assert {e.name for e in entries} == {"alpha", "beta"}


@pytest.mark.asyncio
async def test_main_loop_survives_sampler_error(fast_config: Config):
    daemon = Daemon(fast_config, sampler=fake_sampler())
    calls = 0

    async def failing_collect():
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("enumeration failed")
        return []

    with patch.object(daemon.sampler, "collect_async", side_effect=failing_collect):
        loop_task = asyncio.create_task(daemon._main_loop())
        await wait_until(lambda: daemon.state.tick_count >= 1)
        daemon._shutdown_event.set()
        await asyncio.wait_for(loop_task, timeout=5.0)
    daemon.aggregator.close()

    assert calls >= 2


@pytest.mark.asyncio
async def test_stream_reports_broadcasts_and_heartbeats(fast_config: Config):
    daemon = Daemon(fast_config, sampler=fake_sampler())
    broadcast = []

    class FakeServer:
        client_count = 0

        async def broadcast(self, report):
            broadcast.append(report)

    daemon._socket_server = FakeServer()
    queue = asyncio.Queue()
    task = asyncio.create_task(daemon._stream_reports(queue))

    with patch.object(daemon, "_heartbeat") as mock_heartbeat:
        report = make_report([make_item("a")])
        await queue.put(report)
        await wait_until(lambda: broadcast)
        task.cancel()
    daemon.aggregator.close()

    assert broadcast == [report]
    mock_heartbeat.assert_called_once()


@pytest.mark.asyncio
async def test_stop_saves_queued_reports(home: Config):
    """Reports already published when shutdown starts are still saved."""
    init_database(home.db_path)
    daemon = Daemon(home, sampler=fake_sampler())
    daemon._storage_queue = daemon.aggregator.subscribe()
    daemon._storage_task = asyncio.create_task(daemon._store_reports(daemon._storage_queue))

    for hour in (9, 10, 11):
        daemon._storage_queue.put_nowait(
            make_report([make_item("a")], timestamp=datetime(2024, 3, 15, hour))
        )
    await daemon.stop()

    assert len(RankStore(home.db_path).list_timestamps("2024-03-15")) == 3
    assert daemon._storage_task is None


def test_handle_signal_sets_shutdown(home: Config):
    daemon = Daemon(home, sampler=fake_sampler())

    daemon._handle_signal(signal.SIGTERM)
    daemon.aggregator.close()

    assert daemon._shutdown_event.is_set()
