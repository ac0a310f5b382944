"""Background daemon for proc-ranker."""

import asyncio
import signal
from dataclasses import dataclass
from datetime import date, datetime, timedelta

import psutil
import structlog

from proc_ranker import logging as console
from proc_ranker.aggregator import AggregatedReport, WindowAggregator
from proc_ranker.config import Config
from proc_ranker.periods import format_timestamp
from proc_ranker.sampler import Sampler
from proc_ranker.socket_server import SocketServer
from proc_ranker.storage import PruneResult, RankStore, StorageError, init_database

log = structlog.get_logger()


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    tick_count: int = 0
    report_count: int = 0
    last_tick_time: datetime | None = None
    last_report_time: datetime | None = None

    def update_tick(self) -> None:
        self.tick_count += 1
        self.last_tick_time = datetime.now()

    def update_report(self, report: AggregatedReport) -> None:
        self.report_count += 1
        self.last_report_time = report.timestamp


class Daemon:
    """Runs the sampler on a fixed tick and fans reports out to storage and clients.

    The main loop only samples and accumulates. Window reduction happens on
    the aggregator's worker thread; two subscriber tasks persist and stream
    each finished report.
    """

    def __init__(self, config: Config, sampler: Sampler | None = None):
        self.config = config
        self.state = DaemonState()

        self.sampler = sampler or Sampler()
        self.aggregator = WindowAggregator(
            window_ticks=config.system.window_ticks,
            top_k=config.ranking.top_k,
        )
        self.store = RankStore(config.db_path, top_k=config.ranking.top_k)

        self._shutdown_event = asyncio.Event()
        self._socket_server: SocketServer | None = None
        self._storage_queue: asyncio.Queue[AggregatedReport] | None = None
        self._live_queue: asyncio.Queue[AggregatedReport] | None = None
        self._storage_task: asyncio.Task | None = None
        self._live_task: asyncio.Task | None = None
        self._rebuild_task: asyncio.Task | None = None
        self._auto_prune_task: asyncio.Task | None = None
        self._windows_since_heartbeat = 0

    async def _init_database(self) -> None:
        """Create config and database if missing.

        Extracted from start() so tests can initialize DB without full daemon startup.
        """
        if not self.config.config_path.exists():
            self.config.save()
            log.info("config_created", path=str(self.config.config_path))

        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        db_existed = self.config.db_path.exists()
        init_database(self.config.db_path)

        log.info("database_ready", existed=db_existed)
        console.database_ready(str(self.config.db_path))

    async def start(self) -> None:
        """Start the daemon and run until shutdown is requested."""
        from importlib.metadata import version

        pkg_version = version("proc-ranker")
        log.info("daemon_starting", version=pkg_version)
        console.version_info("proc-ranker", pkg_version)

        system = self.config.system
        log.info(
            "daemon_config",
            sample_interval=system.sample_interval,
            window_ticks=system.window_ticks,
            top_k=self.config.ranking.top_k,
            keep_days=self.config.retention.keep_days,
        )
        console.config_summary(
            system.sample_interval, system.window_ticks, self.config.ranking.top_k
        )

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))

        await self._init_database()

        self._socket_server = SocketServer(socket_path=self.config.socket_path)
        await self._socket_server.start()
        console.socket_listening(str(self.config.socket_path))

        self._storage_queue = self.aggregator.subscribe()
        self._live_queue = self.aggregator.subscribe()
        self._storage_task = asyncio.create_task(self._store_reports(self._storage_queue))
        self._live_task = asyncio.create_task(self._stream_reports(self._live_queue))

        # Backfill runs once in the background; it is a no-op on a populated leaderboard
        self._rebuild_task = asyncio.create_task(self._rebuild_leaderboard())
        self._auto_prune_task = asyncio.create_task(self._auto_prune())

        self.state.running = True
        log.info("daemon_started")
        console.daemon_started()

        await self._main_loop()

    async def stop(self) -> None:
        """Stop the daemon gracefully.

        Lets an in-flight window reduction finish and saves every report
        already queued before shutting the pipeline down.
        """
        log.info("daemon_stopping")
        console.daemon_stopping()
        self.state.running = False
        self._shutdown_event.set()

        await self.aggregator.wait_idle()
        if self._storage_task is not None and not self._storage_task.done():
            await self._storage_queue.join()

        for task in (
            self._storage_task,
            self._live_task,
            self._rebuild_task,
            self._auto_prune_task,
        ):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._storage_task = self._live_task = None
        self._rebuild_task = self._auto_prune_task = None

        for queue in (self._storage_queue, self._live_queue):
            if queue is not None:
                self.aggregator.unsubscribe(queue)
        self._storage_queue = self._live_queue = None

        if self._socket_server:
            await self._socket_server.stop()
            self._socket_server = None
            console.socket_stopped()

        self.aggregator.close()

        log.info("daemon_stopped", ticks=self.state.tick_count, reports=self.state.report_count)
        console.daemon_stopped()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        console.signal_received(sig.name)
        self._shutdown_event.set()

    async def _main_loop(self) -> None:
        """Sample every sample_interval seconds and feed the aggregator.

        The loop runs until shutdown event is set. A failing tick is logged
        and the loop continues after a short pause.
        """
        sample_interval = self.config.system.sample_interval
        loop = asyncio.get_running_loop()

        while not self._shutdown_event.is_set():
            try:
                iteration_start = loop.time()

                samples = await self.sampler.collect_async()
                if self._shutdown_event.is_set():
                    break

                await self.aggregator.on_tick(samples)
                self.state.update_tick()

                # Sleep for remaining interval (maintains consistent tick rate)
                elapsed = loop.time() - iteration_start
                sleep_time = sample_interval - elapsed
                if sleep_time > 0:
                    try:
                        await asyncio.wait_for(self._shutdown_event.wait(), timeout=sleep_time)
                        break
                    except TimeoutError:
                        pass

            except asyncio.CancelledError:
                log.info("main_loop_cancelled")
                console.main_loop_cancelled()
                break
            except Exception as e:
                log.error("sample_failed", error=str(e))
                console.sample_failed(str(e))
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=1.0)
                    break
                except TimeoutError:
                    pass

    async def _store_reports(self, queue: asyncio.Queue[AggregatedReport]) -> None:
        """Persist each published report on a worker thread."""
        loop = asyncio.get_running_loop()
        while True:
            report = await queue.get()
            try:
                saved = await loop.run_in_executor(None, self.store.save_report, report)
                timestamp = format_timestamp(report.timestamp)
                if saved:
                    self.state.update_report(report)
                    log.info("report_saved", timestamp=timestamp, items=len(report))
                    console.report_saved(timestamp, len(report))
                else:
                    console.report_save_failed(timestamp)
            except Exception as e:
                log.exception("report_store_failed", error=str(e))
            finally:
                queue.task_done()

    async def _stream_reports(self, queue: asyncio.Queue[AggregatedReport]) -> None:
        """Push each published report to live clients and emit heartbeats."""
        while True:
            report = await queue.get()
            console.report_flushed(report)
            if self._socket_server is not None:
                await self._socket_server.broadcast(report)

            self._windows_since_heartbeat += 1
            if self._windows_since_heartbeat >= self.config.system.heartbeat_windows:
                self._heartbeat()
                self._windows_since_heartbeat = 0

    def _heartbeat(self) -> None:
        rss_mb = psutil.Process().memory_info().rss / 1024 / 1024
        db_size_mb = (
            self.config.db_path.stat().st_size / 1024 / 1024
            if self.config.db_path.exists()
            else 0
        )
        client_count = self._socket_server.client_count if self._socket_server else 0
        tracked = len(self.sampler.tracked_pids)

        log.info(
            "daemon_heartbeat",
            ticks=self.state.tick_count,
            reports=self.state.report_count,
            tracked=tracked,
            buffered=self.aggregator.buffered_pids,
            clients=client_count,
            rss_mb=round(rss_mb, 1),
            db_mb=round(db_size_mb, 1),
        )
        console.heartbeat(
            windows=self.aggregator.reports_published,
            tracked_pids=tracked,
            buffered_pids=self.aggregator.buffered_pids,
            client_count=client_count,
            rss_mb=rss_mb,
            db_size_mb=db_size_mb,
        )

    async def _rebuild_leaderboard(self) -> None:
        loop = asyncio.get_running_loop()
        tables = await loop.run_in_executor(None, self.store.rebuild_leaderboard)
        console.rebuild_complete(tables)

    async def _auto_prune(self) -> None:
        """Prune data older than retention.keep_days on a fixed interval."""
        interval = self.config.system.auto_prune_interval_hours * 3600
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except TimeoutError:
                await self.prune_now()

    async def prune_now(self, today: date | None = None) -> PruneResult | None:
        """Run one retention pass on a worker thread."""
        cutoff = (today or date.today()) - timedelta(days=self.config.retention.keep_days)
        log.info("auto_prune_starting", cutoff=cutoff.isoformat())
        console.auto_prune_started()

        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, self.store.prune, cutoff)
        except StorageError as e:
            log.error("auto_prune_failed", error=str(e))
            console.error(f"Auto-prune failed: {e}", console.Icon.FAIL)
            return None

        log.info(
            "auto_prune_completed",
            segments_dropped=len(result.segments_dropped),
            leaderboard_rows_deleted=result.leaderboard_rows_deleted,
        )
        console.auto_prune_complete(result)
        return result


async def run_daemon(config: Config | None = None) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
    """
    if config is None:
        config = Config.load()

    console.configure(config)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
