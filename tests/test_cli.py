"""Tests for CLI commands."""

import json
from datetime import date, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from proc_ranker.cli import main
from proc_ranker.config import Config
from proc_ranker.storage import RankStore, init_database
from tests.conftest import make_item, make_report


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def populated(home: Config) -> RankStore:
    """Database with two reports on 2024-03-15 and one on 2024-03-16."""
    init_database(home.db_path)
    store = RankStore(home.db_path)
    store.save_report(
        make_report(
            [make_item("chrome", cpu=40.0, mem=2048), make_item("vim", cpu=1.0, mem=10)],
            timestamp=datetime(2024, 3, 15, 9, 0, 0),
        )
    )
    store.save_report(
        make_report([make_item("chrome", cpu=20.0)], timestamp=datetime(2024, 3, 15, 10, 0, 0))
    )
    store.save_report(
        make_report([make_item("rsync", disk_read=1 << 20)], timestamp=datetime(2024, 3, 16, 8, 0))
    )
    return store


@pytest.mark.parametrize(
    "args",
    [
        ["status"],
        ["timestamps", "-d", "2024-03-15"],
        ["report", "2024-03-15 09:00:00"],
        ["export", "-s", "2024-03-01", "-e", "2024-03-31"],
        ["leaderboard"],
        ["prune", "--force"],
        ["rebuild"],
    ],
)
def test_no_database_shows_hint(runner: CliRunner, home: Config, args: list[str]) -> None:
    """Database commands without a database print a hint and exit cleanly."""
    result = runner.invoke(main, args)

    assert result.exit_code == 0
    assert "Database not found" in result.output
    assert "proc-ranker daemon" in result.output


class TestStatus:
    def test_status_summary(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Daemon: stopped" in result.output
        assert "Segments: 1" in result.output
        assert "Metric rows: 4" in result.output
        assert "Latest report: 2024-03-16 08:00:00" in result.output
        assert "Leaderboard: 2 days (2024-03-15 to 2024-03-16)" in result.output

    def test_status_empty_database(self, runner: CliRunner, home: Config) -> None:
        init_database(home.db_path)

        result = runner.invoke(main, ["status"])

        assert result.exit_code == 0
        assert "Latest report: none" in result.output
        assert "Leaderboard: empty" in result.output

    def test_status_running_when_socket_exists(self, runner: CliRunner, home: Config) -> None:
        home.socket_path.parent.mkdir(parents=True)
        home.socket_path.touch()

        result = runner.invoke(main, ["status"])

        assert "Daemon: running" in result.output


class TestTimestamps:
    def test_lists_newest_first(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["timestamps", "--date", "2024-03-15"])

        assert result.exit_code == 0
        assert result.output.splitlines() == ["2024-03-15 10:00:00", "2024-03-15 09:00:00"]

    def test_hour_filter(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["timestamps", "-d", "2024-03-15", "-H", "9"])

        assert result.output.splitlines() == ["2024-03-15 09:00:00"]

    def test_no_reports(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["timestamps", "-d", "2024-03-17", "-H", "3"])

        assert result.exit_code == 0
        assert "No reports for 2024-03-17 at hour 3." in result.output

    def test_invalid_hour(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["timestamps", "-d", "2024-03-15", "-H", "24"])

        assert result.exit_code == 1
        assert "Hour must be between 0 and 23" in result.output


class TestReport:
    def test_table(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["report", "2024-03-15 09:00:00"])

        assert result.exit_code == 0
        assert "Report 2024-03-15 09:00:00: 2 processes" in result.output
        lines = result.output.splitlines()
        assert lines[3].startswith("chrome")
        assert lines[4].startswith("vim")
        assert "2.0KB" in lines[3]

    def test_json(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["report", "2024-03-15 09:00:00", "--format", "json"])

        data = json.loads(result.output)
        assert [row["name"] for row in data] == ["chrome", "vim"]
        assert data[0]["memory_usage_bytes"] == 2048

    def test_missing(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["report", "2024-03-15 11:00:00"])

        assert result.exit_code == 0
        assert "No report at 2024-03-15 11:00:00." in result.output

    def test_invalid_timestamp(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["report", "lunchtime"])

        assert result.exit_code == 1
        assert "Invalid timestamp" in result.output


class TestExport:
    def test_to_stdout(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["export", "-s", "2024-03-15", "-e", "2024-03-15"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].startswith("Timestamp,PID,Name,Path")
        assert len(lines) == 4
        assert lines[1].startswith("2024-03-15 09:00:00,0,chrome,")

    def test_to_file(self, runner: CliRunner, populated: RankStore, tmp_path: Path) -> None:
        out = tmp_path / "out.csv"

        result = runner.invoke(
            main, ["export", "-s", "2024-03-01", "-e", "2024-03-31", "-o", str(out)]
        )

        assert result.exit_code == 0
        assert "Exported 4 rows" in result.output
        assert len(out.read_text().splitlines()) == 5

    def test_reversed_range(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["export", "-s", "2024-03-16", "-e", "2024-03-15"])

        assert result.exit_code == 1
        assert "is after end day" in result.output


class TestLeaderboard:
    def test_table_whole_history(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["leaderboard"])

        assert result.exit_code == 0
        lines = result.output.splitlines()
        # chrome was in two reports, vim and rsync in one each
        assert lines[2].split()[:3] == ["1", "chrome", "6"]
        assert "rsync" in result.output
        assert "vim" in result.output

    def test_csv(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(
            main, ["leaderboard", "-s", "2024-03-16", "-e", "2024-03-16", "-f", "csv"]
        )

        assert result.exit_code == 0
        assert result.output.splitlines() == [
            "Rank,Name,Path,Executions(Total),CpuCount,MemoryCount,IoCount",
            "1,rsync,/bin/rsync,3,1,1,1",
        ]

    def test_json_with_limit(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["leaderboard", "--limit", "1", "--format", "json"])

        data = json.loads(result.output)
        assert len(data) == 1
        assert data[0]["name"] == "chrome"
        assert data[0]["total"] == 6

    def test_named_period_with_no_data(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["leaderboard", "--period", "today"])

        assert result.exit_code == 0
        assert "No leaderboard data for this range." in result.output

    def test_period_and_range_conflict(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(
            main, ["leaderboard", "-p", "today", "-s", "2024-03-15", "-e", "2024-03-15"]
        )

        assert result.exit_code == 1
        assert "not both" in result.output

    def test_start_without_end(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["leaderboard", "-s", "2024-03-15"])

        assert result.exit_code == 1
        assert "must be given together" in result.output

    def test_unknown_period(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["leaderboard", "-p", "fortnight"])

        assert result.exit_code == 1
        assert "Unknown period" in result.output

    def test_zero_limit_rejected(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["leaderboard", "-n", "0"])

        assert result.exit_code == 1
        assert "Limit must be between 1 and 100" in result.output

    def test_limit_above_cap_rejected(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["leaderboard", "-n", "101"])

        assert result.exit_code == 1
        assert "got 101" in result.output


class TestPrune:
    def test_dry_run(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["prune", "--before", "2024-04-01", "--dry-run"])

        assert result.exit_code == 0
        assert "Would drop 1 segments" in result.output
        assert "process_metrics_202403" in result.output
        assert populated.list_segments() == ["process_metrics_202403"]

    def test_force(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["prune", "--before", "2024-04-01", "--force"])

        assert result.exit_code == 0
        assert "Dropped 1 segments" in result.output
        assert "3 leaderboard rows" in result.output
        assert populated.list_segments() == []

    def test_confirmation_declined(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["prune", "--before", "2024-04-01"], input="n\n")

        assert result.exit_code == 1
        assert populated.list_segments() == ["process_metrics_202403"]

    def test_keep_preset_keeps_recent_data(self, runner: CliRunner, home: Config) -> None:
        init_database(home.db_path)
        store = RankStore(home.db_path)
        recent = datetime.combine(date.today() - timedelta(days=1), datetime.min.time())
        store.save_report(make_report([make_item("a")], timestamp=recent))

        result = runner.invoke(main, ["prune", "--keep", "1week", "--force"])

        assert result.exit_code == 0
        assert "Dropped 0 segments" in result.output
        assert len(store.get_leaderboard(recent.date(), recent.date())) == 1

    def test_before_and_keep_conflict(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["prune", "-b", "2024-01-01", "-k", "1week"])

        assert result.exit_code == 1

    def test_invalid_preset(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["prune", "--keep", "forever", "--force"])

        assert result.exit_code == 1
        assert "Unknown retention preset" in result.output


class TestRebuild:
    def test_nothing_to_rebuild(self, runner: CliRunner, populated: RankStore) -> None:
        result = runner.invoke(main, ["rebuild"])

        assert result.exit_code == 0
        assert "Nothing to rebuild" in result.output

    def test_rebuild_empty_leaderboard(
        self, runner: CliRunner, populated: RankStore, home: Config
    ) -> None:
        import sqlite3

        conn = sqlite3.connect(home.db_path)
        conn.execute("DELETE FROM daily_leaderboard")
        conn.commit()
        conn.close()

        result = runner.invoke(main, ["rebuild"])

        assert result.exit_code == 0
        assert "Rebuilt leaderboard from 1 tables" in result.output
        assert populated.get_leaderboard(date(2024, 3, 15), date(2024, 3, 15))[0].name == "chrome"


def test_live_without_daemon(runner: CliRunner, home: Config) -> None:
    result = runner.invoke(main, ["live", "--count", "1"])

    assert result.exit_code == 1
    assert "Daemon is not running" in result.output


class TestConfigCommands:
    def test_config_show(self, runner: CliRunner, home: Config) -> None:
        result = runner.invoke(main, ["config", "show"])

        assert result.exit_code == 0
        assert "Exists: False" in result.output
        assert "window_ticks = 60" in result.output
        assert "top_k = 20" in result.output

    def test_config_show_reads_file(self, runner: CliRunner, home: Config) -> None:
        home.config_path.parent.mkdir(parents=True)
        home.config_path.write_text("[ranking]\ntop_k = 7\n")

        result = runner.invoke(main, ["config", "show"])

        assert "top_k = 7" in result.output

    def test_config_reset(self, runner: CliRunner, home: Config) -> None:
        home.config_path.parent.mkdir(parents=True)
        home.config_path.write_text("[ranking]\ntop_k = 7\n")

        result = runner.invoke(main, ["config", "reset", "--yes"])

        assert result.exit_code == 0
        assert Config.load().ranking.top_k == 20

    def test_config_edit_creates_default(self, runner: CliRunner, home: Config) -> None:
        with patch("subprocess.run") as mock_run:
            result = runner.invoke(main, ["config", "edit"], env={"EDITOR": "true"})

        assert result.exit_code == 0
        assert home.config_path.exists()
        mock_run.assert_called_once_with(["true", str(home.config_path)])
