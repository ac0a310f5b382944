"""Configuration system for proc-ranker."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

MAX_LEADERBOARD_LIMIT = 100  # Leaderboard queries never return more rows


@dataclass
class RetentionConfig:
    """Data retention configuration."""

    keep_days: int = 90  # Auto-prune drops data older than this


@dataclass
class SystemConfig:
    """Sampling loop configuration."""

    sample_interval: float = 1.0  # Seconds between ticks
    window_ticks: int = 60  # Ticks reduced into one report
    heartbeat_windows: int = 10  # Log heartbeat every N flushed windows
    auto_prune_interval_hours: int = 24  # Hours between auto-prune runs
    # Log file rotation
    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep


@dataclass
class RankingConfig:
    """Leaderboard selection configuration.

    top_k applies per dimension (cpu, memory, disk), so one report holds
    between top_k and 3 * top_k items.
    """

    top_k: int = 20
    leaderboard_limit: int = MAX_LEADERBOARD_LIMIT


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


@dataclass
class Config:
    """Main configuration container."""

    retention: RetentionConfig = field(default_factory=RetentionConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "proc-ranker"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def data_dir(self) -> Path:
        """Data directory."""
        return Path.home() / ".local" / "share" / "proc-ranker"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "proc-ranker"

    @property
    def runtime_dir(self) -> Path:
        """Runtime directory for the live socket.

        Stored in /tmp/ so it's cleared on reboot, avoiding stale sockets.
        """
        return Path("/tmp/proc-ranker")

    @property
    def db_path(self) -> Path:
        """Database path."""
        return self.data_dir / "metrics.db"

    @property
    def log_path(self) -> Path:
        """Daemon log path.

        Logs are expendable persistent state, so they go in XDG_STATE_HOME.
        """
        return self.state_dir / "daemon.log"

    @property
    def socket_path(self) -> Path:
        """Unix socket path for the live report stream."""
        return self.runtime_dir / "daemon.sock"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("retention", "system", "ranking"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.
        This ensures Config() and Config.load() use identical defaults.
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path) as f:
                data = tomlkit.load(f)
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        return cls(
            retention=_load_retention_config(data.get("retention", {})),
            system=_load_system_config(data.get("system", {})),
            ranking=_load_ranking_config(data.get("ranking", {})),
        )


def _load_retention_config(data: dict) -> RetentionConfig:
    """Load retention config from TOML data."""
    d = RetentionConfig()
    keep_days = data.get("keep_days", d.keep_days)
    if keep_days < 1:
        raise ValueError(f"keep_days must be >= 1, got {keep_days}")
    return RetentionConfig(keep_days=keep_days)


def _load_system_config(data: dict) -> SystemConfig:
    """Load system config from TOML data, using dataclass defaults for missing fields."""
    d = SystemConfig()

    sample_interval = data.get("sample_interval", d.sample_interval)
    window_ticks = data.get("window_ticks", d.window_ticks)
    heartbeat_windows = data.get("heartbeat_windows", d.heartbeat_windows)
    prune_hours = data.get("auto_prune_interval_hours", d.auto_prune_interval_hours)

    if sample_interval <= 0:
        raise ValueError(f"sample_interval must be > 0, got {sample_interval}")
    if window_ticks < 1:
        raise ValueError(f"window_ticks must be >= 1, got {window_ticks}")
    if heartbeat_windows < 1:
        raise ValueError(f"heartbeat_windows must be >= 1, got {heartbeat_windows}")
    if prune_hours < 1:
        raise ValueError(f"auto_prune_interval_hours must be >= 1, got {prune_hours}")

    return SystemConfig(
        sample_interval=sample_interval,
        window_ticks=window_ticks,
        heartbeat_windows=heartbeat_windows,
        auto_prune_interval_hours=prune_hours,
        log_max_bytes=data.get("log_max_bytes", d.log_max_bytes),
        log_backup_count=data.get("log_backup_count", d.log_backup_count),
    )


def _load_ranking_config(data: dict) -> RankingConfig:
    """Load ranking config from TOML data."""
    d = RankingConfig()
    top_k = data.get("top_k", d.top_k)
    leaderboard_limit = data.get("leaderboard_limit", d.leaderboard_limit)

    if top_k < 1:
        raise ValueError(f"top_k must be >= 1, got {top_k}")
    if not 1 <= leaderboard_limit <= MAX_LEADERBOARD_LIMIT:
        raise ValueError(
            f"leaderboard_limit must be between 1 and {MAX_LEADERBOARD_LIMIT}, "
            f"got {leaderboard_limit}"
        )

    return RankingConfig(top_k=top_k, leaderboard_limit=leaderboard_limit)
