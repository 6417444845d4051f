"""
Configuration module for the live-state synchronizer.
Loads settings from YAML file and provides typed configuration.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml


@dataclass
class TwitchConfig:
    """Twitch API credentials for the user whose follows are cached."""
    client_id: str
    client_secret: str
    user_id: str
    access_token: str = ""
    refresh_token: str = ""


@dataclass
class DatabaseConfig:
    """SQLite store settings."""
    path: str = "./data/livesync.db"


@dataclass
class CacheConfig:
    """Refresh cadence for cached recordings."""
    ttl_seconds: int = 30 * 60            # Target staleness bound for recordings
    min_refresh_interval: float = 5.0     # seconds between round-robin ticks, lower bound
    max_refresh_interval: float = 300.0   # upper bound
    recordings_fetch_limit: int = 5       # recordings fetched per channel refresh
    batch_size: int = 3                   # channels refreshed concurrently in a sweep
    batch_delay_ms: int = 500             # pause between sweep batches
    retention_days: int = 60              # recordings older than this are pruned
    backoff_sweep_interval: int = 3600    # seconds between stale backoff sweeps


@dataclass
class BackoffConfig:
    """Per-channel retry backoff after failed recording refreshes."""
    base_delay: float = 60.0
    max_delay: float = 3600.0
    jitter: float = 0.3                   # Up to +30% random delay
    stale_after_hours: float = 24.0


@dataclass
class CoalescerConfig:
    """Batched store writes from concurrent request handlers."""
    retry_delay: float = 1.0              # seconds before retrying a failed flush


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: str = "./logs/livesync.log"
    max_size_mb: int = 10
    backup_count: int = 5
    components: Dict[str, str] = field(default_factory=dict)


@dataclass
class Config:
    """Main configuration container."""
    twitch: TwitchConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    coalescer: CoalescerConfig = field(default_factory=CoalescerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def as_float(value: Any, default: float) -> float:
    """Parse float from YAML value with safe fallbacks."""
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return default
    return default


def as_int(value: Any, default: int) -> int:
    """Parse int from YAML value with safe fallbacks."""
    if value is None:
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return int(float(text.replace(",", ".")))
        except ValueError:
            return default
    return default


def parse_config(data: dict) -> Config:
    """
    Build a Config from an already-parsed YAML mapping.

    Raises:
        ValueError: If required fields are missing.
    """
    if not data:
        raise ValueError("Configuration file is empty")

    if 'twitch' not in data or not isinstance(data['twitch'], dict):
        raise ValueError("Missing 'twitch' section in config")

    twitch_data = data['twitch']
    for field_name in ('client_id', 'client_secret', 'user_id'):
        if not twitch_data.get(field_name):
            raise ValueError(f"Missing required field: twitch.{field_name}")

    twitch_config = TwitchConfig(
        client_id=str(twitch_data['client_id']),
        client_secret=str(twitch_data['client_secret']),
        user_id=str(twitch_data['user_id']),
        access_token=str(twitch_data.get('access_token') or ''),
        refresh_token=str(twitch_data.get('refresh_token') or ''),
    )

    database_data = data.get('database') or {}
    database_config = DatabaseConfig(
        path=database_data.get('path', './data/livesync.db')
    )

    defaults = CacheConfig()
    cache_data = data.get('cache') or {}
    cache_config = CacheConfig(
        ttl_seconds=max(1, as_int(cache_data.get('ttl_seconds'), defaults.ttl_seconds)),
        min_refresh_interval=max(0.0, as_float(cache_data.get('min_refresh_interval'), defaults.min_refresh_interval)),
        max_refresh_interval=max(0.0, as_float(cache_data.get('max_refresh_interval'), defaults.max_refresh_interval)),
        recordings_fetch_limit=min(100, max(1, as_int(cache_data.get('recordings_fetch_limit'), defaults.recordings_fetch_limit))),
        batch_size=max(1, as_int(cache_data.get('batch_size'), defaults.batch_size)),
        batch_delay_ms=max(0, as_int(cache_data.get('batch_delay_ms'), defaults.batch_delay_ms)),
        retention_days=max(1, as_int(cache_data.get('retention_days'), defaults.retention_days)),
        backoff_sweep_interval=max(1, as_int(cache_data.get('backoff_sweep_interval'), defaults.backoff_sweep_interval)),
    )
    if cache_config.min_refresh_interval > cache_config.max_refresh_interval:
        raise ValueError("cache.min_refresh_interval must not exceed cache.max_refresh_interval")

    backoff_defaults = BackoffConfig()
    backoff_data = data.get('backoff') or {}
    backoff_config = BackoffConfig(
        base_delay=max(0.0, as_float(backoff_data.get('base_delay'), backoff_defaults.base_delay)),
        max_delay=max(0.0, as_float(backoff_data.get('max_delay'), backoff_defaults.max_delay)),
        jitter=max(0.0, as_float(backoff_data.get('jitter'), backoff_defaults.jitter)),
        stale_after_hours=max(0.0, as_float(backoff_data.get('stale_after_hours'), backoff_defaults.stale_after_hours)),
    )

    coalescer_data = data.get('coalescer') or {}
    coalescer_config = CoalescerConfig(
        retry_delay=max(0.0, as_float(coalescer_data.get('retry_delay'), CoalescerConfig.retry_delay))
    )

    logging_data = data.get('logging') or {}
    logging_config = LoggingConfig(
        level=str(logging_data.get('level', 'INFO')),
        file=logging_data.get('file', './logs/livesync.log'),
        max_size_mb=as_int(logging_data.get('max_size_mb'), 10),
        backup_count=as_int(logging_data.get('backup_count'), 5),
        components={str(k): str(v) for k, v in (logging_data.get('components') or {}).items()},
    )

    return Config(
        twitch=twitch_config,
        database=database_config,
        cache=cache_config,
        backoff=backoff_config,
        coalescer=coalescer_config,
        logging=logging_config,
    )


def load_config(config_path: str = "config.yaml") -> Config:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file.

    Returns:
        Config object with all settings.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        ValueError: If required fields are missing.
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create a config.yaml file. See config.example.yaml for reference."
        )

    with open(config_path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)

    return parse_config(data)


def create_example_config(path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example = """# Live-state synchronizer configuration

twitch:
  client_id: YOUR_CLIENT_ID          # https://dev.twitch.tv/console
  client_secret: YOUR_CLIENT_SECRET
  user_id: "123456789"               # Twitch user whose follows are cached
  access_token: ""                   # User access token (user:read:follows)
  refresh_token: ""

database:
  path: ./data/livesync.db

cache:
  ttl_seconds: 1800                  # Every favorite refreshed within 80% of this
  min_refresh_interval: 5
  max_refresh_interval: 300
  recordings_fetch_limit: 5
  batch_size: 3                      # Concurrent refreshes during startup sweep
  batch_delay_ms: 500
  retention_days: 60

backoff:
  base_delay: 60                     # Seconds after first failure
  max_delay: 3600
  jitter: 0.3
  stale_after_hours: 24

coalescer:
  retry_delay: 1.0

logging:
  level: INFO  # DEBUG, INFO, WARNING, ERROR
  file: ./logs/livesync.log
  max_size_mb: 10
  backup_count: 5
  components:                       # Per-component levels
    coalescer: INFO
"""
    with open(path, 'w', encoding='utf-8') as f:
        f.write(example)


if __name__ == '__main__':
    create_example_config()
    print("Created config.example.yaml")
