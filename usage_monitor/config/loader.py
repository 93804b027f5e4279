"""
Configuration management and loading.

Reads the monitor's YAML configuration. Every section is optional and
falls back to defaults, but unknown keys and out-of-range values are
rejected so a typo never silently changes monitoring behaviour.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

DEFAULT_CONFIG_PATH = "~/.usage_monitor/config.yaml"

LOG_LEVELS = ("debug", "info", "warn", "warning", "error")


def expand_path(path: str) -> str:
    """Expand a leading ``~`` to the user's home directory."""
    return os.path.expanduser(path) if path else path


@dataclass(frozen=True)
class PollingConfig:
    """How often a poll cycle runs."""
    interval_minutes: int = 15

    def __post_init__(self):
        if self.interval_minutes <= 0:
            raise ValueError("polling.interval_minutes must be > 0")


@dataclass(frozen=True)
class ApiConfig:
    """Remote API access settings."""
    base_url: str = "https://cursor.com"
    account_id: str = ""
    token_env: str = "USAGE_MONITOR_TOKEN"
    token_file: Optional[str] = None
    timeout_seconds: float = 30.0
    page_size: int = 100
    default_request_limit: int = 500

    def __post_init__(self):
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError("api.base_url must be an http(s) URL")
        if not self.token_env:
            raise ValueError("api.token_env must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("api.timeout_seconds must be > 0")
        if self.page_size <= 0:
            raise ValueError("api.page_size must be > 0")
        if self.default_request_limit <= 0:
            raise ValueError("api.default_request_limit must be > 0")


@dataclass(frozen=True)
class AlertsConfig:
    """Alert thresholds and delivery settings."""
    thresholds: Tuple[float, ...] = (75.0, 90.0, 100.0)
    on_demand_critical: bool = True
    sound: str = "default"

    def __post_init__(self):
        for threshold in self.thresholds:
            if threshold <= 0:
                raise ValueError("alerts.thresholds must all be > 0")


@dataclass(frozen=True)
class DatabaseConfig:
    """Database location and retention."""
    path: str = "~/.usage_monitor/metrics.db"
    retention_days: int = 90

    def __post_init__(self):
        if not self.path:
            raise ValueError("database.path must not be empty")
        if self.retention_days <= 0:
            raise ValueError("database.retention_days must be > 0")


@dataclass(frozen=True)
class LoggingConfig:
    """Log destination and verbosity."""
    file: Optional[str] = "~/.usage_monitor/usage-monitor.log"
    level: str = "info"
    max_size_mb: int = 10

    def __post_init__(self):
        if self.level.lower() not in LOG_LEVELS:
            raise ValueError(f"logging.level must be one of: {list(LOG_LEVELS)}")
        if self.max_size_mb <= 0:
            raise ValueError("logging.max_size_mb must be > 0")


@dataclass(frozen=True)
class PricingConfig:
    """Extra model aliases for the cost comparison (model -> pricing key)."""
    aliases: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ByokConfig:
    """Bring-your-own-key cost comparison."""
    enabled: bool = False
    show_comparison: bool = True


@dataclass(frozen=True)
class MonitorConfig:
    """Complete monitor configuration."""
    polling: PollingConfig = field(default_factory=PollingConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    byok: ByokConfig = field(default_factory=ByokConfig)

    @property
    def poll_interval(self) -> float:
        """Seconds between poll cycles."""
        return self.polling.interval_minutes * 60.0


_SECTION_KEYS = {
    "polling": {"interval_minutes"},
    "api": {
        "base_url", "account_id", "token_env", "token_file",
        "timeout_seconds", "page_size", "default_request_limit",
    },
    "alerts": {"thresholds", "on_demand_critical", "sound"},
    "database": {"path", "retention_days"},
    "logging": {"file", "level", "max_size_mb"},
    "pricing": {"aliases"},
    "byok": {"enabled", "show_comparison"},
}


def load_config(path: Optional[str] = None) -> MonitorConfig:
    """Load and validate the monitor configuration from a YAML file.

    A missing file yields the defaults. Paths in the result have ``~``
    expanded.

    Args:
        path: Path to YAML configuration file (defaults to
            ``~/.usage_monitor/config.yaml``)

    Returns:
        Validated MonitorConfig object

    Raises:
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(expand_path(path or DEFAULT_CONFIG_PATH))
    raw_config: Any = None
    if config_path.exists():
        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    if raw_config is None:
        raw_config = {}
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    polling = PollingConfig(**_typed(sections["polling"], {"interval_minutes": int}, "polling"))
    api = ApiConfig(**_typed(sections["api"], {
        "base_url": str,
        "account_id": str,
        "token_env": str,
        "token_file": _optional_path,
        "timeout_seconds": float,
        "page_size": int,
        "default_request_limit": int,
    }, "api"))
    alerts = AlertsConfig(**_typed(sections["alerts"], {
        "thresholds": _thresholds,
        "on_demand_critical": _boolean,
        "sound": str,
    }, "alerts"))
    database = DatabaseConfig(**_typed(sections["database"], {
        "path": str,
        "retention_days": int,
    }, "database"))
    database = replace(database, path=expand_path(database.path))
    logging_config = LoggingConfig(**_typed(sections["logging"], {
        "file": _optional_path,
        "level": str,
        "max_size_mb": int,
    }, "logging"))
    logging_config = replace(logging_config, file=_optional_path(logging_config.file))
    pricing = PricingConfig(**_typed(sections["pricing"], {"aliases": _aliases}, "pricing"))
    byok = ByokConfig(**_typed(sections["byok"], {
        "enabled": _boolean,
        "show_comparison": _boolean,
    }, "byok"))

    return MonitorConfig(
        polling=polling,
        api=api,
        alerts=alerts,
        database=database,
        logging=logging_config,
        pricing=pricing,
        byok=byok,
    )


def _section(raw_config: Dict, name: str) -> Dict:
    """Return one section, validating its shape and keys."""
    data = raw_config.get(name)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ValueError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _typed(data: Dict, converters: Dict, path: str) -> Dict:
    """Apply a converter to each present key, naming the key on failure."""
    values = {}
    for key, value in data.items():
        if value is None:
            continue
        try:
            values[key] = converters[key](value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for {path}.{key}: {value!r} ({e})")
    return values


def _boolean(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError("must be true or false")
    return value


def _optional_path(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return expand_path(str(value))


def _thresholds(value: Any) -> Tuple[float, ...]:
    if not isinstance(value, list):
        raise ValueError("must be a list of percentages")
    return tuple(sorted(float(v) for v in value))


def _aliases(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        raise ValueError("must be a mapping of model name to pricing key")
    return {str(k): str(v) for k, v in value.items()}

