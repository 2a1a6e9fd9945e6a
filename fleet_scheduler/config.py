"""
Fleet scheduler configuration management.

Handles loading, saving, and validating configuration from various sources:
- Default values
- Configuration file (TOML)
- Environment variables
"""

from __future__ import annotations

import json
import os
import socket
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter


# Configuration directory and file constants
CONFIG_DIR = Path.home() / ".config" / "fleetsched"
CONFIG_FILE = "config.toml"

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "fleetsched"
DEFAULT_CONFIG_FILE = "config.toml"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "fleetsched"

ENV_PREFIX = "FLEETSCHED_"

DEPLOYMENT_MODES = ("development", "dev", "local", "production", "prod")
LOCK_BACKENDS = ("database", "memory")


@dataclass
class ValidationError:
    """Validation error for configuration."""
    field: str
    message: str
    severity: str  # "error" or "warning"

    def __str__(self) -> str:
        return f"[{self.severity.upper()}] {self.field}: {self.message}"


@dataclass
class DeploymentConfig:
    """Deployment flavour of this installation.

    ``mode`` selects the static rule set (development keeps the fleet
    untouched by updates and image pulls). ``cloud`` restricts resource
    checks to servers of paying teams plus the house team.
    """

    mode: str = "production"
    cloud: bool = False

    @property
    def is_dev(self) -> bool:
        """Check if running in development mode."""
        return self.mode.strip().lower() in ("development", "dev", "local")


@dataclass
class SchedulerConfig:
    """Configuration for the tick loop and the dispatch guard."""

    enabled: bool = True
    node_id: str = ""

    # Cadence of the evaluation tick
    tick_cron: str = "* * * * *"

    # Dispatch guard lock store
    lock_backend: str = "database"
    min_lock_ttl: int = 60  # seconds
    max_lock_ttl: int = 24 * 60 * 60  # one day

    # Job body worker pool
    max_workers: int = 8


@dataclass
class InstanceConfig:
    """Fallback instance settings, used when the settings row is missing."""

    update_check_frequency: str = "0 * * * *"
    instance_timezone: str = "UTC"
    auto_update_enabled: bool = False
    auto_update_frequency: str = "0 0 * * *"
    default_timezone: str = "UTC"


@dataclass
class LoggingConfig:
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[Path] = None


@dataclass
class FleetConfig:
    """Main configuration container for the fleet scheduler."""

    # Paths
    config_dir: Path = DEFAULT_CONFIG_DIR
    data_dir: Path = DEFAULT_DATA_DIR

    # Sub-configurations
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    instance: InstanceConfig = field(default_factory=InstanceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Database
    database_url: str = ""

    def __post_init__(self):
        """Initialize derived values."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/fleetsched.db"

        if not self.scheduler.node_id:
            self.scheduler.node_id = f"{socket.gethostname()}-{os.getpid()}"


def load_config(
    config_path: Optional[Path] = None,
    env_prefix: str = ENV_PREFIX,
) -> FleetConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file
    3. Default values

    Args:
        config_path: Path to config file (default: ~/.config/fleetsched/config.toml)
        env_prefix: Prefix for environment variables

    Returns:
        Loaded configuration
    """
    config = FleetConfig()
    derived_url = config.database_url

    if config_path is None:
        env_config_dir = os.environ.get(f"{env_prefix}CONFIG_DIR")
        if env_config_dir:
            config_path = Path(env_config_dir) / DEFAULT_CONFIG_FILE
        else:
            config_path = DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE

    if config_path.exists():
        config = _load_from_file(config_path, config)

    config = _load_from_env(config, env_prefix)

    # Follow a relocated data directory unless the URL was set explicitly
    if config.database_url == derived_url:
        config.database_url = f"sqlite:///{config.data_dir}/fleetsched.db"

    if not config.scheduler.node_id:
        config.scheduler.node_id = f"{socket.gethostname()}-{os.getpid()}"

    return config


def _load_from_file(path: Path, config: FleetConfig) -> FleetConfig:
    """Load configuration from a TOML file."""
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        print(f"Warning: Failed to load config from {path}: {e}")
        return config

    for section in ("deployment", "scheduler", "instance", "logging"):
        if section not in data:
            continue
        section_obj = getattr(config, section)
        for key, value in data[section].items():
            if hasattr(section_obj, key):
                setattr(section_obj, key, value)

    if "config_dir" in data:
        config.config_dir = Path(data["config_dir"])
    if "data_dir" in data:
        config.data_dir = Path(data["data_dir"])
    if "database_url" in data:
        config.database_url = data["database_url"]

    if isinstance(config.logging.file, str):
        config.logging.file = Path(config.logging.file)

    return config


def _as_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes", "on")


def _load_from_env(config: FleetConfig, prefix: str) -> FleetConfig:
    """Load configuration from environment variables."""

    # Deployment
    if env_val := os.environ.get(f"{prefix}MODE"):
        config.deployment.mode = env_val.lower()
    if env_val := os.environ.get(f"{prefix}CLOUD"):
        config.deployment.cloud = _as_bool(env_val)

    # Scheduler
    if env_val := os.environ.get(f"{prefix}SCHEDULER_ENABLED"):
        config.scheduler.enabled = _as_bool(env_val)
    if env_val := os.environ.get(f"{prefix}NODE_ID"):
        config.scheduler.node_id = env_val
    if env_val := os.environ.get(f"{prefix}LOCK_BACKEND"):
        config.scheduler.lock_backend = env_val.lower()
    if env_val := os.environ.get(f"{prefix}MAX_WORKERS"):
        config.scheduler.max_workers = int(env_val)

    # Instance fallbacks
    if env_val := os.environ.get(f"{prefix}INSTANCE_TIMEZONE"):
        config.instance.instance_timezone = env_val
    if env_val := os.environ.get(f"{prefix}DEFAULT_TIMEZONE"):
        config.instance.default_timezone = env_val

    # Logging
    if env_val := os.environ.get(f"{prefix}LOG_LEVEL"):
        config.logging.level = env_val.upper()

    # Paths
    if env_val := os.environ.get(f"{prefix}CONFIG_DIR"):
        config.config_dir = Path(env_val)
    if env_val := os.environ.get(f"{prefix}DATA_DIR"):
        config.data_dir = Path(env_val)
    if env_val := os.environ.get(f"{prefix}DATABASE_URL"):
        config.database_url = env_val

    return config


def save_config(config: FleetConfig, path: Optional[Path] = None) -> None:
    """
    Save configuration to a TOML file.

    Args:
        config: Configuration to save
        path: Path to save to (default: config.config_dir / config.toml)
    """
    if path is None:
        path = config.config_dir / DEFAULT_CONFIG_FILE

    path.parent.mkdir(parents=True, exist_ok=True)

    lines = [
        "# Fleet scheduler configuration",
        "# Generated automatically - edit with care",
        "",
        f'config_dir = "{config.config_dir}"',
        f'data_dir = "{config.data_dir}"',
        f'database_url = "{config.database_url}"',
        "",
        "[deployment]",
        f'mode = "{config.deployment.mode}"',
        f"cloud = {str(config.deployment.cloud).lower()}",
        "",
        "[scheduler]",
        f"enabled = {str(config.scheduler.enabled).lower()}",
        f'node_id = "{config.scheduler.node_id}"',
        f'tick_cron = "{config.scheduler.tick_cron}"',
        f'lock_backend = "{config.scheduler.lock_backend}"',
        f"min_lock_ttl = {config.scheduler.min_lock_ttl}",
        f"max_lock_ttl = {config.scheduler.max_lock_ttl}",
        f"max_workers = {config.scheduler.max_workers}",
        "",
        "[instance]",
        f'update_check_frequency = "{config.instance.update_check_frequency}"',
        f'instance_timezone = "{config.instance.instance_timezone}"',
        f"auto_update_enabled = {str(config.instance.auto_update_enabled).lower()}",
        f'auto_update_frequency = "{config.instance.auto_update_frequency}"',
        f'default_timezone = "{config.instance.default_timezone}"',
        "",
        "[logging]",
        f'level = "{config.logging.level}"',
    ]

    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")


def ensure_directories(config: FleetConfig) -> None:
    """Ensure all required directories exist."""
    config.config_dir.mkdir(parents=True, exist_ok=True)
    config.data_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance (lazy-loaded)
_global_config: Optional[FleetConfig] = None


def get_config() -> FleetConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = load_config()
    return _global_config


def set_config(config: FleetConfig) -> None:
    """Set the global configuration instance."""
    global _global_config
    _global_config = config


def clear_config_cache() -> None:
    """Clear the global configuration cache."""
    global _global_config
    _global_config = None


def _validate_cron(cron: str) -> bool:
    """Validate a 5- or 6-field cron expression.

    Six fields put seconds first; croniter expects them last.
    """
    parts = cron.split()
    if len(parts) == 6:
        cron = " ".join(parts[1:] + parts[:1])
    elif len(parts) != 5:
        return False
    return croniter.is_valid(cron)


def _validate_timezone(name: str) -> bool:
    """Validate an IANA timezone name."""
    if not name:
        return False
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def validate_config(config: Optional[FleetConfig] = None) -> List[ValidationError]:
    """
    Validate configuration and return list of errors.

    Args:
        config: Configuration to validate (default: loaded from file)

    Returns:
        List of validation errors (empty if valid)
    """
    if config is None:
        config = load_config()

    errors: List[ValidationError] = []

    if config.deployment.mode.strip().lower() not in DEPLOYMENT_MODES:
        errors.append(ValidationError(
            field="deployment.mode",
            message=f"Unknown deployment mode: {config.deployment.mode}",
            severity="error",
        ))

    if not _validate_cron(config.scheduler.tick_cron):
        errors.append(ValidationError(
            field="scheduler.tick_cron",
            message=f"Invalid cron expression: {config.scheduler.tick_cron}",
            severity="error",
        ))

    if config.scheduler.lock_backend not in LOCK_BACKENDS:
        errors.append(ValidationError(
            field="scheduler.lock_backend",
            message=f"Unknown lock backend: {config.scheduler.lock_backend}",
            severity="error",
        ))
    elif config.scheduler.lock_backend == "memory":
        errors.append(ValidationError(
            field="scheduler.lock_backend",
            message="Memory locks only exclude jobs within one node.",
            severity="warning",
        ))

    if config.scheduler.min_lock_ttl <= 0:
        errors.append(ValidationError(
            field="scheduler.min_lock_ttl",
            message="Minimum lock TTL must be positive.",
            severity="error",
        ))
    if config.scheduler.max_lock_ttl < config.scheduler.min_lock_ttl:
        errors.append(ValidationError(
            field="scheduler.max_lock_ttl",
            message="Maximum lock TTL is smaller than the minimum.",
            severity="error",
        ))

    if config.scheduler.max_workers < 1:
        errors.append(ValidationError(
            field="scheduler.max_workers",
            message="At least one worker is required.",
            severity="error",
        ))

    for key in ("update_check_frequency", "auto_update_frequency"):
        value = getattr(config.instance, key)
        if not _validate_cron(value):
            errors.append(ValidationError(
                field=f"instance.{key}",
                message=f"Invalid cron expression: {value}",
                severity="error",
            ))

    for key in ("instance_timezone", "default_timezone"):
        value = getattr(config.instance, key)
        if not _validate_timezone(value):
            errors.append(ValidationError(
                field=f"instance.{key}",
                message=f"Unknown timezone: {value}",
                severity="error",
            ))

    if not config.data_dir.exists():
        errors.append(ValidationError(
            field="data_dir",
            message=f"Data directory does not exist: {config.data_dir}",
            severity="warning",
        ))

    return errors


def _config_to_dict(config: FleetConfig, mask_secrets: bool = True) -> dict[str, Any]:
    """
    Convert configuration to dictionary.

    Args:
        config: Configuration to convert
        mask_secrets: If True, mask credentials embedded in the database URL

    Returns:
        Dictionary representation of config
    """
    database_url = config.database_url
    if mask_secrets and "@" in database_url and "://" in database_url:
        scheme, rest = database_url.split("://", 1)
        database_url = f"{scheme}://****@{rest.rsplit('@', 1)[1]}"

    return {
        "config_dir": str(config.config_dir),
        "data_dir": str(config.data_dir),
        "database_url": database_url,
        "deployment": {
            "mode": config.deployment.mode,
            "cloud": config.deployment.cloud,
        },
        "scheduler": {
            "enabled": config.scheduler.enabled,
            "node_id": config.scheduler.node_id,
            "tick_cron": config.scheduler.tick_cron,
            "lock_backend": config.scheduler.lock_backend,
            "min_lock_ttl": config.scheduler.min_lock_ttl,
            "max_lock_ttl": config.scheduler.max_lock_ttl,
            "max_workers": config.scheduler.max_workers,
        },
        "instance": {
            "update_check_frequency": config.instance.update_check_frequency,
            "instance_timezone": config.instance.instance_timezone,
            "auto_update_enabled": config.instance.auto_update_enabled,
            "auto_update_frequency": config.instance.auto_update_frequency,
            "default_timezone": config.instance.default_timezone,
        },
        "logging": {
            "level": config.logging.level,
            "format": config.logging.format,
            "file": str(config.logging.file) if config.logging.file else None,
        },
    }


def export_config_yaml(config: FleetConfig, mask_secrets: bool = True) -> str:
    """Export configuration as YAML string."""
    config_dict = _config_to_dict(config, mask_secrets)
    return yaml.dump(config_dict, default_flow_style=False, sort_keys=False, allow_unicode=True)


def export_config_json(config: FleetConfig, mask_secrets: bool = True) -> str:
    """Export configuration as JSON string."""
    config_dict = _config_to_dict(config, mask_secrets)
    return json.dumps(config_dict, indent=2)
