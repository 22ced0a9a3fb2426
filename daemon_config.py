#!/usr/bin/env python3
"""
daemon_config.py - Typed configuration for the maintenance daemon

Defaults live in dataclasses. A YAML file supplies a partial override that is
merged field by field: a value present in the file wins, an absent value keeps
the default, and a value of the wrong type is ignored with a warning.

Precedence (lowest to highest):
    built-in defaults < config.yaml < environment < CLI flags

Config file lookup:
    --config PATH, else $HOSTKEEPER_CONFIG, else ~/.hostkeeper/config.yaml

Example config.yaml:
    planner:
      base_url: https://planner.internal
      timeout: 20
    daemon:
      check_interval: 1800
      enabled_optimizations:
        docker: false
    safety:
      protected_prefixes: ["/etc/", "/usr/local/etc/"]
"""

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".hostkeeper"
DEFAULT_PLANNER_URL = "https://lumenbridge.xyz"

# Durations that must be strictly positive
POSITIVE_KEYS = {
    "planner.timeout",
    "daemon.check_interval",
    "execution.command_timeout",
    "execution.probe_timeout",
}


class ConfigError(Exception):
    """Config file exists but cannot be read or parsed."""


@dataclass
class PlannerConfig:
    base_url: str = DEFAULT_PLANNER_URL
    timeout: float = 30.0
    shell: str = "bash"
    os: str = "linux"
    search_enabled: bool = True
    codegen_enabled: bool = True


@dataclass
class DaemonSettings:
    check_interval: int = 3600  # seconds
    auto_approve: bool = False  # initial value for a fresh state file
    enabled_optimizations: Dict[str, bool] = field(
        default_factory=lambda: {"memory": True, "disk": True, "docker": True}
    )


@dataclass
class ExecutionConfig:
    shell: str = "/bin/bash"
    command_timeout: float = 300.0
    probe_timeout: float = 10.0


@dataclass
class SafetyConfig:
    backup_before_modification: bool = True
    protected_prefixes: List[str] = field(default_factory=lambda: ["/etc/"])


@dataclass
class LoggingConfig:
    verbose: bool = False


@dataclass
class PathsConfig:
    home: str = str(DEFAULT_HOME)
    state_file: Optional[str] = None
    log_file: Optional[str] = None
    scripts_dir: Optional[str] = None

    @property
    def state_path(self) -> Path:
        return Path(self.state_file).expanduser() if self.state_file else Path(self.home).expanduser() / "state.json"

    @property
    def log_path(self) -> Path:
        return Path(self.log_file).expanduser() if self.log_file else Path(self.home).expanduser() / "daemon.log"

    @property
    def scripts_path(self) -> Path:
        return Path(self.scripts_dir).expanduser() if self.scripts_dir else Path(self.home).expanduser() / "scripts"

    @property
    def kill_path(self) -> Path:
        return Path(self.home).expanduser() / "daemon.kill"


@dataclass
class DaemonConfig:
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# =============================================================================
# MERGING
# =============================================================================

def _compatible(default: Any, value: Any) -> bool:
    if isinstance(default, bool) or isinstance(value, bool):
        return isinstance(default, bool) and isinstance(value, bool)
    if isinstance(default, float):
        return isinstance(value, (int, float))
    if default is None:
        return isinstance(value, str)
    return isinstance(value, type(default))


def merge_overrides(target: Any, overrides: Dict[str, Any], section: str = "") -> Any:
    """Merge a partial override dict into a dataclass instance, in place."""
    names = {f.name for f in dataclasses.fields(target)}
    for key, value in overrides.items():
        path = f"{section}.{key}" if section else key
        if key not in names:
            logger.warning(f"Unknown config key {path!r}, ignoring")
            continue
        current = getattr(target, key)
        if dataclasses.is_dataclass(current):
            if isinstance(value, dict):
                merge_overrides(current, value, path)
            else:
                logger.warning(f"Config section {path!r} must be a mapping, ignoring")
            continue
        if isinstance(current, dict):
            if isinstance(value, dict):
                merged = dict(current)
                for name, item in value.items():
                    item_path = f"{path}.{name}"
                    sample = current.get(name, next(iter(current.values()), None))
                    if sample is not None and not _compatible(sample, item):
                        logger.warning(f"Config key {item_path!r} has invalid value {item!r}, keeping default")
                        continue
                    merged[name] = item
                setattr(target, key, merged)
            else:
                logger.warning(f"Config key {path!r} must be a mapping, ignoring")
            continue
        if isinstance(current, list):
            if isinstance(value, list):
                setattr(target, key, list(value))
            else:
                logger.warning(f"Config key {path!r} must be a list, ignoring")
            continue
        if value is None or not _compatible(current, value):
            logger.warning(f"Config key {path!r} has invalid value {value!r}, keeping default")
            continue
        if path in POSITIVE_KEYS and value <= 0:
            logger.warning(f"Config key {path!r} must be positive, got {value!r}, keeping default")
            continue
        if isinstance(current, float):
            value = float(value)
        setattr(target, key, value)
    return target


# =============================================================================
# LOADING
# =============================================================================

def default_config_path() -> Path:
    env_path = os.environ.get("HOSTKEEPER_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    home = os.environ.get("HOSTKEEPER_HOME")
    return (Path(home).expanduser() if home else DEFAULT_HOME) / "config.yaml"


def read_config_file(path: Path) -> Dict[str, Any]:
    """Read a YAML override file. Missing file -> empty override."""
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must contain a mapping at top level")
    return data


def apply_env(config: DaemonConfig, environ: Optional[Dict[str, str]] = None) -> DaemonConfig:
    env = os.environ if environ is None else environ
    if env.get("PLANNER_BASE_URL"):
        config.planner.base_url = env["PLANNER_BASE_URL"]
    if env.get("HOSTKEEPER_HOME"):
        config.paths.home = env["HOSTKEEPER_HOME"]
    return config


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None
) -> DaemonConfig:
    """Build the effective config: defaults, then file, then environment."""
    config = DaemonConfig()
    config_path = Path(path).expanduser() if path else default_config_path()
    try:
        overrides = read_config_file(config_path)
    except ConfigError as e:
        logger.warning(f"{e}; using defaults")
        overrides = {}
    if overrides:
        merge_overrides(config, overrides)
        logger.debug(f"Config loaded from {config_path}")
    apply_env(config, environ)
    config.planner.base_url = config.planner.base_url.rstrip("/")
    return config
