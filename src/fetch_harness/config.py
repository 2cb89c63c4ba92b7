"""Configuration loading and validation for fetch-harness."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from fetch_harness.exceptions import ConfigError, ConfigNotFoundError, ConfigValidationError


CONFIG_FILENAME = ".fetch.yaml"

TIMEOUT_ENV_VAR = "FETCH_HARNESS_TIMEOUT"

KNOWN_AGENTS = ("claude", "gemini", "copilot")


# --- Sub-configuration dataclasses ---


@dataclass
class PoolConfig:
    """Harness pool configuration."""

    max_concurrent: int = 2
    default_timeout_ms: int = 300000
    kill_grace_seconds: float = 5.0


@dataclass
class TaskDefaultsConfig:
    """Default constraints applied to new tasks."""

    timeout_ms: int = 300000
    require_approval: bool = False
    max_retries: int = 1


@dataclass
class ParserConfig:
    """Output parser configuration."""

    strip_ansi: bool = True
    max_line_length: int = 10000
    max_output_bytes: int = 1024 * 1024


@dataclass
class AgentsConfig:
    """Agent selection configuration."""

    default: str = "claude"
    enabled: list[str] = field(default_factory=lambda: list(KNOWN_AGENTS))


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "routine"  # critical, important, routine, debug
    retention_days: int = 30
    log_output_lines: bool = False


@dataclass
class PathsConfig:
    """Custom paths configuration."""

    state_dir: str = ".fetch"
    workspace_root: Optional[str] = None


# --- Main configuration dataclass ---


@dataclass
class Config:
    """Complete fetch-harness configuration."""

    pool: PoolConfig = field(default_factory=PoolConfig)
    tasks: TaskDefaultsConfig = field(default_factory=TaskDefaultsConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)


# --- Configuration loading functions ---


def _dict_to_dataclass(cls: type, data: dict) -> Any:
    """Convert a dictionary to a dataclass, handling nested dataclasses."""
    if data is None:
        return cls()

    kwargs = {}
    for f in cls.__dataclass_fields__.values():
        if f.name not in data:
            continue

        value = data[f.name]
        if hasattr(f.type, "__dataclass_fields__") and isinstance(value, dict):
            kwargs[f.name] = _dict_to_dataclass(f.type, value)
        else:
            kwargs[f.name] = value

    return cls(**kwargs)


def _load_yaml_file(path: Path) -> dict:
    """Load a YAML file and return its contents as a dictionary."""
    if not path.exists():
        raise ConfigNotFoundError(str(path))

    try:
        with open(path) as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")
    return content


def _validate_config(config: Config) -> None:
    """Validate configuration values."""
    if config.pool.max_concurrent < 1:
        raise ConfigValidationError("pool.max_concurrent", "Must be at least 1")

    if config.pool.default_timeout_ms < 0:
        raise ConfigValidationError("pool.default_timeout_ms", "Must not be negative")

    if config.pool.kill_grace_seconds <= 0:
        raise ConfigValidationError("pool.kill_grace_seconds", "Must be positive")

    if config.tasks.timeout_ms < 0:
        raise ConfigValidationError("tasks.timeout_ms", "Must not be negative")

    if config.tasks.max_retries < 1:
        raise ConfigValidationError("tasks.max_retries", "Must be at least 1")

    if config.parser.max_line_length < 1:
        raise ConfigValidationError("parser.max_line_length", "Must be positive")

    if config.parser.max_output_bytes < 1:
        raise ConfigValidationError("parser.max_output_bytes", "Must be positive")

    unknown = [agent for agent in config.agents.enabled if agent not in KNOWN_AGENTS]
    if unknown:
        raise ConfigValidationError(
            "agents.enabled", f"Unknown agents: {', '.join(unknown)}"
        )

    if config.agents.default not in config.agents.enabled:
        raise ConfigValidationError(
            "agents.default", "Must be one of the enabled agents"
        )

    valid_levels = ("critical", "important", "routine", "debug")
    if config.logging.level not in valid_levels:
        raise ConfigValidationError(
            "logging.level", f"Must be one of: {', '.join(valid_levels)}"
        )


def load_config(project_dir: Optional[Path] = None) -> Config:
    """
    Load configuration from .fetch.yaml in the project directory.

    Args:
        project_dir: Path to the project directory. Defaults to current working directory.

    Returns:
        Loaded and validated Config object.

    Raises:
        ConfigError: If the file is not valid YAML.
        ConfigValidationError: If a value is out of range.
    """
    if project_dir is None:
        project_dir = Path.cwd()
    else:
        project_dir = Path(project_dir)

    config_path = project_dir / CONFIG_FILENAME

    # Missing file means all defaults
    if config_path.exists():
        config_data = _load_yaml_file(config_path)
    else:
        config_data = {}

    config = _dict_to_dataclass(Config, config_data)

    # Environment override for the harness timeout, in milliseconds
    env_timeout = os.environ.get(TIMEOUT_ENV_VAR)
    if env_timeout:
        try:
            config.pool.default_timeout_ms = int(env_timeout)
        except ValueError:
            raise ConfigValidationError(TIMEOUT_ENV_VAR, "Must be an integer")

    _validate_config(config)

    return config


def get_default_config() -> Config:
    """Return a Config object with all default values."""
    return Config()


def config_to_dict(obj: Any) -> Any:
    """Recursively convert a config dataclass to plain data."""
    if hasattr(obj, "__dataclass_fields__"):
        return {name: config_to_dict(getattr(obj, name)) for name in obj.__dataclass_fields__}
    elif isinstance(obj, list):
        return [config_to_dict(item) for item in obj]
    elif isinstance(obj, dict):
        return {k: config_to_dict(v) for k, v in obj.items()}
    return obj


def save_config(config: Config, project_dir: Path) -> None:
    """
    Save configuration to .fetch.yaml in the project directory.

    Args:
        config: Config object to save.
        project_dir: Path to the project directory.
    """
    config_path = Path(project_dir) / CONFIG_FILENAME

    with open(config_path, "w") as f:
        yaml.dump(config_to_dict(config), f, default_flow_style=False, sort_keys=False)
