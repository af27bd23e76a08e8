"""
Configuration management for opflow.

Loads config.yaml from the opflow home directory ($OPFLOW_HOME, default
~/.config/opflow):

    jobs_dir: ~/opflow/jobs
    adaptors:
      http: my_project.adaptors.http
    strict_state: true
    redact_keys: [configuration]
    log_level: INFO
    log_format: pretty
    log_file: ~/.config/opflow/logs/opflow.log
    env_file: ~/.config/opflow/.env
"""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from dotenv import load_dotenv

from opflow.errors import OpflowError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"


class ConfigError(OpflowError):
    """Configuration validation error."""
    pass


@dataclass
class OpflowConfig:
    """
    opflow settings.

    Attributes:
        jobs_dir: Directory searched for job scripts
        adaptors: Adaptor alias -> module import path
        strict_state: Fail steps that return a non-mapping State
        redact_keys: Top-level State keys never printed or written
        log_level: DEBUG, INFO, WARNING or ERROR
        log_format: "pretty" or "structured"
        log_file: Optional log file path
        env_file: Optional .env file loaded into the environment
    """
    jobs_dir: str = "jobs"
    adaptors: dict[str, str] = field(default_factory=dict)
    strict_state: bool = True
    redact_keys: list[str] = field(default_factory=lambda: ["configuration"])
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def __post_init__(self):
        if self.log_format not in ("pretty", "structured"):
            raise ConfigError(f"log_format must be 'pretty' or 'structured', got {self.log_format!r}")
        if not isinstance(self.adaptors, dict):
            raise ConfigError("adaptors must be a mapping of alias to module path")
        if not isinstance(self.redact_keys, list):
            raise ConfigError("redact_keys must be a list")

    @property
    def jobs_path(self) -> Path:
        return Path(self.jobs_dir).expanduser()

    @property
    def log_path(self) -> Optional[Path]:
        return Path(self.log_file).expanduser() if self.log_file else None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OpflowConfig":
        """
        Build a config from parsed YAML.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys: {unknown}")
        return cls(**data)


def get_opflow_home() -> Path:
    """Return $OPFLOW_HOME, or ~/.config/opflow."""
    home = os.environ.get("OPFLOW_HOME")
    if home:
        return Path(home)
    return Path("~/.config/opflow").expanduser()


def load_config(config_path: Optional[Union[str, Path]] = None) -> OpflowConfig:
    """
    Load config.yaml.

    Args:
        config_path: Explicit path; defaults to <opflow home>/config.yaml

    Returns:
        The parsed OpflowConfig

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If the file is not valid
    """
    path = Path(config_path) if config_path else get_opflow_home() / CONFIG_FILENAME
    if not path.exists():
        raise FileNotFoundError(
            f"opflow config.yaml not found at {path}. Run 'opflow init' to create one."
        )

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(data).__name__}")

    config = OpflowConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path, override=False)
            logger.debug(f"Loaded environment from {env_path}")
        else:
            logger.warning(f"env_file not found: {env_path}")

    return config
