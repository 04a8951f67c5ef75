"""
Monitor configuration.

Settings come from three layers, later ones winning:

1. The defaults below, which match a local Litecoin-style node
   (``127.0.0.1:9332``, 2016-block retarget, 8064-block window).
2. An optional YAML file with ``rpc``, ``monitor`` and ``logging`` sections.
3. Command line flags (applied by the CLI through ``MonitorConfig.override``).

Example file::

    rpc:
      host: 127.0.0.1
      port: 9332
      user: user
      password: pass
      timeout: 10
    monitor:
      window_size: 8064
      retarget_interval: 2016
      poll_interval: 1.0
      fetch_workers: 4
      max_consecutive_failures: 5
      threshold: 0.75
    logging:
      level: INFO
      file: logs/vbmonitor.log
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from pathlib import Path

import yaml

from vbmonitor.consensus.retarget import DIFFICULTY_ADJUSTMENT_INTERVAL, VERSIONBITS_WINDOW

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a configuration file is missing, unreadable or invalid."""
    pass


# YAML section -> {key in section: (dataclass field, accepted types)}
_SECTIONS: dict[str, dict[str, tuple[str, tuple[type, ...]]]] = {
    "rpc": {
        "host": ("rpc_host", (str,)),
        "port": ("rpc_port", (int,)),
        "user": ("rpc_user", (str,)),
        "password": ("rpc_password", (str,)),
        "timeout": ("rpc_timeout", (int, float)),
    },
    "monitor": {
        "window_size": ("window_size", (int,)),
        "retarget_interval": ("retarget_interval", (int,)),
        "poll_interval": ("poll_interval", (int, float)),
        "fetch_workers": ("fetch_workers", (int,)),
        "max_consecutive_failures": ("max_consecutive_failures", (int,)),
        "threshold": ("threshold", (int, float)),
    },
    "logging": {
        "level": ("log_level", (str,)),
        "file": ("log_file", (str,)),
    },
}


@dataclass
class MonitorConfig:
    """
    All settings of a monitor run.

    Attributes:
        rpc_host: Node RPC host.
        rpc_port: Node RPC port.
        rpc_user: RPC username for HTTP basic auth.
        rpc_password: RPC password for HTTP basic auth.
        rpc_timeout: Per-request timeout in seconds.
        window_size: Number of trailing blocks tallied.
        retarget_interval: Blocks between difficulty retargets.
        poll_interval: Seconds to wait between height polls.
        fetch_workers: Threads used to fetch block versions.
        max_consecutive_failures: Failed polls tolerated in a row before the
            monitor gives up.
        threshold: Fraction of the window a deployment bit needs to be
            reported as reaching activation.
        log_level: Name of the logging level.
        log_file: Optional path of a log file.
    """

    rpc_host: str = "127.0.0.1"
    rpc_port: int = 9332
    rpc_user: str = "user"
    rpc_password: str = "pass"
    rpc_timeout: float = 10.0
    window_size: int = VERSIONBITS_WINDOW
    retarget_interval: int = DIFFICULTY_ADJUSTMENT_INTERVAL
    poll_interval: float = 1.0
    fetch_workers: int = 1
    max_consecutive_failures: int = 5
    threshold: float = 0.75
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def rpc_url(self) -> str:
        """URL of the node's JSON-RPC endpoint (credentials are sent separately)."""
        return f"http://{self.rpc_host}:{self.rpc_port}/"

    def validate(self) -> None:
        """
        Check value ranges.

        Raises:
            ConfigError: If any setting is out of range.
        """
        if not 0 < self.rpc_port < 65536:
            raise ConfigError(f"rpc port out of range: {self.rpc_port}")
        if self.rpc_timeout <= 0:
            raise ConfigError(f"rpc timeout must be positive, got {self.rpc_timeout}")
        if self.window_size < 1:
            raise ConfigError(f"window_size must be at least 1, got {self.window_size}")
        if self.retarget_interval < 1:
            raise ConfigError(
                f"retarget_interval must be at least 1, got {self.retarget_interval}"
            )
        if self.poll_interval < 0:
            raise ConfigError(f"poll_interval cannot be negative, got {self.poll_interval}")
        if self.fetch_workers < 1:
            raise ConfigError(f"fetch_workers must be at least 1, got {self.fetch_workers}")
        if self.max_consecutive_failures < 1:
            raise ConfigError(
                "max_consecutive_failures must be at least 1, "
                f"got {self.max_consecutive_failures}"
            )
        if not 0 < self.threshold <= 1:
            raise ConfigError(f"threshold must be in (0, 1], got {self.threshold}")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigError(f"Unknown log level: {self.log_level}")

    def override(self, **values) -> "MonitorConfig":
        """
        Return a copy with the given fields replaced. ``None`` values are
        ignored so that unset command line flags keep the file's settings.
        """
        changes = {key: value for key, value in values.items() if value is not None}
        updated = dataclasses.replace(self, **changes)
        updated.validate()
        return updated

    @classmethod
    def from_dict(cls, data: dict) -> "MonitorConfig":
        """
        Build a configuration from parsed YAML.

        Raises:
            ConfigError: On unknown sections or keys, or values of the wrong type.
        """
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigError("Configuration must be a mapping of sections")

        values = {}
        for section_name, section in data.items():
            fields = _SECTIONS.get(section_name)
            if fields is None:
                raise ConfigError(f"Unknown configuration section: {section_name!r}")
            if section is None:
                continue
            if not isinstance(section, dict):
                raise ConfigError(f"Section {section_name!r} must be a mapping")

            for key, value in section.items():
                if key not in fields:
                    raise ConfigError(f"Unknown key {section_name}.{key}")
                field_name, types = fields[key]
                if value is None and field_name == "log_file":
                    values[field_name] = None
                    continue
                if isinstance(value, bool) or not isinstance(value, types):
                    raise ConfigError(
                        f"{section_name}.{key} must be of type "
                        f"{' or '.join(t.__name__ for t in types)}, got {value!r}"
                    )
                values[field_name] = value

        config = cls(**values)
        config.validate()
        return config


def load_config(path: str | Path | None = None) -> MonitorConfig:
    """
    Load the configuration from a YAML file.

    Args:
        path: Path of the YAML file. ``None`` returns the defaults.

    Returns:
        The validated configuration.

    Raises:
        ConfigError: If the file cannot be read or parsed, or is invalid.
    """
    if path is None:
        config = MonitorConfig()
        config.validate()
        return config

    config_file = Path(path)
    try:
        with open(config_file, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {config_file}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_file}: {e}") from e

    logger.debug("Loaded configuration from %s", config_file)
    return MonitorConfig.from_dict(data)
