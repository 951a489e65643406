"""
Agent configuration: validated once at startup, then frozen.

Settings come from an optional YAML file in the agent home
(``~/.taskbridge/config.yaml``) overlaid by environment variables:

    AGENT_KEY               agent credential (>= 32 chars)
    API_BASE_URL            remote service root, e.g. https://taskbridge.app
    SYNC_INTERVAL_MINUTES   positive integer, default 5
    LOG_LEVEL               debug | info | warn | error
    TASKBRIDGE_PORT         local status API port, default 7842
    TASKBRIDGE_HOME         agent home directory

Construction failure raises ConfigurationError; the caller decides
whether that ends the process.
"""

from __future__ import annotations

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from . import AGENT_HOME
from .errors import ConfigurationError

logger = logging.getLogger("taskbridge.config")

CONFIG_FILE = "config.yaml"
DEFAULT_PORT = 7842
DEFAULT_SYNC_INTERVAL_MINUTES = 5
MIN_AGENT_KEY_LENGTH = 32

ENV_KEYS = {
    "AGENT_KEY": "agent_key",
    "API_BASE_URL": "api_base_url",
    "SYNC_INTERVAL_MINUTES": "sync_interval_minutes",
    "LOG_LEVEL": "log_level",
    "TASKBRIDGE_PORT": "port",
}


class LogLevel(str, Enum):
    """Accepted log verbosity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def logging_level(self) -> int:
        """The matching ``logging`` module constant."""
        return {
            LogLevel.DEBUG: logging.DEBUG,
            LogLevel.INFO: logging.INFO,
            LogLevel.WARN: logging.WARNING,
            LogLevel.ERROR: logging.ERROR,
        }[self]


class AgentConfig(BaseModel):
    """Immutable, validated agent settings.

    The sync interval is the only value that changes after startup, and
    only upward: ``with_plan_minimum`` returns a new config rather than
    mutating this one.
    """

    model_config = ConfigDict(frozen=True)

    agent_key: str = Field(description="Bearer credential for the remote service")
    api_base_url: str = Field(description="Remote service root URL")
    sync_interval_minutes: int = Field(default=DEFAULT_SYNC_INTERVAL_MINUTES)
    log_level: LogLevel = Field(default=LogLevel.INFO)
    port: int = Field(default=DEFAULT_PORT, description="Local status API port")
    home: Path = Field(default_factory=lambda: Path(AGENT_HOME).expanduser())

    @field_validator("agent_key")
    @classmethod
    def agent_key_long_enough(cls, v: str) -> str:
        """Reject short or blank credentials."""
        v = v.strip()
        if len(v) < MIN_AGENT_KEY_LENGTH:
            raise ValueError(
                f"must be at least {MIN_AGENT_KEY_LENGTH} characters"
            )
        return v

    @field_validator("api_base_url")
    @classmethod
    def url_must_be_valid(cls, v: str) -> str:
        """Require an absolute http(s) URL; drop any trailing slash."""
        parsed = urlparse(v.strip())
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"must be a valid http(s) URL: got '{v}'")
        return v.strip().rstrip("/")

    @field_validator("sync_interval_minutes")
    @classmethod
    def interval_positive(cls, v: int) -> int:
        """Sync interval must be a positive number of minutes."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: Any) -> Any:
        """Accept any casing, and ``warning`` as an alias for ``warn``."""
        if isinstance(v, str):
            v = v.strip().lower()
            if v == "warning":
                return "warn"
        return v

    @field_validator("port")
    @classmethod
    def port_in_range(cls, v: int) -> int:
        """Port 0 lets the OS choose; anything else must be a real port."""
        if not 0 <= v <= 65535:
            raise ValueError("must be between 0 and 65535")
        return v

    @field_validator("home", mode="after")
    @classmethod
    def expand_home(cls, v: Path) -> Path:
        """Expand ``~`` in the home directory."""
        return v.expanduser()

    @property
    def sync_interval_seconds(self) -> int:
        """Interval in seconds, for the periodic timer."""
        return self.sync_interval_minutes * 60

    @property
    def log_file(self) -> Path:
        """Path of the agent log file."""
        return self.home / "logs" / "agent.log"

    def with_plan_minimum(self, minimum: Optional[int]) -> tuple[AgentConfig, bool]:
        """Raise the sync interval to a server-declared plan minimum.

        Args:
            minimum: Plan minimum in minutes, or None if the server sent none.

        Returns:
            (config, adjusted): the unchanged config and False when no
            change is needed, otherwise a copy with the raised interval
            and True. The interval is never lowered.
        """
        if minimum is None or minimum <= self.sync_interval_minutes:
            return self, False
        return self.model_copy(update={"sync_interval_minutes": int(minimum)}), True

    def redacted(self) -> dict:
        """Serializable view with the credential masked."""
        data = self.model_dump(mode="json")
        data["agent_key"] = self.agent_key[:4] + "…" if self.agent_key else ""
        return data


def _read_config_file(path: Path) -> dict:
    """Load the YAML config file, if present.

    Raises:
        ConfigurationError: If the file exists but cannot be parsed.
    """
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError([f"{path}: not valid YAML ({exc})"]) from exc
    if not isinstance(data, dict):
        raise ConfigurationError([f"{path}: expected a mapping at top level"])
    return data


def load_config(
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> AgentConfig:
    """Build the agent config from file, environment, and explicit overrides.

    Precedence, lowest first: ``<home>/config.yaml``, environment
    variables, ``overrides`` (CLI flags).

    Args:
        env: Environment mapping. Defaults to ``os.environ``.
        home: Agent home directory. Defaults to TASKBRIDGE_HOME or ~/.taskbridge.
        overrides: Values that win over everything else; None values are ignored.

    Returns:
        The validated AgentConfig.

    Raises:
        ConfigurationError: Listing every invalid or missing setting.
    """
    env = os.environ if env is None else env
    home_path = Path(
        home or env.get("TASKBRIDGE_HOME") or AGENT_HOME
    ).expanduser()

    values: dict[str, Any] = dict(_read_config_file(home_path / CONFIG_FILE))
    for env_name, field in ENV_KEYS.items():
        raw = env.get(env_name)
        if raw not in (None, ""):
            values[field] = raw
    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value
    values["home"] = home_path

    try:
        return AgentConfig(**values)
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            field = ".".join(str(p) for p in err["loc"]) or "config"
            problems.append(f"{field}: {err['msg']}")
        raise ConfigurationError(problems) from exc


def save_agent_key(home: Path, agent_key: str) -> Path:
    """Store an issued credential in the home config file.

    Other keys already in the file are preserved.

    Args:
        home: Agent home directory.
        agent_key: Credential to store.

    Returns:
        Path of the written config file.
    """
    home = home.expanduser()
    home.mkdir(parents=True, exist_ok=True)
    path = home / CONFIG_FILE
    data = _read_config_file(path)
    data["agent_key"] = agent_key
    path.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    try:
        path.chmod(0o600)
    except OSError as exc:
        logger.warning("Could not restrict permissions on %s: %s", path, exc)
    logger.info("Stored agent key in %s", path)
    return path
