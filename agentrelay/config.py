"""Configuration loading: TOML file + environment variable overlay."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from agentrelay.errors import ConfigurationError
from agentrelay.models.agent import RunMode

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "agentrelay"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.toml"


DEFAULT_CONFIG_TOML = """\
[claude]
executable = "claude"
model = ""
# "stream" (structured JSON records) or "interactive" (pseudo-terminal)
mode = "stream"
default_workdir = ""
permission_mode = ""
extra_args = []

[supervisor]
turn_timeout = 300
startup_timeout = 30
close_grace = 5
emit_interval = 1.0
idle_timeout = 1800
sweep_interval = 300

[mongodb]
uri = "mongodb://localhost:27017"
database = "agentrelay"
"""


@dataclass
class ClaudeConfig:
    executable: str = "claude"
    model: str = ""
    mode: RunMode = RunMode.STREAM
    default_workdir: str = ""
    permission_mode: str = ""
    extra_args: list[str] = field(default_factory=list)

    @property
    def resolved_workdir(self) -> str:
        if self.default_workdir:
            return str(Path(self.default_workdir).expanduser())
        return os.getcwd()


@dataclass
class SupervisorConfig:
    turn_timeout: float = 300.0
    startup_timeout: float = 30.0
    close_grace: float = 5.0
    emit_interval: float = 1.0
    idle_timeout: float = 1800.0
    sweep_interval: float = 300.0


@dataclass
class MongoConfig:
    uri: str = "mongodb://localhost:27017"
    database: str = "agentrelay"


@dataclass
class AppConfig:
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    mongodb: MongoConfig = field(default_factory=MongoConfig)
    config_path: Path = DEFAULT_CONFIG_PATH


def _parse_mode(value: str) -> RunMode:
    try:
        return RunMode(value)
    except ValueError:
        valid = ", ".join(m.value for m in RunMode)
        raise ConfigurationError(f"Invalid claude.mode {value!r} (expected one of: {valid})") from None


def _env_overlay(config: AppConfig) -> None:
    """Override config values with environment variables where applicable."""
    if path := os.environ.get("CLAUDE_PATH"):
        config.claude.executable = path
    if model := os.environ.get("CLAUDE_MODEL"):
        config.claude.model = model
    if workdir := os.environ.get("CLAUDE_WORKDIR"):
        config.claude.default_workdir = workdir
    if mode := os.environ.get("AGENTRELAY_MODE"):
        config.claude.mode = _parse_mode(mode)

    if uri := os.environ.get("MONGODB_URI"):
        config.mongodb.uri = uri
    if db := os.environ.get("AGENTRELAY_DB"):
        config.mongodb.database = db


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from TOML file with env var overlay."""
    path = config_path or DEFAULT_CONFIG_PATH

    if path.exists():
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    else:
        raw = tomllib.loads(DEFAULT_CONFIG_TOML)

    claude_raw = raw.get("claude", {})
    supervisor_raw = raw.get("supervisor", {})
    mongo_raw = raw.get("mongodb", {})

    config = AppConfig(
        claude=ClaudeConfig(
            executable=claude_raw.get("executable", "claude"),
            model=claude_raw.get("model", ""),
            mode=_parse_mode(claude_raw.get("mode", "stream")),
            default_workdir=claude_raw.get("default_workdir", ""),
            permission_mode=claude_raw.get("permission_mode", ""),
            extra_args=list(claude_raw.get("extra_args", [])),
        ),
        supervisor=SupervisorConfig(
            turn_timeout=float(supervisor_raw.get("turn_timeout", 300)),
            startup_timeout=float(supervisor_raw.get("startup_timeout", 30)),
            close_grace=float(supervisor_raw.get("close_grace", 5)),
            emit_interval=float(supervisor_raw.get("emit_interval", 1.0)),
            idle_timeout=float(supervisor_raw.get("idle_timeout", 1800)),
            sweep_interval=float(supervisor_raw.get("sweep_interval", 300)),
        ),
        mongodb=MongoConfig(
            uri=mongo_raw.get("uri", "mongodb://localhost:27017"),
            database=mongo_raw.get("database", "agentrelay"),
        ),
        config_path=path,
    )

    _env_overlay(config)
    return config


def init_config(config_path: Path | None = None) -> Path:
    """Create default config file."""
    path = config_path or DEFAULT_CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TOML)
    return path
