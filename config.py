"""Configuration loader for the Echo Chamber daemon.

Loads chamber.toml, applies environment variable overrides for secrets,
validates required fields, and provides typed access to all settings.
Immutable after load — no runtime config reloading.
"""

import logging
import os
import re
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from usage import DEFAULT_COST_RATES, DEFAULT_TIMEZONE, WINDOW_HOURS, WINDOW_START_HOUR

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "CHAMBER_OPENAI_KEY": ("api_keys", "openai"),
    "CHAMBER_HTTP_TOKEN": ("api_keys", "http_token"),
}

_SUPPORTED_PROVIDERS = ("openai-responses",)
_SUPPORTED_TRANSPORTS = ("discord",)
_INSTANCE_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,31}$")


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


@dataclass(frozen=True)
class InstanceConfig:
    """Static settings of one identity."""

    id: str
    name: str
    system_prompt: str
    bot_token: str
    chat_channel_id: str
    thinking_channel_id: str
    transport: str = "discord"


class Config:
    """Immutable configuration loaded from chamber.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                if section not in self._data:
                    self._data[section] = {}
                self._data[section][key] = val

    def _validate(self):
        errors = []
        instances = _deep_get(self._data, "instances", default={})
        if not instances:
            errors.append("[instances.<id>] at least one instance is required")
        for iid, icfg in instances.items():
            if not _INSTANCE_ID_RE.match(iid):
                errors.append(f"[instances.{iid}] id must be lowercase letters, digits, '-' or '_'")
            if not isinstance(icfg, dict):
                errors.append(f"[instances.{iid}] must be a table")
                continue
            if not icfg.get("token_env"):
                errors.append(f"[instances.{iid}] token_env is required")
            transport = icfg.get("transport", "discord")
            if transport not in _SUPPORTED_TRANSPORTS:
                errors.append(f"[instances.{iid}] unknown transport: {transport}")
            if icfg.get("system_prompt_file"):
                prompt_path = self._resolve_relative(icfg["system_prompt_file"])
                if not prompt_path.exists():
                    errors.append(f"[instances.{iid}] system_prompt_file not found: {prompt_path}")

        if not _deep_get(self._data, "model", "model"):
            errors.append("[model] model is required")
        provider = _deep_get(self._data, "model", "provider", default="openai-responses")
        if provider not in _SUPPORTED_PROVIDERS:
            errors.append(f"[model] unknown provider: {provider}")
        if len(self.cost_rates) != 3:
            errors.append("[model] cost_per_mtok must be [input, output, cached_input]")

        for key in ("sleep_hour", "wake_hour"):
            val = _deep_get(self._data, "schedule", "quiet", key)
            if val is not None and not (isinstance(val, int) and 0 <= val <= 23):
                errors.append(f"[schedule.quiet] {key} must be an hour 0-23")
        if (self.quiet_sleep_hour is None) != (self.quiet_wake_hour is None):
            errors.append("[schedule.quiet] sleep_hour and wake_hour must be set together")
        if self.alarm_interval_minutes < 1:
            errors.append("[schedule] alarm_interval_minutes must be >= 1")

        if self.buffer_factor <= 1.0:
            errors.append("[budget] buffer_factor must be > 1.0")
        if not (0 < self.window_hours <= 24):
            errors.append("[budget] window_hours must be in 1..24")
        if self.daily_soft_limit > self.daily_hard_limit:
            errors.append("[budget] daily_soft_limit must not exceed daily_hard_limit")

        if self.notify_channel_id and not self.notify_token_env:
            errors.append("[logging] notify_token_env is required with notify_channel_id")

        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    def _resolve_relative(self, p: str) -> Path:
        path = Path(p).expanduser()
        if not path.is_absolute():
            path = self._config_dir / path
        return path.resolve()

    # --- Chamber ---

    @property
    def environment(self) -> str:
        return _deep_get(self._data, "chamber", "environment", default="production")

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    @property
    def timezone(self) -> str:
        return _deep_get(self._data, "chamber", "timezone", default=DEFAULT_TIMEZONE)

    @property
    def auto_wake(self) -> bool:
        return _deep_get(self._data, "chamber", "auto_wake", default=False)

    # --- Schedule ---

    @property
    def alarm_interval_minutes(self) -> int:
        return _deep_get(self._data, "schedule", "alarm_interval_minutes", default=1)

    @property
    def tick_seconds(self) -> float:
        return float(_deep_get(self._data, "schedule", "tick_seconds", default=5))

    @property
    def quiet_sleep_hour(self) -> int | None:
        return _deep_get(self._data, "schedule", "quiet", "sleep_hour", default=None)

    @property
    def quiet_wake_hour(self) -> int | None:
        return _deep_get(self._data, "schedule", "quiet", "wake_hour", default=None)

    # --- Budget ---

    @property
    def daily_hard_limit(self) -> int:
        return _deep_get(self._data, "budget", "daily_hard_limit", default=1_000_000)

    @property
    def daily_soft_limit(self) -> int:
        return _deep_get(self._data, "budget", "daily_soft_limit", default=500_000)

    @property
    def buffer_factor(self) -> float:
        return float(_deep_get(self._data, "budget", "buffer_factor", default=1.5))

    @property
    def window_start_hour(self) -> int:
        return _deep_get(self._data, "budget", "window_start_hour", default=WINDOW_START_HOUR)

    @property
    def window_hours(self) -> int:
        return _deep_get(self._data, "budget", "window_hours", default=WINDOW_HOURS)

    # --- Model ---

    @property
    def model_config(self) -> dict:
        cfg = dict(_deep_get(self._data, "model", default={}))
        cfg.setdefault("provider", "openai-responses")
        return cfg

    @property
    def max_turns(self) -> int:
        return _deep_get(self._data, "model", "max_turns", default=10)

    @property
    def call_timeout(self) -> float:
        return float(_deep_get(self._data, "model", "call_timeout", default=120))

    @property
    def loop_timeout(self) -> float:
        return float(_deep_get(self._data, "model", "loop_timeout", default=600))

    @property
    def tool_timeout(self) -> float:
        return float(_deep_get(self._data, "model", "tool_timeout", default=60))

    @property
    def output_truncation(self) -> int:
        return _deep_get(self._data, "model", "output_truncation", default=30000)

    @property
    def cost_rates(self) -> list[float]:
        return list(_deep_get(self._data, "model", "cost_per_mtok", default=DEFAULT_COST_RATES))

    # --- Embedding / memory ---

    @property
    def memory_enabled(self) -> bool:
        return _deep_get(self._data, "memory", "enabled", default=True)

    @property
    def embedding_model(self) -> str:
        return _deep_get(self._data, "embedding", "model", default="text-embedding-3-small")

    @property
    def embedding_dimensions(self) -> int:
        return _deep_get(self._data, "embedding", "dimensions", default=1536)

    @property
    def embedding_base_url(self) -> str:
        return _deep_get(self._data, "embedding", "base_url", default="")

    @property
    def embedding_timeout(self) -> float:
        return float(_deep_get(self._data, "embedding", "timeout", default=15))

    # --- Logging ---

    @property
    def log_level(self) -> str:
        return _deep_get(self._data, "logging", "level", default="INFO").upper()

    @property
    def notify_level(self) -> str:
        default = "DEBUG" if self.is_local else "INFO"
        return _deep_get(self._data, "logging", "notify_level", default=default).upper()

    @property
    def notify_channel_id(self) -> str:
        return _deep_get(self._data, "logging", "notify_channel_id", default="")

    @property
    def notify_token_env(self) -> str:
        return _deep_get(self._data, "logging", "notify_token_env", default="")

    @property
    def notify_token(self) -> str:
        env_var = self.notify_token_env
        return os.environ.get(env_var, "") if env_var else ""

    # --- HTTP API ---

    @property
    def http_enabled(self) -> bool:
        return _deep_get(self._data, "http", "enabled", default=False)

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="127.0.0.1")

    @property
    def http_port(self) -> int:
        return _deep_get(self._data, "http", "port", default=8100)

    @property
    def http_auth_token(self) -> str:
        return self.api_key("http_token")

    @property
    def http_rate_limit(self) -> int:
        return _deep_get(self._data, "http", "rate_limit", default=30)

    @property
    def http_rate_window(self) -> int:
        return _deep_get(self._data, "http", "rate_window", default=60)

    # --- Instances ---

    @property
    def instance_ids(self) -> list[str]:
        return list(_deep_get(self._data, "instances", default={}).keys())

    def instance(self, instance_id: str) -> InstanceConfig:
        icfg = _deep_get(self._data, "instances", instance_id, default=None)
        if not icfg:
            raise KeyError(instance_id)
        prompt = icfg.get("system_prompt", "")
        if icfg.get("system_prompt_file"):
            prompt = self._resolve_relative(icfg["system_prompt_file"]).read_text(encoding="utf-8")
        token_env = icfg["token_env"]
        return InstanceConfig(
            id=instance_id,
            name=icfg.get("name", instance_id),
            system_prompt=prompt,
            bot_token=os.environ.get(token_env, ""),
            chat_channel_id=str(icfg.get("chat_channel_id", "")),
            thinking_channel_id=str(icfg.get("thinking_channel_id", "")),
            transport=icfg.get("transport", "discord"),
        )

    # --- Paths ---

    @property
    def config_dir(self) -> Path:
        """Directory containing chamber.toml (for resolving relative paths)."""
        return self._config_dir

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.chamber"))

    @property
    def state_db(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_db",
                                       default="~/.chamber/state.db"))

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.chamber/chamber.log"))

    # --- API Keys ---

    def api_key(self, provider: str) -> str:
        return _deep_get(self._data, "api_keys", provider, default="")

    # --- Raw access ---

    def raw(self, *keys: str, default: Any = None) -> Any:
        return _deep_get(self._data, *keys, default=default)


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as chamber.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to chamber.toml config file.
        overrides: Dotted-key overrides applied to the raw TOML data before
                   validation (e.g. {"chamber.environment": "local"}).
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    _load_dotenv(p)
    with open(p, "rb") as f:
        data = tomllib.load(f)
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, config_dir=p.parent)
