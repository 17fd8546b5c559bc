"""Configuration schema and loader."""

import os
from pathlib import Path
from typing import Mapping

import yaml
from loguru import logger
from pydantic import BaseModel, Field, PrivateAttr
from pydantic import ValidationError as PydanticValidationError


class SessionsConfig(BaseModel):
    max_sessions: int = Field(default=10, ge=1)
    idle_timeout_seconds: float = Field(default=0, ge=0)  # 0 disables the idle sweep
    sweep_interval_seconds: float = Field(default=60, gt=0)
    auth_dir: str = "session_data"
    default_session: str = "main"
    restore_on_startup: bool = True


class MessagesConfig(BaseModel):
    handle_messages: bool = True
    allow_private_messages: bool = False
    allowed_groups: list[str] = Field(default_factory=list)
    bot_phone_number: str = ""           # target identity, e.g. "972500000000@c.us"
    webhook_url: str = "http://localhost:8000/whatsapp/v2/webhook"
    webhook_api_key: str = ""
    webhook_timeout_seconds: float = Field(default=10, gt=0)
    dedup_size: int = Field(default=1024, ge=0)


class BackendConfig(BaseModel):
    headless: bool = True
    executable_path: str | None = None
    proxy_server: str | None = None
    restrict_navigation: bool = True
    web_url: str = "https://web.whatsapp.com"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    launch_timeout_seconds: float = Field(default=60, gt=0)


class WatchdogConfig(BaseModel):
    interval_seconds: float = Field(default=30, gt=0)
    restart_delay_seconds: float = Field(default=5, ge=0)
    restart_backoff_max_seconds: float = Field(default=60, ge=0)


class TimeoutsConfig(BaseModel):
    """Per-operation budgets (seconds) for guarded backend calls."""
    status_probe: float = 3
    chats: float = 30
    media_fetch: float = 30
    send_text: float = 60
    send_media: float = 180
    message_lookup: float = 10
    forward: float = 20
    clear_chat: float = 30
    logout: float = 10
    destroy: float = 10


class ApiConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    api_key: str = ""
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    debug_routes: bool = False
    rate_limit_requests: int = Field(default=100, ge=0)  # per client address, 0 disables
    rate_limit_window_seconds: float = Field(default=900, gt=0)
    access_log: bool = True


class MediaConfig(BaseModel):
    local_root: str | None = None        # local paths are rejected unless set
    max_bytes: int = 64 * 1024 * 1024


class MaintenanceConfig(BaseModel):
    clear_groups: list[str] = Field(default_factory=list)
    clear_groups_interval_minutes: float = Field(default=0, ge=0)
    clear_groups_pause_seconds: float = Field(default=2, ge=0)


class Config(BaseModel):
    """Root configuration."""
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    messages: MessagesConfig = Field(default_factory=MessagesConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    watchdog: WatchdogConfig = Field(default_factory=WatchdogConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    maintenance: MaintenanceConfig = Field(default_factory=MaintenanceConfig)
    log_level: str = "INFO"
    _config_dir: Path = PrivateAttr(default_factory=lambda: Path.cwd())

    def resolve_path(self, value: str) -> Path:
        """Resolve a config-relative path against the config file's directory."""
        path = Path(value).expanduser()
        if not path.is_absolute():
            path = self._config_dir / path
        return path.resolve()

    def auth_root(self) -> Path:
        return self.resolve_path(self.sessions.auth_dir)


def _as_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# env var -> (section, field, converter)
_ENV_OVERRIDES = {
    "MAX_SESSIONS": ("sessions", "max_sessions", int),
    "SESSION_TIMEOUT": ("sessions", "idle_timeout_seconds", lambda v: int(v) / 1000),  # milliseconds
    "SESSION_DATA_PATH": ("sessions", "auth_dir", str),
    "HANDLE_MESSAGES": ("messages", "handle_messages", _as_bool),
    "ALLOW_PRIVATE_MESSAGES": ("messages", "allow_private_messages", _as_bool),
    "ALLOWED_GROUPS": ("messages", "allowed_groups", _as_list),
    "BOT_PHONE_NUMBER": ("messages", "bot_phone_number", str),
    "WHATSAPP_API_KEY": ("messages", "webhook_api_key", str),
    "WHATSAPP_BOT_URL": ("messages", "webhook_url", str),
    "PROXY_SERVER": ("backend", "proxy_server", str),
    "CHROME_BIN": ("backend", "executable_path", str),
    "PORT": ("api", "port", int),
    "API_KEY": ("api", "api_key", str),
    "ALLOWED_ORIGINS": ("api", "cors_origins", _as_list),
}


def apply_env_overrides(config: Config, environ: Mapping[str, str] | None = None) -> Config:
    """Overlay recognized environment variables onto a loaded config (mutates in place)."""
    env = os.environ if environ is None else environ
    for name, (section, field, convert) in _ENV_OVERRIDES.items():
        raw = env.get(name)
        if raw is None or raw == "":
            continue
        current = getattr(config, section)
        try:
            # Re-validate the whole section so field constraints still apply.
            updated = type(current).model_validate(current.model_dump() | {field: convert(raw)})
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"Ignoring invalid {name}={raw!r}: {e}")
            continue
        setattr(config, section, updated)
    if env.get("LOG_LEVEL"):
        config.log_level = env["LOG_LEVEL"].upper()
    return config


def load_config(path: str | Path = "config.yaml", environ: Mapping[str, str] | None = None) -> Config:
    """Load config from YAML file, then apply environment overrides."""
    p = Path(path).expanduser()
    resolved_path = p.resolve()
    if p.exists():
        with open(resolved_path) as f:
            data = yaml.safe_load(f) or {}
        config = Config(**data)
    else:
        config = Config()
    config._config_dir = resolved_path.parent
    return apply_env_overrides(config, environ)
