from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Env-only config so most deployments only need `.env`; YAML remains an optional override.
    """
    return {
        "portal": {
            "base_url": os.getenv("WE_BASE_URL", "https://my.te.eg/echannel/"),
            # WE_HEADLESS=0 shows the browser (local debugging).
            "headless": _env_bool("WE_HEADLESS", default=True),
            "slow_mo_ms": os.getenv("WE_SLOW_MO_MS", "0"),
        },
        "engine": {
            "max_login_attempts": os.getenv("WE_MAX_LOGIN_ATTEMPTS", "3"),
            "max_auto_relogin": os.getenv("WE_MAX_AUTO_RELOGIN", "2"),
        },
        "account": {
            "user_id": os.getenv("WE_USER_ID", "default"),
            "service_number": os.getenv("WE_SERVICE_NUMBER", ""),
            "password": os.getenv("WE_PASSWORD", ""),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
            "sessions_dir": os.getenv("WE_SESSIONS_DIR", "data/sessions"),
            "snapshot_min_interval_minutes": os.getenv("SNAPSHOT_MIN_INTERVAL_MINUTES", "0"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/we.log"),
        },
        "debug": {
            "dir": os.getenv("DEBUG_DIR", "data/debug"),
            "save_artifacts": _env_bool("DEBUG_WE", default=False),
            "step_screenshots": _env_bool("DEBUG_WE_STEPS", default=False),
        },
    }


class PortalConfig(BaseModel):
    """
    The WE customer portal (Angular SPA with hash routes).
    """

    base_url: str = "https://my.te.eg/echannel/"
    signin_path: str = "#/home/signin"
    account_overview_path: str = "#/accountoverview"
    overview_path: str = "#/overview"

    headless: bool = True
    slow_mo_ms: int = Field(default=0, ge=0)
    login_timeout_ms: int = Field(default=120_000, gt=0)
    page_timeout_ms: int = Field(default=90_000, gt=0)
    viewport_width: int = 1280
    viewport_height: int = 720

    @model_validator(mode="after")
    def _normalize_base_url(self) -> "PortalConfig":
        base_url = (self.base_url or "").strip()
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("portal.base_url must be a full URL like 'https://my.te.eg/echannel/'")
        self.base_url = base_url.rstrip("/") + "/"
        return self


class EngineConfig(BaseModel):
    max_login_attempts: int = Field(default=3, ge=1)
    login_retry_delay_s: float = Field(default=1.5, ge=0)
    login_retry_backoff: float = Field(default=1.0, ge=1.0)
    max_auto_relogin: int = Field(default=2, ge=0)
    renew_settle_ms: int = Field(default=4_000, ge=0)


class AccountConfig(BaseModel):
    """
    Optional default account for the CLI (`link` without arguments).
    """

    user_id: str = "default"
    service_number: str = ""
    password: str = Field(default="", repr=False)


class StateConfig(BaseModel):
    db_path: str = "data/state.db"
    sessions_dir: str = "data/sessions"
    # Skip persisting a snapshot if the previous one for the user is newer than this.
    snapshot_min_interval_minutes: int = Field(default=0, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/we.log"


class DebugConfig(BaseModel):
    dir: str = "data/debug"
    save_artifacts: bool = False
    step_screenshots: bool = False


class AppConfig(BaseModel):
    portal: PortalConfig = PortalConfig()
    engine: EngineConfig = EngineConfig()
    account: AccountConfig = AccountConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: DebugConfig = DebugConfig()


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
