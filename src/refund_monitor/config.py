from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal
from typing import Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .portal.engines import ENGINE_NAMES


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_HHMM_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


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


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return list(default)
    return [x.strip() for x in re.split(r"[,\s]+", raw) if x.strip()]


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
    Provide a sensible env-only config so most installs only need `.env`.

    YAML remains an optional override for anything below.
    """
    return {
        "browser": {
            "headless": _env_bool("PLAYWRIGHT_HEADLESS", default=True),
            "proxy_url": os.getenv("PLAYWRIGHT_PROXY_URL", ""),
            "slow_mo_ms": int(os.getenv("PLAYWRIGHT_SLOW_MO_MS", "0") or 0),
            "engines": _env_list("PLAYWRIGHT_ENGINES", list(ENGINE_NAMES)),
            "debug_dir": os.getenv("DEBUG_DIR", "data/debug"),
            "step_debug": _env_bool("PLAYWRIGHT_STEP_DEBUG", default=False),
        },
        "portals": {
            "federal": {
                "url": os.getenv("FEDERAL_PORTAL_URL", "https://sa.www4.irs.gov/wmr/"),
                "timezone": os.getenv("FEDERAL_PORTAL_TIMEZONE", "America/New_York"),
                "bucket": os.getenv("FEDERAL_SCREENSHOT_BUCKET", "irs-screenshots"),
                "auto_apply": _env_bool("FEDERAL_AUTO_APPLY", default=True),
            },
            "state": {
                "url": os.getenv("STATE_PORTAL_URL", "https://www.colorado.gov/revenueonline/_/"),
                "timezone": os.getenv("STATE_PORTAL_TIMEZONE", "America/Denver"),
                "bucket": os.getenv("STATE_SCREENSHOT_BUCKET", "colorado-screenshots"),
                "auto_apply": _env_bool("STATE_AUTO_APPLY", default=False),
                "state_codes": _env_list("STATE_PORTAL_STATE_CODES", ["CO", "Colorado"]),
            },
        },
        "vision": {
            "enabled": _env_bool("VISION_ENABLED", default=True),
            "api_key": os.getenv("OPENAI_API_KEY", ""),
            "base_url": os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
            "model": os.getenv("VISION_MODEL", "gpt-4o-mini"),
            "timeout_s": float(os.getenv("VISION_TIMEOUT_S", "60") or 60),
        },
        "storage": {
            "backend": os.getenv("STORAGE_BACKEND", "local"),
            "local_path": os.getenv("STORAGE_LOCAL_PATH", "data/screenshots"),
            "s3_endpoint_url": os.getenv("S3_ENDPOINT_URL", ""),
            "s3_region": os.getenv("S3_REGION", "us-east-1"),
            "s3_access_key_id": os.getenv("S3_ACCESS_KEY_ID", ""),
            "s3_secret_access_key": os.getenv("S3_SECRET_ACCESS_KEY", ""),
        },
        "monitor": {
            "retry_delay_s": float(os.getenv("CHECK_RETRY_DELAY_S", "5") or 5),
            "check_timeout_s": float(os.getenv("CHECK_TIMEOUT_S", "120") or 120),
            "schedule_time": os.getenv("SCHEDULE_TIME", "08:00"),
            "schedule_timezone": os.getenv("SCHEDULE_TIMEZONE", "America/New_York"),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/monitor.log"),
        },
    }


class BrowserConfig(BaseModel):
    headless: bool = True
    proxy_url: str = ""
    slow_mo_ms: int = Field(default=0, ge=0)
    # Tried in order; the first one whose executable is installed is used for the whole process.
    engines: list[str] = Field(default_factory=lambda: list(ENGINE_NAMES))
    debug_dir: str = "data/debug"
    # Log every form step and save a full-page screenshot of each one under debug_dir.
    step_debug: bool = False

    @field_validator("engines")
    @classmethod
    def _known_engines(cls, v: list[str]) -> list[str]:
        out = [e.strip().lower() for e in v if e and e.strip()]
        unknown = [e for e in out if e not in ENGINE_NAMES]
        if unknown:
            raise ValueError(f"browser.engines has unknown engine(s) {unknown}; choose from {list(ENGINE_NAMES)}")
        if not out:
            raise ValueError("browser.engines must list at least one engine")
        return out


class PortalConfig(BaseModel):
    url: str
    timezone: str
    bucket: str
    # Federal results are applied immediately; state results wait for an operator to approve them.
    auto_apply: bool = True

    @model_validator(mode="after")
    def _validate_url(self) -> "PortalConfig":
        parsed = urlparse(self.url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"portal url must be a full URL, got {self.url!r}")
        return self


class StatePortalConfig(PortalConfig):
    auto_apply: bool = False
    # Cases whose work_state matches one of these (case-insensitive) are eligible for state checks.
    state_codes: list[str] = Field(default_factory=lambda: ["CO", "Colorado"])


class PortalsConfig(BaseModel):
    federal: PortalConfig = PortalConfig(
        url="https://sa.www4.irs.gov/wmr/",
        timezone="America/New_York",
        bucket="irs-screenshots",
        auto_apply=True,
    )
    state: StatePortalConfig = StatePortalConfig(
        url="https://www.colorado.gov/revenueonline/_/",
        timezone="America/Denver",
        bucket="colorado-screenshots",
    )


class VisionConfig(BaseModel):
    enabled: bool = True
    api_key: str = Field(default="", repr=False)
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    timeout_s: float = Field(default=60.0, gt=0)

    @property
    def usable(self) -> bool:
        return bool(self.enabled and self.api_key)


class StorageConfig(BaseModel):
    backend: Literal["local", "s3"] = "local"
    local_path: str = "data/screenshots"
    s3_endpoint_url: str = ""
    s3_region: str = "us-east-1"
    s3_access_key_id: str = Field(default="", repr=False)
    s3_secret_access_key: str = Field(default="", repr=False)

    @field_validator("backend", mode="before")
    @classmethod
    def _normalize_backend(cls, v: object) -> object:
        return str(v or "local").strip().lower()


class MonitorConfig(BaseModel):
    retry_delay_s: float = Field(default=5.0, ge=0)
    check_timeout_s: float = Field(default=120.0, gt=0)
    schedule_time: str = "08:00"
    schedule_timezone: str = "America/New_York"

    @field_validator("schedule_time")
    @classmethod
    def _hhmm(cls, v: str) -> str:
        s = (v or "").strip()
        if not _HHMM_RE.match(s):
            raise ValueError(f"monitor.schedule_time must be HH:MM (24h), got {v!r}")
        return s

    @property
    def schedule_hour_minute(self) -> tuple[int, int]:
        h, m = self.schedule_time.split(":", 1)
        return int(h), int(m)


class StateConfig(BaseModel):
    db_path: str = "data/state.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/monitor.log"


class AppConfig(BaseModel):
    browser: BrowserConfig = BrowserConfig()
    portals: PortalsConfig = PortalsConfig()
    vision: VisionConfig = VisionConfig()
    storage: StorageConfig = StorageConfig()
    monitor: MonitorConfig = MonitorConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Union[str, Path]) -> AppConfig:
    p = Path(path)
    raw: dict = {}
    if p.exists():
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
