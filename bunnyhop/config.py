from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv


load_dotenv()


EnvGetter = Callable[[str], str | None]


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def _bool_env(name: str, default: bool, *, getenv: EnvGetter = os.getenv) -> bool:
    value = getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _str_env(*names: str, default: str = "", getenv: EnvGetter = os.getenv) -> str:
    for name in names:
        value = getenv(name)
        if value is not None:
            return value.strip()
    return default


def _optional_str_env(*names: str, getenv: EnvGetter = os.getenv) -> str | None:
    value = _str_env(*names, default="", getenv=getenv)
    return value or None


def _int_env(
    name: str,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
    *,
    getenv: EnvGetter = os.getenv,
) -> int:
    value = getenv(name)
    if value is None:
        parsed = default
    else:
        try:
            parsed = int(value.strip())
        except ValueError:
            parsed = default

    if minimum is not None and parsed < minimum:
        parsed = minimum
    if maximum is not None and parsed > maximum:
        parsed = maximum
    return parsed


def _float_env(
    name: str,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
    *,
    getenv: EnvGetter = os.getenv,
) -> float:
    value = getenv(name)
    if value is None:
        parsed = default
    else:
        try:
            parsed = float(value.strip())
        except ValueError:
            parsed = default

    if minimum is not None and parsed < minimum:
        parsed = minimum
    if maximum is not None and parsed > maximum:
        parsed = maximum
    return parsed


def _state_file(state_dir: Path, name: str, default: str, *, getenv: EnvGetter) -> Path:
    candidate = Path(_str_env(name, default=default, getenv=getenv) or default)
    if candidate.is_absolute():
        return candidate
    return state_dir / candidate


@dataclass(frozen=True)
class Settings:
    strava_client_id: str
    strava_client_secret: str
    strava_redirect_uri: str | None

    secret_key: str | None
    frontend_url: str
    log_level: str
    api_port: int

    state_dir: Path
    results_file: Path
    strava_token_file: Path
    runtime_db_file: Path
    event_config_file: Path | None

    http_timeout_seconds: float
    service_retry_count: int
    service_retry_backoff_seconds: float
    max_retry_after_seconds: float
    token_refresh_buffer_seconds: int
    activity_page_size: int
    max_activity_pages: int
    detail_fetch_workers: int
    sync_lock_ttl_seconds: int
    store_lock_timeout_seconds: float
    leaderboard_cache_ttl_seconds: int
    leaderboard_stale_seconds: int
    cookie_secure: bool

    @classmethod
    def from_env(cls, *, getenv: EnvGetter = os.getenv) -> "Settings":
        state_dir = Path(_str_env("STATE_DIR", default="state", getenv=getenv) or "state").resolve()
        event_config_raw = _optional_str_env("EVENT_CONFIG_FILE", getenv=getenv)

        return cls(
            strava_client_id=_str_env("STRAVA_CLIENT_ID", "CLIENT_ID", getenv=getenv),
            strava_client_secret=_str_env("STRAVA_CLIENT_SECRET", "CLIENT_SECRET", getenv=getenv),
            strava_redirect_uri=_optional_str_env("STRAVA_REDIRECT_URI", getenv=getenv),
            secret_key=_optional_str_env("SECRET_KEY", getenv=getenv),
            frontend_url=_str_env("FRONTEND_URL", default="/", getenv=getenv) or "/",
            log_level=_str_env("LOG_LEVEL", default="INFO", getenv=getenv).upper() or "INFO",
            api_port=_int_env("API_PORT", 3000, minimum=1, maximum=65535, getenv=getenv),
            state_dir=state_dir,
            results_file=_state_file(state_dir, "RESULTS_FILE", "results.json", getenv=getenv),
            strava_token_file=_state_file(state_dir, "STRAVA_TOKEN_FILE", "strava_tokens.json", getenv=getenv),
            runtime_db_file=_state_file(state_dir, "RUNTIME_DB_FILE", "runtime_state.db", getenv=getenv),
            event_config_file=Path(event_config_raw).resolve() if event_config_raw else None,
            http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 30.0, minimum=1.0, maximum=300.0, getenv=getenv),
            service_retry_count=_int_env("SERVICE_RETRY_COUNT", 2, minimum=0, maximum=5, getenv=getenv),
            service_retry_backoff_seconds=_float_env(
                "SERVICE_RETRY_BACKOFF_SECONDS", 1.0, minimum=0.0, maximum=120.0, getenv=getenv
            ),
            max_retry_after_seconds=_float_env("MAX_RETRY_AFTER_SECONDS", 60.0, minimum=0.0, maximum=900.0, getenv=getenv),
            token_refresh_buffer_seconds=_int_env(
                "TOKEN_REFRESH_BUFFER_SECONDS", 60, minimum=0, maximum=3600, getenv=getenv
            ),
            activity_page_size=_int_env("ACTIVITY_PAGE_SIZE", 100, minimum=1, maximum=200, getenv=getenv),
            max_activity_pages=_int_env("MAX_ACTIVITY_PAGES", 20, minimum=1, maximum=200, getenv=getenv),
            detail_fetch_workers=_int_env("DETAIL_FETCH_WORKERS", 4, minimum=1, maximum=16, getenv=getenv),
            sync_lock_ttl_seconds=_int_env("SYNC_LOCK_TTL_SECONDS", 300, minimum=30, maximum=3600, getenv=getenv),
            store_lock_timeout_seconds=_float_env(
                "STORE_LOCK_TIMEOUT_SECONDS", 30.0, minimum=0.1, maximum=300.0, getenv=getenv
            ),
            leaderboard_cache_ttl_seconds=_int_env(
                "LEADERBOARD_CACHE_TTL_SECONDS", 30, minimum=0, maximum=3600, getenv=getenv
            ),
            leaderboard_stale_seconds=_int_env(
                "LEADERBOARD_STALE_SECONDS", 60, minimum=0, maximum=86400, getenv=getenv
            ),
            cookie_secure=_bool_env("COOKIE_SECURE", False, getenv=getenv),
        )

    def validate(self) -> None:
        missing = []
        if not self.strava_client_id:
            missing.append("STRAVA_CLIENT_ID (or CLIENT_ID)")
        if not self.strava_client_secret:
            missing.append("STRAVA_CLIENT_SECRET (or CLIENT_SECRET)")
        if missing:
            missing_str = ", ".join(missing)
            raise ValueError(f"Missing required environment variables: {missing_str}")

    def ensure_state_paths(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
