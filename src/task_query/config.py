# src/task_query/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Settings are built lazily, so importing this module never reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import find_dotenv, load_dotenv

from .query.query_optimizer import QueryOptimizationSettings

ENV_PREFIX = "TASKQ"

BACKENDS = ("sqlite", "siyuan")


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _load_dotenv() -> None:
    """Load .env from the working directory (or a parent); variables already set win."""
    load_dotenv(find_dotenv(usecwd=True), override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_positive_int(name: str, default: int) -> int:
    value = _env_int(name, default)
    return value if value > 0 else default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    log_level: str

    # ---- Record source ----
    backend: str
    data_dir: Path
    db_path: Path
    siyuan_url: str
    siyuan_token: str

    # ---- Query limits ----
    max_execution_time_ms: int
    max_results: int
    enable_cache: bool
    cache_timeout_ms: int
    max_candidates: int
    coalesce_inflight: bool

    @staticmethod
    def from_env() -> "Settings":
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        backend = _env(_k("BACKEND"), "sqlite").strip().lower()
        if backend not in BACKENDS:
            backend = "sqlite"

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskq"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "tasks.sqlite3")

        siyuan_url = _env(_k("SIYUAN_URL"), "http://127.0.0.1:6806").strip()
        siyuan_token = _env(_k("SIYUAN_TOKEN"), "").strip()

        defaults = QueryOptimizationSettings()

        return Settings(
            log_level=log_level,
            backend=backend,
            data_dir=data_dir,
            db_path=db_path,
            siyuan_url=siyuan_url,
            siyuan_token=siyuan_token,
            max_execution_time_ms=_env_positive_int(
                _k("MAX_EXECUTION_TIME_MS"), defaults.max_execution_time_ms
            ),
            max_results=_env_positive_int(_k("MAX_RESULTS"), defaults.max_results),
            enable_cache=_env_bool(_k("ENABLE_CACHE"), defaults.enable_cache),
            cache_timeout_ms=_env_positive_int(_k("CACHE_TIMEOUT_MS"), defaults.cache_timeout_ms),
            max_candidates=_env_positive_int(_k("MAX_CANDIDATES"), defaults.max_candidates),
            coalesce_inflight=_env_bool(_k("COALESCE_INFLIGHT"), defaults.coalesce_inflight),
        )

    def query_settings(self) -> QueryOptimizationSettings:
        return QueryOptimizationSettings(
            max_execution_time_ms=self.max_execution_time_ms,
            max_results=self.max_results,
            enable_cache=self.enable_cache,
            cache_timeout_ms=self.cache_timeout_ms,
            max_candidates=self.max_candidates,
            coalesce_inflight=self.coalesce_inflight,
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _load_dotenv()
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    """Forget the cached Settings (tests change the environment between cases)."""
    global _SETTINGS
    _SETTINGS = None
