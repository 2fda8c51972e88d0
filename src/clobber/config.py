from __future__ import annotations

import os
from dataclasses import dataclass

from .constants import PROTECTED_ROOMS_TYPE, WATCHED_LISTS_TYPE
from .services.backoff import RetryPolicy
from .services.work_queue import QueuePolicy


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "y", "on"}


def _get_str(name: str, default: str) -> str:
    return os.getenv(name, default).strip() or default


@dataclass(frozen=True)
class Settings:
    homeserver_url: str
    access_token: str
    # Resolved with /whoami at startup when empty
    user_id: str
    sqlite_path: str
    log_level: str
    health_enabled: bool
    health_port: int

    reconcile_workers: int
    queue_max_size: int

    retry_max_attempts: int
    retry_base_delay_seconds: float
    retry_max_delay_seconds: float
    conflict_retries: int
    call_timeout_seconds: float

    persist_interval_seconds: float
    sync_timeout_ms: int

    # Account data event types the bot reads its configuration from
    protected_rooms_type: str = PROTECTED_ROOMS_TYPE
    watched_lists_type: str = WATCHED_LISTS_TYPE

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.retry_max_attempts),
            base_delay=max(0.0, self.retry_base_delay_seconds),
            max_delay=max(0.0, self.retry_max_delay_seconds),
            conflict_retries=max(0, self.conflict_retries),
        )

    def queue_policy(self) -> QueuePolicy:
        return QueuePolicy(workers=max(1, self.reconcile_workers), max_queue_size=max(1, self.queue_max_size))


def load_settings() -> Settings:
    homeserver_url = os.getenv("MATRIX_HOMESERVER_URL", "").strip()
    if not homeserver_url:
        raise RuntimeError("MATRIX_HOMESERVER_URL is required")
    access_token = os.getenv("MATRIX_ACCESS_TOKEN", "").strip()
    if not access_token:
        raise RuntimeError("MATRIX_ACCESS_TOKEN is required")
    return Settings(
        homeserver_url=homeserver_url,
        access_token=access_token,
        user_id=os.getenv("MATRIX_USER_ID", "").strip(),
        sqlite_path=_get_str("SQLITE_PATH", "clobber.sqlite3"),
        log_level=_get_str("LOG_LEVEL", "INFO"),
        health_enabled=_get_bool("HEALTH_ENABLED", True),
        health_port=_get_int("PORT", 10000),
        reconcile_workers=_get_int("RECONCILE_WORKERS", 4),
        queue_max_size=_get_int("QUEUE_MAX_SIZE", 10_000),
        retry_max_attempts=_get_int("RETRY_MAX_ATTEMPTS", 5),
        retry_base_delay_seconds=_get_float("RETRY_BASE_DELAY_SECONDS", 1.0),
        retry_max_delay_seconds=_get_float("RETRY_MAX_DELAY_SECONDS", 300.0),
        conflict_retries=_get_int("CONFLICT_RETRIES", 3),
        call_timeout_seconds=_get_float("CALL_TIMEOUT_SECONDS", 30.0),
        persist_interval_seconds=_get_float("PERSIST_INTERVAL_SECONDS", 5.0),
        sync_timeout_ms=_get_int("SYNC_TIMEOUT_MS", 30_000),
        protected_rooms_type=_get_str("PROTECTED_ROOMS_TYPE", PROTECTED_ROOMS_TYPE),
        watched_lists_type=_get_str("WATCHED_LISTS_TYPE", WATCHED_LISTS_TYPE),
    )
