from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

log = logging.getLogger("clobber.observability")


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class ActionType(Enum):
    """Action types for structured logging."""
    RECONCILE = "reconcile"
    ENFORCE = "enforce"
    STARTUP = "startup"


@dataclass
class StructuredLogEntry:
    timestamp: datetime
    level: LogLevel
    action: ActionType
    room_id: str | None
    message: str
    details: dict[str, Any]
    duration_ms: float | None = None
    success: bool | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["level"] = self.level.value
        data["action"] = self.action.value
        return data


class ObservabilityManager:
    """Structured logging plus the counters served by the health endpoint."""

    def __init__(self) -> None:
        self._startup_time = datetime.now(timezone.utc)
        self._error_counts: dict[str, int] = {}
        self._enforce_counts: dict[str, int] = {}
        self._health_status: dict[str, bool] = {}

    def log_structured(
        self,
        level: LogLevel,
        action: ActionType,
        message: str,
        room_id: str | None = None,
        details: dict[str, Any] | None = None,
        duration_ms: float | None = None,
        success: bool | None = None,
        error_type: str | None = None,
    ) -> None:
        entry = StructuredLogEntry(
            timestamp=datetime.now(timezone.utc),
            level=level,
            action=action,
            room_id=room_id,
            message=message,
            details=details or {},
            duration_ms=duration_ms,
            success=success,
            error_type=error_type,
        )

        log_method = {
            LogLevel.DEBUG: log.debug,
            LogLevel.INFO: log.info,
            LogLevel.WARNING: log.warning,
            LogLevel.ERROR: log.error,
        }.get(level, log.info)
        log_method(f"[{action.value}] {message} | {json.dumps(entry.to_dict(), separators=(',', ':'))}")

        if error_type:
            key = f"{action.value}:{error_type}"
            self._error_counts[key] = self._error_counts.get(key, 0) + 1
        if action == ActionType.ENFORCE:
            operation = str((details or {}).get("operation", "unknown"))
            self._enforce_counts[operation] = self._enforce_counts.get(operation, 0) + 1

    def log_enforcement(
        self,
        operation: str,
        room_id: str,
        entity: str,
        success: bool,
        duration_ms: float,
        error: Exception | None = None,
    ) -> None:
        self.log_structured(
            level=LogLevel.INFO if success else LogLevel.WARNING,
            action=ActionType.ENFORCE,
            message=f"{operation} {entity} {'succeeded' if success else 'failed'}",
            room_id=room_id,
            details={"operation": operation, "entity": entity},
            duration_ms=duration_ms,
            success=success,
            error_type=type(error).__name__ if error else None,
        )

    def log_reconcile(self, room_id: str, attempted: int, failed: int, duration_ms: float) -> None:
        self.log_structured(
            level=LogLevel.INFO if not failed else LogLevel.WARNING,
            action=ActionType.RECONCILE,
            message=f"pass finished: {attempted - failed}/{attempted} action(s) settled",
            room_id=room_id,
            details={"attempted": attempted, "failed": failed},
            duration_ms=duration_ms,
            success=not failed,
        )

    def log_startup_event(self, component: str, status: str, details: dict[str, Any] | None = None) -> None:
        self.log_structured(
            level=LogLevel.INFO if status == "OK" else LogLevel.ERROR,
            action=ActionType.STARTUP,
            message=f"Startup component {component}: {status}",
            details=details or {"component": component, "status": status},
            success=status == "OK",
        )
        self._health_status[component] = status == "OK"

    def get_health_summary(self) -> dict[str, Any]:
        uptime_ms = (datetime.now(timezone.utc) - self._startup_time).total_seconds() * 1000
        return {
            "uptime_ms": uptime_ms,
            "startup_time": self._startup_time.isoformat(),
            "health_status": dict(self._health_status),
            "all_healthy": all(self._health_status.values()),
            "enforce_counts": dict(self._enforce_counts),
            "error_counts": dict(self._error_counts),
        }


observability = ObservabilityManager()
