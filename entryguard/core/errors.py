from __future__ import annotations

from typing import Any, Dict, Optional


class MonitorError(Exception):
    """Base for every error the monitor surfaces. `code` is stable and API-facing."""

    code = "MONITOR_ERROR"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class TransientFetchError(MonitorError):
    code = "TRANSIENT_FETCH_ERROR"


class QueueUnavailableError(MonitorError):
    code = "QUEUE_UNAVAILABLE"


class InvalidConfigError(MonitorError):
    code = "INVALID_CONFIG"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["field"] = self.field
        return out


class AlreadyTerminalError(MonitorError):
    code = "ALREADY_TERMINAL"


class AlertNotFoundError(MonitorError):
    code = "NOT_FOUND"


class ForbiddenError(MonitorError):
    code = "FORBIDDEN"


class CooldownActiveError(MonitorError):
    code = "COOLDOWN_ACTIVE"


class MonitorDisabledError(MonitorError):
    code = "MONITOR_DISABLED"


class ConcurrentUpdateError(MonitorError):
    # optimistic version check lost; caller re-reads
    code = "CONCURRENT_UPDATE"


class InvalidSignalError(MonitorError):
    code = "INVALID_SIGNAL"
