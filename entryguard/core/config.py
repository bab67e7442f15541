# entryguard/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("entryguard.config")

TRADE_MODES = ("REAL", "SIMULATION")


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["REAL","SIMULATION"]
      - csv:  "REAL,SIMULATION"
      - json: '["REAL","SIMULATION"]'
    Returns uppercase, trimmed values.
    """
    if v is None:
        return []
    if isinstance(v, (list, tuple)):
        return [str(x).strip().upper() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip().upper() for x in arr if str(x).strip()]
        except ValueError:
            # fall back to csv parse
            pass
    return [p.strip().upper() for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Process configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding list fields.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Persistence ---
    DB_PATH: str = "data/entryguard.db"
    AUDIT_JSONL_PATH: str = "logs/monitor_audit.jsonl"

    # --- Price gateway ---
    PRICE_VENUE: str = "BINANCE"
    BINANCE_API_BASE_URL: str = "https://api.binance.com"
    PRICE_FETCH_TIMEOUT_SECONDS: float = 5.0
    PRICE_FETCH_RETRIES: int = 2
    PRICE_CACHE_TTL_SECONDS: float = 10.0

    # --- Config store ---
    CONFIG_CACHE_TTL_SECONDS: float = 30.0

    # --- Job queue / dispatch ---
    QUEUE_SUBMIT_RETRIES: int = 3
    QUEUE_RETRY_BACKOFF_SECONDS: float = 0.5
    QUEUE_RETENTION_HOURS: int = 72

    # --- Scheduler ---
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TRADE_MODES: List[str] = Field(default_factory=lambda: list(TRADE_MODES))
    MONITOR_WORKERS_REAL: int = 8
    MONITOR_WORKERS_SIMULATION: int = 4
    ALERT_LOCK_TIMEOUT_SECONDS: float = 2.0

    # --- Logging ---
    LOG_LEVEL: str = "INFO"

    @field_validator("SCHEDULER_TRADE_MODES", mode="before")
    @classmethod
    def parse_trade_modes(cls, v: Any) -> List[str]:
        return _parse_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.PRICE_VENUE = (self.PRICE_VENUE or "BINANCE").upper().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()
        self.BINANCE_API_BASE_URL = self.BINANCE_API_BASE_URL.rstrip("/")

    def workers_for(self, trade_mode: str) -> int:
        if str(trade_mode).upper() == "REAL":
            return int(self.MONITOR_WORKERS_REAL)
        return int(self.MONITOR_WORKERS_SIMULATION)

    def validate_runtime(self, check_interval_sec: int | None = None) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        unknown = [m for m in self.SCHEDULER_TRADE_MODES if m not in TRADE_MODES]
        if unknown:
            errors.append(
                f"SCHEDULER_TRADE_MODES contains unknown modes: {sorted(unknown)}"
            )
        if not self.SCHEDULER_TRADE_MODES:
            warnings.append("SCHEDULER_TRADE_MODES is empty. No alerts will be ticked.")

        if self.MONITOR_WORKERS_REAL < 1:
            errors.append("MONITOR_WORKERS_REAL must be >= 1.")
        if self.MONITOR_WORKERS_SIMULATION < 1:
            errors.append("MONITOR_WORKERS_SIMULATION must be >= 1.")

        if self.PRICE_FETCH_TIMEOUT_SECONDS <= 0:
            errors.append("PRICE_FETCH_TIMEOUT_SECONDS must be > 0.")
        if self.PRICE_FETCH_RETRIES < 0:
            errors.append("PRICE_FETCH_RETRIES must be >= 0.")
        if self.QUEUE_SUBMIT_RETRIES < 0:
            errors.append("QUEUE_SUBMIT_RETRIES must be >= 0.")
        if self.PRICE_CACHE_TTL_SECONDS < 0:
            errors.append("PRICE_CACHE_TTL_SECONDS must be >= 0.")
        if self.CONFIG_CACHE_TTL_SECONDS < 0:
            errors.append("CONFIG_CACHE_TTL_SECONDS must be >= 0.")
        if self.QUEUE_RETENTION_HOURS < 1:
            errors.append("QUEUE_RETENTION_HOURS must be >= 1.")

        # Stale prices are only tolerable when the cache turns over inside one cadence
        if check_interval_sec is not None and self.PRICE_CACHE_TTL_SECONDS >= check_interval_sec:
            warnings.append(
                f"PRICE_CACHE_TTL_SECONDS ({self.PRICE_CACHE_TTL_SECONDS}) is not smaller than "
                f"check_interval_sec ({check_interval_sec}). Ticks may reuse the previous sample."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


Settings.model_rebuild()
settings = Settings()
