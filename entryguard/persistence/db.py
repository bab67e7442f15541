from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional


# =========================
# Time helpers
# =========================
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def from_iso(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path: data/entryguard.db
    """

    def __init__(self, path: str = "data/entryguard.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection managers
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Write transaction holding SQLite's RESERVED lock from the first statement.
        Read-check-write sequences inside it are atomic across threads and processes.
        """
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            conn.execute("PRAGMA journal_mode=WAL")

            # =========================
            # Monitor alerts
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS monitor_alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_id INTEGER NOT NULL,
                    account_id INTEGER,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,                 -- BUY/SELL
                    trade_mode TEXT NOT NULL,           -- REAL/SIMULATION
                    venue TEXT NOT NULL,
                    owner_id INTEGER,
                    state TEXT NOT NULL,
                    sub_status TEXT NOT NULL,
                    signal_price REAL NOT NULL,
                    anchor_price REAL NOT NULL,
                    price_minimum REAL NOT NULL,
                    price_maximum REAL NOT NULL,
                    current_price REAL NOT NULL,
                    trigger_price REAL,
                    execution_price REAL,
                    cycles_without_new_low INTEGER NOT NULL DEFAULT 0,
                    cycles_without_new_high INTEGER NOT NULL DEFAULT 0,
                    exit_reason TEXT,
                    exit_details TEXT,
                    target_account_ids_json TEXT NOT NULL DEFAULT '[]',
                    executed_job_ids_json TEXT NOT NULL DEFAULT '[]',
                    dispatched_jobs_json TEXT NOT NULL DEFAULT '{}',
                    started_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    ended_at TEXT,
                    savings_pct REAL,
                    efficiency_pct REAL,
                    monitoring_duration_minutes INTEGER,
                    version INTEGER NOT NULL DEFAULT 0
                )
                """
            )

            # =========================
            # Terminal history (append-only)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    alert_id INTEGER NOT NULL,
                    state TEXT NOT NULL,
                    exit_reason TEXT,
                    exit_details TEXT,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,
                    trade_mode TEXT NOT NULL,
                    owner_id INTEGER,
                    anchor_price REAL NOT NULL,
                    execution_price REAL,
                    started_at TEXT NOT NULL,
                    ended_at TEXT NOT NULL,
                    recorded_at TEXT NOT NULL,
                    FOREIGN KEY(alert_id) REFERENCES monitor_alerts(id)
                )
                """
            )

            # =========================
            # Monitor thresholds (global + per owner)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS monitor_configs (
                    scope TEXT PRIMARY KEY,             -- 'global' | 'owner:<id>'
                    owner_id INTEGER,
                    config_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Execution jobs (queue backend)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trade_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_key TEXT NOT NULL UNIQUE,
                    queue_name TEXT NOT NULL,
                    alert_id INTEGER,
                    account_id INTEGER,
                    payload_json TEXT NOT NULL,
                    status TEXT NOT NULL,               -- PENDING/ACTIVE/COMPLETED/FAILED
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    finished_at TEXT
                )
                """
            )

            # =========================
            # Events (audit log)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    tick_id TEXT,
                    trade_mode TEXT,
                    alert_id INTEGER,
                    symbol TEXT,
                    event_type TEXT NOT NULL,
                    action TEXT,
                    details_json TEXT
                )
                """
            )

            # =========================
            # Tick runs (one per scheduler tick)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tick_runs (
                    tick_id TEXT PRIMARY KEY,
                    trade_mode TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    status TEXT NOT NULL,               -- RUNNING/SUCCESS/FAILED
                    checked INTEGER NOT NULL DEFAULT 0,
                    executed INTEGER NOT NULL DEFAULT 0,
                    cancelled INTEGER NOT NULL DEFAULT 0,
                    expired INTEGER NOT NULL DEFAULT 0,
                    skipped INTEGER NOT NULL DEFAULT 0,
                    errors INTEGER NOT NULL DEFAULT 0,
                    duration_ms INTEGER,
                    error TEXT
                )
                """
            )

            # =========================
            # Indexes
            # =========================
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_alerts_state_mode ON monitor_alerts(state, trade_mode)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_alerts_source ON monitor_alerts(source_id, symbol, trade_mode, state)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_alerts_started ON monitor_alerts(started_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_history_alert ON alert_history(alert_id)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_alert ON trade_jobs(alert_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_tick ON events(tick_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_ticks_mode ON tick_runs(trade_mode, started_at)"
            )

            conn.commit()

        finally:
            conn.close()
