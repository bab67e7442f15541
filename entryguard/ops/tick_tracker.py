# entryguard/ops/tick_tracker.py
from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from entryguard.persistence.db import DB, utc_now_iso

COUNTERS = ("checked", "executed", "cancelled", "expired", "skipped", "errors")


class TickTracker:
    """
    One tick_runs row per scheduler tick.
    Started as RUNNING; finished with counters, duration and SUCCESS/FAILED.
    """

    def __init__(self, db: DB):
        self.db = db

    def start(self, trade_mode: str) -> str:
        tick_id = str(uuid.uuid4())
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO tick_runs (tick_id, trade_mode, started_at, status)
                VALUES (?, ?, ?, 'RUNNING')
                """,
                (tick_id, trade_mode, utc_now_iso()),
            )
        return tick_id

    def finish(
        self,
        tick_id: str,
        counters: Dict[str, int],
        duration_ms: int,
        status: str = "SUCCESS",
        error: Optional[str] = None,
    ) -> None:
        values = [int(counters.get(k, 0) or 0) for k in COUNTERS]
        with self.db.connect() as conn:
            conn.execute(
                f"""
                UPDATE tick_runs SET
                    finished_at = ?, status = ?, duration_ms = ?, error = ?,
                    {", ".join(f"{k} = ?" for k in COUNTERS)}
                WHERE tick_id = ?
                """,
                (utc_now_iso(), status, int(duration_ms), error, *values, tick_id),
            )

    def recent(self, limit: int = 20, trade_mode: Optional[str] = None) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        with self.db.connect() as conn:
            if trade_mode is None:
                rows = conn.execute(
                    "SELECT * FROM tick_runs ORDER BY started_at DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM tick_runs WHERE trade_mode = ? ORDER BY started_at DESC LIMIT ?",
                    (trade_mode, limit),
                ).fetchall()
        return [dict(r) for r in rows]

    def last(self, trade_mode: str) -> Optional[Dict[str, Any]]:
        rows = self.recent(limit=1, trade_mode=trade_mode)
        return rows[0] if rows else None

    def mark_abandoned(self) -> int:
        """Ticks left RUNNING by a crashed process are closed as FAILED on startup."""
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                UPDATE tick_runs SET status = 'FAILED', finished_at = ?, error = 'abandoned'
                WHERE status = 'RUNNING'
                """,
                (utc_now_iso(),),
            )
        return cur.rowcount
