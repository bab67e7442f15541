# entryguard/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from entryguard.ops.context import current_tick
from entryguard.persistence.db import DB, utc_now_iso

log = logging.getLogger("entryguard.audit")


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to a JSONL file for tailing.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/monitor_audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            # audit mirror is optional
            log.warning("audit jsonl unavailable at %s: %s", self.jsonl_path, e)

    def event(
        self,
        event_type: str,
        alert_id: Optional[int] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        tick = current_tick()
        tick_id = tick.tick_id if tick else None
        trade_mode = tick.trade_mode if tick else None
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)
        ts = utc_now_iso()

        # 1) DB (source of truth)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO events(timestamp_utc, tick_id, trade_mode, alert_id, symbol, event_type, action, details_json)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (ts, tick_id, trade_mode, alert_id, symbol, event_type, action, payload),
            )

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "tick_id": tick_id,
                "trade_mode": trade_mode,
                "alert_id": alert_id,
                "symbol": symbol,
                "action": action,
                "details": details or {},
            }
        )

    def tail(self, limit: int = 50, alert_id: Optional[int] = None) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        with self.db.connect() as conn:
            if alert_id is None:
                rows = conn.execute(
                    "SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM events WHERE alert_id = ? ORDER BY id DESC LIMIT ?",
                    (alert_id, limit),
                ).fetchall()

        out = []
        for r in rows:
            d = dict(r)
            d["details"] = json.loads(d.pop("details_json") or "{}")
            out.append(d)
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # never break a tick because the mirror write failed
            log.warning("audit jsonl write failed: %s", e)
