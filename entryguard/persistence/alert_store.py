# entryguard/persistence/alert_store.py

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional

from entryguard.core.errors import AlertNotFoundError, AlreadyTerminalError, ConcurrentUpdateError
from entryguard.persistence.db import DB, from_iso, to_iso
from entryguard.runner.models import (
    AlertState,
    MonitorAlert,
    OPEN_STATES,
    Side,
    Signal,
    SubStatus,
    TERMINAL_STATES,
    TradeMode,
)

HISTORY_LIMIT_MIN = 1
HISTORY_LIMIT_MAX = 1000

_OPEN = tuple(s.value for s in OPEN_STATES)
_TERMINAL = tuple(s.value for s in TERMINAL_STATES)


def clamp_limit(limit: Optional[int], default: int = 100) -> int:
    if limit is None:
        return default
    return max(HISTORY_LIMIT_MIN, min(int(limit), HISTORY_LIMIT_MAX))


def _row_to_alert(r: sqlite3.Row) -> MonitorAlert:
    return MonitorAlert(
        id=int(r["id"]),
        source_id=int(r["source_id"]),
        account_id=r["account_id"],
        symbol=r["symbol"],
        side=Side(r["side"]),
        trade_mode=TradeMode(r["trade_mode"]),
        venue=r["venue"],
        owner_id=r["owner_id"],
        state=AlertState(r["state"]),
        sub_status=r["sub_status"],
        signal_price=float(r["signal_price"]),
        anchor_price=float(r["anchor_price"]),
        price_minimum=float(r["price_minimum"]),
        price_maximum=float(r["price_maximum"]),
        current_price=float(r["current_price"]),
        trigger_price=r["trigger_price"],
        execution_price=r["execution_price"],
        cycles_without_new_low=int(r["cycles_without_new_low"] or 0),
        cycles_without_new_high=int(r["cycles_without_new_high"] or 0),
        exit_reason=r["exit_reason"],
        exit_details=r["exit_details"],
        target_account_ids=[int(x) for x in json.loads(r["target_account_ids_json"] or "[]")],
        executed_job_ids=[str(x) for x in json.loads(r["executed_job_ids_json"] or "[]")],
        dispatched_jobs={
            int(k): str(v) for k, v in json.loads(r["dispatched_jobs_json"] or "{}").items()
        },
        started_at=from_iso(r["started_at"]),
        updated_at=from_iso(r["updated_at"]),
        ended_at=from_iso(r["ended_at"]),
        savings_pct=r["savings_pct"],
        efficiency_pct=r["efficiency_pct"],
        monitoring_duration_minutes=r["monitoring_duration_minutes"],
        version=int(r["version"] or 0),
    )


def _placeholders(values: Iterable[Any]) -> str:
    return ",".join("?" for _ in values)


class AlertStore:
    """
    Alert persistence. Every mutation of an open alert carries the version the
    caller read; a stale version or an already-terminal row means someone else
    won and the write is refused.
    """

    def __init__(self, db: DB):
        self.db = db

    @contextmanager
    def _conn(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.db.connect() as c:
            yield c

    # ---------- CREATE ----------
    def create(
        self, signal: Signal, now: datetime, conn: Optional[sqlite3.Connection] = None
    ) -> MonitorAlert:
        price = float(signal.price)
        accounts = [int(a) for a in signal.account_ids]
        initial = SubStatus.FALLING if Side(signal.side) == Side.BUY else SubStatus.RISING

        with self._conn(conn) as c:
            cur = c.execute(
                """
                INSERT INTO monitor_alerts(
                    source_id, account_id, symbol, side, trade_mode, venue, owner_id,
                    state, sub_status, signal_price, anchor_price, price_minimum, price_maximum,
                    current_price, target_account_ids_json, executed_job_ids_json,
                    started_at, updated_at, version
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,0)
                """,
                (
                    int(signal.source_id),
                    accounts[0] if accounts else None,
                    signal.symbol.upper(),
                    Side(signal.side).value,
                    TradeMode(signal.trade_mode).value,
                    signal.venue.upper(),
                    signal.owner_id,
                    AlertState.MONITORING.value,
                    initial.value,
                    price,
                    price,
                    price,
                    price,
                    price,
                    json.dumps(accounts),
                    "[]",
                    to_iso(now),
                    to_iso(now),
                ),
            )
            alert_id = int(cur.lastrowid)
            row = c.execute("SELECT * FROM monitor_alerts WHERE id = ?", (alert_id,)).fetchone()

        return _row_to_alert(row)

    # ---------- READ ----------
    def get(self, alert_id: int, conn: Optional[sqlite3.Connection] = None) -> MonitorAlert:
        with self._conn(conn) as c:
            row = c.execute("SELECT * FROM monitor_alerts WHERE id = ?", (int(alert_id),)).fetchone()
        if not row:
            raise AlertNotFoundError(f"alert {alert_id} not found")
        return _row_to_alert(row)

    def list_open(self, trade_mode: TradeMode) -> List[MonitorAlert]:
        """Snapshot of every MONITORING/ARMED alert of one trade mode."""
        with self.db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM monitor_alerts
                WHERE trade_mode = ? AND state IN ({_placeholders(_OPEN)})
                ORDER BY id ASC
                """,
                (TradeMode(trade_mode).value, *_OPEN),
            ).fetchall()
        return [_row_to_alert(r) for r in rows]

    def list_active(
        self, owner_id: Optional[int] = None, limit: Optional[int] = None, offset: int = 0
    ) -> List[MonitorAlert]:
        where = [f"state IN ({_placeholders(_OPEN)})"]
        params: List[Any] = list(_OPEN)
        if owner_id is not None:
            where.append("owner_id = ?")
            params.append(int(owner_id))

        params.extend([clamp_limit(limit), max(0, int(offset))])
        with self.db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM monitor_alerts
                WHERE {" AND ".join(where)}
                ORDER BY started_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()
        return [_row_to_alert(r) for r in rows]

    def find_open(
        self,
        source_id: int,
        symbol: str,
        trade_mode: TradeMode,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[MonitorAlert]:
        with self._conn(conn) as c:
            row = c.execute(
                f"""
                SELECT * FROM monitor_alerts
                WHERE source_id = ? AND symbol = ? AND trade_mode = ?
                  AND state IN ({_placeholders(_OPEN)})
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """,
                (int(source_id), symbol.upper(), TradeMode(trade_mode).value, *_OPEN),
            ).fetchone()
        return _row_to_alert(row) if row else None

    def find_recent_execution(
        self,
        source_id: int,
        symbol: str,
        trade_mode: TradeMode,
        side: Side,
        since: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Optional[MonitorAlert]:
        with self._conn(conn) as c:
            row = c.execute(
                """
                SELECT * FROM monitor_alerts
                WHERE source_id = ? AND symbol = ? AND trade_mode = ? AND side = ?
                  AND state = ? AND ended_at >= ?
                ORDER BY ended_at DESC
                LIMIT 1
                """,
                (
                    int(source_id),
                    symbol.upper(),
                    TradeMode(trade_mode).value,
                    Side(side).value,
                    AlertState.EXECUTED.value,
                    to_iso(since),
                ),
            ).fetchone()
        return _row_to_alert(row) if row else None

    def list_executed_incomplete(self, trade_mode: TradeMode) -> List[MonitorAlert]:
        """EXECUTED alerts with at least one target account not yet recorded as dispatched."""
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM monitor_alerts
                WHERE trade_mode = ? AND state = ?
                  AND EXISTS (
                      SELECT 1 FROM json_each(target_account_ids_json) AS t
                      WHERE json_type(dispatched_jobs_json, '$."' || t.value || '"') IS NULL
                  )
                ORDER BY id ASC
                """,
                (TradeMode(trade_mode).value, AlertState.EXECUTED.value),
            ).fetchall()
        return [_row_to_alert(r) for r in rows]

    def history(
        self,
        *,
        symbol: Optional[str] = None,
        state: Optional[AlertState] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        owner_id: Optional[int] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[MonitorAlert]:
        where: List[str] = []
        params: List[Any] = []

        if state is not None:
            where.append("state = ?")
            params.append(AlertState(state).value)
        else:
            where.append(f"state IN ({_placeholders(_TERMINAL)})")
            params.extend(_TERMINAL)
        if symbol:
            where.append("symbol = ?")
            params.append(symbol.upper())
        if start is not None:
            where.append("started_at >= ?")
            params.append(to_iso(start))
        if end is not None:
            where.append("started_at <= ?")
            params.append(to_iso(end))
        if owner_id is not None:
            where.append("owner_id = ?")
            params.append(int(owner_id))

        params.extend([clamp_limit(limit), max(0, int(offset))])
        with self.db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM monitor_alerts
                WHERE {" AND ".join(where)}
                ORDER BY started_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                params,
            ).fetchall()
        return [_row_to_alert(r) for r in rows]

    def list_executed(
        self,
        *,
        alert_ids: Optional[List[int]] = None,
        missing_metrics_only: bool = False,
        ended_since: Optional[datetime] = None,
    ) -> List[MonitorAlert]:
        where = ["state = ?"]
        params: List[Any] = [AlertState.EXECUTED.value]
        if alert_ids:
            where.append(f"id IN ({_placeholders(alert_ids)})")
            params.extend(int(i) for i in alert_ids)
        if missing_metrics_only:
            where.append(
                "(savings_pct IS NULL OR efficiency_pct IS NULL OR monitoring_duration_minutes IS NULL)"
            )
        if ended_since is not None:
            where.append("ended_at >= ?")
            params.append(to_iso(ended_since))

        with self.db.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM monitor_alerts WHERE {' AND '.join(where)} ORDER BY id ASC",
                params,
            ).fetchall()
        return [_row_to_alert(r) for r in rows]

    def count_open(self) -> int:
        with self.db.connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS cnt FROM monitor_alerts WHERE state IN ({_placeholders(_OPEN)})",
                _OPEN,
            ).fetchone()
        return int(row["cnt"] or 0)

    def terminal_history(self, alert_id: int) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM alert_history WHERE alert_id = ? ORDER BY id ASC",
                (int(alert_id),),
            ).fetchall()
        return [dict(r) for r in rows]

    # ---------- WRITE ----------
    def save_tick(self, updated: MonitorAlert, expected_version: int) -> MonitorAlert:
        """
        Persist one tick's outcome. Only applies while the row is still open and
        at `expected_version`; raises ConcurrentUpdateError otherwise.
        """
        with self.db.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE monitor_alerts SET
                    state = ?, sub_status = ?, anchor_price = ?, price_minimum = ?,
                    price_maximum = ?, current_price = ?, trigger_price = ?, execution_price = ?,
                    cycles_without_new_low = ?, cycles_without_new_high = ?,
                    exit_reason = ?, exit_details = ?, updated_at = ?, ended_at = ?,
                    version = version + 1
                WHERE id = ? AND version = ? AND state IN ({_placeholders(_OPEN)})
                """,
                (
                    updated.state.value,
                    updated.sub_status,
                    float(updated.anchor_price),
                    float(updated.price_minimum),
                    float(updated.price_maximum),
                    float(updated.current_price),
                    updated.trigger_price,
                    updated.execution_price,
                    int(updated.cycles_without_new_low),
                    int(updated.cycles_without_new_high),
                    updated.exit_reason,
                    updated.exit_details,
                    to_iso(updated.updated_at),
                    to_iso(updated.ended_at),
                    int(updated.id),
                    int(expected_version),
                    *_OPEN,
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrentUpdateError(
                    f"alert {updated.id} changed since version {expected_version}"
                )

            if updated.state in TERMINAL_STATES:
                self._append_history(conn, updated)

            row = conn.execute(
                "SELECT * FROM monitor_alerts WHERE id = ?", (int(updated.id),)
            ).fetchone()

        return _row_to_alert(row)

    def close_open(
        self,
        alert_id: int,
        *,
        state: AlertState,
        exit_reason: str,
        exit_details: Optional[str],
        now: datetime,
        conn: Optional[sqlite3.Connection] = None,
    ) -> MonitorAlert:
        """
        Terminal transition outside of a tick (manual cancel, replacement).
        Re-checks the state inside the write transaction; raises AlreadyTerminalError
        when the alert is no longer MONITORING/ARMED.
        """
        if conn is None:
            with self.db.transaction() as c:
                return self.close_open(
                    alert_id,
                    state=state,
                    exit_reason=exit_reason,
                    exit_details=exit_details,
                    now=now,
                    conn=c,
                )

        current = self.get(alert_id, conn=conn)
        if not current.is_open:
            raise AlreadyTerminalError(
                f"alert {alert_id} is already {current.state.value}",
                details={"state": current.state.value},
            )

        cur = conn.execute(
            f"""
            UPDATE monitor_alerts SET
                state = ?, exit_reason = ?, exit_details = ?, updated_at = ?, ended_at = ?,
                version = version + 1
            WHERE id = ? AND version = ? AND state IN ({_placeholders(_OPEN)})
            """,
            (
                AlertState(state).value,
                exit_reason,
                exit_details,
                to_iso(now),
                to_iso(now),
                int(alert_id),
                current.version,
                *_OPEN,
            ),
        )
        if cur.rowcount != 1:
            raise ConcurrentUpdateError(f"alert {alert_id} changed during close")

        closed = self.get(alert_id, conn=conn)
        self._append_history(conn, closed)
        return closed

    def record_dispatched_jobs(self, alert_id: int, jobs: Dict[int, str]) -> MonitorAlert:
        """
        Merge `{account_id: job_id}` into an EXECUTED alert. Accounts already
        recorded keep their first job id; `executed_job_ids` stays a set.
        """
        with self.db.transaction() as conn:
            alert = self.get(alert_id, conn=conn)
            if alert.state != AlertState.EXECUTED:
                raise AlreadyTerminalError(
                    f"alert {alert_id} is {alert.state.value}; job ids only attach to EXECUTED"
                )
            dispatched = dict(alert.dispatched_jobs)
            merged = list(alert.executed_job_ids)
            for account_id, jid in jobs.items():
                if int(account_id) in dispatched:
                    continue
                dispatched[int(account_id)] = str(jid)
                if str(jid) not in merged:
                    merged.append(str(jid))
            conn.execute(
                """
                UPDATE monitor_alerts SET executed_job_ids_json = ?, dispatched_jobs_json = ?
                WHERE id = ?
                """,
                (
                    json.dumps(merged),
                    json.dumps({str(k): v for k, v in sorted(dispatched.items())}),
                    int(alert_id),
                ),
            )
            row = conn.execute("SELECT * FROM monitor_alerts WHERE id = ?", (int(alert_id),)).fetchone()
        return _row_to_alert(row)

    def set_metrics(
        self,
        alert_id: int,
        *,
        savings_pct: float,
        efficiency_pct: float,
        monitoring_duration_minutes: int,
    ) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE monitor_alerts
                SET savings_pct = ?, efficiency_pct = ?, monitoring_duration_minutes = ?
                WHERE id = ? AND state = ?
                """,
                (
                    float(savings_pct),
                    float(efficiency_pct),
                    int(monitoring_duration_minutes),
                    int(alert_id),
                    AlertState.EXECUTED.value,
                ),
            )

    def _append_history(self, conn: sqlite3.Connection, alert: MonitorAlert) -> None:
        conn.execute(
            """
            INSERT INTO alert_history(
                alert_id, state, exit_reason, exit_details, symbol, side, trade_mode, owner_id,
                anchor_price, execution_price, started_at, ended_at, recorded_at
            )
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                alert.id,
                alert.state.value,
                alert.exit_reason,
                alert.exit_details,
                alert.symbol,
                alert.side.value,
                alert.trade_mode.value,
                alert.owner_id,
                alert.anchor_price,
                alert.execution_price,
                to_iso(alert.started_at),
                to_iso(alert.ended_at),
                to_iso(alert.updated_at),
            ),
        )
