# entryguard/execution/job_queue.py
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from entryguard.persistence.db import DB, to_iso, utc_now_iso
from entryguard.runner.models import TradeMode

log = logging.getLogger("entryguard.queue")

QUEUE_REAL = "trade-execution-real"
QUEUE_SIMULATION = "trade-execution-sim"


def queue_name_for(trade_mode: TradeMode) -> str:
    return QUEUE_REAL if TradeMode(trade_mode) == TradeMode.REAL else QUEUE_SIMULATION


class JobStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


FINISHED = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


@dataclass(frozen=True)
class Job:
    job_id: str
    job_key: str
    queue_name: str
    alert_id: Optional[int]
    account_id: Optional[int]
    payload: Dict[str, Any]
    status: str
    created_at: str
    created: bool = False  # True only for the call that inserted the row


class JobQueue(Protocol):
    def submit(self, queue_name: str, job_key: str, payload: Dict[str, Any]) -> Job: ...

    def get_by_key(self, job_key: str) -> Optional[Job]: ...


def _row_to_job(r, created: bool = False) -> Job:
    return Job(
        job_id=str(r["id"]),
        job_key=r["job_key"],
        queue_name=r["queue_name"],
        alert_id=r["alert_id"],
        account_id=r["account_id"],
        payload=json.loads(r["payload_json"] or "{}"),
        status=r["status"],
        created_at=r["created_at"],
        created=created,
    )


class SqliteJobQueue:
    """
    Execution queue backed by the trade_jobs table.

    `job_key` is UNIQUE: the existence check and the insert are one statement,
    so concurrent submitters of the same key all get the same job back and
    only one of them sees `created=True`.
    """

    def __init__(self, db: DB):
        self.db = db

    def submit(self, queue_name: str, job_key: str, payload: Dict[str, Any]) -> Job:
        now = utc_now_iso()
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO trade_jobs(
                    job_key, queue_name, alert_id, account_id, payload_json,
                    status, created_at, updated_at
                )
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (
                    job_key,
                    queue_name,
                    payload.get("alert_id"),
                    payload.get("account_id"),
                    json.dumps(payload, ensure_ascii=False, default=str),
                    JobStatus.PENDING.value,
                    now,
                    now,
                ),
            )
            created = cur.rowcount == 1
            row = conn.execute(
                "SELECT * FROM trade_jobs WHERE job_key = ?", (job_key,)
            ).fetchone()

        if created:
            log.info("job queued queue=%s key=%s id=%s", queue_name, job_key, row["id"])
        else:
            log.info("job already present key=%s id=%s status=%s", job_key, row["id"], row["status"])
        return _row_to_job(row, created=created)

    def get_by_key(self, job_key: str) -> Optional[Job]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM trade_jobs WHERE job_key = ?", (job_key,)
            ).fetchone()
        return _row_to_job(row) if row else None

    def list_for_alert(self, alert_id: int) -> List[Job]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trade_jobs WHERE alert_id = ? ORDER BY id ASC", (int(alert_id),)
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def set_status(self, job_id: str, status: JobStatus) -> None:
        now = utc_now_iso()
        finished_at = now if JobStatus(status).value in FINISHED else None
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE trade_jobs SET status = ?, updated_at = ?, finished_at = COALESCE(?, finished_at)
                WHERE id = ?
                """,
                (JobStatus(status).value, now, finished_at, int(job_id)),
            )

    def purge_finished(self, older_than: datetime) -> int:
        """
        Drop COMPLETED/FAILED jobs finished before `older_than`. Returns rows removed.

        Jobs of an EXECUTED alert that still has undispatched accounts are kept
        until the alert is complete.
        """
        with self.db.connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM trade_jobs
                WHERE status IN (?, ?) AND finished_at IS NOT NULL AND finished_at < ?
                  AND (alert_id IS NULL OR alert_id NOT IN (
                      SELECT a.id FROM monitor_alerts AS a
                      WHERE a.state = 'EXECUTED'
                        AND EXISTS (
                            SELECT 1 FROM json_each(a.target_account_ids_json) AS t
                            WHERE json_type(a.dispatched_jobs_json, '$."' || t.value || '"') IS NULL
                        )
                  ))
                """,
                (*FINISHED, to_iso(older_than)),
            )
            removed = cur.rowcount
        if removed:
            log.info("purged %s finished jobs older than %s", removed, to_iso(older_than))
        return removed

    def counts(self) -> Dict[str, int]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT queue_name, status, COUNT(*) AS cnt FROM trade_jobs GROUP BY queue_name, status"
            ).fetchall()
        return {f"{r['queue_name']}:{r['status']}": int(r["cnt"]) for r in rows}
