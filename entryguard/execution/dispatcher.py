# entryguard/execution/dispatcher.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TypeVar

from entryguard.core.errors import QueueUnavailableError
from entryguard.execution.job_queue import Job, JobQueue, queue_name_for
from entryguard.persistence.alert_store import AlertStore
from entryguard.persistence.audit import Audit
from entryguard.runner.models import AlertState, MonitorAlert, TradeMode

log = logging.getLogger("entryguard.dispatcher")

T = TypeVar("T")


def job_key(alert_id: int, account_id: int) -> str:
    # deterministic per (alert, account); the queue treats it as unique
    return f"trade-job-{int(alert_id)}-{int(account_id)}"


@dataclass
class DispatchResult:
    alert: MonitorAlert
    submitted: List[str] = field(default_factory=list)  # job ids created by this call
    existing: List[str] = field(default_factory=list)  # job ids that were already there
    failed_accounts: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_accounts


class ExecutionDispatcher:
    """
    Turns one EXECUTED alert into one job per bound account.

    The trigger decision is already persisted when this runs; a queue failure
    only leaves accounts missing from `dispatched_jobs` for a later retry.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: AlertStore,
        audit: Optional[Audit] = None,
        max_retries: int = 3,
        backoff_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.queue = queue
        self.store = store
        self.audit = audit
        self.max_retries = int(max_retries)
        self.backoff_s = float(backoff_s)
        self._sleep = sleep

    def _payload(self, alert: MonitorAlert, account_id: int) -> Dict[str, Any]:
        return {
            "alert_id": alert.id,
            "account_id": int(account_id),
            "source_id": alert.source_id,
            "owner_id": alert.owner_id,
            "symbol": alert.symbol,
            "side": alert.side.value,
            "trade_mode": alert.trade_mode.value,
            "venue": alert.venue,
            "execution_price": alert.execution_price,
            "anchor_price": alert.anchor_price,
            "triggered_at": alert.ended_at.isoformat() if alert.ended_at else None,
        }

    def _with_retry(self, op: str, queue_name: str, key: str, fn: Callable[[], T]) -> T:
        last_err: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                return fn()
            except Exception as e:
                last_err = e
                log.warning(
                    "queue %s failed key=%s attempt=%s/%s: %s",
                    op,
                    key,
                    attempt + 1,
                    self.max_retries + 1,
                    e,
                )
                if attempt < self.max_retries:
                    self._sleep(min(self.backoff_s * (2**attempt), 8.0))

        raise QueueUnavailableError(
            f"queue {queue_name} unavailable for {key} ({op}): {last_err}",
            details={"job_key": key, "queue": queue_name, "op": op},
        ) from last_err

    def _job_for(self, alert: MonitorAlert, account_id: int, queue_name: str) -> Job:
        key = job_key(alert.id, account_id)
        found = self._with_retry("lookup", queue_name, key, lambda: self.queue.get_by_key(key))
        if found is not None:
            return found
        payload = self._payload(alert, account_id)
        return self._with_retry(
            "submit", queue_name, key, lambda: self.queue.submit(queue_name, key, payload)
        )

    def dispatch(self, alert: MonitorAlert) -> DispatchResult:
        if alert.state != AlertState.EXECUTED:
            raise ValueError(f"alert {alert.id} is {alert.state.value}, not EXECUTED")

        accounts = list(alert.target_account_ids)
        if not accounts and alert.account_id is not None:
            accounts = [int(alert.account_id)]

        # the caller's copy may predate an earlier partial dispatch
        current = self.store.get(alert.id)
        recorded = current.dispatched_jobs

        queue_name = queue_name_for(alert.trade_mode)
        result = DispatchResult(alert=current)
        new_jobs: Dict[int, str] = {}

        for account_id in accounts:
            account_id = int(account_id)
            if account_id in recorded:
                # never re-ask the queue: its row may already be purged
                result.existing.append(recorded[account_id])
                continue

            try:
                job = self._job_for(current, account_id, queue_name)
            except QueueUnavailableError as e:
                log.error("dispatch deferred alert=%s account=%s: %s", alert.id, account_id, e)
                result.failed_accounts.append(account_id)
                continue

            # a concurrent dispatcher may have inserted the same key first
            (result.submitted if job.created else result.existing).append(job.job_id)
            new_jobs[account_id] = job.job_id

        if new_jobs:
            result.alert = self.store.record_dispatched_jobs(alert.id, new_jobs)

        if self.audit:
            self.audit.event(
                "DISPATCH",
                alert_id=alert.id,
                symbol=alert.symbol,
                action="COMPLETE" if result.complete else "PARTIAL",
                details={
                    "queue": queue_name,
                    "submitted": result.submitted,
                    "existing": result.existing,
                    "failed_accounts": result.failed_accounts,
                },
            )

        log.info(
            "dispatch alert=%s %s queue=%s submitted=%s existing=%s failed=%s",
            alert.id,
            alert.symbol,
            queue_name,
            len(result.submitted),
            len(result.existing),
            len(result.failed_accounts),
        )
        return result

    def redispatch_incomplete(self, trade_mode: TradeMode) -> List[DispatchResult]:
        """Retry EXECUTED alerts of one mode whose job ids are still incomplete."""
        out: List[DispatchResult] = []
        for alert in self.store.list_executed_incomplete(trade_mode):
            log.info("re-dispatching alert=%s (%s/%s accounts)", alert.id,
                     len(alert.dispatched_jobs), len(alert.target_account_ids))
            try:
                out.append(self.dispatch(alert))
            except Exception:
                # one broken alert must not hold back the rest
                log.exception("re-dispatch of alert=%s failed", alert.id)
        return out
