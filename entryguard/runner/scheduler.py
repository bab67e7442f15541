# entryguard/runner/scheduler.py
from __future__ import annotations

import contextvars
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from entryguard.core.errors import ConcurrentUpdateError, TransientFetchError
from entryguard.execution.dispatcher import ExecutionDispatcher
from entryguard.execution.job_queue import SqliteJobQueue
from entryguard.exchange.price_gateway import PriceGateway
from entryguard.monitor.service import MonitorService
from entryguard.ops.context import tick_scope
from entryguard.ops.locks import KeyedLocks
from entryguard.ops.tick_tracker import TickTracker
from entryguard.persistence.alert_store import AlertStore
from entryguard.persistence.audit import Audit
from entryguard.persistence.config_store import ConfigStore
from entryguard.persistence.db import utc_now
from entryguard.policy.trigger_detector import (
    Decision,
    apply_decision,
    decide,
    expire_without_sample,
    state_from_alert,
)
from entryguard.runner.models import AlertState, MonitorAlert, TradeMode

log = logging.getLogger("entryguard.scheduler")

# per-alert outcomes
SKIPPED = "SKIPPED"
ERROR = "ERROR"
UNCHANGED = "UNCHANGED"


@dataclass
class TickSummary:
    tick_id: Optional[str]
    trade_mode: str
    status: str
    checked: int = 0
    executed: int = 0
    cancelled: int = 0
    expired: int = 0
    skipped: int = 0
    errors: int = 0
    redispatched: int = 0
    purged: int = 0
    duration_ms: int = 0
    error: Optional[str] = None

    def counters(self) -> Dict[str, int]:
        return {
            "checked": self.checked,
            "executed": self.executed,
            "cancelled": self.cancelled,
            "expired": self.expired,
            "skipped": self.skipped,
            "errors": self.errors,
        }

    def to_dict(self) -> dict:
        return asdict(self)


class MonitorScheduler:
    """
    Drives one tick per trade mode: snapshot the open alerts, then fan out over
    a bounded worker pool where each worker owns one alert end to end
    (fetch -> decide -> persist -> dispatch).

    Modes have separate pools so a slow REAL tick never starves SIMULATION.
    """

    def __init__(
        self,
        store: AlertStore,
        configs: ConfigStore,
        prices: PriceGateway,
        dispatcher: ExecutionDispatcher,
        service: MonitorService,
        tracker: TickTracker,
        audit: Optional[Audit] = None,
        queue: Optional[SqliteJobQueue] = None,
        locks: Optional[KeyedLocks] = None,
        workers: Optional[Dict[str, int]] = None,
        retention_hours: int = 72,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.configs = configs
        self.prices = prices
        self.dispatcher = dispatcher
        self.service = service
        self.tracker = tracker
        self.audit = audit
        self.queue = queue
        self.locks = locks or service.locks
        self.workers = {m.value: 4 for m in TradeMode}
        self.workers.update({k.upper(): int(v) for k, v in (workers or {}).items()})
        self.retention_hours = int(retention_hours)
        self.clock = clock

        self._pools: Dict[str, ThreadPoolExecutor] = {}
        self._pools_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Pools
    # ------------------------------------------------------------------
    def _pool(self, mode: TradeMode) -> ThreadPoolExecutor:
        with self._pools_lock:
            pool = self._pools.get(mode.value)
            if pool is None:
                pool = ThreadPoolExecutor(
                    max_workers=max(1, self.workers.get(mode.value, 4)),
                    thread_name_prefix=f"tick-{mode.value.lower()}",
                )
                self._pools[mode.value] = pool
            return pool

    def shutdown(self, wait: bool = True) -> None:
        with self._pools_lock:
            pools = list(self._pools.values())
            self._pools.clear()
        for pool in pools:
            pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def run_tick(self, trade_mode: TradeMode) -> TickSummary:
        mode = TradeMode(trade_mode)

        # overlapping ticks of the same mode are skipped, not queued
        with self.locks.guard(("tick", mode.value)) as acquired:
            if not acquired:
                log.warning("tick %s skipped: previous tick still running", mode.value)
                return TickSummary(tick_id=None, trade_mode=mode.value, status="SKIPPED")
            return self._run_tick(mode)

    def _run_tick(self, mode: TradeMode) -> TickSummary:
        tick_id = self.tracker.start(mode.value)
        with tick_scope(tick_id, mode.value):
            summary = self._fan_out(mode, tick_id)

        log.info(
            "tick %s done checked=%s executed=%s cancelled=%s expired=%s errors=%s skipped=%s "
            "redispatched=%s duration_ms=%s",
            mode.value,
            summary.checked,
            summary.executed,
            summary.cancelled,
            summary.expired,
            summary.errors,
            summary.skipped,
            summary.redispatched,
            summary.duration_ms,
        )
        return summary

    def _fan_out(self, mode: TradeMode, tick_id: str) -> TickSummary:
        summary = TickSummary(tick_id=tick_id, trade_mode=mode.value, status="RUNNING")
        t0 = time.monotonic()

        try:
            summary.redispatched = self._redispatch(mode)

            alerts = self.store.list_open(mode)
            summary.checked = len(alerts)

            if alerts:
                pool = self._pool(mode)
                futures = {
                    # worker threads do not inherit context vars on their own
                    pool.submit(contextvars.copy_context().run, self._tick_alert, a): a
                    for a in alerts
                }
                for fut in as_completed(futures):
                    self._count(summary, fut.result())

            summary.purged = self._purge()
            summary.status = "SUCCESS"

        except Exception as e:
            summary.status = "FAILED"
            summary.error = str(e)
            log.exception("tick %s %s failed", mode.value, tick_id)

        finally:
            summary.duration_ms = int((time.monotonic() - t0) * 1000)
            self.tracker.finish(
                tick_id,
                summary.counters(),
                summary.duration_ms,
                status=summary.status,
                error=summary.error,
            )
        return summary

    @staticmethod
    def _count(summary: TickSummary, outcome: str) -> None:
        if outcome == AlertState.EXECUTED.value:
            summary.executed += 1
        elif outcome == AlertState.CANCELLED.value:
            summary.cancelled += 1
        elif outcome == AlertState.EXPIRED.value:
            summary.expired += 1
        elif outcome == SKIPPED:
            summary.skipped += 1
        elif outcome == ERROR:
            summary.errors += 1

    def _redispatch(self, mode: TradeMode) -> int:
        try:
            return len(self.dispatcher.redispatch_incomplete(mode))
        except Exception:
            # open alerts still get their tick
            log.exception("re-dispatch for %s failed", mode.value)
            return 0

    def _purge(self) -> int:
        if self.queue is None:
            return 0
        cutoff = self.clock() - timedelta(hours=self.retention_hours)
        return self.queue.purge_finished(cutoff)

    # ------------------------------------------------------------------
    # Per-alert work
    # ------------------------------------------------------------------
    def _tick_alert(self, alert: MonitorAlert) -> str:
        """
        Never raises: every failure is contained to this alert and reported as
        an outcome so the other alerts of the tick keep going.
        """
        with self.locks.guard(("alert", alert.id)) as acquired:
            if not acquired:
                log.info("alert %s busy, skipped this tick", alert.id)
                return SKIPPED
            try:
                return self._process(alert)
            except Exception as e:
                log.exception("alert %s %s tick failed", alert.id, alert.symbol)
                self._audit("ERROR", alert, "TICK_FAILED", {"error": str(e)})
                return ERROR

    def _process(self, alert: MonitorAlert) -> str:
        th = self.configs.get(alert.owner_id).thresholds_for(alert.side)

        try:
            quote = self.prices.get_price(alert.venue, alert.symbol)
        except TransientFetchError as e:
            # counters and extremes stay untouched; retried next cadence
            log.warning("alert %s price fetch failed: %s", alert.id, e)
            self._audit("PRICE", alert, "FETCH_FAILED", {"error": str(e)})
            return self._expire_unpriced(alert, th)

        if quote is None:
            log.warning("alert %s no price data for %s on %s", alert.id, alert.symbol, alert.venue)
            return self._expire_unpriced(alert, th)

        now = self.clock()
        decision = decide(state_from_alert(alert), quote.last, now, th)
        saved = self._persist(alert, decision, now, quote.last)
        if saved is None:
            return SKIPPED

        if not decision.fire:
            return saved.state.value if saved.is_terminal else UNCHANGED

        # the EXECUTED write above is final; dispatch problems are retried on later ticks
        try:
            self.dispatcher.dispatch(saved)
        except Exception:
            log.exception("alert %s dispatch failed, left for re-dispatch", saved.id)
        self.service.record_metrics(saved)
        return AlertState.EXECUTED.value

    def _expire_unpriced(self, alert: MonitorAlert, th) -> str:
        # an unpriced symbol must still run out its monitoring window
        now = self.clock()
        decision = expire_without_sample(state_from_alert(alert), now, th)
        if decision is None:
            return SKIPPED
        saved = self._persist(alert, decision, now, None)
        if saved is None:
            return SKIPPED
        return saved.state.value

    def _persist(
        self,
        alert: MonitorAlert,
        decision: Decision,
        now: datetime,
        price: Optional[float],
    ) -> Optional[MonitorAlert]:
        updated = apply_decision(alert, decision, now)
        try:
            saved = self.store.save_tick(updated, expected_version=alert.version)
        except ConcurrentUpdateError:
            # a manual cancel (or another writer) got there first
            log.info("alert %s changed during tick, decision dropped", alert.id)
            return None

        if saved.state != alert.state:
            log.info(
                "alert %s %s %s -> %s (%s) price=%s",
                saved.id,
                saved.symbol,
                alert.state.value,
                saved.state.value,
                decision.reason,
                price,
            )
            self._audit(
                "TRANSITION",
                saved,
                saved.state.value,
                {
                    "from": alert.state.value,
                    "reason": decision.reason,
                    "price": price,
                    "exit_reason": saved.exit_reason,
                    "exit_details": saved.exit_details,
                },
            )
        else:
            log.debug("alert %s %s %s price=%s", saved.id, saved.sub_status, decision.reason, price)
        return saved

    def _audit(self, event_type: str, alert: MonitorAlert, action: str, details: dict) -> None:
        if self.audit:
            self.audit.event(
                event_type,
                alert_id=alert.id,
                symbol=alert.symbol,
                action=action,
                details=details,
            )
