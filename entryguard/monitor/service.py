# entryguard/monitor/service.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from entryguard.core.errors import (
    AlreadyTerminalError,
    CooldownActiveError,
    ForbiddenError,
    InvalidSignalError,
    MonitorDisabledError,
)
from entryguard.monitor import metrics
from entryguard.ops.locks import KeyedLocks
from entryguard.persistence.alert_store import AlertStore
from entryguard.persistence.audit import Audit
from entryguard.persistence.config_store import ConfigStore
from entryguard.persistence.db import utc_now
from entryguard.runner.models import (
    AlertState,
    ExitReason,
    MonitorAlert,
    Side,
    Signal,
    TradeMode,
)

log = logging.getLogger("entryguard.monitor")

SUMMARY_WINDOW_DAYS = 30


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class MonitorService:
    """
    Alert lifecycle outside of the scheduler: signal intake, manual cancel,
    reads, and derived metrics.
    """

    def __init__(
        self,
        store: AlertStore,
        configs: ConfigStore,
        audit: Optional[Audit] = None,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utc_now,
        lock_timeout_s: float = 2.0,
    ):
        self.store = store
        self.configs = configs
        self.audit = audit
        self.locks = locks or KeyedLocks()
        self.clock = clock
        self.lock_timeout_s = float(lock_timeout_s)

    # ------------------------------------------------------------------
    # Signal intake
    # ------------------------------------------------------------------
    def _validate_signal(self, signal: Signal) -> None:
        if not (signal.symbol or "").strip():
            raise InvalidSignalError("symbol is required")
        if signal.price is None or float(signal.price) <= 0:
            raise InvalidSignalError(f"price must be > 0 (got {signal.price})")
        if not signal.account_ids:
            raise InvalidSignalError("at least one target account is required")
        try:
            Side(signal.side)
            TradeMode(signal.trade_mode)
        except ValueError as e:
            raise InvalidSignalError(str(e)) from e

    def create_alert(self, signal: Signal) -> MonitorAlert:
        """
        Open a MONITORING alert for the signal.

        An open alert for the same (source, symbol, trade mode) is replaced only by a
        better price on the same side; otherwise the existing alert is returned.
        A recent execution on the same side rejects with COOLDOWN_ACTIVE.
        """
        self._validate_signal(signal)

        side = Side(signal.side)
        mode = TradeMode(signal.trade_mode)
        price = float(signal.price)
        symbol = signal.symbol.upper()

        cfg = self.configs.get(signal.owner_id)
        if not cfg.enabled:
            raise MonitorDisabledError(
                "delayed execution is disabled for this owner",
                details={"owner_id": signal.owner_id},
            )
        th = cfg.thresholds_for(side)
        now = self.clock()

        replaced: Optional[MonitorAlert] = None
        with self.store.db.transaction() as conn:
            existing = self.store.find_open(signal.source_id, symbol, mode, conn=conn)

            if existing is not None:
                if existing.side != side:
                    log.info(
                        "signal ignored: open %s alert %s for %s, new side %s",
                        existing.side.value, existing.id, symbol, side.value,
                    )
                    return existing

                if side == Side.BUY:
                    better = price <= existing.price_minimum
                    details = f"replaced by BUY signal at {price} (<= {existing.price_minimum})"
                else:
                    better = price >= existing.price_maximum
                    details = f"replaced by SELL signal at {price} (>= {existing.price_maximum})"

                if not better:
                    log.info("signal ignored: alert %s already has a better price", existing.id)
                    return existing

                replaced = self.store.close_open(
                    existing.id,
                    state=AlertState.CANCELLED,
                    exit_reason=ExitReason.REPLACED.value,
                    exit_details=details,
                    now=now,
                    conn=conn,
                )
            elif th.cooldown_after_execution_min > 0:
                since = now - timedelta(minutes=th.cooldown_after_execution_min)
                recent = self.store.find_recent_execution(
                    signal.source_id, symbol, mode, side, since, conn=conn
                )
                if recent is not None:
                    raise CooldownActiveError(
                        f"cooldown active for {symbol} {side.value}: "
                        f"alert {recent.id} executed within {th.cooldown_after_execution_min}min",
                        details={"alert_id": recent.id},
                    )

            created = self.store.create(signal, now, conn=conn)

        if replaced is not None:
            log.info("alert %s REPLACED by %s", replaced.id, created.id)
            self._audit("ALERT_REPLACED", replaced, {"replaced_by": created.id})

        log.info(
            "alert %s MONITORING %s %s %s @ %s accounts=%s",
            created.id, created.trade_mode.value, created.symbol,
            created.side.value, created.anchor_price, created.target_account_ids,
        )
        self._audit("ALERT_CREATED", created, {"price": price, "accounts": created.target_account_ids})
        return created

    # ------------------------------------------------------------------
    # Manual cancel
    # ------------------------------------------------------------------
    def cancel_alert(
        self, alert_id: int, reason: Optional[str] = None, owner_id: Optional[int] = None
    ) -> MonitorAlert:
        alert = self.get_alert(alert_id, owner_id=owner_id)
        if not alert.is_open:
            raise AlreadyTerminalError(
                f"alert {alert_id} is already {alert.state.value}",
                details={"state": alert.state.value},
            )

        # wait briefly for an in-flight tick; the store re-checks state either way
        with self.locks.guard(("alert", int(alert_id)), self.lock_timeout_s):
            closed = self.store.close_open(
                alert_id,
                state=AlertState.CANCELLED,
                exit_reason=ExitReason.MANUAL.value,
                exit_details=reason or "cancelled manually",
                now=self.clock(),
            )

        log.info("alert %s CANCELLED (MANUAL) %s", closed.id, reason or "")
        self._audit("ALERT_CANCELLED", closed, {"reason": reason, "by_owner": owner_id})
        return closed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_alert(self, alert_id: int, owner_id: Optional[int] = None) -> MonitorAlert:
        alert = self.store.get(alert_id)
        if owner_id is not None and alert.owner_id != int(owner_id):
            raise ForbiddenError(f"alert {alert_id} belongs to another owner")
        return alert

    def list_active(
        self, owner_id: Optional[int] = None, limit: Optional[int] = None, offset: int = 0
    ) -> List[MonitorAlert]:
        return self.store.list_active(owner_id=owner_id, limit=limit, offset=offset)

    def history(self, owner_id: Optional[int] = None, **filters: Any) -> List[MonitorAlert]:
        # a caller with an identity only ever sees its own alerts
        if owner_id is not None:
            filters["owner_id"] = int(owner_id)
        return self.store.history(**filters)

    def summary(self) -> Dict[str, Any]:
        since = self.clock() - timedelta(days=SUMMARY_WINDOW_DAYS)
        executed = self.store.list_executed(ended_since=since)

        n = len(executed)
        by_savings = sorted(executed, key=lambda a: a.savings_pct or 0.0, reverse=True)

        def _result(a: Optional[MonitorAlert]):
            if a is None:
                return None
            return {"alert_id": a.id, "symbol": a.symbol, "savings_pct": a.savings_pct or 0.0}

        return {
            "monitoring_count": self.store.count_open(),
            "executed_30d": n,
            "avg_savings_pct": _mean([a.savings_pct or 0.0 for a in executed]),
            "avg_efficiency_pct": _mean([a.efficiency_pct or 0.0 for a in executed]),
            "avg_monitoring_time_minutes": _mean(
                [a.monitoring_duration_minutes or 0 for a in executed]
            ),
            "best_result": _result(by_savings[0] if by_savings else None),
            "worst_result": _result(by_savings[-1] if by_savings else None),
        }

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def record_metrics(self, alert: MonitorAlert) -> Optional[metrics.AlertMetrics]:
        m = metrics.compute(alert)
        if m is None:
            return None
        self.store.set_metrics(
            alert.id,
            savings_pct=m.savings_pct,
            efficiency_pct=m.efficiency_pct,
            monitoring_duration_minutes=m.monitoring_duration_minutes,
        )
        return m

    def recompute_metrics(self, alert_ids: Optional[List[int]] = None) -> Dict[str, int]:
        """
        Recompute metrics for EXECUTED alerts: the given ids, or every one
        still missing a metric.
        """
        targets = self.store.list_executed(
            alert_ids=alert_ids, missing_metrics_only=not alert_ids
        )
        processed = 0
        errors = 0
        for alert in targets:
            try:
                if self.record_metrics(alert) is None:
                    errors += 1
                    log.warning("alert %s has no execution data, metrics skipped", alert.id)
                    continue
                processed += 1
            except Exception:
                errors += 1
                log.exception("metrics recompute failed for alert %s", alert.id)

        log.info("metrics recomputed processed=%s errors=%s", processed, errors)
        return {"processed": processed, "errors": errors}

    def _audit(self, event_type: str, alert: MonitorAlert, details: Dict[str, Any]) -> None:
        if self.audit:
            self.audit.event(
                event_type,
                alert_id=alert.id,
                symbol=alert.symbol,
                action=alert.state.value,
                details=details,
            )
