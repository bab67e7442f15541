# entryguard/monitor/metrics.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from entryguard.runner.models import MonitorAlert, Side


@dataclass(frozen=True)
class AlertMetrics:
    savings_pct: float
    efficiency_pct: float
    monitoring_duration_minutes: int


def savings_pct(side: Side, anchor: float, execution: float) -> float:
    """Positive when delayed execution beat the anchor (bought lower / sold higher)."""
    if anchor <= 0:
        return 0.0
    if Side(side) == Side.BUY:
        return (anchor - execution) / anchor * 100.0
    return (execution - anchor) / anchor * 100.0


def efficiency_pct(
    side: Side, anchor: float, execution: float, price_minimum: float, price_maximum: float
) -> float:
    """Share of the best achievable improvement that was captured, in [0, 100]."""
    if Side(side) == Side.BUY:
        best = anchor - price_minimum
        got = anchor - execution
    else:
        best = price_maximum - anchor
        got = execution - anchor

    if best <= 0:
        return 0.0
    return max(0.0, min(100.0, got / best * 100.0))


def compute(alert: MonitorAlert) -> Optional[AlertMetrics]:
    """None unless the alert has an execution price and both timestamps."""
    if alert.execution_price is None or alert.ended_at is None:
        return None

    minutes = round((alert.ended_at - alert.started_at).total_seconds() / 60.0)
    return AlertMetrics(
        savings_pct=round(savings_pct(alert.side, alert.anchor_price, alert.execution_price), 4),
        efficiency_pct=round(
            efficiency_pct(
                alert.side,
                alert.anchor_price,
                alert.execution_price,
                alert.price_minimum,
                alert.price_maximum,
            ),
            2,
        ),
        monitoring_duration_minutes=int(minutes),
    )
