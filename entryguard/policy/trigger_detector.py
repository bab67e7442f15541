# entryguard/policy/trigger_detector.py
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Tuple

from entryguard.policy.monitor_config import Thresholds
from entryguard.runner.models import AlertState, ExitReason, MonitorAlert, SubStatus

# float slack for band/threshold edges (100.3 vs anchor 100 is "0.30000000000000426%")
_EPS = 1e-9


@dataclass(frozen=True)
class DetectorState:
    # running state of one alert, as persisted
    state: AlertState
    sub_status: str
    anchor_price: float
    price_minimum: float
    price_maximum: float
    current_price: float
    trigger_price: Optional[float]
    cycles_without_new_low: int
    cycles_without_new_high: int
    started_at: datetime


@dataclass(frozen=True)
class Decision:
    state: AlertState
    sub_status: str
    anchor_price: float
    price_minimum: float
    price_maximum: float
    current_price: float
    trigger_price: Optional[float]
    cycles_without_new_low: int
    cycles_without_new_high: int
    fire: bool
    execution_price: Optional[float]
    exit_reason: Optional[str]
    exit_details: Optional[str]
    reason: str

    @property
    def exit(self) -> Optional[Tuple[str, str]]:
        if self.exit_reason is None:
            return None
        return self.exit_reason, self.exit_details or ""

    @property
    def terminal(self) -> bool:
        return self.state in (AlertState.EXECUTED, AlertState.CANCELLED, AlertState.EXPIRED)


def state_from_alert(alert: MonitorAlert) -> DetectorState:
    return DetectorState(
        state=alert.state,
        sub_status=alert.sub_status,
        anchor_price=alert.anchor_price,
        price_minimum=alert.price_minimum,
        price_maximum=alert.price_maximum,
        current_price=alert.current_price,
        trigger_price=alert.trigger_price,
        cycles_without_new_low=alert.cycles_without_new_low,
        cycles_without_new_high=alert.cycles_without_new_high,
        started_at=alert.started_at,
    )


def apply_decision(alert: MonitorAlert, d: Decision, now: datetime) -> MonitorAlert:
    """Return a copy of `alert` carrying the decision's fields."""
    return replace(
        alert,
        state=d.state,
        sub_status=d.sub_status,
        anchor_price=d.anchor_price,
        price_minimum=d.price_minimum,
        price_maximum=d.price_maximum,
        current_price=d.current_price,
        trigger_price=d.trigger_price,
        cycles_without_new_low=d.cycles_without_new_low,
        cycles_without_new_high=d.cycles_without_new_high,
        execution_price=d.execution_price if d.fire else alert.execution_price,
        exit_reason=d.exit_reason,
        exit_details=d.exit_details,
        updated_at=now,
        ended_at=now if d.terminal else None,
    )


def pct_move(price: float, reference: float) -> float:
    return (price - reference) / reference * 100.0


def _phase_counter(st: DetectorState, th: Thresholds) -> int:
    # BUY drives cycles_without_new_low, SELL cycles_without_new_high
    return st.cycles_without_new_low if th.sign > 0 else st.cycles_without_new_high


def _counters(th: Thresholds, phase: int, other: int) -> Tuple[int, int]:
    # (cycles_without_new_low, cycles_without_new_high)
    if th.sign > 0:
        return phase, other
    return other, phase


def _elapsed_min(st: DetectorState, now: datetime) -> float:
    return (now - st.started_at).total_seconds() / 60.0


def _timeout_details(elapsed_min: float, th: Thresholds) -> str:
    return f"monitoring time {elapsed_min:.1f}min >= {th.max_monitoring_time_min}min"


def expire_without_sample(st: DetectorState, now: datetime, th: Thresholds) -> Optional[Decision]:
    """
    Timeout check for a cycle that produced no price. Returns an EXPIRED
    decision once the monitoring window has run out, else None.

    Prices, extremes and counters are carried over as they are: without a
    sample nothing else about the alert may move.
    """
    if st.state not in (AlertState.MONITORING, AlertState.ARMED):
        return None
    elapsed_min = _elapsed_min(st, now)
    if elapsed_min < th.max_monitoring_time_min:
        return None
    return Decision(
        state=AlertState.EXPIRED,
        sub_status=st.sub_status,
        anchor_price=st.anchor_price,
        price_minimum=st.price_minimum,
        price_maximum=st.price_maximum,
        current_price=st.current_price,
        trigger_price=st.trigger_price,
        cycles_without_new_low=st.cycles_without_new_low,
        cycles_without_new_high=st.cycles_without_new_high,
        fire=False,
        execution_price=None,
        exit_reason=ExitReason.TIMEOUT.value,
        exit_details=f"{_timeout_details(elapsed_min, th)} (no price data)",
        reason="timeout",
    )


def decide(st: DetectorState, sample: float, now: datetime, th: Thresholds) -> Decision:
    """
    One sample through the consolidation-then-breakout state machine.

    BUY (sign=+1) waits for a drop that consolidates, then a rise off the low.
    SELL (sign=-1) waits for a rise that consolidates, then a fall off the high.

    Order of evaluation:
      1. running extremes
      2. safety bounds (adverse move from anchor, then monitoring timeout)
      3. lateral phase (MONITORING) or breakout phase (ARMED)

    A terminal input state is returned unchanged. "No trigger yet" is a normal
    outcome (fire=False, exit=None), never an exception.
    """
    if st.state not in (AlertState.MONITORING, AlertState.ARMED):
        low, high = st.cycles_without_new_low, st.cycles_without_new_high
        return Decision(
            state=st.state,
            sub_status=st.sub_status,
            anchor_price=st.anchor_price,
            price_minimum=st.price_minimum,
            price_maximum=st.price_maximum,
            current_price=st.current_price,
            trigger_price=st.trigger_price,
            cycles_without_new_low=low,
            cycles_without_new_high=high,
            fire=False,
            execution_price=None,
            exit_reason=None,
            exit_details=None,
            reason="already_terminal",
        )

    anchor = st.anchor_price
    new_min = min(st.price_minimum, sample)
    new_max = max(st.price_maximum, sample)

    # informational counter: samples since the last extreme on the non-authoritative side
    if th.sign > 0:
        other = 0 if sample > st.price_maximum else st.cycles_without_new_high + 1
    else:
        other = 0 if sample < st.price_minimum else st.cycles_without_new_low + 1
    phase = _phase_counter(st, th)

    def _result(state, sub_status, *, anchor_price=anchor, lo=new_min, hi=new_max,
                trigger=st.trigger_price, counter=phase, fire=False,
                exit_reason=None, exit_details=None, reason=""):
        low, high = _counters(th, counter, other)
        return Decision(
            state=state,
            sub_status=sub_status,
            anchor_price=anchor_price,
            price_minimum=lo,
            price_maximum=hi,
            current_price=sample,
            trigger_price=trigger,
            cycles_without_new_low=low,
            cycles_without_new_high=high,
            fire=fire,
            execution_price=sample if fire else None,
            exit_reason=exit_reason,
            exit_details=exit_details,
            reason=reason,
        )

    # --- safety: adverse move wins over everything else on this sample ---
    adverse_pct = -th.sign * pct_move(sample, anchor)
    if adverse_pct > th.max_adverse_pct + _EPS:
        return _result(
            AlertState.CANCELLED,
            st.sub_status,
            exit_reason=ExitReason.MAX_ADVERSE_MOVE.value,
            exit_details=(
                f"adverse move {adverse_pct:.2f}% > {th.max_adverse_pct}% "
                f"from anchor {anchor}"
            ),
            reason="max_adverse_move",
        )

    elapsed_min = _elapsed_min(st, now)
    if elapsed_min >= th.max_monitoring_time_min:
        return _result(
            AlertState.EXPIRED,
            st.sub_status,
            exit_reason=ExitReason.TIMEOUT.value,
            exit_details=_timeout_details(elapsed_min, th),
            reason="timeout",
        )

    # --- lateral phase ---
    if st.state == AlertState.MONITORING:
        deviation = abs(pct_move(sample, anchor))
        if deviation <= th.tolerance_pct + _EPS:
            counter = phase + 1
            if counter >= th.lateral_cycles_min:
                # band extreme in the adverse direction becomes the breakout reference
                trigger = new_min if th.sign > 0 else new_max
                return _result(
                    AlertState.ARMED,
                    SubStatus.ARMED.value,
                    trigger=trigger,
                    counter=0,
                    reason="lateral_confirmed",
                )
            return _result(
                AlertState.MONITORING,
                SubStatus.LATERAL.value,
                counter=counter,
                reason="lateral_in_band",
            )

        # band breached before confirmation: re-center on this sample
        trend = SubStatus.RISING if sample > anchor else SubStatus.FALLING
        return _result(
            AlertState.MONITORING,
            trend.value,
            anchor_price=sample,
            lo=sample,
            hi=sample,
            counter=0,
            reason="lateral_reset",
        )

    # --- breakout phase (ARMED) ---
    trigger = st.trigger_price if st.trigger_price is not None else anchor
    # a deeper low (BUY) / higher high (SELL) moves the breakout reference with it
    if th.sign > 0 and sample < trigger:
        trigger = sample
    elif th.sign < 0 and sample > trigger:
        trigger = sample

    favorable_pct = th.sign * pct_move(sample, trigger)
    if favorable_pct >= th.trigger_pct - _EPS:
        counter = phase + 1
        if counter >= th.trigger_cycles_min:
            return _result(
                AlertState.EXECUTED,
                SubStatus.CONFIRMING.value,
                trigger=trigger,
                counter=counter,
                fire=True,
                reason="breakout_confirmed",
            )
        return _result(
            AlertState.ARMED,
            SubStatus.CONFIRMING.value,
            trigger=trigger,
            counter=counter,
            reason="breakout_confirming",
        )

    return _result(
        AlertState.ARMED,
        SubStatus.ARMED.value,
        trigger=trigger,
        counter=0,
        reason="breakout_not_confirmed",
    )
