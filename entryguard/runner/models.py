# entryguard/runner/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeMode(str, Enum):
    REAL = "REAL"
    SIMULATION = "SIMULATION"


class AlertState(str, Enum):
    MONITORING = "MONITORING"
    ARMED = "ARMED"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


OPEN_STATES = (AlertState.MONITORING, AlertState.ARMED)
TERMINAL_STATES = (AlertState.EXECUTED, AlertState.CANCELLED, AlertState.EXPIRED)


class SubStatus(str, Enum):
    # informational phase labels
    FALLING = "FALLING"
    RISING = "RISING"
    LATERAL = "LATERAL"
    ARMED = "ARMED"
    CONFIRMING = "CONFIRMING"


class ExitReason(str, Enum):
    MAX_ADVERSE_MOVE = "MAX_ADVERSE_MOVE"
    TIMEOUT = "TIMEOUT"
    MANUAL = "MANUAL"
    REPLACED = "REPLACED"


@dataclass
class Signal:
    """A validated trading signal handed over by the webhook layer."""

    source_id: int
    symbol: str
    side: Side
    trade_mode: TradeMode
    price: float
    account_ids: List[int]
    owner_id: Optional[int] = None
    venue: str = "BINANCE"


@dataclass
class MonitorAlert:
    id: int
    source_id: int
    account_id: Optional[int]
    symbol: str
    side: Side
    trade_mode: TradeMode
    venue: str
    owner_id: Optional[int]
    state: AlertState
    sub_status: str
    signal_price: float
    anchor_price: float
    price_minimum: float
    price_maximum: float
    current_price: float
    started_at: datetime
    updated_at: datetime
    trigger_price: Optional[float] = None
    execution_price: Optional[float] = None
    cycles_without_new_low: int = 0
    cycles_without_new_high: int = 0
    exit_reason: Optional[str] = None
    exit_details: Optional[str] = None
    target_account_ids: List[int] = field(default_factory=list)
    executed_job_ids: List[str] = field(default_factory=list)
    # account_id -> job_id, recorded as each account is dispatched
    dispatched_jobs: Dict[int, str] = field(default_factory=dict)
    ended_at: Optional[datetime] = None
    savings_pct: Optional[float] = None
    efficiency_pct: Optional[float] = None
    monitoring_duration_minutes: Optional[int] = None
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.state in OPEN_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def dispatch_complete(self) -> bool:
        return all(int(a) in self.dispatched_jobs for a in self.target_account_ids)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "account_id": self.account_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "trade_mode": self.trade_mode.value,
            "venue": self.venue,
            "owner_id": self.owner_id,
            "state": self.state.value,
            "sub_status": self.sub_status,
            "signal_price": self.signal_price,
            "anchor_price": self.anchor_price,
            "price_minimum": self.price_minimum,
            "price_maximum": self.price_maximum,
            "current_price": self.current_price,
            "trigger_price": self.trigger_price,
            "execution_price": self.execution_price,
            "cycles_without_new_low": self.cycles_without_new_low,
            "cycles_without_new_high": self.cycles_without_new_high,
            "exit_reason": self.exit_reason,
            "exit_details": self.exit_details,
            "target_account_ids": list(self.target_account_ids),
            "executed_job_ids": list(self.executed_job_ids),
            "dispatched_jobs": {str(k): v for k, v in self.dispatched_jobs.items()},
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "savings_pct": self.savings_pct,
            "efficiency_pct": self.efficiency_pct,
            "monitoring_duration_minutes": self.monitoring_duration_minutes,
            "version": self.version,
        }
