# entryguard/policy/monitor_config.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from pydantic import BaseModel, ValidationError

from entryguard.core.errors import InvalidConfigError
from entryguard.runner.models import Side


@dataclass(frozen=True)
class Thresholds:
    """
    Side-specific threshold tuple consumed by the trigger detector.
    BUY and SELL differ only in which config fields fill it and in `sign`.
    """

    sign: int  # +1: favorable move is up (BUY), -1: favorable move is down (SELL)
    tolerance_pct: float
    lateral_cycles_min: int
    trigger_pct: float
    trigger_cycles_min: int
    max_adverse_pct: float
    max_monitoring_time_min: int
    cooldown_after_execution_min: int


class MonitorConfig(BaseModel):
    """Threshold set for one scope (global default or one owner)."""

    enabled: bool = True
    check_interval_sec: int = 30

    # BUY
    lateral_tolerance_pct: float = 0.3
    lateral_cycles_min: int = 4
    rise_trigger_pct: float = 0.75
    rise_cycles_min: int = 2
    max_fall_pct: float = 6.0
    max_monitoring_time_min: int = 60
    cooldown_after_execution_min: int = 30

    # SELL
    sell_lateral_tolerance_pct: float = 0.3
    sell_lateral_cycles_min: int = 4
    sell_fall_trigger_pct: float = 0.5
    sell_fall_cycles_min: int = 2
    sell_max_rise_pct: float = 6.0
    sell_max_monitoring_time_min: int = 60
    sell_cooldown_after_execution_min: int = 30

    def thresholds_for(self, side: Side) -> Thresholds:
        if Side(side) == Side.SELL:
            return Thresholds(
                sign=-1,
                tolerance_pct=self.sell_lateral_tolerance_pct,
                lateral_cycles_min=self.sell_lateral_cycles_min,
                trigger_pct=self.sell_fall_trigger_pct,
                trigger_cycles_min=self.sell_fall_cycles_min,
                max_adverse_pct=self.sell_max_rise_pct,
                max_monitoring_time_min=self.sell_max_monitoring_time_min,
                cooldown_after_execution_min=self.sell_cooldown_after_execution_min,
            )
        return Thresholds(
            sign=1,
            tolerance_pct=self.lateral_tolerance_pct,
            lateral_cycles_min=self.lateral_cycles_min,
            trigger_pct=self.rise_trigger_pct,
            trigger_cycles_min=self.rise_cycles_min,
            max_adverse_pct=self.max_fall_pct,
            max_monitoring_time_min=self.max_monitoring_time_min,
            cooldown_after_execution_min=self.cooldown_after_execution_min,
        )

    def validate_for_write(self) -> None:
        """
        Reject invalid values with the offending field named.
        Values are never clamped; the first problem found is raised.
        """
        if self.check_interval_sec < 1:
            raise InvalidConfigError("check_interval_sec", "must be >= 1")

        for prefix, trigger_field, adverse_field in (
            ("", "rise_trigger_pct", "max_fall_pct"),
            ("sell_", "sell_fall_trigger_pct", "sell_max_rise_pct"),
        ):
            tol_field = f"{prefix}lateral_tolerance_pct"
            tol = getattr(self, tol_field)
            trig = getattr(self, trigger_field)
            adverse = getattr(self, adverse_field)

            if tol <= 0:
                raise InvalidConfigError(tol_field, "must be > 0")
            if trig <= 0:
                raise InvalidConfigError(trigger_field, "must be > 0")
            if adverse <= 0:
                raise InvalidConfigError(adverse_field, "must be > 0")

            # a breakout inside the consolidation band is indistinguishable from noise
            if trig <= tol:
                raise InvalidConfigError(
                    trigger_field, f"must be greater than {tol_field} ({tol})"
                )
            if adverse <= tol:
                raise InvalidConfigError(
                    adverse_field, f"must be greater than {tol_field} ({tol})"
                )

        for name in (
            "lateral_cycles_min",
            "rise_cycles_min",
            "sell_lateral_cycles_min",
            "sell_fall_cycles_min",
            "max_monitoring_time_min",
            "sell_max_monitoring_time_min",
        ):
            if getattr(self, name) < 1:
                raise InvalidConfigError(name, "must be >= 1")

        for name in ("cooldown_after_execution_min", "sell_cooldown_after_execution_min"):
            if getattr(self, name) < 0:
                raise InvalidConfigError(name, "must be >= 0")


def parse_config(payload: Mapping[str, Any] | MonitorConfig) -> MonitorConfig:
    """Build a config from user input and validate it; raises InvalidConfigError."""
    if isinstance(payload, MonitorConfig):
        cfg = payload
    else:
        try:
            cfg = MonitorConfig.model_validate(dict(payload))
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(p) for p in first.get("loc", ())) or "config"
            raise InvalidConfigError(field, first.get("msg", "invalid value")) from e
    cfg.validate_for_write()
    return cfg
