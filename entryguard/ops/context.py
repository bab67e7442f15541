from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator, Optional


@dataclass(frozen=True)
class TickContext:
    tick_id: str
    trade_mode: str


# worker threads only see this when the tick's context is copied into them
_tick: ContextVar[Optional[TickContext]] = ContextVar("entryguard_tick", default=None)


@contextmanager
def tick_scope(tick_id: str, trade_mode: str) -> Iterator[TickContext]:
    """Bind a tick to the current context; the previous binding is restored on exit."""
    ctx = TickContext(tick_id=tick_id, trade_mode=trade_mode)
    token = _tick.set(ctx)
    try:
        yield ctx
    finally:
        _tick.reset(token)


def current_tick() -> Optional[TickContext]:
    return _tick.get()
