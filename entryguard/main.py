import asyncio
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import Body, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from entryguard.core.config import Settings, settings
from entryguard.core.errors import ForbiddenError, MonitorError
from entryguard.core.ttl_cache import TTLCache
from entryguard.exchange.price_gateway import (
    BinancePriceGateway,
    CachedPriceGateway,
    PriceGateway,
)
from entryguard.execution.dispatcher import ExecutionDispatcher
from entryguard.execution.job_queue import SqliteJobQueue
from entryguard.monitor.service import MonitorService
from entryguard.ops.locks import KeyedLocks
from entryguard.ops.tick_tracker import TickTracker
from entryguard.persistence.alert_store import AlertStore, clamp_limit
from entryguard.persistence.audit import Audit
from entryguard.persistence.config_store import ConfigStore
from entryguard.persistence.db import DB, utc_now
from entryguard.runner.models import AlertState, Side, Signal, TradeMode
from entryguard.runner.scheduler import MonitorScheduler

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
log = logging.getLogger("entryguard.api")

app = FastAPI(title="EntryGuard Delayed Execution Monitor")

STATUS_BY_CODE = {
    "NOT_FOUND": 404,
    "FORBIDDEN": 403,
    "ALREADY_TERMINAL": 409,
    "COOLDOWN_ACTIVE": 409,
    "MONITOR_DISABLED": 409,
    "INVALID_CONFIG": 422,
    "INVALID_SIGNAL": 422,
}


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Wiring
# =========================
@dataclass
class Services:
    db: DB
    audit: Audit
    store: AlertStore
    configs: ConfigStore
    prices: PriceGateway
    queue: SqliteJobQueue
    dispatcher: ExecutionDispatcher
    service: MonitorService
    tracker: TickTracker
    scheduler: MonitorScheduler


def build_services(
    cfg: Settings = settings,
    prices: Optional[PriceGateway] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    db = DB(cfg.DB_PATH)
    audit = Audit(db, cfg.AUDIT_JSONL_PATH)
    store = AlertStore(db)
    configs = ConfigStore(db, TTLCache(cfg.CONFIG_CACHE_TTL_SECONDS))

    if prices is None:
        prices = CachedPriceGateway(
            BinancePriceGateway(
                base_url=cfg.BINANCE_API_BASE_URL,
                timeout_s=cfg.PRICE_FETCH_TIMEOUT_SECONDS,
                max_retries=cfg.PRICE_FETCH_RETRIES,
            ),
            TTLCache(cfg.PRICE_CACHE_TTL_SECONDS),
        )

    queue = SqliteJobQueue(db)
    dispatcher = ExecutionDispatcher(
        queue,
        store,
        audit=audit,
        max_retries=cfg.QUEUE_SUBMIT_RETRIES,
        backoff_s=cfg.QUEUE_RETRY_BACKOFF_SECONDS,
    )
    locks = KeyedLocks()
    service = MonitorService(
        store,
        configs,
        audit=audit,
        locks=locks,
        clock=clock,
        lock_timeout_s=cfg.ALERT_LOCK_TIMEOUT_SECONDS,
    )
    tracker = TickTracker(db)
    scheduler = MonitorScheduler(
        store,
        configs,
        prices,
        dispatcher,
        service,
        tracker,
        audit=audit,
        queue=queue,
        locks=locks,
        workers={m.value: cfg.workers_for(m.value) for m in TradeMode},
        retention_hours=cfg.QUEUE_RETENTION_HOURS,
        clock=clock,
    )
    return Services(
        db=db,
        audit=audit,
        store=store,
        configs=configs,
        prices=prices,
        queue=queue,
        dispatcher=dispatcher,
        service=service,
        tracker=tracker,
        scheduler=scheduler,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
    return _services


# =========================
# Scheduler loops (one per trade mode)
# =========================
@dataclass
class LoopState:
    mode: str
    running: bool = False
    started_at: Optional[str] = None
    last_tick_at: Optional[str] = None
    tick_count: int = 0
    last_summary: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    task: Optional[asyncio.Task] = None


loops: Dict[str, LoopState] = {}


async def scheduler_loop(state: LoopState) -> None:
    """
    Ticks one trade mode every check_interval_sec (global config).
    A failed tick is recorded and the loop keeps going.
    """
    svc = get_services()

    while state.running:
        try:
            state.last_tick_at = _utc_now_iso()
            summary = await asyncio.to_thread(svc.scheduler.run_tick, TradeMode(state.mode))
            state.tick_count += 1
            state.last_summary = summary.to_dict()
            state.last_error = summary.error
        except Exception:
            state.last_error = traceback.format_exc()
            log.exception("scheduler loop %s tick crashed", state.mode)

        interval = svc.configs.get().check_interval_sec
        await asyncio.sleep(max(1, int(interval)))


async def _stop_loop(state: LoopState) -> None:
    state.running = False
    if state.task and not state.task.done():
        state.task.cancel()
        try:
            await state.task
        except asyncio.CancelledError:
            # expected when we cancel the background loop
            pass
    state.task = None


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    svc = get_services()
    try:
        warnings = settings.validate_runtime(check_interval_sec=svc.configs.get().check_interval_sec)
        for w in warnings:
            log.warning("[CONFIG WARNING] %s", w)
    except ValueError as e:
        # Fail-closed: crash the service rather than running with a broken config
        log.error(str(e))
        raise


@app.on_event("startup")
async def _startup_scheduler():
    svc = get_services()
    abandoned = svc.tracker.mark_abandoned()
    if abandoned:
        log.warning("closed %s ticks left RUNNING by a previous process", abandoned)

    if not settings.SCHEDULER_ENABLED:
        log.info("scheduler disabled (SCHEDULER_ENABLED=false)")
        return

    for mode in settings.SCHEDULER_TRADE_MODES:
        state = LoopState(mode=mode, running=True, started_at=_utc_now_iso())
        state.task = asyncio.create_task(scheduler_loop(state))
        loops[mode] = state
        log.info("scheduler loop started mode=%s", mode)


@app.on_event("shutdown")
async def _shutdown_scheduler():
    for state in list(loops.values()):
        await _stop_loop(state)
    loops.clear()
    if _services is not None:
        _services.scheduler.shutdown(wait=True)


# =========================
# Errors
# =========================
@app.exception_handler(MonitorError)
async def _monitor_error_handler(request: Request, exc: MonitorError):
    return JSONResponse(status_code=STATUS_BY_CODE.get(exc.code, 500), content=exc.to_dict())


def _require_admin_or_self(caller: Optional[int], owner_id: int) -> None:
    if caller is not None and int(caller) != int(owner_id):
        raise ForbiddenError(f"owner {caller} cannot access owner {owner_id}")


# =========================
# Request bodies
# =========================
class SignalIn(BaseModel):
    source_id: int
    symbol: str
    side: Side
    trade_mode: TradeMode = TradeMode.SIMULATION
    price: float
    account_ids: List[int] = Field(default_factory=list)
    owner_id: Optional[int] = None
    venue: str = "BINANCE"


class CancelIn(BaseModel):
    reason: Optional[str] = None


class RecalculateIn(BaseModel):
    alert_ids: Optional[List[int]] = None


# =========================
# Routes
# =========================
@app.get("/health")
def health():
    svc = get_services()
    return {
        "status": "ok",
        "time": _utc_now_iso(),
        "open_alerts": svc.store.count_open(),
        "scheduler_enabled": settings.SCHEDULER_ENABLED,
        "loops": {m: s.running for m, s in loops.items()},
    }


@app.post("/signals", status_code=201)
def create_signal(body: SignalIn, x_owner_id: Optional[int] = Header(default=None)):
    owner_id = body.owner_id
    if x_owner_id is not None:
        if owner_id is not None:
            _require_admin_or_self(x_owner_id, owner_id)
        owner_id = x_owner_id

    alert = get_services().service.create_alert(
        Signal(
            source_id=body.source_id,
            symbol=body.symbol,
            side=body.side,
            trade_mode=body.trade_mode,
            price=body.price,
            account_ids=list(body.account_ids),
            owner_id=owner_id,
            venue=body.venue.upper(),
        )
    )
    return alert.to_dict()


@app.get("/alerts")
def list_alerts(
    owner_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    x_owner_id: Optional[int] = Header(default=None),
):
    if x_owner_id is not None:
        owner_id = x_owner_id
    items = get_services().service.list_active(owner_id=owner_id, limit=limit, offset=offset)
    return {"items": [a.to_dict() for a in items], "limit": clamp_limit(limit), "offset": offset}


@app.get("/alerts/{alert_id}")
def get_alert(alert_id: int, x_owner_id: Optional[int] = Header(default=None)):
    svc = get_services()
    alert = svc.service.get_alert(alert_id, owner_id=x_owner_id)
    out = alert.to_dict()
    out["history"] = svc.store.terminal_history(alert_id)
    out["jobs"] = [j.job_id for j in svc.queue.list_for_alert(alert_id)]
    return out


@app.post("/alerts/{alert_id}/cancel")
def cancel_alert(
    alert_id: int,
    body: Optional[CancelIn] = Body(default=None),
    x_owner_id: Optional[int] = Header(default=None),
):
    reason = body.reason if body else None
    alert = get_services().service.cancel_alert(alert_id, reason=reason, owner_id=x_owner_id)
    return alert.to_dict()


@app.get("/history")
def history(
    symbol: Optional[str] = None,
    state: Optional[AlertState] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    owner_id: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
    x_owner_id: Optional[int] = Header(default=None),
):
    svc = get_services()
    caller = x_owner_id if x_owner_id is not None else owner_id
    items = svc.service.history(
        owner_id=caller,
        symbol=symbol,
        state=state,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return {"items": [a.to_dict() for a in items], "limit": clamp_limit(limit), "offset": max(0, offset)}


@app.get("/summary")
def summary():
    return get_services().service.summary()


@app.post("/metrics/recalculate")
def metrics_recalculate(body: Optional[RecalculateIn] = Body(default=None)):
    alert_ids = body.alert_ids if body else None
    return get_services().service.recompute_metrics(alert_ids)


@app.get("/config")
def get_config():
    cfg, source = get_services().configs.resolve(None)
    return {"scope": "global", "source": source, "config": cfg.model_dump()}


@app.put("/config")
def put_config(payload: Dict[str, Any] = Body(...), x_owner_id: Optional[int] = Header(default=None)):
    if x_owner_id is not None:
        raise ForbiddenError("only admins can change the global config")
    cfg = get_services().configs.put(payload)
    return {"scope": "global", "config": cfg.model_dump()}


@app.get("/config/owners/{owner_id}")
def get_owner_config(owner_id: int, x_owner_id: Optional[int] = Header(default=None)):
    _require_admin_or_self(x_owner_id, owner_id)
    cfg, source = get_services().configs.resolve(owner_id)
    return {"scope": f"owner:{owner_id}", "source": source, "config": cfg.model_dump()}


@app.put("/config/owners/{owner_id}")
def put_owner_config(
    owner_id: int,
    payload: Dict[str, Any] = Body(...),
    x_owner_id: Optional[int] = Header(default=None),
):
    _require_admin_or_self(x_owner_id, owner_id)
    cfg = get_services().configs.put(payload, owner_id=owner_id)
    return {"scope": f"owner:{owner_id}", "config": cfg.model_dump()}


@app.post("/scheduler/{mode}/tick")
async def scheduler_tick(mode: TradeMode):
    summary = await asyncio.to_thread(get_services().scheduler.run_tick, mode)
    return summary.to_dict()


@app.get("/scheduler/status")
def scheduler_status():
    svc = get_services()
    out: Dict[str, Any] = {"enabled": settings.SCHEDULER_ENABLED, "modes": {}}
    for mode in TradeMode:
        state = loops.get(mode.value)
        out["modes"][mode.value] = {
            "running": bool(state and state.running),
            "started_at": state.started_at if state else None,
            "last_tick_at": state.last_tick_at if state else None,
            "tick_count": state.tick_count if state else 0,
            "last_error": state.last_error if state else None,
            "last_tick": svc.tracker.last(mode.value),
        }
    out["jobs"] = svc.queue.counts()
    return out


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = 50, alert_id: Optional[int] = Query(default=None)):
    return {"events": get_services().audit.tail(limit=limit, alert_id=alert_id)}
