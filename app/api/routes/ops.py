from __future__ import annotations
from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool
from app.core.config import settings
from sqlalchemy.orm import Session
from sqlalchemy import text

from app.api.deps import get_db, get_runtime, require_admin_token
from app.services.flow_runtime import FlowRuntime

router = APIRouter()


@router.get("/health", summary="Liveness + acesso ao banco")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception:  # noqa: BLE001
        db_ok = False
    return {"status": "ok" if db_ok else "degraded", "db": db_ok}


@router.get("/config", summary="Configurações não sensíveis (observabilidade leve)")
async def config_info():
    return {
        "app_env": settings.APP_ENV,
        "flow_timezone": settings.FLOW_TIMEZONE,
        "flow_lock_backend": settings.FLOW_LOCK_BACKEND,
        "flow_effects_async": bool(settings.FLOW_EFFECTS_ASYNC),
        "flow_max_jump_depth": settings.FLOW_MAX_JUMP_DEPTH,
        "scheduler_enabled": bool(settings.FLOW_SCHEDULER_ENABLED),
        "version": "0.1.0",
    }


@router.get("/scheduler", summary="Timers armados no processo", dependencies=[Depends(require_admin_token)])
def scheduler_info(runtime: FlowRuntime = Depends(get_runtime)):
    next_wake = runtime.scheduler.next_wake_at()
    return {"armed": len(runtime.scheduler), "next_wake_at": next_wake.isoformat() if next_wake else None}


@router.post("/scheduler/tick", summary="Dispara os timers vencidos agora", dependencies=[Depends(require_admin_token)])
async def scheduler_tick(runtime: FlowRuntime = Depends(get_runtime)):
    report = await run_in_threadpool(runtime.tick)
    return {"fired": report.fired, "failed": report.failed, "errors": report.errors}
