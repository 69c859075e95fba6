import asyncio
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi import HTTPException
from starlette.concurrency import run_in_threadpool
from app.api.errors import (
    configuration_error_handler,
    flow_busy_handler,
    flow_not_found_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.core.config import settings
from app.core.logging import configure_logging
from app.api.routes.ops import router as ops_router
from app.api.routes.webhook import router as webhook_router
from app.api.routes.admin_flows import router as admin_flows_router
from app.api.routes.flow_instances import router as flow_instances_router
from app.domain.flows.errors import ConfigurationError, FlowBusyError, FlowNotFoundError
from app.repositories.db import Base, engine
from app.services.flow_runtime import get_flow_runtime

import app.domain.flows.models  # noqa: F401 - importa modelos para registrar no metadata
import app.domain.crm.models  # noqa: F401
from contextlib import asynccontextmanager
import structlog
import traceback
import uuid
from fastapi.responses import JSONResponse

configure_logging()
log = structlog.get_logger()


async def _scheduler_loop(interval: float) -> None:
    runtime = get_flow_runtime()
    while True:
        try:
            await run_in_threadpool(runtime.tick)
        except Exception as e:  # noqa: BLE001 - o loop não pode morrer
            log.error("flow_scheduler_loop_error", error=str(e))
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    is_test = (settings.APP_ENV or "").lower() == "test"
    if is_test:
        # Em testes, garantir schema limpo para isolar dados entre execuções
        Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    task = None
    if settings.FLOW_SCHEDULER_ENABLED and not is_test:
        get_flow_runtime().restore_timers()
        task = asyncio.create_task(_scheduler_loop(settings.FLOW_SCHEDULER_TICK_SECS))
        log.info("flow_scheduler_started", tick_secs=settings.FLOW_SCHEDULER_TICK_SECS)
    yield
    # Shutdown
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


tags_metadata = [
    {"name": "webhook", "description": "Webhook do WhatsApp Cloud API."},
    {"name": "ops", "description": "Healthchecks e scheduler."},
    {"name": "admin-flows", "description": "Flows: rascunho, publicação, import/export."},
    {"name": "flow-instances", "description": "Instâncias em execução: inspeção, retry, abandono."},
]

app = FastAPI(
    title="LeadFlow API",
    version="0.1.0",
    openapi_tags=tags_metadata,
    lifespan=lifespan,
)


@app.middleware("http")
async def _http_logger(request, call_next):
    # Correlation ID (propaga entre logs e resposta)
    cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    try:
        log.info("http_request_start", method=request.method, path=request.url.path)
        response = await call_next(request)
        response.headers["X-Correlation-Id"] = cid
        log.info(
            "http_request_end",
            method=request.method,
            path=request.url.path,
            status=getattr(response, "status_code", None),
        )
        return response
    except Exception as e:
        log.error(
            "http_request_exception",
            method=request.method,
            path=request.url.path,
            error=str(e),
            traceback=traceback.format_exc(),
        )
        return JSONResponse(status_code=500, content={"error": {"code": "internal_error", "message": "unexpected error"}})
    finally:
        structlog.contextvars.clear_contextvars()


app.include_router(ops_router, prefix="/ops", tags=["ops"])
app.include_router(webhook_router, prefix="/webhook", tags=["webhook"])
app.include_router(admin_flows_router, prefix="/admin", tags=["admin-flows"])
app.include_router(flow_instances_router, prefix="/admin", tags=["flow-instances"])

# Global error handlers (uniform error payloads)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(ConfigurationError, configuration_error_handler)
app.add_exception_handler(FlowNotFoundError, flow_not_found_handler)
app.add_exception_handler(FlowBusyError, flow_busy_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/")
async def root():
    return {"service": "leadflow", "status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
