from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from app.domain.flows.errors import ConfigurationError, FlowBusyError, FlowNotFoundError

log = structlog.get_logger()


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    body = {"error": {"code": code, "message": message}}
    if extra:
        body["error"].update(extra)
    return JSONResponse(status_code=status_code, content=body)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail
    code = detail if isinstance(detail, str) else "http_error"
    return _error(exc.status_code, code, str(detail))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    issues = [
        {"loc": [str(p) for p in err.get("loc", ())], "message": str(err.get("msg"))}
        for err in exc.errors()
    ]
    return _error(422, "validation_error", "invalid request", issues=issues)


async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    log.info("flow_configuration_rejected", path=request.url.path, issues=len(exc.issues))
    return _error(422, "invalid_flow_definition", str(exc), issues=[i.as_dict() for i in exc.issues])


async def flow_not_found_handler(request: Request, exc: FlowNotFoundError) -> JSONResponse:
    return _error(404, "flow_not_found", str(exc))


async def flow_busy_handler(request: Request, exc: FlowBusyError) -> JSONResponse:
    return _error(409, "lead_busy", str(exc))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=exc)
    return _error(500, "internal_error", "unexpected error")
