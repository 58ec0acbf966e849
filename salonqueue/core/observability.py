import time
import uuid

import structlog
from fastapi import Request
from starlette.responses import JSONResponse

logger = structlog.get_logger("salonqueue.http")


def _bind_request_context(request: Request, request_id: str) -> None:
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        app="salonqueue",
    )
    role = (request.headers.get("X-Actor-Role") or "").strip().lower()
    if role:
        structlog.contextvars.bind_contextvars(actor_role=role)


async def request_tracing_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    _bind_request_context(request, request_id)

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(
            "http_request_failed",
            error=str(exc),
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    duration_ms = round((time.perf_counter() - started) * 1000, 2)
    log_method = logger.warning if response.status_code >= 500 else logger.info
    log_method("http_request", status=response.status_code, duration_ms=duration_ms)
    response.headers["X-Request-ID"] = request_id
    return response
