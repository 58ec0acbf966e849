import redis
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api import bookings_router, queue_router, salons_router
from .broadcast import get_broadcaster
from .config import settings
from .core.logging_config import setup_logging
from .core.observability import request_tracing_middleware
from .db import SessionLocal, init_schema

setup_logging()
init_schema()

log = structlog.get_logger("salonqueue.app")

app = FastAPI(
    title="SalonQueue",
    description="Salon queue booking API: walk-ins, live queue, wait-time estimates",
    version="0.1.0",
)
app.state.session_local = SessionLocal


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if bool(settings.SECURITY_HEADERS_ENABLED):
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def tracing_middleware(request: Request, call_next):
    return await request_tracing_middleware(request, call_next)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    checks = {"db": "ok", "redis": "skipped"}
    db_ok = True
    redis_ok = True

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        log.warning("readiness_db_failed", exc_info=True)
        checks["db"] = "error"
        db_ok = False

    if settings.BROADCAST_BACKEND == "redis":
        try:
            client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            client.ping()
            checks["redis"] = "ok"
        except Exception:
            log.warning("readiness_redis_failed", exc_info=True)
            checks["redis"] = "error"
            redis_ok = False

    if db_ok and redis_ok:
        return {"status": "ready", "checks": checks, "broadcaster": type(get_broadcaster()).__name__}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(queue_router)
app.include_router(bookings_router)
app.include_router(salons_router)
