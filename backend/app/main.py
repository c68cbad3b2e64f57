from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from typing import Optional
from .routers.sales_reports import router as sales_reports_router
from .routers.deliveries import router as deliveries_router
from .routers.inventory import router as inventory_router
from .config import settings
from .db import close_pool_safely, create_pool, ping
from .errors import LedgerError
from .logs import json_log

SERVICE_NAME = "abaca-ledger"

app = FastAPI(title="Abaca Trade Ledger API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _error_response(req: Request, status_code: int, detail: str, kind: str, exc: Optional[Exception] = None) -> JSONResponse:
    content = {"detail": detail, "kind": kind, "request_id": _current_request_id(req)}
    if exc is not None and settings.expose_errors:
        content["error"] = str(exc)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(LedgerError)
def _ledger_error(req: Request, exc: LedgerError):
    content = exc.to_dict()
    content["request_id"] = _current_request_id(req)
    return JSONResponse(status_code=exc.status_code, content=content)


# Constraint and cast errors that slip past the core's own checks still map to
# a typed 4xx, never a bare 500.
_PG_ERROR_MAP = {
    pg_errors.InvalidTextRepresentation: (400, "invalid value", "validation_error"),
    pg_errors.ForeignKeyViolation: (400, "invalid reference", "not_found"),
    pg_errors.UniqueViolation: (409, "conflict", "conflict"),
    pg_errors.CheckViolation: (400, "constraint violation", "validation_error"),
}


def _pg_error(req: Request, exc: Exception):
    for exc_type, (status_code, detail, kind) in _PG_ERROR_MAP.items():
        if isinstance(exc, exc_type):
            return _error_response(req, status_code, detail, kind, exc)
    return _error_response(req, 500, "internal error", "internal_error", exc)


for _exc_type in _PG_ERROR_MAP:
    app.add_exception_handler(_exc_type, _pg_error)


@app.exception_handler(RequestValidationError)
def _request_validation_error(req: Request, exc: RequestValidationError):
    content = {"detail": "validation failed", "kind": "validation_error", "request_id": _current_request_id(req)}
    if settings.expose_errors:
        content["errors"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    json_log(
        "error",
        "http.request.unhandled",
        request_id=_current_request_id(req),
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    return _error_response(req, 500, "internal error", "internal_error", exc)


@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    fields = {
        "request_id": rid,
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
    }

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log("error", "http.request.error", duration_ms=int((time.time() - started) * 1000), error=str(exc), **fields)
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if not fields["path"].startswith("/health"):
        json_log(
            "info",
            "http.request",
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
            **fields,
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(sales_reports_router)
app.include_router(deliveries_router)
app.include_router(inventory_router)


@app.on_event("startup")
def _startup():
    # Opened without waiting so the API comes up (degraded) while Postgres is still starting.
    pool = create_pool()
    pool.open(wait=False)
    app.state.db_pool = pool
    try:
        ping(pool)
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
def _shutdown():
    close_pool_safely(getattr(app.state, "db_pool", None))


def _db_health(req: Request):
    pool = getattr(req.app.state, "db_pool", None)
    if pool is None:
        return False, "pool not initialized"
    try:
        ping(pool)
        return True, None
    except Exception as exc:
        return False, str(exc)


def _probe(req: Request, ok_status: str, **extra):
    ok, err = _db_health(req)
    content = {
        "status": ok_status if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "request_id": _current_request_id(req),
        **extra,
    }
    if ok:
        return content
    if settings.expose_errors:
        content["error"] = err
    return JSONResponse(status_code=503, content=content)


@app.get("/")
def root():
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/health")
def health(req: Request):
    return _probe(req, "ok", started_at=STARTED_AT_UTC.isoformat())


@app.get("/health/live")
def health_live(req: Request):
    return {"status": "ok", "env": settings.env, "service": SERVICE_NAME, "request_id": _current_request_id(req)}


@app.get("/health/ready")
def health_ready(req: Request):
    return _probe(req, "ready")


@app.get("/meta")
def meta():
    return {
        "service": SERVICE_NAME,
        "version": settings.api_version,
        "env": settings.env,
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
