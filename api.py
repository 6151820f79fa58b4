# Spotfleet ops API
# FastAPI. Health, metrics, queue, pool, sweeper, audit trail. Read-mostly.

import hmac
import json
import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from billing import get_usage_summary, usage_for_job
from events import get_event_store
from scheduler import (
    get_job,
    get_metrics_snapshot,
    list_jobs,
    log,
    storage_healthcheck,
    submit_job,
)
from sweeper import get_sweeper
from warm_pool import get_warm_pool

VERSION = "1.0.0"

app = FastAPI(title="Spotfleet", version=VERSION)

SPOTFLEET_ENV = os.environ.get("SPOTFLEET_ENV", "dev").lower()
AUTH_REQUIRED = SPOTFLEET_ENV not in {"dev", "development", "test"}
API_TOKEN = os.environ.get("SPOTFLEET_API_TOKEN", "")

# No token required
PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz", "/readyz"}


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token auth outside dev/test. SPOTFLEET_API_TOKEN must be set
    there, otherwise every non-public request is refused with 500.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        api_token = os.environ.get("SPOTFLEET_API_TOKEN", API_TOKEN)
        if not api_token:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "SPOTFLEET_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""
        if not token or not hmac.compare_digest(token, api_token):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthorized", "message": "Unauthorized"}},
            )
        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Structured access log, one JSON line per request."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": round((time.time() - started) * 1000, 2),
            "client_ip": request.client.host if request.client else "unknown",
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


app.add_middleware(RequestLogMiddleware)


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": exc.errors(),
            },
        },
    )


# ── Request models ────────────────────────────────────────────────────


class JobIn(BaseModel):
    request_type: str = Field(min_length=1, max_length=64)
    priority: int = Field(default=0, ge=0, le=10)
    tier: str | None = None
    model: str | None = None
    command: str | None = None
    image: str | None = None
    payload: dict | None = None
    criteria: dict | None = None


# ── Jobs ──────────────────────────────────────────────────────────────


@app.post("/job")
def api_submit_job(j: JobIn):
    """Queue a job. The worker picks it up on its next tick."""
    job = submit_job(
        j.request_type, priority=j.priority, tier=j.tier, model=j.model,
        payload=j.payload, command=j.command, image=j.image, criteria=j.criteria,
    )
    return {"ok": True, "job": job}


@app.get("/jobs")
def api_list_jobs(status: str | None = None, limit: int | None = None):
    return {"jobs": list_jobs(status=status, limit=limit)}


@app.get("/job/{job_id}")
def api_get_job(job_id: str):
    job = get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return {"job": job, "usage": usage_for_job(job_id)}


# ── Pool + sweeper ────────────────────────────────────────────────────


@app.get("/pool")
def api_pool():
    pool = get_warm_pool()
    if pool is None:
        raise HTTPException(status_code=503, detail="No warm pool in this process")
    return {"ok": True, "pool": pool.get_pool_state()}


@app.get("/sweeper")
def api_sweeper():
    sweeper = get_sweeper()
    if sweeper is None:
        raise HTTPException(status_code=503, detail="No sweeper in this process")
    return {"ok": True, "sweeper": sweeper.get_status()}


@app.post("/sweeper/run")
def api_sweeper_run(dry_run: bool = True):
    """Trigger one sweep. Dry run unless told otherwise."""
    sweeper = get_sweeper()
    if sweeper is None:
        raise HTTPException(status_code=503, detail="No sweeper in this process")
    report = sweeper.sweep(dry_run=dry_run)
    if report.get("skipped"):
        raise HTTPException(status_code=409, detail="Sweep already in progress")
    return {"ok": True, "report": report}


# ── Audit trail ───────────────────────────────────────────────────────


@app.get("/events/{entity_type}/{entity_id}")
def api_entity_events(entity_type: str, entity_id: str):
    events = get_event_store().get_entity_history(entity_type, entity_id)
    return {"events": [e.to_dict() for e in events]}


@app.get("/events/verify")
def api_verify_events():
    return get_event_store().verify_chain()


@app.get("/usage")
def api_usage(since: float | None = None, until: float | None = None):
    return {"ok": True, "usage": get_usage_summary(since=since, until=until)}


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz")
def healthz():
    return {"ok": True, "status": "healthy", "env": SPOTFLEET_ENV}


@app.get("/readyz")
def readyz():
    token = os.environ.get("SPOTFLEET_API_TOKEN", API_TOKEN)
    if AUTH_REQUIRED and not token:
        raise HTTPException(
            status_code=503, detail="API token not configured for non-dev environment"
        )

    storage = storage_healthcheck()
    if not storage.get("ok"):
        raise HTTPException(
            status_code=503, detail=f"Storage not ready: {storage.get('error', 'unknown')}"
        )
    return {"ok": True, "status": "ready", "storage": storage}


@app.get("/metrics")
def metrics():
    return {"ok": True, "metrics": get_metrics_snapshot()}


@app.get("/")
def root():
    return {"name": "Spotfleet", "version": VERSION, "status": "running"}


if __name__ == "__main__":
    import uvicorn

    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
