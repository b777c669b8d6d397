from fastapi import FastAPI, Depends, Response, Request
from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from prometheus_client import Counter, Histogram
import logging
import json
import time
import uuid
from ecosystem_analytics.api.deps import get_db
from ecosystem_analytics.api.events import router as events_router
from ecosystem_analytics.api.reporting import router as reporting_router
from ecosystem_analytics.config import get_settings
from ecosystem_analytics.exceptions import ClientValidationError, PersistenceError
from ecosystem_analytics.infrastructure.db import init_db
from ecosystem_analytics.infrastructure.metrics import registry

REQUESTS = Counter('api_requests_total', 'API Requests', ['endpoint'], registry=registry)
LATENCY = Histogram('api_request_latency_seconds', 'API request latency', ['endpoint'], registry=registry, buckets=(0.01,0.05,0.1,0.25,0.5,1,2,5))

EXPECTED_TABLES = {
    "ecosystem_events",
    "user_journeys",
    "install_velocity",
    "velocity_bucket_participants",
    "discovery_matrix",
    "referral_attributions",
    "conversion_records",
}

app = FastAPI(title="Ecosystem Analytics API", version="0.1.0")
app.include_router(events_router)
app.include_router(reporting_router)


@app.exception_handler(ClientValidationError)
async def client_validation_handler(request: Request, exc: ClientValidationError):
    return Response(content=json.dumps({"error": "invalid_request", "reason": exc.reason}), media_type="application/json", status_code=400)


@app.exception_handler(PersistenceError)
async def persistence_handler(request: Request, exc: PersistenceError):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").warning(json.dumps({
        "event": "persistence_error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
    }))
    return Response(content=json.dumps({"error": "persistence_unavailable", "retryable": True, "correlation_id": cid}), media_type="application/json", status_code=503)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    cid = getattr(request.state, "correlation_id", "n/a")
    logging.getLogger("app").error(json.dumps({
        "event": "error",
        "path": request.url.path,
        "detail": str(exc),
        "correlation_id": cid,
        "type": exc.__class__.__name__,
    }))
    return Response(content=json.dumps({"error": "internal_error", "correlation_id": cid}), media_type="application/json", status_code=500)


@app.middleware("http")
async def metrics_and_correlation(request: Request, call_next):
    start = time.time()
    correlation_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
    request.state.correlation_id = correlation_id
    response = await call_next(request)
    duration = time.time() - start
    ep = request.url.path
    REQUESTS.labels(endpoint=ep).inc()
    LATENCY.labels(endpoint=ep).observe(duration)
    if 'X-Process-Time' not in response.headers:
        response.headers['X-Process-Time'] = f"{duration:.4f}"
    response.headers['X-Correlation-ID'] = correlation_id
    logging.getLogger("app").info(json.dumps({
        "event": "request",
        "path": ep,
        "method": request.method,
        "status": response.status_code,
        "duration_ms": int(duration*1000),
        "correlation_id": correlation_id
    }))
    # Security headers (baseline; CSP left permissive for API JSON)
    response.headers.setdefault('X-Content-Type-Options', 'nosniff')
    response.headers.setdefault('X-Frame-Options', 'DENY')
    response.headers.setdefault('Referrer-Policy', 'no-referrer')
    response.headers.setdefault('Cache-Control', 'no-store')
    return response


@app.on_event("startup")
def startup():
    settings = get_settings()
    # Configure structured logger once
    logger = logging.getLogger("app")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter('%(message)s'))  # already JSON
        logger.setLevel(settings.log_level.upper())
        logger.addHandler(handler)
    if settings.migrate_on_start:
        try:
            import subprocess
            subprocess.run(["alembic", "upgrade", "head"], check=True)
        except Exception:
            logger.warning(json.dumps({"event": "migration_failed", "detail": "startup alembic upgrade failed"}))
    elif settings.app_env == "dev":
        # local dev without migrations: create tables directly
        init_db()


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        present = set(inspect(db.get_bind()).get_table_names())
    except SQLAlchemyError as e:
        logging.getLogger("app").warning(json.dumps({"event": "health_db_error", "detail": str(e)}))
        return Response(content=json.dumps({"status": "unhealthy", "db": False}), media_type="application/json", status_code=503)
    missing = sorted(EXPECTED_TABLES - present)
    status = "ok" if not missing else "degraded"
    return {"status": status, "db": True, "missing_tables": missing}


@app.get("/metrics")
def metrics():
    data = generate_latest(registry)
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
