"""ScreenWatch API application entry point"""

import logging
import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.deps import ROTATION_HEADER
from app.api.errors import register_exception_handlers
from app.api.v1 import auth
from app.config import settings
from app.core.database import SessionLocal, init_db
from app.core.logging import configure_logging
from app.schemas.response import ErrorResponse, HealthResponse

configure_logging(settings)
logger = logging.getLogger(__name__)

HTTP_REQUESTS = Counter(
    "screenwatch_http_requests_total",
    "HTTP requests by route and status",
    ["method", "route", "status"],
)
HTTP_LATENCY = Histogram(
    "screenwatch_http_request_duration_seconds",
    "HTTP request latency by route",
    ["method", "route"],
)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    debug=settings.DEBUG,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

app.add_middleware(GZipMiddleware, minimum_size=500)
# Clients read the rotation advisory header.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[ROTATION_HEADER, "X-Request-ID"],
)
register_exception_handlers(app)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Tag the request, time it, and harden the response headers"""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id

    started = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - started

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    # Responses carry tokens.
    response.headers.setdefault("Cache-Control", "no-store")

    # Route template, not the raw path.
    route = getattr(request.scope.get("route"), "path", "unmatched")
    HTTP_REQUESTS.labels(request.method, route, str(response.status_code)).inc()
    HTTP_LATENCY.labels(request.method, route).observe(elapsed)
    if elapsed > 1.0:
        logger.warning(f"Slow request {request.method} {route} took {elapsed:.2f}s request_id={request_id}")

    return response


@app.on_event("startup")
async def on_startup():
    settings.validate_security_settings()
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")
    init_db()


@app.on_event("shutdown")
async def on_shutdown():
    logger.info(f"Stopping {settings.APP_NAME}")


@app.get("/health", response_model=HealthResponse)
def health_check():
    """Liveness plus a database round trip; sessions cannot be served without storage"""
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = {"ok": True, "error": None}
    except SQLAlchemyError as exc:
        database = {"ok": False, "error": str(exc)}
    finally:
        db.close()

    return {
        "status": "healthy" if database["ok"] else "degraded",
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "readiness": {"database": database},
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/")
async def root():
    return {"name": settings.APP_NAME, "version": settings.APP_VERSION, "status": "running"}


app.include_router(
    auth.router,
    prefix="/api/v1/auth",
    tags=["Authentication"],
    responses={401: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
    )
