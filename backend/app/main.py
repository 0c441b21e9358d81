import math

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import settings
from .database import SessionLocal
from .errors import DiscoveryError, RateLimited
from .routes.discovery import router as discovery_router
from .routes.venues import router as venues_router
from .schemas import HealthMetricsResponse, HealthResponse
from .telemetry.logging_utils import configure_logging
from .telemetry.metrics import fetch_average_latency_metrics
from .telemetry.middleware import TelemetryMiddleware

configure_logging(settings.log_level, settings.perf_log_level)
app = FastAPI(title=settings.app_name, version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(TelemetryMiddleware)

app.include_router(discovery_router, prefix="/api")
app.include_router(venues_router, prefix="/api")


@app.exception_handler(DiscoveryError)
async def discovery_error_handler(request: Request, exc: DiscoveryError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after_seconds)))
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


@app.get("/health", response_model=HealthResponse)
def healthcheck() -> HealthResponse:
    with SessionLocal() as session:
        session.execute(text("SELECT 1"))
    return HealthResponse(status="ok")


@app.get("/health/metrics", response_model=HealthMetricsResponse)
def health_metrics() -> HealthMetricsResponse:
    with SessionLocal() as session:
        metrics = fetch_average_latency_metrics(session)
    return HealthMetricsResponse(**metrics)
