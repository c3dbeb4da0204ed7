"""FastAPI wiring shared by every service: bootstrap, health, errors, auth headers."""

import os
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from nunaa.common.config import settings
from nunaa.common.errors import CoreError, LedgerInvariantViolation, StorageUnavailable
from nunaa.common.logging import account_id_ctx, configure_logging, log_context, logger
from nunaa.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response

WEBHOOK_SECRET_MIN_LENGTH = 12


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(secret in name for secret in ["KEY", "SECRET", "PASSWORD", "TOKEN", "DATABASE_URL"]):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)


def setup_tracing(service_name: str) -> None:
    """Create and register a tracer provider with OTLP HTTP exporter."""

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


def bootstrap_service(config_keys: list[str]) -> None:
    """Process-level setup run once at import of a service's `main` module."""

    configure_logging()
    if settings.tracing_enabled:
        setup_tracing(settings.service_name)
    log_startup_config(
        settings.service_name,
        ["SERVICE_NAME", "DATABASE_URL", "KAFKA_BOOTSTRAP_SERVERS", *config_keys],
    )


async def core_error_handler(request: Request, exc: CoreError) -> JSONResponse:
    """Render domain errors as `{"error": {code, message, context}}`."""

    if isinstance(exc, LedgerInvariantViolation):
        logger.error("ledger_invariant_violation path=%s error=%s", request.url.path, exc.message)
    else:
        logger.warning("request_rejected path=%s code=%s error=%s", request.url.path, exc.code, exc.message)
    headers = {"Retry-After": "1"} if isinstance(exc, StorageUnavailable) else None
    return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()}, headers=headers)


async def metrics_middleware(request: Request, call_next):
    """Record request count and latency for every HTTP call; bind the trace id."""

    start = perf_counter()
    route = request.url.path
    method = request.method
    status_code = 500
    try:
        with log_context(trace_id=request.headers.get("x-trace-id") or str(uuid4())):
            response = await call_next(request)
        status_code = response.status_code
        route_obj = request.scope.get("route")
        if route_obj is not None and getattr(route_obj, "path", None):
            route = route_obj.path
        return response
    finally:
        elapsed = max(0.0, perf_counter() - start)
        http_request_duration_seconds.labels(
            service=settings.service_name,
            route=route,
            method=method,
        ).observe(elapsed)
        http_requests_total.labels(
            service=settings.service_name,
            route=route,
            method=method,
            status_code=str(status_code),
        ).inc()


def health():
    """Container health check endpoint."""

    return {"ok": True}


def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()


def create_service_app(title: str, lifespan=None) -> FastAPI:
    app = FastAPI(title=title, lifespan=lifespan)
    if settings.tracing_enabled:
        FastAPIInstrumentor.instrument_app(app)
    app.middleware("http")(metrics_middleware)
    app.add_exception_handler(CoreError, core_error_handler)
    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/metrics", metrics, methods=["GET"])
    return app


async def require_account_id(x_account_id: str | None = Header(default=None)) -> str:
    """Identity of the caller, asserted by the authentication layer in front of the services."""

    if not x_account_id:
        raise HTTPException(status_code=401, detail="missing x-account-id")
    account_id_ctx.set(x_account_id)
    return x_account_id


def enforce_api_key(x_api_key: str | None = Header(default=None)) -> None:
    """Simple API-key gate for ops endpoints."""

    if x_api_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def verify_webhook_secret(provided: str | None, expected: str) -> None:
    if len(expected) < WEBHOOK_SECRET_MIN_LENGTH:
        raise HTTPException(status_code=500, detail="webhook secret not configured")
    if provided != expected:
        raise HTTPException(status_code=401, detail="invalid webhook secret")
