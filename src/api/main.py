"""FastAPI application entrypoint for PostPilot."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from src.auth.middleware import (
    AUTH_CONTEXT_KEY,
    BEARER_TOKEN_KEY,
    extract_bearer_token,
    resolve_request_auth_context,
)
from src.billing.router import router as billing_router
from src.clients.router import router as clients_router
from src.core.config import get_settings
from src.core.errors import PostPilotError
from src.core.logger import bind_request_context, clear_request_context, get_logger
from src.core.metrics import record_http_request, render_prometheus_metrics
from src.core.observability import capture_exception, init_sentry, sentry_scope
from src.editing.router import router as editing_router
from src.posts.router import router as posts_router
from src.publishing.router import router as publishing_router
from src.storage.db import load_models
from src.storage.db import test_connection as test_db_connection
from src.storage.redis_client import test_connection as test_redis_connection


settings = get_settings()
logger = get_logger("postpilot.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    setattr(request.state, BEARER_TOKEN_KEY, extract_bearer_token(request))
    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)

    client_id = request.headers.get("x-client-id")
    bind_request_context(
        request_id=request_id,
        client_id=client_id,
        actor_id=auth_context.user_id if auth_context else None,
    )

    status_code = 500
    try:
        with sentry_scope(client_id=client_id, request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(PostPilotError)
async def postpilot_error_handler(request: Request, exc: PostPilotError) -> JSONResponse:
    if exc.http_status >= 500:
        capture_exception(exc)
        logger.error("request_failed", code=exc.code, path=request.url.path, error=exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_payload())


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
    )


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = test_db_connection()
    redis_ok, redis_error = test_redis_connection()

    # redis only backs the publish-run guard; the pipeline keeps working without it
    if not db_ok:
        status = "unavailable"
    elif not redis_ok:
        status = "degraded"
    else:
        status = "ok"

    payload = {
        "status": status,
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
        "publish_run_guard": "enabled" if redis_ok else "disabled",
    }

    return JSONResponse(content=payload, status_code=200 if db_ok else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(clients_router)
app.include_router(posts_router)
app.include_router(editing_router)
app.include_router(publishing_router)
app.include_router(billing_router)
