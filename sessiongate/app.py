from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from sessiongate.api.error_handling import _error_response, register_exception_handlers
from sessiongate.api.routes import build_auth_router, request_authorization, router
from sessiongate.logging import bind_principal, bind_request_context, get_logger
from sessiongate.service.runtime import Runtime
from sessiongate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0

_UNFILTERED_PATHS = ("/healthz",)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the gateway app around ``runtime`` (a fresh one from the environment if omitted).

    Run with ``uvicorn sessiongate.app:create_app --factory``.
    """
    runtime = runtime or Runtime()
    auth_path = runtime.settings.auth_path

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        try:
            await app.state.runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="SessionGate", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def authenticate_bearer(request: Request, call_next):
        """Attach the request principal and advertise a bearer challenge when absent.

        The request is always forwarded; downstream handlers decide whether a
        missing principal is an error.
        """
        path = request.url.path
        if path == auth_path or path in _UNFILTERED_PATHS:
            return await call_next(request)
        try:
            outcome = app.state.runtime.gateway.authenticate_request(
                request_authorization(request)
            )
        except StoreUnavailable as exc:
            logger.error("auth_filter_store_unavailable", path=path, message=exc.message)
            return _error_response(503, "storage temporarily unavailable", code="unavailable")
        request.state.principal = outcome.context
        request.state.auth_challenge = outcome.challenge
        if outcome.context is not None:
            bind_principal(outcome.context.tenant_id, outcome.context.user_id)
        response = await call_next(request)
        if outcome.challenge:
            response.headers.setdefault("WWW-Authenticate", outcome.challenge)
        if outcome.context is not None:
            response.headers.setdefault("APP_ID", outcome.context.tenant.identifier)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        if request.url.path == auth_path or request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs with the caller's X-Request-ID (or a new UUID) and echo it back."""
        correlation_id = bind_request_context(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(build_auth_router(auth_path))
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Dependency checks for the store and, when configured, Redis."""
        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        current = app.state.runtime
        db_ok = await _run_bounded("database", current.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
        overall_healthy = db_ok

        if current.cache is not None:
            redis_ok = await _run_bounded("redis", current.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            overall_healthy = overall_healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if overall_healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
