from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from festguard.api.error_handling import register_exception_handlers
from festguard.api.middleware import (
    add_correlation_id,
    add_security_headers,
    detect_injection,
    enforce_rate_limits,
    limit_request_size,
    recover_errors,
    resolve_session,
    runtime_for,
    verify_csrf,
)
from festguard.api.routes import router
from festguard.api.schemas import HealthStatus
from festguard.logging import get_logger
from festguard.service.runtime import Runtime, get_runtime
from festguard.storage.errors import StoreUnavailableError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API with the security middleware chain.

    Request flow: correlation id, recovery, security headers, body size
    limit, injection detection, session resolution, CSRF check, rate
    limiting, then the route.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            app.state.runtime = get_runtime()
        logger.info("app_started", version=__version__)
        yield
        try:
            await app.state.runtime.close()
            logger.info("runtime_cleanup_complete")
        except (StoreUnavailableError, ConnectionError, RuntimeError) as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Festguard", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    # registered innermost first; the last one added runs first
    app.middleware("http")(enforce_rate_limits)
    app.middleware("http")(verify_csrf)
    app.middleware("http")(resolve_session)
    app.middleware("http")(detect_injection)
    app.middleware("http")(limit_request_size)
    app.middleware("http")(add_security_headers)
    app.middleware("http")(recover_errors)
    app.middleware("http")(add_correlation_id)

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(request: Request) -> HealthStatus:
        """Report whether the shared store answers a ping."""
        rt = runtime_for(request)
        store = "disabled"
        if rt.cache is not None:
            try:
                await asyncio.wait_for(rt.cache.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
                store = "ok"
            except (StoreUnavailableError, asyncio.TimeoutError):
                logger.error("health_check_store_failed")
                store = "unavailable"
        status = "ok" if store == "ok" else "degraded"
        return HealthStatus(status=status, store=store, version=__version__)

    return app


app = create_app()
