from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from gatekeeper.api.error_handling import register_exception_handlers
from gatekeeper.api.middleware import transparent_refresh
from gatekeeper.api.routes import router
from gatekeeper.config import Settings
from gatekeeper.logging import clear_log_context, get_logger, set_correlation_id
from gatekeeper.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


async def add_correlation_id(request: Request, call_next):
    """Tag every request with a correlation id.

    The id comes from the client's X-Request-ID header when present, is bound
    into the structured log context and echoed back in the response header.
    """
    clear_log_context()
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Cache-Control", "no-store")
    return response


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Build the HTTP surface around a ``Runtime``.

    A runtime passed in is owned by the caller; one built here is closed on
    shutdown.
    """
    owns_runtime = runtime is None
    runtime = runtime or Runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_runtime:
            try:
                runtime.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title=runtime.settings.app_name, version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    # Middleware added last runs first: correlation id wraps the refresh step
    app.middleware("http")(transparent_refresh)
    app.middleware("http")(add_security_headers)
    app.middleware("http")(add_correlation_id)

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", tags=["health"])
    async def health():
        return {"status": "ok", "version": __version__}

    return app
