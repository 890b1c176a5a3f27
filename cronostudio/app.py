from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request

from cronostudio.api.error_handling import register_exception_handlers, unhandled_error_response
from cronostudio.api.middleware import Respond, apply_cors_headers, cors_gate
from cronostudio.api.routes import router
from cronostudio.config import get_settings
from cronostudio.logging import get_logger, set_correlation_id
from cronostudio.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0


async def _run_bounded(label: str, func: Callable[[], Any]) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_failed", component=label, error_type=type(exc).__name__, error=str(exc))
    return False


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API around ``runtime``; a default one is built from the environment."""
    runtime = runtime or Runtime(get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "app_started",
            environment=runtime.settings.environment.value,
            memory_store=runtime.settings.use_memory_store,
        )
        await runtime.open_cache()
        yield
        await runtime.close()

    app = FastAPI(title="CronoStudio API", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    allowed_origins = list(runtime.settings.cors_allowed_origins)

    # Middleware added last runs first: correlation id, security headers, CORS.
    # Uncaught errors become a 500 inside the CORS layer so every header still applies.
    @app.middleware("http")
    async def gate_cors(request: Request, call_next):
        outcome = cors_gate(request, allowed_origins)
        if isinstance(outcome, Respond):
            return outcome.response
        try:
            response = await call_next(request)
        except Exception as exc:
            response = unhandled_error_response(request, exc)
        apply_cors_headers(request, response, allowed_origins)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-XSS-Protection", "1; mode=block")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault("Cache-Control", "no-store")
        if runtime.settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", tags=["health"])
    async def healthz(request: Request) -> Dict[str, Any]:
        """Report database and Redis reachability."""
        rt: Runtime = request.app.state.runtime
        checks: Dict[str, Dict[str, Any]] = {}

        db_ok = await _run_bounded("database", lambda: rt.store.verify_connection())
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": "memory" if rt.settings.use_memory_store else "postgres",
        }

        healthy = db_ok
        if rt.settings.redis_url:

            def _redis_ping() -> None:
                cache = rt.cache
                if cache is None:
                    raise ConnectionError("redis unavailable")
                cache.verify_connection()

            redis_ok = await _run_bounded("redis", _redis_ping)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


def serve() -> None:
    """Run the API under uvicorn; HOST, PORT and WORKERS come from the environment."""
    uvicorn.run(
        "cronostudio.app:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        workers=int(os.getenv("WORKERS", "1")),
        access_log=True,
    )
