from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from authgate.api.error_handling import rate_limited_response, register_exception_handlers
from authgate.api.routes import pages, router
from authgate.config import Settings
from authgate.logging import get_logger, set_correlation_id
from authgate.service.gateway import GatewayAction, GatewayRequest, client_ip_from

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from authgate.service.runtime import get_runtime

    get_runtime()
    yield
    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="AuthGate", version=__version__, lifespan=lifespan)


_STATE_CHANGING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _allowed_origins() -> List[str]:
    origins = list(_settings.trusted_origins)
    if _settings.app_base_url and _settings.app_base_url not in origins:
        origins.append(_settings.app_base_url.rstrip("/"))
    return origins


@app.middleware("http")
async def auth_gateway(request: Request, call_next):
    """Run the gateway decision before any route handler.

    Throttled requests get a 429 envelope, unauthenticated page requests a
    temporary redirect. Allowed requests carry the rate-limit headers.
    """
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    decision = await runtime.gateway.decide(
        GatewayRequest(
            path=request.url.path,
            query_string=request.url.query,
            cookies=dict(request.cookies),
            client_ip=client_ip_from(
                request.headers,
                request.client.host if request.client else None,
                trust_proxy_headers=runtime.settings.trust_proxy_headers,
            ),
        )
    )
    if decision.action is GatewayAction.THROTTLE:
        logger.warning("rate_limited", path=request.url.path, limit=decision.error.limit)
        return rate_limited_response(decision.error)
    if decision.action is GatewayAction.REDIRECT:
        logger.info("gateway_redirect", path=request.url.path, location=decision.location)
        return RedirectResponse(decision.location, status_code=307)
    response = await call_next(request)
    for name, value in decision.headers.items():
        response.headers.setdefault(name, value)
    return response


@app.middleware("http")
async def enforce_trusted_origin(request: Request, call_next):
    # Only cookie-authenticated state changes can be forged cross-site
    if request.method.upper() not in _STATE_CHANGING_METHODS:
        return await call_next(request)
    origin = request.headers.get("Origin")
    if not origin or not request.cookies:
        return await call_next(request)
    if origin.rstrip("/") not in _allowed_origins():
        logger.warning("untrusted_origin_rejected", origin=origin, path=request.url.path)
        return JSONResponse(
            status_code=403,
            content={
                "status": "error",
                "error": {"code": "forbidden", "message": "untrusted origin"},
            },
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.cookie_secure:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line and response with an X-Request-ID.

    The client's header is reused when present, otherwise a new UUID is generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


# Outermost, so gateway 429s and redirects also carry CORS headers.
app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


register_exception_handlers(app)
app.include_router(router)
app.include_router(pages)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report Redis reachability and build version."""
    from authgate.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    overall_healthy = True

    async def _run_bounded(label: str, probe) -> bool:
        try:
            return bool(await asyncio.wait_for(probe(), HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:  # pragma: no cover - logged and reported unhealthy
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    checks["store"] = {"status": "healthy", "type": "memory"}
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.ping)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
        overall_healthy = overall_healthy and redis_ok
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if overall_healthy else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
