"""
FastAPI Server - hr-authz entry point.

Authorization resolution and policy enforcement for the HR platform.
Other services call it via REST.
"""

import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .. import config
from ..exceptions import (
    ConflictNotFoundError,
    IdentityError,
    PolicyInUseError,
    PolicyNotFoundError,
    PolicyValidationError,
    PreviewNotAllowedError,
    RuleStoreError,
    UnknownGuardError,
)
from .dependencies import get_authz_engine
from .routers import (
    authz_router,
    conflicts_router,
    health_router,
    policies_router,
)

logger = config.get_logger("hr-authz")


# =============================================================================
# MIDDLEWARE
# =============================================================================


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Hardening and correlation headers.

    Authorization answers are per-request facts, so every /api response is
    marked uncacheable. Decision endpoints echo their verdict in
    X-Authz-Decision for callers that only read headers.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        if request.url.path.startswith("/api/"):
            response.headers["Cache-Control"] = "no-store"
        if config.settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        decision = getattr(request.state, "authz_decision", None)
        if decision is not None:
            response.headers["X-Authz-Decision"] = decision
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{elapsed_ms:.1f}ms"
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One log line per request, with the actor and verdict of decision calls."""

    async def dispatch(self, request: Request, call_next) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        state = request.state
        parts = [
            f"[HTTP] {request.method} {request.url.path} -> {response.status_code} ({elapsed_ms}ms)",
            f"caller={getattr(state, 'caller', '-')}",
        ]
        actor = getattr(state, "authz_actor", None)
        if actor:
            parts.append(f"actor={actor}")
        decision = getattr(state, "authz_decision", None)
        if decision:
            parts.append(f"decision={decision}")
        parts.append(f"request_id={getattr(state, 'request_id', '-')}")

        if response.status_code >= 500:
            logger.error(" ".join(parts))
        else:
            logger.info(" ".join(parts))
        return response


# =============================================================================
# LIFESPAN
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the rule snapshot on startup and stop watching on shutdown."""
    logger.info(f"[STARTUP] hr-authz starting (env={config.settings.ENVIRONMENT})")
    config.settings.log_config()

    engine = app.dependency_overrides.get(get_authz_engine, get_authz_engine)()
    loaded = await engine.start()
    if not loaded:
        logger.warning("[STARTUP] Rule snapshot not loaded - permission checks fail closed until it is")

    yield

    await engine.stop()
    logger.info("[SHUTDOWN] hr-authz shutting down")


# =============================================================================
# APPLICATION
# =============================================================================


app = FastAPI(
    title="hr-authz",
    description="Authorization resolution and policy enforcement for the HR platform",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs" if not config.settings.is_production else None,
    redoc_url="/redoc" if not config.settings.is_production else None,
)


app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Service-Secret",
        "X-Service-Name",
        "X-Request-ID",
    ],
)
logger.debug(f"[CORS] Allowed origins: {config.settings.allowed_origins}")


# =============================================================================
# ERROR MAPPING
# =============================================================================


def _error(status_code: int, detail: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, **extra})


@app.exception_handler(PolicyValidationError)
async def policy_validation_handler(request: Request, exc: PolicyValidationError):
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), errors=exc.errors)


@app.exception_handler(PolicyNotFoundError)
@app.exception_handler(ConflictNotFoundError)
@app.exception_handler(UnknownGuardError)
async def not_found_handler(request: Request, exc: Exception):
    return _error(status.HTTP_404_NOT_FOUND, str(exc))


@app.exception_handler(PolicyInUseError)
async def policy_in_use_handler(request: Request, exc: PolicyInUseError):
    return _error(status.HTTP_409_CONFLICT, str(exc), conflict_ids=exc.conflict_ids)


@app.exception_handler(IdentityError)
async def identity_handler(request: Request, exc: IdentityError):
    return _error(status.HTTP_400_BAD_REQUEST, str(exc))


@app.exception_handler(PreviewNotAllowedError)
async def preview_not_allowed_handler(request: Request, exc: PreviewNotAllowedError):
    return _error(status.HTTP_403_FORBIDDEN, str(exc))


@app.exception_handler(RuleStoreError)
async def rule_store_handler(request: Request, exc: RuleStoreError):
    logger.error(f"[HTTP] Rule store error on {request.url.path}: {exc}")
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Rule store unavailable")


# =============================================================================
# ROUTERS
# =============================================================================

app.include_router(health_router)
app.include_router(authz_router)
app.include_router(policies_router)
app.include_router(conflicts_router)
