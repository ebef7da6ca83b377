"""
api/main.py -- FastAPI application entry point for VulnConsole.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan opens the two stores and the ownership resolver on startup and
closes the stores on shutdown.

Error mapping (see core/errors.py):
  AuthenticationError                      -> 401 envelope
  AuthorizationError, NotFoundError        -> 403 with an empty {} body
  ValidationError, InvalidTransitionError  -> 400 envelope
  RequestValidationError                   -> 400 envelope
  StorageError and anything unexpected     -> 500 envelope
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.domains import router as domains_router
from api.routes.v1.organizations import router as organizations_router
from api.routes.v1.users import router as users_router
from api.routes.v1.vulnerabilities import router as vulnerabilities_router
from auth.store import UserStore
from cmdb.ownership import OwnershipResolver
from cmdb.store import CMDBStore
from core.config import get_settings
from core.errors import (
    AuthenticationError,
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    StorageError,
    ValidationError,
)

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if get_settings().debug else logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("vulnconsole.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the stores before the first request and close them after the last.

    The resolver holds references to both stores, so it is built last.
    """
    logger.info("VulnConsole API starting up")
    app.state.user_store = UserStore()
    logger.info("Auth store initialized")
    app.state.cmdb = CMDBStore()
    logger.info("CMDB initialized")
    app.state.resolver = OwnershipResolver(app.state.cmdb, app.state.user_store)

    yield

    app.state.cmdb.close()
    app.state.user_store.close()
    logger.info("VulnConsole API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="VulnConsole API",
    description="Multi-tenant attack-surface console: organizations, domains and vulnerability triage.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    allow_credentials=True,
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(organizations_router, prefix="/api/v1", tags=["Organizations"])
app.include_router(domains_router, prefix="/api/v1", tags=["Domains"])
app.include_router(vulnerabilities_router, prefix="/api/v1", tags=["Vulnerabilities"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every non-403 error uses the same ErrorResponse envelope. 403 is a bare {}
# so a denial and an unknown id cannot be told apart.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(AuthenticationError)
async def authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    logger.info("Authentication failed on %s %s: %s", request.method, request.url.path, exc.message)
    return _error(401, "unauthenticated", "Authentication required.")


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    return JSONResponse(status_code=403, content={})


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    logger.info("Unresolved %s %s on %s %s", exc.kind, exc.resource_id, request.method, request.url.path)
    return JSONResponse(status_code=403, content={})


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return _error(400, exc.reason, exc.message)


@app.exception_handler(ValidationError)
async def domain_validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(400, exc.code, exc.message)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with a structured error when the body or path params fail validation."""
    return _error(400, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Structured errors for FastAPI/Starlette HTTP exceptions (unknown routes, bad methods)."""
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc.message)
    return _error(500, "storage_error", "An unexpected error occurred.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unexpected server errors. The traceback goes to the log only."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No auth and no rate limit: load balancers must always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    databases_ok = request.app.state.cmdb.ping() and request.app.state.user_store.ping()
    return HealthResponse(
        version=VERSION,
        components={"app": "ok", "database": "ok" if databases_ok else "error"},
    )
