import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .auth import get_optional_user
from .cache import create_cache
from .errors import AppError
from .identity import Identity, build_authenticator
from .routes.diagnostics import router as diagnostics_router
from .routes.orders import router as orders_router
from .routes.products import router as products_router
from .routes.users import router as users_router
from .services.notifications import build_publisher
from .settings import settings, DATABASE_URL
from . import db
from . import limits

logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application startup and shutdown."""
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    print(f"[startup] Stage: {settings.stage}")

    # Startup: initialize database pool if configured
    if DATABASE_URL:
        try:
            await db.init_pool()
            print("[startup] Database pool initialized successfully")
        except Exception as e:
            print(f"[startup] WARNING: Failed to initialize database pool: {e}")
            print("[startup] Data endpoints will answer 500 until the database is reachable")
    else:
        print("[startup] No DATABASE_URL configured - running without database")

    # Initialize rate limiter
    try:
        await limits.init_limiter()
        print(f"[startup] Rate limiter initialized ({limits.get_limiter_type()})")
    except Exception as e:
        print(f"[startup] WARNING: Failed to initialize rate limiter: {e}")

    # Verification strategy is fixed for the life of the process
    key_cache = create_cache(max_entries=settings.jwks_cache_max_entries)
    app.state.authenticator = build_authenticator(settings, cache=key_cache)
    print(f"[startup] Authentication strategy: {settings.auth_strategy}")

    app.state.publisher = build_publisher(settings)

    yield

    # Shutdown
    await app.state.authenticator.close()
    await key_cache.close()
    await limits.close_limiter()
    await db.close_pool()


app = FastAPI(
    title="Storefront Admin API",
    lifespan=lifespan
)


# --- Error handlers ---


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.error(f"{exc.title}: {exc.message} request_id={getattr(request.state, 'request_id', '-')}")
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(exc.to_body(expose_internals=not settings.is_production)),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in err["loc"] if part != "body"),
            "problem": err["msg"],
            "provided": err.get("input"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "error": "Validation failed",
            "message": "; ".join(f"{d['field']}: {d['problem']}" for d in details),
            "details": details,
        }),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": "An unexpected error occurred"},
    )


# --- Routers ---

app.include_router(orders_router)
app.include_router(products_router)
app.include_router(users_router)
app.include_router(diagnostics_router)


# --- Middleware (the last one added runs first) ---

# CORS configuration from settings
# If no origins configured, allow any origin for development
allowed_origins = settings.allowed_origins if settings.allowed_origins else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-Response-Time", "X-Rate-Limit-Remaining"],
)


def _cors_origin(request: Request) -> str:
    origin = request.headers.get("Origin")
    if "*" in allowed_origins:
        return origin or "*"
    if origin in allowed_origins:
        return origin
    return allowed_origins[0]


class PreflightMiddleware(BaseHTTPMiddleware):
    """Answer every OPTIONS request directly; preflights never authenticate."""

    async def dispatch(self, request: Request, call_next):
        if request.method != "OPTIONS":
            return await call_next(request)
        return JSONResponse(
            status_code=200,
            content={"message": "CORS preflight"},
            headers={
                "Access-Control-Allow-Origin": _cors_origin(request),
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
                "Access-Control-Allow-Headers": "Content-Type, Authorization, X-Request-ID",
                "Access-Control-Max-Age": "86400",
            },
        )


app.add_middleware(PreflightMiddleware)


# --- Rate Limiting Middleware ---
# Paths exempt from rate limiting (load balancer health checks)
UNLIMITED_PATHS = {"/health"}


def _get_client_ip(request: Request) -> str:
    """Extract real client IP, respecting X-Forwarded-For from trusted proxies."""
    # API gateways set X-Forwarded-For; take the first (client) IP
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    # Fallback to direct connection
    if request.client:
        return request.client.host
    return "unknown"


def _get_or_create_request_id(request: Request) -> str:
    """Get request ID from header or generate one."""
    return request.headers.get("X-Request-ID") or str(uuid.uuid4())


def _stamp(response, request_id: str, start_time: float, remaining: Optional[int] = None):
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{int((time.time() - start_time) * 1000)}ms"
    if remaining is not None:
        response.headers["X-Rate-Limit-Remaining"] = str(remaining)
    return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Middleware that enforces per-IP request limits before any auth or data work.

    Every response is tagged with a request ID and its duration so log lines
    and client reports can be correlated.
    """

    async def dispatch(self, request: Request, call_next):
        # Generate/get request ID for correlation
        request_id = _get_or_create_request_id(request)
        start_time = time.time()

        # Stash on request for downstream logging
        client_ip = _get_client_ip(request)
        request.state.request_id = request_id
        request.state.client_ip = client_ip

        limiter = limits.get_limiter()
        if not limiter or request.url.path in UNLIMITED_PATHS:
            response = await call_next(request)
            return _stamp(response, request_id, start_time)

        client_hash = limits.hash_client_for_logging(client_ip)
        try:
            result = await limiter.check(client_ip)
        except Exception as e:
            # Fail open: if limiter errors, allow request through
            print(f"[limits] Middleware error: {e} request_id={request_id}")
            response = await call_next(request)
            return _stamp(response, request_id, start_time)

        if not result.allowed:
            print(f"[limits] 429 client={client_hash} path={request.url.path} request_id={request_id}")
            response = JSONResponse(
                status_code=429,
                content=limits.make_rate_limit_response(result, request_id),
                headers={
                    "Retry-After": str(result.retry_after),
                    # CORSMiddleware never sees this response
                    "Access-Control-Allow-Origin": _cors_origin(request),
                    "Access-Control-Allow-Credentials": "true",
                    "Access-Control-Expose-Headers": "Retry-After, X-Request-ID, X-Rate-Limit-Remaining",
                },
            )
            return _stamp(response, request_id, start_time, remaining=0)

        response = await call_next(request)

        duration_ms = int((time.time() - start_time) * 1000)
        print(f"[request] client={client_hash} method={request.method} path={request.url.path} status={response.status_code} duration_ms={duration_ms} request_id={request_id}")

        return _stamp(response, request_id, start_time, remaining=result.remaining)


# Add rate limiting middleware
app.add_middleware(RateLimitMiddleware)


# Server version for health checks
SERVER_VERSION = "1.0.0"

@app.get("/health")
async def health(user: Optional[Identity] = Depends(get_optional_user)):
    """
    Health check endpoint - no authentication required.
    Used by load balancers and orchestrators.
    """
    body = {
        "status": "ok",
        "version": SERVER_VERSION,
        "stage": settings.stage,
        "timestamp": int(time.time()),
        "database": "configured" if DATABASE_URL else "not configured",
        "limiter": limits.get_limiter_type(),
        "instance_id": limits.get_instance_id(),
        "uptime_seconds": limits.get_uptime_seconds(),
    }
    if user is not None:
        body["user"] = {"username": user.username, "is_admin": user.is_admin}
    return body


def cli():
    import uvicorn
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=8000, reload=settings.debug)

if __name__ == "__main__":
    cli()
