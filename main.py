"""FastAPI application entrypoint for the SmartAssist session & synchronization engine."""
import sys
import time
import uuid
from contextlib import asynccontextmanager

# Ensure UTF-8 encoding
if sys.stdout and hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding='utf-8')

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from smartassist.api.routes import router
from smartassist.core.config import settings
from smartassist.core.errors import SmartAssistError
from smartassist.core.logging import get_logger, setup_logging
from smartassist.infrastructure.redis import RedisNotificationChannel
from smartassist.services.engine import build_engine

# Initialize structured logging
log_format = settings.environment == "production"
setup_logging(level=settings.log_level, json_format=log_format)
logger = get_logger(__name__)

# Application metadata
APP_VERSION = "1.0.0"
APP_NAME = "SmartAssist"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the engine on startup and release it on shutdown."""
    logger.info("Application starting up", extra={"version": APP_VERSION})
    engine = await build_engine(settings)
    await engine.start()
    app.state.engine = engine
    try:
        yield
    finally:
        logger.info("Application shutting down")
        await engine.close()


app = FastAPI(
    title=APP_NAME,
    description="Live student progress, code snapshots and help requests for teachers",
    version=APP_VERSION,
    docs_url="/docs" if settings.environment != "production" else None,  # Disable in prod
    redoc_url="/redoc" if settings.environment != "production" else None,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Middleware to log all requests with timing and status code."""
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    start_time = time.time()

    logger.info(
        f"Request started: {request.method} {request.url.path}",
        extra={
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "client": request.client.host if request.client else None,
        }
    )

    try:
        response = await call_next(request)
        duration_ms = (time.time() - start_time) * 1000

        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "status_code": response.status_code,
                "duration_ms": round(duration_ms, 2),
            }
        )

        response.headers["X-Request-ID"] = request_id
        return response

    except Exception as e:
        duration_ms = (time.time() - start_time) * 1000
        logger.error(
            f"Request failed: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "duration_ms": round(duration_ms, 2),
                "error": str(e),
            },
            exc_info=True
        )
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "message": "Internal server error", "request_id": request_id}
        )


@app.exception_handler(SmartAssistError)
async def smartassist_error_handler(request: Request, exc: SmartAssistError):
    """Render engine errors as ``{error, message, detail, retryable}``."""
    if exc.status_code >= 500:
        logger.error(exc.message, extra={"error": exc.detail, "path": request.url.path})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(router, prefix=settings.api_prefix)


@app.get("/")
def root():
    """Root endpoint with basic service info."""
    return {
        "service": APP_NAME,
        "version": APP_VERSION,
        "status": "running",
        "environment": settings.environment
    }


@app.get("/health")
def health_check():
    """Liveness probe. Returns 200 if the process is serving requests."""
    return {
        "status": "healthy",
        "version": APP_VERSION,
        "checks": {
            "api": "ok",
            "config": settings.store_backend,
        }
    }


@app.get("/ready")
async def readiness_check(request: Request):
    """Readiness probe: the store answers and change notifications are flowing."""
    engine = getattr(request.app.state, "engine", None)
    checks = {}

    if engine is None:
        return JSONResponse(status_code=503, content={"status": "starting", "checks": checks})

    try:
        await engine.tutorials.all()
        checks["store"] = "ok"
    except SmartAssistError:
        checks["store"] = "error"

    if isinstance(engine.channel, RedisNotificationChannel):
        if not engine.channel.listening:
            checks["notifications"] = "error"
        else:
            try:
                await engine.channel.redis.ping()
                checks["notifications"] = "redis"
            except Exception:
                checks["notifications"] = "error"
    else:
        checks["notifications"] = "local"

    all_ok = "error" not in checks.values()

    return {
        "status": "ready" if all_ok else "degraded",
        "checks": checks
    }
