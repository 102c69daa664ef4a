"""
Main FastAPI application
"""
import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from rentalhub.config.database import db_config
from rentalhub.config.settings import settings
from rentalhub.routes import auth, rentals, disputes, fees, commissions, uploads
from rentalhub.services.expiry_scheduler import run_expiry_scheduler
from rentalhub.utils.errors import EngineError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events"""
    # Startup
    await db_config.connect_db()
    scheduler = asyncio.create_task(run_expiry_scheduler(settings.EXPIRY_SCAN_INTERVAL_SECONDS))
    print(f"🚀 {settings.APP_NAME} v{settings.VERSION} started")
    yield
    # Shutdown
    scheduler.cancel()
    try:
        await scheduler
    except asyncio.CancelledError:
        pass
    await db_config.close_db()
    print("👋 Application shutdown")

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if exc.public:
        logger.info("%s %s -> %s %s: %s", request.method, request.url.path, exc.status_code, exc.code, exc.message)
    else:
        logger.error("%s %s -> %s %s: %s", request.method, request.url.path, exc.status_code, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_response())


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Round-trip through json with default=str to handle non-serializable objects (e.g. ValueError)
    safe_errors = json.loads(json.dumps(exc.errors(), default=str))
    print("\n" + "=" * 60)
    print(f"❌ 422 VALIDATION ERROR on {request.method} {request.url.path}")
    print(f"📋 ERRORS: {json.dumps(safe_errors, indent=2)}")
    print("=" * 60 + "\n")
    return JSONResponse(status_code=422, content={"detail": safe_errors})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time
    logger.info("%s %s - %s (%.2fs)", request.method, request.url.path, response.status_code, duration)
    return response

# Mount static files
os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")

# Include routers
app.include_router(auth.router, prefix="/api")
app.include_router(rentals.router, prefix="/api")
app.include_router(disputes.router, prefix="/api")
app.include_router(fees.router, prefix="/api")
app.include_router(commissions.router, prefix="/api")
app.include_router(uploads.router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "app": settings.APP_NAME,
        "version": settings.VERSION,
        "status": "running"
    }

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
