"""
FoodieMap backend - account verification and lifecycle API.
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException as FastAPIHTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from foodiemap.core.config import settings
from foodiemap.core.database import init_db
from foodiemap.core.errors import RateLimitExceeded, TransientStoreError, ValidationError
from foodiemap.routes.account import router as account_router
from foodiemap.routes.admin import router as admin_router
from foodiemap.routes.auth import router as auth_router
from foodiemap.routes.dependencies import get_dispatcher
from foodiemap.routes.verification import router as verification_router
from foodiemap.services.account_purge import PurgeScheduler

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Initializing database tables...")
    init_db()
    logger.info("Database tables created successfully.")

    scheduler = None
    if settings.PURGE_SCHEDULER_ENABLED:
        scheduler = PurgeScheduler()
        scheduler.start()
    app.state.purge_scheduler = scheduler

    yield

    # Shutdown
    if scheduler:
        scheduler.shutdown()
    get_dispatcher().shutdown()
    logger.info("FoodieMap backend stopped.")


app = FastAPI(title="FoodieMap Backend", lifespan=lifespan)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Standardize error responses to {"message": "..."}
@app.exception_handler(FastAPIHTTPException)
async def custom_http_exception_handler(request: Request, exc: FastAPIHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.detail})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"message": exc.message, "field": exc.field})


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"message": "Please wait before requesting another code."},
        headers={"Retry-After": str(exc.retry_after_seconds)},
    )


@app.exception_handler(TransientStoreError)
async def transient_store_error_handler(request: Request, exc: TransientStoreError):
    logger.error(f"Transient store error: {exc}")
    return JSONResponse(
        status_code=503,
        content={"message": "Service temporarily unavailable, please retry."},
        headers={"Retry-After": "5"},
    )


# Include routers
app.include_router(auth_router)
app.include_router(verification_router)
app.include_router(account_router)
app.include_router(admin_router)


@app.get("/health")
def health_check():
    scheduler = getattr(app.state, "purge_scheduler", None)
    next_run = scheduler.next_run_time() if scheduler else None
    return {
        "status": "ok",
        "purge_scheduler": "running" if scheduler and scheduler.running else "disabled",
        "next_purge_at": next_run.isoformat() if next_run else None,
    }


if __name__ == "__main__":
    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT, reload=False)
