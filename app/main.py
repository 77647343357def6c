import asyncio
import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

# Import all models to ensure they're registered with SQLAlchemy Base
from . import (
    models,  # noqa: F401
    models_mercadopago,  # noqa: F401
)
from .config import SWEEPER_ENABLED
from .database import Base, engine, get_db
from .domain.complexes.router import owner_router as complexes_owner_router
from .domain.complexes.router import router as complexes_router
from .domain.payments.router import router as payments_webhooks_router
from .domain.reservations.router import router as reservations_router
from .errors import register_exception_handlers
from .sweeper import ExpirySweeper

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

SLOW_REQUEST_MS = float(os.getenv("SLOW_REQUEST_MS", "2000"))

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")

    stop_event = asyncio.Event()
    sweeper_task = None
    if SWEEPER_ENABLED:
        sweeper_task = asyncio.create_task(ExpirySweeper().run(stop_event))
    else:
        logger.info("In-process expiry sweeper disabled (ARQ cron expected)")

    yield

    logger.info("Application shutting down...")
    stop_event.set()
    if sweeper_task:
        await sweeper_task


app = FastAPI(title="Field Booking API", version="1.0.0", lifespan=lifespan)

register_exception_handlers(app)


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"❌ {request.method} {request.url.path} - Database error: {exc}")
    return JSONResponse(status_code=500, content={"error": "internal_error", "detail": "Internal server error"})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"❌ {request.method} {request.url.path} - Error: {e}")
        raise
    elapsed_ms = (time.perf_counter() - started) * 1000
    if elapsed_ms > SLOW_REQUEST_MS:
        logger.warning(f"🐌 {request.method} {request.url.path} took {elapsed_ms:.0f}ms ({response.status_code})")
    return response


# CORS Configuration
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")

# Log CORS configuration for debugging
logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Routes
app.include_router(reservations_router)
app.include_router(complexes_router)
app.include_router(complexes_owner_router)
app.include_router(payments_webhooks_router)


@app.get("/")
def root():
    return {"message": "Field Booking API is running"}


@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except SQLAlchemyError as e:
        logger.error(f"❌ Health check database error: {e}")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "database": "unreachable"})
