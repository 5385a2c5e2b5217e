"""
main.py — Cadastre Registry Entry Point
========================================
It does 4 things in order:
    1. Configures logging
    2. Creates the FastAPI app
    3. Connects the database and starts the session expiry sweeper
    4. Registers all API route modules

Run with:
    uvicorn main:app --reload --host 0.0.0.0 --port 8000

Or simply:
    python main.py
"""

import logging
import uvicorn
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings

# ── Database ──────────────────────────────────────────────────────────────────
from db.session import engine, init_db

# ── Core systems ──────────────────────────────────────────────────────────────
from core.errors import CadastreError
from core.scheduler import expiry_sweeper

# ── API Routers ───────────────────────────────────────────────────────────────
from api.routes_sessions import router as sessions_router
from api.routes_approvals import router as approvals_router
from api.routes_parcels import router as parcels_router


# ── Logging setup ─────────────────────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler(settings.LOG_FILE),
    ],
)
logger = logging.getLogger("cadastre.main")


# ── Lifespan: runs on startup and shutdown ────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    # 1. Initialize database (creates tables if they don't exist yet)
    logger.info("Connecting to database...")
    await init_db()
    logger.info("✓ Database ready")

    # 2. Document store
    Path(settings.UPLOAD_DIR).mkdir(parents=True, exist_ok=True)
    logger.info(f"✓ Document store at {settings.UPLOAD_DIR}")

    # 3. Session expiry sweeper
    if settings.EXPIRY_SWEEP_ENABLED:
        await expiry_sweeper.start()

    logger.info("=" * 50)
    logger.info(f"  {settings.APP_NAME} is LIVE on port {settings.PORT}")
    logger.info("=" * 50)

    yield

    logger.info("Shutting down...")
    await expiry_sweeper.stop()
    logger.info("✓ Shutdown complete")


# ── Create the FastAPI app ────────────────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Municipal land cadastre with maker-checker approvals",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ── Middleware ─────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

if settings.ENVIRONMENT == "production":
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)


# ── Error handling ────────────────────────────────────────────────────────────
@app.exception_handler(CadastreError)
async def cadastre_error_handler(request: Request, exc: CadastreError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Register all routers ──────────────────────────────────────────────────────
app.include_router(sessions_router,  prefix="/sessions",  tags=["Registration Sessions"])
app.include_router(approvals_router, prefix="/approvals", tags=["Approvals"])
app.include_router(parcels_router,   prefix="/parcels",   tags=["Parcels"])


# ── Root endpoint ─────────────────────────────────────────────────────────────
@app.get("/", tags=["Status"])
async def root():
    """Health check: confirms the API is running."""
    return {
        "system": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "operational",
        "docs": "/docs",
    }


@app.get("/health-check", tags=["Status"])
async def health_check():
    """Deep health check: database reachable, sweeper running."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    return {
        "api": "ok",
        "database": "ok",
        "expiry_sweeper": "running" if expiry_sweeper.is_running() else "stopped",
        "last_expired": expiry_sweeper.last_expired,
    }


# ── Run directly ──────────────────────────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
