import os
import re
import uuid
import asyncio
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.routers import shopify_install, shopify_stores, shopify_webhooks
from app.utils.logger import logger

app = FastAPI(title="Shopify Connector API", version="1.0.0")

# CORS configuration
origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]
if settings.app_base_url and settings.app_base_url not in origins:
    origins.append(settings.app_base_url)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logger.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logger.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        # Add Request ID to response headers for easier debugging
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logger.exception("Unhandled error rid=%s: %s", rid, type(e).__name__)
        # Internals stay in the log; clients only get the request id.
        error_resp = JSONResponse({"error": "internal_error", "rid": rid}, status_code=500)
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(shopify_install.router)
app.include_router(shopify_stores.router)
app.include_router(shopify_webhooks.router)


def _run_migrations(database_url: str) -> None:
    """``alembic upgrade head``, falling back to ``create_all``."""

    from app.models_sqlalchemy import Base, engine
    from app.models_sqlalchemy import models  # noqa: F401  registers tables

    try:
        from alembic.config import Config
        from alembic import command

        backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        alembic_cfg = Config(os.path.join(backend_dir, "alembic.ini"))
        alembic_cfg.set_main_option("script_location", os.path.join(backend_dir, "alembic"))
        alembic_cfg.set_main_option("sqlalchemy.url", database_url)
        command.upgrade(alembic_cfg, "head")
        logger.info("✅ Database migrations completed successfully!")
    except Exception as e:
        logger.warning(f"⚠️  Alembic migration failed: {type(e).__name__}: {e}")
        logger.info("🔨 Creating tables manually...")
        try:
            Base.metadata.create_all(bind=engine)
            logger.info("✅ Tables created successfully!")
        except Exception as e2:
            logger.error(f"❌ Failed to create tables: {e2}")


@app.on_event("startup")
async def startup_event():
    logger.info("=" * 60)
    logger.info("Shopify Connector API starting up (api_version=%s)", settings.SHOPIFY_API_VERSION)
    logger.info("=" * 60)

    database_url = settings.DATABASE_URL
    masked_url = re.sub(r'://([^:]+):([^@]+)@', r'://\1:****@', database_url)
    logger.info(f"📊 Database URL: {masked_url}")

    if database_url.startswith("sqlite"):
        # Local runs and tests: no migration history, build the schema directly.
        from app.models_sqlalchemy import Base, engine
        from app.models_sqlalchemy import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
    else:
        logger.info("📊 Running database migrations...")
        await asyncio.to_thread(_run_migrations, database_url)

    if not settings.SHOPIFY_API_SECRET:
        logger.warning("⚠️  SHOPIFY_API_SECRET is not set; every install callback and webhook will be rejected")

    if settings.SHOPIFY_SYNC_LOOP_ENABLED:
        from app.workers import run_shopify_sync_loop

        asyncio.create_task(run_shopify_sync_loop(settings.SHOPIFY_SYNC_INTERVAL_SECONDS))
        logger.info("✅ Shopify sync loop started (runs every %s seconds)", settings.SHOPIFY_SYNC_INTERVAL_SECONDS)


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    try:
        from app.models_sqlalchemy import engine
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}",
        )


@app.get("/")
async def root():
    return {
        "message": "Shopify Connector API",
        "version": "1.0.0",
        "docs": "/docs"
    }
