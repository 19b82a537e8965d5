import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from app.core.config import settings
from app.core.retry import RetryPolicy
from app.db.redis_client import redis_client
from app.db.session import init_models
from app.routers import lead, sync
from app.services.crm_client import CRMClient
from app.services.crm_session import CRMSessionManager
from app.services.sync_engine import SyncEngine
from app.services.sync_lock import SyncLock

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_models()

    # One CRM session and one HTTP connection pool per process
    http = httpx.AsyncClient()
    sessions = CRMSessionManager(
        http,
        base_url=settings.CRM_URL,
        database=settings.CRM_DATABASE,
        username=settings.CRM_USERNAME,
        password=settings.CRM_PASSWORD.get_secret_value(),
        ttl_seconds=settings.CRM_SESSION_TTL_SECONDS,
        timeout=settings.CRM_TIMEOUT_SECONDS,
    )
    crm = CRMClient(
        http,
        sessions,
        retry_policy=RetryPolicy(
            max_attempts=settings.CRM_RETRY_ATTEMPTS,
            base_delay=settings.CRM_RETRY_DELAY_SECONDS,
        ),
        timeout=settings.CRM_TIMEOUT_SECONDS,
        default_source=settings.CRM_DEFAULT_SOURCE,
        default_stage=settings.CRM_DEFAULT_STAGE,
        stage_fallback_to_first=settings.CRM_STAGE_FALLBACK_TO_FIRST,
    )
    lock = SyncLock(
        redis=redis_client if settings.SYNC_USE_REDIS_LOCK else None,
        timeout_seconds=settings.SYNC_LOCK_TIMEOUT_SECONDS,
    )
    app.state.crm_sessions = sessions
    app.state.sync_engine = SyncEngine(crm, lock, page_size=settings.CRM_PULL_PAGE_SIZE)
    logger.info("CRM sync configured for %s (db=%s)", settings.CRM_URL, settings.CRM_DATABASE)
    try:
        yield
    finally:
        await http.aclose()
        if settings.SYNC_USE_REDIS_LOCK:
            await redis_client.aclose()


app = FastAPI(
    title="Realty Lead Lifecycle & CRM Sync",
    version="1.0.0",
    lifespan=lifespan,
)

# --- Register Routers ---
app.include_router(lead.router)     # /api/v1/leads/*
app.include_router(sync.router)     # /api/v1/sync/*


# --- Root health check ---
@app.get("/")
async def root():
    return {"message": "Lead lifecycle backend is running"}
