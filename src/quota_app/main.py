import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from quota_app.db import init_db_runtime
from quota_app.middleware import RateLimitMiddleware
from quota_app.reconciler import UsageReconciler
from quota_app.refresh_service import RefreshService
from quota_app.routers import health_router, refresh_router
from quota_app.scheduler import AutoRefreshScheduler
from quota_app.security_config import validate_secret_settings
from quota_app.settings import (
    get_auto_refresh_minutes,
    get_http_timeout_seconds,
    get_rate_limit_max_requests,
    get_rate_limit_window_seconds,
    get_refresh_concurrency,
    is_auto_refresh_enabled,
)
from quota_app.vault import get_vault
from quota_library import FixedWindowRateLimiter, ProviderSet, create_http_client
from quota_library.device_flow import DeviceFlowManager

# Load environment variables from .env file
load_dotenv()

# Configure logging
logging.basicConfig(level=(os.getenv("LOG_LEVEL") or "INFO").upper())

logger = logging.getLogger(__name__)

ROOT_DIR = Path.cwd()


def create_app(root_dir: Path | None = None) -> FastAPI:
    base_dir = root_dir or ROOT_DIR

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire the engine, vault, providers and scheduler to the app's lifespan."""
        app.state.started_at = time.monotonic()
        validate_secret_settings()

        engine, session_maker = await init_db_runtime(base_dir)
        vault = get_vault(base_dir)
        if not vault.self_check():
            await engine.dispose()
            raise RuntimeError("Credential encryption self-check failed")

        http_client = create_http_client(get_http_timeout_seconds())
        providers = ProviderSet.from_client(http_client)
        reconciler = UsageReconciler(session_maker, vault, providers)
        refresh_service = RefreshService(
            reconciler, session_maker, default_concurrency=get_refresh_concurrency()
        )
        scheduler = AutoRefreshScheduler(refresh_service)

        app.state.db_engine = engine
        app.state.db_session_maker = session_maker
        app.state.vault = vault
        app.state.http_client = http_client
        app.state.refresh_service = refresh_service
        app.state.scheduler = scheduler
        app.state.device_flows = DeviceFlowManager(http_client)

        if is_auto_refresh_enabled():
            scheduler.start(await get_auto_refresh_minutes(session_maker))
        else:
            logger.info("Auto-refresh disabled by AUTO_REFRESH_ENABLED")

        logger.info("Kuota started")
        try:
            yield
        finally:
            await scheduler.stop()
            await http_client.aclose()
            await engine.dispose()
            logger.info("Kuota stopped")

    app = FastAPI(title="Kuota", lifespan=lifespan)
    limiter = FixedWindowRateLimiter(
        window_seconds=get_rate_limit_window_seconds(),
        max_requests=get_rate_limit_max_requests(),
    )
    app.state.rate_limiter = limiter
    app.add_middleware(RateLimitMiddleware, limiter=limiter)
    app.include_router(health_router)
    app.include_router(refresh_router)
    return app


app = create_app()
