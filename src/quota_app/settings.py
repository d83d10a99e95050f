import logging
import os
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quota_app.db_models import AppSetting
from quota_app.security_config import parse_bool_env, parse_int_env

AUTO_REFRESH_KEY = "auto_refresh_minutes"
OAUTH_CLIENT_ID_KEY = "github_oauth_client_id"

DEFAULT_AUTO_REFRESH_MINUTES = 60
MIN_AUTO_REFRESH_MINUTES = 1
MAX_AUTO_REFRESH_MINUTES = 1440

logger = logging.getLogger(__name__)


def clamp_refresh_minutes(minutes: int | float | str | None) -> int:
    try:
        value = int(minutes)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        value = DEFAULT_AUTO_REFRESH_MINUTES
    return max(MIN_AUTO_REFRESH_MINUTES, min(MAX_AUTO_REFRESH_MINUTES, value))


def is_auto_refresh_enabled() -> bool:
    return parse_bool_env("AUTO_REFRESH_ENABLED", True)


def get_http_timeout_seconds() -> float:
    raw = os.getenv("HTTP_TIMEOUT_SECONDS", "10")
    try:
        timeout = float(raw)
    except ValueError:
        timeout = 10.0
    return max(1.0, timeout)


def get_refresh_concurrency() -> int:
    return parse_int_env("REFRESH_CONCURRENCY", 5, minimum=1, maximum=50)


def get_rate_limit_window_seconds() -> int:
    return parse_int_env("RATE_LIMIT_WINDOW_SECONDS", 60, minimum=1, maximum=86400)


def get_rate_limit_max_requests() -> int:
    return parse_int_env("RATE_LIMIT_MAX_REQUESTS", 30, minimum=1, maximum=100000)


async def get_setting(session: AsyncSession, key: str) -> str | None:
    row = await session.scalar(select(AppSetting).where(AppSetting.key == key))
    return row.value if row else None


async def set_setting(session: AsyncSession, key: str, value: str) -> None:
    row = await session.scalar(select(AppSetting).where(AppSetting.key == key))
    if row is None:
        session.add(AppSetting(key=key, value=value))
    else:
        row.value = value
        row.updated_at = datetime.utcnow()
    await session.commit()


async def get_auto_refresh_minutes(
    session_maker: async_sessionmaker[AsyncSession],
) -> int:
    """Persisted interval first, then AUTO_REFRESH_MINUTES, then 60."""
    async with session_maker() as session:
        stored = await get_setting(session, AUTO_REFRESH_KEY)
    if stored:
        return clamp_refresh_minutes(stored)
    return clamp_refresh_minutes(
        os.getenv("AUTO_REFRESH_MINUTES", str(DEFAULT_AUTO_REFRESH_MINUTES))
    )


async def save_auto_refresh_minutes(
    session_maker: async_sessionmaker[AsyncSession], minutes: int
) -> int:
    clamped = clamp_refresh_minutes(minutes)
    async with session_maker() as session:
        await set_setting(session, AUTO_REFRESH_KEY, str(clamped))
    logger.info("Auto-refresh interval set to %d minutes", clamped)
    return clamped


async def get_oauth_client_id(
    session_maker: async_sessionmaker[AsyncSession],
) -> str | None:
    async with session_maker() as session:
        stored = await get_setting(session, OAUTH_CLIENT_ID_KEY)
    if stored and stored.strip():
        return stored.strip()
    configured = (os.getenv("GITHUB_OAUTH_CLIENT_ID") or "").strip()
    return configured or None
