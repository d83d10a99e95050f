import os
from pathlib import Path

from sqlalchemy import event, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from quota_app.db_models import Base
from quota_app.security_config import get_data_dir, parse_int_env


def get_database_url(root_dir: Path) -> str:
    configured = os.getenv("DATABASE_URL")
    if configured:
        return configured
    db_dir = get_data_dir(root_dir)
    db_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{db_dir / 'kuota.db'}"


def _is_sqlite_url(database_url: str) -> bool:
    driver = make_url(database_url).get_backend_name()
    return driver == "sqlite"


def _get_sqlite_busy_timeout_ms() -> int:
    return parse_int_env("SQLITE_BUSY_TIMEOUT_MS", 5000, minimum=1000, maximum=600000)


def _configure_sqlite_engine(engine: AsyncEngine) -> None:
    busy_timeout_ms = _get_sqlite_busy_timeout_ms()

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA temp_store=MEMORY")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        cursor.close()


def create_db_engine(database_url: str) -> AsyncEngine:
    connect_args = {}
    if _is_sqlite_url(database_url):
        connect_args["timeout"] = _get_sqlite_busy_timeout_ms() / 1000

    engine = create_async_engine(database_url, future=True, connect_args=connect_args)
    if _is_sqlite_url(database_url):
        _configure_sqlite_engine(engine)
    return engine


async def init_db_runtime(
    root_dir: Path,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    database_url = get_database_url(root_dir)
    engine = create_db_engine(database_url)
    session_maker = async_sessionmaker(engine, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return engine, session_maker


async def check_database(session_maker: async_sessionmaker[AsyncSession]) -> None:
    async with session_maker() as session:
        await session.execute(text("SELECT 1"))
