import sys
from pathlib import Path
from typing import Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from quota_app.db_models import Account, Base
from quota_app.vault import CredentialVault

TEST_SECRET = "test-secret-for-kuota"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("KUOTA_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("KUOTA_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("APP_SECRET", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.delenv("ALLOW_INSECURE_DEFAULTS", raising=False)


@pytest.fixture(scope="session")
def vault() -> CredentialVault:
    return CredentialVault(TEST_SECRET)


@pytest_asyncio.fixture
async def session_maker() -> async_sessionmaker:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield maker
    finally:
        await engine.dispose()


@pytest.fixture
def add_account(session_maker: async_sessionmaker, vault: CredentialVault) -> Callable:
    async def _add(username: str = "octocat", *, token: str | None = "ghp_test", **fields) -> Account:
        fields.setdefault("account_type", "copilot")
        async with session_maker() as session:
            account = Account(
                username=username,
                pat_token=vault.encrypt(token) if token else None,
                **fields,
            )
            session.add(account)
            await session.commit()
            await session.refresh(account)
            return account

    return _add


@pytest_asyncio.fixture
async def make_client():
    clients: list[httpx.AsyncClient] = []

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    try:
        yield _make
    finally:
        for client in clients:
            await client.aclose()
