import os
import sys
from pathlib import Path

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("SETTLEMENT_SWEEP_ENABLED", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from citycircle_api.app import create_app  # noqa: E402
from citycircle_api.db.base import Base  # noqa: E402
from citycircle_api.db.session import get_session, get_session_factory  # noqa: E402
from citycircle_api.observability.settlement import get_settlement_store  # noqa: E402
from citycircle_api.services.notifications import get_event_publisher  # noqa: E402


@pytest.fixture(autouse=True)
def reset_in_process_state():
    publisher = get_event_publisher()
    publisher.use_in_memory_backend()
    publisher.reset()
    get_settlement_store().reset()
    yield
    publisher.reset()
    get_settlement_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed engine so concurrent sessions hold separate connections."""

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'loops.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
