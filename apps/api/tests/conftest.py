import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RAPIDAPI_KEY", "test-rapidapi-key")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from database import Base  # noqa: E402
from main import app  # noqa: E402
from routers import rate_limit  # noqa: E402
from services import keyword_pool, media_download, video_queue  # noqa: E402


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def reset_service_singletons():
    """Each test gets a fresh queue, keyword pool and downloader."""
    video_queue._queue = None
    keyword_pool._manager = None
    media_download._downloader = None
    yield
    video_queue._queue = None
    keyword_pool._manager = None
    media_download._downloader = None


@pytest_asyncio.fixture
async def sqlite_session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'acquisition.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
