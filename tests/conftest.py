"""Shared fixtures: in-memory SQLite sessions, fakeredis, sample rows."""
from __future__ import annotations

import os
import tempfile

# Settings are read once and cached, so the environment must be in place
# before anything imports reelsmith.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("MEDIA_ROOT", tempfile.mkdtemp(prefix="reelsmith-media-"))
os.environ.setdefault("IMAGE_RETRY_DELAY_SEC", "0")
os.environ.setdefault("PUBLISH_RETRY_DELAY_SEC", "0")
os.environ.setdefault("FIRST_COMMENT_ENABLED", "false")
os.environ.setdefault("INSTAGRAM_POLL_INTERVAL_SEC", "0")
os.environ.pop("TELEGRAM_BOT_TOKEN", None)

import pytest  # noqa: E402
from fakeredis import FakeAsyncRedis  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from reelsmith import models  # noqa: E402
from reelsmith.db import Base  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def redis():
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def user(session_factory):
    async with session_factory() as session:
        row = models.User(email="owner@example.com", name="Owner")
        session.add(row)
        await session.commit()
        return row


@pytest.fixture
async def series(session_factory, user):
    async with session_factory() as session:
        row = models.Series(
            user_id=user.id,
            name="Night Shift",
            niche="scary-stories",
            art_style="dark-cinematic",
            language="en",
            tone="suspenseful",
        )
        session.add(row)
        await session.commit()
        return row


@pytest.fixture
async def automation(session_factory, user, series):
    async with session_factory() as session:
        row = models.Automation(
            user_id=user.id,
            series_id=series.id,
            name="Night Shift daily",
            niche="scary-stories",
            art_style="dark-cinematic",
            language="en",
            tone="suspenseful",
            duration=45,
            target_platforms=["YOUTUBE"],
            include_ai_tags=True,
            enabled=True,
            frequency="daily",
            post_time="09:00",
            timezone="UTC",
        )
        session.add(row)
        await session.commit()
        return row
