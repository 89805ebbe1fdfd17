import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from reelsmith.db import Base
from reelsmith.models import Automation, Series, SocialAccount, User, Video
from reelsmith.services.platform_entries import PlatformEntry, find_entry, normalize_entries
from reelsmith.services.publisher_adapter import PublishResult
from reelsmith.services.social_poster import SocialPoster
from reelsmith.services.storage import resolve_video_file
from reelsmith.timeutils import utcnow


class FakeAdapter:
    platform = "YOUTUBE"

    def __init__(self, *results: PublishResult):
        self.upload = AsyncMock(side_effect=list(results))
        self.post_comment = AsyncMock()


def ok(post_id="yt1"):
    return PublishResult(success=True, platform="YOUTUBE", post_id=post_id, url=f"https://youtube.com/shorts/{post_id}")


def fail(error, retryable):
    return PublishResult(success=False, platform="YOUTUBE", error=error, retryable=retryable)


@pytest.fixture
async def account(session_factory, user):
    async with session_factory() as session:
        row = SocialAccount(
            user_id=user.id,
            platform="YOUTUBE",
            username="nightshift",
            platform_user_id="UC123",
            credentials_json={"access_token": "tok", "refresh_token": "ref"},
        )
        session.add(row)
        await session.commit()
        return row


async def make_video(session_factory, series, **fields) -> Video:
    async with session_factory() as session:
        values = {
            "title": "The lighthouse",
            "script_text": "Wait. Something moved.",
            "status": "READY",
            "video_url": f"/videos/manual/lighthouse-{utcnow().timestamp()}/video.mp4",
            **fields,
        }
        row = Video(series_id=series.id, **values)
        session.add(row)
        await session.commit()
    path = resolve_video_file(row.video_url)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"mp4")
    return row


async def load(session_factory, video_id) -> Video:
    async with session_factory() as session:
        return await session.get(Video, video_id)


def poster_with(session_factory, adapter):
    return SocialPoster(session_factory, adapter_lookup=lambda p: adapter if p == adapter.platform else None,
                        sleep=AsyncMock())


@pytest.mark.anyio
async def test_successful_publish_marks_posted(session_factory, series, automation, account):
    video = await make_video(session_factory, series)
    adapter = FakeAdapter(ok())
    outcomes = await poster_with(session_factory, adapter).post_video(video.id)

    assert [o.success for o in outcomes] == [True]
    row = await load(session_factory, video.id)
    assert row.status == "POSTED"
    entry = find_entry(normalize_entries(row.posted_platforms), "YOUTUBE")
    assert entry.is_success and entry.post_id == "yt1" and entry.finished_at
    metadata = adapter.upload.await_args.args[2]
    assert "#AIGenerated" in metadata.description
    assert adapter.upload.await_args.kwargs["public_url"].endswith(row.video_url)


@pytest.mark.anyio
async def test_second_claim_is_refused(session_factory, series):
    video = await make_video(session_factory, series)
    poster = SocialPoster(session_factory)
    first = await poster.claim_platform(video.id, "youtube")
    second = await poster.claim_platform(video.id, "YOUTUBE")
    assert first.claimed and not second.claimed
    assert second.reason == "upload in progress"
    assert (await load(session_factory, video.id)).posted_version == 1


@pytest.mark.anyio
async def test_stale_uploading_entry_is_reclaimed(session_factory, series):
    started = (utcnow() - timedelta(minutes=11)).isoformat()
    video = await make_video(
        session_factory, series,
        posted_platforms=[{"platform": "YOUTUBE", "success": "uploading", "startedAt": started}],
    )
    claim = await SocialPoster(session_factory).claim_platform(video.id, "YOUTUBE")
    assert claim.claimed and claim.reason == "stale upload reclaimed"


@pytest.mark.anyio
async def test_success_is_never_overwritten(session_factory, series):
    from reelsmith.services.platform_entries import PlatformEntry

    video = await make_video(
        session_factory, series, status="POSTED",
        posted_platforms=[{"platform": "YOUTUBE", "success": True, "postId": "yt1"}],
    )
    poster = SocialPoster(session_factory)
    assert not (await poster.claim_platform(video.id, "YOUTUBE")).claimed
    assert await poster.finalize_platform(video.id, PlatformEntry("YOUTUBE", False, error="late")) is False
    entry = find_entry(normalize_entries((await load(session_factory, video.id)).posted_platforms), "YOUTUBE")
    assert entry.is_success and entry.post_id == "yt1"


@pytest.mark.anyio
async def test_retryable_failures_are_retried(session_factory, series, automation, account):
    video = await make_video(session_factory, series)
    adapter = FakeAdapter(fail("HTTP 503", True), fail("timeout", True), ok())
    outcomes = await poster_with(session_factory, adapter).post_video(video.id)
    assert outcomes[0].success
    assert adapter.upload.await_count == 3


@pytest.mark.anyio
async def test_permanent_failure_is_recorded_with_category(session_factory, series, automation, account):
    video = await make_video(session_factory, series)
    adapter = FakeAdapter(fail("YouTube upload failed: 401 invalid credentials", False))
    outcomes = await poster_with(session_factory, adapter).post_video(video.id)

    assert adapter.upload.await_count == 1
    assert outcomes[0].category == "reconnect_account"
    row = await load(session_factory, video.id)
    assert row.status == "READY"
    entry = find_entry(normalize_entries(row.posted_platforms), "YOUTUBE")
    assert entry.is_failed and entry.category == "reconnect_account"


@pytest.mark.anyio
async def test_missing_account_fails_without_calling_adapter(session_factory, series, automation):
    video = await make_video(session_factory, series)
    adapter = FakeAdapter(ok())
    outcomes = await poster_with(session_factory, adapter).post_video(video.id)
    assert outcomes[0].category == "reconnect_account"
    adapter.upload.assert_not_awaited()


@pytest.mark.anyio
async def test_cooldown_blocks_back_to_back_posts(session_factory, series, automation, account):
    recent = (utcnow() - timedelta(minutes=10)).isoformat()
    await make_video(
        session_factory, series, status="POSTED",
        posted_platforms=[{"platform": "YOUTUBE", "success": True, "postId": "old", "finishedAt": recent}],
    )
    video = await make_video(session_factory, series)
    adapter = FakeAdapter(ok())
    outcomes = await poster_with(session_factory, adapter).post_video(video.id)

    assert outcomes[0].category == "cooldown"
    assert outcomes[0].error.startswith("Cooldown:")
    adapter.upload.assert_not_awaited()


@pytest.mark.anyio
async def test_reset_posted_reverts_status(session_factory, series):
    video = await make_video(
        session_factory, series, status="POSTED",
        posted_platforms=[{"platform": "YOUTUBE", "success": True}, {"platform": "FACEBOOK", "success": True}],
    )
    poster = SocialPoster(session_factory)
    await poster.reset_posted(video.id, "YOUTUBE")
    assert (await load(session_factory, video.id)).status == "POSTED"
    await poster.reset_posted(video.id)
    row = await load(session_factory, video.id)
    assert row.status == "READY"
    assert row.posted_platforms == []


def test_sweep_skips_failures_needing_a_human_and_recent_ones():
    now = utcnow()
    poster = SocialPoster(MagicMock())
    old = (now - timedelta(hours=2)).isoformat()
    fresh = (now - timedelta(minutes=1)).isoformat()
    raw = [
        {"platform": "YOUTUBE", "success": False, "category": "reconnect_account", "finishedAt": old},
        {"platform": "INSTAGRAM", "success": False, "category": "retry_later", "finishedAt": fresh},
        {"platform": "FACEBOOK", "success": False, "category": "retry_later", "finishedAt": old},
    ]
    assert poster.platforms_due(raw, ["YOUTUBE", "INSTAGRAM", "FACEBOOK"], now) == ["FACEBOOK"]
    assert poster.platforms_due([], ["youtube"], now) == ["YOUTUBE"]


@pytest.mark.anyio
async def test_posting_sweep_publishes_ready_videos(session_factory, series, automation, account):
    video = await make_video(session_factory, series)
    adapter = FakeAdapter(ok())
    report = await poster_with(session_factory, adapter).run_posting_sweep()
    assert report == {"videos": 1, "posted": 1, "failed": 0}
    assert (await load(session_factory, video.id)).status == "POSTED"


@pytest.mark.anyio
async def test_sweep_ignores_disabled_automations(session_factory, series, automation, account):
    async with session_factory() as session:
        row = await session.get(Automation, automation.id)
        row.enabled = False
        await session.commit()
    video = await make_video(session_factory, series)
    adapter = FakeAdapter(ok())

    report = await poster_with(session_factory, adapter).run_posting_sweep()

    assert report == {"videos": 0, "posted": 0, "failed": 0}
    adapter.upload.assert_not_awaited()
    assert (await load(session_factory, video.id)).status == "READY"


@pytest.mark.anyio
async def test_unrecorded_success_is_reported_and_alerted(session_factory, series, automation, account):
    video = await make_video(session_factory, series)
    poster = poster_with(session_factory, FakeAdapter(ok()))
    alert = AsyncMock(return_value=True)

    with patch.object(poster, "finalize_platform", AsyncMock(return_value=False)) as finalize, \
            patch("reelsmith.services.social_poster.notify.notify_publish_failed", alert):
        outcomes = await poster.post_video(video.id)

    assert finalize.await_count == 3
    assert outcomes[0].success and outcomes[0].post_id == "yt1"
    assert outcomes[0].error == "Published, but the result could not be saved"
    entry = find_entry(normalize_entries((await load(session_factory, video.id)).posted_platforms), "YOUTUBE")
    assert entry.is_uploading
    alert.assert_awaited_once()
    assert "Could not record post yt1" in alert.await_args.args[2]


@pytest.mark.anyio
async def test_lost_finalize_counts_when_entry_already_succeeded(session_factory, series, automation, account):
    video = await make_video(
        session_factory, series, posted_platforms=[{"platform": "YOUTUBE", "success": True, "postId": "yt1"}],
    )
    poster = poster_with(session_factory, FakeAdapter())
    ctx, _, _ = await poster.load_context(video.id)

    with patch.object(poster, "finalize_platform", AsyncMock(return_value=False)):
        recorded = await poster._record(ctx, PlatformEntry("YOUTUBE", True, post_id="yt1"), "[t]")

    assert recorded is True


@pytest.mark.anyio
async def test_first_comment_error_is_contained(session_factory):
    adapter = FakeAdapter()
    adapter.post_comment.side_effect = RuntimeError("comments disabled")
    poster = poster_with(session_factory, adapter)

    await poster._first_comment(adapter, {}, "yt1", "What would you do?", "[t]")

    adapter.post_comment.assert_awaited_once_with({}, "yt1", "What would you do?")


@pytest.fixture
async def file_sessions(tmp_path):
    # Separate connections per session, so concurrent writers really contend.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'poster.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.mark.anyio
async def test_platforms_publish_concurrently(file_sessions):
    platforms = ["YOUTUBE", "INSTAGRAM", "FACEBOOK"]
    async with file_sessions() as session:
        user = User(email="multi@example.com", name="Multi")
        session.add(user)
        await session.flush()
        series = Series(user_id=user.id, name="Night Shift", niche="scary-stories", art_style="dark-cinematic")
        session.add(series)
        await session.flush()
        session.add(Automation(
            user_id=user.id, series_id=series.id, name="Multi", niche="scary-stories", art_style="dark-cinematic",
            target_platforms=platforms, enabled=True, frequency="daily", post_time="09:00", timezone="UTC",
        ))
        for platform in platforms:
            session.add(SocialAccount(
                user_id=user.id, platform=platform, username="nightshift",
                platform_user_id=f"{platform}-1", credentials_json={"access_token": "tok"}, page_id="page-1",
            ))
        await session.commit()
    video = await make_video(file_sessions, series)

    arrived = 0
    all_in = asyncio.Event()

    def adapter_for(platform):
        async def upload(*args, **kwargs):
            nonlocal arrived
            arrived += 1
            if arrived == len(platforms):
                all_in.set()
            await asyncio.wait_for(all_in.wait(), timeout=5)
            return PublishResult(success=True, platform=platform, post_id=f"{platform.lower()}-1")

        adapter = FakeAdapter()
        adapter.platform = platform
        adapter.upload.side_effect = upload
        return adapter

    adapters = {p: adapter_for(p) for p in platforms}
    poster = SocialPoster(file_sessions, adapter_lookup=adapters.get, sleep=AsyncMock())

    outcomes = await poster.post_video(video.id)

    assert {o.platform: (o.success, o.error) for o in outcomes} == {p: (True, None) for p in platforms}
    row = await load(file_sessions, video.id)
    assert row.status == "POSTED"
    entries = normalize_entries(row.posted_platforms)
    assert {e.platform: e.post_id for e in entries} == {p: f"{p.lower()}-1" for p in platforms}
    assert all(e.is_success for e in entries)
