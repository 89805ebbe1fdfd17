"""
Social Poster: publishes READY videos to their target platforms.

Per platform:
  1. claim: swap in an "uploading" entry (version-checked update on
     ``Video.posted_version``; a success entry is never replaced)
  2. cooldown: refuse if the user's last successful post to the platform
     is younger than PLATFORM_MIN_GAP_MINUTES
  3. publish: adapter upload, a fixed number of attempts
  4. finalize: replace the entry with success/failure; first success
     flips the video to POSTED

Platforms of one video run concurrently, each with its own DB session.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from reelsmith.errors import truncate_error
from reelsmith.models import PUBLISHABLE_STATUSES, Automation, Series, SocialAccount, User, Video, VideoStatus
from reelsmith.schemas import PlatformOutcome
from reelsmith.services import notify
from reelsmith.services.platform_entries import (
    UPLOADING,
    PlatformEntry,
    can_claim,
    find_entry,
    normalize_entries,
    remove_entries,
    replace_entry,
    serialize,
)
from reelsmith.services.publisher_adapter import (
    CATEGORY_COOLDOWN,
    CATEGORY_RECONNECT,
    CATEGORY_UNSUPPORTED,
    PublisherAdapter,
    PublishResult,
    classify_publish_error,
    get_publisher,
)
from reelsmith.services.seo import PlatformMetadata, build_metadata
from reelsmith.services.storage import public_url, resolve_video_file
from reelsmith.settings import get_settings
from reelsmith.timeutils import as_utc, parse_iso, utcnow

logger = logging.getLogger(__name__)

CAS_ATTEMPTS = 5
FINALIZE_ROUNDS = 3
COOLDOWN_LOOKBACK_VIDEOS = 50
# Failures that need a human (reconnect, unsupported) are not retried by the sweep.
SWEEP_SKIP_CATEGORIES = frozenset({CATEGORY_RECONNECT, CATEGORY_UNSUPPORTED})


@dataclass
class ClaimResult:
    claimed: bool
    reason: str


@dataclass
class PostContext:
    video_id: int
    user_id: int
    title: str | None
    description: str | None
    hashtags: list[str] | None
    script_text: str | None
    niche: str | None
    include_ai_tags: bool
    video_url: str
    accounts: dict[str, SocialAccount] = field(default_factory=dict)


class SocialPoster:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        adapter_lookup: Callable[[str], PublisherAdapter | None] = get_publisher,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._adapter_lookup = adapter_lookup
        self._sleep = sleep
        self._background: set[asyncio.Task] = set()

    # ── entry list writes ────────────────────────────────────

    async def _swap_entries(
        self,
        video_id: int,
        mutate: Callable[[Video, list[PlatformEntry]], tuple[list[PlatformEntry] | None, dict, str]],
    ) -> tuple[bool, str]:
        """Read-modify-write of ``posted_platforms`` guarded by ``posted_version``.

        ``mutate`` returns (new entries or None to abort, extra column values, reason).
        """
        for _ in range(CAS_ATTEMPTS):
            async with self._session_factory() as session:
                video = await session.get(Video, video_id)
                if video is None:
                    return False, "video not found"
                version = video.posted_version or 0
                new_entries, extra, reason = mutate(video, normalize_entries(video.posted_platforms))
                if new_entries is None:
                    return False, reason
                result = await session.execute(
                    update(Video)
                    .where(Video.id == video_id, Video.posted_version == version)
                    .values(posted_platforms=serialize(new_entries), posted_version=version + 1, **extra)
                )
                await session.commit()
                if result.rowcount == 1:
                    return True, reason
            logger.info(f"[poster][video={video_id}] Entry list changed concurrently, re-reading")
        return False, "concurrent update"

    async def claim_platform(self, video_id: int, platform: str) -> ClaimResult:
        platform = platform.upper()
        settings = get_settings()
        now = utcnow()
        stale_after = timedelta(minutes=settings.publish_claim_stale_minutes)

        def mutate(video: Video, entries: list[PlatformEntry]):
            ok, reason = can_claim(find_entry(entries, platform), now, stale_after)
            if not ok:
                return None, {}, reason
            claim = PlatformEntry(platform=platform, success=UPLOADING, started_at=now.isoformat())
            return replace_entry(entries, claim), {}, reason

        claimed, reason = await self._swap_entries(video_id, mutate)
        return ClaimResult(claimed=claimed, reason=reason)

    async def finalize_platform(self, video_id: int, entry: PlatformEntry) -> bool:
        """Replace the platform's entry with a terminal one.

        Never overwrites an existing success entry.
        """
        def mutate(video: Video, entries: list[PlatformEntry]):
            existing = find_entry(entries, entry.platform)
            if existing is not None and existing.is_success:
                return None, {}, "already posted"
            extra = {}
            if entry.is_success and video.status == VideoStatus.ready.value:
                extra["status"] = VideoStatus.posted.value
            return replace_entry(entries, entry), extra, "finalized"

        done, _ = await self._swap_entries(video_id, mutate)
        return done

    async def reset_posted(self, video_id: int, platform: str | None = None) -> bool:
        """Drop platform entries (all, or one platform) so the video can be republished."""
        def mutate(video: Video, entries: list[PlatformEntry]):
            remaining = remove_entries(entries, platform)
            extra = {}
            if video.status == VideoStatus.posted.value and not any(e.is_success for e in remaining):
                extra["status"] = VideoStatus.ready.value
            return remaining, extra, "reset"

        done, _ = await self._swap_entries(video_id, mutate)
        return done

    # ── cooldown ─────────────────────────────────────────────

    async def check_cooldown(self, user_id: int, platform: str, now: datetime | None = None) -> str | None:
        """Cooldown message if the user posted to ``platform`` too recently, else None."""
        settings = get_settings()
        gap_minutes = settings.min_gap_minutes_for(platform)
        if gap_minutes <= 0:
            return None
        now = now or utcnow()
        platform = platform.upper()

        async with self._session_factory() as session:
            rows = await session.execute(
                select(Video.posted_platforms, Video.updated_at)
                .join(Series, Series.id == Video.series_id)
                .where(Series.user_id == user_id, Video.posted_platforms.is_not(None))
                .order_by(Video.updated_at.desc())
                .limit(COOLDOWN_LOOKBACK_VIDEOS)
            )
            latest: datetime | None = None
            for raw_entries, updated_at in rows.all():
                entry = find_entry(normalize_entries(raw_entries), platform)
                if entry is None or not entry.is_success:
                    continue
                posted_at = parse_iso(entry.finished_at) or as_utc(updated_at)
                if posted_at and (latest is None or posted_at > latest):
                    latest = posted_at

        if latest is None:
            return None
        elapsed = now - latest
        if elapsed >= timedelta(minutes=gap_minutes):
            return None
        wait = int((timedelta(minutes=gap_minutes) - elapsed).total_seconds() // 60) + 1
        return (
            f"Cooldown: last {platform} post was {int(elapsed.total_seconds() // 60)} min ago, "
            f"minimum gap is {gap_minutes} min; wait {wait} minutes"
        )

    # ── publishing ───────────────────────────────────────────

    async def publish_with_retry(
        self,
        adapter: PublisherAdapter,
        credentials: dict,
        file_path,
        metadata: PlatformMetadata,
        *,
        video_url: str | None,
        tag: str,
    ) -> PublishResult:
        settings = get_settings()
        result = PublishResult(success=False, platform=adapter.platform, error="not attempted")
        for attempt in range(1, settings.publish_max_attempts + 1):
            result = await adapter.upload(credentials, file_path, metadata, public_url=video_url)
            if result.success:
                return result
            logger.warning(f"{tag} attempt {attempt}/{settings.publish_max_attempts} failed: {result.error}")
            if not result.retryable:
                break
            if attempt < settings.publish_max_attempts:
                await self._sleep(settings.publish_retry_delay_sec)
        return result

    async def _persist_credentials(self, account_id: int, update_fields: dict) -> None:
        async with self._session_factory() as session:
            account = await session.get(SocialAccount, account_id)
            if account is None:
                return
            account.credentials_json = {**(account.credentials_json or {}), **update_fields}
            await session.commit()

    async def _read_entry(self, video_id: int, platform: str) -> tuple[bool, PlatformEntry | None]:
        async with self._session_factory() as session:
            video = await session.get(Video, video_id)
            if video is None:
                return False, None
            return True, find_entry(normalize_entries(video.posted_platforms), platform)

    async def _record(self, ctx: PostContext, entry: PlatformEntry, tag: str) -> bool:
        """Finalize ``entry``; when the version check keeps losing, re-read and try again.

        Returns False (after an ERROR log and an alert) if the claim could not
        be replaced, which leaves it "uploading" until it goes stale.
        """
        for attempt in range(FINALIZE_ROUNDS):
            if await self.finalize_platform(ctx.video_id, entry):
                return True
            exists, current = await self._read_entry(ctx.video_id, entry.platform)
            if not exists:
                logger.warning(f"{tag} video deleted before the result could be recorded")
                return False
            if current is not None and current.is_success:
                return True
            await self._sleep(0.1 * (attempt + 1))

        what = f"post {entry.post_id}" if entry.is_success else "failure"
        message = f"Could not record {what}: entry list kept changing, claim left uploading"
        logger.error(f"{tag} {message}")
        await notify.notify_publish_failed(ctx.video_id, entry.platform, message)
        return False

    async def _fail(self, ctx: PostContext, platform: str, started_at: str, error: str, tag: str) -> PlatformOutcome:
        error = truncate_error(error, get_settings().error_message_max_len)
        category = classify_publish_error(error)
        await self._record(ctx, PlatformEntry(
            platform=platform,
            success=False,
            error=error,
            category=category,
            started_at=started_at,
            finished_at=utcnow().isoformat(),
        ), tag)
        logger.error(f"{tag} failed ({category}): {error}")
        if category != CATEGORY_COOLDOWN:
            await notify.notify_publish_failed(ctx.video_id, platform, error)
        return PlatformOutcome(platform=platform, success=False, error=error, category=category)

    async def post_to_platform(self, ctx: PostContext, platform: str) -> PlatformOutcome:
        platform = platform.upper()
        tag = f"[poster][video={ctx.video_id}][{platform}]"

        claim = await self.claim_platform(ctx.video_id, platform)
        if not claim.claimed:
            logger.info(f"{tag} not claimed: {claim.reason}")
            return PlatformOutcome(
                platform=platform, success=claim.reason == "already posted", skipped=True, error=claim.reason
            )
        started_at = utcnow().isoformat()
        logger.info(f"{tag} claimed ({claim.reason})")

        try:
            account = ctx.accounts.get(platform)
            if account is None:
                return await self._fail(ctx, platform, started_at, "No connected account for this platform", tag)

            cooldown = await self.check_cooldown(ctx.user_id, platform)
            if cooldown:
                return await self._fail(ctx, platform, started_at, cooldown, tag)

            adapter = self._adapter_lookup(platform)
            if adapter is None:
                return await self._fail(ctx, platform, started_at, f"Unsupported platform: {platform}", tag)

            metadata = build_metadata(
                platform,
                video_id=ctx.video_id,
                title=ctx.title,
                niche=ctx.niche,
                script_text=ctx.script_text,
                description=ctx.description,
                hashtags=ctx.hashtags,
                include_ai_tags=ctx.include_ai_tags,
            )
            credentials = {
                **(account.credentials_json or {}),
                "platform_user_id": account.platform_user_id,
                "page_id": account.page_id,
            }
            result = await self.publish_with_retry(
                adapter,
                credentials,
                resolve_video_file(ctx.video_url),
                metadata,
                video_url=public_url(ctx.video_url),
                tag=tag,
            )
            if result.credentials_update:
                await self._persist_credentials(account.id, result.credentials_update)
            if not result.success:
                return await self._fail(ctx, platform, started_at, result.error or "Unknown publish error", tag)

            recorded = await self._record(ctx, PlatformEntry(
                platform=platform,
                success=True,
                post_id=result.post_id,
                url=result.url,
                started_at=started_at,
                finished_at=utcnow().isoformat(),
            ), tag)
            logger.info(f"{tag} posted {result.post_id} {result.url or ''}")

            if get_settings().first_comment_enabled and metadata.first_comment and result.post_id:
                self._spawn(self._first_comment(adapter, {**credentials, **result.credentials_update},
                                                result.post_id, metadata.first_comment, tag))
            return PlatformOutcome(
                platform=platform,
                success=True,
                post_id=result.post_id,
                url=result.url,
                error=None if recorded else "Published, but the result could not be saved",
            )

        except Exception as exc:
            logger.exception(f"{tag} unexpected error")
            return await self._fail(ctx, platform, started_at, str(exc) or exc.__class__.__name__, tag)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _first_comment(self, adapter: PublisherAdapter, credentials: dict, post_id: str, text: str, tag: str) -> None:
        await self._sleep(get_settings().first_comment_delay_sec)
        try:
            result = await adapter.post_comment(credentials, post_id, text)
        except Exception as exc:
            logger.warning(f"{tag} first comment raised: {exc}")
            return
        if result.success:
            logger.info(f"{tag} first comment posted ({result.comment_id})")
        else:
            logger.warning(f"{tag} first comment failed: {result.error}")

    async def load_context(self, video_id: int) -> tuple[PostContext | None, list[str], str | None]:
        """Load what publishing needs. Returns (context, target platforms, skip reason)."""
        async with self._session_factory() as session:
            video = (await session.execute(
                select(Video)
                .options(selectinload(Video.series).selectinload(Series.user).selectinload(User.social_accounts))
                .where(Video.id == video_id)
            )).scalar_one_or_none()
            if video is None:
                return None, [], "video not found"
            if video.status not in PUBLISHABLE_STATUSES:
                return None, [], f"status is {video.status}"
            if not video.video_url:
                return None, [], "no video file"
            automation = (await session.execute(
                select(Automation).where(Automation.series_id == video.series_id).limit(1)
            )).scalar_one_or_none()

            accounts: dict[str, SocialAccount] = {}
            for account in video.series.user.social_accounts:
                accounts.setdefault(account.platform.upper(), account)

            ctx = PostContext(
                video_id=video.id,
                user_id=video.series.user_id,
                title=video.title,
                description=video.description,
                hashtags=video.hashtags,
                script_text=video.script_text,
                niche=video.series.niche,
                include_ai_tags=automation.include_ai_tags if automation is not None else True,
                video_url=video.video_url,
                accounts=accounts,
            )
            targets = list(automation.target_platforms or []) if automation is not None else []
            return ctx, targets, None

    async def post_video(self, video_id: int, platforms: list[str] | None = None) -> list[PlatformOutcome]:
        """Publish one video to each requested (or configured) platform concurrently."""
        ctx, targets, skip = await self.load_context(video_id)
        if ctx is None:
            logger.info(f"[poster][video={video_id}] skipped: {skip}")
            return []
        chosen = list(dict.fromkeys(p.upper() for p in (platforms or targets)))
        if not chosen:
            logger.info(f"[poster][video={video_id}] no target platforms")
            return []
        return list(await asyncio.gather(*(self.post_to_platform(ctx, p) for p in chosen)))

    # ── periodic sweep ───────────────────────────────────────

    def platforms_due(self, raw_entries: list | None, targets: list[str], now: datetime) -> list[str]:
        settings = get_settings()
        stale_after = timedelta(minutes=settings.publish_claim_stale_minutes)
        retry_after = timedelta(minutes=settings.publish_failed_retry_minutes)
        entries = normalize_entries(raw_entries)
        due: list[str] = []
        for platform in dict.fromkeys(t.upper() for t in targets):
            entry = find_entry(entries, platform)
            if entry is not None and entry.is_failed:
                if entry.category in SWEEP_SKIP_CATEGORIES:
                    continue
                finished = parse_iso(entry.finished_at) or parse_iso(entry.started_at)
                if finished is not None and now - finished < retry_after:
                    continue
            elif not can_claim(entry, now, stale_after)[0]:
                continue
            due.append(platform)
        return due

    async def run_posting_sweep(self) -> dict[str, Any]:
        settings = get_settings()
        now = utcnow()
        async with self._session_factory() as session:
            rows = (await session.execute(
                select(Video.id, Video.posted_platforms, Automation.target_platforms)
                .join(Automation, Automation.series_id == Video.series_id)
                .where(
                    Video.status.in_(PUBLISHABLE_STATUSES),
                    Video.video_url.is_not(None),
                    Automation.enabled.is_(True),
                    Automation.target_platforms.is_not(None),
                )
                .order_by(Video.created_at.asc())
                .limit(settings.posting_sweep_batch * 5)
            )).all()

        work: list[tuple[int, list[str]]] = []
        for video_id, raw_entries, targets in rows:
            due = self.platforms_due(raw_entries, list(targets or []), now)
            if due:
                work.append((video_id, due))
            if len(work) >= settings.posting_sweep_batch:
                break

        posted = failed = 0
        for video_id, due in work:
            for outcome in await self.post_video(video_id, due):
                if outcome.success and not outcome.skipped:
                    posted += 1
                elif not outcome.success and not outcome.skipped:
                    failed += 1
        logger.info(f"[poster][sweep] {len(work)} videos, {posted} posted, {failed} failed")
        return {"videos": len(work), "posted": posted, "failed": failed}
