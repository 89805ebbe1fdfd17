"""
Automation Scheduler

Owns one APScheduler one-shot timer per enabled automation, firing at the
automation's next local fire time, plus three interval jobs:
- schedule sync (re-arms timers from the database; first run at startup)
- posting sweep (publishes READY videos)
- watchdog (fails videos stuck in GENERATING)

The automation id -> fire time registry lives only in this process. After a
restart it is empty and the first sync repopulates it.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from reelsmith.errors import truncate_error
from reelsmith.models import IN_PROGRESS_STATUSES, Automation, Series, Video, VideoStatus
from reelsmith.schemas import FireResult, SceneSpec, VideoJob
from reelsmith.services import job_queue, notify
from reelsmith.services.providers import (
    GeneratedScript,
    ProviderChoice,
    ScriptRequest,
    get_script_provider,
    resolve_providers,
    validate_script,
)
from reelsmith.services.scheduling import compute_next_fire_time
from reelsmith.services.social_poster import SocialPoster
from reelsmith.services.watchdog_service import run_watchdog
from reelsmith.settings import get_settings
from reelsmith.timeutils import utcnow

logger = logging.getLogger("scheduler")

NEGATIVE_PROMPT = "text, watermark, logo, signature, blurry, deformed, extra limbs"


def timer_id(automation_id: int) -> str:
    return f"automation:{automation_id}"


def style_prompt(art_style: str | None) -> str:
    style = (art_style or "cinematic").replace("-", " ").replace("_", " ")
    return f"{style} style, vertical 9:16 composition, highly detailed"


def build_job(
    video: Video,
    automation: Automation,
    series: Series,
    providers: ProviderChoice,
    script: GeneratedScript,
) -> VideoJob:
    return VideoJob(
        video_id=video.id,
        series_id=series.id,
        title=script.title,
        script_text=script.script_text,
        scenes=[SceneSpec(text=s.text, visual_description=s.visual_description) for s in script.scenes],
        niche=automation.niche,
        tone=automation.tone,
        art_style_prompt=style_prompt(automation.art_style),
        negative_prompt=NEGATIVE_PROMPT,
        voice_id=automation.voice_id,
        language=automation.language,
        duration=automation.duration,
        llm_provider=providers.llm,
        tts_provider=providers.tts,
        image_provider=providers.image,
        music_path=automation.music_track,
        automation_name=automation.name,
    )


class AutomationScheduler:
    """Per-automation timers on top of APScheduler's AsyncIOScheduler."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        scheduler: AsyncIOScheduler | None = None,
        enqueue_job=None,
        clock=utcnow,
    ):
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._session_factory = session_factory
        self._enqueue = enqueue_job or job_queue.enqueue
        self._clock = clock
        self._armed: dict[int, datetime] = {}
        self._running = False
        self._poster: SocialPoster | None = None

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from reelsmith.db import AsyncSessionLocal
            self._session_factory = AsyncSessionLocal
        return self._session_factory

    @property
    def poster(self) -> SocialPoster:
        if self._poster is None:
            self._poster = SocialPoster(self._sessions())
        return self._poster

    # ── lifecycle ────────────────────────────────────────────

    def start(self) -> None:
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return
        if self._running:
            return

        self.scheduler.add_job(
            self.sync_schedules,
            IntervalTrigger(minutes=settings.schedule_sync_interval_minutes),
            id="schedule_sync",
            name="Sync automation timers",
            replace_existing=True,
            next_run_time=self._clock(),
        )
        if settings.posting_sweep_enabled:
            self.scheduler.add_job(
                self._run_posting_sweep,
                IntervalTrigger(minutes=settings.posting_sweep_interval_minutes),
                id="posting_sweep",
                name="Publish ready videos",
                replace_existing=True,
            )
        if settings.watchdog_enabled:
            self.scheduler.add_job(
                self._run_watchdog,
                IntervalTrigger(minutes=settings.watchdog_interval_minutes),
                id="watchdog",
                name="Fail stuck generations",
                replace_existing=True,
            )

        self.scheduler.start()
        self._running = True
        logger.info("Scheduler started")

    def stop(self) -> None:
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self._armed.clear()
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self._running

    # ── timers ───────────────────────────────────────────────

    def _arm(self, automation_id: int, fire_at: datetime) -> None:
        settings = get_settings()
        self.scheduler.add_job(
            self.on_fire,
            DateTrigger(run_date=fire_at),
            args=[automation_id],
            id=timer_id(automation_id),
            name=f"Automation {automation_id}",
            replace_existing=True,
            misfire_grace_time=settings.schedule_misfire_grace_sec,
            coalesce=True,
        )
        self._armed[automation_id] = fire_at

    def cancel(self, automation_id: int) -> None:
        self._armed.pop(automation_id, None)
        try:
            self.scheduler.remove_job(timer_id(automation_id))
        except JobLookupError:
            pass

    def schedule(self, automation: Automation) -> datetime | None:
        """Cancel and re-arm the automation's timer. Returns the armed fire time."""
        self.cancel(automation.id)
        if not automation.enabled:
            return None
        settings = get_settings()
        now = self._clock()
        fire_at = compute_next_fire_time(
            automation.post_time, automation.timezone, automation.frequency, automation.last_run_at, now=now
        )
        if fire_at - now > timedelta(days=settings.schedule_horizon_days):
            logger.info(
                f"[scheduler][automation={automation.id}] next fire {fire_at.isoformat()} beyond horizon, left to sync"
            )
            return None
        self._arm(automation.id, fire_at)
        logger.info(f"[scheduler][automation={automation.id}] armed for {fire_at.isoformat()}")
        return fire_at

    def get_armed(self) -> dict[int, datetime]:
        return dict(self._armed)

    def get_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
            })
        return jobs

    async def sync_schedules(self) -> dict:
        """Reconcile armed timers with the enabled automations in the database."""
        settings = get_settings()
        now = self._clock()
        horizon = timedelta(days=settings.schedule_horizon_days)
        tolerance = settings.schedule_rearm_tolerance_sec

        async with self._sessions()() as session:
            automations = list((await session.execute(
                select(Automation).where(Automation.enabled.is_(True))
            )).scalars().all())

        enabled_ids = {a.id for a in automations}
        cancelled = armed = 0
        for automation_id in list(self._armed):
            if automation_id not in enabled_ids:
                self.cancel(automation_id)
                cancelled += 1

        for automation in automations:
            fire_at = compute_next_fire_time(
                automation.post_time, automation.timezone, automation.frequency, automation.last_run_at, now=now
            )
            current = self._armed.get(automation.id)
            if fire_at - now > horizon:
                if current is not None:
                    self.cancel(automation.id)
                    cancelled += 1
                continue
            if current is None or abs((fire_at - current).total_seconds()) > tolerance:
                self.cancel(automation.id)
                self._arm(automation.id, fire_at)
                armed += 1

        logger.info(f"[scheduler][sync] {len(automations)} enabled, {armed} (re)armed, {cancelled} cancelled")
        return {"enabled": len(automations), "armed": armed, "cancelled": cancelled}

    # ── firing ───────────────────────────────────────────────

    async def _ensure_series(self, session: AsyncSession, automation: Automation) -> Series:
        if automation.series_id is not None:
            series = await session.get(Series, automation.series_id)
            if series is not None:
                return series
        series = Series(
            user_id=automation.user_id,
            name=f"[Auto] {automation.name}",
            niche=automation.niche,
            art_style=automation.art_style,
            voice_id=automation.voice_id,
            language=automation.language,
            tone=automation.tone,
            llm_provider=automation.llm_provider,
            tts_provider=automation.tts_provider,
            image_provider=automation.image_provider,
        )
        session.add(series)
        await session.flush()
        automation.series_id = series.id
        logger.info(f"[scheduler][automation={automation.id}] created series {series.id}")
        return series

    async def on_fire(self, automation_id: int, *, manual: bool = False) -> FireResult:
        """Timer callback: create one QUEUED video + job, then arm the next cycle."""
        self._armed.pop(automation_id, None)
        tag = f"[scheduler][automation={automation_id}]"
        settings = get_settings()

        async with self._sessions()() as session:
            automation = (await session.execute(
                select(Automation).options(selectinload(Automation.user)).where(Automation.id == automation_id)
            )).scalar_one_or_none()
            if automation is None:
                logger.info(f"{tag} no longer exists, skipping")
                return FireResult(automation_id=automation_id, fired=False, reason="not found")
            if not automation.enabled and not manual:
                logger.info(f"{tag} disabled, skipping")
                return FireResult(automation_id=automation_id, fired=False, reason="disabled")

            series = await self._ensure_series(session, automation)
            busy_id = await session.scalar(
                select(Video.id)
                .where(Video.series_id == series.id, Video.status.in_(IN_PROGRESS_STATUSES))
                .limit(1)
            )
            if busy_id is not None:
                await session.commit()
                next_fire = self.schedule(automation)
                logger.info(f"{tag} video {busy_id} still in progress, skipping this cycle")
                return FireResult(
                    automation_id=automation_id, fired=False,
                    reason=f"video {busy_id} still in progress", next_fire_at=next_fire,
                )

            automation.last_run_at = self._clock()
            await session.commit()

            providers = resolve_providers(automation, automation.user)
            try:
                provider = get_script_provider(providers.llm)
                script = validate_script(await provider.generate_script(ScriptRequest(
                    niche=automation.niche,
                    tone=automation.tone,
                    language=automation.language,
                    duration=automation.duration,
                    art_style=automation.art_style,
                )))
            except Exception as exc:
                message = truncate_error(exc, settings.error_message_max_len)
                logger.error(f"{tag} script generation failed: {message}")
                await notify.notify_schedule_failed(automation_id, message)
                next_fire = self.schedule(automation)
                return FireResult(
                    automation_id=automation_id, fired=False,
                    reason=f"script generation failed: {message}", next_fire_at=next_fire,
                )

            video = Video(
                series_id=series.id,
                title=script.title,
                description=script.description,
                hashtags=script.hashtags,
                script_text=script.script_text,
                scenes_json=[s.to_dict() for s in script.scenes],
                target_duration=automation.duration,
                status=VideoStatus.queued.value,
            )
            session.add(video)
            await session.flush()
            job = build_job(video, automation, series, providers, script)
            video.job_payload = job.to_payload()
            await session.commit()

            try:
                await self._enqueue(job)
            except Exception as exc:
                video.status = VideoStatus.failed.value
                video.error_message = truncate_error(f"Enqueue failed: {exc}", settings.error_message_max_len)
                await session.commit()
                logger.error(f"{tag} {video.error_message}")
            else:
                logger.info(f"{tag} created video {video.id} ({len(script.scenes)} scenes) and enqueued")

            next_fire = self.schedule(automation)
            return FireResult(automation_id=automation_id, fired=True, video_id=video.id, next_fire_at=next_fire)

    async def trigger_now(self, automation_id: int) -> FireResult:
        return await self.on_fire(automation_id, manual=True)

    async def stop_automation(self, automation_id: int) -> bool:
        async with self._sessions()() as session:
            automation = await session.get(Automation, automation_id)
            if automation is None:
                return False
            automation.enabled = False
            await session.commit()
        self.cancel(automation_id)
        logger.info(f"[scheduler][automation={automation_id}] stopped")
        return True

    # ── interval jobs ────────────────────────────────────────

    async def _run_posting_sweep(self) -> dict:
        return await self.poster.run_posting_sweep()

    async def _run_watchdog(self) -> dict:
        async with self._sessions()() as session:
            return await run_watchdog(session)


# Global instance
automation_scheduler = AutomationScheduler()
