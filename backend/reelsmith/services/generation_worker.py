"""
Generation worker: drives one video job through

    SCRIPT -> TTS -> IMAGES -> ASSEMBLY -> UPLOADING -> READY

persisting status/stage before each step. Any exception marks the video
FAILED (stage cleared, message kept) and is re-raised so the queue's retry
policy applies. A retry always starts again at SCRIPT and overwrites the
same row.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelsmith.errors import GenerationError, truncate_error
from reelsmith.models import GenerationStage, Video, VideoStatus
from reelsmith.schemas import VideoJob
from reelsmith.services.media_assembler import AssemblyRequest, AssemblyResult, assemble_video
from reelsmith.services.providers import (
    ImageSet,
    ScriptScene,
    SpeechResult,
    get_image_provider,
    get_speech_provider,
)
from reelsmith.services.storage import store_video
from reelsmith.settings import get_settings

logger = logging.getLogger(__name__)

Assembler = Callable[..., Awaitable[AssemblyResult]]


def resolve_music_path(ref: str | None) -> Path | None:
    if not ref:
        return None
    candidate = Path(ref)
    if candidate.is_absolute():
        return candidate if candidate.is_file() else None
    music_dir = get_settings().music_dir
    if not music_dir:
        return None
    candidate = Path(music_dir) / (ref if ref.endswith(".mp3") else f"{ref}.mp3")
    return candidate if candidate.is_file() else None


def validate_speech(speech: SpeechResult, scene_count: int) -> None:
    if speech.duration_ms <= 0:
        raise GenerationError(f"Speech provider returned non-positive duration {speech.duration_ms}ms")
    if not Path(speech.audio_path).is_file():
        raise GenerationError(f"Speech provider audio file missing: {speech.audio_path}")
    if len(speech.scene_timings) != scene_count:
        raise GenerationError(
            f"Speech provider returned {len(speech.scene_timings)} timings for {scene_count} scenes"
        )
    cursor = 0
    for idx, t in enumerate(speech.scene_timings):
        if t.start_ms < cursor or t.end_ms <= t.start_ms:
            raise GenerationError(f"Invalid timing for scene {idx + 1}: {t.start_ms}-{t.end_ms}ms")
        cursor = t.end_ms


def validate_images(images: ImageSet, scene_count: int) -> None:
    if len(images.image_paths) != scene_count:
        raise GenerationError(f"Image provider returned {len(images.image_paths)} images for {scene_count} scenes")
    missing = [str(p) for p in images.image_paths if not Path(p).is_file()]
    if missing:
        raise GenerationError(f"Image files missing: {', '.join(missing[:3])}")


class GenerationWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        assembler: Assembler = assemble_video,
    ):
        self._session_factory = session_factory
        self._assembler = assembler

    async def _update(self, video_id: int, **fields: Any) -> bool:
        async with self._session_factory() as session:
            video = await session.get(Video, video_id)
            if video is None:
                return False
            for name, value in fields.items():
                setattr(video, name, value)
            await session.commit()
            return True

    async def _enter(self, video_id: int, stage: GenerationStage, tag: str, **fields: Any) -> None:
        logger.info(f"{tag} stage {stage.value}")
        await self._update(
            video_id,
            status=VideoStatus.generating.value,
            generation_stage=stage.value,
            **fields,
        )

    async def run(self, job: VideoJob) -> str | None:
        """Process one job. Returns the final status, or None if the video is gone."""
        settings = get_settings()
        video_id = job.video_id
        tag = f"[worker][video={video_id}]"

        async with self._session_factory() as session:
            if await session.get(Video, video_id) is None:
                logger.warning(f"{tag} Video no longer exists, dropping job")
                return None

        scenes = [ScriptScene(text=s.text, visual_description=s.visual_description) for s in job.scenes]
        script_text = job.script_text or " ".join(s.text for s in scenes)
        speech: SpeechResult | None = None
        images: ImageSet | None = None
        work_dir = Path(tempfile.mkdtemp(prefix=f"reelsmith-{video_id}-"))

        try:
            await self._enter(
                video_id,
                GenerationStage.script,
                tag,
                title=job.title,
                script_text=script_text,
                scenes_json=[s.to_dict() for s in scenes],
                target_duration=job.duration,
                error_message=None,
                video_url=None,
                duration=None,
            )

            await self._enter(video_id, GenerationStage.tts, tag)
            speech = await get_speech_provider(job.tts_provider).generate_speech(
                script_text, job.voice_id, scenes, language=job.language
            )
            validate_speech(speech, len(scenes))
            logger.info(f"{tag} narration {speech.duration_ms} ms")

            await self._enter(video_id, GenerationStage.images, tag)
            images = await get_image_provider(job.image_provider).generate_images(
                [s.visual_description or s.text for s in scenes],
                job.art_style_prompt,
                negative_prompt=job.negative_prompt,
            )
            validate_images(images, len(scenes))

            await self._enter(video_id, GenerationStage.assembly, tag)
            music_path = resolve_music_path(job.music_path)
            if job.music_path and music_path is None:
                logger.warning(f"{tag} Music {job.music_path!r} not found, narration only")
            result = await self._assembler(
                AssemblyRequest(
                    image_paths=list(images.image_paths),
                    audio_path=speech.audio_path,
                    timings=list(speech.scene_timings),
                    scene_texts=[s.text for s in scenes],
                    output_path=work_dir / "video.mp4",
                    niche=job.niche,
                    tone=job.tone,
                    music_path=music_path,
                ),
                tag=tag,
            )

            await self._enter(video_id, GenerationStage.uploading, tag)
            video_url = store_video(result.output_path, video_id, job.title, job.automation_name)
            await self._update(
                video_id,
                status=VideoStatus.ready.value,
                generation_stage=None,
                video_url=video_url,
                duration=round(speech.duration_ms / 1000),
            )
            logger.info(f"{tag} READY {video_url}")
            return VideoStatus.ready.value

        except Exception as exc:
            message = truncate_error(exc, settings.error_message_max_len)
            logger.error(f"{tag} FAILED: {message}")
            await self._update(
                video_id,
                status=VideoStatus.failed.value,
                generation_stage=None,
                error_message=message,
            )
            raise

        finally:
            for tmp in (
                speech.tmp_dir if speech else None,
                images.tmp_dir if images else None,
                work_dir,
            ):
                if tmp:
                    shutil.rmtree(tmp, ignore_errors=True)
