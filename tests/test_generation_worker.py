import tempfile
from pathlib import Path

import pytest

from reelsmith.errors import AssemblyError, GenerationError
from reelsmith.models import Video
from reelsmith.schemas import SceneSpec, VideoJob
from reelsmith.services import providers
from reelsmith.services.generation_worker import GenerationWorker
from reelsmith.services.media_assembler import AssemblyResult
from reelsmith.services.providers import (
    ImageProvider,
    ImageSet,
    SpeechProvider,
    SpeechResult,
    estimate_scene_timings,
)


class FileSpeech(SpeechProvider):
    name = "test-speech"

    def __init__(self, timing_count: int | None = None):
        self.timing_count = timing_count
        self.tmp_dirs: list[Path] = []

    async def generate_speech(self, script, voice_id, scenes, *, language="en") -> SpeechResult:
        tmp = Path(tempfile.mkdtemp())
        self.tmp_dirs.append(tmp)
        audio = tmp / "narration.m4a"
        audio.write_bytes(b"aac")
        timings = estimate_scene_timings([s.text for s in scenes], 6400)
        if self.timing_count is not None:
            timings = timings[: self.timing_count]
        return SpeechResult(audio_path=audio, duration_ms=6400, scene_timings=timings, tmp_dir=tmp)


class FileImages(ImageProvider):
    name = "test-images"

    async def generate_one(self, prompt, negative_prompt, out_path: Path) -> Path:
        out_path.write_bytes(b"png")
        return out_path


@pytest.fixture
def speech():
    provider = FileSpeech()
    providers.register_speech_provider(provider)
    return provider


@pytest.fixture(autouse=True)
def images():
    providers.register_image_provider(FileImages())


@pytest.fixture
async def video(session_factory, series):
    async with session_factory() as session:
        row = Video(series_id=series.id, title="The lighthouse", status="QUEUED")
        session.add(row)
        await session.commit()
        return row


def make_job(video_id: int, series_id: int) -> VideoJob:
    return VideoJob(
        video_id=video_id,
        series_id=series_id,
        title="The lighthouse",
        scenes=[
            SceneSpec(text="Wait. Something moved.", visual_description="a lighthouse"),
            SceneSpec(text="The keeper never came back.", visual_description="empty stairs"),
        ],
        niche="scary-stories",
        tone="suspenseful",
        art_style_prompt="noir style",
        llm_provider="stub",
        tts_provider="test-speech",
        image_provider="test-images",
        automation_name="Night Shift daily",
    )


async def _load(session_factory, video_id) -> Video:
    async with session_factory() as session:
        return await session.get(Video, video_id)


@pytest.mark.anyio
async def test_job_runs_to_ready(session_factory, video, speech):
    seen_stage = {}

    async def assembler(request, *, tag):
        current = await _load(session_factory, video.id)
        seen_stage.update(status=current.status, stage=current.generation_stage)
        assert len(request.image_paths) == len(request.timings) == 2
        request.output_path.write_bytes(b"mp4")
        return AssemblyResult(output_path=request.output_path, duration_ms=6400, music_used=False)

    status = await GenerationWorker(session_factory, assembler=assembler).run(make_job(video.id, video.series_id))

    assert status == "READY"
    assert seen_stage == {"status": "GENERATING", "stage": "ASSEMBLY"}
    row = await _load(session_factory, video.id)
    assert row.status == "READY"
    assert row.generation_stage is None
    assert row.duration == 6
    assert row.video_url == f"/videos/Night_Shift_daily/The_lighthouse-{video.id}/video.mp4"
    assert row.script_text == "Wait. Something moved. The keeper never came back."
    assert row.scenes_json[1] == {"text": "The keeper never came back.", "visualDescription": "empty stairs"}
    assert all(not d.exists() for d in speech.tmp_dirs)


@pytest.mark.anyio
async def test_failure_marks_video_failed_and_reraises(session_factory, video, speech):
    async def assembler(request, *, tag):
        raise AssemblyError("ffmpeg exited with code 1:\nInvalid argument")

    with pytest.raises(AssemblyError):
        await GenerationWorker(session_factory, assembler=assembler).run(make_job(video.id, video.series_id))

    row = await _load(session_factory, video.id)
    assert row.status == "FAILED"
    assert row.generation_stage is None
    assert "Invalid argument" in row.error_message
    assert all(not d.exists() for d in speech.tmp_dirs)


@pytest.mark.anyio
async def test_timing_count_mismatch_fails_before_images(session_factory, video):
    providers.register_speech_provider(FileSpeech(timing_count=1))

    async def assembler(request, *, tag):
        raise AssertionError("assembler must not run")

    with pytest.raises(GenerationError):
        await GenerationWorker(session_factory, assembler=assembler).run(make_job(video.id, video.series_id))

    row = await _load(session_factory, video.id)
    assert row.status == "FAILED"
    assert "1 timings for 2 scenes" in row.error_message


@pytest.mark.anyio
async def test_retry_overwrites_previous_failure(session_factory, video, speech):
    async with session_factory() as session:
        row = await session.get(Video, video.id)
        row.status = "FAILED"
        row.error_message = "old failure"
        await session.commit()

    async def assembler(request, *, tag):
        request.output_path.write_bytes(b"mp4")
        return AssemblyResult(output_path=request.output_path, duration_ms=6400, music_used=False)

    await GenerationWorker(session_factory, assembler=assembler).run(make_job(video.id, video.series_id))
    row = await _load(session_factory, video.id)
    assert row.status == "READY"
    assert row.error_message is None


@pytest.mark.anyio
async def test_missing_video_drops_job(session_factory, series, speech):
    assert await GenerationWorker(session_factory).run(make_job(9999, series.id)) is None
