from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from reelsmith.schemas import SceneSpec, VideoJob
from reelsmith.services import job_queue
from reelsmith.worker.tasks import _process_video_async

PAYLOAD = VideoJob(
    video_id=40, series_id=2, scenes=[SceneSpec(text="Wait.")],
    llm_provider="stub", tts_provider="silent", image_provider="placeholder",
).to_payload()


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def engine():
    engine = MagicMock()
    engine.dispose = AsyncMock()
    return engine


def run_with(server, engine, worker_run, notify=None):
    worker_cls = MagicMock()
    worker_cls.return_value.run = worker_run
    return (
        patch("reelsmith.db.create_session_factory", return_value=(engine, MagicMock())),
        patch(
            "reelsmith.services.job_queue.new_redis",
            side_effect=lambda: FakeAsyncRedis(server=server, decode_responses=True),
        ),
        patch("reelsmith.services.generation_worker.GenerationWorker", worker_cls),
        patch("reelsmith.services.notify.notify_video_failed", notify or AsyncMock()),
    )


async def job_state(server):
    return await job_queue.get_job_state(40, redis=FakeAsyncRedis(server=server, decode_responses=True))


@pytest.mark.anyio
async def test_successful_run_completes_job(server, engine):
    p1, p2, p3, p4 = run_with(server, engine, AsyncMock(return_value="READY"))
    with p1, p2, p3, p4:
        result = await _process_video_async(PAYLOAD, 1, 3)

    assert result == {"video_id": 40, "status": "READY"}
    state = await job_state(server)
    assert state["state"] == job_queue.STATE_COMPLETED and state["attempts"] == 1
    engine.dispose.assert_awaited_once()


@pytest.mark.anyio
async def test_failed_attempt_with_retries_left_is_delayed(server, engine):
    notify = AsyncMock()
    p1, p2, p3, p4 = run_with(server, engine, AsyncMock(side_effect=RuntimeError("tts down")), notify)
    with p1, p2, p3, p4:
        with pytest.raises(RuntimeError):
            await _process_video_async(PAYLOAD, 1, 3)

    state = await job_state(server)
    assert state["state"] == job_queue.STATE_DELAYED
    assert state["error"] == "tts down"
    notify.assert_not_awaited()
    engine.dispose.assert_awaited_once()


@pytest.mark.anyio
async def test_last_attempt_failure_is_terminal_and_alerts(server, engine):
    notify = AsyncMock()
    p1, p2, p3, p4 = run_with(server, engine, AsyncMock(side_effect=RuntimeError("tts down")), notify)
    with p1, p2, p3, p4:
        with pytest.raises(RuntimeError):
            await _process_video_async(PAYLOAD, 3, 3)

    state = await job_state(server)
    assert state["state"] == job_queue.STATE_FAILED
    notify.assert_awaited_once_with(40, "tts down")
    history = await job_queue.recent_jobs(redis=FakeAsyncRedis(server=server, decode_responses=True))
    assert history == ["40"]
