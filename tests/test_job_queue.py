import json
from unittest.mock import MagicMock

import pytest

from reelsmith.errors import EnqueueError
from reelsmith.schemas import SceneSpec, VideoJob
from reelsmith.services import job_queue


def make_job(video_id: int = 7) -> VideoJob:
    return VideoJob(
        video_id=video_id,
        series_id=1,
        title="The lighthouse",
        scenes=[SceneSpec(text="Wait.", visual_description="a lighthouse at night")],
        llm_provider="stub",
        tts_provider="silent",
        image_provider="placeholder",
    )


def test_payload_uses_camel_case_and_round_trips():
    payload = make_job().to_payload()
    assert payload["videoId"] == 7
    assert payload["scenes"][0]["visualDescription"] == "a lighthouse at night"
    assert VideoJob.model_validate(payload) == make_job()


def test_job_requires_scenes():
    with pytest.raises(ValueError):
        VideoJob(video_id=1, series_id=1, scenes=[], llm_provider="a", tts_provider="b", image_provider="c")


@pytest.mark.anyio
async def test_enqueue_is_deduplicated_while_in_flight(redis):
    dispatch = MagicMock(return_value="video-7-abc")
    assert await job_queue.enqueue(make_job(), redis=redis, dispatch=dispatch) == "7"
    assert await job_queue.enqueue(make_job(), redis=redis, dispatch=dispatch) == "7"

    dispatch.assert_called_once()
    state = await job_queue.get_job_state(7, redis=redis)
    assert state["state"] == job_queue.STATE_WAITING
    assert state["celery_task_id"] == "video-7-abc"
    assert "payload" not in state
    stored = json.loads(await redis.hget(job_queue.job_key(7), "payload"))
    assert stored["videoId"] == 7


@pytest.mark.anyio
async def test_terminal_job_is_replaced_on_enqueue(redis):
    dispatch = MagicMock(side_effect=["video-7-a", "video-7-b"])
    await job_queue.enqueue(make_job(), redis=redis, dispatch=dispatch)
    await job_queue.mark_state(7, job_queue.STATE_FAILED, redis=redis, attempts=3, error="boom")

    await job_queue.enqueue(make_job(), redis=redis, dispatch=dispatch)

    assert dispatch.call_count == 2
    state = await job_queue.get_job_state(7, redis=redis)
    assert state["state"] == job_queue.STATE_WAITING
    assert state["attempts"] == 0
    assert "error" not in state


@pytest.mark.anyio
async def test_dispatch_failure_leaves_no_record(redis):
    dispatch = MagicMock(side_effect=ConnectionError("broker down"))
    with pytest.raises(EnqueueError):
        await job_queue.enqueue(make_job(), redis=redis, dispatch=dispatch)
    assert await job_queue.get_job_state(7, redis=redis) is None


@pytest.mark.anyio
async def test_terminal_states_enter_bounded_history(redis, monkeypatch):
    from reelsmith.settings import get_settings

    monkeypatch.setattr(get_settings(), "job_history_failed", 2)
    for video_id in (1, 2, 3):
        await job_queue.mark_state(video_id, job_queue.STATE_FAILED, redis=redis, error="x")
    await job_queue.mark_state(4, job_queue.STATE_COMPLETED, redis=redis)

    assert await job_queue.recent_jobs(job_queue.STATE_FAILED, redis=redis) == ["3", "2"]
    assert await job_queue.recent_jobs(job_queue.STATE_COMPLETED, redis=redis) == ["4"]
    assert 0 < await redis.ttl(job_queue.job_key(4)) <= get_settings().job_terminal_ttl_sec


@pytest.mark.anyio
async def test_remove_job_refuses_in_flight(redis):
    await job_queue.enqueue(make_job(), redis=redis, dispatch=MagicMock(return_value="t"))
    await job_queue.mark_state(7, job_queue.STATE_ACTIVE, redis=redis, attempts=1)
    assert await job_queue.is_in_flight(7, redis=redis)
    assert await job_queue.remove_job(7, redis=redis) is False

    await job_queue.mark_state(7, job_queue.STATE_COMPLETED, redis=redis)
    assert await job_queue.remove_job(7, redis=redis) is True
    assert await job_queue.get_job_state(7, redis=redis) is None
