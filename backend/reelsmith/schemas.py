from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .models import Platform


class SceneSpec(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    text: str
    visual_description: str = ""


class VideoJob(BaseModel):
    """Self-contained generation job; re-running it never re-reads the automation."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    video_id: int
    series_id: int
    title: str | None = None
    script_text: str | None = None
    scenes: list[SceneSpec]
    niche: str | None = None
    tone: str | None = None
    art_style_prompt: str = ""
    negative_prompt: str | None = None
    voice_id: str | None = None
    language: str = "en"
    duration: int = 45
    llm_provider: str
    tts_provider: str
    image_provider: str
    music_path: str | None = None
    automation_name: str | None = None

    @field_validator("scenes")
    @classmethod
    def require_scenes(cls, value: list[SceneSpec]) -> list[SceneSpec]:
        if not value:
            raise ValueError("job has no scenes")
        return value

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class VideoRead(BaseModel):
    id: int
    series_id: int
    title: str | None = None
    status: str
    generation_stage: str | None = None
    video_url: str | None = None
    duration: int | None = None
    error_message: str | None = None
    posted_platforms: list[Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class PublishRequest(BaseModel):
    platforms: list[Platform] | None = None


class ResetPostedRequest(BaseModel):
    platform: Platform | None = None


class PlatformOutcome(BaseModel):
    platform: str
    success: bool
    post_id: str | None = None
    url: str | None = None
    error: str | None = None
    category: str | None = None
    skipped: bool = False


class JobStateRead(BaseModel):
    video_id: int
    state: str | None = None
    attempts: int = 0
    updated_at: str | None = None
    error: str | None = None


class ArmedTimer(BaseModel):
    automation_id: int
    fire_at: datetime


class SchedulerStatus(BaseModel):
    running: bool
    armed: list[ArmedTimer] = Field(default_factory=list)
    jobs: list[dict] = Field(default_factory=list)


class FireResult(BaseModel):
    automation_id: int
    fired: bool
    video_id: int | None = None
    reason: str | None = None
    next_fire_at: datetime | None = None
