from __future__ import annotations

from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


class Platform(str, Enum):
    youtube = "YOUTUBE"
    instagram = "INSTAGRAM"
    facebook = "FACEBOOK"


class Frequency(str, Enum):
    daily = "daily"
    every_other_day = "every_other_day"
    weekly = "weekly"


class VideoStatus(str, Enum):
    queued = "QUEUED"
    generating = "GENERATING"
    ready = "READY"
    failed = "FAILED"
    review = "REVIEW"
    posted = "POSTED"


class GenerationStage(str, Enum):
    script = "SCRIPT"
    tts = "TTS"
    images = "IMAGES"
    assembly = "ASSEMBLY"
    uploading = "UPLOADING"


# A video in one of these states blocks a new automation fire for its series.
IN_PROGRESS_STATUSES = (VideoStatus.queued.value, VideoStatus.generating.value)
PUBLISHABLE_STATUSES = (VideoStatus.ready.value, VideoStatus.posted.value)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(sa.String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    default_llm_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    default_tts_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    default_image_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    social_accounts: Mapped[list["SocialAccount"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    series: Mapped[list["Series"]] = relationship(back_populates="user", passive_deletes=True)


class SocialAccount(Base):
    __tablename__ = "social_accounts"
    __table_args__ = (
        sa.UniqueConstraint("user_id", "platform", "platform_user_id", name="uq_social_accounts_user_platform"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    username: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    platform_user_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    page_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    # access_token / refresh_token / expiry, written by the OAuth connect flow
    credentials_json: Mapped[dict | None] = mapped_column(sa.JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    user: Mapped[User] = relationship(back_populates="social_accounts")


class Series(Base):
    __tablename__ = "series"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    niche: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    art_style: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    voice_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    language: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="en")
    tone: Mapped[str] = mapped_column(sa.String(64), nullable=False, server_default="dramatic")
    llm_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    tts_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    image_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )

    user: Mapped[User] = relationship(back_populates="series")
    videos: Mapped[list["Video"]] = relationship(back_populates="series", passive_deletes=True)


class Automation(Base):
    __tablename__ = "automations"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    series_id: Mapped[int | None] = mapped_column(sa.ForeignKey("series.id", ondelete="SET NULL"), nullable=True)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    niche: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    art_style: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    voice_id: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    language: Mapped[str] = mapped_column(sa.String(16), nullable=False, server_default="en")
    tone: Mapped[str] = mapped_column(sa.String(64), nullable=False, server_default="dramatic")
    duration: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="45")
    llm_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    tts_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    image_provider: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    music_track: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    target_platforms: Mapped[list | None] = mapped_column(sa.JSON(none_as_null=True), nullable=True)
    include_ai_tags: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true())
    enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true(), index=True)
    frequency: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=Frequency.daily.value)
    # Comma-joined "HH:MM" fire times, local to `timezone`
    post_time: Mapped[str] = mapped_column(sa.String(128), nullable=False, server_default="09:00")
    timezone: Mapped[str] = mapped_column(sa.String(64), nullable=False, server_default="UTC")
    last_run_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    user: Mapped[User] = relationship()
    series: Mapped[Series | None] = relationship()


class Video(Base):
    __tablename__ = "videos"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    series_id: Mapped[int] = mapped_column(sa.ForeignKey("series.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    hashtags: Mapped[list | None] = mapped_column(sa.JSON(none_as_null=True), nullable=True)
    script_text: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    scenes_json: Mapped[list | None] = mapped_column(sa.JSON(none_as_null=True), nullable=True)
    target_duration: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, server_default=VideoStatus.queued.value, index=True
    )
    generation_stage: Mapped[str | None] = mapped_column(sa.String(16), nullable=True)
    video_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    duration: Mapped[int | None] = mapped_column(sa.Integer(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    # Ordered per-platform entries, see services.platform_entries
    posted_platforms: Mapped[list | None] = mapped_column(sa.JSON(none_as_null=True), nullable=True)
    posted_version: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0")
    job_payload: Mapped[dict | None] = mapped_column(sa.JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    series: Mapped[Series] = relationship(back_populates="videos")
