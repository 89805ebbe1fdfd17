"""create users, social_accounts, series, automations, videos

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated: bool = True) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)]
    if with_updated:
        cols.append(sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
            nullable=False,
        ))
    return cols


def _providers() -> list[sa.Column]:
    return [
        sa.Column("llm_provider", sa.String(length=64), nullable=True),
        sa.Column("tts_provider", sa.String(length=64), nullable=True),
        sa.Column("image_provider", sa.String(length=64), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("default_llm_provider", sa.String(length=64), nullable=True),
        sa.Column("default_tts_provider", sa.String(length=64), nullable=True),
        sa.Column("default_image_provider", sa.String(length=64), nullable=True),
        *_timestamps(with_updated=False),
    )

    op.create_table(
        "social_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("platform_user_id", sa.String(length=255), nullable=False),
        sa.Column("page_id", sa.String(length=255), nullable=True),
        sa.Column("credentials_json", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "platform", "platform_user_id", name="uq_social_accounts_user_platform"),
    )
    op.create_index("ix_social_accounts_user_id", "social_accounts", ["user_id"])

    op.create_table(
        "series",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("niche", sa.String(length=64), nullable=False),
        sa.Column("art_style", sa.String(length=64), nullable=False),
        sa.Column("voice_id", sa.String(length=128), nullable=True),
        sa.Column("language", sa.String(length=16), nullable=False, server_default="en"),
        sa.Column("tone", sa.String(length=64), nullable=False, server_default="dramatic"),
        *_providers(),
        *_timestamps(with_updated=False),
    )
    op.create_index("ix_series_user_id", "series", ["user_id"])

    op.create_table(
        "automations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("series_id", sa.Integer(), sa.ForeignKey("series.id", ondelete="SET NULL"), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("niche", sa.String(length=64), nullable=False),
        sa.Column("art_style", sa.String(length=64), nullable=False),
        sa.Column("voice_id", sa.String(length=128), nullable=True),
        sa.Column("language", sa.String(length=16), nullable=False, server_default="en"),
        sa.Column("tone", sa.String(length=64), nullable=False, server_default="dramatic"),
        sa.Column("duration", sa.Integer(), nullable=False, server_default="45"),
        *_providers(),
        sa.Column("music_track", sa.String(length=128), nullable=True),
        sa.Column("target_platforms", sa.JSON(), nullable=True),
        sa.Column("include_ai_tags", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("frequency", sa.String(length=32), nullable=False, server_default="daily"),
        sa.Column("post_time", sa.String(length=128), nullable=False, server_default="09:00"),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_automations_user_id", "automations", ["user_id"])
    op.create_index("ix_automations_enabled", "automations", ["enabled"])

    op.create_table(
        "videos",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("series_id", sa.Integer(), sa.ForeignKey("series.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("hashtags", sa.JSON(), nullable=True),
        sa.Column("script_text", sa.Text(), nullable=True),
        sa.Column("scenes_json", sa.JSON(), nullable=True),
        sa.Column("target_duration", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="QUEUED"),
        sa.Column("generation_stage", sa.String(length=16), nullable=True),
        sa.Column("video_url", sa.Text(), nullable=True),
        sa.Column("duration", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("posted_platforms", sa.JSON(), nullable=True),
        sa.Column("posted_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("job_payload", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_videos_series_id", "videos", ["series_id"])
    op.create_index("ix_videos_status", "videos", ["status"])


def downgrade() -> None:
    op.drop_index("ix_videos_status", table_name="videos")
    op.drop_index("ix_videos_series_id", table_name="videos")
    op.drop_table("videos")
    op.drop_index("ix_automations_enabled", table_name="automations")
    op.drop_index("ix_automations_user_id", table_name="automations")
    op.drop_table("automations")
    op.drop_index("ix_series_user_id", table_name="series")
    op.drop_table("series")
    op.drop_index("ix_social_accounts_user_id", table_name="social_accounts")
    op.drop_table("social_accounts")
    op.drop_table("users")
