from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env(name: str) -> AliasChoices:
    return AliasChoices(name, f"REELSMITH_{name}")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "reelsmith"
    environment: str = Field(default="local", validation_alias=_env("ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/reelsmith",
        validation_alias=_env("DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=_env("REDIS_URL"))

    # Public storage for finished videos and music beds
    media_root: str = Field(default="/data/public", validation_alias=_env("MEDIA_ROOT"))
    music_dir: str | None = Field(default=None, validation_alias=_env("MUSIC_DIR"))
    public_base_url: str = Field(default="http://localhost:8000", validation_alias=_env("PUBLIC_BASE_URL"))

    # Scheduler
    scheduler_enabled: bool = Field(default=True, validation_alias=_env("SCHEDULER_ENABLED"))
    schedule_sync_interval_minutes: int = Field(default=10, validation_alias=_env("SCHEDULE_SYNC_INTERVAL_MINUTES"))
    schedule_horizon_days: int = Field(default=8, validation_alias=_env("SCHEDULE_HORIZON_DAYS"))
    schedule_rearm_tolerance_sec: int = Field(default=60, validation_alias=_env("SCHEDULE_REARM_TOLERANCE_SEC"))
    schedule_misfire_grace_sec: int = Field(default=900, validation_alias=_env("SCHEDULE_MISFIRE_GRACE_SEC"))

    # Job queue / worker
    job_max_attempts: int = Field(default=3, validation_alias=_env("JOB_MAX_ATTEMPTS"))
    job_backoff_base_sec: int = Field(default=5, validation_alias=_env("JOB_BACKOFF_BASE_SEC"))
    job_history_completed: int = Field(default=100, validation_alias=_env("JOB_HISTORY_COMPLETED"))
    job_history_failed: int = Field(default=50, validation_alias=_env("JOB_HISTORY_FAILED"))
    job_terminal_ttl_sec: int = Field(default=24 * 3600, validation_alias=_env("JOB_TERMINAL_TTL_SEC"))
    worker_concurrency: int = Field(default=1, validation_alias=_env("WORKER_CONCURRENCY"))

    # Providers
    default_llm_provider: str = Field(default="stub", validation_alias=_env("DEFAULT_LLM_PROVIDER"))
    default_tts_provider: str = Field(default="silent", validation_alias=_env("DEFAULT_TTS_PROVIDER"))
    default_image_provider: str = Field(default="placeholder", validation_alias=_env("DEFAULT_IMAGE_PROVIDER"))
    image_max_attempts: int = Field(default=3, validation_alias=_env("IMAGE_MAX_ATTEMPTS"))
    image_retry_delay_sec: float = Field(default=2.0, validation_alias=_env("IMAGE_RETRY_DELAY_SEC"))

    # Media engine
    ffmpeg_bin: str = Field(default="ffmpeg", validation_alias=_env("FFMPEG_BIN"))
    ffprobe_bin: str = Field(default="ffprobe", validation_alias=_env("FFPROBE_BIN"))
    ffmpeg_timeout_sec: int = Field(default=1800, validation_alias=_env("FFMPEG_TIMEOUT_SEC"))
    ffmpeg_preset: str = Field(default="fast", validation_alias=_env("FFMPEG_PRESET"))
    caption_fonts_dir: str | None = Field(default=None, validation_alias=_env("CAPTION_FONTS_DIR"))

    # Social poster
    posting_sweep_enabled: bool = Field(default=True, validation_alias=_env("POSTING_SWEEP_ENABLED"))
    posting_sweep_interval_minutes: int = Field(default=5, validation_alias=_env("POSTING_SWEEP_INTERVAL_MINUTES"))
    posting_sweep_batch: int = Field(default=10, validation_alias=_env("POSTING_SWEEP_BATCH"))
    publish_max_attempts: int = Field(default=3, validation_alias=_env("PUBLISH_MAX_ATTEMPTS"))
    publish_retry_delay_sec: float = Field(default=30.0, validation_alias=_env("PUBLISH_RETRY_DELAY_SEC"))
    publish_claim_stale_minutes: int = Field(default=10, validation_alias=_env("PUBLISH_CLAIM_STALE_MINUTES"))
    publish_failed_retry_minutes: int = Field(default=30, validation_alias=_env("PUBLISH_FAILED_RETRY_MINUTES"))
    platform_min_gap_minutes: dict[str, int] = Field(
        default_factory=lambda: {"YOUTUBE": 120, "INSTAGRAM": 90, "FACEBOOK": 90},
        validation_alias=_env("PLATFORM_MIN_GAP_MINUTES"),
    )
    first_comment_enabled: bool = Field(default=True, validation_alias=_env("FIRST_COMMENT_ENABLED"))
    first_comment_delay_sec: float = Field(default=15.0, validation_alias=_env("FIRST_COMMENT_DELAY_SEC"))
    instagram_poll_attempts: int = Field(default=30, validation_alias=_env("INSTAGRAM_POLL_ATTEMPTS"))
    instagram_poll_interval_sec: float = Field(default=5.0, validation_alias=_env("INSTAGRAM_POLL_INTERVAL_SEC"))
    youtube_client_id: str | None = Field(default=None, validation_alias=_env("YOUTUBE_CLIENT_ID"))
    youtube_client_secret: str | None = Field(default=None, validation_alias=_env("YOUTUBE_CLIENT_SECRET"))

    # Watchdog
    watchdog_enabled: bool = Field(default=True, validation_alias=_env("WATCHDOG_ENABLED"))
    watchdog_interval_minutes: int = Field(default=5, validation_alias=_env("WATCHDOG_INTERVAL_MINUTES"))
    stuck_generating_minutes: int = Field(default=90, validation_alias=_env("STUCK_GENERATING_MINUTES"))
    watchdog_auto_requeue: bool = Field(default=False, validation_alias=_env("WATCHDOG_AUTO_REQUEUE"))

    # Alerts
    telegram_bot_token: str | None = Field(default=None, validation_alias=_env("TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=_env("TELEGRAM_CHAT_ID"))

    error_message_max_len: int = Field(default=500, validation_alias=_env("ERROR_MESSAGE_MAX_LEN"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url

    def min_gap_minutes_for(self, platform: str) -> int:
        return int(self.platform_min_gap_minutes.get(platform.upper(), 0))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
