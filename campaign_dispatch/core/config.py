"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./campaign_dispatch.db"

    # Transport: 'smtp' | 'resend' | 'dry_run'
    EMAIL_TRANSPORT: str = "smtp"
    RESEND_API_KEY: str = ""
    RESEND_API_URL: str = "https://api.resend.com/emails"
    SMTP_TIMEOUT_SECONDS: float = 30.0

    # Sending pace (seconds)
    DEFAULT_SEND_INTERVAL_SECONDS: float = 60.0
    MAX_WAIT_SLICE_SECONDS: float = 60.0
    IDLE_POLL_SECONDS: float = 1.0

    # Batched writer (0 = pick the environment default)
    BATCH_SIZE: int = 0
    BATCH_TIMEOUT_SECONDS: float = 0.0

    # Queue guards
    START_LEASE_TTL_SECONDS: int = 120
    TASK_ADD_COOLDOWN_SECONDS: float = 5.0
    TASK_RELOAD_AFTER_SECONDS: float = 60.0
    COMPLETION_CHECK_COOLDOWN_SECONDS: float = 30.0
    RECENT_ACTIVITY_SECONDS: float = 300.0

    # Queue self-healing policy
    HEALTH_CHECK_MIN_SECONDS: float = 30.0
    HEALTH_CHECK_MAX_SECONDS: float = 120.0
    HEALTH_REFRESH_MULTIPLIER: float = 3.0
    HEALTH_FORCE_PROGRESS_MULTIPLIER: float = 5.0
    HEALTH_RESTART_MULTIPLIER: float = 8.0
    HEALTH_REFRESH_FLOOR_SECONDS: float = 90.0

    # Recovery sweeper
    RECOVERY_SWEEP_INTERVAL_SECONDS: float = 120.0
    ZOMBIE_THRESHOLD_MINUTES: int = 60
    TIMEOUT_THRESHOLD_MINUTES: int = 30
    CRITICAL_TIMEOUT_MINUTES: int = 45
    STALE_CLAIM_MINUTES: int = 15

    @property
    def is_production(self) -> bool:
        return self.ENV in ("prod", "production")

    @property
    def batch_size(self) -> int:
        """Flush threshold; smaller in production to bound transaction size."""
        if self.BATCH_SIZE > 0:
            return self.BATCH_SIZE
        return 30 if self.is_production else 50

    @property
    def batch_timeout_seconds(self) -> float:
        if self.BATCH_TIMEOUT_SECONDS > 0:
            return self.BATCH_TIMEOUT_SECONDS
        return 10.0 if self.is_production else 5.0


settings = Settings()
