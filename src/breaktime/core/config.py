from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration using environment variables."""

    # Slack Configuration
    slack_bot_token: str = Field(default="x")

    # Narrative advisor (optional LLM ranking)
    openai_api_key: str = Field(default="")
    advisor_enabled: bool = Field(default=False)
    advisor_model: str = Field(default="gpt-4o-mini")
    advisor_timeout_s: float = Field(default=8.0, gt=0)

    # Database Configuration
    database_url: str = Field(default="sqlite:///:memory:")

    # Scheduler Configuration
    scheduler_timezone: str = Field(default="UTC")
    default_timezone: str = Field(default="America/New_York")
    work_start_hour: int = Field(default=9, ge=0, le=23)
    work_end_hour: int = Field(default=18, ge=1, le=24)

    # Proactive monitor
    monitor_interval_minutes: int = Field(default=30, ge=1)
    break_threshold_hours: float = Field(default=2.0, gt=0)
    break_cooldown_hours: float = Field(default=2.0, ge=0)
    meeting_lookahead_minutes: int = Field(default=10, ge=0)
    recheck_after_meeting_minutes: int = Field(default=5, ge=0)
    max_recheck_delay_hours: int = Field(default=24, ge=1)

    # Sessions
    external_call_timeout_s: float = Field(default=1.0, gt=0)
    default_focus_minutes: int = Field(default=25, ge=1)
    accepted_break_minutes: int = Field(default=20, ge=1)

    # Daily productivity summary
    metrics_refresh_minutes: int = Field(default=60, ge=1)
    daily_summary_hour: int = Field(default=18, ge=0, le=23)

    # Development Configuration
    log_level: str = Field(default="INFO")

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
