from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration using environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="TEMPO_",
        case_sensitive=False,
        extra="ignore",
    )

    # Database Configuration
    database_url: str = Field(default="sqlite+aiosqlite:///data/tempo.db")

    # Session Builder
    max_session_attempts: int = Field(default=10, ge=1)
    transient_retry_delay_s: float = Field(default=2.0, ge=0.0)
    structural_retry_delay_s: float = Field(default=1.0, ge=0.0)

    # Backlog defaults (seed values for the persisted queue settings record)
    default_task_duration: int = Field(default=25, ge=5)
    suggestion_strategy: str = Field(default="priority")

    # Startup
    startup_transition_timeout_s: float = Field(default=15.0, gt=0.0)

    # Development Configuration
    log_level: str = Field(default="INFO")
    environment: str = Field(default="production")
    seed_demo_data: bool = Field(default=False)

    @property
    def is_development(self) -> bool:
        return self.environment.strip().lower() in {"development", "dev", "test"}


settings = Settings()
