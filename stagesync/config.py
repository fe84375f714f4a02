"""Settings via pydantic-settings with STAGESYNC_ env prefix.

DB connection fields use validation_alias to read the same unprefixed
env vars (DB_PASSWORD, DB_PORT, etc.) that docker-compose uses, so a single
.env file drives both the container and the Python app. DATABASE_URL, when
set, replaces the assembled Postgres URL entirely.
"""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STAGESYNC_", env_file=".env", extra="ignore", populate_by_name=True)

    # DB connection: unprefixed aliases match docker-compose env vars
    db_host: str = Field("localhost", validation_alias="DB_HOST")
    db_port: int = Field(5432, validation_alias="DB_PORT")
    db_user: str = Field("stagesync", validation_alias="DB_USER")
    db_password: str = Field("stagesync_dev_password", validation_alias="DB_PASSWORD")
    db_name: str = Field("stagesync", validation_alias="DB_NAME")
    database_url: str = Field("", validation_alias="DATABASE_URL")

    db_pool_size: int = 10
    db_max_overflow: int = 5
    db_timeout: float = 5.0  # seconds per storage round-trip
    log_level: str = "info"

    # Request context headers
    session_header: str = "x-session-key"
    actor_header: str = "x-actor-id"

    # Presence
    presence_ttl_seconds: float = 45.0

    # History endpoint
    history_default_limit: int = 20
    history_max_limit: int = 100

    # Runtime
    host: str = "0.0.0.0"
    port: int = 8000

    @model_validator(mode="after")
    def _validate_windows(self) -> "Settings":
        if self.db_timeout <= 0:
            raise ValueError("db_timeout must be > 0")
        if self.presence_ttl_seconds <= 0:
            raise ValueError("presence_ttl_seconds must be > 0")
        if not 1 <= self.history_default_limit <= self.history_max_limit:
            raise ValueError(
                f"history_default_limit ({self.history_default_limit}) must be between "
                f"1 and history_max_limit ({self.history_max_limit})"
            )
        return self

    @property
    def db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"postgresql+asyncpg://{self.db_user}:{self.db_password}@{self.db_host}:{self.db_port}/{self.db_name}"
