from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="FreeTalk Realtime", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    allowed_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost:3000",
            "http://localhost:5000",
            "http://localhost:8080",
        ],
        description="Origins allowed to open the realtime websocket in production",
    )

    database_url: str = Field(
        default="sqlite:///./freetalk.db",
        description="SQLAlchemy URL of the datastore behind the persistence adapter",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24)

    call_ringing_timeout_seconds: float = Field(
        default=30,
        gt=0,
        description="Seconds an unanswered call rings before it times out",
    )
    websocket_ping_interval_seconds: float = Field(
        default=25,
        ge=0,
        description="Idle seconds before the server sends a keepalive ping",
    )
    websocket_silence_timeout_seconds: float = Field(
        default=60,
        ge=0,
        description="Seconds without any inbound frame before a connection is closed",
    )
    presence_write_interval_seconds: float = Field(
        default=30,
        ge=0,
        description="Minimum seconds between two lastActive writes for one user",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def assemble_allowed_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return []
        if isinstance(v, str):
            return [origin.strip().rstrip("/") for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return [str(origin).strip().rstrip("/") for origin in v]
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()
