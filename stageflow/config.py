from __future__ import annotations

from functools import lru_cache
from typing import Annotated, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_name: str = Field("Stageflow Import Planner", validation_alias="APP_NAME")
    database_url: str = Field(
        "sqlite:///./stageflow.db",
        validation_alias="DATABASE_URL",
        description="SQLAlchemy connection string for the configuration store.",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Python logging verbosity for application modules (e.g. INFO, DEBUG).",
    )
    preview_sample_size: int = Field(
        default=5,
        validation_alias="PREVIEW_SAMPLE_SIZE",
        description="Default number of rows sampled from each table for join and relationship previews.",
        ge=1,
        le=1000,
    )
    preview_max_rows: int = Field(
        default=500,
        validation_alias="PREVIEW_MAX_ROWS",
        description="Upper bound accepted for any operator supplied preview limit.",
        ge=1,
    )
    relationship_match_examples: int = Field(
        default=5,
        validation_alias="RELATIONSHIP_MATCH_EXAMPLES",
        description="Number of matched row pairs returned by a relationship preview.",
        ge=0,
    )
    relationship_unmatch_examples: int = Field(
        default=3,
        validation_alias="RELATIONSHIP_UNMATCH_EXAMPLES",
        description="Number of unmatched rows returned by a relationship preview.",
        ge=0,
    )
    connection_timeout_seconds: int = Field(
        default=10,
        validation_alias="CONNECTION_TIMEOUT_SECONDS",
        description="Timeout applied to source database connections and REST requests.",
        ge=1,
    )
    frontend_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        validation_alias="FRONTEND_ORIGINS",
        description="Comma-separated list of allowed CORS origins for the frontend UI.",
    )

    @field_validator("frontend_origins", mode="before")
    @classmethod
    def _split_origins(cls, value):
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value


@lru_cache()
def get_settings() -> Settings:
    return Settings()
