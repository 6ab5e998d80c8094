"""Configuration for the REST server.

The server can start against local state without a messaging gateway; sweep
workers (and the sweep endpoint) need ENGINE_GATEWAY_URL and fail fast without it.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the administrative REST API and its background sweep workers."""

    start_workers: bool = Field(
        default=False,
        validation_alias="ENGINE_SERVER_START_WORKERS",
        description=(
            "If true, the server starts ENGINE_WORKER_COUNT sweep worker threads on "
            "startup and stops them on shutdown."
        ),
    )

    # Dev-friendly CORS for the dashboard. Override via ENGINE_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="ENGINE_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
