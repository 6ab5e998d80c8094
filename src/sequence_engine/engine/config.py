"""Configuration for the sequence engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Every setting has a working default so the engine can run against local state
without a messaging gateway; commands that dispatch messages validate the
gateway URL when they build the client.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the enrollment/branching/scheduling core.

    Environment variables:
    - LOG_LEVEL                       (optional)
    - ENGINE_STATE_PATH               (optional)
    - ENGINE_GATEWAY_URL / ENGINE_GATEWAY_TOKEN
    - ENGINE_* for scheduler, retry and branching tuning (see fields)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("engine_state"),
        validation_alias="ENGINE_STATE_PATH",
        description="Directory where sequences, enrollments and history are persisted",
    )

    sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        validation_alias="ENGINE_SWEEP_INTERVAL_SECONDS",
        description="Pause between scheduler sweeps.",
    )
    sweep_batch_size: int = Field(
        default=100,
        ge=1,
        validation_alias="ENGINE_SWEEP_BATCH_SIZE",
        description="Maximum number of due enrollments examined per sweep.",
    )
    lease_seconds: int = Field(
        default=300,
        ge=1,
        validation_alias="ENGINE_LEASE_SECONDS",
        description=(
            "How long a worker's claim on an enrollment lasts. Must exceed the dispatch "
            "timeout; an expired lease lets another worker reclaim the enrollment."
        ),
    )
    worker_count: int = Field(
        default=2,
        ge=1,
        le=64,
        validation_alias="ENGINE_WORKER_COUNT",
        description="Number of sweep worker threads started by the server.",
    )

    max_dispatch_attempts: int = Field(
        default=5,
        ge=1,
        validation_alias="ENGINE_MAX_DISPATCH_ATTEMPTS",
        description="Transient failures allowed before a send is treated as permanently failed.",
    )
    retry_base_seconds: float = Field(
        default=60.0,
        gt=0,
        validation_alias="ENGINE_RETRY_BASE_SECONDS",
        description="First backoff delay; doubled on every further transient failure.",
    )
    retry_max_seconds: float = Field(
        default=3600.0,
        gt=0,
        validation_alias="ENGINE_RETRY_MAX_SECONDS",
        description="Upper bound for a single backoff delay.",
    )
    dispatch_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias="ENGINE_DISPATCH_TIMEOUT_SECONDS",
        description="Timeout for one gateway call. A timeout counts as a transient failure.",
    )

    tenant_rate_limit: int = Field(
        default=120,
        ge=1,
        validation_alias="ENGINE_TENANT_RATE_LIMIT",
        description="Maximum sends per tenant within the rate window.",
    )
    tenant_rate_window_seconds: float = Field(
        default=60.0,
        gt=0,
        validation_alias="ENGINE_TENANT_RATE_WINDOW_SECONDS",
    )

    read_no_reply_window_hours: float = Field(
        default=48.0,
        ge=0,
        validation_alias="ENGINE_READ_NO_REPLY_WINDOW_HOURS",
        description="Default wait after an open before `if_read_no_reply` may route.",
    )
    final_step_engagement_window_hours: float = Field(
        default=48.0,
        ge=0,
        validation_alias="ENGINE_FINAL_STEP_ENGAGEMENT_WINDOW_HOURS",
        description=(
            "How long an enrollment waits for engagement after its last step when that "
            "step carries branch conditions. 0 completes immediately."
        ),
    )
    no_engagement_scope: Literal["step", "enrollment"] = Field(
        default="step",
        validation_alias="ENGINE_NO_ENGAGEMENT_SCOPE",
        description=(
            "Whether `no_engagement_after` counts unengaged sends of the owning step only, "
            "or trailing unengaged sends across the whole enrollment."
        ),
    )
    permanent_failure_policy: Literal["continue", "fail"] = Field(
        default="continue",
        validation_alias="ENGINE_PERMANENT_FAILURE_POLICY",
        description=(
            "On a permanent dispatch failure either flag the enrollment and continue with "
            "the next step, or move the enrollment to `failed`."
        ),
    )

    gateway_url: str = Field(
        default="",
        validation_alias="ENGINE_GATEWAY_URL",
        description="Base URL of the messaging gateway",
    )
    gateway_token: str = Field(
        default="",
        validation_alias="ENGINE_GATEWAY_TOKEN",
        description="Bearer token for the messaging gateway",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _check_timing(self) -> EngineSettings:
        if self.retry_max_seconds < self.retry_base_seconds:
            raise ValueError("ENGINE_RETRY_MAX_SECONDS must be >= ENGINE_RETRY_BASE_SECONDS")
        if self.lease_seconds <= self.dispatch_timeout_seconds:
            raise ValueError("ENGINE_LEASE_SECONDS must exceed ENGINE_DISPATCH_TIMEOUT_SECONDS")
        return self

    @property
    def sequences_file(self) -> Path:
        return self.state_path / "sequences.json"

    @property
    def enrollments_file(self) -> Path:
        return self.state_path / "enrollments.json"

    @property
    def executions_file(self) -> Path:
        """Append-only step execution history."""

        return self.state_path / "executions.json"

    @property
    def engagements_file(self) -> Path:
        return self.state_path / "engagements.json"

    @property
    def contacts_file(self) -> Path:
        return self.state_path / "contacts.json"

    @property
    def suppressions_file(self) -> Path:
        return self.state_path / "suppressions.json"
