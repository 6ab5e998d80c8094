"""FastAPI app factory.

Endpoints are thin wrappers over the engine services. The tenant comes from
the `X-Tenant-ID` header (authentication and tenancy resolution happen
upstream); event and engagement payloads carry their own tenant.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sequence_engine import __version__
from sequence_engine.engine.config import EngineSettings
from sequence_engine.engine.enrollment.models import (
    EngagementSignal,
    Enrollment,
    EnrollmentStatus,
    StepExecutionRecord,
)
from sequence_engine.engine.enrollment.state_machine import IllegalTransitionError
from sequence_engine.engine.errors import (
    DefinitionValidationError,
    DuplicateEnrollmentError,
    EngineError,
    NotFoundError,
    SequenceInactiveError,
    SequenceInUseError,
    StaleEnrollmentError,
)
from sequence_engine.engine.runtime import Engine, build_engine
from sequence_engine.engine.sequences.models import (
    SequenceCounters,
    SequenceDefinition,
    SequenceStatus,
)
from sequence_engine.engine.workflow.triggers import DomainEvent, TriggerOutcome
from sequence_engine.server.config import ServerSettings
from sequence_engine.server.models import (
    EngagementResponse,
    EnrollOutcome,
    EnrollRequest,
    ReasonRequest,
    SequenceCreateRequest,
    SequenceUpdateRequest,
    SweepSummary,
)
from sequence_engine.server.scheduler_runner import start_sweep_workers

logger = logging.getLogger(__name__)

_CONFLICTS = (
    DuplicateEnrollmentError,
    SequenceInactiveError,
    SequenceInUseError,
    StaleEnrollmentError,
)


def _status_for(error: Exception) -> int:
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, _CONFLICTS):
        return 409
    if isinstance(error, DefinitionValidationError):
        return 422
    return 500


def _to_outcome(outcome: TriggerOutcome) -> EnrollOutcome:
    return EnrollOutcome(
        sequence_id=outcome.sequence_id,
        contact_id=outcome.contact_id,
        status=outcome.status,
        enrollment_id=outcome.enrollment.id,
    )


def create_app(
    *,
    engine: Engine | None = None,
    settings: ServerSettings | None = None,
) -> FastAPI:
    settings = settings or ServerSettings()
    engine = engine or build_engine(EngineSettings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        workers = None
        if settings.start_workers:
            workers = start_sweep_workers(
                engine,
                count=engine.settings.worker_count,
                interval_seconds=engine.settings.sweep_interval_seconds,
            )
        try:
            yield
        finally:
            if workers is not None:
                workers.stop()
            engine.close()

    app = FastAPI(
        title="Sequence Automation Engine",
        version=__version__,
        description="Administrative REST API over the sequence engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    # Expose settings and services for request handlers that want to read them.
    app.state.settings = settings
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(EngineError)
    async def engine_error(request: Request, exc: EngineError) -> JSONResponse:
        status = _status_for(exc)
        if status == 500:
            logger.error("Unhandled engine error", extra={"path": request.url.path, "error": str(exc)})
        body: dict[str, object] = {"detail": str(exc)}
        if isinstance(exc, DefinitionValidationError):
            body["problems"] = exc.problems
        return JSONResponse(status_code=status, content=body)

    @app.exception_handler(IllegalTransitionError)
    async def illegal_transition(request: Request, exc: IllegalTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    sequences = engine.sequences
    manager = engine.manager

    @app.get("/api/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    # -- sequences ---------------------------------------------------------

    @app.get("/api/sequences", response_model=list[SequenceDefinition])
    def list_sequences(
        status: SequenceStatus | None = None,
        x_tenant_id: str = Header(alias="X-Tenant-ID"),
    ) -> list[SequenceDefinition]:
        return sequences.list(x_tenant_id, status=status)

    @app.post("/api/sequences", response_model=SequenceDefinition, status_code=201)
    def create_sequence(
        req: SequenceCreateRequest, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> SequenceDefinition:
        return sequences.create(
            x_tenant_id,
            name=req.name,
            description=req.description,
            trigger=req.trigger,
            steps=req.steps,
            created_by=req.created_by,
        )

    @app.get("/api/sequences/{sequence_id}", response_model=SequenceDefinition)
    def get_sequence(
        sequence_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> SequenceDefinition:
        return sequences.get(x_tenant_id, sequence_id)

    @app.patch("/api/sequences/{sequence_id}", response_model=SequenceDefinition)
    def update_sequence(
        sequence_id: str,
        req: SequenceUpdateRequest,
        x_tenant_id: str = Header(alias="X-Tenant-ID"),
    ) -> SequenceDefinition:
        return sequences.update(
            x_tenant_id,
            sequence_id,
            name=req.name,
            description=req.description,
            trigger=req.trigger,
            steps=req.steps,
        )

    @app.delete("/api/sequences/{sequence_id}", status_code=204)
    def delete_sequence(sequence_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")) -> None:
        manager.delete_sequence(x_tenant_id, sequence_id)

    @app.post("/api/sequences/{sequence_id}/activate", response_model=SequenceDefinition)
    def activate_sequence(
        sequence_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> SequenceDefinition:
        return sequences.activate(x_tenant_id, sequence_id)

    @app.post("/api/sequences/{sequence_id}/pause", response_model=SequenceDefinition)
    def pause_sequence(
        sequence_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> SequenceDefinition:
        return sequences.pause(x_tenant_id, sequence_id)

    @app.post("/api/sequences/{sequence_id}/archive", response_model=SequenceDefinition)
    def archive_sequence(
        sequence_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> SequenceDefinition:
        return manager.archive_sequence(x_tenant_id, sequence_id)

    @app.post(
        "/api/sequences/{sequence_id}/duplicate",
        response_model=SequenceDefinition,
        status_code=201,
    )
    def duplicate_sequence(
        sequence_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> SequenceDefinition:
        return sequences.duplicate(x_tenant_id, sequence_id)

    @app.get("/api/sequences/{sequence_id}/stats", response_model=SequenceCounters)
    def sequence_stats(
        sequence_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> SequenceCounters:
        return manager.refresh_counters(x_tenant_id, sequence_id).counters

    @app.post("/api/sequences/{sequence_id}/enroll", response_model=list[EnrollOutcome])
    def enroll(
        sequence_id: str,
        req: EnrollRequest,
        x_tenant_id: str = Header(alias="X-Tenant-ID"),
    ) -> list[EnrollOutcome]:
        outcomes = engine.triggers.manual_enroll(
            x_tenant_id,
            sequence_id,
            req.contact_ids,
            enrolled_by=req.enrolled_by,
            force=req.force,
        )
        return [_to_outcome(o) for o in outcomes]

    # -- enrollments -------------------------------------------------------

    @app.get("/api/enrollments", response_model=list[Enrollment])
    def list_enrollments(
        sequence_id: str | None = None,
        contact_id: str | None = None,
        status: EnrollmentStatus | None = None,
        x_tenant_id: str = Header(alias="X-Tenant-ID"),
    ) -> list[Enrollment]:
        return engine.repository.list(
            x_tenant_id, sequence_id=sequence_id, contact_id=contact_id, status=status
        )

    @app.get("/api/enrollments/{enrollment_id}", response_model=Enrollment)
    def get_enrollment(
        enrollment_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> Enrollment:
        return manager.get(x_tenant_id, enrollment_id)

    @app.get(
        "/api/enrollments/{enrollment_id}/history", response_model=list[StepExecutionRecord]
    )
    def enrollment_history(
        enrollment_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> list[StepExecutionRecord]:
        return manager.history(x_tenant_id, enrollment_id)

    @app.post("/api/enrollments/{enrollment_id}/pause", response_model=Enrollment)
    def pause_enrollment(
        enrollment_id: str,
        req: ReasonRequest | None = None,
        x_tenant_id: str = Header(alias="X-Tenant-ID"),
    ) -> Enrollment:
        return manager.pause(x_tenant_id, enrollment_id, reason=req.reason if req else None)

    @app.post("/api/enrollments/{enrollment_id}/resume", response_model=Enrollment)
    def resume_enrollment(
        enrollment_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")
    ) -> Enrollment:
        return manager.resume(x_tenant_id, enrollment_id)

    @app.post("/api/enrollments/{enrollment_id}/stop", response_model=Enrollment)
    def stop_enrollment(
        enrollment_id: str,
        req: ReasonRequest | None = None,
        x_tenant_id: str = Header(alias="X-Tenant-ID"),
    ) -> Enrollment:
        reason = (req.reason if req else None) or "stopped"
        return manager.stop(x_tenant_id, enrollment_id, reason=reason)

    @app.post("/api/enrollments/{enrollment_id}/skip", response_model=Enrollment)
    def skip_step(enrollment_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")) -> Enrollment:
        return manager.skip_step(x_tenant_id, enrollment_id)

    @app.post("/api/contacts/{contact_id}/opt-out", response_model=list[Enrollment])
    def opt_out(contact_id: str, x_tenant_id: str = Header(alias="X-Tenant-ID")) -> list[Enrollment]:
        return manager.opt_out(x_tenant_id, contact_id)

    # -- inbound events ----------------------------------------------------

    @app.post("/api/events", response_model=list[EnrollOutcome])
    def ingest_event(event: DomainEvent) -> list[EnrollOutcome]:
        return [_to_outcome(o) for o in engine.triggers.handle_event(event)]

    @app.post("/api/engagement", response_model=EngagementResponse)
    def record_engagement(signal: EngagementSignal) -> EngagementResponse:
        result = manager.record_engagement(signal)
        return EngagementResponse(
            merged=result.merged,
            routed=result.routed,
            rule=result.rule,
            enrollment_id=result.enrollment.id,
            current_step=result.enrollment.current_step,
            status=result.enrollment.status.value,
        )

    @app.post("/api/sweep", response_model=SweepSummary)
    def sweep_now() -> SweepSummary:
        if engine.gateway is None:
            raise HTTPException(
                status_code=409,
                detail="ENGINE_GATEWAY_URL is required for this endpoint",
            )
        scheduler = engine.scheduler()
        ran_at = datetime.now(tz=UTC)
        report = scheduler.sweep(ran_at)
        return SweepSummary(
            worker_id=scheduler.worker_id,
            ran_at=ran_at,
            due=report.due,
            claimed=report.claimed,
            conflicts=report.conflicts,
            errors=report.errors,
            actions=dict(Counter(r.action for r in report.results)),
        )

    return app
