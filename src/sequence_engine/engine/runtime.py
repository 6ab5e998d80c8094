"""Builds the engine's collaborators from settings."""

from __future__ import annotations

import socket
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sequence_engine.engine.config import EngineSettings
from sequence_engine.engine.enrollment.manager import EnrollmentManager
from sequence_engine.engine.enrollment.models import utc_now
from sequence_engine.engine.enrollment.repository import EnrollmentRepository
from sequence_engine.engine.gateway.contacts import JsonContactStore
from sequence_engine.engine.gateway.contracts import ContactStore, MessagingGateway
from sequence_engine.engine.gateway.http_client import HttpMessagingGateway
from sequence_engine.engine.sequences.store import SequenceDefinitionStore
from sequence_engine.engine.workflow.branching import BranchEvaluator
from sequence_engine.engine.workflow.executor import StepExecutor
from sequence_engine.engine.workflow.rate_limit import TenantRateLimiter
from sequence_engine.engine.workflow.scheduler import StepScheduler
from sequence_engine.engine.workflow.triggers import TriggerEvaluator


def new_worker_id(suffix: str = "") -> str:
    base = f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
    return f"{base}-{suffix}" if suffix else base


@dataclass
class Engine:
    settings: EngineSettings
    sequences: SequenceDefinitionStore
    repository: EnrollmentRepository
    manager: EnrollmentManager
    triggers: TriggerEvaluator
    contacts: ContactStore
    gateway: MessagingGateway | None
    limiter: TenantRateLimiter

    def scheduler(
        self, worker_id: str | None = None, *, clock: Callable[[], datetime] = utc_now
    ) -> StepScheduler:
        """A scheduler with its own worker id; the limiter and stores are shared."""

        if self.gateway is None:
            raise ValueError("Gateway base URL is required (ENGINE_GATEWAY_URL)")
        executor = StepExecutor(
            manager=self.manager,
            gateway=self.gateway,
            contacts=self.contacts,
            settings=self.settings,
            worker_id=worker_id or new_worker_id(),
            limiter=self.limiter,
        )
        return StepScheduler(
            repository=self.repository,
            executor=executor,
            batch_size=self.settings.sweep_batch_size,
            lease_seconds=self.settings.lease_seconds,
            clock=clock,
        )

    def close(self) -> None:
        close = getattr(self.gateway, "close", None)
        if callable(close):
            close()


def build_engine(
    settings: EngineSettings,
    *,
    gateway: MessagingGateway | None = None,
    contacts: ContactStore | None = None,
) -> Engine:
    """Wire the stores and services. `gateway` defaults to the HTTP gateway when ENGINE_GATEWAY_URL is set."""

    sequences = SequenceDefinitionStore(settings.sequences_file)
    repository = EnrollmentRepository.in_directory(settings.state_path)
    contacts = contacts or JsonContactStore(settings.contacts_file, settings.suppressions_file)
    manager = EnrollmentManager(
        repository=repository,
        sequences=sequences,
        branching=BranchEvaluator(
            read_no_reply_window_hours=settings.read_no_reply_window_hours,
            no_engagement_scope=settings.no_engagement_scope,
        ),
        final_step_window_hours=settings.final_step_engagement_window_hours,
    )
    if gateway is None and settings.gateway_url.strip():
        gateway = HttpMessagingGateway(
            base_url=settings.gateway_url,
            token=settings.gateway_token,
            timeout_seconds=settings.dispatch_timeout_seconds,
        )
    return Engine(
        settings=settings,
        sequences=sequences,
        repository=repository,
        manager=manager,
        triggers=TriggerEvaluator(sequences=sequences, manager=manager, contacts=contacts),
        contacts=contacts,
        gateway=gateway,
        limiter=TenantRateLimiter(
            max_per_window=settings.tenant_rate_limit,
            window_seconds=settings.tenant_rate_window_seconds,
        ),
    )
