"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest

from sequence_engine.engine.config import EngineSettings
from sequence_engine.engine.gateway.contracts import Contact, RenderedContent, SendReceipt
from sequence_engine.engine.runtime import Engine, build_engine
from sequence_engine.engine.sequences.models import (
    Channel,
    SequenceDefinition,
    StepContent,
    StepDefinition,
    StepType,
)

TENANT = "tenant-a"
T0 = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)


@dataclass
class SentMessage:
    tenant_id: str
    channel: Channel
    contact_id: str
    content: RenderedContent
    idempotency_key: str


@dataclass
class FakeGateway:
    """Records sends; queued errors are raised (in order) before any success."""

    sent: list[SentMessage] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)
    calls: int = 0

    def send(
        self,
        *,
        tenant_id: str,
        channel: Channel,
        contact: Contact,
        content: RenderedContent,
        idempotency_key: str,
    ) -> SendReceipt:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        self.sent.append(SentMessage(tenant_id, channel, contact.id, content, idempotency_key))
        return SendReceipt(message_id=f"msg-{len(self.sent)}", status="accepted")


@dataclass
class FakeContactStore:
    contacts: dict[tuple[str, str], Contact] = field(default_factory=dict)
    suppressed: set[tuple[str, str, Channel]] = field(default_factory=set)

    def add(self, contact: Contact) -> Contact:
        self.contacts[(contact.tenant_id, contact.id)] = contact
        return contact

    def get_contact(self, tenant_id: str, contact_id: str) -> Contact | None:
        return self.contacts.get((tenant_id, contact_id))

    def is_suppressed(self, tenant_id: str, contact_id: str, channel: Channel) -> bool:
        return (tenant_id, contact_id, channel) in self.suppressed


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / "engine_state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def settings(temp_state_dir: Path) -> EngineSettings:
    return EngineSettings(
        _env_file=None,
        ENGINE_STATE_PATH=temp_state_dir,
        ENGINE_MAX_DISPATCH_ATTEMPTS=3,
        ENGINE_RETRY_BASE_SECONDS=60,
        ENGINE_RETRY_MAX_SECONDS=600,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def contacts() -> FakeContactStore:
    store = FakeContactStore()
    for contact_id in ("c1", "c2", "c3"):
        store.add(
            Contact(
                id=contact_id,
                tenant_id=TENANT,
                email=f"{contact_id}@example.com",
                phone="+15550100",
                first_name=contact_id.upper(),
            )
        )
    return store


@pytest.fixture
def engine(settings: EngineSettings, gateway: FakeGateway, contacts: FakeContactStore) -> Engine:
    return build_engine(settings, gateway=gateway, contacts=contacts)


def email_step(index: int, *, delay_hours: float = 0, conditions: list | None = None) -> StepDefinition:
    return StepDefinition(
        index=index,
        type=StepType.SEND_EMAIL,
        delay_hours=delay_hours,
        content=StepContent(subject=f"Step {index} for $first_name", body="Hello $first_name"),
        conditions=conditions or [],
    )


@pytest.fixture
def make_sequence(engine: Engine) -> Callable[..., SequenceDefinition]:
    """Create and activate a sequence for TENANT."""

    def _make(steps: list[StepDefinition], *, name: str = "Outreach") -> SequenceDefinition:
        record = engine.sequences.create(TENANT, name=name, steps=steps)
        return engine.sequences.activate(TENANT, record.id)

    return _make
