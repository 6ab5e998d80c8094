#!/usr/bin/env python3
"""Programmatic sequence example.

This demonstrates using the engine components directly:

* load settings from `.env`
* create and activate a two-step email/WhatsApp sequence
* enroll a contact and run scheduler sweeps at simulated times

Messages are printed by a console gateway instead of being delivered.
"""

from __future__ import annotations

import argparse
import json
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Sequence

from sequence_engine.engine.config import EngineSettings
from sequence_engine.engine.gateway.contracts import Contact, RenderedContent, SendReceipt
from sequence_engine.engine.logging import configure_logging
from sequence_engine.engine.runtime import build_engine
from sequence_engine.engine.sequences.models import (
    Channel,
    IfOpened,
    StepContent,
    StepDefinition,
    StepType,
)


class ConsoleGateway:
    def send(
        self,
        *,
        tenant_id: str,
        channel: Channel,
        contact: Contact,
        content: RenderedContent,
        idempotency_key: str,
    ) -> SendReceipt:
        print(f"[{channel.value}] to {contact.address_for(channel)}: {content.subject or content.body}")
        return SendReceipt(message_id=uuid.uuid4().hex, status="accepted")


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a sequence end to end (programmatic example).")
    parser.add_argument("--tenant", default="demo", help="Tenant id")
    parser.add_argument("--contact", default="c-1", help="Contact id to enroll")
    return parser.parse_args(argv)


def _seed_contact(path: Path, tenant_id: str, contact_id: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    contact = Contact(
        id=contact_id,
        tenant_id=tenant_id,
        email=f"{contact_id}@example.com",
        phone="+15550100",
        first_name="Ada",
    )
    path.write_text(json.dumps([contact.model_dump(mode="json")], indent=2) + "\n", encoding="utf-8")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)
    _seed_contact(settings.contacts_file, args.tenant, args.contact)

    engine = build_engine(settings, gateway=ConsoleGateway())
    sequence = engine.sequences.create(
        args.tenant,
        name="Welcome",
        steps=[
            StepDefinition(
                index=0,
                type=StepType.SEND_EMAIL,
                content=StepContent(subject="Welcome, $first_name", body="Hi $first_name!"),
                conditions=[IfOpened(goto=1)],
            ),
            StepDefinition(
                index=1,
                type=StepType.SEND_WHATSAPP,
                delay_hours=24,
                content=StepContent(body="Hi $first_name, any questions?"),
            ),
        ],
    )
    engine.sequences.activate(args.tenant, sequence.id)

    start = datetime.now(tz=UTC)
    engine.manager.enroll(args.tenant, sequence_id=sequence.id, contact_id=args.contact, now=start)

    scheduler = engine.scheduler("example")
    for hours in (0, 24):
        report = scheduler.sweep(start + timedelta(hours=hours))
        print(f"t+{hours}h: sent={report.count('sent')}")

    for row in engine.repository.list(args.tenant, sequence_id=sequence.id):
        print(f"Enrollment {row.id}: {row.status.value}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
