"""CLI entrypoint for the sequence engine.

Sequence/enrollment administration against local state plus the scheduler loop.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from sequence_engine import __version__
from sequence_engine.engine.config import EngineSettings
from sequence_engine.engine.enrollment.models import (
    EngagementSignal,
    EnrollmentStatus,
    SignalType,
)
from sequence_engine.engine.errors import (
    DefinitionValidationError,
    DuplicateEnrollmentError,
    EngineError,
)
from sequence_engine.engine.logging import configure_logging
from sequence_engine.engine.runtime import Engine, build_engine
from sequence_engine.engine.sequences.models import StepDefinition, TriggerConfig
from sequence_engine.engine.workflow.triggers import DomainEvent

logger = logging.getLogger(__name__)


def _parse_csv(value: str | None) -> list[str]:
    if value is None:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


def _read_json(path: str) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sequence-engine",
        description="Multi-step outreach sequence engine",
    )
    parser.add_argument(
        "--version", action="version", version=f"sequence-automation-engine {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("sweep", help="Run one scheduler sweep over due enrollments")

    run = subparsers.add_parser("run", help="Run the scheduler loop until interrupted")
    run.add_argument(
        "--interval-seconds",
        type=float,
        default=None,
        help="Pause between sweeps (defaults to ENGINE_SWEEP_INTERVAL_SECONDS)",
    )

    serve = subparsers.add_parser("serve", help="Serve the REST API (uvicorn)")
    serve.add_argument("--host", default="127.0.0.1", help="Bind address")
    serve.add_argument("--port", type=int, default=8000, help="Bind port")

    create_sequence = subparsers.add_parser(
        "create-sequence", help="Create a draft sequence from a JSON definition file"
    )
    create_sequence.add_argument("--tenant", required=True, help="Tenant id")
    create_sequence.add_argument(
        "--file",
        required=True,
        help="JSON file with name, description, trigger and steps",
    )
    create_sequence.add_argument(
        "--activate", action="store_true", help="Activate the sequence after creating it"
    )

    activate = subparsers.add_parser("activate", help="Activate a draft or paused sequence")
    activate.add_argument("--tenant", required=True, help="Tenant id")
    activate.add_argument("--sequence", required=True, help="Sequence id")

    enroll = subparsers.add_parser("enroll", help="Manually enroll contacts into a sequence")
    enroll.add_argument("--tenant", required=True, help="Tenant id")
    enroll.add_argument("--sequence", required=True, help="Sequence id")
    enroll.add_argument(
        "--contacts", required=True, help="Comma-separated contact ids, e.g. 'c1,c2'"
    )
    enroll.add_argument("--by", default="cli", help="Recorded as enrolled_by")
    enroll.add_argument(
        "--force",
        action="store_true",
        help="Enroll even if the contact already has an open enrollment in the sequence",
    )

    ingest = subparsers.add_parser(
        "ingest-event", help="Feed a domain event (JSON file) to the trigger evaluator"
    )
    ingest.add_argument("--file", required=True, help="JSON file holding one DomainEvent")

    signal = subparsers.add_parser("signal", help="Record an engagement signal")
    signal.add_argument("--tenant", required=True, help="Tenant id")
    signal.add_argument("--enrollment", required=True, help="Enrollment id")
    signal.add_argument("--step", type=int, required=True, help="Step index the signal refers to")
    signal.add_argument(
        "--type",
        required=True,
        choices=[t.value for t in SignalType],
        help="Signal type",
    )

    list_enrollments = subparsers.add_parser("list-enrollments", help="List enrollments")
    list_enrollments.add_argument("--tenant", required=True, help="Tenant id")
    list_enrollments.add_argument("--sequence", default=None, help="Filter by sequence id")
    list_enrollments.add_argument("--contact", default=None, help="Filter by contact id")
    list_enrollments.add_argument(
        "--status",
        default=None,
        choices=[s.value for s in EnrollmentStatus],
        help="Filter by status",
    )

    return parser


def _create_sequence(engine: Engine, args: argparse.Namespace) -> int:
    raw = _read_json(args.file)
    if not isinstance(raw, dict):
        raise DefinitionValidationError("Sequence file must contain a JSON object")
    try:
        steps = [StepDefinition.model_validate(s) for s in raw.get("steps", [])]
        trigger = TriggerConfig.model_validate(raw.get("trigger") or {})
    except ValidationError as e:
        raise DefinitionValidationError(f"Invalid sequence file: {e}") from e

    record = engine.sequences.create(
        args.tenant,
        name=str(raw.get("name", "")),
        description=str(raw.get("description", "")),
        trigger=trigger,
        steps=steps,
        created_by=str(raw.get("created_by", "cli")),
    )
    if args.activate:
        record = engine.sequences.activate(args.tenant, record.id)
    print(f"Created sequence {record.id}: {record.name} ({record.status.value})")
    return 0


def _run_loop(engine: Engine, interval_seconds: float) -> int:
    scheduler = engine.scheduler()
    stop = threading.Event()
    try:
        scheduler.run_forever(stop, interval_seconds=interval_seconds)
    except KeyboardInterrupt:
        stop.set()
        logger.info("Interrupted; stopping sweep loop")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    if args.command == "serve":
        import uvicorn

        uvicorn.run(
            "sequence_engine.server:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            log_config=None,
        )
        return 0

    engine = build_engine(settings)
    try:
        if args.command == "sweep":
            report = engine.scheduler().sweep()
            print(
                f"Due={report.due} claimed={report.claimed} sent={report.count('sent')} "
                f"conflicts={report.conflicts} errors={report.errors}"
            )
            return 1 if report.errors else 0

        if args.command == "run":
            interval = args.interval_seconds or settings.sweep_interval_seconds
            return _run_loop(engine, interval)

        if args.command == "create-sequence":
            return _create_sequence(engine, args)

        if args.command == "activate":
            record = engine.sequences.activate(args.tenant, args.sequence)
            print(f"Activated sequence {record.id} (version {record.version})")
            return 0

        if args.command == "enroll":
            outcomes = engine.triggers.manual_enroll(
                args.tenant,
                args.sequence,
                _parse_csv(args.contacts),
                enrolled_by=args.by,
                force=args.force,
            )
            for o in outcomes:
                print(f"{o.contact_id}: {o.status} ({o.enrollment.id})")
            # Exit 3 if every requested contact was already enrolled.
            if outcomes and all(o.status == "duplicate" for o in outcomes):
                return 3
            return 0

        if args.command == "ingest-event":
            event = DomainEvent.model_validate(_read_json(args.file))
            outcomes = engine.triggers.handle_event(event)
            if not outcomes:
                print("No matching active sequences")
            for o in outcomes:
                print(f"{o.sequence_id}: {o.status} ({o.enrollment.id})")
            return 0

        if args.command == "signal":
            result = engine.manager.record_engagement(
                EngagementSignal(
                    tenant_id=args.tenant,
                    enrollment_id=args.enrollment,
                    step_index=args.step,
                    type=SignalType(args.type),
                    occurred_at=datetime.now(tz=UTC),
                )
            )
            print(
                f"merged={result.merged} routed={result.routed} "
                f"current_step={result.enrollment.current_step} "
                f"status={result.enrollment.status.value}"
            )
            return 0

        if args.command == "list-enrollments":
            rows = engine.repository.list(
                args.tenant,
                sequence_id=args.sequence,
                contact_id=args.contact,
                status=EnrollmentStatus(args.status) if args.status else None,
            )
            _print_json([r.model_dump(mode="json", exclude={"snapshot"}) for r in rows])
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except DuplicateEnrollmentError as e:
        logger.warning(str(e), extra={"enrollment_id": e.existing.id})
        print(str(e), file=sys.stderr)
        return 3

    except (EngineError, ValueError, OSError) as e:
        logger.exception("Command failed")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    finally:
        engine.close()


if __name__ == "__main__":
    raise SystemExit(main())
