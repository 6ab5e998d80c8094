"""Background sweep workers for the server process."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from sequence_engine.engine.runtime import Engine, new_worker_id
from sequence_engine.engine.workflow.scheduler import StepScheduler

logger = logging.getLogger(__name__)


@dataclass
class SweepWorkers:
    stop_event: threading.Event
    threads: list[threading.Thread] = field(default_factory=list)

    def stop(self, *, timeout_seconds: float = 10.0) -> None:
        self.stop_event.set()
        for thread in self.threads:
            thread.join(timeout=timeout_seconds)
        logger.info("Sweep workers stopped", extra={"count": len(self.threads)})


def start_sweep_workers(
    engine: Engine,
    *,
    count: int,
    interval_seconds: float,
) -> SweepWorkers:
    """Start `count` daemon threads, each sweeping with its own worker id.

    Workers share the stores and the tenant rate limiter; leases keep them from
    executing the same enrollment twice.
    """

    workers = SweepWorkers(stop_event=threading.Event())
    for n in range(count):
        scheduler = engine.scheduler(new_worker_id(str(n)))
        thread = threading.Thread(
            target=_run_worker,
            name=f"sweep-worker-{n}",
            daemon=True,
            kwargs={
                "scheduler": scheduler,
                "stop_event": workers.stop_event,
                "interval_seconds": interval_seconds,
            },
        )
        thread.start()
        workers.threads.append(thread)
    logger.info(
        "Sweep workers started",
        extra={"count": count, "interval_seconds": interval_seconds},
    )
    return workers


def _run_worker(
    *,
    scheduler: StepScheduler,
    stop_event: threading.Event,
    interval_seconds: float,
) -> None:
    try:
        scheduler.run_forever(stop_event, interval_seconds=interval_seconds)
    except Exception:
        logger.exception("Sweep worker crashed", extra={"worker_id": scheduler.worker_id})
        raise
