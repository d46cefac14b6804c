"""Job worker for JOB_EXECUTION=worker deployments.

The API process only accepts and records jobs. This worker claims queued (or
lease-expired) jobs from the durable store and runs them to a terminal state,
so a job survives the process that accepted it.

Deploy on Railway as a separate service:
  Start command: python worker.py

Recommended env:
  JOB_EXECUTION=worker
  STATE_STORE_SOURCE=db
  DATABASE_URL=...
"""

from __future__ import annotations

import logging
import os
import socket
import time
import traceback

from replicator import EngineSettings, ReplicationService, build_service, build_state_store

logger = logging.getLogger("worker")


def _get_int_env(*names: str, default: int) -> int:
    for n in names:
        v = (os.getenv(n) or "").strip()
        if v:
            try:
                return int(v)
            except ValueError:
                logger.warning("Ignoring non-integer %s=%r", n, v)
    return int(default)


POLL_S = _get_int_env("WORKER_POLL_SECONDS", "WORKER_POLL_S", default=10)
MAX_JOBS_PER_TICK = _get_int_env("WORKER_MAX_JOBS_PER_TICK", default=10)


def run_once(service: ReplicationService, *, max_jobs: int = MAX_JOBS_PER_TICK) -> int:
    """Claim and run jobs until none are claimable; returns how many ran."""
    ran = 0
    while ran < max_jobs:
        job = service.tracker.claim_next()
        if job is None:
            break
        logger.info("Claimed job %s (%s, status=%s)", job.job_id, job.kind, job.status)
        done = service.tracker.resume(job)
        logger.info("Job %s finished: %s", done.job_id, done.status)
        ran += 1
    return ran


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    settings = EngineSettings.from_env()
    store = build_state_store(settings.state_db_path)
    worker_id = f"{socket.gethostname()}-{os.getpid()}"
    service = build_service(settings, store=store, worker_id=worker_id)

    if service.tracker.execution != "worker":
        logger.warning("JOB_EXECUTION is %r; the API runs jobs itself and this worker only picks up abandoned ones.",
                       service.tracker.execution)

    logger.info("Worker loop starting. worker_id=%s POLL_S=%s", worker_id, POLL_S)

    while True:
        try:
            run_once(service)
        except Exception:
            traceback.print_exc()

        time.sleep(POLL_S)


if __name__ == "__main__":
    main()
