"""job_tracker.py

Asynchronous replication jobs: accept, run in the background, poll.

Jobs are durable rows (when a store is configured). In `inline` execution the
accepting process runs the job on its own thread pool while holding a lease;
in `worker` execution the row is only queued and `worker.py` processes claim
it. Either way a lease that stops being extended lets another process resume
the job from its persisted baseline / target / container.
"""

from __future__ import annotations

import logging
import math
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from error_policy import JobCancelled
from failure_ledger import FailureRecord

logger = logging.getLogger(__name__)

MAX_FAILURES_IN_STATUS = 500


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    STARTED = "started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_DEFICIT = "completed_with_deficit"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self not in {JobStatus.STARTED, JobStatus.PROCESSING}


def _parse_dt(v: Any) -> Optional[datetime]:
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)
    s = str(v).strip().replace("Z", "+00:00")
    dt = datetime.fromisoformat(s)
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def estimate_duration_s(
    copies: int,
    strategy: str,
    *,
    max_ops_per_call: int = 50,
    inter_group_delay_s: float = 2.0,
    seconds_per_call: float = 4.0,
    recovery_delay_s: float = 2.0,
    targets: int = 1,
    sequential_targets: bool = False,
    target_delay_s: float = 0.0,
) -> float:
    copies = max(0, int(copies))
    if strategy == "sequential":
        one = copies * (2 * seconds_per_call + recovery_delay_s)
    else:
        groups = math.ceil(copies / max(1, max_ops_per_call // 2))
        one = groups * seconds_per_call + max(0, groups - 1) * inter_group_delay_s
    # Template / container / recount overhead.
    one += 3 * seconds_per_call
    if targets > 1 and sequential_targets:
        return round(targets * one + (targets - 1) * target_delay_s, 1)
    return round(one, 1)


# -----------------------------
# Job
# -----------------------------

@dataclass
class ReplicationJob:
    job_id: str
    kind: str
    request: Dict[str, Any]
    status: str = JobStatus.STARTED.value
    parent_job_id: Optional[str] = None
    target_ref: Optional[str] = None

    # Counts: target_count is always copies to create.
    target_count: Optional[int] = None
    baseline: Optional[int] = None
    target_total: Optional[int] = None
    container_id: Optional[str] = None
    progress: int = 0
    actual: Optional[int] = None

    created_refs: List[Dict[str, Any]] = field(default_factory=list)
    orphans: List[str] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    failure_count: int = 0
    current_operation: str = "Queued"
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    estimated_duration_s: float = 0.0

    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    cancel_requested: bool = False
    lease_owner: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @property
    def terminal(self) -> bool:
        return JobStatus(self.status).terminal

    @property
    def deficit(self) -> Optional[int]:
        if self.target_count is None:
            return None
        return max(0, self.target_count - self.progress)

    def to_row(self) -> Dict[str, Any]:
        payload = asdict(self)
        for k in ("created_at", "started_at", "updated_at", "finished_at", "lease_expires_at"):
            payload[k] = payload[k].isoformat() if payload[k] else None
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "parent_job_id": self.parent_job_id,
            "status": self.status,
            "payload": payload,
            "cancel_requested": self.cancel_requested,
            "lease_owner": self.lease_owner,
            "lease_expires_at": self.lease_expires_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "ReplicationJob":
        payload = dict(row.get("payload") or {})
        known = set(ReplicationJob.__dataclass_fields__)
        data = {k: v for k, v in payload.items() if k in known}
        for k in ("created_at", "started_at", "updated_at", "finished_at", "lease_expires_at"):
            data[k] = _parse_dt(data.get(k))
        data["created_at"] = data.get("created_at") or utcnow()
        data["updated_at"] = data.get("updated_at") or utcnow()
        # Columns owned by the store win over the payload copy.
        data["status"] = row.get("status") or data.get("status") or JobStatus.STARTED.value
        data["cancel_requested"] = bool(row.get("cancel_requested"))
        data["lease_owner"] = row.get("lease_owner")
        data["lease_expires_at"] = _parse_dt(row.get("lease_expires_at"))
        return ReplicationJob(**data)

    def snapshot(self, now: datetime) -> Dict[str, Any]:
        end = self.finished_at or now
        elapsed = max(0.0, (end - (self.started_at or self.created_at)).total_seconds())
        if self.terminal:
            remaining = 0.0
        elif self.progress and self.target_count:
            remaining = elapsed / self.progress * max(0, self.target_count - self.progress)
        else:
            remaining = max(0.0, self.estimated_duration_s - elapsed)
        return {
            "found": True,
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status,
            "parent_job_id": self.parent_job_id,
            "target_ref": self.target_ref,
            "progress": self.progress,
            "target": self.target_count,
            "deficit": self.deficit,
            "baseline": self.baseline,
            "target_total": self.target_total,
            "actual": self.actual,
            "container_id": self.container_id,
            "current_operation": self.current_operation,
            "elapsed_s": round(elapsed, 1),
            "remaining_s": round(remaining, 1),
            "estimated_duration_s": self.estimated_duration_s,
            "failure_count": self.failure_count,
            "failures": list(self.failures),
            "orphans": list(self.orphans),
            "created": list(self.created_refs),
            "result": dict(self.result),
            "error": self.error,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# -----------------------------
# Progress sink
# -----------------------------

class JobProgress:
    """Updates one job's live counters; `checkpoint` writes the durable row."""

    def __init__(self, tracker: "JobTracker", job: ReplicationJob):
        self.tracker = tracker
        self.job = job

    def set_operation(self, text: str) -> None:
        with self.tracker._lock:
            self.job.current_operation = text
            self.job.updated_at = self.tracker.clock()
        logger.debug("job %s: %s", self.job.job_id, text)

    def add_created(self, copy_number: int, parent_id: Optional[str], child_id: Optional[str]) -> None:
        with self.tracker._lock:
            self.job.created_refs.append({"copy_number": copy_number, "parent_id": parent_id, "child_id": child_id})
            cap = self.job.target_count if self.job.target_count is not None else self.job.progress + 1
            self.job.progress = min(cap, self.job.progress + 1)

    def add_failure(self, record: FailureRecord) -> None:
        with self.tracker._lock:
            self.job.failure_count += 1
            if len(self.job.failures) < MAX_FAILURES_IN_STATUS:
                self.job.failures.append(record.summary())

    def add_orphan(self, parent_id: str) -> None:
        with self.tracker._lock:
            if parent_id and parent_id not in self.job.orphans:
                self.job.orphans.append(parent_id)

    def set_actual(self, actual: int) -> None:
        """Authoritative complete count; progress is derived from it and the baseline."""
        with self.tracker._lock:
            self.job.actual = int(actual)
            if self.job.baseline is not None and self.job.target_count is not None:
                self.job.progress = max(0, min(self.job.target_count, self.job.actual - self.job.baseline))
        self.checkpoint()

    def checkpoint(self, **fields: Any) -> None:
        with self.tracker._lock:
            for k, v in fields.items():
                if not hasattr(self.job, k):
                    raise AttributeError(f"ReplicationJob has no field {k}")
                setattr(self.job, k, v)
            self.job.updated_at = self.tracker.clock()
        self.tracker._persist(self.job)


# -----------------------------
# Tracker
# -----------------------------

Runner = Callable[[ReplicationJob, JobProgress, threading.Event], Dict[str, Any]]


class JobTracker:
    def __init__(
        self,
        runner: Optional[Runner] = None,
        *,
        store: Any = None,
        max_workers: int = 4,
        execution: str = "inline",
        lease_s: int = 120,
        worker_id: Optional[str] = None,
        retention_s: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ):
        if execution not in {"inline", "worker"}:
            raise ValueError("execution must be 'inline' or 'worker'")
        if execution == "worker" and store is None:
            raise ValueError("worker execution requires a durable store")
        self.runner = runner
        self.store = store
        self.execution = execution
        self.lease_s = int(lease_s)
        self.worker_id = worker_id or f"tracker-{uuid.uuid4().hex[:8]}"
        self.retention_s = int(retention_s)
        self.clock = clock
        self._lock = threading.RLock()
        self._jobs: Dict[str, ReplicationJob] = {}
        self._events: Dict[str, threading.Event] = {}
        self._lost: Set[str] = set()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="replication-job")

    # -----------------------------
    # Accept
    # -----------------------------

    def create_job(
        self,
        kind: str,
        request: Dict[str, Any],
        *,
        parent_job_id: Optional[str] = None,
        target_ref: Optional[str] = None,
        target_count: Optional[int] = None,
        estimated_duration_s: float = 0.0,
        leased: bool = False,
    ) -> ReplicationJob:
        now = self.clock()
        job = ReplicationJob(
            job_id=uuid.uuid4().hex,
            kind=kind,
            request=request,
            parent_job_id=parent_job_id,
            target_ref=target_ref,
            target_count=target_count,
            estimated_duration_s=estimated_duration_s,
            created_at=now,
            updated_at=now,
        )
        if leased:
            job.lease_owner = self.worker_id
            job.lease_expires_at = now + timedelta(seconds=self.lease_s)
        with self._lock:
            self._evict(now)
            self._jobs[job.job_id] = job
            self._events[job.job_id] = threading.Event()
        if self.store is not None:
            self.store.insert_job(job.to_row())
        return job

    def start(
        self,
        kind: str,
        request: Dict[str, Any],
        *,
        target_ref: Optional[str] = None,
        target_count: Optional[int] = None,
        estimated_duration_s: float = 0.0,
    ) -> Dict[str, Any]:
        """Accept a job and return at once; the caller polls `status`."""
        inline = self.execution == "inline"
        job = self.create_job(
            kind, request,
            target_ref=target_ref,
            target_count=target_count,
            estimated_duration_s=estimated_duration_s,
            leased=inline and self.store is not None,
        )
        logger.info("Accepted %s job %s (execution=%s)", kind, job.job_id, self.execution)
        if inline:
            self._executor.submit(self._run, job)
        return {"job_id": job.job_id, "status": job.status, "estimated_duration_s": job.estimated_duration_s}

    def run_inline(self, job: ReplicationJob) -> ReplicationJob:
        """Run a job on the calling thread (fan-out sub-jobs, CLI)."""
        self._run(job)
        return job

    # -----------------------------
    # Poll / cancel
    # -----------------------------

    def get(self, job_id: str) -> Optional[ReplicationJob]:
        if self.execution == "worker" and self.store is not None:
            # Another process owns the run; the row is the live state.
            row = self.store.get_job(job_id)
            if row:
                return ReplicationJob.from_row(row)
        with self._lock:
            job = self._jobs.get(job_id)
        if job is not None:
            return job
        if self.store is not None:
            row = self.store.get_job(job_id)
            if row:
                return ReplicationJob.from_row(row)
        return None

    def status(self, job_id: str) -> Dict[str, Any]:
        job = self.get(job_id)
        if job is None:
            return {"found": False, "job_id": job_id}
        with self._lock:
            return job.snapshot(self.clock())

    def children(self, parent_job_id: str) -> List[ReplicationJob]:
        with self._lock:
            local = {j.job_id: j for j in self._jobs.values() if j.parent_job_id == parent_job_id}
        if self.store is not None:
            for row in self.store.list_jobs(parent_job_id=parent_job_id):
                local.setdefault(row["job_id"], ReplicationJob.from_row(row))
        return sorted(local.values(), key=lambda j: j.created_at)

    def cancel(self, job_id: str) -> Dict[str, Any]:
        job = self.get(job_id)
        if job is None:
            return {"found": False, "job_id": job_id}
        if job.terminal:
            return {"found": True, "job_id": job_id, "cancelled": False, "status": job.status}

        with self._lock:
            job.cancel_requested = True
            event = self._events.get(job_id)
            child_ids = [j.job_id for j in self._jobs.values() if j.parent_job_id == job_id]
        if event is not None:
            event.set()
        if self.store is not None:
            self.store.request_cancel(job_id)
        for cid in child_ids:
            self.cancel(cid)
        logger.info("Cancellation requested for job %s", job_id)
        return {"found": True, "job_id": job_id, "cancelled": True, "status": job.status}

    def cancel_event(self, job_id: str) -> threading.Event:
        with self._lock:
            return self._events.setdefault(job_id, threading.Event())

    def link_cancel(self, job_id: str, event: threading.Event) -> None:
        """Make a sub-job share its deployment's cancellation signal."""
        with self._lock:
            own = self._events.get(job_id)
            self._events[job_id] = event
        if own is not None and own.is_set():
            event.set()

    # -----------------------------
    # Worker mode
    # -----------------------------

    def claim_next(self) -> Optional[ReplicationJob]:
        """Claim one queued or abandoned top-level job from the store."""
        if self.store is None:
            return None
        row = self.store.claim_job(self.worker_id, self.lease_s, self.clock())
        if not row:
            return None
        job = ReplicationJob.from_row(row)
        with self._lock:
            self._jobs[job.job_id] = job
            self._lost.discard(job.job_id)
            event = self._events[job.job_id] = threading.Event()
        if job.cancel_requested:
            event.set()
        logger.info("Worker %s claimed job %s (status=%s)", self.worker_id, job.job_id, job.status)
        return job

    def resume(self, job: ReplicationJob) -> ReplicationJob:
        return self.run_inline(job)

    # -----------------------------
    # Execution
    # -----------------------------

    def _run(self, job: ReplicationJob) -> None:
        if self.runner is None:
            raise RuntimeError("JobTracker has no runner configured")
        event = self.cancel_event(job.job_id)
        progress = JobProgress(self, job)
        heartbeat = _LeaseHeartbeat(self, job, event) if (self.store is not None and job.lease_owner) else None
        if heartbeat is not None:
            heartbeat.start()

        try:
            if event.is_set() or job.cancel_requested:
                raise JobCancelled(f"Job {job.job_id} cancelled before start")
            with self._lock:
                job.status = JobStatus.PROCESSING.value
                job.started_at = job.started_at or self.clock()
                job.current_operation = "Starting"
            self._persist(job)

            result = self.runner(job, progress, event)
            final = JobStatus(result.get("status", JobStatus.COMPLETED.value))
            with self._lock:
                job.result = dict(result)
                job.status = final.value
                job.current_operation = "Done" if final == JobStatus.COMPLETED else f"Done with deficit of {job.deficit}"
        except JobCancelled as e:
            if job.job_id in self._lost:
                logger.warning("Job %s stopped after losing its lease: %s", job.job_id, e)
            else:
                logger.info("Job %s cancelled: %s", job.job_id, e)
                with self._lock:
                    job.status = JobStatus.CANCELLED.value
                    job.current_operation = "Cancelled"
                    job.error = str(e)
        except Exception as e:
            logger.exception("Job %s failed", job.job_id)
            with self._lock:
                job.status = JobStatus.FAILED.value
                job.current_operation = "Failed"
                job.error = f"{type(e).__name__}: {e}"
        finally:
            if heartbeat is not None:
                heartbeat.stop()
            if job.job_id in self._lost:
                self._abandon(job)
            else:
                self._finish(job)

    def _abandon(self, job: ReplicationJob) -> None:
        """Drop the local copy; the row belongs to whoever holds the lease now."""
        with self._lock:
            self._jobs.pop(job.job_id, None)
        logger.info("Job %s left to its current lease owner", job.job_id)

    def _finish(self, job: ReplicationJob) -> None:
        with self._lock:
            job.finished_at = self.clock()
            job.updated_at = job.finished_at
        self._persist(job)
        if job.job_id in self._lost:
            self._abandon(job)
            return
        if self.store is not None and job.lease_owner:
            self.store.release_job(job.job_id, job.lease_owner)
        logger.info("Job %s finished: %s (progress %d/%s)", job.job_id, job.status, job.progress, job.target_count)

    def _persist(self, job: ReplicationJob) -> None:
        if self.store is None or job.job_id in self._lost:
            return
        with self._lock:
            row = job.to_row()
        if not self.store.update_job(row) and row["lease_owner"]:
            self._lease_lost(job)

    def _lease_lost(self, job: ReplicationJob) -> None:
        """Another process owns the row now: stop the local run without writing to it."""
        with self._lock:
            if job.job_id in self._lost:
                return
            self._lost.add(job.job_id)
            event = self._events.get(job.job_id)
        logger.warning("Lost lease on job %s; abandoning the local run", job.job_id)
        if event is not None:
            event.set()

    def _evict(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.retention_s)
        stale = [j.job_id for j in self._jobs.values() if j.terminal and j.finished_at and j.finished_at < cutoff]
        for job_id in stale:
            self._jobs.pop(job_id, None)
            self._events.pop(job_id, None)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class _LeaseHeartbeat:
    """Extends the job lease and mirrors the durable cancel flag into the event."""

    def __init__(self, tracker: JobTracker, job: ReplicationJob, cancel_event: threading.Event):
        self.tracker = tracker
        self.job = job
        self.cancel_event = cancel_event
        self.interval_s = max(1.0, tracker.lease_s / 3.0)
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name=f"lease-{job.job_id[:8]}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        self._thread.join(timeout=5)

    def _loop(self) -> None:
        store = self.tracker.store
        while not self._stop.wait(self.interval_s):
            try:
                if not store.extend_lease(self.job.job_id, self.job.lease_owner, self.tracker.lease_s, self.tracker.clock()):
                    self.tracker._lease_lost(self.job)
                    return
                if store.is_cancel_requested(self.job.job_id):
                    self.cancel_event.set()
            except Exception as e:
                logger.warning("Lease heartbeat for job %s failed: %s", self.job.job_id, e)
