"""fanout.py

Cross-account deployment: the same template replicated against N ad accounts.

Each target runs as its own sub-job (its own container, baseline, recovery
and ledger entries). A target that fails for any reason is reported in its
own result and never touches its siblings.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from credential_pool import CredentialPool
from error_policy import ErrorKind, JobCancelled, NoCredentialAvailable
from failure_ledger import FailureLedger, FailureRecord
from job_tracker import JobStatus, JobTracker, ReplicationJob
from meta_graph import is_valid_ad_account_id
from templates import ReplicationRequest, TargetSpec

logger = logging.getLogger(__name__)


class TargetStatus(str, Enum):
    READY = "ready"
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class ReplicationTarget:
    spec: TargetSpec
    status: TargetStatus = TargetStatus.READY
    job_id: Optional[str] = None
    error: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)

    @property
    def ref(self) -> str:
        return self.spec.ad_account_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target": self.ref,
            "status": self.status.value,
            "job_id": self.job_id,
            "error": self.error,
            "progress": self.result.get("progress"),
            "target_count": self.result.get("target_count"),
            "deficit": self.result.get("deficit"),
            "container_id": self.result.get("container_id"),
        }


def deployment_status(targets: List[ReplicationTarget]) -> str:
    if targets and all(t.status == TargetStatus.SUCCESS for t in targets):
        return "completed"
    if any(t.status in {TargetStatus.SUCCESS, TargetStatus.PARTIAL} for t in targets):
        return "partial"
    return "failed"


class FanoutCoordinator:
    def __init__(
        self,
        tracker: JobTracker,
        pool: CredentialPool,
        ledger: FailureLedger,
        *,
        max_parallel: int = 3,
        sequential_delay_s: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.tracker = tracker
        self.pool = pool
        self.ledger = ledger
        self.max_parallel = int(max_parallel)
        self.sequential_delay_s = float(sequential_delay_s)
        self.sleep = sleep

    def validate_target(self, spec: TargetSpec) -> Optional[str]:
        """Return a reason the target cannot run, or None."""
        if not is_valid_ad_account_id(spec.ad_account_id):
            return f"Invalid ad account id: {spec.ad_account_id!r}"
        scope = self.pool.get_scope(spec.ad_account_id)
        if scope is not None and scope.status != "active":
            return f"Scope {spec.ad_account_id} is {scope.status}"
        try:
            self.pool.eligible(scope_id=spec.ad_account_id, credential_id=spec.credential_id)
        except NoCredentialAvailable as e:
            return str(e)
        return None

    def deploy(
        self,
        request: ReplicationRequest,
        *,
        deployment_job: Optional[ReplicationJob] = None,
        progress: Any = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        if not request.targets:
            raise ValueError("deploy requires at least one target")
        cancel_event = cancel_event or threading.Event()
        deployment_id = deployment_job.job_id if deployment_job else None
        existing = {j.target_ref: j for j in self.tracker.children(deployment_id)} if deployment_id else {}

        targets = [ReplicationTarget(spec=t) for t in request.targets]
        runnable: List[ReplicationTarget] = []
        jobs: Dict[str, ReplicationJob] = {}
        for target in targets:
            reason = self.validate_target(target.spec)
            if reason:
                self._fail_target(target, reason, deployment_id)
                continue
            job = existing.get(target.ref) or self._create_sub_job(request, target.spec, deployment_id)
            target.job_id = job.job_id
            jobs[target.ref] = job
            runnable.append(target)

        mode = request.mode
        logger.info(
            "Deployment %s: %d targets (%d valid), mode=%s", deployment_id, len(targets), len(runnable), mode,
        )
        if mode == "parallel":
            with ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="fanout") as pool:
                futures = [pool.submit(self._run_target, t, jobs[t.ref], cancel_event) for t in runnable]
                for f in futures:
                    f.result()
                    self._report(progress, targets)
        else:
            for i, target in enumerate(runnable):
                if i:
                    self._wait_between_targets(cancel_event, progress, target)
                self._run_target(target, jobs[target.ref], cancel_event)
                self._report(progress, targets)

        if cancel_event.is_set():
            raise JobCancelled(f"Deployment {deployment_id} cancelled")

        successful = sum(1 for t in targets if t.status in {TargetStatus.SUCCESS, TargetStatus.PARTIAL})
        return {
            "deployment_id": deployment_id,
            "status": deployment_status(targets),
            "total_targets": len(targets),
            "successful": successful,
            "failed": len(targets) - successful,
            "partial": sum(1 for t in targets if t.status == TargetStatus.PARTIAL),
            "per_target_results": [t.to_dict() for t in targets],
        }

    # -----------------------------
    # Per target
    # -----------------------------

    def _create_sub_job(self, request: ReplicationRequest, spec: TargetSpec, deployment_id: Optional[str]) -> ReplicationJob:
        template = request.template.for_target(spec.ad_account_id, page_id=spec.page_id, pixel_id=spec.pixel_id)
        sub_request = request.model_copy(update={
            "kind": "deploy",
            "template": template,
            "targets": None,
            "credential_id": spec.credential_id or request.credential_id,
        })
        return self.tracker.create_job(
            "deploy",
            sub_request.model_dump(mode="json"),
            parent_job_id=deployment_id,
            target_ref=spec.ad_account_id,
            target_count=request.copies_to_create,
        )

    def _run_target(self, target: ReplicationTarget, job: ReplicationJob, cancel_event: threading.Event) -> None:
        if not job.terminal:
            if cancel_event.is_set():
                target.status, target.error = TargetStatus.FAILED, "Deployment cancelled before this target started"
                return
            self.tracker.link_cancel(job.job_id, cancel_event)
            self.tracker.run_inline(job)

        target.result = dict(job.result or {})
        target.result.setdefault("progress", job.progress)
        target.result.setdefault("target_count", job.target_count)
        status = JobStatus(job.status)
        if status == JobStatus.COMPLETED:
            target.status = TargetStatus.SUCCESS
        elif status == JobStatus.COMPLETED_WITH_DEFICIT and job.progress > 0:
            target.status = TargetStatus.PARTIAL
        else:
            target.status = TargetStatus.FAILED
            target.error = job.error or f"Target finished as {job.status} with no copies"
        logger.info("Deployment target %s finished: %s", target.ref, target.status.value)

    def _fail_target(self, target: ReplicationTarget, reason: str, deployment_id: Optional[str]) -> None:
        target.status = TargetStatus.FAILED
        target.error = reason
        self.ledger.record(FailureRecord.build(
            entity_kind="target",
            stage="fanout",
            kind=ErrorKind.PERMANENT,
            job_id=deployment_id,
            target_ref=target.ref,
            payload={"message": reason},
        ))
        logger.warning("Deployment target %s rejected: %s", target.ref, reason)

    def _wait_between_targets(self, cancel_event: threading.Event, progress: Any, target: ReplicationTarget) -> None:
        if self.sequential_delay_s <= 0:
            return
        if progress is not None:
            progress.set_operation(f"Waiting {self.sequential_delay_s:.0f}s before target {target.ref}")
        if self.sleep is time.sleep:
            cancel_event.wait(self.sequential_delay_s)
        else:
            self.sleep(self.sequential_delay_s)

    @staticmethod
    def _report(progress: Any, targets: List[ReplicationTarget]) -> None:
        if progress is None:
            return
        done = [t for t in targets if t.status != TargetStatus.READY]
        ok = sum(1 for t in done if t.status == TargetStatus.SUCCESS)
        progress.set_operation(f"{len(done)}/{len(targets)} targets finished")
        progress.checkpoint(progress=ok)
