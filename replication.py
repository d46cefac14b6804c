"""replication.py

Replication strategies and the single-target engine.

One engine run is: resolve the template, make sure the container exists,
take the authoritative baseline, create what is missing with the selected
strategy, then hand over to the deficit recovery controller.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterator, Optional

from batch_planner import BatchDispatcher, GroupResult, fit_max_ops, plan
from credential_pool import Credential, CredentialPool
from deficit_recovery import DeficitRecoveryController, count_complete_copies, create_pair
from dispatch_context import ReplicationContext
from error_policy import BackoffPolicy, ErrorKind, call_with_backoff, classify_error
from failure_ledger import FailureLedger
from job_tracker import ReplicationJob
from meta_graph import MetaAPIError
from templates import ReplicationRequest, ReplicationTemplate, load_template_from_parent

logger = logging.getLogger(__name__)


@dataclass
class StrategyResult:
    strategy: str
    requested: int
    created: int = 0
    orphans: int = 0
    failed: int = 0
    groups: int = 0
    fell_back: bool = False
    next_copy_number: int = 1

    def absorb(self, group: GroupResult) -> None:
        self.groups += 1
        for o in group.outcomes:
            if o.complete:
                self.created += 1
            elif o.status == "orphan_parent":
                self.orphans += 1
            else:
                self.failed += 1
        self.next_copy_number = max(self.next_copy_number, max(group.group.copy_numbers) + 1)


# -----------------------------
# Strategies
# -----------------------------

class ReplicationStrategy(ABC):
    name = "base"

    @abstractmethod
    def run(self, ctx: ReplicationContext, count: int, start_copy_number: int) -> StrategyResult:
        raise NotImplementedError


class BatchReplicationStrategy(ReplicationStrategy):
    name = "batch"

    def __init__(self, dispatcher: BatchDispatcher, *, max_ops_per_call: int = 50, inter_group_delay_s: float = 2.0):
        self.dispatcher = dispatcher
        self.max_ops_per_call = int(max_ops_per_call)
        self.inter_group_delay_s = float(inter_group_delay_s)

    def iter_groups(self, ctx: ReplicationContext, count: int, start_copy_number: int) -> Iterator[GroupResult]:
        eligible = ctx.pool.eligible(scope_id=ctx.scope_id, credential_id=ctx.credential_id)
        max_ops = fit_max_ops(self.max_ops_per_call, max(c.hourly_capacity for c in eligible))
        if max_ops < self.max_ops_per_call:
            logger.info("Batch calls on %s limited to %d operations by credential capacity", ctx.scope_id, max_ops)
        groups = plan(
            ctx.template, count, max_ops,
            container_id=ctx.container_id, start_copy_number=start_copy_number,
        )
        logger.info("Planned %d copies on %s as %d batch calls", count, ctx.scope_id, len(groups))
        for group in groups:
            if group.group_index:
                ctx.pause(self.inter_group_delay_s)
            result = self.dispatcher.dispatch(group, ctx)
            ctx.progress.checkpoint()
            yield result

    def run(self, ctx: ReplicationContext, count: int, start_copy_number: int) -> StrategyResult:
        out = StrategyResult(self.name, count, next_copy_number=start_copy_number)
        for group in self.iter_groups(ctx, count, start_copy_number):
            out.absorb(group)
        return out


class SequentialReplicationStrategy(ReplicationStrategy):
    name = "sequential"

    def __init__(self, backoff: Optional[BackoffPolicy] = None, *, inter_request_delay_s: float = 2.0, cleanup_orphans: bool = True):
        self.backoff = backoff or BackoffPolicy()
        self.inter_request_delay_s = float(inter_request_delay_s)
        self.cleanup_orphans = cleanup_orphans

    def run(self, ctx: ReplicationContext, count: int, start_copy_number: int) -> StrategyResult:
        out = StrategyResult(self.name, count, next_copy_number=start_copy_number)
        for i in range(count):
            if i:
                ctx.pause(self.inter_request_delay_s)
            ctx.check_cancelled()
            copy_number = start_copy_number + i
            ctx.progress.set_operation(f"Creating copy {copy_number} ({i + 1}/{count})")
            outcome = create_pair(
                ctx, copy_number, policy=self.backoff,
                delete_orphan=self.cleanup_orphans, stage="sequential",
            )
            out.next_copy_number = copy_number + 1
            if outcome.complete:
                out.created += 1
            elif outcome.status == "orphan_parent":
                out.orphans += 1
            else:
                out.failed += 1
            ctx.progress.checkpoint()
            if not outcome.complete and outcome.error_kind == ErrorKind.PERMANENT:
                logger.warning("Sequential run on %s stopped by a permanent error at copy %d", ctx.scope_id, copy_number)
                break
        return out


class AdaptiveReplicationStrategy(ReplicationStrategy):
    """Batch first; once a group's success rate drops below the threshold, go sequential."""

    name = "adaptive"

    def __init__(
        self,
        batch: BatchReplicationStrategy,
        sequential: SequentialReplicationStrategy,
        *,
        min_success_rate: float = 0.5,
    ):
        if not 0.0 <= min_success_rate <= 1.0:
            raise ValueError("min_success_rate must be within [0, 1]")
        self.batch = batch
        self.sequential = sequential
        self.min_success_rate = min_success_rate

    def run(self, ctx: ReplicationContext, count: int, start_copy_number: int) -> StrategyResult:
        out = StrategyResult(self.name, count, next_copy_number=start_copy_number)
        for group in self.batch.iter_groups(ctx, count, start_copy_number):
            out.absorb(group)
            if group.success_rate < self.min_success_rate:
                out.fell_back = True
                logger.warning(
                    "Batch group %d on %s succeeded at %.0f%%; falling back to sequential",
                    group.group.group_index, ctx.scope_id, group.success_rate * 100,
                )
                break

        remaining = count - out.created
        if out.fell_back and remaining > 0:
            seq = self.sequential.run(ctx, remaining, out.next_copy_number)
            out.created += seq.created
            out.orphans += seq.orphans
            out.failed += seq.failed
            out.next_copy_number = seq.next_copy_number
        return out


# -----------------------------
# Engine
# -----------------------------

class ReplicationEngine:
    def __init__(
        self,
        pool: CredentialPool,
        ledger: FailureLedger,
        client_factory: Callable[[Credential], Any],
        *,
        dispatcher: Optional[BatchDispatcher] = None,
        recovery: Optional[DeficitRecoveryController] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_ops_per_call: int = 50,
        inter_group_delay_s: float = 2.0,
        min_success_rate: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.pool = pool
        self.ledger = ledger
        self.client_factory = client_factory
        self.backoff = backoff or BackoffPolicy()
        self.dispatcher = dispatcher or BatchDispatcher(self.backoff)
        self.recovery = recovery or DeficitRecoveryController(backoff=self.backoff)
        self.max_ops_per_call = int(max_ops_per_call)
        self.inter_group_delay_s = float(inter_group_delay_s)
        self.min_success_rate = float(min_success_rate)
        self.sleep = sleep

    def build_strategy(self, name: str) -> ReplicationStrategy:
        batch = BatchReplicationStrategy(
            self.dispatcher, max_ops_per_call=self.max_ops_per_call, inter_group_delay_s=self.inter_group_delay_s,
        )
        sequential = SequentialReplicationStrategy(
            self.backoff,
            inter_request_delay_s=self.recovery.policy.inter_request_delay_s,
            cleanup_orphans=self.recovery.policy.cleanup_orphans,
        )
        if name == "batch":
            return batch
        if name == "sequential":
            return sequential
        if name == "adaptive":
            return AdaptiveReplicationStrategy(batch, sequential, min_success_rate=self.min_success_rate)
        raise ValueError(f"Unknown strategy: {name}")

    def context_for(self, job: ReplicationJob, request: ReplicationRequest, progress: Any, cancel_event: threading.Event) -> ReplicationContext:
        scope_id = request.template.ad_account_id if request.template else str(request.ad_account_id)
        return ReplicationContext(
            job_id=job.job_id,
            scope_id=scope_id,
            pool=self.pool,
            client_factory=self.client_factory,
            ledger=self.ledger,
            progress=progress,
            cancel_event=cancel_event,
            credential_id=request.credential_id,
            target_ref=job.target_ref or scope_id,
            sleep=self.sleep,
        )

    def execute(self, job: ReplicationJob, progress: Any, cancel_event: threading.Event) -> Dict[str, Any]:
        request = ReplicationRequest.model_validate(job.request)
        ctx = self.context_for(job, request, progress, cancel_event)

        ctx.template = request.template or self._read_template(ctx, request)
        ctx.container_id = job.container_id or ctx.template.container_id or self._create_container(ctx)
        if job.container_id != ctx.container_id:
            progress.checkpoint(container_id=ctx.container_id)

        progress.set_operation("Counting existing copies")
        count = count_complete_copies(ctx, policy=self.backoff)
        if job.baseline is None:
            baseline = count.complete
            if request.copies_to_create is not None:
                target_count = request.copies_to_create
            else:
                target_count = max(0, int(request.total_desired_count) - baseline)
            progress.checkpoint(baseline=baseline, target_count=target_count, target_total=baseline + target_count)
            logger.info(
                "Job %s on %s: baseline=%d, creating %d (target total %d)",
                job.job_id, ctx.scope_id, baseline, target_count, baseline + target_count,
            )
        progress.set_actual(count.complete)

        first_copy = self._first_copy_number(job, ctx.template)
        start_copy = self._next_copy_number(job, ctx.template)
        need = job.target_total - count.complete
        strategy = self.build_strategy(request.strategy)
        run: Optional[StrategyResult] = None
        if need > 0:
            run = strategy.run(ctx, need, start_copy)
            start_copy = run.next_copy_number

        final = self.recovery.reconcile(
            ctx, job.target_total,
            next_copy_number=start_copy,
            created_refs=job.created_refs,
            settle=run is not None,
            first_copy_number=first_copy,
            own_parent_ids=list(job.orphans),
            expected_actual=count.complete + (run.created if run else 0),
        )
        return {
            **final.to_dict(),
            "target_ref": ctx.target_ref,
            "container_id": ctx.container_id,
            "baseline": job.baseline,
            "target_count": job.target_count,
            "progress": job.progress,
            "strategy": asdict(run) if run else {"strategy": strategy.name, "requested": 0},
        }

    # -----------------------------
    # Steps
    # -----------------------------

    def _read_template(self, ctx: ReplicationContext, request: ReplicationRequest) -> ReplicationTemplate:
        ctx.progress.set_operation(f"Reading template from {request.source_parent_id}")
        try:
            return call_with_backoff(
                lambda: ctx.admitted(
                    lambda client: load_template_from_parent(
                        client, str(request.source_parent_id), ad_account_id=ctx.scope_id,
                    ),
                    calls=2,
                ),
                self.backoff,
                sleep=ctx.pause,
            )
        except Exception as e:
            ctx.fail(entity_kind="template", stage="template_read", kind=classify_error(e), exc=e, parent_ref=request.source_parent_id)
            raise

    def _create_container(self, ctx: ReplicationContext) -> str:
        template = ctx.template
        if not template.container_fields:
            raise ValueError("Template has neither container_id nor container_fields")
        ctx.progress.set_operation(f"Creating container on {ctx.scope_id}")
        try:
            container_id = call_with_backoff(
                lambda: ctx.admitted(lambda client: client.create_object(template.container_path(), template.container_fields)),
                self.backoff,
                sleep=ctx.pause,
            )
        except MetaAPIError as e:
            ctx.fail(entity_kind="container", stage="container_create", kind=classify_error(e), exc=e)
            raise
        logger.info("Created container %s on %s", container_id, ctx.scope_id)
        return container_id

    @staticmethod
    def _first_copy_number(job: ReplicationJob, template: ReplicationTemplate) -> int:
        # The source parent is copy zero; a fresh container starts at one.
        first = int(job.baseline or 0) + (0 if template.source_parent_id else 1)
        return max(1, first)

    @classmethod
    def _next_copy_number(cls, job: ReplicationJob, template: ReplicationTemplate) -> int:
        if job.created_refs:
            return max(int(r.get("copy_number") or 0) for r in job.created_refs) + 1
        return cls._first_copy_number(job, template)
