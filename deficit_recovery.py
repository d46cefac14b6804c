"""deficit_recovery.py

Reconciles a job against the authoritative state on the platform and tops up
missing copies one pair at a time.

A copy counts as complete when its parent (ad set) exists under the container
and has at least one child (ad). Counts always come from a fresh edge query,
never from local counters.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from batch_planner import PairOutcome
from dispatch_context import ReplicationContext
from error_policy import BackoffPolicy, ErrorKind, JobCancelled, call_with_backoff, classify_error, error_payload
from meta_graph import MetaAPIError

logger = logging.getLogger(__name__)

COUNT_PAGE_SIZE = 200


def _env_bool(name: str, default: bool) -> bool:
    v = (os.getenv(name) or "").strip().lower()
    if not v:
        return default
    return v in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class RecoveryPolicy:
    max_attempts: int = 10
    inter_request_delay_s: float = 2.0
    settle_delay_s: float = 3.0
    cleanup_orphans: bool = True
    trim_excess: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.inter_request_delay_s < 0 or self.settle_delay_s < 0:
            raise ValueError("delays must be >= 0")

    @staticmethod
    def from_env() -> "RecoveryPolicy":
        return RecoveryPolicy(
            max_attempts=int(os.getenv("RECOVERY_MAX_ATTEMPTS", "10")),
            inter_request_delay_s=float(os.getenv("RECOVERY_DELAY_S", "2")),
            settle_delay_s=float(os.getenv("RECOVERY_SETTLE_DELAY_S", "3")),
            cleanup_orphans=_env_bool("RECOVERY_CLEANUP_ORPHANS", True),
            trim_excess=_env_bool("RECOVERY_TRIM_EXCESS", False),
        )


# -----------------------------
# Authoritative count
# -----------------------------

@dataclass
class CopyCount:
    complete: int = 0
    complete_parent_ids: List[str] = field(default_factory=list)
    orphan_parent_ids: List[str] = field(default_factory=list)
    orphan_names: Dict[str, str] = field(default_factory=dict)


def count_fields(child_edge: str) -> str:
    return f"id,name,{child_edge}.limit(1){{id}}"


def count_complete_copies(ctx: ReplicationContext, *, policy: Optional[BackoffPolicy] = None) -> CopyCount:
    """Page through the container's parents; one admitted call per page.

    Each page is retried on transient and transport errors within `policy`.
    """
    policy = policy or BackoffPolicy()
    child_edge = ctx.template.child_edge
    fields = count_fields(child_edge)
    out = CopyCount()
    after: Optional[str] = None
    while True:
        ctx.check_cancelled()
        rows, after = call_with_backoff(
            lambda cursor=after: ctx.admitted(
                lambda client: client.list_edge_page(
                    ctx.container_id, ctx.template.parent_edge,
                    fields=fields, limit=COUNT_PAGE_SIZE, after=cursor,
                )
            ),
            policy,
            sleep=ctx.pause,
        )
        for row in rows:
            parent_id = str(row.get("id") or "")
            if not parent_id:
                continue
            children = ((row.get(child_edge) or {}).get("data")) or []
            if children:
                out.complete += 1
                out.complete_parent_ids.append(parent_id)
            elif parent_id != ctx.template.source_parent_id:
                out.orphan_parent_ids.append(parent_id)
                out.orphan_names[parent_id] = str(row.get("name") or "")
        if not after:
            return out


# -----------------------------
# Sequential pair creation
# -----------------------------

def create_pair(
    ctx: ReplicationContext,
    copy_number: int,
    *,
    policy: Optional[BackoffPolicy] = None,
    delete_orphan: bool = True,
    stage: str = "recovery",
) -> PairOutcome:
    """Create one parent, then its child with the materialized parent id."""
    policy = policy or BackoffPolicy()
    template = ctx.template

    def _create(path: str, body: Dict[str, Any]) -> str:
        return call_with_backoff(
            lambda: ctx.admitted(lambda client: client.create_object(path, body)),
            policy,
            sleep=ctx.pause,
        )

    try:
        parent_id = _create(template.parent_path(), template.parent_body(copy_number, ctx.container_id))
    except MetaAPIError as e:
        kind = classify_error(e)
        ctx.fail(entity_kind="parent", stage=stage, kind=kind, exc=e, copy_number=copy_number)
        return PairOutcome(copy_number, "failed", error_kind=kind, error=error_payload(e))

    try:
        child_id = _create(template.child_path(), template.child_body(copy_number, parent_id))
    except MetaAPIError as e:
        kind = classify_error(e)
        ctx.fail(entity_kind="child", stage=stage, kind=kind, exc=e, parent_ref=parent_id, copy_number=copy_number)
        ctx.progress.add_orphan(parent_id)
        if delete_orphan:
            delete_parent(ctx, parent_id, copy_number=copy_number)
        return PairOutcome(copy_number, "orphan_parent", parent_id=parent_id, error_kind=kind, error=error_payload(e))
    except JobCancelled as e:
        ctx.fail(
            entity_kind="child", stage="cancel", kind=ErrorKind.INTERNAL, exc=e,
            parent_ref=parent_id, copy_number=copy_number,
        )
        ctx.progress.add_orphan(parent_id)
        if delete_orphan:
            delete_parent(ctx, parent_id, copy_number=copy_number, ignore_cancel=True)
        raise

    ctx.progress.add_created(copy_number, parent_id, child_id)
    return PairOutcome(copy_number, "complete", parent_id, child_id)


def delete_parent(
    ctx: ReplicationContext, parent_id: str, *, copy_number: Optional[int] = None, ignore_cancel: bool = False
) -> bool:
    try:
        ctx.admitted(lambda client: client.delete_object(parent_id), ignore_cancel=ignore_cancel)
        logger.info("Deleted parent %s", parent_id)
        return True
    except MetaAPIError as e:
        ctx.fail(
            entity_kind="parent", stage="cleanup", kind=classify_error(e), exc=e,
            parent_ref=parent_id, copy_number=copy_number,
        )
        return False


# -----------------------------
# Controller
# -----------------------------

@dataclass
class ReconcileResult:
    status: str  # completed | completed_with_deficit
    actual: int
    target_total: int
    attempts_used: int = 0
    created: List[PairOutcome] = field(default_factory=list)
    orphans_deleted: List[str] = field(default_factory=list)
    trimmed: List[str] = field(default_factory=list)
    foreign_orphans: List[str] = field(default_factory=list)
    stopped_on_permanent: bool = False
    count_failed: bool = False

    @property
    def deficit(self) -> int:
        return max(0, self.target_total - self.actual)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "actual": self.actual,
            "target_total": self.target_total,
            "deficit": self.deficit,
            "recovery_attempts": self.attempts_used,
            "recovered": len([p for p in self.created if p.complete]),
            "orphans_deleted": list(self.orphans_deleted),
            "foreign_orphans": list(self.foreign_orphans),
            "trimmed": list(self.trimmed),
            "count_failed": self.count_failed,
        }


class DeficitRecoveryController:
    def __init__(self, policy: Optional[RecoveryPolicy] = None, *, backoff: Optional[BackoffPolicy] = None):
        self.policy = policy or RecoveryPolicy()
        self.backoff = backoff or BackoffPolicy()

    def reconcile(
        self,
        ctx: ReplicationContext,
        target_total: int,
        *,
        next_copy_number: int,
        created_refs: Optional[List[Dict[str, Any]]] = None,
        settle: bool = True,
        first_copy_number: Optional[int] = None,
        own_parent_ids: Optional[List[str]] = None,
        expected_actual: Optional[int] = None,
    ) -> ReconcileResult:
        """Recount, then create missing pairs sequentially until the deficit closes.

        `created_refs` are the pairs this job created ({copy_number, parent_id, ...});
        only those are eligible for trimming.

        Orphan cleanup only deletes childless parents this job made: ids in
        `own_parent_ids` or `created_refs`, or parents named like copies
        `first_copy_number` .. `next_copy_number - 1`. Any other childless parent
        is reported in `foreign_orphans` and left in place.

        A count that still fails after retries is recorded (stage `count_query`)
        and ends the run as completed_with_deficit with `count_failed` set;
        `actual` then holds the best known value (`expected_actual` before any
        successful count).
        """
        if settle and self.policy.settle_delay_s:
            ctx.progress.set_operation("Waiting for the platform to settle before recount")
            ctx.pause(self.policy.settle_delay_s)

        ctx.progress.set_operation("Counting existing copies")
        count = self._recount(ctx)
        if count is None:
            result = ReconcileResult(
                status="completed_with_deficit", actual=int(expected_actual or 0),
                target_total=target_total, count_failed=True,
            )
            return self._done(ctx, result)
        result = ReconcileResult(status="completed", actual=count.complete, target_total=target_total)
        ctx.progress.set_actual(count.complete)

        if count.orphan_parent_ids:
            own, foreign = self._split_orphans(
                ctx, count, created_refs or [], own_parent_ids or [], first_copy_number, next_copy_number,
            )
            result.foreign_orphans = foreign
            if foreign:
                logger.warning(
                    "Leaving %d childless parents on %s that this job did not create: %s",
                    len(foreign), ctx.scope_id, ", ".join(foreign),
                )
            if self.policy.cleanup_orphans and own:
                result.orphans_deleted = self._cleanup_orphans(ctx, own)

        attempts_left = self.policy.max_attempts
        copy_number = next_copy_number
        while True:
            deficit = target_total - result.actual
            if deficit <= 0 or attempts_left <= 0 or result.stopped_on_permanent:
                break
            logger.info("Deficit of %d copies on %s; %d attempts left", deficit, ctx.scope_id, attempts_left)
            made = 0
            for _ in range(deficit):
                if attempts_left <= 0:
                    break
                ctx.check_cancelled()
                attempts_left -= 1
                result.attempts_used += 1
                ctx.progress.set_operation(
                    f"Recovering copy {copy_number} (attempt {result.attempts_used}/{self.policy.max_attempts})"
                )
                outcome = create_pair(
                    ctx, copy_number, policy=self.backoff, delete_orphan=self.policy.cleanup_orphans,
                )
                copy_number += 1
                result.created.append(outcome)
                if not outcome.complete and outcome.error_kind == ErrorKind.PERMANENT:
                    result.stopped_on_permanent = True
                    logger.warning("Recovery on %s stopped by a permanent error at copy %d", ctx.scope_id, outcome.copy_number)
                    break
                made += 1 if outcome.complete else 0
                if made >= deficit:
                    break
                ctx.pause(self.policy.inter_request_delay_s)
            count = self._recount(ctx)
            if count is None:
                result.actual += made
                result.count_failed = True
                break
            result.actual = count.complete
            ctx.progress.set_actual(count.complete)

        if self.policy.trim_excess and not result.count_failed and result.actual > target_total:
            result.trimmed = self._trim(ctx, result.actual - target_total, created_refs or [], result.created)
            if result.trimmed:
                count = self._recount(ctx)
                if count is None:
                    result.actual -= len(result.trimmed)
                    result.count_failed = True
                else:
                    result.actual = count.complete
                    ctx.progress.set_actual(result.actual)

        return self._done(ctx, result)

    def _done(self, ctx: ReplicationContext, result: ReconcileResult) -> ReconcileResult:
        reached = result.actual >= result.target_total and not result.count_failed
        result.status = "completed" if reached else "completed_with_deficit"
        logger.info(
            "Reconcile on %s finished: %s (actual=%d target=%d attempts=%d count_failed=%s)",
            ctx.scope_id, result.status, result.actual, result.target_total, result.attempts_used, result.count_failed,
        )
        return result

    def _recount(self, ctx: ReplicationContext) -> Optional[CopyCount]:
        try:
            return count_complete_copies(ctx, policy=self.backoff)
        except MetaAPIError as e:
            ctx.fail(entity_kind="container", stage="count_query", kind=classify_error(e), exc=e)
            logger.warning("Could not count copies on %s: %s", ctx.scope_id, e)
            return None

    @staticmethod
    def _split_orphans(
        ctx: ReplicationContext,
        count: CopyCount,
        created_refs: List[Dict[str, Any]],
        own_parent_ids: List[str],
        first_copy_number: Optional[int],
        next_copy_number: int,
    ) -> Tuple[List[str], List[str]]:
        own_ids = set(own_parent_ids)
        own_ids.update(str(r.get("parent_id")) for r in created_refs if r.get("parent_id"))
        own_names = set()
        if first_copy_number is not None:
            for n in range(first_copy_number, next_copy_number):
                own_names.add(str(ctx.template.parent_body(n, ctx.container_id).get("name") or ""))
        own: List[str] = []
        foreign: List[str] = []
        for parent_id in count.orphan_parent_ids:
            if parent_id in own_ids or count.orphan_names.get(parent_id) in own_names:
                own.append(parent_id)
            else:
                foreign.append(parent_id)
        return own, foreign

    def _cleanup_orphans(self, ctx: ReplicationContext, orphan_ids: List[str]) -> List[str]:
        deleted: List[str] = []
        for parent_id in orphan_ids:
            ctx.check_cancelled()
            ctx.progress.set_operation(f"Deleting orphan parent {parent_id}")
            if delete_parent(ctx, parent_id):
                deleted.append(parent_id)
        if deleted:
            logger.info("Deleted %d orphan parents on %s", len(deleted), ctx.scope_id)
        return deleted

    def _trim(
        self,
        ctx: ReplicationContext,
        surplus: int,
        created_refs: List[Dict[str, Any]],
        recovered: List[PairOutcome],
    ) -> List[str]:
        own = [(int(r.get("copy_number") or 0), str(r.get("parent_id"))) for r in created_refs if r.get("parent_id")]
        own += [(p.copy_number, p.parent_id) for p in recovered if p.complete and p.parent_id]
        seen = set()
        trimmed: List[str] = []
        for _, parent_id in sorted(own, reverse=True):
            if len(trimmed) >= surplus:
                break
            if parent_id in seen or parent_id == ctx.template.source_parent_id:
                continue
            seen.add(parent_id)
            ctx.progress.set_operation(f"Trimming surplus copy {parent_id}")
            if delete_parent(ctx, parent_id):
                trimmed.append(parent_id)
        return trimmed
