"""batch_planner.py

Packs parent/child create pairs into Graph batch calls and reads the results
back strictly by index.

Indexing, shared by `plan` and `parse_batch_response`:
    copy i of a group -> slot 2i   parent, named "op-2i"
                         slot 2i+1 child, body references {result=op-2i:$.id}
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from dispatch_context import ReplicationContext
from error_policy import (
    BackoffPolicy,
    ErrorKind,
    classify_error,
    classify_platform_error,
    error_payload,
)
from meta_graph import MetaAPIError, encode_batch_body
from templates import ReplicationTemplate

logger = logging.getLogger(__name__)

DEFAULT_MAX_OPS_PER_CALL = 50
OPS_PER_PAIR = 2


def parent_slot_name(slot: int) -> str:
    return f"op-{slot}"


def parent_reference(slot: int) -> str:
    return "{result=" + parent_slot_name(slot) + ":$.id}"


# -----------------------------
# Plan
# -----------------------------

@dataclass(frozen=True)
class SubOperation:
    slot: int
    role: str  # parent | child
    copy_number: int
    relative_url: str
    body: Dict[str, Any]
    method: str = "POST"
    name: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "method": self.method,
            "relative_url": self.relative_url,
            "body": encode_batch_body(self.body),
        }
        if self.name:
            out["name"] = self.name
            # Named requests that others depend on omit their body by default.
            out["omit_response_on_success"] = False
        return out


@dataclass(frozen=True)
class BatchOperation:
    group_index: int
    ops: List[SubOperation]

    @property
    def size(self) -> int:
        return len(self.ops)

    @property
    def pairs(self) -> int:
        return len(self.ops) // OPS_PER_PAIR

    @property
    def copy_numbers(self) -> List[int]:
        return [op.copy_number for op in self.ops if op.role == "parent"]

    def to_wire(self) -> List[Dict[str, Any]]:
        return [op.to_wire() for op in self.ops]


def pairs_per_call(max_ops_per_call: int) -> int:
    pairs = int(max_ops_per_call) // OPS_PER_PAIR
    if pairs < 1:
        raise ValueError(f"max_ops_per_call must be >= {OPS_PER_PAIR}")
    return pairs


def fit_max_ops(max_ops_per_call: int, largest_capacity: int) -> int:
    """Shrink the group size to what the largest eligible credential can admit (at least one pair)."""
    return max(OPS_PER_PAIR, min(int(max_ops_per_call), int(largest_capacity)))


def plan(
    template: ReplicationTemplate,
    count: int,
    max_ops_per_call: int = DEFAULT_MAX_OPS_PER_CALL,
    *,
    container_id: str,
    start_copy_number: int = 1,
) -> List[BatchOperation]:
    """Split `count` copies into ceil(count / pairs_per_call) batch groups."""
    count = int(count)
    if count < 0:
        raise ValueError("count must be >= 0")
    per_call = pairs_per_call(max_ops_per_call)

    groups: List[BatchOperation] = []
    for g in range(math.ceil(count / per_call)):
        first = g * per_call
        n_pairs = min(per_call, count - first)
        ops: List[SubOperation] = []
        for i in range(n_pairs):
            copy_number = start_copy_number + first + i
            p_slot, c_slot = OPS_PER_PAIR * i, OPS_PER_PAIR * i + 1
            ops.append(SubOperation(
                slot=p_slot,
                role="parent",
                copy_number=copy_number,
                relative_url=template.parent_path(),
                body=template.parent_body(copy_number, container_id),
                name=parent_slot_name(p_slot),
            ))
            ops.append(SubOperation(
                slot=c_slot,
                role="child",
                copy_number=copy_number,
                relative_url=template.child_path(),
                body=template.child_body(copy_number, parent_reference(p_slot)),
            ))
        groups.append(BatchOperation(group_index=g, ops=ops))
    return groups


# -----------------------------
# Parse
# -----------------------------

@dataclass(frozen=True)
class SubResult:
    slot: int
    code: Optional[int]
    body: Dict[str, Any]
    executed: bool = True

    @property
    def ok(self) -> bool:
        return self.executed and self.code is not None and 200 <= self.code < 300 and "error" not in self.body

    @property
    def object_id(self) -> Optional[str]:
        oid = self.body.get("id")
        return str(oid) if oid else None

    def error_kind(self) -> ErrorKind:
        if not self.executed:
            return ErrorKind.TRANSIENT
        err = self.body.get("error") if isinstance(self.body.get("error"), dict) else None
        return classify_platform_error(self.code, err)

    def payload(self) -> Dict[str, Any]:
        if not self.executed:
            return {"slot": self.slot, "message": "Sub-request was not executed"}
        return {"slot": self.slot, "code": self.code, "meta_error": self.body.get("error"), "body": self.body}


@dataclass
class PairOutcome:
    copy_number: int
    status: str  # complete | orphan_parent | failed
    parent_id: Optional[str] = None
    child_id: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    error: Dict[str, Any] = field(default_factory=dict)
    inferred: bool = False

    @property
    def complete(self) -> bool:
        return self.status == "complete"


def _sub_result(slot: int, entry: Any) -> SubResult:
    if entry is None:
        return SubResult(slot=slot, code=None, body={}, executed=False)
    if not isinstance(entry, dict):
        return SubResult(slot=slot, code=None, body={"error": {"message": f"Unexpected entry {entry!r}"}})
    raw_body = entry.get("body")
    if isinstance(raw_body, str):
        try:
            body = json.loads(raw_body) if raw_body else {}
        except ValueError:
            body = {"raw": raw_body}
    elif isinstance(raw_body, dict):
        body = raw_body
    else:
        body = {}
    if not isinstance(body, dict):
        body = {"value": body}
    if "error" in entry and "error" not in body:
        body["error"] = entry["error"]
    try:
        code = int(entry.get("code")) if entry.get("code") is not None else None
    except (TypeError, ValueError):
        code = None
    return SubResult(slot=slot, code=code, body=body)


def parse_batch_response(group: BatchOperation, raw: List[Any]) -> List[PairOutcome]:
    """Rebuild one PairOutcome per planned copy, reading slots 2i / 2i+1 only."""
    if len(raw) != group.size:
        logger.warning("Batch group %d: expected %d results, got %d", group.group_index, group.size, len(raw))

    outcomes: List[PairOutcome] = []
    for i, copy_number in enumerate(group.copy_numbers):
        p_slot, c_slot = OPS_PER_PAIR * i, OPS_PER_PAIR * i + 1
        parent = _sub_result(p_slot, raw[p_slot] if p_slot < len(raw) else None)
        child = _sub_result(c_slot, raw[c_slot] if c_slot < len(raw) else None)

        if parent.ok and child.ok:
            outcomes.append(PairOutcome(copy_number, "complete", parent.object_id, child.object_id))
        elif parent.ok:
            outcomes.append(PairOutcome(
                copy_number, "orphan_parent", parent_id=parent.object_id,
                error_kind=child.error_kind(), error=child.payload(),
            ))
        elif child.ok:
            # The child could only resolve {result=op-2i:$.id} if the parent was created.
            outcomes.append(PairOutcome(copy_number, "complete", None, child.object_id, inferred=True))
        else:
            outcomes.append(PairOutcome(
                copy_number, "failed", error_kind=parent.error_kind(), error=parent.payload(),
            ))
    return outcomes


# -----------------------------
# Dispatch
# -----------------------------

@dataclass
class GroupResult:
    group: BatchOperation
    outcomes: List[PairOutcome]
    attempts: int = 1
    error_kind: Optional[ErrorKind] = None  # None, PARTIAL_BATCH, or the group-level failure

    @property
    def completed(self) -> int:
        return sum(1 for o in self.outcomes if o.complete)

    @property
    def success_rate(self) -> float:
        return self.completed / len(self.outcomes) if self.outcomes else 1.0


class BatchDispatcher:
    def __init__(self, policy: Optional[BackoffPolicy] = None):
        self.policy = policy or BackoffPolicy()

    def dispatch(self, group: BatchOperation, ctx: ReplicationContext) -> GroupResult:
        """Send one group; admission waits (deferrals) happen inside ctx.admitted.

        A whole-call transient/transport failure re-sends the group as
        not-yet-attempted until the policy runs out; then every pair in it is
        failed with that kind. Per-operation failures are never retried here.
        """
        attempt = 0
        while True:
            attempt += 1
            ctx.check_cancelled()
            ctx.progress.set_operation(
                f"Batch {group.group_index + 1}: creating {group.pairs} copies (attempt {attempt})"
            )
            try:
                raw = ctx.admitted(lambda client: client.batch(group.to_wire()), calls=group.size)
                break
            except MetaAPIError as e:
                kind = classify_error(e)
                if kind not in {ErrorKind.TRANSIENT, ErrorKind.TRANSPORT} or attempt >= self.policy.max_attempts:
                    logger.warning("Batch group %d failed as a whole (%s): %s", group.group_index, kind.value, e)
                    return self._fail_group(group, ctx, kind, e, attempt)
                delay = self.policy.delay_for(attempt)
                logger.warning(
                    "Batch group %d %s (attempt %d/%d), retrying in %.1fs: %s",
                    group.group_index, kind.value, attempt, self.policy.max_attempts, delay, e,
                )
                ctx.pause(delay)

        outcomes = parse_batch_response(group, raw)
        result = GroupResult(group=group, outcomes=outcomes, attempts=attempt)
        for o in outcomes:
            if o.complete:
                ctx.progress.add_created(o.copy_number, o.parent_id, o.child_id)
            elif o.status == "orphan_parent":
                ctx.progress.add_orphan(o.parent_id or "")
                ctx.fail(
                    entity_kind="pair",
                    stage="batch_dispatch",
                    kind=o.error_kind or ErrorKind.INTERNAL,
                    payload={"partial": True, **o.error},
                    parent_ref=o.parent_id,
                    copy_number=o.copy_number,
                )
            else:
                ctx.fail(
                    entity_kind="parent",
                    stage="batch_dispatch",
                    kind=o.error_kind or ErrorKind.INTERNAL,
                    payload=o.error,
                    copy_number=o.copy_number,
                )
        if result.completed < len(outcomes):
            result.error_kind = ErrorKind.PARTIAL_BATCH
            logger.info(
                "Batch group %d: %d/%d copies complete", group.group_index, result.completed, len(outcomes)
            )
        return result

    def _fail_group(
        self, group: BatchOperation, ctx: ReplicationContext, kind: ErrorKind, exc: BaseException, attempts: int
    ) -> GroupResult:
        payload = error_payload(exc)
        outcomes = [PairOutcome(n, "failed", error_kind=kind, error=payload) for n in group.copy_numbers]
        ctx.fail(
            entity_kind="group",
            stage="batch_dispatch",
            kind=kind,
            payload={**payload, "copy_numbers": group.copy_numbers, "attempts": attempts},
        )
        return GroupResult(group=group, outcomes=outcomes, attempts=attempts, error_kind=kind)

