"""failure_ledger.py

Append-only sink for per-entity failures.

`record` is fire-and-forget: it never raises into the engine. Operator tooling
reads through `query` / `stats`.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from error_policy import ErrorKind

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class FailureRecord:
    entity_kind: str          # parent | child | pair | group | container | template | target | job
    stage: str                # batch_dispatch | recovery | sequential | count_query | cleanup | cancel | template_read | container_create | fanout | job
    error_kind: str           # ErrorKind value
    classification: str       # transient | permanent
    job_id: Optional[str] = None
    target_ref: Optional[str] = None
    parent_ref: Optional[str] = None
    copy_number: Optional[int] = None
    error_payload: Dict[str, Any] = field(default_factory=dict)
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: datetime = field(default_factory=utcnow)

    @staticmethod
    def build(
        *,
        entity_kind: str,
        stage: str,
        kind: ErrorKind,
        job_id: Optional[str] = None,
        target_ref: Optional[str] = None,
        parent_ref: Optional[str] = None,
        copy_number: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> "FailureRecord":
        return FailureRecord(
            entity_kind=entity_kind,
            stage=stage,
            error_kind=kind.value,
            classification=kind.classification,
            job_id=job_id,
            target_ref=target_ref,
            parent_ref=parent_ref,
            copy_number=copy_number,
            error_payload=dict(payload or {}),
            created_at=created_at or utcnow(),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["created_at"] = self.created_at.isoformat()
        return d

    def summary(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "entity_kind": self.entity_kind,
            "stage": self.stage,
            "error_kind": self.error_kind,
            "classification": self.classification,
            "copy_number": self.copy_number,
            "parent_ref": self.parent_ref,
            "message": (self.error_payload or {}).get("message"),
        }


class FailureLedger:
    def __init__(self, store: Any = None, *, clock: Callable[[], datetime] = utcnow, max_in_memory: int = 10000):
        self.store = store
        self.clock = clock
        self.max_in_memory = max_in_memory
        self._lock = threading.Lock()
        self._records: List[FailureRecord] = []

    def record(self, entry: FailureRecord) -> None:
        try:
            with self._lock:
                self._records.append(entry)
                if len(self._records) > self.max_in_memory:
                    del self._records[: len(self._records) - self.max_in_memory]
            if self.store is not None:
                self.store.append_failure(entry)
        except Exception as e:
            logger.warning("Failure ledger write dropped (%s): %s", type(e).__name__, e)

    def query(
        self,
        *,
        job_id: Optional[str] = None,
        target_ref: Optional[str] = None,
        stage: Optional[str] = None,
        classification: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> List[FailureRecord]:
        filters = {
            "job_id": job_id,
            "target_ref": target_ref,
            "stage": stage,
            "classification": classification,
            "since": since,
        }
        if self.store is not None:
            return self.store.query_failures(limit=limit, **filters)

        with self._lock:
            rows = list(self._records)
        out = [
            r for r in rows
            if (job_id is None or r.job_id == job_id)
            and (target_ref is None or r.target_ref == target_ref)
            and (stage is None or r.stage == stage)
            and (classification is None or r.classification == classification)
            and (since is None or r.created_at >= since)
        ]
        return out[-limit:] if limit else out

    def stats(self, job_id: Optional[str] = None) -> Dict[str, Any]:
        rows = self.query(job_id=job_id, limit=0)
        by_stage: Dict[str, int] = {}
        by_class: Dict[str, int] = {}
        for r in rows:
            by_stage[r.stage] = by_stage.get(r.stage, 0) + 1
            by_class[r.classification] = by_class.get(r.classification, 0) + 1
        return {"total": len(rows), "by_stage": by_stage, "by_classification": by_class}

    def purge_older_than(self, days: int) -> int:
        cutoff = self.clock() - timedelta(days=int(days))
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.created_at >= cutoff]
            removed = before - len(self._records)
        if self.store is not None:
            removed = self.store.delete_failures_before(cutoff)
        return removed
