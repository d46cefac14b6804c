"""dispatch_context.py

Everything one replication unit (one job against one ad account) needs while
it talks to the platform: admission-wrapped calls, cancellation, the failure
ledger and a progress sink.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, TypeVar

from credential_pool import Credential, CredentialPool
from error_policy import ErrorKind, JobCancelled, error_payload
from failure_ledger import FailureLedger, FailureRecord
from templates import ReplicationTemplate

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NullProgress:
    """Progress sink that ignores everything (CLI dry use, tests)."""

    def set_operation(self, text: str) -> None:
        pass

    def add_created(self, copy_number: int, parent_id: Optional[str], child_id: Optional[str]) -> None:
        pass

    def add_failure(self, record: FailureRecord) -> None:
        pass

    def add_orphan(self, parent_id: str) -> None:
        pass

    def set_actual(self, actual: int) -> None:
        pass

    def checkpoint(self, **fields: Any) -> None:
        pass


@dataclass
class ReplicationContext:
    job_id: Optional[str]
    scope_id: str
    pool: CredentialPool
    client_factory: Callable[[Credential], Any]
    ledger: FailureLedger
    template: Optional[ReplicationTemplate] = None
    container_id: Optional[str] = None
    progress: Any = field(default_factory=NullProgress)
    cancel_event: threading.Event = field(default_factory=threading.Event)
    credential_id: Optional[str] = None
    target_ref: Optional[str] = None
    sleep: Callable[[float], None] = time.sleep

    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise JobCancelled(f"Job {self.job_id} cancelled")

    def pause(self, seconds: float) -> None:
        """Sleep between operations; wakes early (and raises) on cancellation."""
        if seconds <= 0:
            self.check_cancelled()
            return
        if self.sleep is time.sleep:
            self.cancel_event.wait(seconds)
        else:
            self.sleep(seconds)
        self.check_cancelled()

    def admitted(self, fn: Callable[[Any], T], *, calls: int = 1, ignore_cancel: bool = False) -> T:
        """Reserve `calls` from the pool, run `fn(client)`, then settle usage.

        `ignore_cancel` lets cleanup after a cancellation still get admitted.
        """
        reservation = self.pool.acquire(
            calls,
            scope_id=self.scope_id,
            credential_id=self.credential_id,
            sleep=self.sleep,
            is_cancelled=(lambda: False) if ignore_cancel else self.cancelled,
        )
        client = self.client_factory(reservation.credential)
        try:
            return fn(client)
        finally:
            self.pool.record_usage(reservation.credential, calls, reservation=reservation)
            self._observe_usage(reservation.credential, client)

    def _observe_usage(self, credential: Credential, client: Any) -> None:
        usage = getattr(client, "last_usage", None)
        if usage:
            self.pool.observe_platform_usage(
                credential.credential_id,
                int(usage.get("call_count_pct") or 0),
                int(usage.get("regain_access_s") or 0),
            )

    def fail(
        self,
        *,
        entity_kind: str,
        stage: str,
        kind: ErrorKind,
        exc: Optional[BaseException] = None,
        payload: Optional[Dict[str, Any]] = None,
        parent_ref: Optional[str] = None,
        copy_number: Optional[int] = None,
    ) -> FailureRecord:
        record = FailureRecord.build(
            entity_kind=entity_kind,
            stage=stage,
            kind=kind,
            job_id=self.job_id,
            target_ref=self.target_ref or self.scope_id,
            parent_ref=parent_ref,
            copy_number=copy_number,
            payload=payload if payload is not None else (error_payload(exc) if exc is not None else {}),
        )
        self.ledger.record(record)
        self.progress.add_failure(record)
        return record
