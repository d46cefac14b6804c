from __future__ import annotations

from datetime import timedelta

from error_policy import ErrorKind
from failure_ledger import FailureLedger, FailureRecord
from state_store import StateStore


def _record(clock, **kwargs):
    data = {
        "entity_kind": "pair",
        "stage": "batch_dispatch",
        "kind": ErrorKind.PERMANENT,
        "job_id": "job-1",
        "target_ref": "act_1",
        "payload": {"message": "Invalid parameter"},
        "created_at": clock(),
    }
    data.update(kwargs)
    return FailureRecord.build(**data)


class _BrokenStore:
    def append_failure(self, record):
        raise OSError("disk full")


class TestFailureLedger:
    def test_query_filters(self, clock):
        ledger = FailureLedger(clock=clock)
        ledger.record(_record(clock))
        ledger.record(_record(clock, stage="recovery", kind=ErrorKind.TRANSIENT))
        ledger.record(_record(clock, job_id="job-2", target_ref="act_2"))

        assert len(ledger.query()) == 3
        assert len(ledger.query(job_id="job-1")) == 2
        assert [r.stage for r in ledger.query(classification="transient")] == ["recovery"]
        assert [r.job_id for r in ledger.query(target_ref="act_2")] == ["job-2"]
        assert len(ledger.query(limit=1)) == 1

    def test_since_filter(self, clock):
        ledger = FailureLedger(clock=clock)
        ledger.record(_record(clock))
        clock.advance(60)
        ledger.record(_record(clock, stage="cleanup"))
        assert [r.stage for r in ledger.query(since=clock() - timedelta(seconds=30))] == ["cleanup"]

    def test_stats(self, clock):
        ledger = FailureLedger(clock=clock)
        ledger.record(_record(clock))
        ledger.record(_record(clock))
        ledger.record(_record(clock, stage="recovery", kind=ErrorKind.TRANSIENT))
        stats = ledger.stats("job-1")
        assert stats == {
            "total": 3,
            "by_stage": {"batch_dispatch": 2, "recovery": 1},
            "by_classification": {"permanent": 2, "transient": 1},
        }

    def test_purge_keeps_recent_records(self, clock):
        ledger = FailureLedger(clock=clock)
        ledger.record(_record(clock))
        clock.advance(8 * 86400)
        ledger.record(_record(clock, stage="recovery"))
        assert ledger.purge_older_than(7) == 1
        assert [r.stage for r in ledger.query()] == ["recovery"]

    def test_store_errors_never_escape(self, clock):
        ledger = FailureLedger(_BrokenStore(), clock=clock)
        ledger.record(_record(clock))

    def test_in_memory_cap(self, clock):
        ledger = FailureLedger(clock=clock, max_in_memory=2)
        for n in range(3):
            ledger.record(_record(clock, copy_number=n))
        assert [r.copy_number for r in ledger.query()] == [1, 2]

    def test_durable_ledger(self, clock, tmp_path):
        store = StateStore(str(tmp_path / "state.db"))
        ledger = FailureLedger(store, clock=clock)
        ledger.record(_record(clock, copy_number=4, payload={"message": "Invalid", "meta_error": {"code": 100}}))

        [row] = FailureLedger(store, clock=clock).query(job_id="job-1")
        assert row.copy_number == 4
        assert row.error_payload["meta_error"]["code"] == 100
        assert row.created_at == clock()
