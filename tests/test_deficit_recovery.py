from __future__ import annotations

import pytest

from deficit_recovery import (
    DeficitRecoveryController,
    RecoveryPolicy,
    count_complete_copies,
    create_pair,
)
from error_policy import ErrorKind, JobCancelled
from meta_graph import MetaAPIError

from conftest import FAST_BACKOFF, FAST_RECOVERY, graph_error, make_template


def _throttled(n):
    return [graph_error(17, "User request limit reached") for _ in range(n)]


def _unavailable():
    return graph_error(2, "Service temporarily unavailable", http_status=503, is_transient=True)


class TestCount:
    def test_counts_only_parents_with_children(self, make_ctx, graph):
        for i in range(3):
            graph.seed_pair("cmp-1", f"Copy {i}")
        orphan = graph.seed_orphan("cmp-1")
        graph.seed_pair("cmp-other")

        count = count_complete_copies(make_ctx())
        assert count.complete == 3
        assert count.orphan_parent_ids == [orphan]

    def test_source_parent_is_never_an_orphan(self, make_ctx, graph):
        source = graph.seed_orphan("cmp-1", "Source")
        count = count_complete_copies(make_ctx(make_template(source_parent_id=source)))
        assert count.orphan_parent_ids == []

    def test_pages_through_large_containers(self, make_ctx, graph):
        for i in range(250):
            graph.seed_pair("cmp-1", f"Copy {i}")
        assert count_complete_copies(make_ctx()).complete == 250

    def test_transient_page_error_is_retried(self, make_ctx, graph, clock):
        graph.seed_pair("cmp-1")
        graph.count_errors = [_unavailable()]
        count = count_complete_copies(make_ctx(), policy=FAST_BACKOFF)
        assert count.complete == 1
        assert graph.count_queries == 2
        assert clock.sleeps == [FAST_BACKOFF.base_delay_s]

    def test_persistent_page_error_propagates(self, make_ctx, graph):
        graph.count_errors = [_unavailable() for _ in range(3)]
        with pytest.raises(MetaAPIError):
            count_complete_copies(make_ctx(), policy=FAST_BACKOFF)
        assert graph.count_queries == 3

    def test_children_are_read_from_the_template_child_edge(self, make_ctx, graph):
        for i in range(3):
            graph.seed_pair("cmp-1", f"Copy {i}")
        count = count_complete_copies(make_ctx(make_template(child_edge="adcreatives")))
        assert count.complete == 3
        assert count.orphan_parent_ids == []


class TestCreatePair:
    def test_parent_then_child_with_real_id(self, make_ctx, graph):
        ctx = make_ctx()
        outcome = create_pair(ctx, 7, policy=FAST_BACKOFF)
        assert outcome.complete
        edges = [(edge, fields.get("adset_id")) for edge, fields in graph.creates]
        assert edges == [("adsets", None), ("ads", outcome.parent_id)]
        assert graph.creates[0][1]["name"] == "Base - Copy 7"

    def test_child_failure_deletes_the_new_parent(self, make_ctx, graph, ledger):
        ctx = make_ctx()
        graph.create_errors["ads"] = [graph_error(100, "Invalid creative")]
        outcome = create_pair(ctx, 1, policy=FAST_BACKOFF)
        assert outcome.status == "orphan_parent"
        assert outcome.error_kind == ErrorKind.PERMANENT
        assert graph.deleted == [outcome.parent_id]
        assert graph.parents("cmp-1") == []
        assert [r.entity_kind for r in ledger.query(job_id="job-1")] == ["child"]

    def test_parent_failure_is_recorded(self, make_ctx, graph, ledger):
        graph.create_errors["adsets"] = [graph_error(100, "Invalid targeting")]
        outcome = create_pair(make_ctx(), 1, policy=FAST_BACKOFF)
        assert outcome.status == "failed"
        [record] = ledger.query(job_id="job-1")
        assert record.stage == "recovery"
        assert record.classification == "permanent"

    def test_cancel_between_parent_and_child_deletes_the_parent(self, make_ctx, graph, ledger):
        ctx = make_ctx()
        graph.on_create = lambda edge, object_id: ctx.cancel_event.set() if edge == "adsets" else None

        with pytest.raises(JobCancelled):
            create_pair(ctx, 1, policy=FAST_BACKOFF)

        [parent_id] = ctx.progress.orphans
        assert graph.deleted == [parent_id]
        assert graph.parents("cmp-1") == []
        assert [edge for edge, _ in graph.creates] == ["adsets"]
        [record] = ledger.query(job_id="job-1")
        assert record.stage == "cancel"
        assert record.parent_ref == parent_id

    def test_cancel_between_parent_and_child_can_keep_the_parent(self, make_ctx, graph):
        ctx = make_ctx()
        graph.on_create = lambda edge, object_id: ctx.cancel_event.set() if edge == "adsets" else None

        with pytest.raises(JobCancelled):
            create_pair(ctx, 1, policy=FAST_BACKOFF, delete_orphan=False)

        assert graph.deleted == []
        assert graph.parents("cmp-1") == ctx.progress.orphans


class TestReconcile:
    def test_converges_after_failed_attempts(self, make_ctx, graph):
        graph.seed_pair("cmp-1")
        graph.seed_pair("cmp-1")
        # Two recovery attempts each exhaust three transient failures.
        graph.create_errors["adsets"] = _throttled(6)

        ctx = make_ctx()
        result = DeficitRecoveryController(FAST_RECOVERY, backoff=FAST_BACKOFF).reconcile(
            ctx, 5, next_copy_number=3,
        )
        assert result.status == "completed"
        assert result.actual == 5
        assert result.deficit == 0
        assert result.attempts_used == 2 + 3
        assert graph.complete_count("cmp-1") == 5

    def test_attempts_are_bounded(self, make_ctx, graph):
        graph.create_errors["adsets"] = _throttled(100)
        policy = RecoveryPolicy(max_attempts=2, inter_request_delay_s=0, settle_delay_s=0)
        result = DeficitRecoveryController(policy, backoff=FAST_BACKOFF).reconcile(make_ctx(), 3, next_copy_number=1)
        assert result.status == "completed_with_deficit"
        assert result.attempts_used == 2
        assert result.deficit == 3

    def test_partial_pair_is_topped_up_exactly_once(self, make_ctx, graph):
        graph.seed_pair("cmp-1")
        graph.seed_pair("cmp-1")
        orphan = graph.seed_orphan("cmp-1", "Base - Copy 3")

        ctx = make_ctx()
        result = DeficitRecoveryController(FAST_RECOVERY, backoff=FAST_BACKOFF).reconcile(
            ctx, 3, first_copy_number=3, next_copy_number=4,
        )

        assert result.status == "completed"
        assert result.orphans_deleted == [orphan]
        assert [edge for edge, _ in graph.creates] == ["adsets", "ads"]
        assert graph.complete_count("cmp-1") == 3
        assert len(graph.parents("cmp-1")) == 3

    def test_only_orphans_this_job_made_are_deleted(self, make_ctx, graph):
        graph.seed_pair("cmp-1", "Base - Copy 1")
        named = graph.seed_orphan("cmp-1", "Base - Copy 2")
        tracked = graph.seed_orphan("cmp-1", "Renamed by hand")
        foreign = graph.seed_orphan("cmp-1", "Draft from the ads manager")
        older = graph.seed_orphan("cmp-1", "Base - Copy 9")

        ctx = make_ctx()
        result = DeficitRecoveryController(FAST_RECOVERY, backoff=FAST_BACKOFF).reconcile(
            ctx, 2, first_copy_number=1, next_copy_number=3, own_parent_ids=[tracked],
        )

        assert sorted(result.orphans_deleted) == sorted([named, tracked])
        assert result.foreign_orphans == [foreign, older]
        assert foreign in graph.parents("cmp-1")
        assert older in graph.parents("cmp-1")
        assert result.to_dict()["foreign_orphans"] == [foreign, older]

    def test_without_ownership_hints_no_orphan_is_deleted(self, make_ctx, graph):
        orphan = graph.seed_orphan("cmp-1", "Base - Copy 1")
        result = DeficitRecoveryController(FAST_RECOVERY, backoff=FAST_BACKOFF).reconcile(
            make_ctx(), 0, next_copy_number=2,
        )
        assert result.orphans_deleted == []
        assert result.foreign_orphans == [orphan]
        assert graph.deleted == []

    def test_failed_first_count_ends_with_deficit(self, make_ctx, graph, ledger):
        graph.count_errors = [_unavailable() for _ in range(3)]
        result = DeficitRecoveryController(FAST_RECOVERY, backoff=FAST_BACKOFF).reconcile(
            make_ctx(), 4, next_copy_number=5, expected_actual=4,
        )
        assert result.status == "completed_with_deficit"
        assert result.count_failed
        assert result.actual == 4
        assert result.attempts_used == 0
        assert graph.creates == []
        [record] = ledger.query(job_id="job-1", stage="count_query")
        assert record.entity_kind == "container"
        assert record.classification == "transient"

    def test_failed_recount_keeps_best_known_actual(self, make_ctx, graph, ledger):
        graph.seed_pair("cmp-1")
        graph.count_errors = [None] + [_unavailable() for _ in range(3)]
        result = DeficitRecoveryController(FAST_RECOVERY, backoff=FAST_BACKOFF).reconcile(
            make_ctx(), 3, next_copy_number=2,
        )
        assert result.count_failed
        assert result.status == "completed_with_deficit"
        assert result.actual == 3
        assert graph.complete_count("cmp-1") == 3
        assert len(ledger.query(job_id="job-1", stage="count_query")) == 1
        assert result.to_dict()["count_failed"] is True

    def test_permanent_error_stops_recovery(self, make_ctx, graph):
        graph.create_errors["adsets"] = [graph_error(100, "Invalid targeting spec")]
        result = DeficitRecoveryController(FAST_RECOVERY, backoff=FAST_BACKOFF).reconcile(make_ctx(), 2, next_copy_number=1)
        assert result.stopped_on_permanent
        assert result.attempts_used == 1
        assert result.status == "completed_with_deficit"

    def test_excess_is_trimmed_from_job_copies_only(self, make_ctx, graph):
        source, _ = graph.seed_pair("cmp-1", "Source")
        created = []
        for n in (1, 2, 3):
            parent_id, child_id = graph.seed_pair("cmp-1", f"Base - Copy {n}")
            created.append({"copy_number": n, "parent_id": parent_id, "child_id": child_id})

        policy = RecoveryPolicy(max_attempts=5, inter_request_delay_s=0, settle_delay_s=0, trim_excess=True)
        ctx = make_ctx(make_template(source_parent_id=source))
        result = DeficitRecoveryController(policy, backoff=FAST_BACKOFF).reconcile(
            ctx, 2, next_copy_number=4, created_refs=created,
        )
        assert result.trimmed == [created[2]["parent_id"], created[1]["parent_id"]]
        assert result.actual == 2
        assert source in graph.parents("cmp-1")

    def test_excess_without_job_copies_is_left_alone(self, make_ctx, graph):
        for i in range(3):
            graph.seed_pair("cmp-1", f"Copy {i}")
        policy = RecoveryPolicy(settle_delay_s=0, trim_excess=True)
        result = DeficitRecoveryController(policy, backoff=FAST_BACKOFF).reconcile(make_ctx(), 1, next_copy_number=1)
        assert result.trimmed == []
        assert result.actual == 3
        assert result.status == "completed"

    def test_settle_delay_before_first_count(self, make_ctx, graph, clock):
        policy = RecoveryPolicy(settle_delay_s=3, inter_request_delay_s=0)
        DeficitRecoveryController(policy, backoff=FAST_BACKOFF).reconcile(make_ctx(), 0, next_copy_number=1)
        assert clock.sleeps[0] == 3

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("RECOVERY_MAX_ATTEMPTS", "4")
        monkeypatch.setenv("RECOVERY_TRIM_EXCESS", "yes")
        policy = RecoveryPolicy.from_env()
        assert policy.max_attempts == 4
        assert policy.trim_excess is True
        assert policy.cleanup_orphans is True
