from __future__ import annotations

import json
from urllib.parse import parse_qsl

import pytest

from batch_planner import BatchDispatcher, pairs_per_call, parse_batch_response, plan
from error_policy import BackoffPolicy, ErrorKind
from meta_graph import MetaTransportError

from conftest import FAST_BACKOFF, graph_error, make_template


def _ok(object_id):
    return {"code": 200, "body": json.dumps({"id": object_id})}


def _err(code=100, message="Invalid parameter"):
    return {"code": 400, "body": json.dumps({"error": {"code": code, "message": message}})}


class TestPlan:
    def test_49_copies_at_25_pairs_per_call(self):
        groups = plan(make_template(), 49, 50, container_id="cmp-1")
        assert len(groups) == 2
        assert [g.pairs for g in groups] == [25, 24]
        assert groups[1].copy_numbers[0] == 26
        assert groups[1].copy_numbers[-1] == 49

    def test_slot_layout_and_references(self):
        group = plan(make_template(), 2, 50, container_id="cmp-1", start_copy_number=5)[0]
        wire = group.to_wire()
        assert [op.get("name") for op in wire] == ["op-0", None, "op-2", None]
        assert wire[0]["omit_response_on_success"] is False

        parent = dict(parse_qsl(wire[0]["body"]))
        child = dict(parse_qsl(wire[1]["body"]))
        second_child = dict(parse_qsl(wire[3]["body"]))
        assert wire[0]["relative_url"] == "act_1/adsets"
        assert parent["campaign_id"] == "cmp-1"
        assert parent["name"] == "Base - Copy 5"
        assert child["adset_id"] == "{result=op-0:$.id}"
        assert second_child["adset_id"] == "{result=op-2:$.id}"
        assert json.loads(child["creative"]) == {"creative_id": "cr-1"}

    def test_zero_copies_plans_nothing(self):
        assert plan(make_template(), 0, container_id="cmp-1") == []

    def test_invalid_sizes(self):
        with pytest.raises(ValueError):
            pairs_per_call(1)
        with pytest.raises(ValueError):
            plan(make_template(), -1, container_id="cmp-1")


class TestParse:
    def test_all_pairs_complete(self):
        group = plan(make_template(), 2, container_id="cmp-1")[0]
        out = parse_batch_response(group, [_ok("p1"), _ok("c1"), _ok("p2"), _ok("c2")])
        assert [(o.status, o.parent_id, o.child_id) for o in out] == [
            ("complete", "p1", "c1"),
            ("complete", "p2", "c2"),
        ]

    def test_interleaved_errors_stay_with_their_pair(self):
        group = plan(make_template(), 4, container_id="cmp-1")[0]
        raw = [
            _ok("p1"), _ok("c1"),
            _ok("p2"), _err(100, "Invalid creative"),
            _err(100, "Invalid targeting"), _err(100, "Dependent request op-4 failed"),
            _ok("p4"), _ok("c4"),
        ]
        out = parse_batch_response(group, raw)
        assert len(out) == 4
        assert [o.status for o in out] == ["complete", "orphan_parent", "failed", "complete"]
        assert out[1].parent_id == "p2"
        assert out[1].error_kind == ErrorKind.PERMANENT
        assert out[2].error["meta_error"]["message"] == "Invalid targeting"
        assert (out[3].parent_id, out[3].child_id) == ("p4", "c4")

    def test_missing_and_null_entries_are_transient(self):
        group = plan(make_template(), 2, container_id="cmp-1")[0]
        out = parse_batch_response(group, [_ok("p1"), None])
        assert out[0].status == "orphan_parent"
        assert out[0].error_kind == ErrorKind.TRANSIENT
        assert out[1].status == "failed"
        assert out[1].error_kind == ErrorKind.TRANSIENT

    def test_throttled_sub_request_is_transient(self):
        group = plan(make_template(), 1, container_id="cmp-1")[0]
        out = parse_batch_response(group, [_err(613, "Calls within one hour exceeded"), _err(100)])
        assert out[0].error_kind == ErrorKind.TRANSIENT

    def test_child_success_implies_parent_exists(self):
        group = plan(make_template(), 1, container_id="cmp-1")[0]
        out = parse_batch_response(group, [None, _ok("c1")])
        assert out[0].complete
        assert out[0].inferred


class TestDispatch:
    def test_creates_pairs_and_reports_progress(self, make_ctx, graph):
        ctx = make_ctx()
        group = plan(ctx.template, 3, container_id="cmp-1")[0]
        result = BatchDispatcher(FAST_BACKOFF).dispatch(group, ctx)
        assert result.completed == 3
        assert result.error_kind is None
        assert graph.complete_count("cmp-1") == 3
        assert [c[0] for c in ctx.progress.created] == [1, 2, 3]

    def test_partial_group_records_each_failure(self, make_ctx, graph, ledger):
        ctx = make_ctx()
        graph.slot_errors.append({3: {"code": 100, "message": "Invalid ad"}, 4: {"code": 100, "message": "Invalid ad set"}})
        group = plan(ctx.template, 3, container_id="cmp-1")[0]
        result = BatchDispatcher(FAST_BACKOFF).dispatch(group, ctx)

        assert result.completed == 1
        assert result.error_kind == ErrorKind.PARTIAL_BATCH
        assert len(ctx.progress.orphans) == 1
        records = ledger.query(job_id="job-1")
        assert sorted(r.entity_kind for r in records) == ["pair", "parent"]
        pair = next(r for r in records if r.entity_kind == "pair")
        assert pair.error_payload["partial"] is True
        assert pair.copy_number == 2

    def test_transport_failure_resends_the_whole_group(self, make_ctx, graph, clock):
        ctx = make_ctx()
        graph.batch_errors.append(MetaTransportError("connection reset"))
        group = plan(ctx.template, 2, container_id="cmp-1")[0]
        result = BatchDispatcher(FAST_BACKOFF).dispatch(group, ctx)
        assert result.attempts == 2
        assert result.completed == 2
        assert len(graph.batch_calls) == 2
        assert clock.sleeps

    def test_permanent_group_failure_fails_every_pair(self, make_ctx, graph, ledger):
        ctx = make_ctx()
        graph.batch_errors.append(graph_error(190, "Invalid OAuth access token"))
        group = plan(ctx.template, 2, container_id="cmp-1")[0]
        result = BatchDispatcher(BackoffPolicy(max_attempts=3, jitter_s=0)).dispatch(group, ctx)
        assert result.completed == 0
        assert result.error_kind == ErrorKind.PERMANENT
        assert len(graph.batch_calls) == 1
        [record] = ledger.query(job_id="job-1")
        assert record.entity_kind == "group"
        assert record.error_payload["copy_numbers"] == [1, 2]

    def test_usage_is_settled_against_the_pool(self, make_ctx, pool):
        ctx = make_ctx()
        group = plan(ctx.template, 2, container_id="cmp-1")[0]
        BatchDispatcher(FAST_BACKOFF).dispatch(group, ctx)
        assert pool.snapshot()[0]["consumed"] == group.size
