from __future__ import annotations

import json
import re
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from batch_planner import BatchDispatcher  # noqa: E402
from credential_pool import Credential, CredentialPool  # noqa: E402
from deficit_recovery import DeficitRecoveryController, RecoveryPolicy  # noqa: E402
from dispatch_context import ReplicationContext  # noqa: E402
from error_policy import BackoffPolicy  # noqa: E402
from failure_ledger import FailureLedger  # noqa: E402
from meta_graph import MetaAPIError  # noqa: E402
from replication import ReplicationEngine  # noqa: E402
from replicator import EngineSettings, build_service  # noqa: E402
from templates import ReplicationTemplate  # noqa: E402

FAST_BACKOFF = BackoffPolicy(max_attempts=3, base_delay_s=0.01, multiplier=1, max_delay_s=0.01, jitter_s=0)
FAST_RECOVERY = RecoveryPolicy(max_attempts=10, inter_request_delay_s=0, settle_delay_s=0)

_REF = re.compile(r"\{result=([^:]+):\$\.id\}")


def graph_error(code: int = 100, message: str = "Invalid parameter", *, http_status: int = 400, **extra: Any) -> MetaAPIError:
    return MetaAPIError(
        f"Meta API error ({http_status}): {message}",
        http_status=http_status,
        error={"code": code, "message": message, **extra},
    )


# -----------------------------
# Fake Graph API
# -----------------------------

class FakeGraph:
    """In-memory Graph API: campaigns -> adsets -> ads, with scripted failures.

    - create_errors[edge]: errors raised (one per call) by single creates on that edge
    - fail_accounts[account]: every create under that account fails with this error
    - batch_errors: whole-call failures, one popped per batch call
    - slot_errors: one {slot: graph error | "not_executed"} dict popped per batch call
    - count_errors: one entry popped per container count query (None lets it through)
    - on_create(edge, object_id): called after every successful single create
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._seq = 1000
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.parents_by_container: Dict[str, List[str]] = {}
        self.children_by_parent: Dict[str, List[str]] = {}

        self.create_errors: Dict[str, List[Exception]] = {}
        self.fail_accounts: Dict[str, MetaAPIError] = {}
        self.batch_errors: List[Exception] = []
        self.slot_errors: List[Dict[int, Any]] = []
        self.count_errors: List[Optional[Exception]] = []
        self.on_create: Optional[Callable[[str, str], None]] = None

        self.creates: List[Tuple[str, Dict[str, Any]]] = []
        self.batch_calls: List[List[Dict[str, Any]]] = []
        self.deleted: List[str] = []
        self.count_queries = 0
        self.last_usage: Optional[Dict[str, Any]] = None

    # Helpers used by tests

    def _new_id(self) -> str:
        self._seq += 1
        return str(self._seq)

    def seed_pair(self, container_id: str, name: str = "Base", *, account: str = "act_1", creative_id: str = "cr-1") -> Tuple[str, str]:
        with self._lock:
            parent_id = self._create("adsets", {"name": name, "campaign_id": container_id}, account)
            child_id = self._create("ads", {"name": f"{name} ad", "adset_id": parent_id, "creative": {"creative_id": creative_id}}, account)
            return parent_id, child_id

    def seed_orphan(self, container_id: str, name: str = "Orphan", *, account: str = "act_1") -> str:
        with self._lock:
            return self._create("adsets", {"name": name, "campaign_id": container_id}, account)

    def complete_count(self, container_id: str) -> int:
        with self._lock:
            return sum(1 for p in self.parents_by_container.get(container_id, []) if self.children_by_parent.get(p))

    def parents(self, container_id: str) -> List[str]:
        with self._lock:
            return list(self.parents_by_container.get(container_id, []))

    def containers(self, account: str) -> List[str]:
        with self._lock:
            return [oid for oid, o in self.objects.items() if o["edge"] == "campaigns" and o["account"] == account]

    # Object model

    def _create(self, edge: str, fields: Dict[str, Any], account: str) -> str:
        if account in self.fail_accounts:
            raise self.fail_accounts[account]
        if edge == "ads":
            parent_id = str(fields.get("adset_id") or "")
            if parent_id not in self.children_by_parent:
                raise graph_error(100, f"Invalid ad set id {parent_id!r}")
        object_id = self._new_id()
        self.objects[object_id] = {"edge": edge, "account": account, "fields": dict(fields)}
        if edge == "adsets":
            self.parents_by_container.setdefault(str(fields.get("campaign_id")), []).append(object_id)
            self.children_by_parent[object_id] = []
        elif edge == "ads":
            self.children_by_parent[str(fields["adset_id"])].append(object_id)
        return object_id

    # GraphClient surface

    def create_object(self, path: str, fields: Dict[str, Any]) -> str:
        account, edge = path.strip("/").split("/")[0], path.strip("/").split("/")[-1]
        with self._lock:
            self.creates.append((edge, dict(fields)))
            queued = self.create_errors.get(edge)
            if queued:
                raise queued.pop(0)
            object_id = self._create(edge, fields, account)
        if self.on_create is not None:
            self.on_create(edge, object_id)
        return object_id

    def batch(self, requests_: List[Dict[str, Any]]) -> List[Any]:
        with self._lock:
            self.batch_calls.append(list(requests_))
            if self.batch_errors:
                raise self.batch_errors.pop(0)
            scripted = self.slot_errors.pop(0) if self.slot_errors else {}
            named: Dict[str, Optional[str]] = {}
            out: List[Any] = []
            for slot, op in enumerate(requests_):
                parts = op["relative_url"].strip("/").split("/")
                account, edge = parts[0], parts[-1]
                fields: Dict[str, Any] = dict(parse_qsl(op.get("body", ""), keep_blank_values=True))
                err = scripted.get(slot)
                if err == "not_executed":
                    out.append(None)
                    if op.get("name"):
                        named[op["name"]] = None
                    continue
                if err is None:
                    for k, v in list(fields.items()):
                        m = _REF.fullmatch(v)
                        if m:
                            ref = named.get(m.group(1))
                            if ref is None:
                                err = {"code": 100, "message": f"Dependent request {m.group(1)} failed"}
                                break
                            fields[k] = ref
                object_id = None
                if err is None:
                    try:
                        object_id = self._create(edge, fields, account)
                    except MetaAPIError as e:
                        err = e.error
                if err is not None:
                    out.append({"code": 400, "body": json.dumps({"error": err})})
                else:
                    out.append({"code": 200, "body": json.dumps({"id": object_id})})
                if op.get("name"):
                    named[op["name"]] = object_id
            return out

    def list_edge_page(
        self, object_id: str, edge: str, *, fields: str, limit: int = 200, after: Optional[str] = None
    ) -> Tuple[List[dict], Optional[str]]:
        with self._lock:
            if object_id in self.children_by_parent:
                rows = []
                for cid in self.children_by_parent[object_id]:
                    creative = self.objects[cid]["fields"].get("creative")
                    if isinstance(creative, str):
                        creative = json.loads(creative)
                    rows.append({
                        "id": cid,
                        "name": self.objects[cid]["fields"].get("name"),
                        "creative": {"id": (creative or {}).get("creative_id")},
                    })
            else:
                self.count_queries += 1
                if self.count_errors:
                    err = self.count_errors.pop(0)
                    if err is not None:
                        raise err
                # fields look like "id,name,<child_edge>.limit(1){id}"
                child_key = fields.split(",")[-1].split(".")[0]
                rows = []
                for pid in self.parents_by_container.get(object_id, []):
                    row: Dict[str, Any] = {"id": pid, "name": self.objects[pid]["fields"].get("name")}
                    kids = self.children_by_parent.get(pid) or []
                    if kids:
                        row[child_key] = {"data": [{"id": kids[0]}]}
                    rows.append(row)
            start = int(after or 0)
            page = rows[start:start + limit]
            cursor = str(start + limit) if start + limit < len(rows) else None
            return page, cursor

    def get_object(self, object_id: str, fields: str) -> dict:
        with self._lock:
            obj = self.objects.get(object_id)
            if obj is None:
                raise graph_error(100, f"Unsupported get request. Object {object_id} does not exist")
            return {"id": object_id, **obj["fields"]}

    def delete_object(self, object_id: str) -> dict:
        with self._lock:
            obj = self.objects.pop(object_id, None)
            if obj is None:
                raise graph_error(100, f"Object {object_id} does not exist")
            for ids in self.parents_by_container.values():
                if object_id in ids:
                    ids.remove(object_id)
            for cid in self.children_by_parent.pop(object_id, []):
                self.objects.pop(cid, None)
            self.deleted.append(object_id)
            return {"success": True}


# -----------------------------
# Clock / progress
# -----------------------------

class ManualClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.sleeps: List[float] = []

    def __call__(self) -> datetime:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingProgress:
    def __init__(self) -> None:
        self.operations: List[str] = []
        self.created: List[Tuple[int, Optional[str], Optional[str]]] = []
        self.failures: List[Any] = []
        self.orphans: List[str] = []
        self.actuals: List[int] = []
        self.checkpoints: List[Dict[str, Any]] = []

    def set_operation(self, text: str) -> None:
        self.operations.append(text)

    def add_created(self, copy_number: int, parent_id: Optional[str], child_id: Optional[str]) -> None:
        self.created.append((copy_number, parent_id, child_id))

    def add_failure(self, record: Any) -> None:
        self.failures.append(record)

    def add_orphan(self, parent_id: str) -> None:
        self.orphans.append(parent_id)

    def set_actual(self, actual: int) -> None:
        self.actuals.append(actual)

    def checkpoint(self, **fields: Any) -> None:
        self.checkpoints.append(fields)


# -----------------------------
# Builders
# -----------------------------

def make_template(**overrides: Any) -> ReplicationTemplate:
    data: Dict[str, Any] = {
        "ad_account_id": "act_1",
        "container_id": "cmp-1",
        "parent_fields": {
            "name": "Base",
            "daily_budget": 1000,
            "promoted_object": {"page_id": "pg-1", "pixel_id": "px-1"},
        },
        "child_fields": {"name": "Ad"},
        "creative_id": "cr-1",
    }
    data.update(overrides)
    return ReplicationTemplate(**data)


def deploy_template(**overrides: Any) -> ReplicationTemplate:
    data: Dict[str, Any] = {
        "container_id": None,
        "container_fields": {"name": "Launch", "objective": "OUTCOME_SALES", "status": "PAUSED"},
    }
    data.update(overrides)
    return make_template(**data)


def fast_settings(**overrides: Any) -> EngineSettings:
    data: Dict[str, Any] = {
        "inter_group_delay_s": 0,
        "backoff": FAST_BACKOFF,
        "recovery": FAST_RECOVERY,
        "fanout_sequential_delay_s": 0,
        "job_workers": 2,
    }
    data.update(overrides)
    return EngineSettings(**data)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def pool(clock) -> CredentialPool:
    p = CredentialPool(window_s=3600, clock=clock)
    p.register_credential(Credential("cred-a", "secret-a", "biz-1", hourly_capacity=100000))
    return p


@pytest.fixture
def ledger(clock) -> FailureLedger:
    return FailureLedger(clock=clock)


@pytest.fixture
def make_ctx(pool, ledger, graph, clock):
    def _make(template: Optional[ReplicationTemplate] = None, *, container_id: Optional[str] = None, progress: Any = None) -> ReplicationContext:
        template = template or make_template()
        return ReplicationContext(
            job_id="job-1",
            scope_id=template.ad_account_id,
            pool=pool,
            client_factory=lambda credential: graph,
            ledger=ledger,
            template=template,
            container_id=container_id or template.container_id,
            progress=progress if progress is not None else RecordingProgress(),
            sleep=clock.sleep,
        )

    return _make


@pytest.fixture
def engine(pool, ledger, graph, clock) -> ReplicationEngine:
    return ReplicationEngine(
        pool,
        ledger,
        lambda credential: graph,
        dispatcher=BatchDispatcher(FAST_BACKOFF),
        recovery=DeficitRecoveryController(FAST_RECOVERY, backoff=FAST_BACKOFF),
        backoff=FAST_BACKOFF,
        max_ops_per_call=50,
        inter_group_delay_s=0,
        sleep=clock.sleep,
    )


@pytest.fixture
def service(graph, clock, monkeypatch):
    for name in ("DEFAULT_PAGE_ID", "DEFAULT_PIXEL_ID", "DEFAULT_CREDENTIAL_ID"):
        monkeypatch.delenv(name, raising=False)
    svc = build_service(fast_settings(), client_factory=lambda credential: graph, sleep=clock.sleep, clock=clock)
    svc.register_credential("cred-a", "secret-a", "biz-1", 100000)
    yield svc
    svc.tracker.shutdown(wait=True)
