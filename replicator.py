"""
Bulk replication engine for Meta Ads (Python)
=============================================

Creates many structurally identical copies of one ad set + ad template against
the rate-limited Graph API, spreads calls over a pool of system-user
credentials and reconciles the result against what actually exists.

This module wires the components together (settings, stores, service) and
exposes the operator CLI:

- register / suspend credentials and register ad accounts (external scopes)
- inspect quota windows
- run a replication request synchronously and print the job status
- inspect job status and the failure ledger
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from dotenv import load_dotenv

from batch_planner import BatchDispatcher
from credential_pool import Credential, CredentialPool, ExternalScope
from deficit_recovery import DeficitRecoveryController, RecoveryPolicy
from error_policy import BackoffPolicy, DuplicateRegistrationError
from failure_ledger import FailureLedger
from fanout import FanoutCoordinator
from job_tracker import JobProgress, JobTracker, ReplicationJob, estimate_duration_s
from meta_graph import GraphClient, MetaAPIError, MetaConfig, normalize_ad_account_id
from replication import ReplicationEngine
from scope_resolution import ActiveSelection, stored_defaults_from_env
from templates import ReplicationRequest

logger = logging.getLogger(__name__)

BOOTSTRAP_CREDENTIAL_ID = "bootstrap"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Settings
# -----------------------------

@dataclass(frozen=True)
class EngineSettings:
    max_ops_per_call: int = 50
    inter_group_delay_s: float = 2.0
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    recovery: RecoveryPolicy = field(default_factory=RecoveryPolicy)
    min_success_rate: float = 0.5
    fanout_max_parallel: int = 3
    fanout_sequential_delay_s: float = 30.0
    job_workers: int = 4
    job_execution: str = "inline"
    job_lease_s: int = 120
    quota_window_s: int = 3600
    default_credential_capacity: int = 200
    state_db_path: str = ".replication_state.db"
    worker_poll_s: int = 10

    @staticmethod
    def from_env() -> "EngineSettings":
        """Loads settings from environment variables (optionally via .env)."""
        load_dotenv(override=False)
        try:
            settings = EngineSettings(
                max_ops_per_call=int(os.getenv("REPLICATION_MAX_OPS_PER_CALL", "50")),
                inter_group_delay_s=float(os.getenv("REPLICATION_INTER_GROUP_DELAY_S", "2")),
                backoff=BackoffPolicy.from_env("RETRY"),
                recovery=RecoveryPolicy.from_env(),
                min_success_rate=float(os.getenv("FALLBACK_MIN_SUCCESS_RATE", "0.5")),
                fanout_max_parallel=int(os.getenv("FANOUT_MAX_PARALLEL", "3")),
                fanout_sequential_delay_s=float(os.getenv("FANOUT_SEQUENTIAL_DELAY_S", "30")),
                job_workers=int(os.getenv("JOB_WORKERS", "4")),
                job_execution=(os.getenv("JOB_EXECUTION") or "inline").strip().lower(),
                job_lease_s=int(os.getenv("JOB_LEASE_S", "120")),
                quota_window_s=int(os.getenv("QUOTA_WINDOW_S", "3600")),
                default_credential_capacity=int(os.getenv("DEFAULT_CREDENTIAL_CAPACITY", "200")),
                state_db_path=(os.getenv("STATE_DB_PATH") or ".replication_state.db").strip() or ".replication_state.db",
                worker_poll_s=int(os.getenv("WORKER_POLL_SECONDS", "10")),
            )
        except ValueError as e:
            raise ValueError(f"Invalid engine setting: {e}") from e
        if settings.job_execution not in {"inline", "worker"}:
            raise ValueError("JOB_EXECUTION must be 'inline' or 'worker'")
        if settings.max_ops_per_call < 2:
            raise ValueError("REPLICATION_MAX_OPS_PER_CALL must be >= 2")
        return settings


def build_state_store(db_path: str):
    """Factory: SQLite (default) or Postgres.

    Enable the Postgres store by setting:
      STATE_STORE_SOURCE=db
      DATABASE_URL=...
    """
    source = (os.getenv("STATE_STORE_SOURCE") or "").strip().lower()
    database_url = (os.getenv("DATABASE_URL") or "").strip()
    if source == "db" and database_url:
        from state_store_pg import StateStorePG

        return StateStorePG(database_url)

    from state_store import StateStore

    return StateStore(db_path)


# -----------------------------
# Service
# -----------------------------

class ReplicationService:
    """Everything the HTTP layer, worker and CLI need, behind one object."""

    def __init__(
        self,
        *,
        settings: EngineSettings,
        pool: CredentialPool,
        ledger: FailureLedger,
        tracker: JobTracker,
        engine: ReplicationEngine,
        fanout: FanoutCoordinator,
        selection: ActiveSelection,
    ):
        self.settings = settings
        self.pool = pool
        self.ledger = ledger
        self.tracker = tracker
        self.engine = engine
        self.fanout = fanout
        self.selection = selection

    # Jobs

    def _prepare(self, request: ReplicationRequest) -> Tuple[ReplicationRequest, Dict[str, Any]]:
        form = {"page_id": request.page_id, "pixel_id": request.pixel_id, "credential_id": request.credential_id}
        resolved = self.selection.resolve_all(form)
        update: Dict[str, Any] = {"credential_id": resolved["credential_id"].value}
        if request.template is not None:
            update["template"] = request.template.with_promoted_object(
                page_id=resolved["page_id"].value, pixel_id=resolved["pixel_id"].value,
            )
        request = request.model_copy(update=update)

        targets = len(request.targets or [])
        copies = request.copies_to_create if request.copies_to_create is not None else request.total_desired_count
        meta = {
            "kind": request.kind,
            "target_ref": None if targets else (request.template.ad_account_id if request.template else request.ad_account_id),
            "target_count": targets if targets else request.copies_to_create,
            "estimated_duration_s": estimate_duration_s(
                copies or 0,
                request.strategy,
                max_ops_per_call=self.settings.max_ops_per_call,
                inter_group_delay_s=self.settings.inter_group_delay_s,
                recovery_delay_s=self.settings.recovery.inter_request_delay_s,
                targets=max(1, targets),
                sequential_targets=request.mode == "sequential",
                target_delay_s=self.settings.fanout_sequential_delay_s,
            ),
            "selection": {k: {"value": r.value, "source": r.source} for k, r in resolved.items()},
        }
        return request, meta

    def start(self, request: ReplicationRequest) -> Dict[str, Any]:
        request, meta = self._prepare(request)
        accepted = self.tracker.start(
            meta["kind"],
            request.model_dump(mode="json"),
            target_ref=meta["target_ref"],
            target_count=meta["target_count"],
            estimated_duration_s=meta["estimated_duration_s"],
        )
        return {**accepted, "selection": meta["selection"]}

    def run_now(self, request: ReplicationRequest) -> Dict[str, Any]:
        """Accept and run on the calling thread; returns the final status."""
        request, meta = self._prepare(request)
        job = self.tracker.create_job(
            meta["kind"],
            request.model_dump(mode="json"),
            target_ref=meta["target_ref"],
            target_count=meta["target_count"],
            estimated_duration_s=meta["estimated_duration_s"],
        )
        self.tracker.run_inline(job)
        return self.tracker.status(job.job_id)

    def run_job(self, job: ReplicationJob, progress: JobProgress, cancel_event: threading.Event) -> Dict[str, Any]:
        """JobTracker runner: fan-out for multi-target deploys, engine otherwise."""
        request = ReplicationRequest.model_validate(job.request)
        if request.targets:
            out = self.fanout.deploy(request, deployment_job=job, progress=progress, cancel_event=cancel_event)
            job_status = "completed" if out["status"] == "completed" else "completed_with_deficit"
            return {**out, "deployment_status": out["status"], "status": job_status}
        return self.engine.execute(job, progress, cancel_event)

    def status(self, job_id: str) -> Dict[str, Any]:
        return self.tracker.status(job_id)

    def cancel(self, job_id: str) -> Dict[str, Any]:
        return self.tracker.cancel(job_id)

    # Administration

    def register_credential(
        self, credential_id: str, secret: str, owner_scope: str, hourly_capacity: Optional[int] = None
    ) -> Dict[str, Any]:
        cred = self.pool.register_credential(Credential(
            credential_id=credential_id,
            secret=secret,
            owner_scope=owner_scope,
            hourly_capacity=int(hourly_capacity or self.settings.default_credential_capacity),
        ))
        return cred.public()

    def register_scope(self, scope_id: str, owner_scope: str, name: str = "") -> Dict[str, Any]:
        scope = self.pool.register_external_scope(
            ExternalScope(scope_id=normalize_ad_account_id(scope_id), owner_scope=owner_scope, name=name)
        )
        return {"scope_id": scope.scope_id, "owner_scope": scope.owner_scope, "name": scope.name, "status": scope.status}

    def set_credential_status(self, credential_id: str, status: str) -> Dict[str, Any]:
        return self.pool.set_status(credential_id, status).public()

    def quota(self) -> List[Dict[str, Any]]:
        return self.pool.snapshot()

    def failures(self, *, limit: int = 200, **filters: Any) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.ledger.query(limit=limit, **filters)]


def graph_client_factory(meta_cfg: MetaConfig) -> Callable[[Credential], GraphClient]:
    def factory(credential: Credential) -> GraphClient:
        return GraphClient(meta_cfg, credential.secret)

    return factory


def build_service(
    settings: Optional[EngineSettings] = None,
    *,
    store: Any = None,
    meta_cfg: Optional[MetaConfig] = None,
    client_factory: Optional[Callable[[Credential], Any]] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], datetime] = utcnow,
    worker_id: Optional[str] = None,
) -> ReplicationService:
    settings = settings or EngineSettings.from_env()
    if client_factory is None:
        meta_cfg = meta_cfg or MetaConfig.from_env()
        client_factory = graph_client_factory(meta_cfg)

    pool = CredentialPool(store, window_s=settings.quota_window_s, clock=clock)
    if meta_cfg is not None and meta_cfg.access_token and pool.get_credential(BOOTSTRAP_CREDENTIAL_ID) is None:
        try:
            pool.register_credential(Credential(
                credential_id=BOOTSTRAP_CREDENTIAL_ID,
                secret=meta_cfg.access_token,
                owner_scope="default",
                hourly_capacity=settings.default_credential_capacity,
            ))
        except DuplicateRegistrationError:
            # Another process registered it between our load and insert.
            pass

    ledger = FailureLedger(store, clock=clock)
    engine = ReplicationEngine(
        pool,
        ledger,
        client_factory,
        dispatcher=BatchDispatcher(settings.backoff),
        recovery=DeficitRecoveryController(settings.recovery, backoff=settings.backoff),
        backoff=settings.backoff,
        max_ops_per_call=settings.max_ops_per_call,
        inter_group_delay_s=settings.inter_group_delay_s,
        min_success_rate=settings.min_success_rate,
        sleep=sleep,
    )
    tracker = JobTracker(
        store=store,
        max_workers=settings.job_workers,
        execution=settings.job_execution,
        lease_s=settings.job_lease_s,
        worker_id=worker_id,
        clock=clock,
    )
    fanout = FanoutCoordinator(
        tracker, pool, ledger,
        max_parallel=settings.fanout_max_parallel,
        sequential_delay_s=settings.fanout_sequential_delay_s,
        sleep=sleep,
    )
    service = ReplicationService(
        settings=settings,
        pool=pool,
        ledger=ledger,
        tracker=tracker,
        engine=engine,
        fanout=fanout,
        selection=ActiveSelection(stored_defaults_from_env()),
    )
    tracker.runner = service.run_job
    return service


# -----------------------------
# CLI
# -----------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="replicator.py",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=textwrap.dedent(
            """
            Meta Ads bulk replication engine

            Examples:
              # 1) Register a system user token for a business and one of its ad accounts
              python replicator.py register-credential --id su-1 --owner-scope biz-1 --secret-env SU1_TOKEN
              python replicator.py register-scope --id act_123 --owner-scope biz-1

              # 2) Inspect quota windows
              python replicator.py quota

              # 3) Replicate from a request JSON and wait for the result
              python replicator.py replicate --request examples/multiply.json

              # 4) Inspect a job and its failures
              python replicator.py status --job-id <JOB_ID>
              python replicator.py failures --job-id <JOB_ID> --stats
            """
        ),
    )

    p.add_argument("--env", default=".env", help="Path to .env file (default: .env).")
    p.add_argument("--store", default=None, help="SQLite state path (default: STATE_DB_PATH or .replication_state.db).")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")

    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("register-credential", help="Add a system user credential to the pool.")
    sp.add_argument("--id", required=True)
    sp.add_argument("--owner-scope", required=True, help="Business the credential belongs to.")
    g = sp.add_mutually_exclusive_group(required=True)
    g.add_argument("--secret", help="Access token (prefer --secret-env).")
    g.add_argument("--secret-env", help="Name of the env var holding the access token.")
    sp.add_argument("--capacity", type=int, default=None, help="Hourly call capacity.")

    sp = sub.add_parser("register-scope", help="Register an ad account and the business that owns it.")
    sp.add_argument("--id", required=True)
    sp.add_argument("--owner-scope", required=True)
    sp.add_argument("--name", default="")

    sp = sub.add_parser("suspend-credential", help="Suspend (or re-activate) a credential.")
    sp.add_argument("--id", required=True)
    sp.add_argument("--activate", action="store_true")

    sub.add_parser("quota", help="Show consumed / headroom per credential.")

    sp = sub.add_parser("replicate", help="Run a replication request JSON synchronously.")
    sp.add_argument("--request", required=True)

    sp = sub.add_parser("status", help="Show a job's status.")
    sp.add_argument("--job-id", required=True)

    sp = sub.add_parser("failures", help="Query the failure ledger.")
    sp.add_argument("--job-id")
    sp.add_argument("--target")
    sp.add_argument("--stage")
    sp.add_argument("--classification", choices=["transient", "permanent"])
    sp.add_argument("--limit", type=int, default=50)
    sp.add_argument("--stats", action="store_true", help="Counts by stage and classification.")
    sp.add_argument("--purge-days", type=int, help="Delete records older than N days.")

    return p


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv or sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    env_path = Path(args.env)
    if env_path.exists():
        load_dotenv(env_path, override=False)

    try:
        settings = EngineSettings.from_env()
        needs_graph = args.cmd == "replicate"
        meta_cfg = MetaConfig.from_env() if needs_graph else None
        store = build_state_store(args.store or settings.state_db_path)
        service = build_service(
            settings,
            store=store,
            meta_cfg=meta_cfg,
            client_factory=None if needs_graph else (lambda credential: None),
        )
    except Exception as e:
        print(f"[CONFIG ERROR] {e}", file=sys.stderr)
        return 2

    try:
        if args.cmd == "register-credential":
            secret = args.secret or (os.getenv(args.secret_env) or "").strip()
            if not secret:
                print(f"[ERROR] env var {args.secret_env} is empty", file=sys.stderr)
                return 2
            out = service.register_credential(args.id, secret, args.owner_scope, args.capacity)
            print(json.dumps(out, indent=2))
            return 0

        if args.cmd == "register-scope":
            print(json.dumps(service.register_scope(args.id, args.owner_scope, args.name), indent=2))
            return 0

        if args.cmd == "suspend-credential":
            status = "active" if args.activate else "suspended"
            print(json.dumps(service.set_credential_status(args.id, status), indent=2))
            return 0

        if args.cmd == "quota":
            print(json.dumps(service.quota(), indent=2))
            return 0

        if args.cmd == "replicate":
            with open(args.request, "r", encoding="utf-8") as f:
                request = ReplicationRequest.model_validate(json.load(f))
            out = service.run_now(request)
            print(json.dumps(out, indent=2, ensure_ascii=False, default=str))
            return 0 if out.get("status") in {"completed", "completed_with_deficit"} else 1

        if args.cmd == "status":
            out = service.status(args.job_id)
            print(json.dumps(out, indent=2, ensure_ascii=False, default=str))
            return 0 if out.get("found") else 1

        if args.cmd == "failures":
            if args.purge_days is not None:
                print(json.dumps({"purged": service.ledger.purge_older_than(args.purge_days)}, indent=2))
                return 0
            if args.stats:
                print(json.dumps(service.ledger.stats(args.job_id), indent=2))
                return 0
            out = service.failures(
                job_id=args.job_id, target_ref=args.target, stage=args.stage,
                classification=args.classification, limit=args.limit,
            )
            print(json.dumps(out, indent=2, ensure_ascii=False, default=str))
            return 0

        print(f"Unknown command: {args.cmd}", file=sys.stderr)
        return 2

    except MetaAPIError as e:
        print("\n[MetaAPIError]", e, file=sys.stderr)
        if e.error:
            print(json.dumps(e.error, indent=2), file=sys.stderr)
        return 1
    except Exception as e:
        print("\n[ERROR]", e, file=sys.stderr)
        return 1
    finally:
        service.tracker.shutdown(wait=False)


if __name__ == "__main__":
    raise SystemExit(main())
