from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from credential_pool import Credential, ExternalScope, QuotaWindow
from error_policy import DuplicateRegistrationError
from failure_ledger import FailureRecord


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_iso(s: Any) -> datetime:
    try:
        dt = datetime.fromisoformat(str(s).strip().replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    except Exception:
        return datetime.now(timezone.utc)


def _loads(raw: Any) -> Any:
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    try:
        return json.loads(raw)
    except Exception:
        return {"_raw": raw}


_JOB_COLUMNS = "job_id, kind, parent_job_id, status, payload_json, cancel_requested, lease_owner, lease_expires_at, created_at, updated_at"


def _job_row(r: Any) -> Dict[str, Any]:
    job_id, kind, parent_job_id, status, payload_json, cancel_requested, lease_owner, lease_expires_at, created_at, updated_at = r
    return {
        "job_id": str(job_id),
        "kind": str(kind),
        "parent_job_id": parent_job_id,
        "status": str(status),
        "payload": _loads(payload_json) or {},
        "cancel_requested": bool(cancel_requested),
        "lease_owner": lease_owner,
        "lease_expires_at": lease_expires_at,
        "created_at": created_at,
        "updated_at": updated_at,
    }


def _failure_from_row(r: Any) -> FailureRecord:
    (record_id, job_id, target_ref, entity_kind, stage, error_kind, classification,
     parent_ref, copy_number, payload_json, created_at) = r
    return FailureRecord(
        record_id=str(record_id),
        job_id=job_id,
        target_ref=target_ref,
        entity_kind=str(entity_kind),
        stage=str(stage),
        error_kind=str(error_kind),
        classification=str(classification),
        parent_ref=parent_ref,
        copy_number=int(copy_number) if copy_number is not None else None,
        error_payload=_loads(payload_json) or {},
        created_at=created_at if isinstance(created_at, datetime) else _parse_iso(created_at),
    )


_FAILURE_COLUMNS = (
    "record_id, job_id, target_ref, entity_kind, stage, error_kind, classification, "
    "parent_ref, copy_number, payload_json, created_at"
)


class StateStore:
    """SQLite-backed durable state for the replication engine.

    Tables:
      - credentials / external_scopes  (pool registry)
      - quota_windows                  (consumed + reset time per credential)
      - replication_jobs               (job rows, leases, cancel flag)
      - failure_records                (failure ledger)

    Note on concurrency:
      - Job claims and quota window changes run inside BEGIN IMMEDIATE, which
        is enough for several worker processes sharing one file on one host.
      - update_job on a leased row only lands while the writer still holds
        the lease.
      - For multi-host deployments, prefer StateStorePG (STATE_STORE_SOURCE=db).
    """

    def __init__(self, db_path: str = ".replication_state.db"):
        self.db_path = db_path
        self._init()

    def _conn(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=30)

    def _init(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    credential_id TEXT PRIMARY KEY,
                    secret TEXT NOT NULL,
                    owner_scope TEXT NOT NULL,
                    hourly_capacity INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS external_scopes (
                    scope_id TEXT PRIMARY KEY,
                    owner_scope TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS quota_windows (
                    credential_id TEXT PRIMARY KEY,
                    consumed INTEGER NOT NULL,
                    resets_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS replication_jobs (
                    job_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    parent_job_id TEXT,
                    status TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    cancel_requested INTEGER NOT NULL DEFAULT 0,
                    lease_owner TEXT,
                    lease_expires_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_replication_jobs_claim ON replication_jobs(status, created_at)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_replication_jobs_parent ON replication_jobs(parent_job_id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS failure_records (
                    record_id TEXT PRIMARY KEY,
                    job_id TEXT,
                    target_ref TEXT,
                    entity_kind TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    error_kind TEXT NOT NULL,
                    classification TEXT NOT NULL,
                    parent_ref TEXT,
                    copy_number INTEGER,
                    payload_json TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_failure_records_job ON failure_records(job_id, created_at)"
            )
            conn.commit()

    # -----------------------------
    # Credentials / scopes
    # -----------------------------

    def insert_credential(self, c: Credential) -> None:
        try:
            with self._conn() as conn:
                conn.execute(
                    """
                    INSERT INTO credentials (credential_id, secret, owner_scope, hourly_capacity, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (c.credential_id, c.secret, c.owner_scope, int(c.hourly_capacity), c.status, _iso(datetime.now(timezone.utc))),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateRegistrationError(f"Credential {c.credential_id} already registered") from e

    def load_credentials(self) -> List[Credential]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT credential_id, secret, owner_scope, hourly_capacity, status FROM credentials ORDER BY credential_id"
            ).fetchall()
        return [
            Credential(credential_id=str(a), secret=str(b), owner_scope=str(c), hourly_capacity=int(d), status=str(e))
            for (a, b, c, d, e) in rows
        ]

    def update_credential_status(self, credential_id: str, status: str) -> None:
        with self._conn() as conn:
            conn.execute("UPDATE credentials SET status=? WHERE credential_id=?", (status, credential_id))
            conn.commit()

    def insert_scope(self, s: ExternalScope) -> None:
        try:
            with self._conn() as conn:
                conn.execute(
                    "INSERT INTO external_scopes (scope_id, owner_scope, name, status, created_at) VALUES (?, ?, ?, ?, ?)",
                    (s.scope_id, s.owner_scope, s.name, s.status, _iso(datetime.now(timezone.utc))),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateRegistrationError(f"Scope {s.scope_id} already registered") from e

    def load_scopes(self) -> List[ExternalScope]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT scope_id, owner_scope, name, status FROM external_scopes ORDER BY scope_id"
            ).fetchall()
        return [ExternalScope(scope_id=str(a), owner_scope=str(b), name=str(c or ""), status=str(d)) for (a, b, c, d) in rows]

    # -----------------------------
    # Quota windows
    # -----------------------------

    def save_quota_window(self, w: QuotaWindow) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO quota_windows (credential_id, consumed, resets_at) VALUES (?, ?, ?)
                ON CONFLICT(credential_id) DO UPDATE SET consumed=excluded.consumed, resets_at=excluded.resets_at
                """,
                (w.credential_id, int(w.consumed), _iso(w.resets_at)),
            )
            conn.commit()

    def load_quota_windows(self) -> List[QuotaWindow]:
        with self._conn() as conn:
            rows = conn.execute("SELECT credential_id, consumed, resets_at FROM quota_windows").fetchall()
        return [QuotaWindow(str(a), int(b), _parse_iso(c)) for (a, b, c) in rows]

    def modify_quota_window(
        self, credential_id: str, now: datetime, window_s: int, mutate: Callable[[QuotaWindow], Any]
    ) -> Tuple[QuotaWindow, Any]:
        """Read, roll, mutate and write one window inside BEGIN IMMEDIATE.

        The write lock is held from the read to the commit, so concurrent
        processes apply their changes one after another.
        """
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            r = conn.execute(
                "SELECT consumed, resets_at FROM quota_windows WHERE credential_id=?", (credential_id,)
            ).fetchone()
            if r is None:
                w = QuotaWindow(credential_id, 0, now + timedelta(seconds=int(window_s)))
            else:
                w = QuotaWindow(credential_id, int(r[0]), _parse_iso(r[1]))
            w.roll(now, int(window_s))
            result = mutate(w)
            conn.execute(
                """
                INSERT INTO quota_windows (credential_id, consumed, resets_at) VALUES (?, ?, ?)
                ON CONFLICT(credential_id) DO UPDATE SET consumed=excluded.consumed, resets_at=excluded.resets_at
                """,
                (credential_id, int(w.consumed), _iso(w.resets_at)),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        return w, result

    # -----------------------------
    # Failure ledger
    # -----------------------------

    def append_failure(self, r: FailureRecord) -> None:
        with self._conn() as conn:
            conn.execute(
                f"INSERT OR IGNORE INTO failure_records ({_FAILURE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    r.record_id, r.job_id, r.target_ref, r.entity_kind, r.stage, r.error_kind, r.classification,
                    r.parent_ref, r.copy_number, json.dumps(r.error_payload, ensure_ascii=False, default=str),
                    _iso(r.created_at),
                ),
            )
            conn.commit()

    def query_failures(
        self,
        *,
        job_id: Optional[str] = None,
        target_ref: Optional[str] = None,
        stage: Optional[str] = None,
        classification: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 200,
    ) -> List[FailureRecord]:
        where, params = [], []
        for col, val in (("job_id", job_id), ("target_ref", target_ref), ("stage", stage), ("classification", classification)):
            if val is not None:
                where.append(f"{col}=?")
                params.append(val)
        if since is not None:
            where.append("created_at >= ?")
            params.append(_iso(since))
        sql = f"SELECT {_FAILURE_COLUMNS} FROM failure_records"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_failure_from_row(r) for r in reversed(rows)]

    def delete_failures_before(self, cutoff: datetime) -> int:
        with self._conn() as conn:
            cur = conn.execute("DELETE FROM failure_records WHERE created_at < ?", (_iso(cutoff),))
            n = int(cur.rowcount or 0)
            conn.commit()
        return n

    # -----------------------------
    # Jobs
    # -----------------------------

    def insert_job(self, row: Dict[str, Any]) -> None:
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO replication_jobs ({_JOB_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    row["job_id"], row["kind"], row.get("parent_job_id"), row["status"],
                    json.dumps(row.get("payload") or {}, ensure_ascii=False, default=str),
                    1 if row.get("cancel_requested") else 0,
                    row.get("lease_owner"), _iso(row.get("lease_expires_at")),
                    _iso(row["created_at"]), _iso(row["updated_at"]),
                ),
            )
            conn.commit()

    def update_job(self, row: Dict[str, Any]) -> bool:
        """Status + payload only; lease and cancel columns belong to their own calls.

        A row written with a lease_owner only updates while that owner still
        holds the lease. Returns False when nothing was written.
        """
        sql = "UPDATE replication_jobs SET status=?, payload_json=?, updated_at=? WHERE job_id=?"
        params: List[Any] = [
            row["status"],
            json.dumps(row.get("payload") or {}, ensure_ascii=False, default=str),
            _iso(row["updated_at"]),
            row["job_id"],
        ]
        if row.get("lease_owner"):
            sql += " AND lease_owner=?"
            params.append(row["lease_owner"])
        with self._conn() as conn:
            cur = conn.execute(sql, params)
            n = int(cur.rowcount or 0)
            conn.commit()
        return n > 0

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._conn() as conn:
            r = conn.execute(f"SELECT {_JOB_COLUMNS} FROM replication_jobs WHERE job_id=?", (job_id,)).fetchone()
        return _job_row(r) if r else None

    def list_jobs(self, *, parent_job_id: Optional[str] = None, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        where, params = [], []
        if parent_job_id is not None:
            where.append("parent_job_id=?")
            params.append(parent_job_id)
        if status is not None:
            where.append("status=?")
            params.append(status)
        sql = f"SELECT {_JOB_COLUMNS} FROM replication_jobs"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC LIMIT ?"
        params.append(int(limit))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_job_row(r) for r in rows]

    def claim_job(self, worker_id: str, lease_s: int, now: datetime) -> Optional[Dict[str, Any]]:
        """Lease the oldest queued or abandoned top-level job."""
        now_s = _iso(now)
        expires = _iso(now + timedelta(seconds=int(lease_s)))
        conn = self._conn()
        try:
            conn.execute("BEGIN IMMEDIATE")
            r = conn.execute(
                f"""
                SELECT {_JOB_COLUMNS} FROM replication_jobs
                WHERE parent_job_id IS NULL
                  AND status IN ('started', 'processing')
                  AND (lease_expires_at IS NULL OR lease_expires_at < ?)
                ORDER BY created_at ASC
                LIMIT 1
                """,
                (now_s,),
            ).fetchone()
            if r is None:
                conn.commit()
                return None
            conn.execute(
                "UPDATE replication_jobs SET lease_owner=?, lease_expires_at=?, updated_at=? WHERE job_id=?",
                (worker_id, expires, now_s, r[0]),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        row = _job_row(r)
        row["lease_owner"] = worker_id
        row["lease_expires_at"] = expires
        return row

    def extend_lease(self, job_id: str, worker_id: str, lease_s: int, now: datetime) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE replication_jobs SET lease_expires_at=? WHERE job_id=? AND lease_owner=?",
                (_iso(now + timedelta(seconds=int(lease_s))), job_id, worker_id),
            )
            n = int(cur.rowcount or 0)
            conn.commit()
        return n > 0

    def release_job(self, job_id: str, worker_id: str) -> None:
        with self._conn() as conn:
            conn.execute(
                "UPDATE replication_jobs SET lease_owner=NULL, lease_expires_at=NULL WHERE job_id=? AND lease_owner=?",
                (job_id, worker_id),
            )
            conn.commit()

    def request_cancel(self, job_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute("UPDATE replication_jobs SET cancel_requested=1 WHERE job_id=?", (job_id,))
            n = int(cur.rowcount or 0)
            conn.commit()
        return n > 0

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._conn() as conn:
            r = conn.execute("SELECT cancel_requested FROM replication_jobs WHERE job_id=?", (job_id,)).fetchone()
        return bool(r and r[0])
