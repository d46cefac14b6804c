import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import psycopg

from credential_pool import Credential, ExternalScope, QuotaWindow
from error_policy import DuplicateRegistrationError
from failure_ledger import FailureRecord
from state_store import _FAILURE_COLUMNS, _JOB_COLUMNS, _failure_from_row, _job_row


class StateStorePG:
    """Postgres-backed durable state (same surface as StateStore).

    Production backend when several API / worker processes share state.

    Job leases:
      - a claimable job is a top-level row in started/processing whose lease is
        empty or expired
      - claim uses SELECT ... FOR UPDATE SKIP LOCKED so two workers never take
        the same row
      - update_job on a leased row only lands while the writer still holds
        the lease

    Quota windows:
      - modify_quota_window locks the row (SELECT ... FOR UPDATE) for the
        whole read-roll-mutate-write, so reservations from different
        processes are serialized
    """

    def __init__(self, database_url: str, *, prefix: str = ""):
        self.database_url = database_url
        self.prefix = prefix.strip()
        self._init_db()

    def _conn(self):
        return psycopg.connect(self.database_url)

    def _t(self, name: str) -> str:
        return f"{self.prefix}{name}" if self.prefix else name

    def _init_db(self) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('credentials')} (
                      credential_id TEXT PRIMARY KEY,
                      secret TEXT NOT NULL,
                      owner_scope TEXT NOT NULL,
                      hourly_capacity INTEGER NOT NULL,
                      status TEXT NOT NULL DEFAULT 'active',
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('external_scopes')} (
                      scope_id TEXT PRIMARY KEY,
                      owner_scope TEXT NOT NULL,
                      name TEXT NOT NULL DEFAULT '',
                      status TEXT NOT NULL DEFAULT 'active',
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('quota_windows')} (
                      credential_id TEXT PRIMARY KEY,
                      consumed INTEGER NOT NULL,
                      resets_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('replication_jobs')} (
                      job_id TEXT PRIMARY KEY,
                      kind TEXT NOT NULL,
                      parent_job_id TEXT,
                      status TEXT NOT NULL,
                      payload_json JSONB NOT NULL,
                      cancel_requested BOOLEAN NOT NULL DEFAULT false,
                      lease_owner TEXT,
                      lease_expires_at TIMESTAMPTZ,
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                      updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{self._t('replication_jobs')}_claim
                    ON {self._t('replication_jobs')}(status, created_at)
                    """
                )
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._t('failure_records')} (
                      record_id TEXT PRIMARY KEY,
                      job_id TEXT,
                      target_ref TEXT,
                      entity_kind TEXT NOT NULL,
                      stage TEXT NOT NULL,
                      error_kind TEXT NOT NULL,
                      classification TEXT NOT NULL,
                      parent_ref TEXT,
                      copy_number INTEGER,
                      payload_json JSONB NOT NULL,
                      created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                )
                cur.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{self._t('failure_records')}_job
                    ON {self._t('failure_records')}(job_id, created_at)
                    """
                )
            conn.commit()

    # -----------------------------
    # Credentials / scopes
    # -----------------------------

    def insert_credential(self, c: Credential) -> None:
        try:
            with self._conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"""
                        INSERT INTO {self._t('credentials')} (credential_id, secret, owner_scope, hourly_capacity, status)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (c.credential_id, c.secret, c.owner_scope, int(c.hourly_capacity), c.status),
                    )
                conn.commit()
        except psycopg.errors.UniqueViolation as e:
            raise DuplicateRegistrationError(f"Credential {c.credential_id} already registered") from e

    def load_credentials(self) -> List[Credential]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT credential_id, secret, owner_scope, hourly_capacity, status FROM {self._t('credentials')} ORDER BY credential_id"
                )
                rows = cur.fetchall()
        return [
            Credential(credential_id=str(a), secret=str(b), owner_scope=str(c), hourly_capacity=int(d), status=str(e))
            for (a, b, c, d, e) in rows
        ]

    def update_credential_status(self, credential_id: str, status: str) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self._t('credentials')} SET status=%s WHERE credential_id=%s",
                    (status, credential_id),
                )
            conn.commit()

    def insert_scope(self, s: ExternalScope) -> None:
        try:
            with self._conn() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"INSERT INTO {self._t('external_scopes')} (scope_id, owner_scope, name, status) VALUES (%s, %s, %s, %s)",
                        (s.scope_id, s.owner_scope, s.name, s.status),
                    )
                conn.commit()
        except psycopg.errors.UniqueViolation as e:
            raise DuplicateRegistrationError(f"Scope {s.scope_id} already registered") from e

    def load_scopes(self) -> List[ExternalScope]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT scope_id, owner_scope, name, status FROM {self._t('external_scopes')} ORDER BY scope_id")
                rows = cur.fetchall()
        return [ExternalScope(scope_id=str(a), owner_scope=str(b), name=str(c or ""), status=str(d)) for (a, b, c, d) in rows]

    # -----------------------------
    # Quota windows
    # -----------------------------

    def save_quota_window(self, w: QuotaWindow) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._t('quota_windows')} (credential_id, consumed, resets_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (credential_id)
                    DO UPDATE SET consumed=EXCLUDED.consumed, resets_at=EXCLUDED.resets_at
                    """,
                    (w.credential_id, int(w.consumed), w.resets_at),
                )
            conn.commit()

    def load_quota_windows(self) -> List[QuotaWindow]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT credential_id, consumed, resets_at FROM {self._t('quota_windows')}")
                rows = cur.fetchall()
        return [QuotaWindow(str(a), int(b), c) for (a, b, c) in rows]

    def modify_quota_window(
        self, credential_id: str, now: datetime, window_s: int, mutate: Callable[[QuotaWindow], Any]
    ) -> Tuple[QuotaWindow, Any]:
        table = self._t("quota_windows")
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {table} (credential_id, consumed, resets_at)
                    VALUES (%s, 0, %s)
                    ON CONFLICT (credential_id) DO NOTHING
                    """,
                    (credential_id, now + timedelta(seconds=int(window_s))),
                )
                cur.execute(
                    f"SELECT consumed, resets_at FROM {table} WHERE credential_id=%s FOR UPDATE",
                    (credential_id,),
                )
                consumed, resets_at = cur.fetchone()
                w = QuotaWindow(credential_id, int(consumed), resets_at)
                w.roll(now, int(window_s))
                result = mutate(w)
                cur.execute(
                    f"UPDATE {table} SET consumed=%s, resets_at=%s WHERE credential_id=%s",
                    (int(w.consumed), w.resets_at, credential_id),
                )
            conn.commit()
        return w, result

    # -----------------------------
    # Failure ledger
    # -----------------------------

    def append_failure(self, r: FailureRecord) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._t('failure_records')} ({_FAILURE_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (record_id) DO NOTHING
                    """,
                    (
                        r.record_id, r.job_id, r.target_ref, r.entity_kind, r.stage, r.error_kind, r.classification,
                        r.parent_ref, r.copy_number, json.dumps(r.error_payload, ensure_ascii=False, default=str),
                        r.created_at,
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
                where.append(f"{col}=%s")
                params.append(val)
        if since is not None:
            where.append("created_at >= %s")
            params.append(since)
        sql = f"SELECT {_FAILURE_COLUMNS} FROM {self._t('failure_records')}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC"
        if limit:
            sql += " LIMIT %s"
            params.append(int(limit))
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return [_failure_from_row(r) for r in reversed(rows)]

    def delete_failures_before(self, cutoff: datetime) -> int:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"DELETE FROM {self._t('failure_records')} WHERE created_at < %s", (cutoff,))
                n = int(cur.rowcount or 0)
            conn.commit()
        return n

    # -----------------------------
    # Jobs
    # -----------------------------

    def insert_job(self, row: Dict[str, Any]) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO {self._t('replication_jobs')} ({_JOB_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        row["job_id"], row["kind"], row.get("parent_job_id"), row["status"],
                        json.dumps(row.get("payload") or {}, ensure_ascii=False, default=str),
                        bool(row.get("cancel_requested")),
                        row.get("lease_owner"), row.get("lease_expires_at"),
                        row["created_at"], row["updated_at"],
                    ),
                )
            conn.commit()

    def update_job(self, row: Dict[str, Any]) -> bool:
        sql = f"UPDATE {self._t('replication_jobs')} SET status=%s, payload_json=%s, updated_at=%s WHERE job_id=%s"
        params: List[Any] = [
            row["status"],
            json.dumps(row.get("payload") or {}, ensure_ascii=False, default=str),
            row["updated_at"],
            row["job_id"],
        ]
        if row.get("lease_owner"):
            sql += " AND lease_owner=%s"
            params.append(row["lease_owner"])
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                n = int(cur.rowcount or 0)
            conn.commit()
        return n > 0

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT {_JOB_COLUMNS} FROM {self._t('replication_jobs')} WHERE job_id=%s", (job_id,))
                r = cur.fetchone()
        return _job_row(r) if r else None

    def list_jobs(self, *, parent_job_id: Optional[str] = None, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        where, params = [], []
        if parent_job_id is not None:
            where.append("parent_job_id=%s")
            params.append(parent_job_id)
        if status is not None:
            where.append("status=%s")
            params.append(status)
        sql = f"SELECT {_JOB_COLUMNS} FROM {self._t('replication_jobs')}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at ASC LIMIT %s"
        params.append(int(limit))
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        return [_job_row(r) for r in rows]

    def claim_job(self, worker_id: str, lease_s: int, now: datetime) -> Optional[Dict[str, Any]]:
        expires = now + timedelta(seconds=int(lease_s))
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    UPDATE {self._t('replication_jobs')}
                    SET lease_owner=%s, lease_expires_at=%s, updated_at=%s
                    WHERE job_id = (
                      SELECT job_id FROM {self._t('replication_jobs')}
                      WHERE parent_job_id IS NULL
                        AND status IN ('started', 'processing')
                        AND (lease_expires_at IS NULL OR lease_expires_at < %s)
                      ORDER BY created_at ASC
                      LIMIT 1
                      FOR UPDATE SKIP LOCKED
                    )
                    RETURNING {_JOB_COLUMNS}
                    """,
                    (worker_id, expires, now, now),
                )
                r = cur.fetchone()
            conn.commit()
        return _job_row(r) if r else None

    def extend_lease(self, job_id: str, worker_id: str, lease_s: int, now: datetime) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self._t('replication_jobs')} SET lease_expires_at=%s WHERE job_id=%s AND lease_owner=%s",
                    (now + timedelta(seconds=int(lease_s)), job_id, worker_id),
                )
                n = int(cur.rowcount or 0)
            conn.commit()
        return n > 0

    def release_job(self, job_id: str, worker_id: str) -> None:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"UPDATE {self._t('replication_jobs')} SET lease_owner=NULL, lease_expires_at=NULL WHERE job_id=%s AND lease_owner=%s",
                    (job_id, worker_id),
                )
            conn.commit()

    def request_cancel(self, job_id: str) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"UPDATE {self._t('replication_jobs')} SET cancel_requested=true WHERE job_id=%s", (job_id,))
                n = int(cur.rowcount or 0)
            conn.commit()
        return n > 0

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._conn() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT cancel_requested FROM {self._t('replication_jobs')} WHERE job_id=%s", (job_id,))
                r = cur.fetchone()
        return bool(r and r[0])
