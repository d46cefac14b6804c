"""credential_pool.py

Quota ledger over a pool of platform credentials (system users).

Every credential has an independent hourly call budget. All QuotaWindow
mutation goes through `_apply`: without a store it runs under the pool lock,
with a store it is a single locked read-modify-write on the window row
(`modify_quota_window`). `reserve` checks headroom and commits the calls in
that same step, so two jobs never both spend the same headroom, whether they
share a process or only the store.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union

from error_policy import (
    DuplicateRegistrationError,
    JobCancelled,
    NoCredentialAvailable,
    QuotaOverflowError,
)

logger = logging.getLogger(__name__)

CREDENTIAL_STATUSES = {"active", "suspended"}
DEFAULT_WINDOW_S = 3600
DEFAULT_CAPACITY = 200

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credential:
    credential_id: str
    secret: str = field(repr=False)
    owner_scope: str
    hourly_capacity: int = DEFAULT_CAPACITY
    status: str = "active"

    def validate(self) -> None:
        missing = [n for n in ("credential_id", "secret", "owner_scope") if not str(getattr(self, n) or "").strip()]
        if missing:
            raise ValueError(f"Credential is missing required fields: {', '.join(missing)}")
        if int(self.hourly_capacity) <= 0:
            raise ValueError("hourly_capacity must be > 0")
        if self.status not in CREDENTIAL_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(sorted(CREDENTIAL_STATUSES))}")

    def public(self) -> Dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "owner_scope": self.owner_scope,
            "hourly_capacity": self.hourly_capacity,
            "status": self.status,
        }


@dataclass(frozen=True)
class ExternalScope:
    """An ad account the pool may act on, owned by a business (credential owner_scope)."""

    scope_id: str
    owner_scope: str
    name: str = ""
    status: str = "active"

    def validate(self) -> None:
        missing = [n for n in ("scope_id", "owner_scope") if not str(getattr(self, n) or "").strip()]
        if missing:
            raise ValueError(f"Scope is missing required fields: {', '.join(missing)}")
        if self.status not in CREDENTIAL_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(sorted(CREDENTIAL_STATUSES))}")


@dataclass
class QuotaWindow:
    credential_id: str
    consumed: int
    resets_at: datetime

    def roll(self, now: datetime, window_s: int) -> None:
        if now >= self.resets_at:
            self.consumed = 0
            self.resets_at = now + timedelta(seconds=window_s)


def _take(w: QuotaWindow, calls: int, capacity: int) -> bool:
    if w.consumed + calls > capacity:
        return False
    w.consumed += calls
    return True


def _add_capped(w: QuotaWindow, delta: int, capacity: int) -> int:
    """Add `delta` within [0, capacity]; returns what was actually applied."""
    new = max(0, min(capacity, w.consumed + delta))
    applied = new - w.consumed
    w.consumed = new
    return applied


@dataclass(frozen=True)
class Reservation:
    credential: Credential
    calls: int
    reserved_at: datetime


@dataclass(frozen=True)
class Deferred:
    retry_at: datetime

    def seconds_until(self, now: datetime) -> float:
        return max(0.0, (self.retry_at - now).total_seconds())


class CredentialPool:
    def __init__(
        self,
        store: Any = None,
        *,
        window_s: int = DEFAULT_WINDOW_S,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.window_s = int(window_s)
        self.clock = clock
        self._lock = threading.Lock()
        self._credentials: Dict[str, Credential] = {}
        self._scopes: Dict[str, ExternalScope] = {}
        self._windows: Dict[str, QuotaWindow] = {}
        if store is not None:
            self._load()

    def _load(self) -> None:
        with self._lock:
            for c in self.store.load_credentials():
                self._credentials[c.credential_id] = c
            for s in self.store.load_scopes():
                self._scopes[s.scope_id] = s
            for w in self.store.load_quota_windows():
                if w.credential_id in self._credentials:
                    self._windows[w.credential_id] = w

    # -----------------------------
    # Administration
    # -----------------------------

    def register_credential(self, credential: Credential) -> Credential:
        credential.validate()
        with self._lock:
            if credential.credential_id in self._credentials:
                raise DuplicateRegistrationError(f"Credential {credential.credential_id} already registered")
            if self.store is not None:
                self.store.insert_credential(credential)
            self._credentials[credential.credential_id] = credential
            window = QuotaWindow(credential.credential_id, 0, self.clock() + timedelta(seconds=self.window_s))
            self._windows[credential.credential_id] = window
            if self.store is not None:
                self.store.save_quota_window(window)
        logger.info("Registered credential %s (scope=%s, capacity=%d)", credential.credential_id, credential.owner_scope, credential.hourly_capacity)
        return credential

    def register_external_scope(self, scope: ExternalScope) -> ExternalScope:
        scope.validate()
        with self._lock:
            if scope.scope_id in self._scopes:
                raise DuplicateRegistrationError(f"Scope {scope.scope_id} already registered")
            if self.store is not None:
                self.store.insert_scope(scope)
            self._scopes[scope.scope_id] = scope
        logger.info("Registered external scope %s (owner=%s)", scope.scope_id, scope.owner_scope)
        return scope

    def set_status(self, credential_id: str, status: str) -> Credential:
        if status not in CREDENTIAL_STATUSES:
            raise ValueError(f"status must be one of: {', '.join(sorted(CREDENTIAL_STATUSES))}")
        with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None:
                raise NoCredentialAvailable(f"Unknown credential {credential_id}")
            cred = replace(cred, status=status)
            self._credentials[credential_id] = cred
            if self.store is not None:
                self.store.update_credential_status(credential_id, status)
        return cred

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._lock:
            return self._credentials.get(credential_id)

    def get_scope(self, scope_id: str) -> Optional[ExternalScope]:
        with self._lock:
            return self._scopes.get(scope_id)

    # -----------------------------
    # Admission
    # -----------------------------

    def _candidates(self, scope_id: Optional[str], credential_id: Optional[str]) -> List[Credential]:
        if credential_id:
            cred = self._credentials.get(credential_id)
            if cred is None or cred.status != "active":
                raise NoCredentialAvailable(f"Credential {credential_id} is unknown or not active")
            return [cred]
        active = [c for c in self._credentials.values() if c.status == "active"]
        if scope_id and scope_id in self._scopes:
            scope = self._scopes[scope_id]
            if scope.status != "active":
                raise NoCredentialAvailable(f"Scope {scope_id} is suspended")
            active = [c for c in active if c.owner_scope == scope.owner_scope]
        if not active:
            raise NoCredentialAvailable(f"No active credential for scope {scope_id or '*'}")
        return active

    def eligible(self, *, scope_id: Optional[str] = None, credential_id: Optional[str] = None) -> List[Credential]:
        """Credentials `reserve` could pick from; raises NoCredentialAvailable if none."""
        with self._lock:
            return list(self._candidates(scope_id, credential_id))

    def _window(self, cred: Credential, now: datetime) -> QuotaWindow:
        w = self._windows.get(cred.credential_id)
        if w is None:
            w = QuotaWindow(cred.credential_id, 0, now + timedelta(seconds=self.window_s))
            self._windows[cred.credential_id] = w
        w.roll(now, self.window_s)
        return w

    def _sync_windows(self) -> None:
        for w in self.store.load_quota_windows():
            if w.credential_id in self._credentials:
                self._windows[w.credential_id] = w

    def _apply(self, cred: Credential, now: datetime, mutate: Callable[[QuotaWindow], T]) -> T:
        """Run `mutate` on the credential's current window; caller holds the lock."""
        if self.store is None:
            return mutate(self._window(cred, now))
        w, result = self.store.modify_quota_window(cred.credential_id, now, self.window_s, mutate)
        self._windows[cred.credential_id] = w
        return result

    def reserve(
        self,
        required_calls: int,
        *,
        scope_id: Optional[str] = None,
        credential_id: Optional[str] = None,
    ) -> Union[Reservation, Deferred]:
        """Atomically pick the credential with the most headroom and commit `required_calls` to it."""
        required_calls = int(required_calls)
        if required_calls <= 0:
            raise ValueError("required_calls must be > 0")

        with self._lock:
            now = self.clock()
            candidates = self._candidates(scope_id, credential_id)
            if all(c.hourly_capacity < required_calls for c in candidates):
                raise QuotaOverflowError(
                    f"{required_calls} calls can never fit: largest capacity is {max(c.hourly_capacity for c in candidates)}"
                )

            if self.store is not None:
                self._sync_windows()

            def headroom(c: Credential) -> int:
                return c.hourly_capacity - self._window(c, now).consumed

            # Most headroom first; the commit itself re-checks headroom.
            for cred in sorted(candidates, key=lambda c: (-headroom(c), c.credential_id)):
                if headroom(cred) < required_calls:
                    break
                if self._apply(cred, now, lambda w, cap=cred.hourly_capacity: _take(w, required_calls, cap)):
                    return Reservation(credential=cred, calls=required_calls, reserved_at=now)

            resets = [self._window(c, now).resets_at for c in candidates if c.hourly_capacity >= required_calls]
            return Deferred(retry_at=min(resets) if resets else now + timedelta(seconds=self.window_s))

    def record_usage(self, credential: Credential, calls: int, *, reservation: Optional[Reservation] = None) -> None:
        """Settle actual usage.

        With a reservation, `calls` is the actual count for that reservation: unused
        calls are released, extra calls are recorded up to capacity. Without one,
        `calls` are added directly. Anything that would push consumed above
        capacity is not recorded and raises QuotaOverflowError.
        """
        calls = int(calls)
        if calls < 0:
            raise ValueError("calls must be >= 0")
        capacity = credential.hourly_capacity
        window = timedelta(seconds=self.window_s)

        def settle(w: QuotaWindow) -> int:
            if reservation is not None and reservation.reserved_at < w.resets_at - window:
                # Reserved in a window that has since rolled over: the committed calls went
                # with it, so the settled calls land in the current window, capped.
                _add_capped(w, calls, capacity)
                return 0
            delta = calls - reservation.calls if reservation is not None else calls
            applied = _add_capped(w, delta, capacity)
            return delta - applied if delta > 0 else 0

        with self._lock:
            overflow = self._apply(credential, self.clock(), settle)
        if overflow > 0:
            logger.error("Quota overflow on %s: %d calls not recorded", credential.credential_id, overflow)
            raise QuotaOverflowError(
                f"Usage of {calls} calls exceeds capacity of {credential.credential_id} by {overflow}"
            )

    def acquire(
        self,
        required_calls: int,
        *,
        scope_id: Optional[str] = None,
        credential_id: Optional[str] = None,
        sleep: Callable[[float], None] = time.sleep,
        is_cancelled: Callable[[], bool] = lambda: False,
        max_wait_step_s: float = 30.0,
    ) -> Reservation:
        """Block until `reserve` grants capacity, sleeping until the deferred reset time."""
        while True:
            if is_cancelled():
                raise JobCancelled("Cancelled while waiting for quota")
            outcome = self.reserve(required_calls, scope_id=scope_id, credential_id=credential_id)
            if isinstance(outcome, Reservation):
                return outcome
            wait_s = outcome.seconds_until(self.clock())
            logger.info("Quota deferred for %d calls; next reset in %.0fs", required_calls, wait_s)
            sleep(max(0.01, min(wait_s, max_wait_step_s)))

    def observe_platform_usage(self, credential_id: str, call_count_pct: int, regain_access_s: int = 0) -> None:
        """Fold platform-reported usage into the local window (never above capacity)."""
        with self._lock:
            cred = self._credentials.get(credential_id)
            if cred is None:
                return
            now = self.clock()
            reported = min(cred.hourly_capacity, int(math.ceil(cred.hourly_capacity * max(0, call_count_pct) / 100.0)))

            def fold(w: QuotaWindow) -> None:
                if reported > w.consumed:
                    w.consumed = reported
                if regain_access_s > 0:
                    w.consumed = cred.hourly_capacity
                    w.resets_at = max(w.resets_at, now + timedelta(seconds=regain_access_s))

            self._apply(cred, now, fold)

    # -----------------------------
    # Inspection
    # -----------------------------

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            now = self.clock()
            if self.store is not None:
                self._sync_windows()
            out = []
            for cred in sorted(self._credentials.values(), key=lambda c: c.credential_id):
                w = self._window(cred, now)
                out.append({
                    **cred.public(),
                    "consumed": w.consumed,
                    "headroom": cred.hourly_capacity - w.consumed,
                    "resets_at": w.resets_at.isoformat(),
                })
            return out
