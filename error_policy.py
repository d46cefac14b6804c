"""error_policy.py

Error taxonomy, classification and the retry policy value object.

Classification only looks at structured data (exception type, HTTP status,
Graph error code / subcode, `is_transient`), never at message text.
"""

from __future__ import annotations

import logging
import os
import random
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from meta_graph import MetaAPIError, MetaTransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    TRANSIENT = "transient_platform_error"
    PERMANENT = "permanent_validation_error"
    PARTIAL_BATCH = "partial_batch_failure"
    TRANSPORT = "network_transport"
    INTERNAL = "internal_error"

    @property
    def retryable(self) -> bool:
        return self in {ErrorKind.TRANSIENT, ErrorKind.TRANSPORT, ErrorKind.QUOTA_EXCEEDED}

    @property
    def classification(self) -> str:
        return "transient" if self.retryable else "permanent"


# Graph API codes.
# 4 app limit, 17 user limit, 32 page limit, 613 call rate, 80000-80014 business use case limits.
_THROTTLE_CODES = {4, 17, 32, 613} | set(range(80000, 80015))
# 1 unknown, 2 service temporarily unavailable, 368 temporarily blocked.
_SERVICE_CODES = {1, 2, 368}
_RETRYABLE_HTTP = {429, 500, 502, 503, 504}


# -----------------------------
# Exceptions
# -----------------------------

class QuotaExceeded(RuntimeError):
    """Local admission control said no; retry after `retry_at`."""

    def __init__(self, message: str, *, retry_at: datetime):
        super().__init__(message)
        self.retry_at = retry_at


class QuotaOverflowError(RuntimeError):
    """Usage was recorded beyond a credential's capacity (planner sizing bug)."""


class NoCredentialAvailable(LookupError):
    """No active credential exists for the requested scope / pin."""


class DuplicateRegistrationError(ValueError):
    pass


class TemplateReadError(RuntimeError):
    pass


class JobCancelled(RuntimeError):
    pass


# -----------------------------
# Classification
# -----------------------------

def classify_platform_error(http_status: Optional[int], error: Optional[Dict[str, Any]]) -> ErrorKind:
    """Classify a Graph error object (top-level or a batch sub-response)."""
    error = error or {}
    if error.get("is_transient") is True:
        return ErrorKind.TRANSIENT
    try:
        code = int(error.get("code")) if error.get("code") is not None else None
    except (TypeError, ValueError):
        code = None
    if code in _THROTTLE_CODES or code in _SERVICE_CODES:
        return ErrorKind.TRANSIENT
    if http_status in _RETRYABLE_HTTP:
        return ErrorKind.TRANSIENT
    if http_status is None and code is None:
        return ErrorKind.INTERNAL
    return ErrorKind.PERMANENT


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, QuotaExceeded):
        return ErrorKind.QUOTA_EXCEEDED
    if isinstance(exc, MetaTransportError):
        return ErrorKind.TRANSPORT
    if isinstance(exc, MetaAPIError):
        return classify_platform_error(exc.http_status, exc.error)
    if isinstance(exc, NoCredentialAvailable):
        return ErrorKind.PERMANENT
    if isinstance(exc, TemplateReadError):
        cause = exc.__cause__
        return classify_error(cause) if isinstance(cause, MetaAPIError) else ErrorKind.PERMANENT
    return ErrorKind.INTERNAL


def error_payload(exc: BaseException) -> Dict[str, Any]:
    """Raw error payload suitable for the failure ledger."""
    out: Dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, MetaAPIError):
        out["http_status"] = exc.http_status
        out["meta_error"] = exc.error
    if isinstance(exc, QuotaExceeded):
        out["retry_at"] = exc.retry_at.isoformat()
    return out


# -----------------------------
# Backoff
# -----------------------------

@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.5
    multiplier: float = 2.0
    max_delay_s: float = 30.0
    jitter_s: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_s < 0 or self.max_delay_s < 0 or self.jitter_s < 0:
            raise ValueError("delays must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")

    def delay_for(self, attempt: int, *, rng: Optional[random.Random] = None) -> float:
        """Delay before retry number `attempt` (1 = first retry)."""
        delay = min(self.base_delay_s * (self.multiplier ** max(0, attempt - 1)), self.max_delay_s)
        if self.jitter_s:
            delay += (rng or random).uniform(0, self.jitter_s)
        return delay

    @staticmethod
    def from_env(prefix: str = "RETRY") -> "BackoffPolicy":
        return BackoffPolicy(
            max_attempts=int(os.getenv(f"{prefix}_MAX_ATTEMPTS", "3")),
            base_delay_s=float(os.getenv(f"{prefix}_BASE_DELAY_S", "1.5")),
            multiplier=float(os.getenv(f"{prefix}_MULTIPLIER", "2")),
            max_delay_s=float(os.getenv(f"{prefix}_MAX_DELAY_S", "30")),
            jitter_s=float(os.getenv(f"{prefix}_JITTER_S", "0.5")),
        )


NO_RETRY = BackoffPolicy(max_attempts=1, base_delay_s=0, jitter_s=0)


def call_with_backoff(
    fn: Callable[[], T],
    policy: BackoffPolicy,
    *,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException, ErrorKind], None]] = None,
) -> T:
    """Run `fn`, retrying TRANSIENT / TRANSPORT failures within `policy`.

    Anything else (and the last retryable failure) propagates unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as e:
            kind = classify_error(e)
            if kind not in {ErrorKind.TRANSIENT, ErrorKind.TRANSPORT} or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning("Retryable %s (attempt %d/%d), sleeping %.1fs: %s", kind.value, attempt, policy.max_attempts, delay, e)
            if on_retry is not None:
                on_retry(attempt, e, kind)
            sleep(delay)
