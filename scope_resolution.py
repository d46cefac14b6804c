"""scope_resolution.py

Active selection (page / pixel / credential) resolved through one ordered
chain: form override -> switched config -> stored default.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple

SELECTION_FIELDS = ("page_id", "pixel_id", "credential_id")
RESOLUTION_ORDER = ("form", "switched", "stored")


@dataclass(frozen=True)
class Resolved:
    name: str
    value: Optional[str]
    source: Optional[str]


def resolve(name: str, layers: Sequence[Tuple[str, Mapping[str, Optional[str]]]]) -> Resolved:
    """First non-empty value for `name` in layer order."""
    for source, values in layers:
        v = (values or {}).get(name)
        if v is not None and str(v).strip():
            return Resolved(name, str(v).strip(), source)
    return Resolved(name, None, None)


def stored_defaults_from_env() -> Dict[str, str]:
    out = {
        "page_id": (os.getenv("DEFAULT_PAGE_ID") or "").strip(),
        "pixel_id": (os.getenv("DEFAULT_PIXEL_ID") or "").strip(),
        "credential_id": (os.getenv("DEFAULT_CREDENTIAL_ID") or "").strip(),
    }
    return {k: v for k, v in out.items() if v}


class ActiveSelection:
    """Process-wide switched selection on top of stored defaults."""

    def __init__(self, stored: Optional[Mapping[str, str]] = None):
        self._stored = dict(stored or {})
        self._switched: Dict[str, str] = {}
        self._lock = threading.Lock()

    def switch(self, **values: Optional[str]) -> Dict[str, str]:
        unknown = set(values) - set(SELECTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown selection fields: {', '.join(sorted(unknown))}")
        with self._lock:
            for k, v in values.items():
                if v is None or not str(v).strip():
                    self._switched.pop(k, None)
                else:
                    self._switched[k] = str(v).strip()
            return dict(self._switched)

    def resolve(self, name: str, form: Optional[Mapping[str, Optional[str]]] = None) -> Resolved:
        with self._lock:
            switched = dict(self._switched)
        return resolve(name, [("form", form or {}), ("switched", switched), ("stored", self._stored)])

    def resolve_all(self, form: Optional[Mapping[str, Optional[str]]] = None) -> Dict[str, Resolved]:
        return {name: self.resolve(name, form) for name in SELECTION_FIELDS}

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        with self._lock:
            return {"switched": dict(self._switched), "stored": dict(self._stored)}
