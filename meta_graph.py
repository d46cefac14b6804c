"""meta_graph.py

Thin REST client for the Meta Graph API (requests based).

Only the calls the replication engine needs are exposed:
- single object create (POST /<account>/<edge>)
- batch (POST / with an ordered `batch` array; parallel array of results back)
- edge paging (GET /<id>/<edge>) for authoritative counting
- object read / delete

Retries are *not* done here. Every retrying caller passes an explicit
BackoffPolicy (see error_policy.py), so admission control can re-check quota
before every network attempt.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

import requests
from dotenv import load_dotenv


# -----------------------------
# Exceptions
# -----------------------------

class MetaAPIError(RuntimeError):
    def __init__(self, message: str, *, http_status: int | None = None, error: dict | None = None):
        super().__init__(message)
        self.http_status = http_status
        self.error = error or {}


class MetaTransportError(MetaAPIError):
    """The call itself could not complete (connection reset, timeout, DNS...)."""


# -----------------------------
# Config
# -----------------------------

@dataclass(frozen=True)
class MetaConfig:
    api_version: str = "v21.0"
    app_secret: str | None = None
    timeout_s: int = 30
    batch_timeout_s: int = 120
    # Optional bootstrap credential (registered into the pool at start-up).
    access_token: str | None = None
    ad_account_id: str | None = None

    @staticmethod
    def from_env() -> "MetaConfig":
        """Loads config from environment variables (optionally via .env)."""
        load_dotenv(override=False)

        api_version = os.getenv("META_API_VERSION", "v21.0").strip() or "v21.0"
        app_secret = os.getenv("META_APP_SECRET", "").strip() or None
        token = os.getenv("META_ACCESS_TOKEN", "").strip() or None
        account_id = os.getenv("META_AD_ACCOUNT_ID", "").strip() or None

        try:
            timeout_s = int(os.getenv("META_TIMEOUT_S", "30"))
            batch_timeout_s = int(os.getenv("META_BATCH_TIMEOUT_S", "120"))
        except ValueError as e:
            raise ValueError(f"META_TIMEOUT_S / META_BATCH_TIMEOUT_S must be integers: {e}") from e

        if token and not account_id:
            raise ValueError("META_ACCESS_TOKEN is set but META_AD_ACCOUNT_ID is missing.")

        return MetaConfig(
            api_version=api_version,
            app_secret=app_secret,
            timeout_s=timeout_s,
            batch_timeout_s=batch_timeout_s,
            access_token=token,
            ad_account_id=normalize_ad_account_id(account_id) if account_id else None,
        )


def normalize_ad_account_id(ad_account_id: str) -> str:
    """
    Meta endpoints use act_<AD_ACCOUNT_ID>.
    Accept either 'act_123' or '123' from the user.
    """
    ad_account_id = (ad_account_id or "").strip()
    if ad_account_id.startswith("act_"):
        return ad_account_id
    if ad_account_id.isdigit():
        return f"act_{ad_account_id}"
    return ad_account_id


def is_valid_ad_account_id(ad_account_id: str) -> bool:
    acct = normalize_ad_account_id(ad_account_id)
    return acct.startswith("act_") and acct[4:].isdigit()


# -----------------------------
# Encoding helpers
# -----------------------------

def encode_field_value(value: Any) -> str:
    """Graph form encoding: dict/list values go as JSON strings, bools as true/false."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def encode_fields(fields: Dict[str, Any]) -> Dict[str, str]:
    return {k: encode_field_value(v) for k, v in fields.items() if v is not None}


def encode_batch_body(fields: Dict[str, Any]) -> str:
    """URL-encode a sub-request body for the `batch` array."""
    return urlencode(encode_fields(fields))


def parse_usage_headers(headers: Any) -> Optional[Dict[str, Any]]:
    """Extract the call-count percentage and regain time from Graph usage headers.

    X-Business-Use-Case-Usage looks like:
      {"<account_id>": [{"type": "ads_management", "call_count": 28,
                         "estimated_time_to_regain_access": 0, ...}]}
    X-App-Usage looks like:
      {"call_count": 12, "total_time": 3, "total_cputime": 2}
    """
    if not headers:
        return None
    buc = headers.get("x-business-use-case-usage") or headers.get("X-Business-Use-Case-Usage")
    app = headers.get("x-app-usage") or headers.get("X-App-Usage")

    if buc:
        try:
            usage = json.loads(buc)
        except (TypeError, ValueError):
            usage = None
        if isinstance(usage, dict):
            worst: Optional[Dict[str, Any]] = None
            for entries in usage.values():
                for e in entries or []:
                    pct = int(e.get("call_count") or 0)
                    if worst is None or pct > worst["call_count_pct"]:
                        worst = {
                            "call_count_pct": pct,
                            "regain_access_s": int(e.get("estimated_time_to_regain_access") or 0) * 60,
                        }
            if worst is not None:
                return worst

    if app:
        try:
            usage = json.loads(app)
        except (TypeError, ValueError):
            return None
        if isinstance(usage, dict):
            return {"call_count_pct": int(usage.get("call_count") or 0), "regain_access_s": 0}
    return None


# -----------------------------
# Graph client (REST via requests)
# -----------------------------

class GraphClient:
    """One client per credential; the access token is the credential's secret."""

    def __init__(self, cfg: MetaConfig, access_token: str, *, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.access_token = access_token
        self.session = session or requests.Session()
        self.base_url = f"https://graph.facebook.com/{cfg.api_version}"
        self.last_usage: Optional[Dict[str, Any]] = None

    def _auth_params(self) -> Dict[str, str]:
        out = {"access_token": self.access_token}
        # Required when "App Secret Proof for Server API calls" is enabled on the app.
        if self.cfg.app_secret:
            out["appsecret_proof"] = hmac.new(
                self.cfg.app_secret.encode("utf-8"),
                self.access_token.encode("utf-8"),
                hashlib.sha256,
            ).hexdigest()
        return out

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        timeout_s: Optional[int] = None,
    ) -> Any:
        url = self.base_url + "/" + path.lstrip("/") if path.strip("/") else self.base_url
        params = dict(params or {})
        data = dict(data or {})

        if method.upper() == "GET":
            params.update(self._auth_params())
        else:
            data.update(self._auth_params())

        try:
            resp = self.session.request(
                method=method.upper(),
                url=url,
                params=params,
                data=data,
                timeout=timeout_s or self.cfg.timeout_s,
            )
        except requests.RequestException as e:
            raise MetaTransportError(f"Network error calling Meta API: {e}") from e

        self.last_usage = parse_usage_headers(getattr(resp, "headers", None))

        # Meta often returns JSON even for errors.
        try:
            payload = resp.json()
        except ValueError:
            payload = {"raw": resp.text}

        if resp.status_code >= 400 or (isinstance(payload, dict) and "error" in payload):
            error_obj = payload.get("error", {}) if isinstance(payload, dict) else {}
            msg = error_obj.get("message") or (payload.get("raw") if isinstance(payload, dict) else None) or "Unknown Meta API error"
            raise MetaAPIError(
                f"Meta API error ({resp.status_code}): {msg}",
                http_status=resp.status_code,
                error=error_obj,
            )
        return payload

    # -----------------------------
    # Create / batch
    # -----------------------------

    def create_object(self, path: str, fields: Dict[str, Any]) -> str:
        payload = self._request("POST", path, data=encode_fields(fields))
        object_id = payload.get("id") if isinstance(payload, dict) else None
        if not object_id:
            raise MetaAPIError(f"Create on {path} returned no id", error={"response": payload})
        return str(object_id)

    def batch(self, requests_: List[Dict[str, Any]]) -> List[Any]:
        """POST an ordered batch array and return the parallel array of results.

        Each result is either None (sub-request was not executed) or
        {"code": int, "headers": [...], "body": "<json string>"}.
        """
        payload = self._request(
            "POST",
            "/",
            data={"batch": json.dumps(requests_, separators=(",", ":")), "include_headers": "false"},
            timeout_s=self.cfg.batch_timeout_s,
        )
        if not isinstance(payload, list):
            raise MetaAPIError("Batch response was not an array", error={"response": payload})
        return payload

    # -----------------------------
    # Read
    # -----------------------------

    def get_object(self, object_id: str, fields: str) -> dict:
        return self._request("GET", f"/{object_id}", params={"fields": fields})

    def list_edge_page(
        self,
        object_id: str,
        edge: str,
        *,
        fields: str,
        limit: int = 200,
        after: Optional[str] = None,
    ) -> Tuple[List[dict], Optional[str]]:
        """Fetch one page of an edge. Returns (rows, next_cursor_or_None)."""
        params: Dict[str, Any] = {"fields": fields, "limit": str(limit)}
        if after:
            params["after"] = after
        payload = self._request("GET", f"/{object_id}/{edge}", params=params)
        data = payload.get("data") or []
        paging = payload.get("paging") or {}
        cursor = (paging.get("cursors") or {}).get("after") if paging.get("next") else None
        return (data if isinstance(data, list) else []), cursor

    # -----------------------------
    # Delete
    # -----------------------------

    def delete_object(self, object_id: str) -> dict:
        return self._request("DELETE", f"/{object_id}")
