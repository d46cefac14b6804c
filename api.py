"""replication.api

FastAPI wrapper around the replication service so an orchestrator (Make.com or
any HTTP client) can start replication jobs and poll them.

Endpoints
---------
- GET  /health                          -> basic health check
- GET  /                                -> basic root info
- POST /replications                    -> accept a ReplicationRequest, returns a job id immediately
- GET  /replications/{job_id}           -> job status (found=false for unknown ids)
- POST /replications/{job_id}/cancel    -> request cancellation (cascades to sub-jobs)
- POST /credentials                     -> register a system user credential
- POST /credentials/{id}/status         -> activate / suspend a credential
- POST /scopes                          -> register an ad account and its owning business
- GET  /quota                           -> per-credential consumed / headroom
- GET  /failures                        -> failure ledger query
- GET  /failures/stats                  -> failure counts by stage / classification
- GET  /selection, PUT /selection       -> switched page / pixel / credential selection

Optional API Key
----------------
If you set SERVICE_API_KEY in the environment, requests must include:
  X-API-Key: <SERVICE_API_KEY>

Environment variables
---------------------
- META_API_VERSION, META_APP_SECRET, META_TIMEOUT_S, META_BATCH_TIMEOUT_S
- META_ACCESS_TOKEN + META_AD_ACCOUNT_ID (optional bootstrap credential)
- STATE_DB_PATH (default: .replication_state.db; ignored if STATE_STORE_SOURCE=db)
- STATE_STORE_SOURCE ("db" to keep state in Postgres) + DATABASE_URL
- JOB_EXECUTION ("inline" runs jobs in this process; "worker" leaves them to worker.py)
- DEFAULT_PAGE_ID, DEFAULT_PIXEL_ID, DEFAULT_CREDENTIAL_ID
- SERVICE_API_KEY (if set, enforces X-API-Key)
"""

from __future__ import annotations

import os
import threading
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from error_policy import DuplicateRegistrationError, NoCredentialAvailable
from meta_graph import MetaAPIError
from replicator import EngineSettings, ReplicationService, build_service, build_state_store
from templates import ReplicationRequest

app = FastAPI(title="Meta Ads Replication API", version="2.0.0")

_service: Optional[ReplicationService] = None
_service_lock = threading.Lock()


class CredentialIn(BaseModel):
    credential_id: str = Field(min_length=1)
    secret: str = Field(min_length=1)
    owner_scope: str = Field(min_length=1, description="Business the system user belongs to.")
    hourly_capacity: Optional[int] = Field(default=None, ge=1)


class CredentialStatusIn(BaseModel):
    status: str


class ScopeIn(BaseModel):
    scope_id: str = Field(min_length=1, description="Ad account id (act_<id> or bare digits).")
    owner_scope: str = Field(min_length=1)
    name: str = ""


class SelectionIn(BaseModel):
    """Empty strings clear a switched value."""

    page_id: Optional[str] = None
    pixel_id: Optional[str] = None
    credential_id: Optional[str] = None


def _require_api_key(x_api_key: Optional[str]) -> None:
    expected = (os.getenv("SERVICE_API_KEY") or "").strip()
    if not expected:
        return
    if not x_api_key or x_api_key.strip() != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _get_service() -> ReplicationService:
    global _service
    with _service_lock:
        if _service is None:
            try:
                settings = EngineSettings.from_env()
                _service = build_service(settings, store=build_state_store(settings.state_db_path))
            except Exception as e:
                raise HTTPException(status_code=500, detail=f"Server misconfigured: {e}")
        return _service


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, ValidationError):
        return HTTPException(status_code=422, detail=jsonable_encoder(e.errors()))
    if isinstance(e, MetaAPIError):
        return HTTPException(
            status_code=502,
            detail={
                "message": str(e),
                "http_status": e.http_status,
                "meta_error": e.error,
            },
        )
    if isinstance(e, DuplicateRegistrationError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, NoCredentialAvailable):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


@app.get("/")
def root() -> JSONResponse:
    return JSONResponse({"ok": True, "docs": "/docs", "health": "/health"})


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"ok": True}


# -----------------------------
# Jobs
# -----------------------------

@app.post("/replications", status_code=202)
def start_replication(
    req: Dict[str, Any],
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    """Validate and accept a request; the run continues in the background."""
    _require_api_key(x_api_key)
    service = _get_service()
    try:
        request = ReplicationRequest.model_validate(req)
        return {"ok": True, **service.start(request)}
    except Exception as e:
        raise _http_error(e)


@app.get("/replications/{job_id}")
def replication_status(
    job_id: str,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    return _get_service().status(job_id)


@app.post("/replications/{job_id}/cancel")
def cancel_replication(
    job_id: str,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    return _get_service().cancel(job_id)


# -----------------------------
# Credentials / scopes / quota
# -----------------------------

@app.post("/credentials", status_code=201)
def register_credential(
    body: CredentialIn,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    service = _get_service()
    try:
        out = service.register_credential(body.credential_id, body.secret, body.owner_scope, body.hourly_capacity)
        return {"ok": True, "credential": out}
    except Exception as e:
        raise _http_error(e)


@app.post("/credentials/{credential_id}/status")
def set_credential_status(
    credential_id: str,
    body: CredentialStatusIn,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    service = _get_service()
    try:
        return {"ok": True, "credential": service.set_credential_status(credential_id, body.status)}
    except Exception as e:
        raise _http_error(e)


@app.post("/scopes", status_code=201)
def register_scope(
    body: ScopeIn,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    service = _get_service()
    try:
        return {"ok": True, "scope": service.register_scope(body.scope_id, body.owner_scope, body.name)}
    except Exception as e:
        raise _http_error(e)


@app.get("/quota")
def quota(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    return {"ok": True, "credentials": _get_service().quota()}


# -----------------------------
# Failure ledger
# -----------------------------

@app.get("/failures")
def failures(
    job_id: Optional[str] = None,
    target_ref: Optional[str] = None,
    stage: Optional[str] = None,
    classification: Optional[str] = None,
    limit: int = 200,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    """Debug endpoint: most recent ledger records matching the filters."""
    _require_api_key(x_api_key)
    rows = _get_service().failures(
        job_id=job_id, target_ref=target_ref, stage=stage, classification=classification, limit=int(limit),
    )
    return {"ok": True, "count": len(rows), "failures": rows}


@app.get("/failures/stats")
def failure_stats(
    job_id: Optional[str] = None,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    return {"ok": True, **_get_service().ledger.stats(job_id)}


# -----------------------------
# Selection
# -----------------------------

@app.get("/selection")
def get_selection(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    return {"ok": True, **_get_service().selection.snapshot()}


@app.put("/selection")
def switch_selection(
    body: SelectionIn,
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Dict[str, Any]:
    _require_api_key(x_api_key)
    service = _get_service()
    try:
        service.selection.switch(**body.model_dump(exclude_unset=True))
        return {"ok": True, **service.selection.snapshot()}
    except Exception as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
