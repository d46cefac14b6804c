"""templates.py

Replication template and inbound request models (strict JSON spec).

A template describes one copy: a parent object (ad set) and one dependent
child object (ad) under a container (campaign). Every child references the
same creative, so all replicas derive from one canonical asset.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from error_policy import TemplateReadError
from meta_graph import MetaAPIError, normalize_ad_account_id

# Fields copied from a source ad set when a duplicate job reads its template.
PARENT_READ_FIELDS = (
    "name,campaign_id,targeting,daily_budget,lifetime_budget,optimization_goal,billing_event,"
    "bid_strategy,bid_amount,promoted_object,attribution_spec,start_time,end_time,destination_type,status"
)
_PARENT_COPY_FIELDS = [f for f in PARENT_READ_FIELDS.split(",") if f not in {"campaign_id"}]


class ReplicationTemplate(BaseModel):
    ad_account_id: str

    # Container (campaign). Required unless container_fields lets us create one (deploy).
    container_id: Optional[str] = None
    container_fields: Optional[Dict[str, Any]] = None
    container_edge: str = "campaigns"

    # The original parent; excluded from orphan cleanup and trimming.
    source_parent_id: Optional[str] = None

    parent_edge: str = "adsets"
    parent_fields: Dict[str, Any]
    parent_link_field: str = "campaign_id"

    child_edge: str = "ads"
    child_fields: Dict[str, Any]
    child_link_field: str = "adset_id"

    # Shared creative: every child is created with {"creative_id": creative_id}.
    creative_id: Optional[str] = None

    copy_name_suffix: str = " - Copy {n}"

    @field_validator("ad_account_id", mode="before")
    @classmethod
    def _normalize_account(cls, v):
        return normalize_ad_account_id(str(v or ""))

    @model_validator(mode="after")
    def _check_names(self) -> "ReplicationTemplate":
        if not str(self.parent_fields.get("name") or "").strip():
            raise ValueError("parent_fields.name is required")
        if not str(self.child_fields.get("name") or "").strip():
            raise ValueError("child_fields.name is required")
        if "{n}" not in self.copy_name_suffix:
            raise ValueError("copy_name_suffix must contain {n}")
        return self

    @model_validator(mode="after")
    def _check_creative(self) -> "ReplicationTemplate":
        existing = self.child_fields.get("creative")
        if self.creative_id:
            if isinstance(existing, dict) and existing.get("creative_id") not in (None, self.creative_id):
                raise ValueError("child_fields.creative conflicts with creative_id")
        elif isinstance(existing, dict) and existing.get("creative_id"):
            self.creative_id = str(existing["creative_id"])
        if not self.creative_id:
            raise ValueError("creative_id is required so every copy shares one creative")
        return self

    @model_validator(mode="after")
    def _check_container(self) -> "ReplicationTemplate":
        if not self.container_id and not self.container_fields:
            raise ValueError("Provide container_id or container_fields")
        if self.container_fields is not None and not str(self.container_fields.get("name") or "").strip():
            raise ValueError("container_fields.name is required")
        return self

    # -----------------------------
    # Bodies
    # -----------------------------

    def copy_name(self, base: str, copy_number: int) -> str:
        return f"{base}{self.copy_name_suffix.format(n=copy_number)}"

    def parent_path(self) -> str:
        return f"{self.ad_account_id}/{self.parent_edge}"

    def child_path(self) -> str:
        return f"{self.ad_account_id}/{self.child_edge}"

    def container_path(self) -> str:
        return f"{self.ad_account_id}/{self.container_edge}"

    def parent_body(self, copy_number: int, container_id: str) -> Dict[str, Any]:
        body = copy.deepcopy(self.parent_fields)
        body["name"] = self.copy_name(str(body["name"]), copy_number)
        body[self.parent_link_field] = container_id
        return body

    def child_body(self, copy_number: int, parent_ref: str) -> Dict[str, Any]:
        """`parent_ref` is a real id or a same-batch reference like {result=op-0:$.id}."""
        body = copy.deepcopy(self.child_fields)
        body["name"] = self.copy_name(str(body["name"]), copy_number)
        body[self.child_link_field] = parent_ref
        body["creative"] = {"creative_id": self.creative_id}
        return body

    def with_promoted_object(self, *, page_id: Optional[str] = None, pixel_id: Optional[str] = None) -> "ReplicationTemplate":
        """Swap page / pixel ids that the parent's promoted_object already names."""
        promoted = dict(self.parent_fields.get("promoted_object") or {})
        changed = False
        for key, value in (("page_id", page_id), ("pixel_id", pixel_id)):
            if value and key in promoted and promoted[key] != value:
                promoted[key] = value
                changed = True
        if not changed:
            return self
        data = self.model_dump()
        data["parent_fields"]["promoted_object"] = promoted
        return ReplicationTemplate.model_validate(data)

    def for_target(
        self, ad_account_id: str, *, page_id: Optional[str] = None, pixel_id: Optional[str] = None
    ) -> "ReplicationTemplate":
        """Template re-pointed at another ad account; the container is created there."""
        if not self.container_fields:
            raise ValueError("Deploying to another account requires container_fields")
        data = self.model_dump()
        data["ad_account_id"] = ad_account_id
        data["container_id"] = None
        data["source_parent_id"] = None
        return ReplicationTemplate.model_validate(data).with_promoted_object(page_id=page_id, pixel_id=pixel_id)


def load_template_from_parent(client: Any, parent_id: str, *, ad_account_id: str) -> ReplicationTemplate:
    """Build a template from an existing ad set and its first ad's creative."""
    try:
        parent = client.get_object(parent_id, PARENT_READ_FIELDS)
        children, _ = client.list_edge_page(parent_id, "ads", fields="name,creative{id}", limit=1)
    except MetaAPIError as e:
        raise TemplateReadError(f"Could not read template parent {parent_id}: {e}") from e

    if not parent.get("campaign_id"):
        raise TemplateReadError(f"Parent {parent_id} has no campaign_id")
    if not children:
        raise TemplateReadError(f"Parent {parent_id} has no child to copy a creative from")
    child = children[0]
    creative_id = ((child.get("creative") or {}).get("id"))
    if not creative_id:
        raise TemplateReadError(f"Child {child.get('id')} has no creative")

    parent_fields = {k: parent[k] for k in _PARENT_COPY_FIELDS if parent.get(k) not in (None, "")}
    # Copies start paused like the platform's own duplicate flow.
    parent_fields["status"] = "PAUSED"
    try:
        return ReplicationTemplate(
            ad_account_id=ad_account_id,
            container_id=str(parent["campaign_id"]),
            source_parent_id=parent_id,
            parent_fields=parent_fields,
            child_fields={"name": child.get("name") or parent_fields.get("name", "Ad"), "status": "PAUSED"},
            creative_id=str(creative_id),
        )
    except ValueError as e:
        raise TemplateReadError(f"Template built from {parent_id} is invalid: {e}") from e


# -----------------------------
# Inbound request models
# -----------------------------

class TargetSpec(BaseModel):
    ad_account_id: str
    page_id: Optional[str] = None
    pixel_id: Optional[str] = None
    credential_id: Optional[str] = None

    @field_validator("ad_account_id", mode="before")
    @classmethod
    def _normalize_account(cls, v):
        return normalize_ad_account_id(str(v or ""))


class ReplicationRequest(BaseModel):
    kind: Literal["duplicate", "multiply", "deploy"] = "multiply"
    template: Optional[ReplicationTemplate] = None

    # duplicate jobs may read their template from an existing parent instead.
    source_parent_id: Optional[str] = None
    ad_account_id: Optional[str] = None

    copies_to_create: Optional[int] = Field(default=None, ge=0)
    total_desired_count: Optional[int] = Field(default=None, ge=1)

    targets: Optional[List[TargetSpec]] = None
    mode: Literal["parallel", "sequential"] = "parallel"
    strategy: Literal["batch", "sequential", "adaptive"] = "adaptive"

    # Active-selection overrides (form level).
    page_id: Optional[str] = None
    pixel_id: Optional[str] = None
    credential_id: Optional[str] = None

    @field_validator("ad_account_id", mode="before")
    @classmethod
    def _normalize_account(cls, v):
        return normalize_ad_account_id(str(v)) if v else None

    @model_validator(mode="after")
    def _check_count(self) -> "ReplicationRequest":
        if (self.copies_to_create is None) == (self.total_desired_count is None):
            raise ValueError("Provide exactly one of copies_to_create or total_desired_count")
        return self

    @model_validator(mode="after")
    def _check_template_source(self) -> "ReplicationRequest":
        if self.template is None:
            if self.kind != "duplicate" or not self.source_parent_id or not self.ad_account_id:
                raise ValueError("template is required unless kind=duplicate with source_parent_id and ad_account_id")
        if self.targets:
            if self.kind != "deploy":
                raise ValueError("targets are only supported for kind=deploy")
            if self.template is None or not self.template.container_fields:
                raise ValueError("deploy requires a template with container_fields")
        elif self.kind == "deploy" and (self.template is None or not self.template.container_fields):
            raise ValueError("deploy requires a template with container_fields")
        return self
