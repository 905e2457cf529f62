from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict


class OpenInstanceRequest(BaseModel):
    entity_kind: str
    mode: Literal["create", "edit"] = "create"
    entity_id: Optional[str] = None
    snapshot: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="forbid")


class BufferPatchRequest(BaseModel):
    patch: Dict[str, Any] = {}
    replace: bool = False

    model_config = ConfigDict(extra="forbid")


class ModalInstancePublicResponse(BaseModel):
    id: str
    entity_kind: str
    mode: str
    minimized: bool
    entity_id: Optional[str] = None


class InstanceListPublicResponse(BaseModel):
    instance_count: int
    instances: list[ModalInstancePublicResponse]


class BufferPublicResponse(BaseModel):
    instance_id: str
    seed_source: str
    dirty: bool
    submitting: bool
    data: Dict[str, Any]


class SubmitPublicResponse(BaseModel):
    status: str
    instance_id: str
    entity: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="allow")


class TrayEntryPublicResponse(BaseModel):
    kind: str
    modal_id: str
    entity_kind: str
    label: str
    is_edit: bool
    has_saved_entity: bool
    has_draft: bool
    updated_at: Optional[datetime] = None


class TrayPublicResponse(BaseModel):
    minimized_count: int
    orphan_count: int
    entries: list[TrayEntryPublicResponse]


class TrayActionPublicResponse(BaseModel):
    status: str
    affected: list[str]
