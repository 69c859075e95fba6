from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class FlowOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    trigger_keywords: List[str] = Field(default_factory=list)
    is_active: bool
    published_version: int
    published_at: Optional[str] = None
    published_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class FlowDetailOut(FlowOut):
    draft: Dict[str, Any]


class FlowUpsertIn(BaseModel):
    # documento completo do editor (mesmo formato do import/export)
    document: Dict[str, Any]


class FlowPublishIn(BaseModel):
    published_by: Optional[str] = None


class FlowPublishOut(BaseModel):
    ok: bool = True
    flow_id: int
    published_version: int


class FlowActiveIn(BaseModel):
    is_active: bool


class FlowImportIn(BaseModel):
    document: Dict[str, Any]
    publish: bool = False
    published_by: Optional[str] = None


class FlowInstanceOut(BaseModel):
    id: str
    lead_id: int
    flow_id: int
    flow_version: int
    cursor_node_id: Optional[str] = None
    status: str
    suspend_reason: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_detail: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    wake_at: Optional[str] = None
    epoch: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    archived_at: Optional[str] = None


class FlowInstanceRetryIn(BaseModel):
    requested_by: Optional[str] = None


class FlowInstanceActionOut(BaseModel):
    ok: bool = True
    outcome: str
    instance: FlowInstanceOut
    effects: List[Dict[str, Any]] = Field(default_factory=list)
