from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.deps import get_db, require_admin_token
from app.api.schemas.flows import (
    FlowActiveIn,
    FlowDetailOut,
    FlowImportIn,
    FlowOut,
    FlowPublishIn,
    FlowPublishOut,
    FlowUpsertIn,
)
from app.domain.flows.models import Flow
from app.domain.flows.validation import parse_document
from app.services.flow_definition_service import FlowDefinitionService


router = APIRouter(dependencies=[Depends(require_admin_token)])


def _dt(v) -> Optional[str]:
    return v.isoformat() if v else None


def _flow_to_out(row: Flow) -> FlowOut:
    return FlowOut(
        id=int(row.id),
        name=str(row.name),
        description=row.description,
        trigger_keywords=list(row.trigger_keywords or []),
        is_active=bool(row.is_active),
        published_version=int(row.published_version or 0),
        published_at=_dt(row.published_at),
        published_by=row.published_by or None,
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
    )


def _flow_to_detail_out(row: Flow) -> FlowDetailOut:
    base = _flow_to_out(row)
    return FlowDetailOut(**base.model_dump(), draft=dict(row.draft_definition or {}))


def _conflict(e: ValueError) -> HTTPException:
    code = str(e)
    return HTTPException(status_code=409 if code == "flow_name_conflict" else 400, detail=code)


@router.get("/flows", response_model=List[FlowOut])
def list_flows(db: Session = Depends(get_db)):
    return [_flow_to_out(r) for r in FlowDefinitionService(db).list_flows()]


@router.get("/flows/{flow_id}", response_model=FlowDetailOut)
def get_flow(flow_id: int, db: Session = Depends(get_db)):
    return _flow_to_detail_out(FlowDefinitionService(db).get_flow(flow_id))


@router.post("/flows", response_model=FlowOut)
def create_or_update_flow_by_name(payload: FlowUpsertIn, db: Session = Depends(get_db)):
    doc = parse_document(payload.document)
    try:
        row = FlowDefinitionService(db).save_draft(doc)
    except ValueError as e:
        raise _conflict(e)
    return _flow_to_out(row)


@router.put("/flows/{flow_id}", response_model=FlowOut)
def update_flow_draft(flow_id: int, payload: FlowUpsertIn, db: Session = Depends(get_db)):
    doc = parse_document(payload.document)
    try:
        row = FlowDefinitionService(db).save_draft(doc, flow_id=flow_id)
    except ValueError as e:
        raise _conflict(e)
    return _flow_to_out(row)


@router.post("/flows/{flow_id}/publish", response_model=FlowPublishOut)
def publish_flow(flow_id: int, payload: Optional[FlowPublishIn] = None, db: Session = Depends(get_db)):
    by = payload.published_by if payload else None
    version = FlowDefinitionService(db).publish(flow_id, published_by=by)
    return FlowPublishOut(flow_id=int(version.flow_id), published_version=int(version.version))


@router.post("/flows/{flow_id}/active", response_model=FlowOut)
def set_flow_active(flow_id: int, payload: FlowActiveIn, db: Session = Depends(get_db)):
    return _flow_to_out(FlowDefinitionService(db).set_active(flow_id, payload.is_active))


@router.get("/flows/{flow_id}/export")
def export_flow(flow_id: int, version: Optional[int] = None, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return FlowDefinitionService(db).export_flow(flow_id, version=version)


@router.post("/flows/import", response_model=FlowOut)
def import_flow(payload: FlowImportIn, db: Session = Depends(get_db)):
    try:
        row = FlowDefinitionService(db).import_flow(payload.document, publish=payload.publish, published_by=payload.published_by)
    except ValueError as e:
        raise _conflict(e)
    return _flow_to_out(row)
