from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.api.deps import get_db, get_runtime, require_admin_token
from app.api.schemas.flows import FlowInstanceActionOut, FlowInstanceOut, FlowInstanceRetryIn
from app.domain.flows.effects import dump_effects
from app.domain.flows.models import FlowInstanceRecord
from app.services.flow_runtime import FlowRuntime


router = APIRouter(dependencies=[Depends(require_admin_token)])


def _dt(v) -> Optional[str]:
    return v.isoformat() if v else None


def _instance_to_out(row: FlowInstanceRecord) -> FlowInstanceOut:
    return FlowInstanceOut(
        id=row.id,
        lead_id=int(row.lead_id),
        flow_id=int(row.flow_id),
        flow_version=int(row.flow_version),
        cursor_node_id=row.cursor_node_id,
        status=row.status,
        suspend_reason=row.suspend_reason,
        failure_reason=row.failure_reason,
        failure_detail=row.failure_detail,
        variables=dict(row.variables or {}),
        wake_at=_dt(row.wake_at),
        epoch=int(row.epoch or 0),
        created_at=_dt(row.created_at),
        updated_at=_dt(row.updated_at),
        archived_at=_dt(row.archived_at),
    )


def _get_row(db: Session, instance_id: str) -> FlowInstanceRecord:
    row = db.get(FlowInstanceRecord, instance_id)
    if row is None:
        raise HTTPException(status_code=404, detail="instance_not_found")
    return row


@router.get("/flow-instances", response_model=List[FlowInstanceOut])
def list_instances(
    lead_id: Optional[int] = None,
    flow_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    stmt = select(FlowInstanceRecord)
    if lead_id is not None:
        stmt = stmt.where(FlowInstanceRecord.lead_id == int(lead_id))
    if flow_id is not None:
        stmt = stmt.where(FlowInstanceRecord.flow_id == int(flow_id))
    if status:
        stmt = stmt.where(FlowInstanceRecord.status == status)
    stmt = stmt.order_by(FlowInstanceRecord.created_at.desc()).limit(max(1, min(int(limit), 500)))
    return [_instance_to_out(r) for r in db.execute(stmt).scalars().all()]


@router.get("/flow-instances/{instance_id}", response_model=FlowInstanceOut)
def get_instance(instance_id: str, db: Session = Depends(get_db)):
    return _instance_to_out(_get_row(db, instance_id))


@router.post("/flow-instances/{instance_id}/retry", response_model=FlowInstanceActionOut)
def retry_instance(
    instance_id: str,
    payload: Optional[FlowInstanceRetryIn] = None,
    db: Session = Depends(get_db),
    runtime: FlowRuntime = Depends(get_runtime),
):
    _get_row(db, instance_id)
    try:
        result = runtime.retry(instance_id, requested_by=payload.requested_by if payload else None)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    db.expire_all()
    return FlowInstanceActionOut(
        outcome=result.outcome,
        instance=_instance_to_out(_get_row(db, instance_id)),
        effects=dump_effects(result.effects),
    )


@router.post("/flow-instances/{instance_id}/abandon", response_model=FlowInstanceActionOut)
def abandon_instance(
    instance_id: str,
    db: Session = Depends(get_db),
    runtime: FlowRuntime = Depends(get_runtime),
):
    _get_row(db, instance_id)
    try:
        runtime.abandon(instance_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    db.expire_all()
    return FlowInstanceActionOut(outcome="abandoned", instance=_instance_to_out(_get_row(db, instance_id)))
