from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from app.domain.flows.effects import Effect


class InstanceStatus(str, Enum):
    running = "running"
    suspended = "suspended"
    completed = "completed"
    failed = "failed"
    abandoned = "abandoned"


LIVE_STATUSES = (InstanceStatus.running, InstanceStatus.suspended)


class SuspendReason(str, Enum):
    awaiting_reply = "awaiting_reply"
    awaiting_timer = "awaiting_timer"


class FailureReason(str, Enum):
    generation_unavailable = "generation_unavailable"
    assignment_unavailable = "assignment_unavailable"
    missing_false_branch = "missing_false_branch"
    flow_loop_detected = "flow_loop_detected"
    flow_not_found = "flow_not_found"
    node_not_found = "node_not_found"
    step_limit_exceeded = "step_limit_exceeded"
    invalid_configuration = "invalid_configuration"


class HistoryEntry(BaseModel):
    role: Literal["lead", "bot"]
    text: str


class FlowInstanceState(BaseModel):
    """Estado retomável de um lead percorrendo um flow (uma versão publicada)."""

    id: str
    lead_id: int
    flow_id: int
    flow_version: int
    cursor_node_id: Optional[str] = None
    status: InstanceStatus = InstanceStatus.running
    suspend_reason: Optional[SuspendReason] = None
    failure_reason: Optional[FailureReason] = None
    failure_detail: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    history: List[HistoryEntry] = Field(default_factory=list)
    last_inbound_text: Optional[str] = None
    wake_at: Optional[datetime] = None
    epoch: int = 0
    last_trigger_id: Optional[str] = None
    last_effects: List[Effect] = Field(default_factory=list)

    @classmethod
    def new(
        cls,
        *,
        lead_id: int,
        flow_id: int,
        flow_version: int,
        variables: Optional[Dict[str, str]] = None,
    ) -> "FlowInstanceState":
        return cls(
            id=str(uuid.uuid4()),
            lead_id=int(lead_id),
            flow_id=int(flow_id),
            flow_version=int(flow_version),
            variables=dict(variables or {}),
        )

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


# --- triggers ---------------------------------------------------------------


class InboundMessage(BaseModel):
    type: Literal["inbound_message"] = "inbound_message"
    trigger_id: str
    lead_id: int
    text: str
    received_at: datetime


class TimerFired(BaseModel):
    type: Literal["timer_fired"] = "timer_fired"
    trigger_id: str
    instance_id: str
    epoch: int
    fired_at: datetime

    @classmethod
    def for_instance(cls, instance_id: str, epoch: int, fired_at: datetime) -> "TimerFired":
        # id determinístico: disparos duplicados do mesmo timer colapsam no mesmo recibo
        return cls(trigger_id=f"timer:{instance_id}:{int(epoch)}", instance_id=instance_id, epoch=int(epoch), fired_at=fired_at)


class ManualRetry(BaseModel):
    type: Literal["manual_retry"] = "manual_retry"
    trigger_id: str
    instance_id: str
    requested_by: Optional[str] = None


Trigger = Union[InboundMessage, TimerFired, ManualRetry]
