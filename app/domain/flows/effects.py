"""
Efeitos declarativos devolvidos pelo FlowEngine.

O engine não executa I/O: descreve o que precisa acontecer e o runtime
(ou o worker de efeitos) executa cada item uma única vez.
"""
from __future__ import annotations

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class SendMessage(BaseModel):
    type: Literal["send_message"] = "send_message"
    lead_id: int
    text: str
    buttons: List[str] = Field(default_factory=list)


class NotifyAdvisor(BaseModel):
    type: Literal["notify_advisor"] = "notify_advisor"
    advisor_id: int
    lead_id: int
    template: Optional[str] = None


class UpdateCrm(BaseModel):
    type: Literal["update_crm"] = "update_crm"
    lead_id: int
    field: str
    value: Optional[str] = None


class SetVariable(BaseModel):
    type: Literal["set_variable"] = "set_variable"
    lead_id: int
    flow_id: int
    key: str
    value: str


class AssignAdvisor(BaseModel):
    """Atribuição aceita pelo engine; gravada pelo runtime na transação do avanço."""

    type: Literal["assign_advisor"] = "assign_advisor"
    lead_id: int
    advisor_id: int
    strategy: str


class OperatorAlert(BaseModel):
    type: Literal["operator_alert"] = "operator_alert"
    lead_id: int
    instance_id: str
    code: str
    detail: Optional[str] = None


Effect = Annotated[
    Union[SendMessage, NotifyAdvisor, UpdateCrm, SetVariable, AssignAdvisor, OperatorAlert],
    Field(discriminator="type"),
]

# aplicados pelo runtime no mesmo commit do avanço; não passam pelo dispatcher
TRANSACTIONAL_EFFECTS = (SetVariable, AssignAdvisor)

_effects_adapter = TypeAdapter(List[Effect])


def dump_effects(effects: List[Effect]) -> List[dict]:
    return [e.model_dump(mode="json") for e in effects]


def load_effects(raw: Optional[List[dict]]) -> List[Effect]:
    return list(_effects_adapter.validate_python(raw or []))


def effect_key(trigger_id: str, index: int) -> str:
    """Chave de idempotência do efeito `index` produzido por `trigger_id`."""
    return f"{trigger_id}:{index}"
