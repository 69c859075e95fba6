from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


MAIN_PORT = "main"
FALSE_PORT = "false"
MAX_BUTTONS = 3


class NodeKind(str, Enum):
    message = "message"
    question = "question"
    condition = "condition"
    ai_action = "ai_action"
    tag = "tag"
    pipeline_transition = "pipeline_transition"
    assignment = "assignment"
    capture_field = "capture_field"
    wait = "wait"
    connect_flow = "connect_flow"


class AssignmentStrategy(str, Enum):
    round_robin = "round_robin"
    quota_deficit = "quota_deficit"
    manual = "manual"


class WaitUnit(str, Enum):
    minutes = "minutes"
    hours = "hours"
    days = "days"


def normalize_keyword(raw: str) -> str:
    return " ".join((raw or "").strip().lower().split())


class FlowButton(BaseModel):
    id: str
    label: str


# --- payloads -------------------------------------------------------------


class MessagePayload(BaseModel):
    text: str = ""


class QuestionPayload(BaseModel):
    text: str = ""
    variable_name: Optional[str] = None


class CaptureFieldPayload(BaseModel):
    variable_name: str
    prompt: str = ""


class ConditionPayload(BaseModel):
    predicate_kind: str
    args: Dict[str, Any] = Field(default_factory=dict)


class AIActionPayload(BaseModel):
    prompt: str
    variable_name: Optional[str] = None
    send_to_lead: bool = True
    history_limit: Optional[int] = Field(default=None, ge=0)


class TagPayload(BaseModel):
    tag: str


class PipelineTransitionPayload(BaseModel):
    stage: str


class AssignmentPayload(BaseModel):
    strategy: AssignmentStrategy = AssignmentStrategy.round_robin
    manual_advisor_id: Optional[int] = None
    template: Optional[str] = None


class WaitPayload(BaseModel):
    """Espera relativa (`relative_amount` + `unit`) ou agendada (`scheduled_days` + `time_of_day`)."""

    relative_amount: Optional[int] = Field(default=None, ge=0)
    unit: Optional[WaitUnit] = None
    scheduled_days: Optional[int] = Field(default=None, ge=0)
    time_of_day: Optional[str] = None

    @property
    def is_relative(self) -> bool:
        return self.relative_amount is not None


class ConnectFlowPayload(BaseModel):
    target_flow_id: int


# --- nodes ----------------------------------------------------------------


class _NodeBase(BaseModel):
    id: str
    label: Optional[str] = None
    position: Optional[Dict[str, float]] = None

    @field_validator("id")
    @classmethod
    def _strip_id(cls, v: str) -> str:
        return (v or "").strip()

    def ports(self) -> List[str]:
        return [MAIN_PORT]


class _ButtonNodeBase(_NodeBase):
    buttons: List[FlowButton] = Field(default_factory=list)

    def ports(self) -> List[str]:
        return [MAIN_PORT] + [b.id for b in self.buttons]


class MessageNode(_ButtonNodeBase):
    kind: Literal["message"] = "message"
    payload: MessagePayload = Field(default_factory=MessagePayload)


class QuestionNode(_ButtonNodeBase):
    kind: Literal["question"] = "question"
    payload: QuestionPayload = Field(default_factory=QuestionPayload)


class CaptureFieldNode(_NodeBase):
    kind: Literal["capture_field"] = "capture_field"
    payload: CaptureFieldPayload


class ConditionNode(_NodeBase):
    kind: Literal["condition"] = "condition"
    payload: ConditionPayload

    def ports(self) -> List[str]:
        return [MAIN_PORT, FALSE_PORT]


class AIActionNode(_NodeBase):
    kind: Literal["ai_action"] = "ai_action"
    payload: AIActionPayload


class TagNode(_NodeBase):
    kind: Literal["tag"] = "tag"
    payload: TagPayload


class PipelineTransitionNode(_NodeBase):
    kind: Literal["pipeline_transition"] = "pipeline_transition"
    payload: PipelineTransitionPayload


class AssignmentNode(_NodeBase):
    kind: Literal["assignment"] = "assignment"
    payload: AssignmentPayload = Field(default_factory=AssignmentPayload)


class WaitNode(_NodeBase):
    kind: Literal["wait"] = "wait"
    payload: WaitPayload


class ConnectFlowNode(_NodeBase):
    kind: Literal["connect_flow"] = "connect_flow"
    payload: ConnectFlowPayload


FlowNode = Annotated[
    Union[
        MessageNode,
        QuestionNode,
        CaptureFieldNode,
        ConditionNode,
        AIActionNode,
        TagNode,
        PipelineTransitionNode,
        AssignmentNode,
        WaitNode,
        ConnectFlowNode,
    ],
    Field(discriminator="kind"),
]

BUTTON_KINDS = {NodeKind.message, NodeKind.question}


class FlowEdge(BaseModel):
    id: str
    source: str = Field(validation_alias=AliasChoices("source", "source_node_id", "sourceNodeId"))
    source_port: str = Field(
        default=MAIN_PORT,
        validation_alias=AliasChoices("source_port", "sourcePort", "source_handle", "sourceHandle"),
    )
    target: str = Field(validation_alias=AliasChoices("target", "target_node_id", "targetNodeId"))

    @field_validator("source_port", mode="before")
    @classmethod
    def _default_port(cls, v):
        if v is None:
            return MAIN_PORT
        raw = str(v).strip()
        return raw or MAIN_PORT


class FlowDocument(BaseModel):
    """Documento serializável de um flow (import/export e rascunho do editor)."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: Optional[str] = None
    trigger_keywords: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("trigger_keywords", "triggerKeywords"),
    )
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))
    start_node_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("start_node_id", "startNodeId"),
    )
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)

    @field_validator("trigger_keywords")
    @classmethod
    def _normalize_keywords(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for raw in v or []:
            k = normalize_keyword(str(raw))
            if k and k not in out:
                out.append(k)
        return out

    def node_by_id(self) -> Dict[str, FlowNode]:
        return {n.id: n for n in self.nodes}

    def outgoing(self, node_id: str, port: str = MAIN_PORT) -> Optional[FlowEdge]:
        for e in self.edges:
            if e.source == node_id and e.source_port == port:
                return e
        return None

    def root_node_ids(self) -> List[str]:
        targets = {e.target for e in self.edges}
        return [n.id for n in self.nodes if n.id not in targets]

    def start_node(self) -> Optional[FlowNode]:
        by_id = self.node_by_id()
        if self.start_node_id:
            return by_id.get(self.start_node_id)
        roots = self.root_node_ids()
        if len(roots) != 1:
            return None
        return by_id.get(roots[0])

    def export(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
