from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ValidationIssue:
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {"code": self.code, "message": self.message, "node_id": self.node_id, "edge_id": self.edge_id}


class FlowError(Exception):
    pass


class ConfigurationError(FlowError):
    """Grafo malformado. Bloqueia a publicação; nunca chega ao runtime publicado."""

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = list(issues)
        summary = "; ".join(f"{i.code}({i.node_id or i.edge_id or '-'})" for i in self.issues[:5])
        super().__init__(f"invalid_flow_definition: {summary}")


class TriggerMismatchError(FlowError):
    """Trigger entregue à instância errada: erro de programação, não do usuário."""


class CollaboratorFailure(FlowError):
    pass


class TextGenerationError(CollaboratorFailure):
    pass


class AssignmentError(CollaboratorFailure):
    pass


class FlowNotFoundError(FlowError):
    pass


class FlowBusyError(FlowError):
    """Lock da instância não obtido dentro do timeout."""


@dataclass
class ActionDispatchError(FlowError):
    effect_type: str
    detail: str = ""
    transient: bool = True
    extra: Dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"{self.effect_type}: {self.detail}"
