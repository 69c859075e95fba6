"""
Interfaces dos colaboradores externos consumidos pelo flow engine e pelo runtime.

As implementações de referência ficam em `app/services/` (Gemini via httpx,
resolver de assessores em SQL, gateway de CRM em SQL, dispatcher de efeitos).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Protocol, Tuple

from app.domain.flows.effects import Effect
from app.domain.flows.instance import HistoryEntry
from app.domain.flows.schema import AssignmentStrategy, FlowDocument


@dataclass(frozen=True)
class FlowSnapshot:
    """Versão publicada (imutável) de um flow."""

    flow_id: int
    version: int
    document: FlowDocument


class FlowSource(Protocol):
    def get_snapshot(self, flow_id: int, version: Optional[int] = None) -> Optional[FlowSnapshot]:
        """Retorna a versão pedida, ou a última publicada quando `version` é None."""
        ...


class TextGenerator(Protocol):
    def generate(self, prompt: str, history: List[HistoryEntry]) -> str:
        """Retorna o texto gerado ou levanta TextGenerationError."""
        ...


class AssignmentResolver(Protocol):
    def resolve(
        self,
        strategy: AssignmentStrategy,
        lead_id: int,
        *,
        manual_advisor_id: Optional[int] = None,
    ) -> Optional[int]:
        """Retorna o id do assessor, ou None quando nenhum está disponível."""
        ...


class CrmGateway(Protocol):
    def update_lead_field(self, lead_id: int, field: str, value: Optional[str], updated_at: datetime) -> bool:
        """Aplica o campo no lead do CRM (last-writer-wins). True se aplicado."""
        ...

    def read_predefined(self, lead_id: int) -> Dict[str, Tuple[Optional[str], Optional[datetime]]]:
        ...


class ActionDispatcher(Protocol):
    def dispatch(self, effect: Effect, idempotency_key: Optional[str] = None) -> bool:
        """Executa um efeito; True em sucesso. Falhas levantam ActionDispatchError.

        `idempotency_key` identifica o efeito (`trigger_id:índice`) para quem
        precisa descartar reentregas.
        """
        ...
