"""Colaboradores falsos usados pelos testes do engine e do runtime."""
import threading
import time
from typing import Dict, List, Optional

from app.domain.flows.collaborators import FlowSnapshot
from app.domain.flows.errors import ActionDispatchError
from app.domain.flows.schema import FlowDocument


class FakeTextGenerator:
    """Gerador determinístico: devolve `reply` (ou levanta `error`) e registra as chamadas."""

    def __init__(self, reply: str = "texto gerado", error: Optional[Exception] = None, delay: float = 0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []
        self.events: List[str] = []
        self._lock = threading.Lock()

    def generate(self, prompt, history):
        with self._lock:
            self.calls.append((prompt, list(history)))
            self.events.append("generate_start")
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.events.append("generate_end")
        if self.error is not None:
            raise self.error
        return self.reply


class FakeResolver:
    def __init__(self, advisor_id: Optional[int] = None, error: Optional[Exception] = None):
        self.advisor_id = advisor_id
        self.error = error
        self.calls: List[tuple] = []

    def resolve(self, strategy, lead_id, *, manual_advisor_id=None):
        self.calls.append((strategy, lead_id, manual_advisor_id))
        if self.error is not None:
            raise self.error
        return self.advisor_id


class FakeFlowSource:
    """Flows em memória: {flow_id: FlowDocument | dict}, todos na versão 1."""

    def __init__(self, flows: Optional[Dict[int, object]] = None):
        self.flows: Dict[int, FlowDocument] = {}
        for flow_id, doc in (flows or {}).items():
            self.add(flow_id, doc)

    def add(self, flow_id: int, doc) -> None:
        self.flows[int(flow_id)] = doc if isinstance(doc, FlowDocument) else FlowDocument.model_validate(doc)

    def get_snapshot(self, flow_id, version=None):
        doc = self.flows.get(int(flow_id))
        if doc is None:
            return None
        return FlowSnapshot(flow_id=int(flow_id), version=1, document=doc)


class RecordingDispatcher:
    """Registra os efeitos entregues; `fail_next[tipo] = n` faz as próximas n entregas desse tipo falharem."""

    def __init__(self):
        self.effects: List[object] = []
        self.keys: List[Optional[str]] = []
        self.fail_next: Dict[str, int] = {}

    def dispatch(self, effect, idempotency_key=None) -> bool:
        if self.fail_next.get(effect.type, 0) > 0:
            self.fail_next[effect.type] -= 1
            raise ActionDispatchError(effect_type=effect.type, detail="transport_down", transient=True)
        self.effects.append(effect)
        self.keys.append(idempotency_key)
        return True


