from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import structlog

from app.core.config import settings
from app.domain.flows.collaborators import AssignmentResolver, FlowSnapshot, FlowSource, TextGenerator
from app.domain.flows.conditions import evaluate_condition
from app.domain.flows.effects import AssignAdvisor, Effect, NotifyAdvisor, OperatorAlert, SendMessage, SetVariable, UpdateCrm
from app.domain.flows.errors import ConfigurationError, TriggerMismatchError
from app.domain.flows.instance import (
    FailureReason,
    FlowInstanceState,
    HistoryEntry,
    InboundMessage,
    InstanceStatus,
    ManualRetry,
    SuspendReason,
    TimerFired,
    Trigger,
)
from app.domain.flows.schema import FALSE_PORT, MAIN_PORT, FlowNode, NodeKind, WaitPayload, WaitUnit, normalize_keyword

log = structlog.get_logger()

DEFAULT_TIME_OF_DAY = "09:00"

_TOKEN_RE = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")

# Chamadas síncronas a colaboradores (IA, atribuição) rodam aqui para poderem ter timeout.
_collaborator_pool = ThreadPoolExecutor(
    max_workers=settings.FLOW_COLLABORATOR_WORKERS, thread_name_prefix="flow-collaborator"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def render_text(template: str, variables: Dict[str, str]) -> str:
    """Substitui `{{var}}`; variável ausente vira string vazia."""
    return _TOKEN_RE.sub(lambda m: str(variables.get(m.group(1), "") or ""), template or "")


def compute_wake_at(payload: WaitPayload, now: datetime, tz_name: str) -> datetime:
    """Instante (UTC naive) em que um nó `wait` deve acordar."""
    if payload.is_relative:
        amount = int(payload.relative_amount or 0)
        unit = payload.unit or WaitUnit.minutes
        if unit == WaitUnit.hours:
            return now + timedelta(hours=amount)
        if unit == WaitUnit.days:
            return now + timedelta(days=amount)
        return now + timedelta(minutes=amount)

    tz = ZoneInfo(tz_name)
    local_now = now.replace(tzinfo=timezone.utc).astimezone(tz)
    hh, mm = (payload.time_of_day or DEFAULT_TIME_OF_DAY).strip().split(":")
    target_day = local_now.date() + timedelta(days=int(payload.scheduled_days or 0))
    candidate = datetime.combine(target_day, time(int(hh), int(mm)), tzinfo=tz)
    if candidate <= local_now:
        candidate = candidate + timedelta(days=1)
    return candidate.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class AdvanceResult:
    instance: FlowInstanceState
    effects: List[Effect] = field(default_factory=list)
    stale: bool = False
    replayed: bool = False


class _Fail(Exception):
    def __init__(self, reason: FailureReason, detail: Optional[str] = None):
        super().__init__(reason.value)
        self.reason = reason
        self.detail = detail


class FlowEngine:
    """Interpretador de flows publicados.

    Sem estado entre chamadas: recebe o estado da instância e o trigger,
    devolve o novo estado e a lista de efeitos. Não faz I/O próprio; IA e
    atribuição de assessor são chamadas aos colaboradores injetados.
    """

    def __init__(
        self,
        *,
        flows: FlowSource,
        assignment_resolver: AssignmentResolver,
        text_generator: TextGenerator,
        max_jump_depth: Optional[int] = None,
        max_steps: Optional[int] = None,
        ai_history_limit: Optional[int] = None,
        history_max: Optional[int] = None,
        collaborator_timeout: Optional[float] = None,
        tz_name: Optional[str] = None,
    ):
        self.flows = flows
        self.assignment_resolver = assignment_resolver
        self.text_generator = text_generator
        self.max_jump_depth = int(max_jump_depth if max_jump_depth is not None else settings.FLOW_MAX_JUMP_DEPTH)
        self.max_steps = int(max_steps if max_steps is not None else settings.FLOW_MAX_STEPS)
        self.ai_history_limit = int(ai_history_limit if ai_history_limit is not None else settings.FLOW_AI_HISTORY_LIMIT)
        self.history_max = int(history_max if history_max is not None else settings.FLOW_HISTORY_MAX)
        self.collaborator_timeout = float(
            collaborator_timeout if collaborator_timeout is not None else settings.FLOW_COLLABORATOR_TIMEOUT_SECS
        )
        self.tz_name = tz_name or settings.FLOW_TIMEZONE

    # ------------------------------------------------------------------ API

    def advance(self, instance: FlowInstanceState, trigger: Trigger, *, now: Optional[datetime] = None) -> AdvanceResult:
        self._check_trigger(instance, trigger)

        if instance.last_trigger_id and instance.last_trigger_id == trigger.trigger_id:
            log.info("flow_trigger_replayed", instance_id=instance.id, trigger_id=trigger.trigger_id)
            return AdvanceResult(
                instance=instance.model_copy(deep=True),
                effects=list(instance.last_effects),
                replayed=True,
            )

        if self._is_stale(instance, trigger):
            log.info(
                "flow_trigger_stale",
                instance_id=instance.id,
                trigger_id=trigger.trigger_id,
                status=instance.status.value,
                epoch=instance.epoch,
            )
            return AdvanceResult(instance=instance.model_copy(deep=True), effects=[], stale=True)

        now = as_naive_utc(now) if now is not None else utcnow()
        state = instance.model_copy(deep=True)
        effects: List[Effect] = []

        try:
            snapshot = self._load_snapshot(state.flow_id, state.flow_version)
            next_node_id, run = self._resume(state, snapshot, trigger, effects)
            if run:
                self._run(state, snapshot, next_node_id, effects, now)
        except _Fail as f:
            self._mark_failed(state, effects, f.reason, f.detail)

        state.last_trigger_id = trigger.trigger_id
        state.last_effects = list(effects)
        if len(state.history) > self.history_max:
            state.history = state.history[-self.history_max:]
        return AdvanceResult(instance=state, effects=effects)

    # --------------------------------------------------------------- resume

    def _check_trigger(self, instance: FlowInstanceState, trigger: Trigger) -> None:
        if isinstance(trigger, InboundMessage):
            if int(trigger.lead_id) != int(instance.lead_id):
                raise TriggerMismatchError(f"message for lead {trigger.lead_id} sent to instance of lead {instance.lead_id}")
            return
        if isinstance(trigger, (TimerFired, ManualRetry)):
            if trigger.instance_id != instance.id:
                raise TriggerMismatchError(f"{trigger.type} for {trigger.instance_id} sent to instance {instance.id}")
            return
        raise TriggerMismatchError(f"unsupported trigger {type(trigger).__name__}")

    def _is_stale(self, instance: FlowInstanceState, trigger: Trigger) -> bool:
        if isinstance(trigger, ManualRetry):
            return instance.status != InstanceStatus.failed
        if not instance.is_live:
            return True
        if isinstance(trigger, TimerFired):
            return (
                instance.status != InstanceStatus.suspended
                or instance.suspend_reason != SuspendReason.awaiting_timer
                or int(trigger.epoch) != int(instance.epoch)
            )
        return False

    def _resume(
        self,
        state: FlowInstanceState,
        snapshot: FlowSnapshot,
        trigger: Trigger,
        effects: List[Effect],
    ) -> tuple[Optional[str], bool]:
        """Consome o trigger no nó corrente. Retorna (próximo nó, continuar execução)."""
        doc = snapshot.document

        if isinstance(trigger, ManualRetry):
            log.info("flow_instance_retry", instance_id=state.id, node_id=state.cursor_node_id, by=trigger.requested_by)
            state.status = InstanceStatus.running
            state.failure_reason = None
            state.failure_detail = None
            return (state.cursor_node_id or self._start_node_id(snapshot), True)

        if isinstance(trigger, TimerFired):
            state.status = InstanceStatus.running
            state.suspend_reason = None
            state.wake_at = None
            return (self._target(doc, state.cursor_node_id, MAIN_PORT), True)

        # InboundMessage
        text = trigger.text or ""
        state.last_inbound_text = text
        state.history.append(HistoryEntry(role="lead", text=text))

        if state.cursor_node_id is None:
            state.status = InstanceStatus.running
            return (self._start_node_id(snapshot), True)

        if state.status == InstanceStatus.suspended and state.suspend_reason == SuspendReason.awaiting_timer:
            # Lead respondeu durante a espera: fica só no histórico.
            return (None, False)

        node = doc.node_by_id().get(state.cursor_node_id)
        if node is None:
            raise _Fail(FailureReason.node_not_found, state.cursor_node_id)

        if state.status == InstanceStatus.running:
            # Execução interrompida antes de persistir uma suspensão: reexecuta o nó.
            return (node.id, True)

        state.status = InstanceStatus.running
        state.suspend_reason = None

        variable_name = self._reply_variable(node)
        if variable_name:
            self._set_variable(state, effects, snapshot.flow_id, variable_name, text)

        port = self._reply_port(node, text)
        return (self._target(doc, node.id, port) or self._target(doc, node.id, MAIN_PORT), True)

    def _reply_variable(self, node: FlowNode) -> Optional[str]:
        if node.kind == NodeKind.capture_field:
            return (node.payload.variable_name or "").strip() or None
        if node.kind == NodeKind.question:
            return (node.payload.variable_name or "").strip() or None
        return None

    def _reply_port(self, node: FlowNode, text: str) -> str:
        buttons = getattr(node, "buttons", None) or []
        reply = normalize_keyword(text)
        for b in buttons:
            if reply and reply in (normalize_keyword(b.id), normalize_keyword(b.label)):
                return b.id
        return MAIN_PORT

    # ------------------------------------------------------------------ run

    def _run(
        self,
        state: FlowInstanceState,
        snapshot: FlowSnapshot,
        node_id: Optional[str],
        effects: List[Effect],
        now: datetime,
    ) -> None:
        steps = 0
        jumps = 0
        current_id = node_id

        while True:
            if current_id is None:
                self._mark_completed(state)
                return

            steps += 1
            if steps > self.max_steps:
                raise _Fail(FailureReason.step_limit_exceeded, f"more than {self.max_steps} nodes in one advance")

            doc = snapshot.document
            node = doc.node_by_id().get(current_id)
            if node is None:
                raise _Fail(FailureReason.node_not_found, current_id)
            state.cursor_node_id = node.id

            kind = NodeKind(node.kind)
            if kind == NodeKind.message:
                self._send(state, effects, render_text(node.payload.text, state.variables), node.buttons)
                if node.buttons:
                    self._suspend_for_reply(state)
                    return
                current_id = self._target(doc, node.id, MAIN_PORT)

            elif kind == NodeKind.question:
                self._send(state, effects, render_text(node.payload.text, state.variables), node.buttons)
                self._suspend_for_reply(state)
                return

            elif kind == NodeKind.capture_field:
                prompt = render_text(node.payload.prompt, state.variables)
                if prompt.strip():
                    self._send(state, effects, prompt, [])
                self._suspend_for_reply(state)
                return

            elif kind == NodeKind.condition:
                current_id = self._process_condition(state, doc, node)

            elif kind == NodeKind.ai_action:
                self._process_ai_action(state, snapshot, node, effects)
                current_id = self._target(doc, node.id, MAIN_PORT)

            elif kind == NodeKind.tag:
                effects.append(UpdateCrm(lead_id=state.lead_id, field="tag", value=node.payload.tag.strip()))
                current_id = self._target(doc, node.id, MAIN_PORT)

            elif kind == NodeKind.pipeline_transition:
                effects.append(UpdateCrm(lead_id=state.lead_id, field="pipeline_stage", value=node.payload.stage.strip()))
                current_id = self._target(doc, node.id, MAIN_PORT)

            elif kind == NodeKind.assignment:
                self._process_assignment(state, node, effects)
                current_id = self._target(doc, node.id, MAIN_PORT)

            elif kind == NodeKind.wait:
                state.wake_at = compute_wake_at(node.payload, now, self.tz_name)
                state.epoch = int(state.epoch) + 1
                state.status = InstanceStatus.suspended
                state.suspend_reason = SuspendReason.awaiting_timer
                log.info("flow_instance_waiting", instance_id=state.id, node_id=node.id, wake_at=state.wake_at.isoformat())
                return

            elif kind == NodeKind.connect_flow:
                jumps += 1
                if jumps > self.max_jump_depth:
                    raise _Fail(FailureReason.flow_loop_detected, f"more than {self.max_jump_depth} connect_flow jumps")
                snapshot = self._jump(state, node.payload.target_flow_id)
                current_id = self._start_node_id(snapshot)

            else:  # pragma: no cover - NodeKind é fechado
                raise _Fail(FailureReason.invalid_configuration, f"unsupported node kind {node.kind}")

    def _process_condition(self, state: FlowInstanceState, doc, node: FlowNode) -> Optional[str]:
        try:
            result = evaluate_condition(node.payload, state.variables, state.last_inbound_text)
        except ConfigurationError as e:
            raise _Fail(FailureReason.invalid_configuration, str(e))
        if result:
            return self._target(doc, node.id, MAIN_PORT)
        target = self._target(doc, node.id, FALSE_PORT)
        if target is None:
            raise _Fail(FailureReason.missing_false_branch, node.id)
        return target

    def _process_ai_action(self, state: FlowInstanceState, snapshot: FlowSnapshot, node: FlowNode, effects: List[Effect]) -> None:
        payload = node.payload
        prompt = render_text(payload.prompt, state.variables)
        limit = payload.history_limit if payload.history_limit is not None else self.ai_history_limit
        history = list(state.history[-limit:]) if limit > 0 else []

        try:
            text = self._call_collaborator(self.text_generator.generate, prompt, history)
        except Exception as e:  # noqa: BLE001 - qualquer falha do colaborador encerra a instância
            log.warning("flow_ai_action_failed", instance_id=state.id, node_id=node.id, error=str(e) or type(e).__name__)
            raise _Fail(FailureReason.generation_unavailable, str(e) or type(e).__name__)

        text = (text or "").strip()
        if payload.variable_name:
            self._set_variable(state, effects, snapshot.flow_id, payload.variable_name.strip(), text)
        if payload.send_to_lead and text:
            self._send(state, effects, text, [])

    def _process_assignment(self, state: FlowInstanceState, node: FlowNode, effects: List[Effect]) -> None:
        payload = node.payload
        try:
            advisor_id = self._call_collaborator(
                self.assignment_resolver.resolve,
                payload.strategy,
                state.lead_id,
                manual_advisor_id=payload.manual_advisor_id,
            )
        except Exception as e:  # noqa: BLE001
            log.warning("flow_assignment_failed", instance_id=state.id, node_id=node.id, error=str(e) or type(e).__name__)
            raise _Fail(FailureReason.assignment_unavailable, str(e) or type(e).__name__)

        if advisor_id is None:
            # Degradado, mas não fatal: segue o flow e avisa a operação.
            log.warning("flow_no_advisor_available", instance_id=state.id, lead_id=state.lead_id, strategy=payload.strategy.value)
            effects.append(
                OperatorAlert(
                    lead_id=state.lead_id,
                    instance_id=state.id,
                    code="no_advisor_available",
                    detail=f"strategy={payload.strategy.value}",
                )
            )
            return

        effects.append(AssignAdvisor(lead_id=state.lead_id, advisor_id=int(advisor_id), strategy=payload.strategy.value))
        template = render_text(payload.template, state.variables) if payload.template else None
        effects.append(NotifyAdvisor(advisor_id=int(advisor_id), lead_id=state.lead_id, template=template))

    def _jump(self, state: FlowInstanceState, target_flow_id: int) -> FlowSnapshot:
        target = self.flows.get_snapshot(int(target_flow_id))
        if target is None:
            raise _Fail(FailureReason.flow_not_found, f"flow {target_flow_id}")
        log.info("flow_instance_jump", instance_id=state.id, from_flow=state.flow_id, to_flow=target.flow_id, version=target.version)
        state.flow_id = int(target.flow_id)
        state.flow_version = int(target.version)
        return target

    # -------------------------------------------------------------- helpers

    def _load_snapshot(self, flow_id: int, version: int) -> FlowSnapshot:
        snapshot = self.flows.get_snapshot(int(flow_id), int(version))
        if snapshot is None:
            raise _Fail(FailureReason.flow_not_found, f"flow {flow_id} v{version}")
        return snapshot

    def _start_node_id(self, snapshot: FlowSnapshot) -> str:
        start = snapshot.document.start_node()
        if start is None:
            raise _Fail(FailureReason.node_not_found, f"flow {snapshot.flow_id} has no start node")
        return start.id

    def _target(self, doc, node_id: Optional[str], port: str) -> Optional[str]:
        if node_id is None:
            return None
        edge = doc.outgoing(node_id, port)
        return edge.target if edge else None

    def _send(self, state: FlowInstanceState, effects: List[Effect], text: str, buttons: List[Any]) -> None:
        labels = [b.label for b in buttons or []]
        effects.append(SendMessage(lead_id=state.lead_id, text=text, buttons=labels))
        state.history.append(HistoryEntry(role="bot", text=text))

    def _set_variable(self, state: FlowInstanceState, effects: List[Effect], flow_id: int, key: str, value: str) -> None:
        state.variables[key] = value
        effects.append(SetVariable(lead_id=state.lead_id, flow_id=int(flow_id), key=key, value=value))

    def _suspend_for_reply(self, state: FlowInstanceState) -> None:
        state.status = InstanceStatus.suspended
        state.suspend_reason = SuspendReason.awaiting_reply
        state.wake_at = None

    def _mark_completed(self, state: FlowInstanceState) -> None:
        state.status = InstanceStatus.completed
        state.suspend_reason = None
        state.wake_at = None
        log.info("flow_instance_completed", instance_id=state.id, lead_id=state.lead_id, flow_id=state.flow_id)

    def _mark_failed(self, state: FlowInstanceState, effects: List[Effect], reason: FailureReason, detail: Optional[str]) -> None:
        state.status = InstanceStatus.failed
        state.suspend_reason = None
        state.wake_at = None
        state.failure_reason = reason
        state.failure_detail = detail
        effects.append(
            OperatorAlert(
                lead_id=state.lead_id,
                instance_id=state.id,
                code="flow_failed",
                detail=f"{reason.value}: {detail}" if detail else reason.value,
            )
        )
        log.warning(
            "flow_instance_failed",
            instance_id=state.id,
            lead_id=state.lead_id,
            node_id=state.cursor_node_id,
            reason=reason.value,
            detail=detail,
        )

    def _call_collaborator(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        future = _collaborator_pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.collaborator_timeout)
        except FutureTimeoutError:
            # ainda na fila: não chega a rodar
            future.cancel()
            raise
