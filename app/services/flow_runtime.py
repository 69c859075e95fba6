"""
Runtime dos flows: a costura entre mensagens/timers e o FlowEngine.

Para cada trigger:
1. trava o lead (FIFO), checa o recibo do trigger (dedup);
2. escolhe a instância: resposta para quem espera reply, senão palavra-chave
   inicia um flow novo (abandonando a instância viva anterior);
3. `FlowEngine.advance`;
4. grava instância + recibo + variáveis numa transação;
5. (des)arma o timer e despacha os efeitos, gravando no recibo quais já
   foram entregues (uma redelivery só reenvia o que faltou).
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.domain.flows.collaborators import ActionDispatcher, AssignmentResolver, TextGenerator
from app.domain.flows.effects import (
    TRANSACTIONAL_EFFECTS,
    AssignAdvisor,
    Effect,
    SetVariable,
    dump_effects,
    effect_key,
    load_effects,
)
from app.domain.flows.errors import ActionDispatchError, FlowNotFoundError
from app.domain.flows.instance import (
    LIVE_STATUSES,
    FlowInstanceState,
    InboundMessage,
    InstanceStatus,
    ManualRetry,
    SuspendReason,
    TimerFired,
    Trigger,
)
from app.domain.flows.models import FlowInstanceRecord, FlowTriggerReceipt
from app.services.action_dispatcher import CeleryActionDispatcher, LocalActionDispatcher
from app.services.assignment_resolver import SqlAssignmentResolver, record_assignment
from app.services.crm_gateway import SqlCrmGateway
from app.services.flow_definition_service import FlowDefinitionService
from app.services.flow_engine import AdvanceResult, FlowEngine, as_naive_utc, utcnow
from app.services.flow_locks import build_lock_registry
from app.services.flow_scheduler import DueTimer, FlowScheduler, get_scheduler
from app.services.text_generation import GeminiTextGenerator
from app.services.variable_store import VariableStore

log = structlog.get_logger()

_LIVE = [s.value for s in LIVE_STATUSES]


@dataclass
class RuntimeOutcome:
    # advanced | started | duplicate | stale | no_match
    outcome: str
    instance: Optional[FlowInstanceState] = None
    effects: List[Effect] = field(default_factory=list)


def record_to_state(row: FlowInstanceRecord) -> FlowInstanceState:
    return FlowInstanceState.model_validate(
        {
            "id": row.id,
            "lead_id": row.lead_id,
            "flow_id": row.flow_id,
            "flow_version": row.flow_version,
            "cursor_node_id": row.cursor_node_id,
            "status": row.status,
            "suspend_reason": row.suspend_reason,
            "failure_reason": row.failure_reason,
            "failure_detail": row.failure_detail,
            "variables": row.variables or {},
            "history": row.history or [],
            "last_inbound_text": row.last_inbound_text,
            "wake_at": row.wake_at,
            "epoch": row.epoch or 0,
            "last_trigger_id": row.last_trigger_id,
            "last_effects": load_effects(row.last_effects),
        }
    )


def apply_state(row: FlowInstanceRecord, state: FlowInstanceState, now: datetime) -> None:
    row.lead_id = state.lead_id
    row.flow_id = state.flow_id
    row.flow_version = state.flow_version
    row.cursor_node_id = state.cursor_node_id
    row.status = state.status.value
    row.suspend_reason = state.suspend_reason.value if state.suspend_reason else None
    row.failure_reason = state.failure_reason.value if state.failure_reason else None
    row.failure_detail = state.failure_detail
    row.variables = dict(state.variables)
    row.history = [h.model_dump() for h in state.history]
    row.last_inbound_text = state.last_inbound_text
    row.wake_at = state.wake_at
    row.epoch = int(state.epoch)
    row.last_trigger_id = state.last_trigger_id
    row.last_effects = dump_effects(state.last_effects)
    row.archived_at = None if state.is_live else (row.archived_at or now)


class FlowRuntime:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        scheduler: Optional[FlowScheduler] = None,
        locks=None,
        dispatcher: Optional[ActionDispatcher] = None,
        text_generator: Optional[TextGenerator] = None,
        assignment_resolver: Optional[AssignmentResolver] = None,
        engine_options: Optional[dict] = None,
    ):
        self.session_factory = session_factory
        self.scheduler = scheduler or get_scheduler()
        self.locks = locks or build_lock_registry()
        if dispatcher is None:
            dispatcher = CeleryActionDispatcher() if settings.FLOW_EFFECTS_ASYNC else LocalActionDispatcher(session_factory)
        self.dispatcher = dispatcher
        self.text_generator = text_generator or GeminiTextGenerator()
        self.assignment_resolver = assignment_resolver or SqlAssignmentResolver(session_factory)
        self.engine_options = dict(engine_options or {})

    def _engine(self, db: Session) -> FlowEngine:
        return FlowEngine(
            flows=FlowDefinitionService(db),
            assignment_resolver=self.assignment_resolver,
            text_generator=self.text_generator,
            **self.engine_options,
        )

    # ------------------------------------------------------------ triggers

    def handle_inbound(self, message: InboundMessage) -> RuntimeOutcome:
        with self.locks.hold(message.lead_id):
            with self.session_factory() as db:
                dup = self._duplicate(db, message.trigger_id)
                if dup is not None:
                    return dup

                live = self._live_record(db, message.lead_id)
                defs = FlowDefinitionService(db)
                superseded: Optional[FlowInstanceRecord] = None
                started = False

                awaiting_reply = (
                    live is not None
                    and live.status == InstanceStatus.suspended.value
                    and live.suspend_reason == SuspendReason.awaiting_reply.value
                )
                match = None if awaiting_reply else defs.match_trigger(message.text)

                if match is not None:
                    # sync antes do avanço: a transação final só contém o resultado do advance
                    variables = self._prepare_variables(db, message.lead_id, match.flow_id)
                    state = FlowInstanceState.new(
                        lead_id=message.lead_id,
                        flow_id=match.flow_id,
                        flow_version=match.version,
                        variables=variables,
                    )
                    superseded = live
                    started = True
                    log.info(
                        "flow_instance_started",
                        instance_id=state.id,
                        lead_id=message.lead_id,
                        flow_id=match.flow_id,
                        version=match.version,
                    )
                elif live is not None:
                    state = record_to_state(live)
                else:
                    self._save_receipt(db, message.trigger_id, None, message.lead_id, "no_match", [])
                    db.commit()
                    log.info("flow_no_match", lead_id=message.lead_id)
                    return RuntimeOutcome(outcome="no_match")

                result = self._engine(db).advance(state, message, now=message.received_at)
                return self._commit(
                    db,
                    result,
                    message,
                    record=None if started else live,
                    superseded=superseded,
                    outcome="started" if started else "advanced",
                )

    def handle_timer(self, due: DueTimer, now: Optional[datetime] = None) -> RuntimeOutcome:
        now = as_naive_utc(now) if now is not None else utcnow()
        with self.session_factory() as db:
            row = db.get(FlowInstanceRecord, due.instance_id)
            if row is None:
                log.info("flow_timer_stale", instance_id=due.instance_id, reason="instance_missing")
                return RuntimeOutcome(outcome="stale")
            lead_id = int(row.lead_id)

        trigger = TimerFired.for_instance(due.instance_id, due.epoch, now)
        with self.locks.hold(lead_id):
            with self.session_factory() as db:
                dup = self._duplicate(db, trigger.trigger_id)
                if dup is not None:
                    return dup
                row = db.get(FlowInstanceRecord, due.instance_id)
                result = self._engine(db).advance(record_to_state(row), trigger, now=now)
                if result.stale:
                    log.info("flow_timer_stale", instance_id=row.id, epoch=due.epoch, current_epoch=row.epoch, status=row.status)
                    self._save_receipt(db, trigger.trigger_id, row.id, lead_id, "stale", [])
                    db.commit()
                    return RuntimeOutcome(outcome="stale", instance=result.instance)
                return self._commit(db, result, trigger, record=row)

    def tick(self, now: Optional[datetime] = None):
        now = as_naive_utc(now) if now is not None else utcnow()
        return self.scheduler.run_tick(now, lambda due: self.handle_timer(due, now=now))

    # ------------------------------------------------------------ operador

    def retry(self, instance_id: str, requested_by: Optional[str] = None) -> RuntimeOutcome:
        lead_id = self._lead_of(instance_id)
        trigger = ManualRetry(trigger_id=f"retry:{instance_id}:{uuid.uuid4().hex}", instance_id=instance_id, requested_by=requested_by)
        with self.locks.hold(lead_id):
            with self.session_factory() as db:
                row = db.get(FlowInstanceRecord, instance_id)
                if row.status != InstanceStatus.failed.value:
                    raise ValueError("instance_not_failed")
                other = self._live_record(db, lead_id)
                if other is not None and other.id != row.id:
                    raise ValueError("lead_has_live_instance")
                result = self._engine(db).advance(record_to_state(row), trigger)
                return self._commit(db, result, trigger, record=row)

    def abandon(self, instance_id: str) -> FlowInstanceState:
        lead_id = self._lead_of(instance_id)
        with self.locks.hold(lead_id):
            with self.session_factory() as db:
                row = db.get(FlowInstanceRecord, instance_id)
                if row.status not in _LIVE:
                    raise ValueError("instance_not_live")
                self._abandon(row, utcnow())
                db.commit()
                self.scheduler.disarm(row.id)
                return record_to_state(row)

    def restore_timers(self) -> int:
        """Rearma no scheduler os timers persistidos (startup)."""
        with self.session_factory() as db:
            rows = db.execute(
                select(FlowInstanceRecord.id, FlowInstanceRecord.wake_at, FlowInstanceRecord.epoch).where(
                    FlowInstanceRecord.status == InstanceStatus.suspended.value,
                    FlowInstanceRecord.suspend_reason == SuspendReason.awaiting_timer.value,
                    FlowInstanceRecord.wake_at.is_not(None),
                )
            ).all()
        n = self.scheduler.load((r.id, r.wake_at, int(r.epoch or 0)) for r in rows)
        log.info("flow_timers_restored", count=n)
        return n

    # ------------------------------------------------------------- helpers

    def _lead_of(self, instance_id: str) -> int:
        with self.session_factory() as db:
            row = db.get(FlowInstanceRecord, instance_id)
            if row is None:
                raise FlowNotFoundError(f"instance {instance_id} not found")
            return int(row.lead_id)

    def _live_record(self, db: Session, lead_id: int) -> Optional[FlowInstanceRecord]:
        stmt = (
            select(FlowInstanceRecord)
            .where(FlowInstanceRecord.lead_id == int(lead_id), FlowInstanceRecord.status.in_(_LIVE))
            .order_by(FlowInstanceRecord.created_at.desc())
            .limit(1)
        )
        return db.execute(stmt).scalars().first()

    def _prepare_variables(self, db: Session, lead_id: int, flow_id: int) -> dict:
        store = VariableStore(db, crm=SqlCrmGateway(db))
        store.sync_from_crm(lead_id)
        db.commit()
        return store.snapshot(lead_id, flow_id)

    def _duplicate(self, db: Session, trigger_id: str) -> Optional[RuntimeOutcome]:
        receipt = db.execute(
            select(FlowTriggerReceipt).where(FlowTriggerReceipt.trigger_id == trigger_id).limit(1)
        ).scalars().first()
        if receipt is None:
            return None
        effects = load_effects(receipt.effects)
        log.info("flow_trigger_duplicate", trigger_id=trigger_id, instance_id=receipt.instance_id, outcome=receipt.outcome)
        if effects and receipt.dispatched_at is None:
            # o processo anterior caiu ou falhou no meio do despacho
            self._dispatch(db, receipt, effects)
        instance = None
        if receipt.instance_id:
            row = db.get(FlowInstanceRecord, receipt.instance_id)
            instance = record_to_state(row) if row is not None else None
        return RuntimeOutcome(outcome="duplicate", instance=instance, effects=effects)

    def _save_receipt(
        self,
        db: Session,
        trigger_id: str,
        instance_id: Optional[str],
        lead_id: Optional[int],
        outcome: str,
        effects: List[Effect],
    ) -> FlowTriggerReceipt:
        receipt = FlowTriggerReceipt(
            trigger_id=trigger_id,
            instance_id=instance_id,
            lead_id=lead_id,
            outcome=outcome,
            effects=dump_effects(effects),
            dispatched=[],
        )
        db.add(receipt)
        return receipt

    def _abandon(self, row: FlowInstanceRecord, now: datetime) -> None:
        row.status = InstanceStatus.abandoned.value
        row.suspend_reason = None
        row.wake_at = None
        row.archived_at = now
        log.info("flow_instance_abandoned", instance_id=row.id, lead_id=row.lead_id, flow_id=row.flow_id)

    def _commit(
        self,
        db: Session,
        result: AdvanceResult,
        trigger: Trigger,
        *,
        record: Optional[FlowInstanceRecord],
        superseded: Optional[FlowInstanceRecord] = None,
        outcome: str = "advanced",
    ) -> RuntimeOutcome:
        state = result.instance
        now = utcnow()

        if superseded is not None:
            self._abandon(superseded, now)

        if record is None:
            record = FlowInstanceRecord(id=state.id)
            db.add(record)
        apply_state(record, state, now)

        crm = SqlCrmGateway(db)
        store = VariableStore(db, crm=crm)
        for effect in result.effects:
            if isinstance(effect, SetVariable):
                store.apply(effect, updated_at=now)
            elif isinstance(effect, AssignAdvisor):
                record_assignment(db, effect.lead_id, effect.advisor_id, effect.strategy, now=now)
                crm.update_lead_field(effect.lead_id, "assigned_advisor_id", str(effect.advisor_id), now)

        receipt = self._save_receipt(db, trigger.trigger_id, state.id, state.lead_id, outcome, result.effects)
        try:
            db.commit()
        except IntegrityError:
            # outro processo gravou o mesmo trigger antes
            db.rollback()
            log.info("flow_trigger_duplicate", trigger_id=trigger.trigger_id, instance_id=state.id)
            return RuntimeOutcome(outcome="duplicate", instance=state, effects=result.effects)

        if superseded is not None:
            self.scheduler.disarm(superseded.id)
        if state.status == InstanceStatus.suspended and state.suspend_reason == SuspendReason.awaiting_timer and state.wake_at:
            self.scheduler.arm_timer(state.id, state.wake_at, state.epoch)
        else:
            self.scheduler.disarm(state.id)

        self._dispatch(db, receipt, result.effects)

        log.info(
            "flow_instance_advanced",
            instance_id=state.id,
            lead_id=state.lead_id,
            status=state.status.value,
            node_id=state.cursor_node_id,
            effects=len(result.effects),
        )
        return RuntimeOutcome(outcome=outcome, instance=state, effects=result.effects)

    def _dispatch(self, db: Session, receipt: FlowTriggerReceipt, effects: List[Effect]) -> bool:
        """Entrega, em ordem, os efeitos do recibo que ainda não foram entregues.

        Para no primeiro efeito que falhar: os seguintes esperam a redelivery do
        trigger, para o lead não receber mensagens fora de ordem.
        """
        done = set(receipt.dispatched or [])
        for index, effect in enumerate(effects):
            if index in done or isinstance(effect, TRANSACTIONAL_EFFECTS):
                continue
            try:
                self.dispatcher.dispatch(effect, idempotency_key=effect_key(receipt.trigger_id, index))
            except ActionDispatchError as e:
                log.warning(
                    "flow_effect_dispatch_failed",
                    trigger_id=receipt.trigger_id,
                    index=index,
                    effect_type=e.effect_type,
                    detail=e.detail,
                )
                return False
            done.add(index)
            receipt.dispatched = sorted(done)
            db.commit()
        receipt.dispatched_at = datetime.utcnow()
        db.commit()
        return True


_runtime: Optional[FlowRuntime] = None


def get_flow_runtime() -> FlowRuntime:
    global _runtime
    if _runtime is None:
        from app.repositories.db import SessionLocal

        _runtime = FlowRuntime(SessionLocal)
    return _runtime
