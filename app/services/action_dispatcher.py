"""
Execução dos efeitos devolvidos pelo engine.

`LocalActionDispatcher` roda no mesmo processo; `CeleryActionDispatcher`
enfileira cada efeito na task `flow.dispatch_effect` (com retry/backoff).
O transporte de WhatsApp e a notificação real do assessor ficam fora deste
serviço: aqui os envios são registrados em log.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.logging import mask_phone_text
from app.domain.flows.effects import TRANSACTIONAL_EFFECTS, Effect, NotifyAdvisor, OperatorAlert, SendMessage, UpdateCrm
from app.domain.flows.errors import ActionDispatchError
from app.services.crm_gateway import SqlCrmGateway

log = structlog.get_logger()


class LocalActionDispatcher:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def dispatch(self, effect: Effect, idempotency_key: Optional[str] = None) -> bool:
        if isinstance(effect, SendMessage):
            preview = effect.text[:100] + "..." if len(effect.text) > 100 else effect.text
            log.info(
                "flow_send_message",
                lead_id=effect.lead_id,
                key=idempotency_key,
                text_preview=mask_phone_text(preview),
                buttons=effect.buttons,
            )
            return True

        if isinstance(effect, NotifyAdvisor):
            log.info("flow_notify_advisor", advisor_id=effect.advisor_id, lead_id=effect.lead_id, template=effect.template)
            return True

        if isinstance(effect, UpdateCrm):
            return self._update_crm(effect)

        if isinstance(effect, TRANSACTIONAL_EFFECTS):
            # aplicado pelo runtime na mesma transação do avanço
            return True

        if isinstance(effect, OperatorAlert):
            log.warning(
                "flow_operator_alert",
                lead_id=effect.lead_id,
                instance_id=effect.instance_id,
                code=effect.code,
                detail=effect.detail,
            )
            return True

        raise ActionDispatchError(effect_type=getattr(effect, "type", type(effect).__name__), detail="unsupported_effect", transient=False)

    def _update_crm(self, effect: UpdateCrm) -> bool:
        try:
            with self.session_factory() as db:
                applied = SqlCrmGateway(db).update_lead_field(effect.lead_id, effect.field, effect.value, datetime.utcnow())
                db.commit()
                return applied
        except SQLAlchemyError as e:
            raise ActionDispatchError(effect_type=effect.type, detail=str(e), transient=True) from e


class CeleryActionDispatcher:
    def dispatch(self, effect: Effect, idempotency_key: Optional[str] = None) -> bool:
        from app.workers.tasks_effects import dispatch_effect

        dispatch_effect.delay(effect.model_dump(mode="json"), idempotency_key)
        log.info("flow_effect_enqueued", effect_type=effect.type, key=idempotency_key)
        return True
