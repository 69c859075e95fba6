from __future__ import annotations
import random
from datetime import datetime
from typing import Optional
import structlog
from celery import Task
from pydantic import TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from app.domain.flows.effects import Effect
from app.domain.flows.errors import ActionDispatchError
from app.domain.flows.models import FlowEffectDelivery
from app.repositories.db import SessionLocal
from app.services.action_dispatcher import LocalActionDispatcher
from .celery_app import celery

log = structlog.get_logger()

_effect_adapter = TypeAdapter(Effect)


class TransientDispatchError(Exception):
    pass


def _backoff(retry_count: int) -> float:
    base = 2 ** max(0, retry_count)
    jitter = random.uniform(0, 0.2 * base)
    return min(30.0, base + jitter)


def _already_delivered(key: Optional[str]) -> bool:
    if not key:
        return False
    with SessionLocal() as db:
        found = db.execute(select(FlowEffectDelivery.id).where(FlowEffectDelivery.key == key).limit(1)).first()
        return found is not None


def _mark_delivered(key: Optional[str], effect_type: str) -> None:
    if not key:
        return
    with SessionLocal() as db:
        db.add(FlowEffectDelivery(key=key, effect_type=effect_type, delivered_at=datetime.utcnow()))
        try:
            db.commit()
        except IntegrityError:
            # outra execução da mesma task chegou antes
            db.rollback()
            log.info("flow_effect_delivery_exists", key=key)


@celery.task(name="flow.dispatch_effect", bind=True, max_retries=5)
def dispatch_effect(self: Task, raw_effect: dict, idempotency_key: str | None = None) -> dict:
    try:
        effect = _effect_adapter.validate_python(raw_effect)
    except ValidationError as e:
        log.error("flow_effect_invalid", key=idempotency_key, error=str(e))
        return {"status": "error", "error": "invalid_effect"}

    # acks_late + retry: a mesma mensagem pode chegar mais de uma vez
    if _already_delivered(idempotency_key):
        log.info("flow_effect_duplicate", effect_type=effect.type, key=idempotency_key)
        return {"status": "duplicate", "type": effect.type}

    try:
        ok = LocalActionDispatcher(SessionLocal).dispatch(effect, idempotency_key=idempotency_key)
    except ActionDispatchError as e:
        if not e.transient:
            log.error("flow_effect_failed", effect_type=e.effect_type, detail=e.detail, key=idempotency_key)
            return {"status": "error", "error": e.detail}
        retry_no = self.request.retries
        delay = _backoff(retry_no)
        log.warning("flow_effect_retry", effect_type=e.effect_type, retries=retry_no + 1, delay=delay)
        raise self.retry(exc=TransientDispatchError(str(e)), countdown=delay)

    _mark_delivered(idempotency_key, effect.type)
    return {"status": "ok" if ok else "skipped", "type": effect.type}
