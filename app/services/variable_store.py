"""
Variáveis capturadas por lead.

Chaves predefinidas (name/email/phone/budget) valem para o lead inteiro
(`flow_id` NULL) e são espelhadas no CRM; as demais ficam no escopo do flow.
Toda escrita é last-writer-wins por `updated_at`.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain.flows.effects import SetVariable
from app.domain.flows.models import LeadVariable
from app.domain.flows.collaborators import CrmGateway
from app.services.crm_gateway import PREDEFINED_FIELDS

log = structlog.get_logger()


def is_predefined(key: str) -> bool:
    return (key or "").strip().lower() in PREDEFINED_FIELDS


class VariableStore:
    def __init__(self, db: Session, crm: Optional[CrmGateway] = None):
        self.db = db
        self.crm = crm

    def _scope(self, key: str, flow_id: Optional[int]) -> tuple[str, Optional[int]]:
        k = (key or "").strip()
        if is_predefined(k):
            return k.lower(), None
        return k, (int(flow_id) if flow_id is not None else None)

    def _row(self, lead_id: int, flow_id: Optional[int], key: str) -> Optional[LeadVariable]:
        stmt = select(LeadVariable).where(LeadVariable.lead_id == int(lead_id), LeadVariable.key == key)
        if flow_id is None:
            stmt = stmt.where(LeadVariable.flow_id.is_(None))
        else:
            stmt = stmt.where(LeadVariable.flow_id == int(flow_id))
        return self.db.execute(stmt.limit(1)).scalars().first()

    def get(self, lead_id: int, key: str, flow_id: Optional[int] = None) -> Optional[str]:
        k, scope = self._scope(key, flow_id)
        row = self._row(lead_id, scope, k)
        return row.value if row else None

    def set(
        self,
        lead_id: int,
        key: str,
        value: Optional[str],
        *,
        flow_id: Optional[int] = None,
        updated_at: Optional[datetime] = None,
        propagate: bool = True,
    ) -> bool:
        """Grava a variável. Retorna False quando uma escrita mais nova já existe."""
        k, scope = self._scope(key, flow_id)
        if not k:
            return False
        ts = updated_at or datetime.utcnow()

        row = self._row(lead_id, scope, k)
        if row is not None and row.updated_at is not None and row.updated_at > ts:
            log.info("variable_stale_write", lead_id=lead_id, key=k, flow_id=scope)
            return False
        if row is None:
            row = LeadVariable(lead_id=int(lead_id), flow_id=scope, key=k)
            self.db.add(row)
        row.value = value
        row.updated_at = ts
        self.db.flush()

        if scope is None and propagate and self.crm is not None:
            self.crm.update_lead_field(int(lead_id), k, value, ts)
        return True

    def apply(self, effect: SetVariable, updated_at: Optional[datetime] = None) -> bool:
        return self.set(effect.lead_id, effect.key, effect.value, flow_id=effect.flow_id, updated_at=updated_at)

    def snapshot(self, lead_id: int, flow_id: Optional[int] = None) -> Dict[str, str]:
        """Variáveis visíveis para uma instância: predefinidas + escopo do flow."""
        stmt = select(LeadVariable).where(LeadVariable.lead_id == int(lead_id))
        out: Dict[str, str] = {}
        scoped: Dict[str, str] = {}
        for row in self.db.execute(stmt).scalars().all():
            if row.value is None:
                continue
            if row.flow_id is None:
                out[row.key] = row.value
            elif flow_id is not None and int(row.flow_id) == int(flow_id):
                scoped[row.key] = row.value
        out.update(scoped)
        return out

    def sync_from_crm(self, lead_id: int) -> int:
        """Traz edições feitas no CRM para as variáveis predefinidas. Retorna quantas mudaram."""
        if self.crm is None:
            return 0
        changed = 0
        for key, (value, crm_ts) in self.crm.read_predefined(lead_id).items():
            if value is None:
                continue
            row = self._row(lead_id, None, key)
            if row is not None:
                if row.value == value:
                    continue
                if crm_ts is None or (row.updated_at is not None and row.updated_at >= crm_ts):
                    continue
            if self.set(lead_id, key, value, updated_at=crm_ts or datetime.utcnow(), propagate=False):
                changed += 1
        if changed:
            log.info("variables_synced_from_crm", lead_id=lead_id, changed=changed)
        return changed
