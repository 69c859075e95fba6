from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from app.domain.crm.models import Lead

log = structlog.get_logger()

# Campos do lead que também existem como variáveis predefinidas do flow.
PREDEFINED_FIELDS = ("name", "email", "phone", "budget")

_WRITABLE_FIELDS = set(PREDEFINED_FIELDS) | {"tag", "pipeline_stage", "assigned_advisor_id"}


def _parse_ts(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        return None


class SqlCrmGateway:
    """Gateway de CRM sobre a tabela local `crm_leads` (last-writer-wins por campo)."""

    def __init__(self, db: Session):
        self.db = db

    def update_lead_field(self, lead_id: int, field: str, value: Optional[str], updated_at: datetime) -> bool:
        if field not in _WRITABLE_FIELDS:
            log.warning("crm_unknown_field", lead_id=lead_id, field=field)
            return False
        lead = self.db.get(Lead, int(lead_id))
        if lead is None:
            log.warning("crm_lead_not_found", lead_id=lead_id, field=field)
            return False

        # tag é um conjunto: adicionar de novo é no-op
        if field == "tag":
            tag = (value or "").strip()
            tags = list(lead.tags or [])
            if not tag or tag in tags:
                return False
            tags.append(tag)
            lead.tags = tags
            self.db.flush()
            log.info("crm_tag_added", lead_id=lead.id, tag=tag)
            return True

        stamps = dict(lead.field_updated_at or {})
        previous = _parse_ts(stamps.get(field))
        if previous is not None and previous > updated_at:
            log.info("crm_field_stale_write", lead_id=lead.id, field=field)
            return False

        if field == "assigned_advisor_id":
            lead.assigned_advisor_id = int(value) if value not in (None, "") else None
        else:
            setattr(lead, field, value)
        stamps[field] = updated_at.isoformat()
        lead.field_updated_at = stamps
        self.db.flush()
        log.info("crm_field_updated", lead_id=lead.id, field=field)
        return True

    def read_predefined(self, lead_id: int) -> Dict[str, Tuple[Optional[str], Optional[datetime]]]:
        """Valores predefinidos do lead com o timestamp da última escrita de cada campo."""
        lead = self.db.get(Lead, int(lead_id))
        if lead is None:
            return {}
        stamps = lead.field_updated_at or {}
        out: Dict[str, Tuple[Optional[str], Optional[datetime]]] = {}
        for f in PREDEFINED_FIELDS:
            out[f] = (getattr(lead, f), _parse_ts(stamps.get(f)))
        return out
