"""
Serviço de gerenciamento de leads do CRM local.
Responsabilidade: localizar/criar o lead a partir do número do WhatsApp.
"""
import re
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from app.domain.crm.models import Lead, PipelineStage

log = structlog.get_logger()


def normalize_phone(raw: str) -> str:
    digits = re.sub(r"\D", "", raw or "")
    return f"+{digits}" if digits else ""


class LeadService:
    """Operações com leads."""

    @staticmethod
    def get_by_phone(db: Session, phone: str) -> Optional[Lead]:
        return db.query(Lead).filter(Lead.phone == normalize_phone(phone)).first()

    @staticmethod
    def get_or_create_by_phone(db: Session, phone: str, name: Optional[str] = None) -> Lead:
        """
        Retorna o lead do telefone, criando-o em `nuevo` se ainda não existir.

        O nome do perfil do WhatsApp só é usado quando o lead ainda não tem nome.
        """
        normalized = normalize_phone(phone)
        if not normalized:
            raise ValueError("phone_required")

        lead = db.query(Lead).filter(Lead.phone == normalized).first()
        now = datetime.utcnow()
        if lead is None:
            lead = Lead(
                phone=normalized,
                name=(name or "").strip() or None,
                pipeline_stage=PipelineStage.nuevo.value,
                tags=[],
                field_updated_at={"phone": now.isoformat()},
            )
            db.add(lead)
            db.commit()
            db.refresh(lead)
            log.info("lead_created", lead_id=lead.id)
            return lead

        if not lead.name and (name or "").strip():
            lead.name = name.strip()
            stamps = dict(lead.field_updated_at or {})
            stamps["name"] = now.isoformat()
            lead.field_updated_at = stamps
            db.commit()
        return lead
