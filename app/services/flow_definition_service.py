from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.domain.flows.collaborators import FlowSnapshot
from app.domain.flows.errors import FlowNotFoundError
from app.domain.flows.models import Flow, FlowVersion
from app.domain.flows.schema import FlowDocument, normalize_keyword
from app.domain.flows.validation import ensure_valid, parse_document

log = structlog.get_logger()


class FlowDefinitionService:
    """Rascunhos, publicação de versões imutáveis e lookup por palavra-chave."""

    def __init__(self, db: Session):
        self.db = db

    # --- leitura ------------------------------------------------------------

    def list_flows(self) -> List[Flow]:
        return list(self.db.execute(select(Flow).order_by(Flow.id.asc())).scalars().all())

    def get_flow(self, flow_id: int) -> Flow:
        flow = self.db.get(Flow, int(flow_id))
        if flow is None:
            raise FlowNotFoundError(f"flow {flow_id} not found")
        return flow

    def get_by_name(self, name: str) -> Optional[Flow]:
        stmt = select(Flow).where(Flow.name == (name or "").strip()).limit(1)
        return self.db.execute(stmt).scalars().first()

    def draft_document(self, flow: Flow) -> FlowDocument:
        return parse_document(flow.draft_definition or {"name": flow.name})

    def get_version(self, flow_id: int, version: Optional[int] = None) -> Optional[FlowVersion]:
        stmt = select(FlowVersion).where(FlowVersion.flow_id == int(flow_id))
        if version is None:
            stmt = stmt.order_by(FlowVersion.version.desc())
        else:
            stmt = stmt.where(FlowVersion.version == int(version))
        return self.db.execute(stmt.limit(1)).scalars().first()

    def get_snapshot(self, flow_id: int, version: Optional[int] = None) -> Optional[FlowSnapshot]:
        row = self.get_version(flow_id, version)
        if row is None:
            return None
        return FlowSnapshot(flow_id=int(row.flow_id), version=int(row.version), document=FlowDocument.model_validate(row.definition))

    def match_trigger(self, text: str) -> Optional[FlowSnapshot]:
        """Flow ativo e publicado cuja palavra-chave é igual ao texto normalizado."""
        needle = normalize_keyword(text)
        if not needle:
            return None
        stmt = (
            select(Flow)
            .where(Flow.is_active == True, Flow.published_version > 0)  # noqa: E712
            .order_by(Flow.published_at.desc(), Flow.id.desc())
        )
        for flow in self.db.execute(stmt).scalars().all():
            if needle in (flow.trigger_keywords or []):
                return self.get_snapshot(flow.id, flow.published_version)
        return None

    # --- escrita ------------------------------------------------------------

    def save_draft(self, doc: FlowDocument, flow_id: Optional[int] = None) -> Flow:
        name = doc.name.strip()
        if not name:
            raise ValueError("flow_name_required")

        other = self.get_by_name(name)
        if flow_id is None:
            flow = other
            if flow is None:
                flow = Flow(name=name, is_active=doc.is_active, trigger_keywords=[], published_version=0)
                self.db.add(flow)
        else:
            flow = self.get_flow(flow_id)
            if other is not None and other.id != flow.id:
                raise ValueError("flow_name_conflict")

        flow.name = name
        flow.description = doc.description
        flow.draft_definition = doc.export()
        self.db.commit()
        self.db.refresh(flow)
        log.info("flow_draft_saved", flow_id=flow.id, nodes=len(doc.nodes), edges=len(doc.edges))
        return flow

    def publish(self, flow_id: int, published_by: Optional[str] = None) -> FlowVersion:
        """Valida o rascunho e congela uma nova versão. Levanta ConfigurationError."""
        flow = self.get_flow(flow_id)
        doc = self.draft_document(flow)

        known = {int(f.id) for f in self.list_flows() if int(f.published_version or 0) > 0}
        known.add(int(flow.id))
        ensure_valid(doc, known_flow_ids=known)

        now = datetime.utcnow()
        version = int(flow.published_version or 0) + 1
        row = FlowVersion(
            flow_id=flow.id,
            version=version,
            definition=doc.export(),
            published_at=now,
            published_by=published_by,
        )
        self.db.add(row)
        flow.published_version = version
        flow.published_at = now
        flow.published_by = published_by
        flow.trigger_keywords = list(doc.trigger_keywords)
        flow.is_active = bool(doc.is_active)
        self.db.commit()
        self.db.refresh(row)
        log.info("flow_published", flow_id=flow.id, version=version, by=published_by)
        return row

    def set_active(self, flow_id: int, is_active: bool) -> Flow:
        flow = self.get_flow(flow_id)
        flow.is_active = bool(is_active)
        self.db.commit()
        log.info("flow_active_changed", flow_id=flow.id, is_active=flow.is_active)
        return flow

    # --- import/export ------------------------------------------------------

    def export_flow(self, flow_id: int, version: Optional[int] = None) -> Dict[str, Any]:
        flow = self.get_flow(flow_id)
        if version is None:
            return self.draft_document(flow).export()
        row = self.get_version(flow.id, version)
        if row is None:
            raise FlowNotFoundError(f"flow {flow_id} v{version} not found")
        return FlowDocument.model_validate(row.definition).export()

    def import_flow(self, raw: Dict[str, Any], *, publish: bool = False, published_by: Optional[str] = None) -> Flow:
        doc = parse_document(raw)
        flow = self.save_draft(doc)
        if publish:
            self.publish(flow.id, published_by=published_by)
            self.db.refresh(flow)
        return flow
