from __future__ import annotations
from datetime import datetime
from sqlalchemy import (
    String,
    Integer,
    DateTime,
    ForeignKey,
    Boolean,
    JSON,
    Index,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from app.repositories.db import Base


class Flow(Base):
    """Rascunho editável de um flow + ponteiro para a última versão publicada."""

    __tablename__ = "flows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(160), unique=True)
    description: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    trigger_keywords: Mapped[list] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    # documento completo (nodes/edges/start_node_id) como o editor enviou
    draft_definition: Mapped[dict] = mapped_column(JSON)

    published_version: Mapped[int] = mapped_column(Integer, default=0)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    published_by: Mapped[str | None] = mapped_column(String(180), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    versions: Mapped[list["FlowVersion"]] = relationship(
        back_populates="flow", cascade="all, delete-orphan", order_by="FlowVersion.version"
    )


class FlowVersion(Base):
    """Snapshot imutável publicado. Instâncias apontam para (flow_id, version)."""

    __tablename__ = "flow_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    flow_id: Mapped[int] = mapped_column(ForeignKey("flows.id", ondelete="CASCADE"), index=True)
    version: Mapped[int] = mapped_column(Integer)
    definition: Mapped[dict] = mapped_column(JSON)
    published_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    published_by: Mapped[str | None] = mapped_column(String(180), nullable=True)

    flow: Mapped[Flow] = relationship(back_populates="versions")

    __table_args__ = (Index("uix_flow_versions_flow_version", "flow_id", "version", unique=True),)


class FlowInstanceRecord(Base):
    __tablename__ = "flow_instances"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    lead_id: Mapped[int] = mapped_column(Integer, index=True)
    flow_id: Mapped[int] = mapped_column(Integer, index=True)
    flow_version: Mapped[int] = mapped_column(Integer)

    cursor_node_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    suspend_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(String(48), nullable=True)
    failure_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    variables: Mapped[dict] = mapped_column(JSON, default=dict)
    history: Mapped[list] = mapped_column(JSON, default=list)
    last_inbound_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    wake_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    epoch: Mapped[int] = mapped_column(Integer, default=0)
    last_trigger_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    last_effects: Mapped[list] = mapped_column(JSON, default=list)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)

    __table_args__ = (Index("idx_flow_instances_lead_status", "lead_id", "status"),)


class FlowTriggerReceipt(Base):
    """Recibo de trigger processado: o avanço e seus efeitos são gravados juntos."""

    __tablename__ = "flow_trigger_receipts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trigger_id: Mapped[str] = mapped_column(String(200), unique=True)
    instance_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    lead_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    outcome: Mapped[str] = mapped_column(String(32), default="advanced")
    effects: Mapped[list] = mapped_column(JSON, default=list)
    # índices de `effects` já entregues ao dispatcher
    dispatched: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    # preenchido quando todos os efeitos foram entregues
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class FlowEffectDelivery(Base):
    """Efeitos já executados pelo worker, por chave de idempotência (`trigger_id:índice`)."""

    __tablename__ = "flow_effect_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(220), unique=True)
    effect_type: Mapped[str] = mapped_column(String(32))
    delivered_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class LeadVariable(Base):
    __tablename__ = "lead_variables"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(Integer, index=True)
    # NULL = variável predefinida (vale para o lead inteiro)
    flow_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    key: Mapped[str] = mapped_column(String(120))
    value: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    __table_args__ = (Index("uix_lead_variables_scope_key", "lead_id", "flow_id", "key", unique=True),)
