from __future__ import annotations
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    String,
    Integer,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Boolean,
    JSON,
    Index,
    Float,
)
from sqlalchemy.orm import Mapped, mapped_column
from app.repositories.db import Base


class PipelineStage(str, Enum):
    nuevo = "nuevo"
    precalificado = "precalificado"
    asignado = "asignado"
    contactado = "contactado"
    cita_agendada = "cita_agendada"
    cerrado = "cerrado"
    descartado = "descartado"


class AdvisorStatus(str, Enum):
    available = "available"
    unavailable = "unavailable"


class Lead(Base):
    __tablename__ = "crm_leads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str | None] = mapped_column(String(160), nullable=True)
    phone: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(180), nullable=True)
    budget: Mapped[str | None] = mapped_column(String(64), nullable=True)

    tags: Mapped[list] = mapped_column(JSON, default=list)
    # estágio livre (o flow define o texto); os valores de PipelineStage são os usuais
    pipeline_stage: Mapped[str] = mapped_column(String(64), default=PipelineStage.nuevo.value, index=True)
    assigned_advisor_id: Mapped[int | None] = mapped_column(ForeignKey("crm_advisors.id"), nullable=True, index=True)

    # campo -> ISO timestamp da última escrita (last-writer-wins por campo)
    field_updated_at: Mapped[dict] = mapped_column(JSON, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Advisor(Base):
    __tablename__ = "crm_advisors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(160))
    phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[AdvisorStatus] = mapped_column(SAEnum(AdvisorStatus), default=AdvisorStatus.available, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    # fração desejada de leads (0..1) para a estratégia quota_deficit
    target_share: Mapped[float] = mapped_column(Float, default=0.0)
    last_assigned_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Assignment(Base):
    __tablename__ = "crm_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("crm_leads.id"), index=True)
    advisor_id: Mapped[int] = mapped_column(ForeignKey("crm_advisors.id"), index=True)
    strategy: Mapped[str] = mapped_column(String(32))
    source: Mapped[str] = mapped_column(String(32), default="flow")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (Index("idx_crm_assignments_lead_open", "lead_id", "ended_at"),)
