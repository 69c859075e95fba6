from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.domain.crm.models import Advisor, AdvisorStatus, Assignment, Lead
from app.domain.flows.errors import AssignmentError
from app.domain.flows.schema import AssignmentStrategy

log = structlog.get_logger()


class SqlAssignmentResolver:
    """Escolhe o assessor de um lead sem gravar nada.

    O engine chama `resolve` numa thread, com timeout; uma chamada que estoura
    o prazo pode terminar depois sem efeito. A atribuição só é gravada por
    `record_assignment`, dentro do commit do runtime, quando o engine aceitou
    o resultado.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def resolve(
        self,
        strategy: AssignmentStrategy,
        lead_id: int,
        *,
        manual_advisor_id: Optional[int] = None,
    ) -> Optional[int]:
        strategy = AssignmentStrategy(strategy)
        with self.session_factory() as db:
            if db.get(Lead, int(lead_id)) is None:
                raise AssignmentError(f"lead {lead_id} not found")

            if strategy == AssignmentStrategy.manual:
                advisor = self._manual(db, manual_advisor_id)
            elif strategy == AssignmentStrategy.quota_deficit:
                advisor = self._quota_deficit(db)
            else:
                advisor = self._round_robin(db)

            if advisor is None:
                log.info("assignment_none_available", lead_id=lead_id, strategy=strategy.value)
                return None

            log.info("assignment_resolved", lead_id=lead_id, advisor_id=advisor.id, strategy=strategy.value)
            return int(advisor.id)

    def _available(self, db: Session) -> List[Advisor]:
        stmt = select(Advisor).where(
            Advisor.is_active == True,  # noqa: E712
            Advisor.status == AdvisorStatus.available,
        )
        return list(db.execute(stmt).scalars().all())

    def _round_robin(self, db: Session) -> Optional[Advisor]:
        candidates = self._available(db)
        if not candidates:
            return None
        candidates.sort(key=lambda a: (a.last_assigned_at is not None, a.last_assigned_at or datetime.min, a.id))
        return candidates[0]

    def _quota_deficit(self, db: Session) -> Optional[Advisor]:
        candidates = self._available(db)
        if not candidates:
            return None
        counts: Dict[int, int] = {
            int(advisor_id): int(n)
            for advisor_id, n in db.execute(
                select(Assignment.advisor_id, func.count(Assignment.id))
                .where(Assignment.ended_at.is_(None))
                .group_by(Assignment.advisor_id)
            ).all()
        }
        total = sum(counts.values())

        def deficit(a: Advisor) -> float:
            actual = (counts.get(int(a.id), 0) / total) if total else 0.0
            return float(a.target_share or 0.0) - actual

        # maior déficit primeiro; empate pelo menor id
        candidates.sort(key=lambda a: (-deficit(a), a.id))
        return candidates[0]

    def _manual(self, db: Session, advisor_id: Optional[int]) -> Optional[Advisor]:
        if advisor_id is None:
            return None
        advisor = db.get(Advisor, int(advisor_id))
        if advisor is None or not advisor.is_active or advisor.status != AdvisorStatus.available:
            return None
        return advisor


def record_assignment(
    db: Session,
    lead_id: int,
    advisor_id: int,
    strategy: str,
    *,
    source: str = "flow",
    now: Optional[datetime] = None,
) -> Assignment:
    """Grava a atribuição e encerra a anterior do lead. Não faz commit."""
    now = now or datetime.utcnow()
    advisor = db.get(Advisor, int(advisor_id))
    if advisor is None:
        raise AssignmentError(f"advisor {advisor_id} not found")
    open_rows = db.execute(
        select(Assignment).where(Assignment.lead_id == int(lead_id), Assignment.ended_at.is_(None))
    ).scalars().all()
    for row in open_rows:
        row.ended_at = now
    assignment = Assignment(
        lead_id=int(lead_id),
        advisor_id=int(advisor.id),
        strategy=str(strategy),
        source=source,
        created_at=now,
    )
    db.add(assignment)
    advisor.last_assigned_at = now
    db.flush()
    log.info("assignment_recorded", lead_id=lead_id, advisor_id=advisor.id, strategy=strategy)
    return assignment
