import pytest

from app.domain.crm.models import Advisor, AdvisorStatus, Assignment, Lead
from app.domain.flows.errors import AssignmentError
from app.domain.flows.schema import AssignmentStrategy
from app.services.assignment_resolver import SqlAssignmentResolver, record_assignment


def _seed(db, advisors):
    rows = []
    for kw in advisors:
        a = Advisor(**kw)
        db.add(a)
        rows.append(a)
    leads = [Lead(phone=f"+52155000000{i}", tags=[], field_updated_at={}) for i in range(4)]
    db.add_all(leads)
    db.commit()
    return [a.id for a in rows], [lead.id for lead in leads]


def _assign(db, resolver, strategy, lead_id, **kw):
    advisor_id = resolver.resolve(strategy, lead_id, **kw)
    if advisor_id is not None:
        record_assignment(db, lead_id, advisor_id, strategy.value)
        db.commit()
    return advisor_id


def test_round_robin_rotates(db_session, session_factory):
    (a1, a2), leads = _seed(db_session, [{"name": "Ana"}, {"name": "Beto"}])
    resolver = SqlAssignmentResolver(session_factory)

    picked = [_assign(db_session, resolver, AssignmentStrategy.round_robin, lead_id) for lead_id in leads[:3]]
    assert picked == [a1, a2, a1]


def test_resolve_alone_writes_nothing(db_session, session_factory):
    (a1, _), leads = _seed(db_session, [{"name": "Ana"}, {"name": "Beto"}])
    resolver = SqlAssignmentResolver(session_factory)

    assert resolver.resolve(AssignmentStrategy.round_robin, leads[0]) == a1
    assert resolver.resolve(AssignmentStrategy.round_robin, leads[1]) == a1
    db_session.expire_all()
    assert db_session.query(Assignment).count() == 0
    assert db_session.get(Advisor, a1).last_assigned_at is None


def test_round_robin_skips_unavailable(db_session, session_factory):
    (a1, a2, a3), leads = _seed(
        db_session,
        [
            {"name": "Ana", "status": AdvisorStatus.unavailable},
            {"name": "Beto", "is_active": False},
            {"name": "Caro"},
        ],
    )
    resolver = SqlAssignmentResolver(session_factory)
    assert resolver.resolve(AssignmentStrategy.round_robin, leads[0]) == a3


def test_no_advisor_available_returns_none(db_session, session_factory):
    _, leads = _seed(db_session, [{"name": "Ana", "status": AdvisorStatus.unavailable}])
    resolver = SqlAssignmentResolver(session_factory)
    assert resolver.resolve(AssignmentStrategy.round_robin, leads[0]) is None
    assert resolver.resolve(AssignmentStrategy.quota_deficit, leads[0]) is None


def test_quota_deficit_prefers_largest_gap(db_session, session_factory):
    (a1, a2), leads = _seed(
        db_session,
        [{"name": "Ana", "target_share": 0.25}, {"name": "Beto", "target_share": 0.75}],
    )
    resolver = SqlAssignmentResolver(session_factory)

    picked = [_assign(db_session, resolver, AssignmentStrategy.quota_deficit, lead_id) for lead_id in leads]
    # sem histórico Beto tem o maior déficit; depois a divisão converge para 1:3
    assert picked == [a2, a1, a2, a2]


def test_manual_strategy(db_session, session_factory):
    (a1, a2), leads = _seed(db_session, [{"name": "Ana"}, {"name": "Beto", "status": AdvisorStatus.unavailable}])
    resolver = SqlAssignmentResolver(session_factory)

    assert resolver.resolve(AssignmentStrategy.manual, leads[0], manual_advisor_id=a1) == a1
    assert resolver.resolve(AssignmentStrategy.manual, leads[1], manual_advisor_id=a2) is None
    assert resolver.resolve(AssignmentStrategy.manual, leads[1]) is None


def test_reassignment_closes_previous(db_session, session_factory):
    (a1, a2), leads = _seed(db_session, [{"name": "Ana"}, {"name": "Beto"}])
    resolver = SqlAssignmentResolver(session_factory)

    _assign(db_session, resolver, AssignmentStrategy.round_robin, leads[0])
    _assign(db_session, resolver, AssignmentStrategy.round_robin, leads[0])

    db_session.expire_all()
    rows = db_session.query(Assignment).filter(Assignment.lead_id == leads[0]).order_by(Assignment.id).all()
    assert [r.advisor_id for r in rows] == [a1, a2]
    assert [r.strategy for r in rows] == ["round_robin", "round_robin"]
    assert rows[0].ended_at is not None
    assert rows[1].ended_at is None


def test_unknown_lead_raises(session_factory):
    resolver = SqlAssignmentResolver(session_factory)
    with pytest.raises(AssignmentError):
        resolver.resolve(AssignmentStrategy.round_robin, 12345)


def test_record_unknown_advisor_raises(db_session):
    _, leads = _seed(db_session, [])
    with pytest.raises(AssignmentError):
        record_assignment(db_session, leads[0], 999, "manual")
