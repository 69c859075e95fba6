from datetime import datetime, timedelta

from app.domain.crm.models import Lead
from app.domain.flows.effects import SetVariable
from app.services.crm_gateway import SqlCrmGateway
from app.services.variable_store import VariableStore, is_predefined

T = datetime(2024, 6, 3, 15, 0, 0)


def _lead(db, **kw):
    lead = Lead(phone=kw.pop("phone", "+5215500000001"), tags=[], field_updated_at=kw.pop("field_updated_at", {}), **kw)
    db.add(lead)
    db.commit()
    db.refresh(lead)
    return lead


def test_predefined_keys():
    assert is_predefined("Email")
    assert not is_predefined("zona")


def test_last_writer_wins(db_session):
    lead = _lead(db_session)
    store = VariableStore(db_session)

    assert store.set(lead.id, "zona", "Polanco", flow_id=1, updated_at=T + timedelta(minutes=2))
    assert store.set(lead.id, "zona", "Roma", flow_id=1, updated_at=T) is False
    assert store.get(lead.id, "zona", flow_id=1) == "Polanco"


def test_custom_variables_are_flow_scoped(db_session):
    lead = _lead(db_session)
    store = VariableStore(db_session)
    store.set(lead.id, "zona", "Polanco", flow_id=1)
    store.set(lead.id, "zona", "Condesa", flow_id=2)
    store.set(lead.id, "name", "Ana", flow_id=1)

    assert store.snapshot(lead.id, 1) == {"name": "Ana", "zona": "Polanco"}
    assert store.snapshot(lead.id, 2) == {"name": "Ana", "zona": "Condesa"}
    # predefinida ignora o flow_id
    assert store.get(lead.id, "name", flow_id=99) == "Ana"


def test_predefined_write_propagates_to_crm(db_session):
    lead = _lead(db_session)
    store = VariableStore(db_session, crm=SqlCrmGateway(db_session))

    store.apply(SetVariable(lead_id=lead.id, flow_id=1, key="email", value="ana@correo.mx"), updated_at=T)
    db_session.commit()
    db_session.refresh(lead)
    assert lead.email == "ana@correo.mx"
    assert lead.field_updated_at["email"] == T.isoformat()


def test_newer_crm_edit_wins_on_sync(db_session):
    lead = _lead(db_session)
    store = VariableStore(db_session, crm=SqlCrmGateway(db_session))
    store.set(lead.id, "budget", "3000000", updated_at=T)
    db_session.commit()
    store.sync_from_crm(lead.id)

    # edição manual no CRM depois da captura
    lead.budget = "4500000"
    lead.field_updated_at = {**lead.field_updated_at, "budget": (T + timedelta(hours=1)).isoformat()}
    db_session.commit()

    assert store.sync_from_crm(lead.id) == 1
    assert store.get(lead.id, "budget") == "4500000"
    # nada novo: sync é no-op
    assert store.sync_from_crm(lead.id) == 0


def test_older_crm_value_does_not_overwrite_capture(db_session):
    lead = _lead(db_session, budget="1000000", field_updated_at={"budget": T.isoformat()})
    store = VariableStore(db_session, crm=SqlCrmGateway(db_session))
    store.set(lead.id, "budget", "2000000", updated_at=T + timedelta(minutes=5), propagate=False)

    store.sync_from_crm(lead.id)
    assert store.get(lead.id, "budget") == "2000000"


def test_crm_tag_is_a_set(db_session):
    lead = _lead(db_session)
    crm = SqlCrmGateway(db_session)
    assert crm.update_lead_field(lead.id, "tag", "calificado", T) is True
    assert crm.update_lead_field(lead.id, "tag", "calificado", T) is False
    assert crm.update_lead_field(lead.id, "favorite_color", "azul", T) is False
    db_session.commit()
    db_session.refresh(lead)
    assert lead.tags == ["calificado"]
