import hashlib
import hmac
import json

from app.core.config import settings
from app.domain.crm.models import Lead
from app.domain.flows.effects import SendMessage
from app.domain.flows.validation import parse_document
from app.services.flow_definition_service import FlowDefinitionService


def _publish_greeting(db):
    svc = FlowDefinitionService(db)
    flow = svc.save_draft(
        parse_document(
            {
                "name": "saludo",
                "trigger_keywords": ["hola"],
                "nodes": [
                    {"id": "m1", "kind": "message", "payload": {"text": "Hola {{name}}"}},
                    {"id": "c1", "kind": "capture_field", "payload": {"variable_name": "email", "prompt": "¿Tu correo?"}},
                ],
                "edges": [{"id": "e1", "source": "m1", "target": "c1"}],
            }
        )
    )
    svc.publish(flow.id)


def _payload(text, msg_id="wamid.1", msg_type="text", wa_id="5215512345678"):
    message = {"from": wa_id, "id": msg_id, "timestamp": "1717426800", "type": msg_type}
    if msg_type == "text":
        message["text"] = {"body": text}
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "contacts": [{"wa_id": wa_id, "profile": {"name": "Laura"}}],
                            "messages": [message],
                        }
                    }
                ]
            }
        ],
    }


def _sent(dispatcher):
    return [e.text for e in dispatcher.effects if isinstance(e, SendMessage)]


def test_verify_token(client):
    ok = client.get("/webhook", params={"hub.mode": "subscribe", "hub.challenge": "123", "hub.verify_token": "verify-me"})
    assert ok.status_code == 200
    assert ok.text == "123"

    bad = client.get("/webhook", params={"hub.mode": "subscribe", "hub.challenge": "123", "hub.verify_token": "nope"})
    assert bad.status_code == 403
    assert bad.json()["error"]["code"] == "invalid_verify_token"


def test_text_message_starts_flow_with_profile_name(client, db_session, dispatcher):
    _publish_greeting(db_session)

    r = client.post("/webhook", json=_payload("Hola"))
    assert r.status_code == 200
    assert r.json() == {"received": True, "processed": 1}

    lead = db_session.query(Lead).filter(Lead.phone == "+5215512345678").one()
    assert lead.name == "Laura"
    # nome do perfil chega ao flow pelas variáveis predefinidas
    assert _sent(dispatcher) == ["Hola Laura", "¿Tu correo?"]

    r = client.post("/webhook", json=_payload("laura@correo.mx", msg_id="wamid.2"))
    assert r.json()["processed"] == 1
    db_session.expire_all()
    assert db_session.get(Lead, lead.id).email == "laura@correo.mx"


def test_redelivered_message_is_deduplicated(client, db_session, dispatcher):
    _publish_greeting(db_session)
    client.post("/webhook", json=_payload("Hola"))
    client.post("/webhook", json=_payload("Hola"))
    assert _sent(dispatcher) == ["Hola Laura", "¿Tu correo?"]


def test_non_text_messages_are_ignored(client, db_session, dispatcher):
    _publish_greeting(db_session)
    r = client.post("/webhook", json=_payload("", msg_type="image"))
    assert r.json() == {"received": True, "processed": 0}
    assert dispatcher.effects == []


def test_invalid_json_body(client):
    r = client.post("/webhook", content=b"{not json", headers={"content-type": "application/json"})
    assert r.json() == {"received": True, "error": "invalid_json"}


def test_signature_is_checked_when_present(client, db_session, dispatcher, monkeypatch):
    monkeypatch.setattr(settings, "WA_WEBHOOK_SECRET", "app-secret")
    _publish_greeting(db_session)
    body = json.dumps(_payload("Hola")).encode("utf-8")

    bad = client.post(
        "/webhook",
        content=body,
        headers={"content-type": "application/json", "x-hub-signature-256": "sha256=deadbeef"},
    )
    assert bad.json() == {"received": True, "error": "invalid_signature"}
    assert dispatcher.effects == []

    sig = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
    good = client.post(
        "/webhook",
        content=body,
        headers={"content-type": "application/json", "x-hub-signature-256": f"sha256={sig}"},
    )
    assert good.json() == {"received": True, "processed": 1}


def test_ops_endpoints(client):
    assert client.get("/").json() == {"service": "leadflow", "status": "ok"}
    assert client.get("/ops/health").json() == {"status": "ok", "db": True}
    assert client.get("/ops/scheduler").json() == {"armed": 0, "next_wake_at": None}
    assert client.post("/ops/scheduler/tick").json() == {"fired": 0, "failed": 0, "errors": {}}
