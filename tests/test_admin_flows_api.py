from datetime import datetime

from app.core.config import settings
from app.domain.crm.models import Lead
from app.domain.flows.errors import TextGenerationError
from app.domain.flows.instance import InboundMessage


def _edge(eid, source, target, port="main"):
    return {"id": eid, "source": source, "source_port": port, "target": target}


def _greeting(name="saludo"):
    return {
        "name": name,
        "description": "Bienvenida y nombre",
        "trigger_keywords": ["Hola"],
        "nodes": [
            {"id": "m1", "kind": "message", "payload": {"text": "Hola {{name}}"}, "position": {"x": 0, "y": 0}},
            {"id": "c1", "kind": "capture_field", "payload": {"variable_name": "name", "prompt": "¿Cómo te llamas?"}},
            {"id": "m2", "kind": "message", "payload": {"text": "Gracias {{name}}"}},
        ],
        "edges": [_edge("e1", "m1", "c1"), _edge("e2", "c1", "m2")],
    }


def _create(client, doc):
    r = client.post("/admin/flows", json={"document": doc})
    assert r.status_code == 200, r.text
    return r.json()


def test_create_publish_and_read_flow(client):
    created = _create(client, _greeting())
    assert created["published_version"] == 0
    assert created["trigger_keywords"] == []

    r = client.post(f"/admin/flows/{created['id']}/publish", json={"published_by": "ana"})
    assert r.status_code == 200
    assert r.json() == {"ok": True, "flow_id": created["id"], "published_version": 1}

    detail = client.get(f"/admin/flows/{created['id']}").json()
    assert detail["trigger_keywords"] == ["hola"]
    assert detail["published_by"] == "ana"
    assert [n["id"] for n in detail["draft"]["nodes"]] == ["m1", "c1", "m2"]

    assert [f["name"] for f in client.get("/admin/flows").json()] == ["saludo"]


def test_post_by_name_updates_existing_draft(client):
    first = _create(client, _greeting())
    doc = _greeting()
    doc["description"] = "v2"
    second = _create(client, doc)
    assert second["id"] == first["id"]
    assert second["description"] == "v2"


def test_publish_rejects_condition_without_false_branch(client):
    created = _create(client, _greeting())
    broken = _greeting()
    broken["nodes"].append(
        {"id": "q", "kind": "condition", "payload": {"predicate_kind": "variable_is_set", "args": {"variable": "name"}}}
    )
    broken["edges"] = [_edge("e1", "m1", "c1"), _edge("e2", "c1", "q"), _edge("e3", "q", "m2")]
    assert client.put(f"/admin/flows/{created['id']}", json={"document": broken}).status_code == 200

    r = client.post(f"/admin/flows/{created['id']}/publish", json={})
    assert r.status_code == 422
    body = r.json()["error"]
    assert body["code"] == "invalid_flow_definition"
    assert {"code": "missing_false_port", "node_id": "q"}.items() <= body["issues"][0].items()
    # nada foi publicado
    assert client.get(f"/admin/flows/{created['id']}").json()["published_version"] == 0


def test_rename_to_existing_name_conflicts(client):
    _create(client, _greeting("saludo"))
    other = _create(client, _greeting("otro"))
    r = client.put(f"/admin/flows/{other['id']}", json={"document": _greeting("saludo")})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "flow_name_conflict"


def test_malformed_document_is_422(client):
    r = client.post("/admin/flows", json={"document": {"name": "x", "nodes": [{"id": "n", "kind": "teleport"}]}})
    assert r.status_code == 422
    assert r.json()["error"]["code"] == "invalid_flow_definition"


def test_unknown_flow_is_404(client):
    r = client.get("/admin/flows/999")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "flow_not_found"


def test_export_then_import_keeps_graph(client):
    created = _create(client, _greeting())
    client.post(f"/admin/flows/{created['id']}/publish", json={})

    exported = client.get(f"/admin/flows/{created['id']}/export", params={"version": 1}).json()
    exported["name"] = "saludo-copia"
    imported = client.post("/admin/flows/import", json={"document": exported, "publish": True}).json()
    assert imported["published_version"] == 1
    assert imported["id"] != created["id"]

    again = client.get(f"/admin/flows/{imported['id']}/export").json()
    assert again["nodes"] == exported["nodes"]
    assert again["edges"] == exported["edges"]
    assert again["trigger_keywords"] == ["hola"]
    assert again["nodes"][0]["position"] == {"x": 0.0, "y": 0.0}


def test_set_active(client):
    created = _create(client, _greeting())
    r = client.post(f"/admin/flows/{created['id']}/active", json={"is_active": False})
    assert r.status_code == 200
    assert r.json()["is_active"] is False


def test_admin_token_is_enforced(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "s3cret")
    assert client.get("/admin/flows").status_code == 401
    assert client.get("/admin/flows", headers={"X-Admin-Token": "s3cret"}).status_code == 200


def test_instances_retry_and_abandon(client, db_session, runtime, fake_generator):
    doc = {
        "name": "resumen",
        "trigger_keywords": ["resumen"],
        "nodes": [
            {"id": "ai", "kind": "ai_action", "payload": {"prompt": "Resume"}},
            {"id": "bye", "kind": "message", "payload": {"text": "fin"}},
        ],
        "edges": [_edge("e1", "ai", "bye")],
    }
    created = _create(client, doc)
    client.post(f"/admin/flows/{created['id']}/publish", json={})
    lead = Lead(phone="+5215511112222", tags=[], field_updated_at={})
    db_session.add(lead)
    db_session.commit()

    fake_generator.error = TextGenerationError("down")
    out = runtime.handle_inbound(
        InboundMessage(trigger_id="wa:1", lead_id=lead.id, text="resumen", received_at=datetime(2024, 6, 3, 15, 0))
    )
    instance_id = out.instance.id

    listed = client.get("/admin/flow-instances", params={"lead_id": lead.id, "status": "failed"}).json()
    assert [i["id"] for i in listed] == [instance_id]
    assert listed[0]["failure_reason"] == "generation_unavailable"

    fake_generator.error = None
    r = client.post(f"/admin/flow-instances/{instance_id}/retry", json={"requested_by": "ops"})
    assert r.status_code == 200
    body = r.json()
    assert body["outcome"] == "advanced"
    assert body["instance"]["status"] == "completed"
    assert [e["text"] for e in body["effects"] if e["type"] == "send_message"] == ["texto gerado", "fin"]

    r = client.post(f"/admin/flow-instances/{instance_id}/retry", json={})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "instance_not_failed"

    r = client.post(f"/admin/flow-instances/{instance_id}/abandon")
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "instance_not_live"

    assert client.get("/admin/flow-instances/nope").status_code == 404
