import pytest

from app.domain.flows.conditions import evaluate_condition, predicate_problem
from app.domain.flows.errors import ConfigurationError
from app.domain.flows.schema import ConditionPayload
from app.domain.flows.validation import ensure_valid, parse_document, validate_flow


def _edge(eid, source, target, port="main"):
    return {"id": eid, "source": source, "source_port": port, "target": target}


def _codes(raw, **kw):
    return {i.code for i in validate_flow(parse_document(raw), **kw)}


def _valid_doc():
    return {
        "name": "calificacion",
        "trigger_keywords": ["Hola", " hola ", "INFO"],
        "nodes": [
            {"id": "m1", "kind": "message", "payload": {"text": "Hola"}},
            {"id": "c1", "kind": "condition", "payload": {"predicate_kind": "variable_is_set", "args": {"variable": "name"}}},
            {"id": "yes", "kind": "message", "payload": {"text": "Hola {{name}}"}},
            {"id": "no", "kind": "capture_field", "payload": {"variable_name": "name", "prompt": "¿Tu nombre?"}},
        ],
        "edges": [_edge("e1", "m1", "c1"), _edge("e2", "c1", "yes"), _edge("e3", "c1", "no", port="false")],
    }


def test_valid_document_has_no_issues():
    doc = parse_document(_valid_doc())
    assert validate_flow(doc) == []
    assert doc.trigger_keywords == ["hola", "info"]
    assert doc.start_node().id == "m1"


def test_condition_without_false_port_is_rejected():
    raw = _valid_doc()
    raw["edges"] = raw["edges"][:2]
    raw["nodes"] = raw["nodes"][:3]
    with pytest.raises(ConfigurationError) as exc:
        ensure_valid(parse_document(raw))
    assert [i.code for i in exc.value.issues] == ["missing_false_port"]
    assert exc.value.issues[0].node_id == "c1"


def test_unknown_predicate_is_rejected():
    raw = _valid_doc()
    raw["nodes"][1]["payload"] = {"predicate_kind": "lead_is_vip", "args": {}}
    assert "unknown_predicate" in _codes(raw)


def test_dangling_edge_and_unknown_port():
    raw = _valid_doc()
    raw["edges"].append(_edge("e4", "yes", "ghost"))
    raw["edges"].append(_edge("e5", "m1", "yes", port="nope"))
    codes = _codes(raw)
    assert "dangling_edge" in codes
    assert "unknown_port" in codes


def test_two_roots_without_start_node_is_ambiguous():
    raw = _valid_doc()
    raw["nodes"].append({"id": "orphan", "kind": "tag", "payload": {"tag": "x"}})
    assert "ambiguous_start_node" in _codes(raw)

    raw["start_node_id"] = "m1"
    assert "ambiguous_start_node" not in _codes(raw)


def test_explicit_start_still_rejects_unreachable_nodes():
    raw = _valid_doc()
    raw["nodes"].append({"id": "orphan", "kind": "tag", "payload": {"tag": "x"}})
    raw["start_node_id"] = "m1"
    issues = validate_flow(parse_document(raw))
    assert [(i.code, i.node_id) for i in issues] == [("unreachable_node", "orphan")]

    # com o início em c1, m1 fica fora do grafo alcançável
    raw = _valid_doc()
    raw["start_node_id"] = "c1"
    assert [(i.code, i.node_id) for i in validate_flow(parse_document(raw))] == [("unreachable_node", "m1")]


def test_button_rules():
    raw = {
        "name": "botones",
        "nodes": [
            {
                "id": "q",
                "kind": "question",
                "payload": {"text": "¿Qué buscas?"},
                "buttons": [
                    {"id": "a", "label": "Casa"},
                    {"id": "a", "label": "Depa"},
                    {"id": "false", "label": "Otro"},
                    {"id": "d", "label": ""},
                ],
            }
        ],
        "edges": [],
    }
    codes = _codes(raw)
    assert {"too_many_buttons", "duplicate_button_id", "reserved_button_id", "empty_button_label"} <= codes


@pytest.mark.parametrize(
    "payload,code",
    [
        ({}, "missing_wait_config"),
        ({"relative_amount": 5}, "incomplete_relative_wait"),
        ({"relative_amount": 5, "unit": "minutes", "scheduled_days": 1}, "ambiguous_wait"),
        ({"scheduled_days": 1, "time_of_day": "25:00"}, "invalid_time_of_day"),
    ],
)
def test_wait_configuration(payload, code):
    raw = {"name": "w", "nodes": [{"id": "w", "kind": "wait", "payload": payload}], "edges": []}
    assert code in _codes(raw)


def test_connect_flow_target_must_exist():
    raw = {
        "name": "salto",
        "nodes": [{"id": "go", "kind": "connect_flow", "payload": {"target_flow_id": 42}}],
        "edges": [],
    }
    assert "unknown_target_flow" in _codes(raw, known_flow_ids=[1, 2])
    assert _codes(raw, known_flow_ids=[42]) == set()


def test_malformed_document_becomes_configuration_error():
    with pytest.raises(ConfigurationError) as exc:
        parse_document({"name": "x", "nodes": [{"id": "n", "kind": "teleport"}]})
    assert all(i.code == "invalid_document" for i in exc.value.issues)


def test_condition_predicates():
    contains = ConditionPayload(predicate_kind="message_contains", args={"value": "crédito"})
    assert evaluate_condition(contains, {}, "¿Aceptan  CRÉDITO infonavit?") is True
    assert evaluate_condition(contains, {}, None) is False

    is_set = ConditionPayload(predicate_kind="variable_is_set", args={"variable": "email"})
    assert evaluate_condition(is_set, {"email": "a@b.mx"}, "") is True
    assert evaluate_condition(is_set, {"email": "   "}, "") is False

    equals = ConditionPayload(predicate_kind="variable_equals", args={"variable": "zona"})
    assert predicate_problem(equals) == "missing_predicate_arg:value"
