"""
Validação estrutural de flows (executada na publicação).

Checks:
- integridade do grafo (ids únicos, arestas órfãs, portas inexistentes)
- nó inicial único e todos os nós alcançáveis a partir dele
- configuração por tipo de nó (predicados, porta false, waits, botões)
"""
from __future__ import annotations

import re
from collections import Counter
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from app.domain.flows.conditions import predicate_problem
from app.domain.flows.errors import ConfigurationError, ValidationIssue
from app.domain.flows.schema import (
    FALSE_PORT,
    MAIN_PORT,
    MAX_BUTTONS,
    AssignmentStrategy,
    FlowDocument,
    NodeKind,
)

_TIME_OF_DAY_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def parse_document(raw: Dict[str, Any]) -> FlowDocument:
    try:
        return FlowDocument.model_validate(raw)
    except ValidationError as e:
        issues = [
            ValidationIssue(
                code="invalid_document",
                message=f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}",
            )
            for err in e.errors()
        ]
        raise ConfigurationError(issues)


def validate_flow(doc: FlowDocument, *, known_flow_ids: Optional[Iterable[int]] = None) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    issues.extend(_validate_structure(doc))
    issues.extend(_validate_edges(doc))
    issues.extend(_validate_nodes(doc, known_flow_ids))
    return issues


def ensure_valid(doc: FlowDocument, *, known_flow_ids: Optional[Iterable[int]] = None) -> FlowDocument:
    issues = validate_flow(doc, known_flow_ids=known_flow_ids)
    if issues:
        raise ConfigurationError(issues)
    return doc


def _validate_structure(doc: FlowDocument) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []

    if not doc.nodes:
        issues.append(ValidationIssue(code="empty_flow", message="flow has no nodes"))
        return issues

    for node_id, count in Counter(n.id for n in doc.nodes).items():
        if not node_id:
            issues.append(ValidationIssue(code="empty_node_id", message="node id must not be empty"))
        elif count > 1:
            issues.append(ValidationIssue(code="duplicate_node_id", message="node id used more than once", node_id=node_id))

    for edge_id, count in Counter(e.id for e in doc.edges).items():
        if count > 1:
            issues.append(ValidationIssue(code="duplicate_edge_id", message="edge id used more than once", edge_id=edge_id))

    by_id = doc.node_by_id()
    if doc.start_node_id:
        if doc.start_node_id not in by_id:
            issues.append(
                ValidationIssue(code="start_node_not_found", message="start_node_id does not reference a node", node_id=doc.start_node_id)
            )
    else:
        roots = doc.root_node_ids()
        if not roots:
            issues.append(ValidationIssue(code="no_start_node", message="every node has an incoming edge"))
        elif len(roots) > 1:
            issues.append(
                ValidationIssue(
                    code="ambiguous_start_node",
                    message=f"more than one node without incoming edges: {', '.join(sorted(roots))}",
                )
            )

    start = doc.start_node()
    if start is not None:
        reached = _reachable(doc, start.id)
        for n in doc.nodes:
            if n.id and n.id not in reached:
                issues.append(
                    ValidationIssue(code="unreachable_node", message=f"node is not reachable from start node {start.id}", node_id=n.id)
                )
    return issues


def _reachable(doc: FlowDocument, start_id: str) -> set:
    targets: Dict[str, List[str]] = {}
    for e in doc.edges:
        targets.setdefault(e.source, []).append(e.target)
    seen = {start_id}
    stack = [start_id]
    while stack:
        for nxt in targets.get(stack.pop(), []):
            if nxt not in seen:
                seen.add(nxt)
                stack.append(nxt)
    return seen


def _validate_edges(doc: FlowDocument) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    by_id = doc.node_by_id()
    seen_ports: Dict[tuple, str] = {}

    for e in doc.edges:
        if e.source not in by_id:
            issues.append(ValidationIssue(code="dangling_edge", message="edge source does not exist", edge_id=e.id, node_id=e.source))
            continue
        if e.target not in by_id:
            issues.append(ValidationIssue(code="dangling_edge", message="edge target does not exist", edge_id=e.id, node_id=e.target))
            continue

        source = by_id[e.source]
        if e.source_port not in source.ports():
            issues.append(
                ValidationIssue(
                    code="unknown_port",
                    message=f"port '{e.source_port}' does not exist on {source.kind} node",
                    edge_id=e.id,
                    node_id=e.source,
                )
            )
            continue

        key = (e.source, e.source_port)
        if key in seen_ports:
            issues.append(
                ValidationIssue(
                    code="ambiguous_port",
                    message=f"port '{e.source_port}' already wired by edge {seen_ports[key]}",
                    edge_id=e.id,
                    node_id=e.source,
                )
            )
        else:
            seen_ports[key] = e.id
    return issues


def _validate_nodes(doc: FlowDocument, known_flow_ids: Optional[Iterable[int]]) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    known = {int(x) for x in known_flow_ids} if known_flow_ids is not None else None

    for node in doc.nodes:
        kind = NodeKind(node.kind)

        if kind in (NodeKind.message, NodeKind.question):
            issues.extend(_validate_buttons(node))
            if not node.payload.text.strip():
                issues.append(ValidationIssue(code="missing_text", message="message text is empty", node_id=node.id))

        elif kind == NodeKind.capture_field:
            if not node.payload.variable_name.strip():
                issues.append(ValidationIssue(code="missing_variable_name", message="capture_field requires variable_name", node_id=node.id))

        elif kind == NodeKind.condition:
            problem = predicate_problem(node.payload)
            if problem:
                issues.append(ValidationIssue(code=problem, message=f"predicate '{node.payload.predicate_kind}'", node_id=node.id))
            if doc.outgoing(node.id, FALSE_PORT) is None:
                issues.append(ValidationIssue(code="missing_false_port", message="condition false branch is not wired", node_id=node.id))
            if doc.outgoing(node.id, MAIN_PORT) is None:
                issues.append(ValidationIssue(code="missing_true_port", message="condition true branch is not wired", node_id=node.id))

        elif kind == NodeKind.ai_action:
            if not node.payload.prompt.strip():
                issues.append(ValidationIssue(code="missing_prompt", message="ai_action requires a prompt", node_id=node.id))

        elif kind == NodeKind.tag:
            if not node.payload.tag.strip():
                issues.append(ValidationIssue(code="missing_tag", message="tag name is empty", node_id=node.id))

        elif kind == NodeKind.pipeline_transition:
            if not node.payload.stage.strip():
                issues.append(ValidationIssue(code="missing_stage", message="pipeline stage is empty", node_id=node.id))

        elif kind == NodeKind.assignment:
            p = node.payload
            if p.strategy == AssignmentStrategy.manual and p.manual_advisor_id is None:
                issues.append(ValidationIssue(code="missing_manual_advisor", message="manual strategy requires manual_advisor_id", node_id=node.id))

        elif kind == NodeKind.wait:
            issues.extend(_validate_wait(node))

        elif kind == NodeKind.connect_flow:
            if known is not None and int(node.payload.target_flow_id) not in known:
                issues.append(ValidationIssue(code="unknown_target_flow", message=f"flow {node.payload.target_flow_id} does not exist", node_id=node.id))

    return issues


def _validate_buttons(node) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    buttons = list(node.buttons or [])
    if len(buttons) > MAX_BUTTONS:
        issues.append(ValidationIssue(code="too_many_buttons", message=f"at most {MAX_BUTTONS} buttons", node_id=node.id))
    ids = [b.id.strip() for b in buttons]
    for b_id, count in Counter(ids).items():
        if not b_id:
            issues.append(ValidationIssue(code="empty_button_id", message="button id must not be empty", node_id=node.id))
        elif b_id in (MAIN_PORT, FALSE_PORT):
            issues.append(ValidationIssue(code="reserved_button_id", message=f"'{b_id}' is a reserved port", node_id=node.id))
        elif count > 1:
            issues.append(ValidationIssue(code="duplicate_button_id", message=f"button '{b_id}' repeated", node_id=node.id))
    for b in buttons:
        if not (b.label or "").strip():
            issues.append(ValidationIssue(code="empty_button_label", message=f"button '{b.id}' has no label", node_id=node.id))
    return issues


def _validate_wait(node) -> List[ValidationIssue]:
    p = node.payload
    relative = p.relative_amount is not None or p.unit is not None
    scheduled = p.scheduled_days is not None or p.time_of_day is not None

    if relative and scheduled:
        return [ValidationIssue(code="ambiguous_wait", message="wait must be relative or scheduled, not both", node_id=node.id)]
    if not relative and not scheduled:
        return [ValidationIssue(code="missing_wait_config", message="wait needs relative_amount/unit or scheduled_days", node_id=node.id)]
    if relative and (p.relative_amount is None or p.unit is None):
        return [ValidationIssue(code="incomplete_relative_wait", message="relative wait requires amount and unit", node_id=node.id)]
    if scheduled:
        if p.scheduled_days is None:
            return [ValidationIssue(code="incomplete_scheduled_wait", message="scheduled wait requires scheduled_days", node_id=node.id)]
        if p.time_of_day is not None and not _TIME_OF_DAY_RE.match(p.time_of_day.strip()):
            return [ValidationIssue(code="invalid_time_of_day", message="time_of_day must be HH:MM", node_id=node.id)]
    return []
