"""
Avaliador de condições dos nós `condition`.

Função pura: (predicado, variáveis, última mensagem recebida) -> bool.
O registro `PREDICATES` também é usado na validação de publicação para
rejeitar predicados desconhecidos ou sem argumentos obrigatórios.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from app.domain.flows.errors import ConfigurationError, ValidationIssue
from app.domain.flows.schema import ConditionPayload


def _norm(value: Any) -> str:
    return " ".join(str(value if value is not None else "").strip().lower().split())


def _message_contains(args: Mapping[str, Any], variables: Mapping[str, str], message: str) -> bool:
    raw = args.get("value")
    needles = raw if isinstance(raw, (list, tuple)) else [raw]
    haystack = _norm(message)
    return any(_norm(n) and _norm(n) in haystack for n in needles)


def _variable_is_set(args: Mapping[str, Any], variables: Mapping[str, str], message: str) -> bool:
    value = variables.get(str(args.get("variable") or ""))
    return bool(str(value).strip()) if value is not None else False


def _variable_equals(args: Mapping[str, Any], variables: Mapping[str, str], message: str) -> bool:
    value = variables.get(str(args.get("variable") or ""))
    if value is None:
        return False
    return _norm(value) == _norm(args.get("value"))


@dataclass(frozen=True)
class Predicate:
    fn: Callable[[Mapping[str, Any], Mapping[str, str], str], bool]
    required_args: Tuple[str, ...]


PREDICATES: Dict[str, Predicate] = {
    "message_contains": Predicate(_message_contains, ("value",)),
    "variable_is_set": Predicate(_variable_is_set, ("variable",)),
    "variable_equals": Predicate(_variable_equals, ("variable", "value")),
}


def predicate_problem(payload: ConditionPayload) -> Optional[str]:
    """Retorna o código do problema de configuração, ou None se o predicado é válido."""
    pred = PREDICATES.get(payload.predicate_kind)
    if pred is None:
        return "unknown_predicate"
    for name in pred.required_args:
        if payload.args.get(name) in (None, "", []):
            return f"missing_predicate_arg:{name}"
    return None


def evaluate_condition(
    payload: ConditionPayload,
    variables: Mapping[str, str],
    last_message: Optional[str],
) -> bool:
    pred = PREDICATES.get(payload.predicate_kind)
    if pred is None:
        # Só chega aqui com rascunho não validado; a publicação rejeita antes.
        raise ConfigurationError(
            [ValidationIssue(code="unknown_predicate", message=f"predicate '{payload.predicate_kind}' is not supported")]
        )
    return pred.fn(payload.args, variables, last_message or "")
