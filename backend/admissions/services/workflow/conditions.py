"""
Transition Conditions

Small tagged-variant predicate language stored as JSON on each transition:

    {"type": "all_documents_verified", "document_types": ["transcript"]}
    {"type": "action_recorded", "action_id": "complete_interview"}
    {"type": "all_actions_recorded"}
    {"type": "field", "field": "application_fee_paid", "operator": "=", "value": true}
    {"type": "all", "conditions": [...]}
    {"type": "any", "conditions": [...]}

A transition stores a list of these; the list is an implicit "all".
Evaluation never raises: an unmet leaf yields an UnmetCondition whose
description is shown to reviewers and applicants.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from ...models.workflow_objects import UnmetCondition
from ..errors import InvalidCondition


# =============================================================================
# EVALUATION CONTEXT
# =============================================================================

@dataclass(frozen=True)
class ConditionContext:
    """
    Everything a condition may look at, materialised up front.

    verified_document_types only counts current (non-superseded) documents.
    """
    stage_required_documents: Tuple[str, ...] = ()
    stage_required_actions: Tuple[str, ...] = ()
    uploaded_document_types: FrozenSet[str] = frozenset()
    verified_document_types: FrozenSet[str] = frozenset()
    recorded_actions: FrozenSet[str] = frozenset()
    attributes: Dict[str, Any] = field(default_factory=dict)


def _humanize(identifier: str) -> str:
    return identifier.replace("_", " ").strip()


def _lookup(attributes: Dict[str, Any], path: str) -> Any:
    """Dotted-path lookup; missing keys resolve to None."""
    value: Any = attributes
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        else:
            return None
    return value


# =============================================================================
# OPERATORS
# =============================================================================

def _safe(compare: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def wrapped(actual: Any, expected: Any) -> bool:
        try:
            return bool(compare(actual, expected))
        except TypeError:
            return False
    return wrapped


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "=": _safe(lambda a, e: a == e),
    "==": _safe(lambda a, e: a == e),
    "!=": _safe(lambda a, e: a != e),
    "<>": _safe(lambda a, e: a != e),
    "<": _safe(lambda a, e: a is not None and a < e),
    "<=": _safe(lambda a, e: a is not None and a <= e),
    ">": _safe(lambda a, e: a is not None and a > e),
    ">=": _safe(lambda a, e: a is not None and a >= e),
    "in": _safe(lambda a, e: a in _as_list(e)),
    "not_in": _safe(lambda a, e: a not in _as_list(e)),
    "contains": _safe(lambda a, e: isinstance(a, (list, tuple)) and e in a),
    "not_contains": _safe(lambda a, e: isinstance(a, (list, tuple)) and e not in a),
    "starts_with": _safe(lambda a, e: isinstance(a, str) and a.startswith(e)),
    "ends_with": _safe(lambda a, e: isinstance(a, str) and a.endswith(e)),
}


# =============================================================================
# CONDITION VARIANTS
# =============================================================================

class Condition:
    """Base class for every condition variant."""
    type_name = ""

    def evaluate(self, context: ConditionContext) -> List[UnmetCondition]:
        raise NotImplementedError

    def is_met(self, context: ConditionContext) -> bool:
        return not self.evaluate(context)

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class AllDocumentsVerified(Condition):
    """Every listed document type (default: the source stage's required documents) is verified."""
    document_types: Optional[Tuple[str, ...]] = None
    type_name = "all_documents_verified"

    def evaluate(self, context: ConditionContext) -> List[UnmetCondition]:
        types = self.document_types if self.document_types is not None else context.stage_required_documents
        return [
            UnmetCondition(
                code=f"DOCUMENT_NOT_VERIFIED:{doc_type}",
                description=f"Missing verified {_humanize(doc_type)}",
            )
            for doc_type in types
            if doc_type not in context.verified_document_types
        ]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type_name}
        if self.document_types is not None:
            data["document_types"] = list(self.document_types)
        return data


@dataclass(frozen=True)
class ActionRecorded(Condition):
    """A specific reviewer action has been recorded against the application."""
    action_id: str = ""
    type_name = "action_recorded"

    def evaluate(self, context: ConditionContext) -> List[UnmetCondition]:
        if self.action_id in context.recorded_actions:
            return []
        return [UnmetCondition(
            code=f"ACTION_NOT_RECORDED:{self.action_id}",
            description=f"Required action not recorded: {_humanize(self.action_id)}",
        )]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "action_id": self.action_id}


@dataclass(frozen=True)
class AllActionsRecorded(Condition):
    """Every required action of the source stage has been recorded."""
    type_name = "all_actions_recorded"

    def evaluate(self, context: ConditionContext) -> List[UnmetCondition]:
        unmet = []
        for action_id in context.stage_required_actions:
            unmet.extend(ActionRecorded(action_id).evaluate(context))
        return unmet

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name}


@dataclass(frozen=True)
class FieldCompare(Condition):
    """Compares an application attribute against a value."""
    field: str = ""
    operator: str = "="
    value: Any = None
    type_name = "field"

    def evaluate(self, context: ConditionContext) -> List[UnmetCondition]:
        actual = _lookup(context.attributes, self.field)
        if OPERATORS[self.operator](actual, self.value):
            return []
        return [UnmetCondition(
            code=f"FIELD_CONDITION:{self.field}",
            description=f"Requirement not met: {_humanize(self.field)} {self.operator} {self.value!r}",
        )]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "field": self.field, "operator": self.operator, "value": self.value}


@dataclass(frozen=True)
class AllOf(Condition):
    conditions: Tuple[Condition, ...] = ()
    type_name = "all"

    def evaluate(self, context: ConditionContext) -> List[UnmetCondition]:
        unmet: List[UnmetCondition] = []
        for condition in self.conditions:
            unmet.extend(condition.evaluate(context))
        return unmet

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "conditions": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class AnyOf(Condition):
    conditions: Tuple[Condition, ...] = ()
    type_name = "any"

    def evaluate(self, context: ConditionContext) -> List[UnmetCondition]:
        if not self.conditions:
            return []
        branches = []
        for condition in self.conditions:
            unmet = condition.evaluate(context)
            if not unmet:
                return []
            branches.append(" and ".join(u.description for u in unmet))
        return [UnmetCondition(code="ANY_OF", description="One of: " + " or ".join(branches))]

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type_name, "conditions": [c.to_dict() for c in self.conditions]}


# =============================================================================
# PARSING
# =============================================================================

def parse_condition(data: Any) -> Condition:
    """Build a Condition from its JSON form. Raises InvalidCondition."""
    if not isinstance(data, dict) or "type" not in data:
        raise InvalidCondition(f"Condition must be an object with a 'type': {data!r}")

    kind = data["type"]

    if kind == AllDocumentsVerified.type_name:
        types = data.get("document_types")
        if types is not None and not isinstance(types, list):
            raise InvalidCondition("document_types must be a list")
        return AllDocumentsVerified(tuple(types) if types is not None else None)

    if kind == ActionRecorded.type_name:
        action_id = data.get("action_id")
        if not action_id or not isinstance(action_id, str):
            raise InvalidCondition("action_recorded requires an action_id")
        return ActionRecorded(action_id)

    if kind == AllActionsRecorded.type_name:
        return AllActionsRecorded()

    if kind == FieldCompare.type_name:
        field_name = data.get("field")
        operator = data.get("operator", "=")
        if not field_name or not isinstance(field_name, str):
            raise InvalidCondition("field condition requires a field name")
        if operator not in OPERATORS:
            raise InvalidCondition(f"Unsupported operator: {operator}")
        if "value" not in data:
            raise InvalidCondition("field condition requires a value")
        return FieldCompare(field_name, operator, data["value"])

    if kind in (AllOf.type_name, AnyOf.type_name):
        children = data.get("conditions")
        if not isinstance(children, list):
            raise InvalidCondition(f"'{kind}' requires a conditions list")
        parsed = tuple(parse_condition(child) for child in children)
        return AllOf(parsed) if kind == AllOf.type_name else AnyOf(parsed)

    raise InvalidCondition(f"Unknown condition type: {kind}")


def parse_conditions(data: Optional[Sequence[Any]]) -> AllOf:
    """Parse a transition's stored condition list into an implicit AllOf."""
    if data is None:
        return AllOf(())
    if not isinstance(data, (list, tuple)):
        raise InvalidCondition("transition_conditions must be a list")
    return AllOf(tuple(parse_condition(item) for item in data))


def describe_unmet(unmet: Sequence[UnmetCondition]) -> str:
    """Single reviewer-facing sentence for a ConditionsNotMet failure."""
    return "; ".join(u.description for u in unmet)
