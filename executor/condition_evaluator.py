import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from models.conditions import Condition, ConditionGroup, ConditionOperator, EvaluationMode
from errors import TriggerEvaluationError
from utils.time_utils import parse_datetime, utcnow

logger = logging.getLogger("automation_engine")

_MISSING = object()

_PRESENCE_OPERATORS = {
    ConditionOperator.IS_KNOWN,
    ConditionOperator.IS_UNKNOWN,
    ConditionOperator.IS_EMPTY,
    ConditionOperator.IS_NOT_EMPTY,
    ConditionOperator.TAG_ABSENT,
}

_UNIT_DELTAS = {
    "minutes": timedelta(minutes=1),
    "hours": timedelta(hours=1),
    "days": timedelta(days=1),
    "weeks": timedelta(weeks=1),
}


class ConditionEvaluator:
    """
    Evaluates AND/OR condition-group trees against a lead attribute snapshot.

    Evaluation is pure. A comparison on a missing field, or on a value that
    cannot be coerced to the operator's type, is false; the presence
    operators (is_known, is_unknown, is_empty, is_not_empty, tag_absent)
    are the only ones that give meaning to a missing field.
    """

    def evaluate_groups(
        self,
        groups: List[ConditionGroup],
        mode: EvaluationMode,
        attributes: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> bool:
        """Combines top-level groups under `mode`. No groups means "match everything"."""
        if not groups:
            return True
        now = now or utcnow()
        results = (self.evaluate_group(group, attributes, now) for group in groups)
        return all(results) if mode == EvaluationMode.AND else any(results)

    def evaluate_group(self, group: ConditionGroup, attributes: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        if not group.conditions:
            return True
        now = now or utcnow()
        results = (self._evaluate_node(node, attributes, now) for node in group.conditions)
        return all(results) if group.operator == EvaluationMode.AND else any(results)

    def safe_evaluate_groups(
        self,
        groups: List[ConditionGroup],
        mode: EvaluationMode,
        attributes: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> bool:
        """Like evaluate_groups, but bad condition data degrades to "no match"."""
        try:
            return self.evaluate_groups(groups, mode, attributes, now)
        except TriggerEvaluationError as e:
            logger.warning(f"Condition evaluation failed, treating as no match: {e}")
            return False

    def _evaluate_node(self, node: Union[Condition, ConditionGroup], attributes: Dict[str, Any], now: datetime) -> bool:
        if isinstance(node, ConditionGroup):
            return self.evaluate_group(node, attributes, now)
        return self.evaluate_condition(node, attributes, now)

    def evaluate_condition(self, condition: Condition, attributes: Dict[str, Any], now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        actual = self.resolve_field(attributes, condition.field)
        op = condition.operator

        if actual is _MISSING or actual is None:
            if op in _PRESENCE_OPERATORS:
                return op in (ConditionOperator.IS_UNKNOWN, ConditionOperator.IS_EMPTY, ConditionOperator.TAG_ABSENT)
            return False

        try:
            return self._compare(op, actual, condition.value, now)
        except (TypeError, ValueError, IndexError) as e:
            logger.debug(f"Condition {condition.field} {op.value} {condition.value!r} not comparable: {e}")
            return False

    @staticmethod
    def resolve_field(attributes: Dict[str, Any], field: str) -> Any:
        """Resolves dotted paths (custom_fields.gpa). Returns _MISSING when absent."""
        if not isinstance(attributes, dict):
            raise TriggerEvaluationError(f"Lead attributes must be a mapping, got {type(attributes).__name__}")
        if field in attributes:
            return attributes[field]
        current: Any = attributes
        for part in field.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return _MISSING
        return current

    def _compare(self, op: ConditionOperator, actual: Any, expected: Any, now: datetime) -> bool:
        if op in (ConditionOperator.EQUALS, ConditionOperator.IS):
            return _normalize(actual) == _normalize(_first(expected) if op == ConditionOperator.IS else expected)
        if op in (ConditionOperator.NOT_EQUALS, ConditionOperator.IS_NOT):
            return _normalize(actual) != _normalize(_first(expected) if op == ConditionOperator.IS_NOT else expected)

        if op == ConditionOperator.CONTAINS:
            return _contains(actual, expected)
        if op == ConditionOperator.NOT_CONTAINS:
            return not _contains(actual, expected)
        if op == ConditionOperator.STARTS_WITH:
            return str(actual).lower().startswith(str(expected).lower())
        if op == ConditionOperator.ENDS_WITH:
            return str(actual).lower().endswith(str(expected).lower())
        if op in (ConditionOperator.IN, ConditionOperator.IS_ONE_OF):
            return _normalize(actual) in {_normalize(v) for v in _as_list(expected)}
        if op in (ConditionOperator.NOT_IN, ConditionOperator.IS_NOT_ONE_OF):
            return _normalize(actual) not in {_normalize(v) for v in _as_list(expected)}
        if op == ConditionOperator.CONTAINS_ANY:
            have = {_normalize(v) for v in _as_list(actual)}
            return any(_normalize(v) in have for v in _as_list(expected))
        if op == ConditionOperator.CONTAINS_ALL:
            have = {_normalize(v) for v in _as_list(actual)}
            return all(_normalize(v) in have for v in _as_list(expected))

        if op == ConditionOperator.GREATER_THAN:
            return float(actual) > float(expected)
        if op == ConditionOperator.LESS_THAN:
            return float(actual) < float(expected)
        if op == ConditionOperator.BETWEEN:
            low, high = _as_list(expected)[:2]
            return float(low) <= float(actual) <= float(high)

        if op == ConditionOperator.TAG_PRESENT:
            return _normalize(expected) in {_normalize(t) for t in _as_list(actual)}
        if op == ConditionOperator.TAG_ABSENT:
            return _normalize(expected) not in {_normalize(t) for t in _as_list(actual)}

        if op == ConditionOperator.IS_KNOWN:
            return True
        if op == ConditionOperator.IS_UNKNOWN:
            return False
        if op == ConditionOperator.IS_EMPTY:
            return len(actual) == 0 if hasattr(actual, "__len__") else False
        if op == ConditionOperator.IS_NOT_EMPTY:
            return len(actual) > 0 if hasattr(actual, "__len__") else True

        return self._compare_dates(op, actual, expected, now)

    def _compare_dates(self, op: ConditionOperator, actual: Any, expected: Any, now: datetime) -> bool:
        actual_dt = _require_datetime(actual)

        if op == ConditionOperator.DATE_REACHED:
            return actual_dt <= now
        if op == ConditionOperator.IS_BEFORE:
            return actual_dt < _require_datetime(expected)
        if op == ConditionOperator.IS_AFTER:
            return actual_dt > _require_datetime(expected)
        if op == ConditionOperator.IS_BETWEEN:
            start, end = _as_list(expected)[:2]
            return _require_datetime(start) <= actual_dt <= _require_datetime(end)
        if op in (ConditionOperator.IS_WITHIN_LAST, ConditionOperator.IS_OLDER_THAN):
            window = _window(expected)
            if op == ConditionOperator.IS_WITHIN_LAST:
                return now - window <= actual_dt <= now
            return actual_dt < now - window

        raise TriggerEvaluationError(f"Unsupported operator: {op}")


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower()
    return value


def _first(value: Any) -> Any:
    # The builder stores single-select values as one-element lists.
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if isinstance(value, str) and "," in value:
        return [v.strip() for v in value.split(",") if v.strip()]
    return [value]


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple, set)):
        return _normalize(expected) in {_normalize(v) for v in actual}
    return str(expected).lower() in str(actual).lower()


def _require_datetime(value: Any) -> datetime:
    parsed = parse_datetime(value)
    if parsed is None:
        raise ValueError(f"Not a date: {value!r}")
    return parsed


def _window(expected: Any) -> timedelta:
    """Accepts [amount, unit], {"value": n, "unit": u} or a bare number of days."""
    if isinstance(expected, dict):
        amount, unit = expected.get("value"), expected.get("unit", "days")
    elif isinstance(expected, (list, tuple)):
        amount = expected[0]
        unit = expected[1] if len(expected) > 1 else "days"
    else:
        amount, unit = expected, "days"
    if unit not in _UNIT_DELTAS:
        raise ValueError(f"Unknown unit: {unit}")
    return _UNIT_DELTAS[unit] * float(amount)
