"""
Criteria Evaluator

Pure predicate evaluation of a criteria tree against customer attributes or
event properties. Evaluation is total: type mismatches and missing fields make
a leaf false instead of raising.
"""

import hashlib
import json
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import TypeAdapter, ValidationError

from .models import Combinator, Criteria, CriteriaGroup, CriteriaLeaf, CriteriaOperator
from .protocols import CampaignValidationError

_criteria_adapter = TypeAdapter(Criteria)

_MISSING = object()


def parse_criteria(data: Any) -> Criteria:
    """Validate raw criteria, raising CampaignValidationError on malformed input"""
    try:
        return _criteria_adapter.validate_python(data)
    except ValidationError as e:
        raise CampaignValidationError(
            f"Invalid criteria: {e.errors()[0]['msg'] if e.errors() else e}",
            field="criteria",
            reason_code="invalid_criteria",
        ) from e


def criteria_fingerprint(criteria: Optional[Criteria]) -> Optional[str]:
    """Stable hash of a criteria tree"""
    if criteria is None:
        return None
    canonical = json.dumps(criteria.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def evaluate(criteria: Criteria, attributes: Dict[str, Any]) -> bool:
    """Evaluate a criteria tree against an attribute map"""
    if isinstance(criteria, CriteriaGroup):
        if criteria.combinator == Combinator.AND:
            return all(evaluate(child, attributes) for child in criteria.children)
        return any(evaluate(child, attributes) for child in criteria.children)
    return _evaluate_leaf(criteria, attributes)


def matching_ids(criteria: Criteria, records: Iterable[Tuple[str, Dict[str, Any]]]) -> List[str]:
    """
    Ids of the records matching the criteria.

    Module-level and side-effect free so refresh can run it in a process pool.
    """
    return [customer_id for customer_id, attributes in records if evaluate(criteria, attributes)]


# ====================
# Leaf evaluation
# ====================


def _get_nested_value(data: Dict[str, Any], field: str) -> Any:
    """Get value by exact key or dot notation (e.g. 'address.country')"""
    if field in data:
        return data[field]

    value: Any = data
    for key in field.split("."):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return _MISSING
    return value


def _evaluate_leaf(leaf: CriteriaLeaf, attributes: Dict[str, Any]) -> bool:
    field_value = _get_nested_value(attributes, leaf.field)
    if field_value is _MISSING or field_value is None:
        return False

    try:
        return _evaluate_operator(leaf.operator, field_value, leaf.value)
    except (TypeError, ValueError, ArithmeticError):
        return False


def _evaluate_operator(operator: CriteriaOperator, field_value: Any, condition_value: Any) -> bool:
    if operator == CriteriaOperator.EQUALS:
        return _equals(field_value, condition_value)

    elif operator == CriteriaOperator.CONTAINS:
        if isinstance(field_value, str) and isinstance(condition_value, str):
            return condition_value in field_value
        elif isinstance(field_value, (list, tuple)):
            return any(_equals(item, condition_value) for item in field_value)
        return False

    elif operator == CriteriaOperator.GT:
        ordered = _comparable(field_value, condition_value)
        return ordered is not None and ordered[0] > ordered[1]

    elif operator == CriteriaOperator.LT:
        ordered = _comparable(field_value, condition_value)
        return ordered is not None and ordered[0] < ordered[1]

    elif operator in (CriteriaOperator.IN, CriteriaOperator.NOT_IN):
        candidates = field_value if isinstance(field_value, (list, tuple)) else [field_value]
        overlap = any(_equals(c, v) for c in candidates for v in condition_value)
        return overlap if operator == CriteriaOperator.IN else not overlap

    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _as_instant(value: Any) -> Optional[datetime]:
    """Datetime-like value as an aware UTC datetime, or None"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time.min)
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _is_temporal(value: Any) -> bool:
    return isinstance(value, (datetime, date))


def _equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return Decimal(str(left)) == Decimal(str(right))
    if _is_temporal(left) or _is_temporal(right):
        left_at, right_at = _as_instant(left), _as_instant(right)
        return left_at is not None and right_at is not None and left_at == right_at
    if type(left) is not type(right):
        return False
    return left == right


def _comparable(left: Any, right: Any) -> Optional[Tuple[Any, Any]]:
    """Pair of mutually ordered values, or None if the two cannot be ordered"""
    if _is_number(left) and _is_number(right):
        return Decimal(str(left)), Decimal(str(right))
    if isinstance(left, bool) or isinstance(right, bool):
        return None
    left_at, right_at = _as_instant(left), _as_instant(right)
    if left_at is not None and right_at is not None:
        return left_at, right_at
    return None


__all__ = ["evaluate", "matching_ids", "parse_criteria", "criteria_fingerprint"]
