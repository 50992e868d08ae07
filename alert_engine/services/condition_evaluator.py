"""
Condition Evaluator - Match a routing rule's condition group against an alert

Pure and deterministic: the same (conditions, alert) pair always yields the
same result. Ambiguous comparisons (invalid regex, non-numeric operands)
fail closed as a non-match and are logged; they never raise.
"""
import logging
import re
from functools import lru_cache
from typing import Any, List, Optional, Tuple

from alert_engine.metrics import CONDITION_EVALUATION_ERRORS
from alert_engine.schemas import (
    AlertForEvaluation,
    ConditionEvaluationDetail,
    ConditionGroup,
    ConditionGroupResult,
    ConditionOperator,
    RuleCondition,
    TAG_FIELD_PREFIX,
    parse_severity,
    severity_rank,
)

logger = logging.getLogger(__name__)

_MISSING = object()

FIELD_ATTRIBUTES = {
    "environment": "environment",
    "env": "environment",
    "severity": "severity",
    "project": "project",
    "service": "project",
    "title": "title",
    "message": "message",
    "source": "source",
    "status": "status",
    "count": "count",
    "fingerprint": "fingerprint",
}


def resolve_field(alert: AlertForEvaluation, field: str) -> Any:
    """
    Look up a condition field on the alert.
    `tags.<key>` resolves against the tag map; a missing tag is "".
    Unknown fields resolve to a sentinel so the caller can fail closed.
    """
    if field.startswith(TAG_FIELD_PREFIX):
        return alert.tags.get(field[len(TAG_FIELD_PREFIX):], "")

    attribute = FIELD_ATTRIBUTES.get(field)
    if attribute is None:
        return _MISSING

    value = getattr(alert, attribute)
    if field == "severity":
        return value.value if hasattr(value, "value") else str(value)
    if value is None:
        return ""
    return value


def _canonical(field: str, value: Any, case_sensitive: bool) -> str:
    if field == "severity":
        try:
            return parse_severity(value).value
        except ValueError:
            return str(value).strip().lower()
    text = "" if value is None else str(value)
    return text if case_sensitive else text.lower()


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


@lru_cache(maxsize=512)
def _compile(pattern: str, flags: int) -> "re.Pattern":
    return re.compile(pattern, flags)


def _equals(field: str, actual: Any, expected: Any, case_sensitive: bool) -> bool:
    if field == "count":
        a, e = _to_number(actual), _to_number(expected)
        if a is not None and e is not None:
            return a == e
    return _canonical(field, actual, case_sensitive) == _canonical(field, expected, case_sensitive)


def _compare(field: str, operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    if field == "severity":
        a, e = severity_rank(actual), severity_rank(expected)
    else:
        a, e = _to_number(actual), _to_number(expected)

    if a is None or e is None:
        logger.warning(
            f"Non-numeric comparison on '{field}' ({actual!r} {operator.value} {expected!r}); treating as non-match"
        )
        CONDITION_EVALUATION_ERRORS.labels(reason="not_numeric").inc()
        return False

    if operator == ConditionOperator.GREATER_THAN:
        return a > e
    if operator == ConditionOperator.GREATER_THAN_OR_EQUALS:
        return a >= e
    if operator == ConditionOperator.LESS_THAN:
        return a < e
    return a <= e


def evaluate_condition(condition: RuleCondition, alert: AlertForEvaluation) -> Tuple[bool, Any]:
    """Evaluate one condition. Returns (result, actual value)."""
    field = condition.field
    operator = condition.operator
    expected = condition.value
    case_sensitive = condition.case_sensitive

    actual = resolve_field(alert, field)
    if actual is _MISSING:
        logger.warning(f"Unknown condition field '{field}'; treating as non-match")
        CONDITION_EVALUATION_ERRORS.labels(reason="unknown_field").inc()
        return False, None

    if operator == ConditionOperator.EQUALS:
        return _equals(field, actual, expected, case_sensitive), actual
    if operator == ConditionOperator.NOT_EQUALS:
        return not _equals(field, actual, expected, case_sensitive), actual

    if operator in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        candidates = expected if isinstance(expected, list) else [expected]
        found = any(_equals(field, actual, item, case_sensitive) for item in candidates)
        return (found if operator == ConditionOperator.IN else not found), actual

    if operator in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        found = _canonical(field, expected, case_sensitive) in _canonical(field, actual, case_sensitive)
        return (found if operator == ConditionOperator.CONTAINS else not found), actual

    if operator == ConditionOperator.REGEX:
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            pattern = _compile(str(expected), flags)
        except re.error as e:
            logger.warning(f"Invalid regex {expected!r} on '{field}': {e}; treating as non-match")
            CONDITION_EVALUATION_ERRORS.labels(reason="invalid_regex").inc()
            return False, actual
        return pattern.search(str(actual)) is not None, actual

    if operator in (
        ConditionOperator.GREATER_THAN,
        ConditionOperator.GREATER_THAN_OR_EQUALS,
        ConditionOperator.LESS_THAN,
        ConditionOperator.LESS_THAN_OR_EQUALS,
    ):
        return _compare(field, operator, actual, expected), actual

    logger.warning(f"Unknown operator '{operator}'; treating as non-match")
    CONDITION_EVALUATION_ERRORS.labels(reason="unknown_operator").inc()
    return False, actual


def _evaluate_list(
    conditions: List[RuleCondition],
    alert: AlertForEvaluation,
    details: List[ConditionEvaluationDetail],
    matched: List[str],
    failed: List[str],
) -> List[bool]:
    results = []
    for condition in conditions:
        result, actual = evaluate_condition(condition, alert)
        description = condition.describe()
        details.append(ConditionEvaluationDetail(
            field=condition.field,
            operator=condition.operator.value,
            expected=condition.value,
            actual=actual,
            result=result,
            description=description,
        ))
        (matched if result else failed).append(description)
        results.append(result)
    return results


def evaluate(group: ConditionGroup, alert: AlertForEvaluation) -> ConditionGroupResult:
    """
    Evaluate a condition group against an alert.

    `all` requires every condition (empty `all` is true), `any` requires at
    least one (empty `any` is false), an absent key places no constraint.
    Every condition is evaluated so dry runs can report each one.
    """
    details: List[ConditionEvaluationDetail] = []
    matched: List[str] = []
    failed: List[str] = []

    all_ok = True
    if group.all is not None:
        all_ok = all(_evaluate_list(group.all, alert, details, matched, failed))

    any_ok = True
    if group.any is not None:
        any_ok = any(_evaluate_list(group.any, alert, details, matched, failed))

    return ConditionGroupResult(
        matched=all_ok and any_ok,
        matched_conditions=matched,
        failed_conditions=failed,
        details=details,
    )
