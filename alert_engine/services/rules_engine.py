"""
Rules Engine - Route alert groups to destinations using workspace routing rules
"""
import logging
import time
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from alert_engine.exceptions import RuleValidationError
from alert_engine.metrics import RULE_EVALUATION_DURATION
from alert_engine.models import AlertGroup, RoutingRule
from alert_engine.schemas import (
    AlertForEvaluation,
    ConditionGroup,
    DispatchInstruction,
    RuleActions,
    RuleEvaluationResult,
    RuleTestResult,
)
from alert_engine.services.condition_evaluator import evaluate
from alert_engine.services.rule_cache import CachedRule, RuleCache, get_rule_cache

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_rule_definition(conditions: dict, actions: dict):
    """
    Validate stored or submitted rule JSON into typed structures.
    Raises RuleValidationError carrying the pydantic error list.
    """
    try:
        return ConditionGroup.model_validate(conditions), RuleActions.model_validate(actions)
    except ValidationError as e:
        raise RuleValidationError("Invalid routing rule definition", errors=e.errors(include_url=False))


def to_cached_rule(rule: RoutingRule) -> CachedRule:
    conditions, actions = parse_rule_definition(rule.conditions_json, rule.actions_json)
    return CachedRule(
        id=rule.id,
        workspace_id=rule.workspace_id,
        name=rule.name,
        priority=rule.priority if rule.priority is not None else 100,
        created_at=rule.created_at,
        conditions=conditions,
        actions=actions,
        enabled=bool(rule.enabled),
    )


def _as_cached(rule) -> CachedRule:
    if isinstance(rule, CachedRule):
        return rule
    return to_cached_rule(rule)


def _order_key(rule: CachedRule):
    return (rule.priority, rule.created_at or _EPOCH, str(rule.id))


def sort_rules(rules: Iterable) -> List[CachedRule]:
    """Enabled rules in evaluation order: ascending priority, then oldest first."""
    cached = [_as_cached(r) for r in rules]
    return sorted((r for r in cached if r.enabled), key=_order_key)


def load_workspace_rules(db: Session, workspace_id: str) -> List[CachedRule]:
    """
    Load and validate the enabled rules of a workspace in evaluation order.
    Rows whose stored JSON no longer validates are skipped and logged.
    """
    rows = db.query(RoutingRule).filter(
        RoutingRule.workspace_id == workspace_id,
        RoutingRule.enabled == True
    ).all()

    rules = []
    for row in rows:
        try:
            rules.append(to_cached_rule(row))
        except RuleValidationError as e:
            logger.error(f"Skipping invalid routing rule {row.id} ('{row.name}'): {e.errors}")
    return sort_rules(rules)


def _result(rule: CachedRule, alert: AlertForEvaluation) -> RuleEvaluationResult:
    evaluation = evaluate(rule.conditions, alert)
    return RuleEvaluationResult(
        rule_id=rule.id,
        rule_name=rule.name,
        priority=rule.priority,
        matched=evaluation.matched,
        actions=rule.actions,
        evaluation=evaluation,
    )


def route(alert: AlertForEvaluation, rules: Iterable) -> Optional[RuleEvaluationResult]:
    """
    Find the first matching rule for an alert.
    Rules are evaluated in priority order (lower number = higher priority),
    ties broken by creation time (oldest first). Disabled rules are skipped.

    Returns:
        The matched rule's evaluation result, or None when the alert is unrouted.
    """
    start = time.perf_counter()
    try:
        for rule in sort_rules(rules):
            result = _result(rule, alert)
            if result.matched:
                return result
        return None
    finally:
        RULE_EVALUATION_DURATION.observe(time.perf_counter() - start)


def evaluate_all(alert: AlertForEvaluation, rules: Iterable) -> List[RuleEvaluationResult]:
    """Evaluate every enabled rule in order, without stopping at the first match."""
    return [_result(rule, alert) for rule in sort_rules(rules)]


def to_dispatch_instruction(actions: RuleActions) -> DispatchInstruction:
    escalate_after = actions.escalate_after_minutes
    if escalate_after is not None and escalate_after <= 0:
        escalate_after = None
    return DispatchInstruction(
        channel_id=actions.channel_id,
        mention_here=actions.mention_here,
        mention_channel=actions.mention_channel,
        escalate_after_minutes=escalate_after,
        escalation_channel_id=actions.escalation_channel_id,
    )


def test_rule(conditions: ConditionGroup, alert: AlertForEvaluation) -> RuleTestResult:
    """
    Dry-run a hypothetical condition group against a hypothetical alert,
    using the same evaluator production routing uses.
    """
    evaluation = evaluate(conditions, alert)
    return RuleTestResult(
        matched=evaluation.matched,
        matched_conditions=evaluation.matched_conditions,
        failed_conditions=evaluation.failed_conditions,
        evaluation_details=evaluation.details,
    )


# Keep pytest from collecting the dry-run helper when tests import it
test_rule.__test__ = False


class RulesEngine:
    """Routes alert groups using the cached rule set of their workspace."""

    def __init__(self, db: Session, cache: Optional[RuleCache] = None):
        self.db = db
        self.cache = cache or get_rule_cache()

    def rules_for(self, workspace_id: str) -> List[CachedRule]:
        return self.cache.get_or_load(workspace_id, lambda ws: load_workspace_rules(self.db, ws))

    def route_group(self, group: AlertGroup, message: str = "") -> Optional[RuleEvaluationResult]:
        alert = AlertForEvaluation.from_group(group, message=message)
        result = route(alert, self.rules_for(group.workspace_id))
        if result is None:
            logger.warning(
                f"No routing rule matched alert group {group.id} "
                f"(workspace={group.workspace_id}, fingerprint={group.fingerprint})"
            )
        else:
            logger.info(f"Alert group {group.id} routed by rule '{result.rule_name}' to {result.actions.channel_id}")
        return result

    def invalidate(self, workspace_id: str) -> None:
        self.cache.invalidate(workspace_id)
