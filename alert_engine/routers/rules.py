"""
Routing rules API endpoints
"""
import logging
from typing import List
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy import asc

from alert_engine.database import get_db, utc_now
from alert_engine.dependencies import get_workspace_id, get_rule_cache_dependency
from alert_engine.models import RoutingRule
from alert_engine.schemas import (
    RoutingRuleCreate, RoutingRuleUpdate, RoutingRuleResponse,
    RuleTestRequest, RuleTestResult, AlertForEvaluation, EvaluateRulesResponse
)
from alert_engine.services.rule_cache import RuleCache
from alert_engine.services.rules_engine import test_rule, evaluate_all, load_workspace_rules

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/rules", tags=["Rules"])


def _get_rule_or_404(db: Session, workspace_id: str, rule_id: UUID) -> RoutingRule:
    rule = db.query(RoutingRule).filter(
        RoutingRule.id == rule_id,
        RoutingRule.workspace_id == workspace_id
    ).first()

    if not rule:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Rule not found"
        )
    return rule


@router.get("", response_model=List[RoutingRuleResponse])
async def list_rules(
    workspace_id: str = Depends(get_workspace_id),
    db: Session = Depends(get_db)
):
    """
    List the workspace's routing rules in evaluation order.
    """
    rules = db.query(RoutingRule).filter(
        RoutingRule.workspace_id == workspace_id
    ).order_by(asc(RoutingRule.priority), asc(RoutingRule.created_at)).all()
    return [RoutingRuleResponse.model_validate(r) for r in rules]


@router.post("", response_model=RoutingRuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    rule_data: RoutingRuleCreate,
    workspace_id: str = Depends(get_workspace_id),
    db: Session = Depends(get_db),
    rule_cache: RuleCache = Depends(get_rule_cache_dependency)
):
    """
    Create a new routing rule. Lower priority numbers are evaluated first.
    """
    rule = RoutingRule(
        workspace_id=workspace_id,
        name=rule_data.name,
        description=rule_data.description,
        priority=rule_data.priority,
        conditions_json=rule_data.conditions.to_json(),
        actions_json=rule_data.actions.to_json(),
        enabled=rule_data.enabled
    )

    db.add(rule)
    db.commit()
    db.refresh(rule)
    rule_cache.invalidate(workspace_id)

    logger.info(f"Created routing rule '{rule.name}' (priority {rule.priority}) in workspace {workspace_id}")
    return RoutingRuleResponse.model_validate(rule)


@router.post("/test", response_model=RuleTestResult)
async def test_rule_endpoint(
    request: RuleTestRequest,
    workspace_id: str = Depends(get_workspace_id)
):
    """
    Dry-run a condition group against a hypothetical alert.
    """
    return test_rule(request.conditions, request.alert)


@router.post("/evaluate", response_model=EvaluateRulesResponse)
async def evaluate_rules(
    alert: AlertForEvaluation,
    workspace_id: str = Depends(get_workspace_id),
    db: Session = Depends(get_db)
):
    """
    Evaluate every enabled rule of the workspace against an alert and report
    which one production routing would pick.
    """
    results = evaluate_all(alert, load_workspace_rules(db, workspace_id))
    matched = next((r for r in results if r.matched), None)
    return EvaluateRulesResponse(matched_rule=matched, results=results)


@router.post("/cache/invalidate", status_code=status.HTTP_204_NO_CONTENT)
async def invalidate_rule_cache(
    workspace_id: str = Depends(get_workspace_id),
    rule_cache: RuleCache = Depends(get_rule_cache_dependency)
):
    """
    Drop the cached rule set so the next alert reloads it.
    """
    rule_cache.invalidate(workspace_id)


@router.get("/{rule_id}", response_model=RoutingRuleResponse)
async def get_rule(
    rule_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    db: Session = Depends(get_db)
):
    """
    Get a specific rule by ID.
    """
    return RoutingRuleResponse.model_validate(_get_rule_or_404(db, workspace_id, rule_id))


@router.put("/{rule_id}", response_model=RoutingRuleResponse)
async def update_rule(
    rule_id: UUID,
    rule_data: RoutingRuleUpdate,
    workspace_id: str = Depends(get_workspace_id),
    db: Session = Depends(get_db),
    rule_cache: RuleCache = Depends(get_rule_cache_dependency)
):
    """
    Update an existing rule.
    """
    rule = _get_rule_or_404(db, workspace_id, rule_id)

    update_data = rule_data.model_dump(exclude_unset=True)
    if rule_data.conditions is not None:
        rule.conditions_json = rule_data.conditions.to_json()
    if rule_data.actions is not None:
        rule.actions_json = rule_data.actions.to_json()
    for field in ("name", "description", "priority", "enabled"):
        if field in update_data and update_data[field] is not None:
            setattr(rule, field, update_data[field])
    if "description" in update_data and update_data["description"] is None:
        rule.description = None
    rule.updated_at = utc_now()

    db.commit()
    db.refresh(rule)
    rule_cache.invalidate(workspace_id)

    logger.info(f"Updated routing rule '{rule.name}' in workspace {workspace_id}")
    return RoutingRuleResponse.model_validate(rule)


@router.delete("/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_rule(
    rule_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    db: Session = Depends(get_db),
    rule_cache: RuleCache = Depends(get_rule_cache_dependency)
):
    """
    Delete a rule.
    """
    rule = _get_rule_or_404(db, workspace_id, rule_id)

    db.delete(rule)
    db.commit()
    rule_cache.invalidate(workspace_id)

    logger.info(f"Deleted routing rule {rule_id} in workspace {workspace_id}")
