"""
FastAPI dependencies shared by the routers
"""
from fastapi import Header, HTTPException, status

from alert_engine.config import get_settings
from alert_engine.schemas import EnginePolicy, WORKSPACE_ID_MAX_LENGTH
from alert_engine.services.notification_dispatcher import NotificationDispatcher, get_dispatcher
from alert_engine.services.rule_cache import RuleCache, get_rule_cache
from alert_engine.services.scheduler_service import EscalationQueue, get_active_queue


def get_workspace_id(x_workspace_id: str = Header(..., alias="X-Workspace-Id")) -> str:
    """Workspace scope of the request. Authentication happens upstream."""
    workspace_id = x_workspace_id.strip()
    if not workspace_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Workspace-Id header must not be empty"
        )
    if len(workspace_id) > WORKSPACE_ID_MAX_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"X-Workspace-Id header must be at most {WORKSPACE_ID_MAX_LENGTH} characters"
        )
    return workspace_id


def get_engine_policy() -> EnginePolicy:
    return EnginePolicy.from_settings(get_settings())


def get_escalation_queue() -> EscalationQueue:
    return get_active_queue()


def get_notification_dispatcher() -> NotificationDispatcher:
    return get_dispatcher()


def get_rule_cache_dependency() -> RuleCache:
    return get_rule_cache()
