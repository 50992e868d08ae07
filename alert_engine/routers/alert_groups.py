"""
Alert group API endpoints: inspection and lifecycle hooks
"""
from datetime import timedelta
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from alert_engine.database import get_db, utc_now
from alert_engine.dependencies import (
    get_workspace_id,
    get_engine_policy,
    get_escalation_queue,
    get_notification_dispatcher,
)
from alert_engine.exceptions import AlertGroupNotFoundError
from alert_engine.models import AlertEvent, AlertGroup, NotificationLog
from alert_engine.schemas import (
    AlertEventResponse,
    AlertGroupResponse,
    AlertStatus,
    AutoCloseRequest,
    AutoCloseResponse,
    CancelEscalationsRequest,
    CancelEscalationsResponse,
    CorrelationGroupResponse,
    EnginePolicy,
    EscalationJobResponse,
    NotificationLogResponse,
    SnoozeRequest,
)
from alert_engine.services.alert_lifecycle_service import AlertLifecycleService
from alert_engine.services.correlation_service import CorrelationEngine
from alert_engine.services.escalation_service import EscalationService
from alert_engine.services.notification_dispatcher import NotificationDispatcher
from alert_engine.services.scheduler_service import EscalationQueue

router = APIRouter(prefix="/api/alert-groups", tags=["Alert Groups"])


def get_lifecycle_service(
    db: Session = Depends(get_db),
    policy: EnginePolicy = Depends(get_engine_policy),
    queue: EscalationQueue = Depends(get_escalation_queue),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher)
) -> AlertLifecycleService:
    escalation = EscalationService(db, queue=queue, dispatcher=dispatcher, policy=policy.escalation)
    return AlertLifecycleService(db, escalation)


def _load_group(service: AlertLifecycleService, workspace_id: str, group_id: UUID) -> AlertGroup:
    try:
        return service.get_group(workspace_id, group_id)
    except AlertGroupNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert group not found"
        )


@router.get("", response_model=List[AlertGroupResponse])
async def list_alert_groups(
    status_filter: Optional[AlertStatus] = Query(None, alias="status"),
    routing_status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    workspace_id: str = Depends(get_workspace_id),
    db: Session = Depends(get_db)
):
    """
    List alert groups, most recently active first.
    Filter by routing_status=unrouted to find configuration gaps.
    """
    query = db.query(AlertGroup).filter(AlertGroup.workspace_id == workspace_id)
    if status_filter is not None:
        query = query.filter(AlertGroup.status == status_filter.value)
    if routing_status:
        query = query.filter(AlertGroup.routing_status == routing_status)
    groups = query.order_by(AlertGroup.last_seen_at.desc()).offset(offset).limit(limit).all()
    return [AlertGroupResponse.model_validate(g) for g in groups]


@router.post("/auto-close", response_model=AutoCloseResponse)
def run_auto_close(
    request: AutoCloseRequest,
    workspace_id: str = Depends(get_workspace_id),
    policy: EnginePolicy = Depends(get_engine_policy),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    """
    Resolve the workspace's groups that have been inactive for the
    configured (or requested) number of days.
    """
    auto_close = policy.auto_close
    if request.inactivity_days is not None:
        auto_close = auto_close.model_copy(update={"inactivity_days": request.inactivity_days, "enabled": True})
    closed = service.auto_close_sweep(auto_close, workspace_id=workspace_id)
    return AutoCloseResponse(resolved_count=len(closed), resolved_group_ids=[g.id for g in closed])


@router.post("/escalations/cancel", response_model=CancelEscalationsResponse)
def cancel_workspace_escalations(
    request: CancelEscalationsRequest,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    """
    Cancel every pending escalation in the workspace.
    Called when the workspace's notification integration is disconnected.
    """
    cancelled = service.escalation.cancel_all_for_workspace(workspace_id, reason=request.reason)
    return CancelEscalationsResponse(cancelled_count=cancelled)


@router.get("/{group_id}", response_model=AlertGroupResponse)
async def get_alert_group(
    group_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    return AlertGroupResponse.model_validate(_load_group(service, workspace_id, group_id))


@router.post("/{group_id}/acknowledge", response_model=AlertGroupResponse)
def acknowledge_alert_group(
    group_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    """
    Acknowledge an alert group and cancel its pending escalations.
    """
    group = _load_group(service, workspace_id, group_id)
    return AlertGroupResponse.model_validate(service.acknowledge(group))


@router.post("/{group_id}/resolve", response_model=AlertGroupResponse)
def resolve_alert_group(
    group_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    """
    Resolve an alert group and cancel its pending escalations.
    A later matching event reopens it.
    """
    group = _load_group(service, workspace_id, group_id)
    return AlertGroupResponse.model_validate(service.resolve(group))


@router.post("/{group_id}/snooze", response_model=AlertGroupResponse)
def snooze_alert_group(
    group_id: UUID,
    request: SnoozeRequest,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    """
    Suppress escalation until a point in time (or for a number of minutes).
    """
    group = _load_group(service, workspace_id, group_id)
    until = request.until or utc_now() + timedelta(minutes=request.minutes)
    return AlertGroupResponse.model_validate(service.snooze(group, until))


@router.post("/{group_id}/unsnooze", response_model=AlertGroupResponse)
def unsnooze_alert_group(
    group_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    group = _load_group(service, workspace_id, group_id)
    return AlertGroupResponse.model_validate(service.unsnooze(group))


@router.get("/{group_id}/events", response_model=List[AlertEventResponse])
async def list_alert_group_events(
    group_id: UUID,
    limit: int = Query(100, ge=1, le=1000),
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service),
    db: Session = Depends(get_db)
):
    group = _load_group(service, workspace_id, group_id)
    events = db.query(AlertEvent).filter(
        AlertEvent.alert_group_id == group.id
    ).order_by(AlertEvent.received_at.desc()).limit(limit).all()
    return [AlertEventResponse.model_validate(e) for e in events]


@router.get("/{group_id}/correlations", response_model=List[CorrelationGroupResponse])
async def list_alert_group_correlations(
    group_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service),
    db: Session = Depends(get_db)
):
    group = _load_group(service, workspace_id, group_id)
    records = CorrelationEngine(db).get_correlations(group)
    return [CorrelationGroupResponse.model_validate(r) for r in records]


@router.get("/{group_id}/escalations", response_model=List[EscalationJobResponse])
async def list_alert_group_escalations(
    group_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service)
):
    group = _load_group(service, workspace_id, group_id)
    jobs = service.escalation.jobs_for_group(group.id)
    return [EscalationJobResponse.model_validate(j) for j in jobs]


@router.get("/{group_id}/notifications", response_model=List[NotificationLogResponse])
async def list_alert_group_notifications(
    group_id: UUID,
    workspace_id: str = Depends(get_workspace_id),
    service: AlertLifecycleService = Depends(get_lifecycle_service),
    db: Session = Depends(get_db)
):
    group = _load_group(service, workspace_id, group_id)
    entries = db.query(NotificationLog).filter(
        NotificationLog.alert_group_id == group.id
    ).order_by(NotificationLog.created_at.asc()).all()
    return [NotificationLogResponse.model_validate(e) for e in entries]
