"""
Webhook endpoint for normalized alert events
"""
import logging
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from alert_engine.database import get_db
from alert_engine.dependencies import (
    get_workspace_id,
    get_engine_policy,
    get_escalation_queue,
    get_notification_dispatcher,
    get_rule_cache_dependency,
)
from alert_engine.schemas import AlertEventCreate, EnginePolicy, IngestResult
from alert_engine.services.ingestion_pipeline import IngestionPipeline
from alert_engine.services.notification_dispatcher import NotificationDispatcher
from alert_engine.services.rule_cache import RuleCache
from alert_engine.services.scheduler_service import EscalationQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["Webhook"])


@router.post("/alerts", response_model=IngestResult)
def receive_alert(
    event: AlertEventCreate,
    workspace_id: str = Depends(get_workspace_id),
    db: Session = Depends(get_db),
    policy: EnginePolicy = Depends(get_engine_policy),
    queue: EscalationQueue = Depends(get_escalation_queue),
    dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    rule_cache: RuleCache = Depends(get_rule_cache_dependency)
):
    """
    Receive one normalized alert event.

    This endpoint:
    1. Ignores retries of an already-seen (source, source_event_id),
       unless its group never finished routing
    2. Creates, merges into or reopens the fingerprint's alert group
    3. Links related open groups
    4. Routes new, reopened or still-pending groups, dispatches and arms escalation
    """
    event = event.model_copy(update={"workspace_id": workspace_id})
    pipeline = IngestionPipeline(db, dispatcher=dispatcher, queue=queue, policy=policy, rule_cache=rule_cache)
    result = pipeline.process(event)
    logger.info(
        f"Ingested {event.source.value}/{event.source_event_id} -> group {result.alert_group_id} "
        f"({result.outcome}, routing={result.routing_status})"
    )
    return result


@router.get("/health")
async def webhook_health():
    """
    Health check endpoint for webhook receiver.
    """
    return {"status": "healthy", "service": "alert-webhook"}
