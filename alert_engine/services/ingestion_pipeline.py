"""
Ingestion Pipeline

validate -> idempotency -> dedup -> correlate -> route -> dispatch -> arm escalation

Routing only runs for groups that are new, reopened or reactivated; merges
into an already-routed group never re-notify or restart the ladder.

A group stays PENDING until its initial dispatch and escalation are armed.
If a run fails in between, the next event for the fingerprint (or a retry
of the same event) routes it again.
"""
import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from alert_engine.database import utc_now
from alert_engine.exceptions import AlertValidationError
from alert_engine.metrics import (
    ALERTS_DEDUPLICATED,
    ALERTS_RECEIVED,
    ALERTS_ROUTED,
    CORRELATION_FAILURES,
    INGEST_DURATION,
    INGEST_ERRORS,
)
from alert_engine.models import AlertGroup
from alert_engine.schemas import (
    AlertEventCreate,
    DispatchAction,
    EnginePolicy,
    IngestResult,
    RoutingStatus,
)
from alert_engine.services.correlation_service import CorrelationEngine, SemanticScorer
from alert_engine.services.dedup_index import DedupIndex
from alert_engine.services.escalation_service import EscalationService
from alert_engine.services.notification_dispatcher import NotificationDispatcher, record_dispatch
from alert_engine.services.rule_cache import RuleCache
from alert_engine.services.rules_engine import RulesEngine, to_dispatch_instruction
from alert_engine.services.scheduler_service import EscalationQueue

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("workspace_id", "source_event_id", "fingerprint", "title")


def validate_event(event: AlertEventCreate) -> None:
    """Reject events the engine cannot group. Raises AlertValidationError naming the field."""
    for field in REQUIRED_FIELDS:
        value = getattr(event, field)
        if value is None or not str(value).strip():
            raise AlertValidationError(field, f"'{field}' is required and must not be empty")


class IngestionPipeline:
    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        queue: EscalationQueue,
        policy: Optional[EnginePolicy] = None,
        rule_cache: Optional[RuleCache] = None,
        scorer: Optional[SemanticScorer] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.policy = policy or EnginePolicy()
        self.dedup = DedupIndex(db, self.policy.dedup)
        self.correlation = CorrelationEngine(db, self.policy.correlation, scorer)
        self.rules = RulesEngine(db, rule_cache)
        self.escalation = EscalationService(db, queue, dispatcher, self.policy.escalation)

    def process(self, event: AlertEventCreate, now: Optional[datetime] = None) -> IngestResult:
        """Run one normalized alert event through the engine."""
        start = time.perf_counter()
        now = now or utc_now()
        ALERTS_RECEIVED.labels(source=event.source.value, severity=event.severity.value).inc()

        try:
            try:
                validate_event(event)
            except AlertValidationError:
                INGEST_ERRORS.labels(stage="validation").inc()
                raise

            try:
                outcome = self.dedup.ingest(event, now=now)
            except AlertValidationError:
                INGEST_ERRORS.labels(stage="validation").inc()
                raise
            except Exception:
                INGEST_ERRORS.labels(stage="dedup").inc()
                raise

            ALERTS_DEDUPLICATED.labels(outcome=outcome.outcome).inc()
            group = outcome.group
            result = IngestResult(
                alert_group_id=group.id,
                event_id=outcome.event.id if outcome.event is not None else None,
                outcome=outcome.outcome,
                is_new=outcome.is_new,
                reopened=outcome.reopened,
                reactivated=outcome.reactivated,
                duplicate=outcome.duplicate,
                routing_status=group.routing_status,
                routed_rule_id=group.routed_rule_id,
            )
            if outcome.duplicate and not outcome.needs_routing:
                return result

            if outcome.reopened:
                self.escalation.cancel_for_group(group.id, reason="reopened", now=now)

            if not outcome.duplicate:
                result.correlation = self._correlate(group, event, now)

            if outcome.needs_routing:
                self._route(group, event, result, now)

            return result
        finally:
            INGEST_DURATION.observe(time.perf_counter() - start)

    def _correlate(self, group: AlertGroup, event: AlertEventCreate, now: datetime):
        try:
            return self.correlation.correlate_group(group, message=event.message or "", now=now)
        except Exception as e:
            self.db.rollback()
            CORRELATION_FAILURES.inc()
            logger.error(f"Correlation failed for alert group {group.id}; continuing without it: {e}", exc_info=True)
            return None

    def _route(
        self,
        group: AlertGroup,
        event: AlertEventCreate,
        result: IngestResult,
        now: datetime,
    ) -> None:
        try:
            match = self.rules.route_group(group, message=event.message or "")
        except Exception:
            INGEST_ERRORS.labels(stage="routing").inc()
            raise

        if match is None:
            group.routing_status = RoutingStatus.UNROUTED.value
            group.routed_rule_id = None
            self.db.commit()
            ALERTS_ROUTED.labels(status="unrouted").inc()
            result.routing_status = RoutingStatus.UNROUTED.value
            result.routed_rule_id = None
            return

        instruction = to_dispatch_instruction(match.actions)
        action = DispatchAction(
            workspace_id=group.workspace_id,
            alert_group_id=group.id,
            channel_id=instruction.channel_id,
            kind="initial",
            escalation_level=group.escalation_level or 0,
            mention_here=instruction.mention_here,
            mention_channel=instruction.mention_channel,
            title=group.title,
            severity=group.severity,
            project=group.project or "",
            environment=group.environment or "",
            count=group.count or 1,
            status=group.status,
        )
        dispatch_result = self.dispatcher.send(action)
        result.dispatched = dispatch_result.success
        try:
            record_dispatch(self.db, action, dispatch_result)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to record dispatch for alert group {group.id}: {e}")

        # Armed regardless of whether the initial notification went out
        try:
            job = self.escalation.arm(group, instruction, match.actions.escalation_ladder(), now=now)
        except Exception:
            INGEST_ERRORS.labels(stage="escalation").inc()
            raise
        result.escalation_job_id = job.id if job is not None else None

        group.routing_status = RoutingStatus.ROUTED.value
        group.routed_rule_id = match.rule_id
        self.db.commit()
        ALERTS_ROUTED.labels(status="routed").inc()
        result.routing_status = RoutingStatus.ROUTED.value
        result.routed_rule_id = match.rule_id
