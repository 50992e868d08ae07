"""
Alert Lifecycle Service

Hooks for user-driven and housekeeping transitions of an alert group:
acknowledge, resolve, snooze and the inactivity auto-close sweep. Every
transition out of OPEN cancels the group's pending escalation timers.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from alert_engine.database import utc_now
from alert_engine.exceptions import AlertGroupNotFoundError, AlertValidationError
from alert_engine.metrics import AUTO_CLOSED
from alert_engine.models import AlertGroup
from alert_engine.schemas import AlertStatus, AutoCloseConfig
from alert_engine.services.escalation_service import EscalationService

logger = logging.getLogger(__name__)


class AlertLifecycleService:
    def __init__(self, db: Session, escalation: EscalationService):
        self.db = db
        self.escalation = escalation

    def get_group(self, workspace_id: str, group_id: UUID) -> AlertGroup:
        group = self.db.query(AlertGroup).filter(
            AlertGroup.id == group_id,
            AlertGroup.workspace_id == workspace_id
        ).first()
        if group is None:
            raise AlertGroupNotFoundError(group_id)
        return group

    def acknowledge(self, group: AlertGroup, now: Optional[datetime] = None) -> AlertGroup:
        """OPEN -> ACKED. Acking an acked or resolved group is a no-op."""
        if group.status != AlertStatus.OPEN.value:
            logger.info(f"Acknowledge ignored for alert group {group.id} in status {group.status}")
            return group

        now = now or utc_now()
        group.status = AlertStatus.ACKED.value
        group.acknowledged_at = now
        self.db.commit()
        logger.info(f"Alert group {group.id} acknowledged")

        self.escalation.cancel_for_group(group.id, reason="acknowledged", now=now)
        self.db.refresh(group)
        return group

    def resolve(self, group: AlertGroup, now: Optional[datetime] = None, reason: str = "resolved") -> AlertGroup:
        """OPEN/ACKED -> RESOLVED. Resolving a resolved group is a no-op."""
        if group.status == AlertStatus.RESOLVED.value:
            logger.info(f"Resolve ignored for alert group {group.id}: already resolved")
            return group

        now = now or utc_now()
        group.status = AlertStatus.RESOLVED.value
        group.resolved_at = now
        group.snooze_until = None
        self.db.commit()
        logger.info(f"Alert group {group.id} resolved ({reason})")

        self.escalation.cancel_for_group(group.id, reason=reason, now=now)
        self.db.refresh(group)
        return group

    def snooze(self, group: AlertGroup, until: datetime, now: Optional[datetime] = None) -> AlertGroup:
        """
        Suppress escalation until the given time. Pending timers are kept
        and deferred past the snooze window when they fire.
        """
        now = now or utc_now()
        if until <= now:
            raise AlertValidationError("until", "Snooze end must be in the future")
        if group.status == AlertStatus.RESOLVED.value:
            raise AlertValidationError("status", "Cannot snooze a resolved alert group")

        group.snooze_until = until
        self.db.commit()
        self.db.refresh(group)
        logger.info(f"Alert group {group.id} snoozed until {until.isoformat()}")
        return group

    def unsnooze(self, group: AlertGroup) -> AlertGroup:
        group.snooze_until = None
        self.db.commit()
        self.db.refresh(group)
        logger.info(f"Alert group {group.id} unsnoozed")
        return group

    def auto_close_sweep(
        self,
        policy: AutoCloseConfig,
        now: Optional[datetime] = None,
        workspace_id: Optional[str] = None,
    ) -> List[AlertGroup]:
        """Resolve open groups whose last event is older than the inactivity window."""
        if not policy.enabled:
            return []

        now = now or utc_now()
        cutoff = now - timedelta(days=policy.inactivity_days)
        query = self.db.query(AlertGroup).filter(
            AlertGroup.status.in_([AlertStatus.OPEN.value, AlertStatus.ACKED.value]),
            AlertGroup.last_seen_at < cutoff
        )
        if workspace_id is not None:
            query = query.filter(AlertGroup.workspace_id == workspace_id)

        closed = []
        for group in query.all():
            self.resolve(group, now=now, reason="auto_closed")
            AUTO_CLOSED.inc()
            closed.append(group)

        if closed:
            logger.info(f"Auto-closed {len(closed)} alert group(s) inactive since {cutoff.isoformat()}")
        return closed
