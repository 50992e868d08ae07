"""
Escalation Service

Per (alert group, level) state machine:

    SCHEDULED -> FIRED
    SCHEDULED -> CANCELLED     (ack, resolve, auto-close, group gone)
    SCHEDULED -> SUPERSEDED    (re-armed for the same level)

At most one SCHEDULED job exists per (group, level); the pending_key unique
constraint enforces it. Fire delivery is idempotent: the handler re-reads
the job and the group before dispatching and no-ops when the job is no
longer pending or the group no longer needs escalating.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from alert_engine.database import utc_now
from alert_engine.metrics import ESCALATIONS, PENDING_ESCALATIONS
from alert_engine.models import AlertGroup, EscalationJob
from alert_engine.schemas import (
    AlertStatus,
    DispatchAction,
    DispatchInstruction,
    EscalationJobStatus,
    EscalationPolicy,
    EscalationStep,
)
from alert_engine.services.notification_dispatcher import NotificationDispatcher, record_dispatch
from alert_engine.services.scheduler_service import EscalationQueue

logger = logging.getLogger(__name__)

# Deliveries this far ahead of fire_at are treated as early and re-queued
EARLY_DELIVERY_TOLERANCE = timedelta(seconds=1)


class EscalationService:
    """Arms, cancels and fires escalation timers."""

    def __init__(
        self,
        db: Session,
        queue: EscalationQueue,
        dispatcher: NotificationDispatcher,
        policy: Optional[EscalationPolicy] = None,
    ):
        self.db = db
        self.queue = queue
        self.dispatcher = dispatcher
        self.policy = policy or EscalationPolicy()

    # ------------------------------------------------------------------ arm

    def arm(
        self,
        group: AlertGroup,
        instruction: DispatchInstruction,
        ladder: List[EscalationStep],
        now: Optional[datetime] = None,
    ) -> Optional[EscalationJob]:
        """
        Schedule the first rung of the ladder for the group's current level.
        Returns None when the rule has no escalation or the ladder is exhausted.
        """
        if not ladder or not instruction.escalate_after_minutes:
            return None

        now = now or utc_now()
        level = group.escalation_level or 0
        if level >= self.policy.max_levels:
            logger.info(f"Alert group {group.id} already at escalation level {level}; not arming")
            return None

        resolved = [self._resolve_step(step, instruction) for step in ladder]
        first, remaining = resolved[0], resolved[1:]
        fire_at = now + timedelta(minutes=first["after_minutes"])
        return self._create_job(group, level, first, remaining, fire_at, now)

    @staticmethod
    def _resolve_step(step: EscalationStep, instruction: DispatchInstruction) -> dict:
        return {
            "after_minutes": step.after_minutes,
            "channel_id": step.channel_id or instruction.escalation_channel_id or instruction.channel_id,
            "mention_here": step.mention_here,
        }

    def _create_job(
        self,
        group: AlertGroup,
        level: int,
        step: dict,
        remaining: List[dict],
        fire_at: datetime,
        now: datetime,
    ) -> EscalationJob:
        superseded = self._supersede(group.id, level, now)

        job = EscalationJob(
            workspace_id=group.workspace_id,
            alert_group_id=group.id,
            escalation_level=level,
            escalate_after_minutes=step["after_minutes"],
            channel_id=step["channel_id"],
            mention_here=step["mention_here"],
            status=EscalationJobStatus.SCHEDULED.value,
            pending_key=EscalationJob.make_pending_key(group.id, level),
            ladder_json=remaining,
            scheduled_at=now,
            fire_at=fire_at,
        )
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        self._update_pending_gauge()

        for old in superseded:
            self._dequeue(old)

        ESCALATIONS.labels(transition="scheduled").inc()
        logger.info(
            f"Escalation level {level} armed for alert group {group.id} "
            f"at {fire_at.isoformat()} (job {job.id})"
        )
        self._enqueue(job, fire_at)
        return job

    def _supersede(self, group_id: UUID, level: int, now: datetime) -> List[UUID]:
        pending = self.db.query(EscalationJob).filter(
            EscalationJob.alert_group_id == group_id,
            EscalationJob.escalation_level == level,
            EscalationJob.status == EscalationJobStatus.SCHEDULED.value
        ).all()
        for job in pending:
            job.status = EscalationJobStatus.SUPERSEDED.value
            job.pending_key = None
            job.cancelled_at = now
            job.cancel_reason = "superseded"
            ESCALATIONS.labels(transition="superseded").inc()
        if pending:
            self.db.flush()
        return [job.id for job in pending]

    # --------------------------------------------------------------- cancel

    def cancel_for_group(self, group_id: UUID, reason: str = "cancelled", now: Optional[datetime] = None) -> int:
        """Cancel every SCHEDULED job of a group. Returns how many were cancelled."""
        now = now or utc_now()
        jobs = self.db.query(EscalationJob).filter(
            EscalationJob.alert_group_id == group_id,
            EscalationJob.status == EscalationJobStatus.SCHEDULED.value
        ).all()
        return self._cancel_jobs(jobs, reason, now)

    def cancel_all_for_workspace(self, workspace_id: str, reason: str = "workspace", now: Optional[datetime] = None) -> int:
        """Cancel every pending escalation in a workspace (integration disconnected, workspace disabled)."""
        now = now or utc_now()
        jobs = self.db.query(EscalationJob).filter(
            EscalationJob.workspace_id == workspace_id,
            EscalationJob.status == EscalationJobStatus.SCHEDULED.value
        ).all()
        return self._cancel_jobs(jobs, reason, now)

    def _cancel_jobs(self, jobs: List[EscalationJob], reason: str, now: datetime) -> int:
        if not jobs:
            return 0
        for job in jobs:
            job.status = EscalationJobStatus.CANCELLED.value
            job.pending_key = None
            job.cancelled_at = now
            job.cancel_reason = reason
        self.db.commit()
        self._update_pending_gauge()

        for job in jobs:
            ESCALATIONS.labels(transition="cancelled").inc()
            self._dequeue(job.id)
        logger.info(f"Cancelled {len(jobs)} escalation job(s) ({reason})")
        return len(jobs)

    # ----------------------------------------------------------------- fire

    def on_fire(self, job_id: UUID, now: Optional[datetime] = None) -> Optional[EscalationJob]:
        """
        Handle delivery of an escalation timer.

        Re-checks the job and the group immediately before dispatching:
        only a still-SCHEDULED, due job of an OPEN, unsnoozed group fires.
        """
        now = now or utc_now()
        job = self.db.query(EscalationJob).filter(EscalationJob.id == job_id).with_for_update().first()
        if job is None:
            logger.warning(f"Escalation job {job_id} not found; ignoring delivery")
            return None

        if job.status != EscalationJobStatus.SCHEDULED.value:
            logger.info(f"Escalation job {job_id} is {job.status}; ignoring delivery")
            self.db.rollback()
            return job

        if job.fire_at > now + EARLY_DELIVERY_TOLERANCE:
            logger.info(f"Escalation job {job_id} delivered early; re-queueing for {job.fire_at.isoformat()}")
            self.db.rollback()
            self._enqueue(job, job.fire_at)
            return job

        group = self.db.query(AlertGroup).filter(AlertGroup.id == job.alert_group_id).first()
        if group is None or group.status != AlertStatus.OPEN.value:
            status = group.status if group else "missing"
            self._cancel_jobs([job], f"group_{status}", now)
            logger.info(f"Escalation job {job_id} cancelled at fire time: alert group is {status}")
            return job

        if group.snooze_until is not None and now < group.snooze_until:
            job.fire_at = group.snooze_until
            self.db.commit()
            ESCALATIONS.labels(transition="deferred").inc()
            logger.info(f"Alert group {group.id} snoozed; escalation job {job_id} deferred to {group.snooze_until.isoformat()}")
            self._enqueue(job, group.snooze_until)
            return job

        # Commit FIRED before dispatching so a redelivered timer cannot dispatch twice
        job.status = EscalationJobStatus.FIRED.value
        job.pending_key = None
        job.fired_at = now
        group.escalation_level = max(group.escalation_level or 0, job.escalation_level + 1)
        self.db.commit()
        self._update_pending_gauge()
        ESCALATIONS.labels(transition="fired").inc()
        logger.info(f"🔺 Escalation level {job.escalation_level} fired for alert group {group.id}")

        action = DispatchAction(
            workspace_id=group.workspace_id,
            alert_group_id=group.id,
            channel_id=job.channel_id,
            kind="escalation",
            escalation_level=job.escalation_level,
            mention_here=bool(job.mention_here),
            title=group.title,
            severity=group.severity,
            project=group.project or "",
            environment=group.environment or "",
            count=group.count or 1,
            status=group.status,
        )
        result = self.dispatcher.send(action)
        try:
            record_dispatch(self.db, action, result, escalation_job_id=job.id)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to record escalation dispatch for job {job.id}: {e}")

        self._arm_next(group, job, now)
        return job

    def _arm_next(self, group: AlertGroup, job: EscalationJob, now: datetime) -> Optional[EscalationJob]:
        ladder = list(job.ladder_json or [])
        next_level = job.escalation_level + 1
        if not ladder:
            logger.info(f"Escalation ladder for alert group {group.id} ends at level {job.escalation_level}")
            return None
        if next_level >= self.policy.max_levels:
            logger.info(f"Alert group {group.id} reached max escalation depth ({self.policy.max_levels})")
            return None

        step, remaining = ladder[0], ladder[1:]
        fire_at = job.fire_at + timedelta(minutes=step["after_minutes"])
        return self._create_job(group, next_level, step, remaining, fire_at, now)

    # ------------------------------------------------------------ durability

    def reconcile(self, now: Optional[datetime] = None) -> int:
        """
        Re-queue every SCHEDULED job, e.g. after a restart. Overdue jobs are
        queued to fire immediately.
        """
        now = now or utc_now()
        jobs = self.db.query(EscalationJob).filter(
            EscalationJob.status == EscalationJobStatus.SCHEDULED.value
        ).all()
        for job in jobs:
            self._enqueue(job, max(job.fire_at, now))
        self._update_pending_gauge()
        logger.info(f"Reconciled {len(jobs)} pending escalation job(s)")
        return len(jobs)

    def _update_pending_gauge(self) -> None:
        pending = self.db.query(EscalationJob).filter(
            EscalationJob.status == EscalationJobStatus.SCHEDULED.value
        ).count()
        PENDING_ESCALATIONS.set(pending)

    def _enqueue(self, job: EscalationJob, fire_at: datetime) -> None:
        try:
            self.queue.schedule(job.id, fire_at)
        except Exception as e:
            # The SCHEDULED row persists; reconcile() re-queues it
            logger.error(f"Failed to queue escalation job {job.id}: {e}")

    def _dequeue(self, job_id: UUID) -> None:
        try:
            self.queue.cancel(job_id)
        except Exception as e:
            # The fire handler re-checks job status before dispatching
            logger.error(f"Failed to dequeue escalation job {job_id}: {e}")

    def jobs_for_group(self, group_id: UUID) -> List[EscalationJob]:
        return self.db.query(EscalationJob).filter(
            EscalationJob.alert_group_id == group_id
        ).order_by(EscalationJob.scheduled_at.asc(), EscalationJob.escalation_level.asc()).all()
