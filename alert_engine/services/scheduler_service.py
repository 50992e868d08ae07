"""
Scheduler Service

Durable timer queue for escalation jobs, built on APScheduler with a
SQLAlchemy-backed job store so pending timers survive a restart. The
EscalationJob table stays the source of truth; the queue only delivers
fire callbacks, and reconcile() re-queues anything it may have lost.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
import pytz

from ..config import get_settings
from ..database import SessionLocal
from ..exceptions import SchedulingError

logger = logging.getLogger(__name__)

AUTO_CLOSE_JOB_ID = "auto-close-sweep"


def queue_job_id(escalation_job_id) -> str:
    return f"escalation:{escalation_job_id}"


class EscalationQueue:
    """Interface of the durable timer queue used by the escalation service."""

    def schedule(self, escalation_job_id: UUID, fire_at: datetime) -> None:
        raise NotImplementedError

    def cancel(self, escalation_job_id: UUID) -> None:
        raise NotImplementedError


class DisabledEscalationQueue(EscalationQueue):
    """
    Queue used when SCHEDULER_ENABLED is false. Timers are not held anywhere;
    EscalationJob rows are still written and reconcile() queues them once a
    scheduler-enabled process starts.
    """

    def schedule(self, escalation_job_id: UUID, fire_at: datetime) -> None:
        logger.debug(f"Scheduler disabled; escalation job {escalation_job_id} not queued (due {fire_at.isoformat()})")

    def cancel(self, escalation_job_id: UUID) -> None:
        logger.debug(f"Scheduler disabled; nothing to dequeue for escalation job {escalation_job_id}")


class SchedulerService(EscalationQueue):
    """
    Singleton service for the escalation timer queue.
    Timers live in a SQLAlchemy job store and fire on the asyncio executor.
    """

    _instance: Optional['SchedulerService'] = None
    _scheduler: Optional[AsyncIOScheduler] = None

    @classmethod
    def get_instance(cls) -> 'SchedulerService':
        """Get or create the process-wide escalation queue."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def __init__(self):
        """Initialize the scheduler with a database job store and async executor."""
        if SchedulerService._instance is not None:
            raise RuntimeError("SchedulerService is a singleton. Use get_instance() instead.")

        settings = get_settings()

        jobstores = {
            'default': SQLAlchemyJobStore(url=settings.database_url, tablename=settings.scheduler_jobs_table)
        }

        # Sync callbacks run in the event loop's default thread pool
        executors = {
            'default': AsyncIOExecutor()
        }

        job_defaults = {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': settings.scheduler_misfire_grace_seconds
        }

        self._scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone=pytz.UTC
        )

        logger.info(f"Escalation queue initialized (job table {settings.scheduler_jobs_table})")

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    async def start(self):
        """Start delivering escalation timers from the job store."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("✅ Escalation scheduler started")

            jobs = self._scheduler.get_jobs()
            logger.info(f"📅 Loaded {len(jobs)} queued job(s)")

    async def shutdown(self):
        """Stop delivering escalation timers; queued jobs stay in the job store."""
        if self._scheduler.running:
            self._scheduler.shutdown(wait=True)
            logger.info("Escalation scheduler shutdown completed")

    def schedule(self, escalation_job_id: UUID, fire_at: datetime) -> None:
        """Queue (or re-queue) the fire callback of an escalation job."""
        job_id = queue_job_id(escalation_job_id)
        try:
            self._scheduler.add_job(
                func=_fire_escalation_job,
                trigger=DateTrigger(run_date=fire_at, timezone=pytz.UTC),
                id=job_id,
                name=f"Escalation {escalation_job_id}",
                replace_existing=True,
                kwargs={'escalation_job_id': str(escalation_job_id)}
            )
            logger.info(f"⏰ Escalation job queued: {escalation_job_id} at {fire_at.isoformat()}")
        except Exception as e:
            logger.error(f"❌ Failed to queue escalation job {escalation_job_id}: {e}")
            raise SchedulingError(f"Failed to queue escalation job {escalation_job_id}: {e}") from e

    def cancel(self, escalation_job_id: UUID) -> None:
        """Remove a queued fire callback. Missing jobs are ignored."""
        try:
            self._scheduler.remove_job(queue_job_id(escalation_job_id))
            logger.info(f"🗑️  Escalation job dequeued: {escalation_job_id}")
        except JobLookupError:
            logger.debug(f"Escalation job {escalation_job_id} was not queued")
        except Exception as e:
            logger.error(f"Failed to dequeue escalation job {escalation_job_id}: {e}")
            raise SchedulingError(f"Failed to dequeue escalation job {escalation_job_id}: {e}") from e

    def schedule_auto_close(self, interval_minutes: int) -> None:
        """Run the inactivity auto-close sweep periodically."""
        self._scheduler.add_job(
            func=_run_auto_close_sweep,
            trigger=IntervalTrigger(minutes=interval_minutes, timezone=pytz.UTC),
            id=AUTO_CLOSE_JOB_ID,
            name="Alert group auto-close sweep",
            replace_existing=True
        )
        logger.info(f"🧹 Auto-close sweep scheduled every {interval_minutes} minute(s)")


# Module-level functions for APScheduler callbacks (must be serializable)
def _fire_escalation_job(escalation_job_id: str):
    """
    Deliver an escalation timer.
    Invoked by APScheduler with its own database session.
    """
    from .escalation_service import EscalationService
    from .notification_dispatcher import get_dispatcher

    db = SessionLocal()
    try:
        service = EscalationService(db, queue=get_scheduler(), dispatcher=get_dispatcher())
        service.on_fire(UUID(escalation_job_id))
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Escalation job {escalation_job_id} failed: {e}", exc_info=True)
    finally:
        db.close()


def _run_auto_close_sweep():
    """Resolve inactive alert groups across all workspaces."""
    from .alert_lifecycle_service import AlertLifecycleService
    from .escalation_service import EscalationService
    from .notification_dispatcher import get_dispatcher
    from ..schemas import AutoCloseConfig

    settings = get_settings()
    policy = AutoCloseConfig(
        enabled=settings.auto_close_enabled,
        inactivity_days=settings.auto_close_inactivity_days,
    )

    db = SessionLocal()
    try:
        escalation = EscalationService(db, queue=get_scheduler(), dispatcher=get_dispatcher())
        closed = AlertLifecycleService(db, escalation).auto_close_sweep(policy)
        logger.info(f"🧹 Auto-close sweep resolved {len(closed)} alert group(s)")
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Auto-close sweep failed: {e}", exc_info=True)
    finally:
        db.close()


# Global scheduler instance
_scheduler_service: Optional[SchedulerService] = None


def get_scheduler() -> SchedulerService:
    """Get the escalation queue used by the app and the fire callbacks."""
    global _scheduler_service
    if _scheduler_service is None:
        _scheduler_service = SchedulerService.get_instance()
    return _scheduler_service


def get_active_queue() -> EscalationQueue:
    """The running scheduler, or a no-op queue when the scheduler is disabled."""
    if not get_settings().scheduler_enabled:
        return DisabledEscalationQueue()
    return get_scheduler()
