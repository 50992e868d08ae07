"""
Unit tests for the escalation timer queue and its APScheduler callbacks.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from apscheduler.jobstores.base import JobLookupError

from alert_engine.exceptions import SchedulingError
from alert_engine.models import EscalationJob
from alert_engine.schemas import RuleActions
from alert_engine.services import scheduler_service
from alert_engine.services.escalation_service import EscalationService
from alert_engine.services.rules_engine import to_dispatch_instruction
from alert_engine.services.scheduler_service import (
    DisabledEscalationQueue,
    SchedulerService,
    get_active_queue,
    queue_job_id,
)
from tests.fixtures.factories import AlertGroupFactory, persist


@pytest.fixture
def service():
    svc = SchedulerService.__new__(SchedulerService)
    svc._scheduler = MagicMock()
    return svc


class TestQueue:
    def test_schedule_uses_stable_job_id(self, service):
        job_id = uuid.uuid4()
        fire_at = datetime(2024, 6, 1, 12, 10, tzinfo=timezone.utc)

        service.schedule(job_id, fire_at)

        kwargs = service._scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == queue_job_id(job_id) == f"escalation:{job_id}"
        assert kwargs["replace_existing"] is True
        assert kwargs["kwargs"] == {"escalation_job_id": str(job_id)}

    def test_schedule_failure_raises(self, service):
        service._scheduler.add_job.side_effect = RuntimeError("job store down")
        with pytest.raises(SchedulingError):
            service.schedule(uuid.uuid4(), datetime.now(timezone.utc))

    def test_cancel_missing_job_ignored(self, service):
        service._scheduler.remove_job.side_effect = JobLookupError("escalation:x")
        service.cancel(uuid.uuid4())

    def test_auto_close_interval(self, service):
        service.schedule_auto_close(15)
        kwargs = service._scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == scheduler_service.AUTO_CLOSE_JOB_ID


class TestFireCallback:
    def test_fire_callback_runs_escalation(self, test_db_session, fake_queue, fake_dispatcher):
        now = datetime.now(timezone.utc)
        group = persist(test_db_session, AlertGroupFactory(first_seen_at=now, last_seen_at=now))
        actions = RuleActions(channel_id="C1", escalate_after_minutes=1)
        job = EscalationService(test_db_session, fake_queue, fake_dispatcher).arm(
            group, to_dispatch_instruction(actions), actions.escalation_ladder(), now=now - timedelta(minutes=5)
        )

        with patch.object(scheduler_service, "SessionLocal", return_value=test_db_session), \
                patch.object(scheduler_service, "get_scheduler", return_value=fake_queue), \
                patch("alert_engine.services.notification_dispatcher.get_dispatcher", return_value=fake_dispatcher):
            scheduler_service._fire_escalation_job(str(job.id))

        test_db_session.expire_all()
        assert test_db_session.get(EscalationJob, job.id).status == "fired"
        assert len(fake_dispatcher.actions) == 1

    def test_fire_callback_swallows_failures(self):
        session = MagicMock()
        with patch.object(scheduler_service, "SessionLocal", return_value=session), \
                patch.object(scheduler_service, "get_scheduler", return_value=MagicMock()), \
                patch.object(EscalationService, "on_fire", side_effect=RuntimeError("boom")):
            scheduler_service._fire_escalation_job(str(uuid.uuid4()))

        session.rollback.assert_called_once()
        session.close.assert_called_once()


class TestActiveQueue:
    def test_disabled_scheduler_gets_noop_queue(self):
        with patch.object(scheduler_service, "get_scheduler") as get_scheduler:
            queue = get_active_queue()

        assert isinstance(queue, DisabledEscalationQueue)
        get_scheduler.assert_not_called()

    def test_enabled_scheduler_gets_running_queue(self):
        running = MagicMock()
        with patch.object(scheduler_service, "get_settings", return_value=MagicMock(scheduler_enabled=True)), \
                patch.object(scheduler_service, "get_scheduler", return_value=running):
            assert get_active_queue() is running

    def test_escalation_still_recorded_with_disabled_queue(self, test_db_session, fake_dispatcher):
        now = datetime.now(timezone.utc)
        group = persist(test_db_session, AlertGroupFactory(first_seen_at=now, last_seen_at=now))
        actions = RuleActions(channel_id="C1", escalate_after_minutes=5)
        service = EscalationService(test_db_session, DisabledEscalationQueue(), fake_dispatcher)

        job = service.arm(group, to_dispatch_instruction(actions), actions.escalation_ladder(), now=now)
        assert job.status == "scheduled"

        assert service.cancel_for_group(group.id, reason="resolved", now=now) == 1
