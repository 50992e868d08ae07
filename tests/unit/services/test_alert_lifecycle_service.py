"""
Unit tests for alert group lifecycle hooks.
"""
import pytest
import uuid
from datetime import datetime, timedelta, timezone

from alert_engine.exceptions import AlertGroupNotFoundError, AlertValidationError
from alert_engine.models import EscalationJob
from alert_engine.schemas import AutoCloseConfig, RuleActions
from alert_engine.services.alert_lifecycle_service import AlertLifecycleService
from alert_engine.services.escalation_service import EscalationService
from alert_engine.services.rules_engine import to_dispatch_instruction
from tests.fixtures.factories import AlertGroupFactory, persist

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
ACTIONS = RuleActions(channel_id="C1", escalate_after_minutes=10)


@pytest.fixture
def escalation(test_db_session, fake_queue, fake_dispatcher):
    return EscalationService(test_db_session, queue=fake_queue, dispatcher=fake_dispatcher)


@pytest.fixture
def lifecycle(test_db_session, escalation):
    return AlertLifecycleService(test_db_session, escalation)


@pytest.fixture
def armed_group(test_db_session, escalation):
    group = persist(test_db_session, AlertGroupFactory(first_seen_at=T0, last_seen_at=T0))
    escalation.arm(group, to_dispatch_instruction(ACTIONS), ACTIONS.escalation_ladder(), now=T0)
    return group


def pending_jobs(session, group):
    return session.query(EscalationJob).filter(
        EscalationJob.alert_group_id == group.id,
        EscalationJob.status == "scheduled"
    ).count()


class TestGetGroup:
    def test_scoped_to_workspace(self, lifecycle, test_db_session):
        group = persist(test_db_session, AlertGroupFactory())
        assert lifecycle.get_group("ws-test", group.id).id == group.id
        with pytest.raises(AlertGroupNotFoundError):
            lifecycle.get_group("ws-other", group.id)

    def test_unknown_id(self, lifecycle):
        with pytest.raises(AlertGroupNotFoundError):
            lifecycle.get_group("ws-test", uuid.uuid4())


class TestAcknowledge:
    def test_ack_cancels_escalation(self, lifecycle, armed_group, test_db_session, fake_queue):
        group = lifecycle.acknowledge(armed_group, now=T0 + timedelta(minutes=1))

        assert group.status == "acked"
        assert group.acknowledged_at == T0 + timedelta(minutes=1)
        assert pending_jobs(test_db_session, group) == 0
        assert fake_queue.scheduled == {}

    def test_ack_of_resolved_group_is_noop(self, lifecycle, test_db_session):
        group = persist(test_db_session, AlertGroupFactory(status="resolved"))
        assert lifecycle.acknowledge(group).status == "resolved"


class TestResolve:
    def test_resolve_cancels_escalation(self, lifecycle, armed_group, test_db_session):
        group = lifecycle.resolve(armed_group, now=T0 + timedelta(minutes=3))

        assert group.status == "resolved"
        assert group.resolved_at == T0 + timedelta(minutes=3)
        assert pending_jobs(test_db_session, group) == 0
        job = test_db_session.query(EscalationJob).one()
        assert job.cancel_reason == "resolved"

    def test_resolve_acked_group(self, lifecycle, armed_group):
        lifecycle.acknowledge(armed_group, now=T0)
        assert lifecycle.resolve(armed_group, now=T0).status == "resolved"


class TestSnooze:
    def test_snooze_keeps_pending_jobs(self, lifecycle, armed_group, test_db_session):
        until = T0 + timedelta(hours=2)
        group = lifecycle.snooze(armed_group, until, now=T0)

        assert group.snooze_until == until
        assert pending_jobs(test_db_session, group) == 1

    def test_snooze_in_past_rejected(self, lifecycle, armed_group):
        with pytest.raises(AlertValidationError) as exc_info:
            lifecycle.snooze(armed_group, T0 - timedelta(minutes=1), now=T0)
        assert exc_info.value.field == "until"

    def test_snooze_resolved_rejected(self, lifecycle, test_db_session):
        group = persist(test_db_session, AlertGroupFactory(status="resolved"))
        with pytest.raises(AlertValidationError):
            lifecycle.snooze(group, T0 + timedelta(hours=1), now=T0)

    def test_unsnooze(self, lifecycle, armed_group):
        lifecycle.snooze(armed_group, T0 + timedelta(hours=1), now=T0)
        assert lifecycle.unsnooze(armed_group).snooze_until is None


class TestAutoClose:
    def test_sweep_resolves_inactive_groups(self, lifecycle, test_db_session):
        now = T0 + timedelta(days=10)
        stale = persist(test_db_session, AlertGroupFactory(first_seen_at=T0, last_seen_at=T0))
        acked_stale = persist(test_db_session, AlertGroupFactory(status="acked", first_seen_at=T0, last_seen_at=T0))
        fresh = persist(test_db_session, AlertGroupFactory(first_seen_at=now, last_seen_at=now))

        closed = lifecycle.auto_close_sweep(AutoCloseConfig(inactivity_days=7), now=now)

        assert {g.id for g in closed} == {stale.id, acked_stale.id}
        test_db_session.refresh(fresh)
        assert fresh.status == "open"
        test_db_session.refresh(stale)
        assert stale.status == "resolved"

    def test_sweep_scoped_to_workspace(self, lifecycle, test_db_session):
        now = T0 + timedelta(days=10)
        persist(test_db_session, AlertGroupFactory(workspace_id="ws-other", first_seen_at=T0, last_seen_at=T0))
        assert lifecycle.auto_close_sweep(AutoCloseConfig(), now=now, workspace_id="ws-test") == []

    def test_disabled_sweep(self, lifecycle, test_db_session):
        persist(test_db_session, AlertGroupFactory(first_seen_at=T0, last_seen_at=T0))
        assert lifecycle.auto_close_sweep(AutoCloseConfig(enabled=False), now=T0 + timedelta(days=30)) == []

    def test_sweep_cancels_escalations(self, lifecycle, armed_group, test_db_session):
        lifecycle.auto_close_sweep(AutoCloseConfig(inactivity_days=1), now=T0 + timedelta(days=2))
        job = test_db_session.query(EscalationJob).one()
        assert job.status == "cancelled"
        assert job.cancel_reason == "auto_closed"
