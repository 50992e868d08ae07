"""
Unit tests for the ingestion pipeline: dedup, correlation, routing, dispatch
and escalation arming working together.
"""
import pytest
from datetime import datetime, timedelta, timezone

from alert_engine.exceptions import AlertValidationError
from alert_engine.models import AlertGroup, EscalationJob, NotificationLog
from alert_engine.schemas import CorrelationPolicy, EnginePolicy
from alert_engine.services.alert_lifecycle_service import AlertLifecycleService
from alert_engine.services.correlation_service import SemanticScorer
from alert_engine.services.ingestion_pipeline import IngestionPipeline, validate_event
from alert_engine.services.rule_cache import RuleCache
from tests.conftest import FakeDispatcher
from tests.fixtures.factories import AlertEventFactory, RoutingRuleFactory, persist

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

PROD_RULE = dict(
    name="production",
    priority=10,
    conditions_json={"all": [
        {"field": "environment", "operator": "equals", "value": "production"},
        {"field": "severity", "operator": "greater_than_or_equals", "value": "medium"},
    ]},
    actions_json={"channel_id": "C1", "mention_here": True, "escalate_after_minutes": 10},
)


@pytest.fixture
def pipeline(test_db_session, fake_dispatcher, fake_queue, rule_cache):
    return IngestionPipeline(test_db_session, dispatcher=fake_dispatcher, queue=fake_queue, rule_cache=rule_cache)


@pytest.fixture
def prod_rule(test_db_session):
    return persist(test_db_session, RoutingRuleFactory(**PROD_RULE))


def event(**kwargs):
    kwargs.setdefault("fingerprint", "err-42")
    kwargs.setdefault("environment", "production")
    return AlertEventFactory(**kwargs)


class TestValidateEvent:
    def test_blank_title_rejected(self):
        with pytest.raises(AlertValidationError) as exc_info:
            validate_event(event(title="   "))
        assert exc_info.value.field == "title"

    def test_missing_workspace_rejected(self):
        with pytest.raises(AlertValidationError) as exc_info:
            validate_event(event(workspace_id=""))
        assert exc_info.value.field == "workspace_id"


class TestRoutingFlow:
    def test_repeated_error_groups_and_routes_once(self, pipeline, prod_rule, fake_dispatcher, test_db_session):
        first = pipeline.process(event(source_event_id="e1", severity="medium"), now=T0)
        second = pipeline.process(event(source_event_id="e2", severity="high"), now=T0 + timedelta(minutes=1))

        assert first.outcome == "created"
        assert first.routing_status == "routed"
        assert first.routed_rule_id == prod_rule.id
        assert first.dispatched is True
        assert first.escalation_job_id is not None

        assert second.outcome == "merged"
        assert second.alert_group_id == first.alert_group_id
        assert second.dispatched is None

        group = test_db_session.get(AlertGroup, first.alert_group_id)
        assert group.count == 2
        assert group.severity == "high"
        assert len(fake_dispatcher.actions) == 1
        action = fake_dispatcher.actions[0]
        assert action.channel_id == "C1"
        assert action.mention_here is True
        assert action.kind == "initial"

    def test_escalation_armed_after_routing(self, pipeline, prod_rule, fake_queue, test_db_session):
        result = pipeline.process(event(source_event_id="e1"), now=T0)

        job = test_db_session.get(EscalationJob, result.escalation_job_id)
        assert job.fire_at == T0 + timedelta(minutes=10)
        assert job.channel_id == "C1"
        assert fake_queue.scheduled[job.id] == T0 + timedelta(minutes=10)

    def test_initial_dispatch_recorded(self, pipeline, prod_rule, test_db_session):
        pipeline.process(event(source_event_id="e1"), now=T0)
        log = test_db_session.query(NotificationLog).one()
        assert log.kind == "initial"
        assert log.channel_id == "C1"
        assert log.success is True

    def test_duplicate_delivery_is_noop(self, pipeline, prod_rule, fake_dispatcher, test_db_session):
        pipeline.process(event(source_event_id="e1"), now=T0)
        again = pipeline.process(event(source_event_id="e1"), now=T0 + timedelta(seconds=5))

        assert again.duplicate is True
        assert len(fake_dispatcher.actions) == 1
        assert test_db_session.get(AlertGroup, again.alert_group_id).count == 1

    def test_unrouted_alert(self, pipeline, prod_rule, fake_dispatcher, fake_queue, test_db_session):
        result = pipeline.process(event(source_event_id="e1", environment="staging"), now=T0)

        assert result.routing_status == "unrouted"
        assert result.routed_rule_id is None
        assert fake_dispatcher.actions == []
        assert fake_queue.scheduled == {}
        assert test_db_session.get(AlertGroup, result.alert_group_id).routing_status == "unrouted"

    def test_dispatch_failure_still_arms_escalation(self, test_db_session, fake_queue, rule_cache, prod_rule):
        pipeline = IngestionPipeline(
            test_db_session, dispatcher=FakeDispatcher(success=False), queue=fake_queue, rule_cache=rule_cache
        )
        result = pipeline.process(event(source_event_id="e1"), now=T0)

        assert result.dispatched is False
        assert result.escalation_job_id is not None
        assert test_db_session.query(NotificationLog).one().success is False

    def test_reopen_routes_again(self, pipeline, prod_rule, fake_dispatcher, fake_queue, test_db_session):
        first = pipeline.process(event(source_event_id="e1"), now=T0)
        group = test_db_session.get(AlertGroup, first.alert_group_id)
        AlertLifecycleService(test_db_session, pipeline.escalation).resolve(group, now=T0 + timedelta(minutes=5))
        assert fake_queue.scheduled == {}

        reopened = pipeline.process(event(source_event_id="e2"), now=T0 + timedelta(hours=1))

        assert reopened.outcome == "reopened"
        assert reopened.alert_group_id == first.alert_group_id
        assert reopened.routing_status == "routed"
        assert len(fake_dispatcher.actions) == 2
        assert len(fake_queue.scheduled) == 1
        group = test_db_session.get(AlertGroup, first.alert_group_id)
        assert group.status == "open"
        assert group.count == 2
        assert group.escalation_level == 0


class TestCorrelationStep:
    def test_related_open_group_is_linked(self, pipeline, prod_rule):
        first = pipeline.process(event(source_event_id="e1", fingerprint="db-down"), now=T0)
        second = pipeline.process(
            event(source_event_id="e2", fingerprint="api-errors"), now=T0 + timedelta(minutes=2)
        )

        assert second.correlation is not None
        assert [r.alert_group_id for r in second.correlation.related] == [first.alert_group_id]
        assert second.correlation.correlation_group_id is not None

    def test_correlation_failure_does_not_block_routing(self, test_db_session, fake_dispatcher, fake_queue, rule_cache, prod_rule):
        class ExplodingScorer(SemanticScorer):
            def score(self, text, candidates):
                raise RuntimeError("model unavailable")

        policy = EnginePolicy(correlation=CorrelationPolicy(semantic_weight=0.5))
        pipeline = IngestionPipeline(
            test_db_session,
            dispatcher=fake_dispatcher,
            queue=fake_queue,
            policy=policy,
            rule_cache=rule_cache,
            scorer=ExplodingScorer(),
        )
        pipeline.process(event(source_event_id="e1", fingerprint="db-down"), now=T0)
        second = pipeline.process(event(source_event_id="e2", fingerprint="api-errors"), now=T0 + timedelta(minutes=1))

        assert second.correlation is None
        assert second.routing_status == "routed"
        assert len(fake_dispatcher.actions) == 2


class FlakyRuleCache(RuleCache):
    """Fails the first rule load, like a store blip between dedup and routing."""

    def __init__(self):
        super().__init__(ttl_seconds=60)
        self.failures_left = 1

    def get_or_load(self, workspace_id, loader):
        if self.failures_left:
            self.failures_left -= 1
            raise RuntimeError("rule store unavailable")
        return super().get_or_load(workspace_id, loader)


class TestRoutingRecovery:
    @pytest.fixture
    def flaky_pipeline(self, test_db_session, fake_dispatcher, fake_queue):
        return IngestionPipeline(
            test_db_session, dispatcher=fake_dispatcher, queue=fake_queue, rule_cache=FlakyRuleCache()
        )

    def test_failed_routing_leaves_group_pending(self, flaky_pipeline, prod_rule, fake_dispatcher, test_db_session):
        with pytest.raises(RuntimeError):
            flaky_pipeline.process(event(source_event_id="e1"), now=T0)

        group = test_db_session.query(AlertGroup).one()
        assert group.routing_status == "pending"
        assert fake_dispatcher.actions == []

    def test_redelivery_routes_pending_group(self, flaky_pipeline, prod_rule, fake_dispatcher, fake_queue, test_db_session):
        with pytest.raises(RuntimeError):
            flaky_pipeline.process(event(source_event_id="e1"), now=T0)

        retry = flaky_pipeline.process(event(source_event_id="e1"), now=T0 + timedelta(seconds=30))

        assert retry.duplicate is True
        assert retry.routing_status == "routed"
        assert retry.routed_rule_id == prod_rule.id
        assert retry.escalation_job_id is not None
        assert len(fake_dispatcher.actions) == 1
        assert len(fake_queue.scheduled) == 1
        group = test_db_session.get(AlertGroup, retry.alert_group_id)
        assert group.routing_status == "routed"
        assert group.count == 1

    def test_next_event_routes_pending_group(self, flaky_pipeline, prod_rule, fake_dispatcher, test_db_session):
        with pytest.raises(RuntimeError):
            flaky_pipeline.process(event(source_event_id="e1"), now=T0)

        merged = flaky_pipeline.process(event(source_event_id="e2"), now=T0 + timedelta(minutes=1))

        assert merged.outcome == "merged"
        assert merged.routing_status == "routed"
        assert len(fake_dispatcher.actions) == 1
        assert test_db_session.get(AlertGroup, merged.alert_group_id).count == 2

    def test_routed_group_not_rerouted_on_merge(self, pipeline, prod_rule, fake_dispatcher):
        pipeline.process(event(source_event_id="e1"), now=T0)
        pipeline.process(event(source_event_id="e2"), now=T0 + timedelta(minutes=1))
        pipeline.process(event(source_event_id="e1"), now=T0 + timedelta(minutes=2))

        assert len(fake_dispatcher.actions) == 1
