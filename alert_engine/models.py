"""SQLAlchemy ORM Models"""
import uuid
from sqlalchemy import (
    Column, String, Boolean, Integer, Float, Text, ForeignKey, JSON, Uuid,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from alert_engine.database import Base, UTCDateTime, utc_now
from alert_engine.schemas import AlertStatus, RoutingStatus, EscalationJobStatus


class AlertGroup(Base):
    """
    The deduplicated incident for one (workspace, fingerprint) key.

    A fingerprint owns a single row for its whole life: resolution followed
    by a new matching event reopens this row instead of creating another.
    """
    __tablename__ = "alert_groups"
    __table_args__ = (
        UniqueConstraint("workspace_id", "fingerprint", name="uq_alert_groups_workspace_fingerprint"),
        Index("ix_alert_groups_workspace_status_last_seen", "workspace_id", "status", "last_seen_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, index=True)
    fingerprint = Column(String(255), nullable=False)
    title = Column(String(500), nullable=False)
    project = Column(String(255), default="")
    environment = Column(String(100), default="")
    source = Column(String(50), nullable=False)
    status = Column(String(20), default=AlertStatus.OPEN.value, nullable=False)  # open, acked, resolved
    severity = Column(String(20), nullable=False)
    count = Column(Integer, default=1, nullable=False)
    first_seen_at = Column(UTCDateTime, nullable=False, default=utc_now)
    last_seen_at = Column(UTCDateTime, nullable=False, default=utc_now)
    tags_json = Column(JSON, default=dict)
    escalation_level = Column(Integer, default=0, nullable=False)
    snooze_until = Column(UTCDateTime, nullable=True)
    assigned_roles_json = Column(JSON, nullable=True)
    linked_release = Column(String(255), nullable=True)
    routing_status = Column(String(20), default=RoutingStatus.PENDING.value, nullable=False)
    routed_rule_id = Column(Uuid, ForeignKey("routing_rules.id", ondelete="SET NULL"), nullable=True)
    acknowledged_at = Column(UTCDateTime, nullable=True)
    resolved_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    events = relationship("AlertEvent", back_populates="alert_group", order_by="AlertEvent.received_at")
    escalation_jobs = relationship("EscalationJob", back_populates="alert_group")


class AlertEvent(Base):
    """One raw occurrence. Never mutated once stored."""
    __tablename__ = "alert_events"
    __table_args__ = (
        UniqueConstraint("workspace_id", "source", "source_event_id", name="uq_alert_events_source_event"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, index=True)
    alert_group_id = Column(Uuid, ForeignKey("alert_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String(50), nullable=False)
    source_event_id = Column(String(255), nullable=False)
    project = Column(String(255), default="")
    environment = Column(String(100), default="")
    severity = Column(String(20), nullable=False)
    fingerprint = Column(String(255), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    message = Column(Text, nullable=True)
    tags_json = Column(JSON, default=dict)
    payload_json = Column(JSON, nullable=True)
    occurred_at = Column(UTCDateTime, nullable=False)
    received_at = Column(UTCDateTime, nullable=False, default=utc_now)

    # Relationships
    alert_group = relationship("AlertGroup", back_populates="events")


class RoutingRule(Base):
    __tablename__ = "routing_rules"
    __table_args__ = (
        Index("ix_routing_rules_workspace_priority", "workspace_id", "priority"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(Integer, default=100, nullable=False)  # Lower = evaluated first
    conditions_json = Column(JSON, nullable=False)
    actions_json = Column(JSON, nullable=False)
    enabled = Column(Boolean, default=True, index=True)
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)


class CorrelationGroup(Base):
    """Probabilistic links from a primary group to related groups. Derived data."""
    __tablename__ = "correlation_groups"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, index=True)
    primary_alert_id = Column(Uuid, ForeignKey("alert_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    related_alert_ids = Column(JSON, default=list)
    confidence_score = Column(Float, default=0.0)
    root_cause_alert_id = Column(Uuid, ForeignKey("alert_groups.id", ondelete="SET NULL"), nullable=True)
    root_cause_analysis = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utc_now)
    updated_at = Column(UTCDateTime, default=utc_now, onupdate=utc_now)


class EscalationJob(Base):
    """
    One escalation timer for (alert group, level).

    pending_key is "<group>:<level>" while the job is SCHEDULED and NULL
    afterwards, so the unique constraint allows one pending job per level.
    """
    __tablename__ = "escalation_jobs"
    __table_args__ = (
        UniqueConstraint("pending_key", name="uq_escalation_jobs_pending_key"),
        Index("ix_escalation_jobs_group_status", "alert_group_id", "status"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, index=True)
    alert_group_id = Column(Uuid, ForeignKey("alert_groups.id", ondelete="CASCADE"), nullable=False)
    escalation_level = Column(Integer, nullable=False, default=0)
    escalate_after_minutes = Column(Integer, nullable=False)
    channel_id = Column(String(255), nullable=False)
    mention_here = Column(Boolean, default=False)
    status = Column(String(20), default=EscalationJobStatus.SCHEDULED.value, nullable=False)
    pending_key = Column(String(100), nullable=True)
    ladder_json = Column(JSON, default=list)  # remaining steps after this level
    scheduled_at = Column(UTCDateTime, nullable=False, default=utc_now)
    fire_at = Column(UTCDateTime, nullable=False)
    fired_at = Column(UTCDateTime, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancel_reason = Column(String(50), nullable=True)

    # Relationships
    alert_group = relationship("AlertGroup", back_populates="escalation_jobs")

    @staticmethod
    def make_pending_key(alert_group_id, level: int) -> str:
        return f"{alert_group_id}:{level}"


class NotificationLog(Base):
    """Outcome of every dispatch attempt, initial or escalation."""
    __tablename__ = "notification_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    workspace_id = Column(String(64), nullable=False, index=True)
    alert_group_id = Column(Uuid, ForeignKey("alert_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    escalation_job_id = Column(Uuid, ForeignKey("escalation_jobs.id", ondelete="SET NULL"), nullable=True)
    channel_id = Column(String(255), nullable=False)
    kind = Column(String(20), nullable=False)  # initial, escalation
    escalation_level = Column(Integer, default=0)
    success = Column(Boolean, nullable=False)
    error = Column(Text, nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    created_at = Column(UTCDateTime, default=utc_now)
