"""
Initial alert engine schema

Revision ID: 001_initial_schema
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'routing_rules',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('priority', sa.Integer, nullable=False, server_default='100'),
        sa.Column('conditions_json', sa.JSON, nullable=False),
        sa.Column('actions_json', sa.JSON, nullable=False),
        sa.Column('enabled', sa.Boolean, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_routing_rules_workspace_id', 'routing_rules', ['workspace_id'])
    op.create_index('ix_routing_rules_enabled', 'routing_rules', ['enabled'])
    op.create_index('ix_routing_rules_workspace_priority', 'routing_rules', ['workspace_id', 'priority'])

    op.create_table(
        'alert_groups',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('fingerprint', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('project', sa.String(255), server_default=''),
        sa.Column('environment', sa.String(100), server_default=''),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('count', sa.Integer, nullable=False, server_default='1'),
        sa.Column('first_seen_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('tags_json', sa.JSON),
        sa.Column('escalation_level', sa.Integer, nullable=False, server_default='0'),
        sa.Column('snooze_until', sa.DateTime(timezone=True)),
        sa.Column('assigned_roles_json', sa.JSON),
        sa.Column('linked_release', sa.String(255)),
        sa.Column('routing_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('routed_rule_id', sa.Uuid, sa.ForeignKey('routing_rules.id', ondelete='SET NULL')),
        sa.Column('acknowledged_at', sa.DateTime(timezone=True)),
        sa.Column('resolved_at', sa.DateTime(timezone=True)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('workspace_id', 'fingerprint', name='uq_alert_groups_workspace_fingerprint'),
        sa.CheckConstraint("status IN ('open', 'acked', 'resolved')", name='valid_alert_group_status'),
    )
    op.create_index('ix_alert_groups_workspace_id', 'alert_groups', ['workspace_id'])
    op.create_index(
        'ix_alert_groups_workspace_status_last_seen',
        'alert_groups',
        ['workspace_id', 'status', 'last_seen_at']
    )

    op.create_table(
        'alert_events',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('alert_group_id', sa.Uuid, sa.ForeignKey('alert_groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('source', sa.String(50), nullable=False),
        sa.Column('source_event_id', sa.String(255), nullable=False),
        sa.Column('project', sa.String(255), server_default=''),
        sa.Column('environment', sa.String(100), server_default=''),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('fingerprint', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=False),
        sa.Column('message', sa.Text),
        sa.Column('tags_json', sa.JSON),
        sa.Column('payload_json', sa.JSON),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('workspace_id', 'source', 'source_event_id', name='uq_alert_events_source_event'),
    )
    op.create_index('ix_alert_events_workspace_id', 'alert_events', ['workspace_id'])
    op.create_index('ix_alert_events_alert_group_id', 'alert_events', ['alert_group_id'])
    op.create_index('ix_alert_events_fingerprint', 'alert_events', ['fingerprint'])

    op.create_table(
        'correlation_groups',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('primary_alert_id', sa.Uuid, sa.ForeignKey('alert_groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('related_alert_ids', sa.JSON),
        sa.Column('confidence_score', sa.Float, server_default='0'),
        sa.Column('root_cause_alert_id', sa.Uuid, sa.ForeignKey('alert_groups.id', ondelete='SET NULL')),
        sa.Column('root_cause_analysis', sa.Text),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_correlation_groups_workspace_id', 'correlation_groups', ['workspace_id'])
    op.create_index('ix_correlation_groups_primary_alert_id', 'correlation_groups', ['primary_alert_id'])

    op.create_table(
        'escalation_jobs',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('alert_group_id', sa.Uuid, sa.ForeignKey('alert_groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('escalation_level', sa.Integer, nullable=False, server_default='0'),
        sa.Column('escalate_after_minutes', sa.Integer, nullable=False),
        sa.Column('channel_id', sa.String(255), nullable=False),
        sa.Column('mention_here', sa.Boolean, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False, server_default='scheduled'),
        sa.Column('pending_key', sa.String(100)),
        sa.Column('ladder_json', sa.JSON),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('fire_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('fired_at', sa.DateTime(timezone=True)),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('cancel_reason', sa.String(50)),
        sa.UniqueConstraint('pending_key', name='uq_escalation_jobs_pending_key'),
        sa.CheckConstraint("status IN ('scheduled', 'fired', 'cancelled', 'superseded')", name='valid_escalation_job_status'),
    )
    op.create_index('ix_escalation_jobs_workspace_id', 'escalation_jobs', ['workspace_id'])
    op.create_index('ix_escalation_jobs_group_status', 'escalation_jobs', ['alert_group_id', 'status'])

    op.create_table(
        'notification_logs',
        sa.Column('id', sa.Uuid, primary_key=True),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('alert_group_id', sa.Uuid, sa.ForeignKey('alert_groups.id', ondelete='CASCADE'), nullable=False),
        sa.Column('escalation_job_id', sa.Uuid, sa.ForeignKey('escalation_jobs.id', ondelete='SET NULL')),
        sa.Column('channel_id', sa.String(255), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('escalation_level', sa.Integer, server_default='0'),
        sa.Column('success', sa.Boolean, nullable=False),
        sa.Column('error', sa.Text),
        sa.Column('provider_message_id', sa.String(255)),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_notification_logs_workspace_id', 'notification_logs', ['workspace_id'])
    op.create_index('ix_notification_logs_alert_group_id', 'notification_logs', ['alert_group_id'])


def downgrade():
    op.drop_table('notification_logs')
    op.drop_table('escalation_jobs')
    op.drop_table('correlation_groups')
    op.drop_table('alert_events')
    op.drop_table('alert_groups')
    op.drop_table('routing_rules')
