"""
Fingerprint/Dedup Index

Maps (workspace, fingerprint) to exactly one AlertGroup and applies each
inbound event to it: create, merge or reopen. Ingestion of a single key is
linearized by an in-process striped lock, a row lock where the database
supports one, and the unique constraint on (workspace_id, fingerprint)
as the final arbiter across processes.
"""
import logging
import threading
import zlib
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.orm import Session

from alert_engine.database import utc_now
from alert_engine.exceptions import AlertEngineError, AlertValidationError
from alert_engine.models import AlertEvent, AlertGroup
from alert_engine.schemas import (
    AlertEventCreate,
    AlertStatus,
    DedupPolicy,
    RoutingStatus,
    Severity,
    max_severity,
    parse_severity,
)

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64
_stripes = [threading.Lock() for _ in range(LOCK_STRIPES)]


def _lock_for(workspace_id: str, fingerprint: str) -> threading.Lock:
    return _stripes[zlib.crc32(f"{workspace_id}\x00{fingerprint}".encode("utf-8")) % LOCK_STRIPES]


@dataclass
class DedupOutcome:
    group: AlertGroup
    event: Optional[AlertEvent] = None
    is_new: bool = False
    reopened: bool = False
    reactivated: bool = False
    duplicate: bool = False

    @property
    def outcome(self) -> str:
        if self.duplicate:
            return "duplicate"
        if self.is_new:
            return "created"
        if self.reopened:
            return "reopened"
        return "merged"

    @property
    def needs_routing(self) -> bool:
        if self.is_new or self.reopened or self.reactivated:
            return True
        # An earlier attempt stored the group but failed before routing finished
        return (
            self.group.status == AlertStatus.OPEN.value
            and self.group.routing_status == RoutingStatus.PENDING.value
        )


class DedupIndex:
    """Service for applying alert events to their deduplicated group."""

    MAX_ATTEMPTS = 3

    def __init__(self, db: Session, policy: Optional[DedupPolicy] = None):
        self.db = db
        self.policy = policy or DedupPolicy()

    def find_duplicate_event(self, event: AlertEventCreate) -> Optional[AlertEvent]:
        """Return the stored event with the same (workspace, source, source event id), if any."""
        return self.db.query(AlertEvent).filter(
            AlertEvent.workspace_id == event.workspace_id,
            AlertEvent.source == event.source.value,
            AlertEvent.source_event_id == event.source_event_id
        ).first()

    def ingest(self, event: AlertEventCreate, now: Optional[datetime] = None) -> DedupOutcome:
        """
        Apply one event to its group and store the event, in one transaction.

        A duplicate (source, source_event_id) is a no-op. Losing a create race
        to another writer falls back to the merge path transparently.
        """
        fingerprint = (event.fingerprint or "").strip()
        if not fingerprint:
            raise AlertValidationError("fingerprint", "Alert event has an empty fingerprint")
        if not (event.workspace_id or "").strip():
            raise AlertValidationError("workspace_id", "Alert event has no workspace")

        now = now or utc_now()
        last_error = None

        with _lock_for(event.workspace_id, fingerprint):
            for attempt in range(1, self.MAX_ATTEMPTS + 1):
                existing_event = self.find_duplicate_event(event)
                if existing_event is not None:
                    logger.info(
                        f"Duplicate event {event.source.value}/{event.source_event_id} ignored "
                        f"(group {existing_event.alert_group_id})"
                    )
                    return DedupOutcome(group=existing_event.alert_group, event=existing_event, duplicate=True)

                try:
                    outcome = self._apply(event, fingerprint, now)
                    self.db.commit()
                    self.db.refresh(outcome.group)
                    return outcome
                except DataError as e:
                    self.db.rollback()
                    logger.warning(f"Rejected event for fingerprint '{fingerprint[:64]}': {e.orig}")
                    raise AlertValidationError("event", f"Alert event does not fit the store: {e.orig}")
                except IntegrityError as e:
                    self.db.rollback()
                    last_error = e
                    logger.info(
                        f"Concurrent write on fingerprint '{fingerprint}' "
                        f"(attempt {attempt}/{self.MAX_ATTEMPTS}); retrying via merge path"
                    )

        raise AlertEngineError(f"Could not apply event to fingerprint '{fingerprint}': {last_error}")

    def _apply(self, event: AlertEventCreate, fingerprint: str, now: datetime) -> DedupOutcome:
        group = self.db.query(AlertGroup).filter(
            AlertGroup.workspace_id == event.workspace_id,
            AlertGroup.fingerprint == fingerprint
        ).with_for_update().first()

        occurred_at = event.occurred_at or now
        severity = parse_severity(event.severity)

        if group is None:
            group = AlertGroup(
                workspace_id=event.workspace_id,
                fingerprint=fingerprint,
                title=event.title,
                project=event.project,
                environment=event.environment,
                source=event.source.value,
                status=AlertStatus.OPEN.value,
                severity=severity.value,
                count=1,
                first_seen_at=occurred_at,
                last_seen_at=occurred_at,
                tags_json=dict(event.tags),
                escalation_level=0,
                routing_status=RoutingStatus.PENDING.value,
            )
            self.db.add(group)
            outcome = DedupOutcome(group=group, is_new=True)
            logger.info(f"Created alert group for fingerprint '{fingerprint}' in workspace {event.workspace_id}")

        elif group.status == AlertStatus.RESOLVED.value:
            self._merge(group, event, occurred_at, severity)
            group.status = AlertStatus.OPEN.value
            group.escalation_level = 0
            group.snooze_until = None
            group.acknowledged_at = None
            group.resolved_at = None
            group.routing_status = RoutingStatus.PENDING.value
            group.routed_rule_id = None
            outcome = DedupOutcome(group=group, reopened=True)
            logger.info(f"Reopened resolved alert group {group.id} (fingerprint '{fingerprint}')")

        else:
            self._merge(group, event, occurred_at, severity)
            outcome = DedupOutcome(group=group)
            if (
                self.policy.reopen_on_critical
                and severity == Severity.CRITICAL
                and group.status == AlertStatus.ACKED.value
            ):
                group.status = AlertStatus.OPEN.value
                group.acknowledged_at = None
                group.routing_status = RoutingStatus.PENDING.value
                outcome.reactivated = True
                logger.info(f"Critical event reactivated acknowledged alert group {group.id}")

        stored = AlertEvent(
            workspace_id=event.workspace_id,
            alert_group=group,
            source=event.source.value,
            source_event_id=event.source_event_id,
            project=event.project,
            environment=event.environment,
            severity=severity.value,
            fingerprint=fingerprint,
            title=event.title,
            message=event.message,
            tags_json=dict(event.tags),
            payload_json=event.payload,
            occurred_at=occurred_at,
            received_at=now,
        )
        self.db.add(stored)
        self.db.flush()
        outcome.event = stored
        return outcome

    @staticmethod
    def _merge(group: AlertGroup, event: AlertEventCreate, occurred_at: datetime, severity: Severity) -> None:
        group.count = (group.count or 0) + 1
        if group.last_seen_at is None or occurred_at > group.last_seen_at:
            group.last_seen_at = occurred_at
        if group.first_seen_at is None or occurred_at < group.first_seen_at:
            group.first_seen_at = occurred_at
        group.severity = max_severity(group.severity, severity).value
        group.tags_json = dict(event.tags)
