"""
Pydantic schemas for request/response validation
"""
from enum import Enum
from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Any, Dict
from datetime import datetime, timezone
from uuid import UUID


# Column widths of the stored identifiers
WORKSPACE_ID_MAX_LENGTH = 64


# ============== Enumerations ==============

class Severity(str, Enum):
    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    Severity.INFO: 1,
    Severity.LOW: 2,
    Severity.MEDIUM: 3,
    Severity.HIGH: 4,
    Severity.CRITICAL: 5,
}

# Spellings used by upstream monitoring tools
SEVERITY_ALIASES = {
    "info": Severity.INFO,
    "informational": Severity.INFO,
    "debug": Severity.INFO,
    "low": Severity.LOW,
    "success": Severity.LOW,  # recovery notices
    "medium": Severity.MEDIUM,
    "med": Severity.MEDIUM,
    "warning": Severity.MEDIUM,
    "warn": Severity.MEDIUM,
    "high": Severity.HIGH,
    "error": Severity.HIGH,
    "critical": Severity.CRITICAL,
    "fatal": Severity.CRITICAL,
}


def parse_severity(value: Any) -> Severity:
    """Normalize a severity string (any case, any known alias). Raises ValueError."""
    if isinstance(value, Severity):
        return value
    key = str(value or "").strip().lower()
    if key not in SEVERITY_ALIASES:
        raise ValueError(f"Unknown severity '{value}'")
    return SEVERITY_ALIASES[key]


def severity_rank(value: Any) -> Optional[int]:
    """Rank on the fixed info=1 .. critical=5 scale, or None when unparseable."""
    try:
        return SEVERITY_RANK[parse_severity(value)]
    except ValueError:
        return None


def max_severity(a: Any, b: Any) -> Severity:
    a, b = parse_severity(a), parse_severity(b)
    return a if SEVERITY_RANK[a] >= SEVERITY_RANK[b] else b


class AlertSource(str, Enum):
    SENTRY = "sentry"
    DATADOG = "datadog"
    PROMETHEUS = "prometheus"
    GRAFANA = "grafana"
    GENERIC_WEBHOOK = "generic_webhook"


class AlertStatus(str, Enum):
    OPEN = "open"
    ACKED = "acked"
    RESOLVED = "resolved"


class RoutingStatus(str, Enum):
    PENDING = "pending"
    ROUTED = "routed"
    UNROUTED = "unrouted"


class EscalationJobStatus(str, Enum):
    SCHEDULED = "scheduled"
    FIRED = "fired"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    REGEX = "regex"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUALS = "greater_than_or_equals"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUALS = "less_than_or_equals"


LIST_OPERATORS = {ConditionOperator.IN, ConditionOperator.NOT_IN}
NUMERIC_OPERATORS = {
    ConditionOperator.GREATER_THAN,
    ConditionOperator.GREATER_THAN_OR_EQUALS,
    ConditionOperator.LESS_THAN,
    ConditionOperator.LESS_THAN_OR_EQUALS,
}

CONDITION_FIELDS = {
    "environment", "env",
    "severity",
    "project", "service",
    "title",
    "message",
    "source",
    "status",
    "count",
    "fingerprint",
}
TAG_FIELD_PREFIX = "tags."


# ============== Routing Rule Schemas ==============

class RuleCondition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any = None
    case_sensitive: bool = False

    @field_validator("field")
    @classmethod
    def validate_field(cls, v: str) -> str:
        if v in CONDITION_FIELDS:
            return v
        if v.startswith(TAG_FIELD_PREFIX) and len(v) > len(TAG_FIELD_PREFIX):
            return v
        raise ValueError(f"Unknown condition field '{v}'")

    @model_validator(mode="after")
    def validate_value_shape(self):
        if self.operator in LIST_OPERATORS:
            if not isinstance(self.value, list):
                raise ValueError(f"Operator '{self.operator.value}' requires a list value")
        elif isinstance(self.value, (list, dict)) or self.value is None:
            raise ValueError(f"Operator '{self.operator.value}' requires a scalar value")
        return self

    def describe(self) -> str:
        return f"{self.field} {self.operator.value} {self.value!r}"


class ConditionGroup(BaseModel):
    """
    Flat condition tree: `all` is AND, `any` is OR.

    An absent key places no constraint; an empty `all` is true and an
    empty `any` is false. When both are present both must hold.
    """
    all: Optional[List[RuleCondition]] = None
    any: Optional[List[RuleCondition]] = None

    @model_validator(mode="after")
    def require_one_branch(self):
        if self.all is None and self.any is None:
            raise ValueError("Condition group needs an 'all' or 'any' list")
        return self

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class EscalationStep(BaseModel):
    after_minutes: int = Field(..., gt=0)
    channel_id: Optional[str] = None
    mention_here: bool = False


class RuleActions(BaseModel):
    channel_id: str = Field(..., min_length=1)
    mention_here: bool = False
    mention_channel: bool = False
    escalate_after_minutes: Optional[int] = None
    escalation_channel_id: Optional[str] = None
    escalation_mention_here: bool = False
    further_escalations: List[EscalationStep] = []

    def escalation_ladder(self) -> List[EscalationStep]:
        """Level 0 from escalate_after_minutes, deeper levels from further_escalations."""
        if not self.escalate_after_minutes or self.escalate_after_minutes <= 0:
            return []
        first = EscalationStep(
            after_minutes=self.escalate_after_minutes,
            channel_id=self.escalation_channel_id,
            mention_here=self.escalation_mention_here,
        )
        return [first] + list(self.further_escalations)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class RoutingRuleBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    priority: int = 100
    conditions: ConditionGroup
    actions: RuleActions
    enabled: bool = True


class RoutingRuleCreate(RoutingRuleBase):
    pass


class RoutingRuleUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    priority: Optional[int] = None
    conditions: Optional[ConditionGroup] = None
    actions: Optional[RuleActions] = None
    enabled: Optional[bool] = None


class RoutingRuleResponse(BaseModel):
    id: UUID
    workspace_id: str
    name: str
    description: Optional[str] = None
    priority: int
    conditions: Dict[str, Any] = Field(validation_alias="conditions_json")
    actions: Dict[str, Any] = Field(validation_alias="actions_json")
    enabled: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ============== Evaluation Schemas ==============

class AlertForEvaluation(BaseModel):
    """The attribute view of an alert that routing conditions are evaluated against."""
    source: str = ""
    project: str = ""
    environment: str = ""
    severity: Severity = Severity.INFO
    title: str = ""
    message: str = ""
    status: str = AlertStatus.OPEN.value
    count: int = 1
    fingerprint: str = ""
    tags: Dict[str, str] = {}
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v):
        return parse_severity(v)

    @field_validator("tags", mode="before")
    @classmethod
    def stringify_tags(cls, v):
        return {str(k): "" if val is None else str(val) for k, val in (v or {}).items()}

    @classmethod
    def from_group(cls, group, message: str = "") -> "AlertForEvaluation":
        """Build the evaluation view of an AlertGroup row."""
        return cls(
            source=group.source or "",
            project=group.project or "",
            environment=group.environment or "",
            severity=group.severity,
            title=group.title or "",
            message=message or "",
            status=group.status,
            count=group.count or 0,
            fingerprint=group.fingerprint or "",
            tags=group.tags_json or {},
            first_seen_at=group.first_seen_at,
            last_seen_at=group.last_seen_at,
        )


class ConditionEvaluationDetail(BaseModel):
    field: str
    operator: str
    expected: Any = None
    actual: Any = None
    result: bool
    description: str


class ConditionGroupResult(BaseModel):
    matched: bool
    matched_conditions: List[str] = []
    failed_conditions: List[str] = []
    details: List[ConditionEvaluationDetail] = []


class RuleEvaluationResult(BaseModel):
    rule_id: Optional[UUID] = None
    rule_name: str
    priority: int
    matched: bool
    actions: RuleActions
    evaluation: ConditionGroupResult


class RuleTestRequest(BaseModel):
    conditions: ConditionGroup
    alert: AlertForEvaluation


class RuleTestResult(BaseModel):
    matched: bool
    matched_conditions: List[str] = []
    failed_conditions: List[str] = []
    evaluation_details: List[ConditionEvaluationDetail] = []


class EvaluateRulesResponse(BaseModel):
    matched_rule: Optional[RuleEvaluationResult] = None
    results: List[RuleEvaluationResult] = []


# ============== Dispatch Schemas ==============

class DispatchInstruction(BaseModel):
    channel_id: str
    mention_here: bool = False
    mention_channel: bool = False
    escalate_after_minutes: Optional[int] = None
    escalation_channel_id: Optional[str] = None


class DispatchAction(BaseModel):
    workspace_id: str
    alert_group_id: UUID
    channel_id: str
    kind: str = "initial"  # initial, escalation
    escalation_level: int = 0
    mention_here: bool = False
    mention_channel: bool = False
    title: str
    severity: Severity
    project: str = ""
    environment: str = ""
    count: int = 1
    status: str = AlertStatus.OPEN.value


class DispatchResult(BaseModel):
    success: bool
    error: Optional[str] = None
    provider_message_id: Optional[str] = None


# ============== Policy Schemas ==============

class DedupPolicy(BaseModel):
    reopen_on_critical: bool = False


class CorrelationPolicy(BaseModel):
    enabled: bool = True
    lookback_hours: int = Field(default=24, gt=0)
    threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    root_cause_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    temporal_window_minutes: int = Field(default=30, gt=0)
    project_weight: float = 0.3
    environment_weight: float = 0.2
    temporal_weight: float = 0.25
    tag_weight: float = 0.25
    semantic_weight: float = Field(default=0.0, ge=0.0, le=1.0)


class EscalationPolicy(BaseModel):
    max_levels: int = Field(default=3, ge=1)


class AutoCloseConfig(BaseModel):
    enabled: bool = True
    inactivity_days: int = Field(default=7, ge=1)


class EnginePolicy(BaseModel):
    dedup: DedupPolicy = DedupPolicy()
    correlation: CorrelationPolicy = CorrelationPolicy()
    escalation: EscalationPolicy = EscalationPolicy()
    auto_close: AutoCloseConfig = AutoCloseConfig()

    @classmethod
    def from_settings(cls, settings) -> "EnginePolicy":
        return cls(
            dedup=DedupPolicy(reopen_on_critical=settings.reopen_on_critical),
            correlation=CorrelationPolicy(
                enabled=settings.correlation_enabled,
                lookback_hours=settings.correlation_lookback_hours,
                threshold=settings.correlation_threshold,
                root_cause_threshold=settings.correlation_root_cause_threshold,
                temporal_window_minutes=settings.correlation_temporal_window_minutes,
                semantic_weight=settings.correlation_semantic_weight,
            ),
            escalation=EscalationPolicy(max_levels=settings.escalation_max_levels),
            auto_close=AutoCloseConfig(
                enabled=settings.auto_close_enabled,
                inactivity_days=settings.auto_close_inactivity_days,
            ),
        )


# ============== Alert Schemas ==============

class AlertEventCreate(BaseModel):
    """A normalized inbound alert occurrence."""
    workspace_id: str = Field(default="", max_length=WORKSPACE_ID_MAX_LENGTH)
    source: AlertSource
    source_event_id: str = Field(..., max_length=255)
    project: str = Field(default="", max_length=255)
    environment: str = Field(default="", max_length=100)
    severity: Severity
    fingerprint: str = Field(default="", max_length=255)
    title: str = Field(..., max_length=500)
    message: Optional[str] = None
    tags: Dict[str, str] = {}
    occurred_at: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity(cls, v):
        return parse_severity(v)

    @field_validator("source", mode="before")
    @classmethod
    def normalize_source(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("tags", mode="before")
    @classmethod
    def stringify_tags(cls, v):
        return {str(k): "" if val is None else str(val) for k, val in (v or {}).items()}

    @field_validator("occurred_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class AlertEventResponse(BaseModel):
    id: UUID
    workspace_id: str
    alert_group_id: UUID
    source: str
    source_event_id: str
    project: str
    environment: str
    severity: str
    fingerprint: str
    title: str
    message: Optional[str] = None
    tags_json: Optional[Dict[str, Any]] = None
    occurred_at: datetime
    received_at: datetime

    class Config:
        from_attributes = True


class AlertGroupResponse(BaseModel):
    id: UUID
    workspace_id: str
    fingerprint: str
    title: str
    project: str
    environment: str
    source: str
    status: str
    severity: str
    count: int
    first_seen_at: datetime
    last_seen_at: datetime
    tags_json: Optional[Dict[str, Any]] = None
    escalation_level: int
    snooze_until: Optional[datetime] = None
    assigned_roles_json: Optional[List[str]] = None
    linked_release: Optional[str] = None
    routing_status: str
    routed_rule_id: Optional[UUID] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SnoozeRequest(BaseModel):
    until: Optional[datetime] = None
    minutes: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def require_one(self):
        if (self.until is None) == (self.minutes is None):
            raise ValueError("Provide exactly one of 'until' or 'minutes'")
        if self.until is not None and self.until.tzinfo is None:
            self.until = self.until.replace(tzinfo=timezone.utc)
        return self


class AutoCloseRequest(BaseModel):
    inactivity_days: Optional[int] = Field(default=None, ge=1)


class AutoCloseResponse(BaseModel):
    resolved_count: int
    resolved_group_ids: List[UUID] = []


class CancelEscalationsRequest(BaseModel):
    """Stop every pending escalation of a workspace, e.g. when its integration is disconnected."""
    reason: str = Field(default="integration_disconnected", min_length=1, max_length=50)


class CancelEscalationsResponse(BaseModel):
    cancelled_count: int


# ============== Correlation Schemas ==============

class CorrelatedAlert(BaseModel):
    alert_group_id: UUID
    score: float
    title: str = ""
    first_seen_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None


class CorrelationResult(BaseModel):
    correlation_group_id: Optional[UUID] = None
    primary_alert_id: Optional[UUID] = None
    related: List[CorrelatedAlert] = []
    confidence_score: float = 0.0
    root_cause_alert_id: Optional[UUID] = None
    root_cause_analysis: Optional[str] = None


class CorrelationGroupResponse(BaseModel):
    id: UUID
    workspace_id: str
    primary_alert_id: UUID
    related_alert_ids: List[str] = []
    confidence_score: float
    root_cause_alert_id: Optional[UUID] = None
    root_cause_analysis: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# ============== Escalation Schemas ==============

class EscalationJobResponse(BaseModel):
    id: UUID
    alert_group_id: UUID
    escalation_level: int
    escalate_after_minutes: int
    channel_id: str
    mention_here: bool
    status: str
    scheduled_at: datetime
    fire_at: datetime
    fired_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NotificationLogResponse(BaseModel):
    id: UUID
    alert_group_id: UUID
    channel_id: str
    kind: str
    escalation_level: int
    success: bool
    error: Optional[str] = None
    provider_message_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


# ============== Ingest Schemas ==============

class IngestResult(BaseModel):
    alert_group_id: UUID
    event_id: Optional[UUID] = None
    outcome: str  # created, merged, reopened, duplicate
    is_new: bool = False
    reopened: bool = False
    reactivated: bool = False
    duplicate: bool = False
    routing_status: str = RoutingStatus.PENDING.value
    routed_rule_id: Optional[UUID] = None
    dispatched: Optional[bool] = None
    escalation_job_id: Optional[UUID] = None
    correlation: Optional[CorrelationResult] = None
