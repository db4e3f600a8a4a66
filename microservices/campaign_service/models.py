"""
Campaign Engine Data Models

Canonical pydantic models for segments, campaigns, the dispatch ledger,
content, events, trigger rules, workflow instances and metric rollups.
"""

import hashlib
from bisect import bisect_left
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    JsonValue,
    Tag,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and normalise aware ones to UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# ENUMS
# =============================================================================

class CriteriaOperator(str, Enum):
    """Leaf predicate operators"""
    EQUALS = "equals"
    CONTAINS = "contains"
    GT = "gt"
    LT = "lt"
    IN = "in"
    NOT_IN = "not_in"


class Combinator(str, Enum):
    """Criteria tree combinators"""
    AND = "and"
    OR = "or"


class SegmentType(str, Enum):
    """Segment membership source"""
    STATIC = "static"    # Explicit id set
    DYNAMIC = "dynamic"  # Derived from criteria at refresh time


class CampaignType(str, Enum):
    """Campaign channel type"""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    SOCIAL = "social"
    MULTI_CHANNEL = "multi_channel"


class ChannelType(str, Enum):
    """Delivery channel"""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    SOCIAL = "social"


class CampaignStatus(str, Enum):
    """Campaign lifecycle status"""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Dispatch run status"""
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class ContentStatus(str, Enum):
    """Content approval status"""
    DRAFT = "draft"
    APPROVED = "approved"
    ARCHIVED = "archived"


class DeliveryStatus(str, Enum):
    """Per-recipient dispatch ledger status"""
    DISPATCHING = "dispatching"  # Claimed, adapter call in flight
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class OutcomeStatus(str, Enum):
    """Channel adapter delivery outcome"""
    ACCEPTED = "accepted"
    FAILED = "failed"    # Permanent failure
    SKIPPED = "skipped"  # Adapter-reported skip


class MetricType(str, Enum):
    """Rollup counters"""
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    CONVERTED = "converted"
    BOUNCED = "bounced"


class SegmentOperation(str, Enum):
    """update_segment workflow step operations"""
    ADD = "add"            # Add customer to a static segment
    REMOVE = "remove"      # Remove customer from a static segment
    SUPPRESS = "suppress"  # Exclude customer from every segment and dispatch
    REFRESH = "refresh"    # Refresh a segment


class WorkflowStatus(str, Enum):
    """Workflow instance status"""
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_DELIVERY_STATUSES = {DeliveryStatus.SENT, DeliveryStatus.FAILED, DeliveryStatus.SKIPPED}
TERMINAL_WORKFLOW_STATUSES = {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseContract(BaseModel):
    """Base model for all contracts"""

    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# CRITERIA TREE
# =============================================================================

_SCALAR_TYPES = (str, int, float, bool, datetime, date)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _is_iso_datetime(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value)
        return True
    except ValueError:
        return False


class CriteriaLeaf(BaseContract):
    """Leaf predicate: {field, operator, value}"""

    model_config = ConfigDict(from_attributes=True, extra="forbid")

    kind: Literal["leaf"] = "leaf"
    field: str = Field(..., min_length=1, description="Attribute name, dot paths allowed")
    operator: CriteriaOperator
    value: Any = Field(..., description="Comparison value")

    @model_validator(mode="after")
    def validate_value_for_operator(self):
        """Operator dispatch is exhaustive, so bad values are rejected here"""
        op = self.operator
        if op in (CriteriaOperator.IN, CriteriaOperator.NOT_IN):
            if not isinstance(self.value, (list, tuple, set, frozenset)):
                raise ValueError(f"Operator '{op.value}' requires a list of values")
            values = list(self.value)
            if not all(isinstance(v, _SCALAR_TYPES) for v in values):
                raise ValueError(f"Operator '{op.value}' requires scalar list members")
            self.value = values
        elif op in (CriteriaOperator.GT, CriteriaOperator.LT):
            if not (_is_number(self.value) or isinstance(self.value, (datetime, date)) or _is_iso_datetime(self.value)):
                raise ValueError(f"Operator '{op.value}' requires a number or a date")
        elif not isinstance(self.value, _SCALAR_TYPES):
            raise ValueError(f"Operator '{op.value}' requires a scalar value")
        return self


class CriteriaGroup(BaseContract):
    """AND/OR combination of child criteria"""

    model_config = ConfigDict(from_attributes=True, extra="forbid")

    kind: Literal["group"] = "group"
    combinator: Combinator = Combinator.AND
    children: List["Criteria"] = Field(default_factory=list)


def _criteria_kind(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        if value.get("kind"):
            return value["kind"]
        return "group" if ("children" in value or "combinator" in value) else "leaf"
    return getattr(value, "kind", None)


Criteria = Annotated[
    Union[
        Annotated[CriteriaLeaf, Tag("leaf")],
        Annotated[CriteriaGroup, Tag("group")],
    ],
    Discriminator(_criteria_kind),
]

CriteriaGroup.model_rebuild()


# =============================================================================
# CUSTOMERS & SEGMENTS
# =============================================================================

def _coerce_id(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class CustomerRecord(BaseContract):
    """Customer attributes as returned by the profile store"""
    customer_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @field_validator("customer_id", mode="before")
    @classmethod
    def coerce_customer_id(cls, v):
        return _coerce_id(v)


class Segment(BaseContract):
    """Named audience definition"""
    segment_id: str = Field(default_factory=lambda: f"seg_{uuid4().hex[:16]}")
    name: str = Field(..., min_length=1, max_length=255)
    segment_type: SegmentType
    criteria: Optional[Criteria] = None
    static_member_ids: List[str] = Field(default_factory=list)
    cached_size: int = Field(default=0, ge=0)
    snapshot_version: int = Field(default=0, ge=0, description="Current published snapshot version")
    last_refreshed_at: Optional[datetime] = None
    refresh_cadence_minutes: Optional[int] = Field(None, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None

    @field_validator("static_member_ids", mode="before")
    @classmethod
    def coerce_member_ids(cls, v):
        return [_coerce_id(i) for i in v] if v is not None else []

    @model_validator(mode="after")
    def validate_membership_source(self):
        if self.segment_type == SegmentType.DYNAMIC and self.criteria is None:
            raise ValueError("Dynamic segments require criteria")
        if self.segment_type == SegmentType.STATIC and self.criteria is not None:
            raise ValueError("Static segments cannot have criteria")
        return self

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class SegmentSnapshot(BaseContract):
    """Immutable point-in-time materialization of a segment's members"""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    segment_id: str
    version: int = Field(..., ge=1)
    member_ids: Tuple[str, ...] = Field(default_factory=tuple, description="Sorted, unique")
    checksum: str
    criteria_fingerprint: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def build(
        cls,
        segment_id: str,
        version: int,
        members: Iterable[str],
        criteria_fingerprint: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> "SegmentSnapshot":
        ordered = tuple(sorted(set(members)))
        return cls(
            segment_id=segment_id,
            version=version,
            member_ids=ordered,
            checksum=membership_checksum(ordered),
            criteria_fingerprint=criteria_fingerprint,
            created_at=created_at or utcnow(),
        )

    @property
    def size(self) -> int:
        return len(self.member_ids)

    def contains(self, customer_id: str) -> bool:
        i = bisect_left(self.member_ids, customer_id)
        return i < len(self.member_ids) and self.member_ids[i] == customer_id


def membership_checksum(ordered_ids: Iterable[str]) -> str:
    digest = hashlib.sha256()
    for customer_id in ordered_ids:
        digest.update(customer_id.encode())
        digest.update(b"\n")
    return digest.hexdigest()


class Suppression(BaseContract):
    """Customer excluded from every snapshot and dispatch batch"""
    customer_id: str
    reason: str = "consent_revoked"
    source_event_id: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)

    @field_validator("customer_id", mode="before")
    @classmethod
    def coerce_customer_id(cls, v):
        return _coerce_id(v)


# =============================================================================
# CONTENT
# =============================================================================

class ContentVariant(BaseContract):
    """Weighted A/B variant"""
    variant_id: str = Field(default_factory=lambda: f"var_{uuid4().hex[:12]}")
    weight: int = Field(default=1, ge=0)
    body: str = ""
    template_id: Optional[str] = None


class Content(BaseContract):
    """Message content as held by the content collaborator"""
    content_id: str
    content_type: Optional[ChannelType] = None
    version: int = Field(default=1, ge=1)
    variants: List[ContentVariant] = Field(..., min_length=1)
    status: ContentStatus = ContentStatus.DRAFT

    @property
    def is_approved(self) -> bool:
        return self.status == ContentStatus.APPROVED


class RenderedContent(BaseContract):
    """Result of the content collaborator's render call"""
    content_id: str
    version: int = 1
    variant_id: Optional[str] = None
    body: str


# =============================================================================
# CAMPAIGNS
# =============================================================================

class Recurrence(BaseContract):
    """Repeat a run every interval until the schedule window closes"""
    interval_hours: int = Field(..., ge=1)


class CampaignSchedule(BaseContract):
    """Start/end in the campaign timezone; naive datetimes are local to it"""
    start_at: datetime
    end_at: Optional[datetime] = None
    timezone: str = Field(default="UTC", max_length=64)
    recurrence: Optional[Recurrence] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def validate_window(self):
        end = self.resolved_end()
        if end is not None and end <= self.resolved_start():
            raise ValueError("Schedule end_at must be after start_at")
        return self

    def _resolve(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            value = value.replace(tzinfo=ZoneInfo(self.timezone))
        return value.astimezone(timezone.utc)

    def resolved_start(self) -> datetime:
        return self._resolve(self.start_at)

    def resolved_end(self) -> Optional[datetime]:
        return self._resolve(self.end_at) if self.end_at else None

    def next_run_after(self, run_started_at: datetime) -> Optional[datetime]:
        """Next recurrence start, or None once the window has closed"""
        if not self.recurrence:
            return None
        candidate = ensure_utc(run_started_at) + timedelta(hours=self.recurrence.interval_hours)
        end = self.resolved_end()
        if end is not None and candidate >= end:
            return None
        return candidate


class CampaignBudget(BaseContract):
    """Spend tracking; spent only grows, on confirmed adapter acceptance"""
    total: Optional[Decimal] = Field(None, ge=0)
    spent: Decimal = Field(default=Decimal("0"), ge=0)
    cost_per_send: Decimal = Field(default=Decimal("0"), ge=0)

    def remaining_sends(self) -> Optional[int]:
        """How many more sends the budget allows (None = unbounded)"""
        if self.total is None or self.cost_per_send <= 0:
            return None
        remaining = self.total - self.spent
        if remaining <= 0:
            return 0
        return int(remaining // self.cost_per_send)


class CampaignGoal(BaseContract):
    """Metric target pair"""
    metric: MetricType
    target: int = Field(..., ge=1)


class Campaign(BaseContract):
    """Core Campaign model"""
    campaign_id: str = Field(default_factory=lambda: f"cmp_{uuid4().hex[:16]}")
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)

    # Type and Status
    campaign_type: CampaignType
    channels: List[ChannelType] = Field(default_factory=list, description="Fallback order")
    status: CampaignStatus = Field(default=CampaignStatus.DRAFT)

    # References
    segment_id: str
    content_id: str

    # Scheduling
    schedule: Optional[CampaignSchedule] = None

    # Spend and goals
    budget: CampaignBudget = Field(default_factory=CampaignBudget)
    goals: List[CampaignGoal] = Field(default_factory=list)

    # Dispatch
    batch_size: Optional[int] = Field(None, ge=1)
    current_run_id: Optional[str] = None
    next_run_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    # Metadata
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    # Timestamps
    launched_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_channels(self):
        if self.campaign_type == CampaignType.MULTI_CHANNEL:
            if not self.channels:
                raise ValueError("Multi-channel campaigns require at least one channel")
        elif not self.channels:
            self.channels = [ChannelType(self.campaign_type.value)]
        elif self.channels != [ChannelType(self.campaign_type.value)]:
            raise ValueError(f"{self.campaign_type.value} campaigns only use the {self.campaign_type.value} channel")
        return self


class CampaignRun(BaseContract):
    """One dispatch run of a campaign against one pinned snapshot version"""
    run_id: str = Field(default_factory=lambda: f"run_{uuid4().hex[:16]}")
    campaign_id: str
    segment_id: str
    snapshot_version: int = Field(..., ge=1)
    batch_size: int = Field(..., ge=1)
    total_recipients: int = Field(default=0, ge=0)
    total_batches: int = Field(default=0, ge=0)
    next_batch_index: int = Field(default=0, ge=0)
    status: RunStatus = RunStatus.RUNNING
    scheduled_for: Optional[datetime] = Field(None, description="Slot this run was started for")
    sent_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_exhausted(self) -> bool:
        return self.next_batch_index >= self.total_batches

    def batch_id(self, index: int) -> str:
        return f"{self.run_id}:{index:05d}"


class DispatchRecord(BaseContract):
    """Dispatch ledger row, keyed by (campaign_id, recipient_id, batch_id)"""
    campaign_id: str
    recipient_id: str
    batch_id: str
    run_id: str
    channel: Optional[ChannelType] = None
    variant_id: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.DISPATCHING
    reason: Optional[str] = None
    attempts: int = 0
    provider_message_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.campaign_id, self.recipient_id, self.batch_id)

    @property
    def idempotency_key(self) -> str:
        return f"{self.campaign_id}:{self.recipient_id}:{self.batch_id}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_DELIVERY_STATUSES


class DeliveryOutcome(BaseContract):
    """What a channel adapter reports for one send"""
    status: OutcomeStatus
    provider_message_id: Optional[str] = None
    reason: Optional[str] = None


class BatchResult(BaseContract):
    """Outcome of dispatching one batch"""
    batch_id: str
    batch_index: int
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    already_dispatched: int = 0


class DispatchSummary(BaseContract):
    """Outcome of one dispatch() call"""
    campaign_id: str
    run_id: Optional[str] = None
    status: CampaignStatus
    batches: List[BatchResult] = Field(default_factory=list)
    reason: Optional[str] = None

    @property
    def batch_indexes(self) -> List[int]:
        return [b.batch_index for b in self.batches]

    @property
    def sent(self) -> int:
        return sum(b.sent for b in self.batches)


class GoalProgress(BaseContract):
    """Progress of one campaign goal"""
    metric: MetricType
    target: int
    actual: int
    achieved: bool


# =============================================================================
# EVENTS
# =============================================================================

class EngineEvent(BaseContract):
    """Immutable, append-only event; `event_id` is the dedup/idempotency id"""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    event_id: str = Field(default_factory=lambda: f"evt_{uuid4().hex}")
    event_type: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    customer_id: Optional[str] = None
    campaign_id: Optional[str] = None
    properties: Dict[str, JsonValue] = Field(default_factory=dict)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def normalise_timestamp(cls, v):
        return ensure_utc(v)

    @field_validator("customer_id", mode="before")
    @classmethod
    def coerce_customer_id(cls, v):
        return _coerce_id(v)

    @property
    def day(self) -> date:
        return self.timestamp.date()

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "id": self.event_id,
            "type": self.event_type,
            "timestamp": self.timestamp.isoformat(),
            "customer_id": self.customer_id,
            "campaign_id": self.campaign_id,
            "properties": self.properties,
            "metadata": self.metadata,
        }

    @classmethod
    def from_envelope(cls, data: Dict[str, Any]) -> "EngineEvent":
        return cls(
            event_id=data["id"],
            event_type=data["type"],
            timestamp=data.get("timestamp") or utcnow(),
            customer_id=data.get("customer_id"),
            campaign_id=data.get("campaign_id"),
            properties=data.get("properties") or {},
            metadata=data.get("metadata") or {},
        )


# =============================================================================
# TRIGGER RULES & WORKFLOWS
# =============================================================================

class SendContentStep(BaseContract):
    """Render content and send it to the customer"""
    type: Literal["send_content"] = "send_content"
    content_id: str
    channel: ChannelType = ChannelType.EMAIL


class WaitStep(BaseContract):
    """Suspend the instance until the delay elapses"""
    type: Literal["wait"] = "wait"
    delay_seconds: int = Field(..., ge=0, le=30 * 24 * 3600)


class UpdateSegmentStep(BaseContract):
    """Change the customer's segment membership"""
    type: Literal["update_segment"] = "update_segment"
    operation: SegmentOperation
    segment_id: Optional[str] = None

    @model_validator(mode="after")
    def validate_target(self):
        if self.operation != SegmentOperation.SUPPRESS and not self.segment_id:
            raise ValueError(f"update_segment '{self.operation.value}' requires segment_id")
        return self


class CallWebhookStep(BaseContract):
    """POST the triggering event to an external URL"""
    type: Literal["call_webhook"] = "call_webhook"
    url: str = Field(..., min_length=1)
    method: str = Field(default="POST", pattern="^(POST|PUT)$")
    headers: Dict[str, str] = Field(default_factory=dict)


WorkflowStep = Annotated[
    Union[SendContentStep, WaitStep, UpdateSegmentStep, CallWebhookStep],
    Field(discriminator="type"),
]


class TriggerRule(BaseContract):
    """Event predicate that starts a workflow instance on match"""
    rule_id: str = Field(default_factory=lambda: f"trg_{uuid4().hex[:16]}")
    name: str = Field(..., min_length=1, max_length=255)
    event_type: str = Field(..., min_length=1)
    conditions: Optional[Criteria] = Field(None, description="Evaluated against event properties")
    steps: List[WorkflowStep] = Field(..., min_length=1)
    enabled: bool = True
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: Optional[datetime] = None


def workflow_instance_id(customer_id: str, rule_id: str, event_id: str) -> str:
    """Deterministic id for the (customer, rule, event) de-duplication key"""
    raw = f"{customer_id}|{rule_id}|{event_id}".encode()
    return f"wfi_{hashlib.sha256(raw).hexdigest()[:24]}"


class WorkflowInstance(BaseContract):
    """Persisted workflow state machine: step pointer plus resume time"""
    instance_id: str
    customer_id: str
    rule_id: str
    event_id: str
    event: EngineEvent
    status: WorkflowStatus = WorkflowStatus.RUNNING
    current_step: int = Field(default=0, ge=0)
    resume_at: Optional[datetime] = None
    remaining_delay_seconds: Optional[int] = None
    step_attempts: int = 0
    last_error: Optional[str] = None
    version: int = Field(default=0, ge=0, description="Compare-and-set guard")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @classmethod
    def start(cls, rule: TriggerRule, event: EngineEvent) -> "WorkflowInstance":
        return cls(
            instance_id=workflow_instance_id(event.customer_id, rule.rule_id, event.event_id),
            customer_id=event.customer_id,
            rule_id=rule.rule_id,
            event_id=event.event_id,
            event=event,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES


# =============================================================================
# METRICS
# =============================================================================

class MetricRollup(BaseContract):
    """Per-campaign, per-day counters"""
    campaign_id: str
    day: date
    sent: int = 0
    delivered: int = 0
    opened: int = 0
    clicked: int = 0
    converted: int = 0
    bounced: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    def get(self, metric: MetricType) -> int:
        return getattr(self, metric.value)

    def counts(self) -> Dict[str, int]:
        return {m.value: self.get(m) for m in MetricType}


class RollupContribution(BaseContract):
    """One counted event; the event id is the increment key"""
    event_id: str
    campaign_id: str
    day: date
    metric: MetricType


# =============================================================================
# REQUEST MODELS
# =============================================================================

class SegmentCreateRequest(BaseContract):
    """Request to create a segment"""
    name: str = Field(..., min_length=1, max_length=255)
    segment_type: SegmentType
    criteria: Optional[Criteria] = None
    static_member_ids: List[str] = Field(default_factory=list)
    refresh_cadence_minutes: Optional[int] = Field(None, ge=1)

    @field_validator("static_member_ids", mode="before")
    @classmethod
    def coerce_member_ids(cls, v):
        return [_coerce_id(i) for i in v] if v is not None else []


class SegmentUpdateRequest(BaseContract):
    """Request to update a segment"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    criteria: Optional[Criteria] = None
    static_member_ids: Optional[List[str]] = None
    refresh_cadence_minutes: Optional[int] = Field(None, ge=1)

    @field_validator("static_member_ids", mode="before")
    @classmethod
    def coerce_member_ids(cls, v):
        return [_coerce_id(i) for i in v] if v is not None else None


class CampaignCreateRequest(BaseContract):
    """Request to create a campaign"""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    campaign_type: CampaignType
    channels: List[ChannelType] = Field(default_factory=list)
    segment_id: str
    content_id: str
    schedule: Optional[CampaignSchedule] = None
    budget: Optional[CampaignBudget] = None
    goals: List[CampaignGoal] = Field(default_factory=list)
    batch_size: Optional[int] = Field(None, ge=1)
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CampaignUpdateRequest(BaseContract):
    """Request to update a draft or paused campaign"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    content_id: Optional[str] = None
    schedule: Optional[CampaignSchedule] = None
    budget_total: Optional[Decimal] = Field(None, ge=0)
    goals: Optional[List[CampaignGoal]] = None
    batch_size: Optional[int] = Field(None, ge=1)
    tags: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class TriggerRuleCreateRequest(BaseContract):
    """Request to register a trigger rule"""
    name: str = Field(..., min_length=1, max_length=255)
    event_type: str = Field(..., min_length=1)
    conditions: Optional[Criteria] = None
    steps: List[WorkflowStep] = Field(..., min_length=1)
    enabled: bool = True


class TriggerRuleUpdateRequest(BaseContract):
    """Request to update a trigger rule"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    event_type: Optional[str] = Field(None, min_length=1)
    conditions: Optional[Criteria] = None
    steps: Optional[List[WorkflowStep]] = Field(None, min_length=1)


# =============================================================================
# HEALTH MODELS
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    service: str
    port: int
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)


class ReadinessResponse(BaseModel):
    """Readiness check response"""
    ready: bool
    checks: Dict[str, bool] = Field(default_factory=dict)


class LivenessResponse(BaseModel):
    """Liveness check response"""
    alive: bool
    uptime_seconds: float
