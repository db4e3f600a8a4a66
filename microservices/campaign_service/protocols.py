"""
Campaign Engine Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Set, Tuple

from .models import (
    Campaign,
    CampaignRun,
    CampaignStatus,
    ChannelType,
    Content,
    CustomerRecord,
    DeliveryOutcome,
    DeliveryStatus,
    DispatchRecord,
    EngineEvent,
    MetricRollup,
    RenderedContent,
    RollupContribution,
    Segment,
    SegmentSnapshot,
    Suppression,
    TriggerRule,
    WorkflowInstance,
    WorkflowStatus,
)


# ====================
# Repository Protocols
# ====================


class SegmentRepositoryProtocol(Protocol):
    """Protocol for segment, snapshot and suppression storage"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    async def save_segment(self, segment: Segment) -> Segment:
        """Insert or update a segment"""
        ...

    async def get_segment(self, segment_id: str, include_deleted: bool = False) -> Optional[Segment]:
        """Get segment by ID"""
        ...

    async def list_segments(self, include_deleted: bool = False) -> List[Segment]:
        """List segments"""
        ...

    async def soft_delete_segment(self, segment_id: str, deleted_at: datetime) -> bool:
        """Mark a segment deleted"""
        ...

    async def save_snapshot(self, snapshot: SegmentSnapshot) -> None:
        """Persist an immutable snapshot version"""
        ...

    async def get_snapshot(self, segment_id: str, version: int) -> Optional[SegmentSnapshot]:
        """Get one snapshot version"""
        ...

    async def list_snapshot_versions(self, segment_id: str) -> List[int]:
        """List stored snapshot versions"""
        ...

    async def delete_snapshot(self, segment_id: str, version: int) -> bool:
        """Delete a snapshot version"""
        ...

    async def add_suppression(self, suppression: Suppression) -> bool:
        """Record a suppression; False if the customer was already suppressed"""
        ...

    async def list_suppressed_ids(self) -> Set[str]:
        """All suppressed customer ids"""
        ...

    async def mark_customer_changed(self, customer_id: str, changed_at: datetime) -> None:
        """Record that a customer's attributes changed"""
        ...

    async def get_changed_customers(self, since: Optional[datetime]) -> List[str]:
        """Customers changed at or after `since`"""
        ...


class CampaignRepositoryProtocol(Protocol):
    """Protocol for campaign, run and dispatch ledger storage"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def health_check(self) -> bool:
        """Check repository health"""
        ...

    # Campaign CRUD
    async def save_campaign(
        self, campaign: Campaign, expected_status: Optional[CampaignStatus] = None
    ) -> Optional[Campaign]:
        """Insert or update a campaign; None if expected_status no longer matches"""
        ...

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        """Get campaign by ID"""
        ...

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Campaign]:
        """List campaigns, optionally filtered by status"""
        ...

    async def increment_spend(self, campaign_id: str, amount: Decimal) -> Decimal:
        """Add to budget spent, returning the new total"""
        ...

    # Runs
    async def save_run(self, run: CampaignRun) -> CampaignRun:
        """Insert or update a run"""
        ...

    async def get_run(self, run_id: str) -> Optional[CampaignRun]:
        """Get run by ID"""
        ...

    # Dispatch ledger
    async def claim_dispatch(self, record: DispatchRecord) -> bool:
        """Insert the record if its key is absent; True when this call claimed it"""
        ...

    async def update_dispatch(self, record: DispatchRecord) -> None:
        """Persist a claimed record's resolution"""
        ...

    async def get_dispatch(
        self, campaign_id: str, recipient_id: str, batch_id: str
    ) -> Optional[DispatchRecord]:
        """Get one ledger record"""
        ...

    async def list_dispatches(
        self,
        campaign_id: str,
        batch_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> List[DispatchRecord]:
        """List ledger records for a campaign"""
        ...

    async def resolve_stale_dispatches(self, campaign_id: str, reason: str) -> int:
        """Mark leftover `dispatching` records failed; returns how many"""
        ...


class AutomationRepositoryProtocol(Protocol):
    """Protocol for trigger rule and workflow instance storage"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def save_rule(self, rule: TriggerRule) -> TriggerRule:
        """Insert or update a rule"""
        ...

    async def get_rule(self, rule_id: str) -> Optional[TriggerRule]:
        """Get rule by ID"""
        ...

    async def list_rules(
        self, event_type: Optional[str] = None, enabled_only: bool = False
    ) -> List[TriggerRule]:
        """List non-deleted rules"""
        ...

    async def create_instance_if_absent(self, instance: WorkflowInstance) -> bool:
        """Insert the instance unless its id exists; True when created"""
        ...

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        """Get instance by ID"""
        ...

    async def update_instance(self, instance: WorkflowInstance, expected_version: int) -> bool:
        """Compare-and-set on version; False when another writer won"""
        ...

    async def list_instances(
        self,
        status: Optional[List[WorkflowStatus]] = None,
        rule_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> List[WorkflowInstance]:
        """List instances"""
        ...

    async def list_due_instances(self, now: datetime) -> List[WorkflowInstance]:
        """Waiting instances whose resume_at has passed"""
        ...

    async def claim_step_effect(self, instance_id: str, step_index: int) -> bool:
        """Insert-if-absent marker for a step's external side effect"""
        ...


class MetricsRepositoryProtocol(Protocol):
    """Protocol for the event log, contribution index and rollups"""

    async def initialize(self) -> None:
        """Initialize repository connection"""
        ...

    async def close(self) -> None:
        """Close repository connection"""
        ...

    async def append_event(self, event: EngineEvent) -> bool:
        """Append to the event log; False if the event id is already logged"""
        ...

    async def list_events(
        self,
        customer_id: Optional[str] = None,
        event_types: Optional[List[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[EngineEvent]:
        """Events ordered by (timestamp, event_id)"""
        ...

    async def apply_contribution(self, contribution: RollupContribution) -> bool:
        """Record the contribution and increment its rollup, at most once per event id"""
        ...

    async def get_rollup(self, campaign_id: str, day: date) -> Optional[MetricRollup]:
        """Get one rollup"""
        ...

    async def list_rollups(self, campaign_id: Optional[str] = None) -> List[MetricRollup]:
        """List rollups ordered by (campaign_id, day)"""
        ...

    async def rebuild_rollups(
        self,
        rebuild: Callable[[List[EngineEvent]], Tuple[List[MetricRollup], List[RollupContribution]]],
    ) -> Tuple[List[MetricRollup], int]:
        """
        Read the full event log, apply `rebuild` and replace every rollup and
        the contribution index, serialized against apply_contribution
        """
        ...


# ====================
# Event Bus Protocol
# ====================


class EventBusProtocol(Protocol):
    """Protocol for event bus operations"""

    async def publish_event(self, event: Dict[str, Any]) -> bool:
        """Publish an event envelope to the event bus"""
        ...

    async def subscribe(self, subject: str, handler: Any, durable: str) -> str:
        """Subscribe to events matching a subject"""
        ...

    async def close(self) -> None:
        """Close event bus connection"""
        ...


# ====================
# Collaborator Protocols
# ====================


class ProfileClientProtocol(Protocol):
    """Protocol for the customer profile store"""

    def iter_customers(self, batch_size: int) -> AsyncIterator[List[CustomerRecord]]:
        """Stream every customer in batches"""
        ...

    async def batch_get_customers(self, customer_ids: List[str]) -> List[CustomerRecord]:
        """Fetch specific customers; unknown ids are omitted"""
        ...

    async def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        """Fetch one customer"""
        ...


class ContentClientProtocol(Protocol):
    """Protocol for the content store"""

    async def get_content(self, content_id: str) -> Optional[Content]:
        """Get content with its approval status"""
        ...

    async def render(
        self, content_id: str, variant_id: Optional[str], channel: ChannelType
    ) -> RenderedContent:
        """Render a content variant for a channel"""
        ...


class ChannelAdapterProtocol(Protocol):
    """Protocol for one delivery channel"""

    channel: ChannelType

    async def send(
        self, recipient_id: str, content: RenderedContent, idempotency_key: str
    ) -> DeliveryOutcome:
        """Send one message; raises TransientChannelError on timeout/5xx"""
        ...


class WebhookClientProtocol(Protocol):
    """Protocol for outbound workflow webhooks"""

    async def call(
        self,
        url: str,
        payload: Dict[str, Any],
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        """Call the webhook, returning the HTTP status"""
        ...


class ClockProtocol(Protocol):
    """Source of the current time"""

    def now(self) -> datetime:
        ...


# ====================
# Custom Exceptions
# ====================


class CampaignServiceError(Exception):
    """Base exception for campaign engine errors"""

    reason_code = "internal_error"

    def __init__(self, message: str, reason_code: Optional[str] = None):
        super().__init__(message)
        if reason_code:
            self.reason_code = reason_code


class CampaignValidationError(CampaignServiceError):
    """Raised when a request is rejected before any state changes"""

    reason_code = "invalid_request"

    def __init__(self, message: str, field: Optional[str] = None, reason_code: Optional[str] = None):
        super().__init__(message, reason_code)
        self.field = field

    @classmethod
    def from_pydantic(cls, error: Any, default_reason: str = "invalid_request") -> "CampaignValidationError":
        """Wrap a pydantic ValidationError, keeping the first failing field"""
        errors = error.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        reason = default_reason
        if field and field.split(".")[0] in ("criteria", "conditions"):
            reason = "invalid_criteria"
        elif field and field.split(".")[0] == "schedule":
            reason = "invalid_schedule"
        return cls(f"Validation failed: {first.get('msg', error)}", field=field, reason_code=reason)


class InvalidCampaignStateError(CampaignServiceError):
    """Raised when campaign is in invalid state for operation"""

    reason_code = "invalid_state_transition"

    def __init__(self, message: str, current_status: Optional[CampaignStatus] = None):
        super().__init__(message)
        self.current_status = current_status


class TransientChannelError(CampaignServiceError):
    """Raised by channel adapters on timeouts and 5xx responses"""

    reason_code = "channel_transient"


class DataSourceUnavailableError(CampaignServiceError):
    """Raised when the profile or content source cannot be reached"""

    reason_code = "data_source_unavailable"


class ConsistencyViolationError(CampaignServiceError):
    """Raised when a campaign's references no longer hold"""

    reason_code = "segment_deleted"


class CampaignNotFoundError(CampaignServiceError):
    """Raised when campaign is not found"""

    reason_code = "not_found"


class SegmentNotFoundError(CampaignServiceError):
    """Raised when segment is not found"""

    reason_code = "not_found"


class TriggerRuleNotFoundError(CampaignServiceError):
    """Raised when trigger rule is not found"""

    reason_code = "not_found"


class ContentNotFoundError(CampaignServiceError):
    """Raised when content is not found"""

    reason_code = "not_found"


class WorkflowStepError(CampaignServiceError):
    """Raised when a workflow step cannot complete"""

    reason_code = "step_failed"


class WorkflowConflictError(CampaignServiceError):
    """Raised when a workflow instance was updated by another writer"""

    reason_code = "concurrent_update"


__all__ = [
    "SegmentRepositoryProtocol",
    "CampaignRepositoryProtocol",
    "AutomationRepositoryProtocol",
    "MetricsRepositoryProtocol",
    "EventBusProtocol",
    "ProfileClientProtocol",
    "ContentClientProtocol",
    "ChannelAdapterProtocol",
    "WebhookClientProtocol",
    "ClockProtocol",
    "CampaignServiceError",
    "CampaignValidationError",
    "InvalidCampaignStateError",
    "TransientChannelError",
    "DataSourceUnavailableError",
    "ConsistencyViolationError",
    "CampaignNotFoundError",
    "SegmentNotFoundError",
    "TriggerRuleNotFoundError",
    "ContentNotFoundError",
    "WorkflowStepError",
    "WorkflowConflictError",
]
