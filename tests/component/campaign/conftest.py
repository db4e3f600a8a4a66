"""
Component Test Fixtures for the Campaign Engine

In-memory repositories and collaborators with the same semantics as the
PostgreSQL repositories (insert-if-absent claims, monotonic counters,
compare-and-set versions), wired into real services on a frozen clock.
"""

import asyncio

import pytest
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple
import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.campaign.data_contract import (
    REFERENCE_TIME,
    CampaignTestDataFactory,
    ChannelType,
    Content,
    CustomerRecord,
    DeliveryStatus,
    OutcomeStatus,
    WorkflowStatus,
)
from core.config import EngineConfig
from microservices.campaign_service.aggregator_service import AggregatorService
from microservices.campaign_service.automation_service import AutomationService
from microservices.campaign_service.campaign_service import CampaignService
from microservices.campaign_service.dispatcher import Dispatcher
from microservices.campaign_service.events.handlers import CampaignEventHandler
from microservices.campaign_service.events.publishers import CampaignEventPublisher
from microservices.campaign_service.models import (
    Campaign,
    CampaignRun,
    CampaignStatus,
    DeliveryOutcome,
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
)
from microservices.campaign_service.protocols import (
    ContentNotFoundError,
    DataSourceUnavailableError,
    TransientChannelError,
    WorkflowStepError,
)
from microservices.campaign_service.scheduler import EngineScheduler, FrozenClock
from microservices.campaign_service.segment_service import SegmentService


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


# ====================
# Mock Repositories
# ====================


class MockSegmentRepository:
    """Mock segment repository for component testing"""

    def __init__(self):
        self.segments: Dict[str, Segment] = {}
        self.snapshots: Dict[Tuple[str, int], SegmentSnapshot] = {}
        self.suppressions: Dict[str, Suppression] = {}
        self.changes: Dict[str, datetime] = {}

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def health_check(self) -> bool:
        return True

    async def save_segment(self, segment: Segment) -> Segment:
        self.segments[segment.segment_id] = _copy(segment)
        return _copy(segment)

    async def get_segment(self, segment_id: str, include_deleted: bool = False) -> Optional[Segment]:
        segment = self.segments.get(segment_id)
        if segment is None or (segment.is_deleted and not include_deleted):
            return None
        return _copy(segment)

    async def list_segments(self, include_deleted: bool = False) -> List[Segment]:
        return [
            _copy(s)
            for s in sorted(self.segments.values(), key=lambda s: s.created_at)
            if include_deleted or not s.is_deleted
        ]

    async def soft_delete_segment(self, segment_id: str, deleted_at: datetime) -> bool:
        segment = self.segments.get(segment_id)
        if segment is None or segment.is_deleted:
            return False
        segment.deleted_at = deleted_at
        segment.updated_at = deleted_at
        return True

    async def save_snapshot(self, snapshot: SegmentSnapshot) -> None:
        self.snapshots.setdefault((snapshot.segment_id, snapshot.version), snapshot)

    async def get_snapshot(self, segment_id: str, version: int) -> Optional[SegmentSnapshot]:
        return self.snapshots.get((segment_id, version))

    async def list_snapshot_versions(self, segment_id: str) -> List[int]:
        return sorted(v for (sid, v) in self.snapshots if sid == segment_id)

    async def delete_snapshot(self, segment_id: str, version: int) -> bool:
        return self.snapshots.pop((segment_id, version), None) is not None

    async def add_suppression(self, suppression: Suppression) -> bool:
        if suppression.customer_id in self.suppressions:
            return False
        self.suppressions[suppression.customer_id] = suppression
        return True

    async def list_suppressed_ids(self) -> Set[str]:
        return set(self.suppressions)

    async def mark_customer_changed(self, customer_id: str, changed_at: datetime) -> None:
        previous = self.changes.get(customer_id)
        self.changes[customer_id] = max(previous, changed_at) if previous else changed_at

    async def get_changed_customers(self, since: Optional[datetime]) -> List[str]:
        return sorted(c for c, at in self.changes.items() if since is None or at >= since)


class MockCampaignRepository:
    """Mock campaign repository for component testing"""

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.runs: Dict[str, CampaignRun] = {}
        self.ledger: Dict[Tuple[str, str, str], DispatchRecord] = {}
        self.claims: List[Tuple[str, str, str]] = []

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def health_check(self) -> bool:
        return True

    # Campaign CRUD
    async def save_campaign(self, campaign: Campaign, expected_status: Optional[CampaignStatus] = None) -> Optional[Campaign]:
        stored = _copy(campaign)
        existing = self.campaigns.get(campaign.campaign_id)
        if expected_status is not None and (existing is None or existing.status != expected_status):
            return None
        if existing is not None:
            stored.budget.spent = max(existing.budget.spent, stored.budget.spent)
        self.campaigns[campaign.campaign_id] = stored
        return _copy(stored)

    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return _copy(self.campaigns.get(campaign_id))

    async def list_campaigns(
        self,
        status: Optional[List[CampaignStatus]] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Campaign]:
        campaigns = sorted(self.campaigns.values(), key=lambda c: c.created_at)
        if status:
            campaigns = [c for c in campaigns if c.status in status]
        return [_copy(c) for c in campaigns[offset:offset + limit]]

    async def increment_spend(self, campaign_id: str, amount: Decimal) -> Decimal:
        campaign = self.campaigns[campaign_id]
        campaign.budget.spent += amount
        return campaign.budget.spent

    # Runs
    async def save_run(self, run: CampaignRun) -> CampaignRun:
        stored = _copy(run)
        existing = self.runs.get(run.run_id)
        if existing is not None:
            stored.next_batch_index = max(existing.next_batch_index, stored.next_batch_index)
        self.runs[run.run_id] = stored
        return _copy(stored)

    async def get_run(self, run_id: str) -> Optional[CampaignRun]:
        return _copy(self.runs.get(run_id))

    # Dispatch ledger
    async def claim_dispatch(self, record: DispatchRecord) -> bool:
        if record.key in self.ledger:
            return False
        self.ledger[record.key] = _copy(record)
        self.claims.append(record.key)
        return True

    async def update_dispatch(self, record: DispatchRecord) -> None:
        if record.key in self.ledger:
            self.ledger[record.key] = _copy(record)

    async def get_dispatch(self, campaign_id: str, recipient_id: str, batch_id: str) -> Optional[DispatchRecord]:
        return _copy(self.ledger.get((campaign_id, recipient_id, batch_id)))

    async def list_dispatches(
        self,
        campaign_id: str,
        batch_id: Optional[str] = None,
        status: Optional[DeliveryStatus] = None,
    ) -> List[DispatchRecord]:
        records = [
            r for r in self.ledger.values()
            if r.campaign_id == campaign_id
            and (batch_id is None or r.batch_id == batch_id)
            and (status is None or r.status == status)
        ]
        return [_copy(r) for r in sorted(records, key=lambda r: (r.batch_id, r.recipient_id))]

    async def resolve_stale_dispatches(self, campaign_id: str, reason: str) -> int:
        resolved = 0
        for record in self.ledger.values():
            if record.campaign_id == campaign_id and record.status == DeliveryStatus.DISPATCHING:
                record.status = DeliveryStatus.FAILED
                record.reason = reason
                resolved += 1
        return resolved


class MockAutomationRepository:
    """Mock automation repository for component testing"""

    def __init__(self):
        self.rules: Dict[str, TriggerRule] = {}
        self.instances: Dict[str, WorkflowInstance] = {}
        self.step_effects: Set[Tuple[str, int]] = set()

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def save_rule(self, rule: TriggerRule) -> TriggerRule:
        self.rules[rule.rule_id] = _copy(rule)
        return _copy(rule)

    async def get_rule(self, rule_id: str) -> Optional[TriggerRule]:
        return _copy(self.rules.get(rule_id))

    async def list_rules(self, event_type: Optional[str] = None, enabled_only: bool = False) -> List[TriggerRule]:
        return [
            _copy(r)
            for r in sorted(self.rules.values(), key=lambda r: (r.created_at, r.rule_id))
            if r.deleted_at is None
            and (event_type is None or r.event_type == event_type)
            and (not enabled_only or r.enabled)
        ]

    async def create_instance_if_absent(self, instance: WorkflowInstance) -> bool:
        if instance.instance_id in self.instances:
            return False
        self.instances[instance.instance_id] = _copy(instance)
        return True

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstance]:
        return _copy(self.instances.get(instance_id))

    async def update_instance(self, instance: WorkflowInstance, expected_version: int) -> bool:
        stored = self.instances.get(instance.instance_id)
        if stored is None or stored.version != expected_version:
            return False
        self.instances[instance.instance_id] = _copy(instance)
        return True

    async def list_instances(
        self,
        status: Optional[List[WorkflowStatus]] = None,
        rule_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> List[WorkflowInstance]:
        return [
            _copy(i)
            for i in sorted(self.instances.values(), key=lambda i: (i.created_at, i.instance_id))
            if (not status or i.status in status)
            and (rule_id is None or i.rule_id == rule_id)
            and (customer_id is None or i.customer_id == customer_id)
        ]

    async def list_due_instances(self, now: datetime) -> List[WorkflowInstance]:
        return [
            _copy(i)
            for i in sorted(self.instances.values(), key=lambda i: (i.resume_at or now, i.instance_id))
            if i.status == WorkflowStatus.WAITING and i.resume_at is not None and i.resume_at <= now
        ]

    async def claim_step_effect(self, instance_id: str, step_index: int) -> bool:
        key = (instance_id, step_index)
        if key in self.step_effects:
            return False
        self.step_effects.add(key)
        return True


class MockMetricsRepository:
    """Mock metrics repository for component testing"""

    def __init__(self):
        self.events: Dict[str, EngineEvent] = {}
        self.contributions: Dict[str, RollupContribution] = {}
        self.rollups: Dict[Tuple[str, Any], MetricRollup] = {}
        self._index_lock = asyncio.Lock()

    async def initialize(self):
        pass

    async def close(self):
        pass

    async def append_event(self, event: EngineEvent) -> bool:
        if event.event_id in self.events:
            return False
        self.events[event.event_id] = event
        return True

    async def list_events(
        self,
        customer_id: Optional[str] = None,
        event_types: Optional[List[str]] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[EngineEvent]:
        events = [
            e for e in self.events.values()
            if (customer_id is None or e.customer_id == customer_id)
            and (not event_types or e.event_type in event_types)
            and (since is None or e.timestamp >= since)
            and (until is None or e.timestamp <= until)
        ]
        return sorted(events, key=lambda e: (e.timestamp, e.event_id))

    async def apply_contribution(self, contribution: RollupContribution) -> bool:
        async with self._index_lock:
            if contribution.event_id in self.contributions:
                return False
            self.contributions[contribution.event_id] = contribution
            key = (contribution.campaign_id, contribution.day)
            rollup = self.rollups.setdefault(key, MetricRollup(campaign_id=contribution.campaign_id, day=contribution.day))
            column = contribution.metric.value
            setattr(rollup, column, getattr(rollup, column) + 1)
            return True

    async def get_rollup(self, campaign_id: str, day) -> Optional[MetricRollup]:
        return _copy(self.rollups.get((campaign_id, day)))

    async def list_rollups(self, campaign_id: Optional[str] = None) -> List[MetricRollup]:
        return [
            _copy(self.rollups[key])
            for key in sorted(self.rollups)
            if campaign_id is None or key[0] == campaign_id
        ]

    async def rebuild_rollups(self, rebuild) -> Tuple[List[MetricRollup], int]:
        async with self._index_lock:
            events = await self.list_events()
            # Round trip between the log read and the swap
            await asyncio.sleep(0)
            rollups, contributions = rebuild(events)
            self.rollups = {(r.campaign_id, r.day): _copy(r) for r in rollups}
            self.contributions = {c.event_id: c for c in contributions}
        return rollups, len(events)


# ====================
# Mock Collaborators
# ====================


class MockProfileClient:
    """Mock profile store streaming customers in id order"""

    def __init__(self, customers: Optional[List[CustomerRecord]] = None):
        self.customers: Dict[str, CustomerRecord] = {}
        self.fail = False
        self.scans = 0
        for customer in customers or []:
            self.upsert(customer)

    def upsert(self, customer: CustomerRecord) -> None:
        self.customers[customer.customer_id] = customer

    def update_attributes(self, customer_id: str, **attributes) -> None:
        current = self.customers[customer_id]
        self.customers[customer_id] = CustomerRecord(
            customer_id=customer_id,
            attributes={**current.attributes, **attributes},
        )

    async def iter_customers(self, batch_size: int):
        self.scans += 1
        if self.fail:
            raise DataSourceUnavailableError("profile store unreachable")
        ordered = [self.customers[c] for c in sorted(self.customers)]
        for start in range(0, len(ordered), batch_size):
            yield ordered[start:start + batch_size]

    async def batch_get_customers(self, customer_ids: List[str]) -> List[CustomerRecord]:
        if self.fail:
            raise DataSourceUnavailableError("profile store unreachable")
        return [self.customers[c] for c in customer_ids if c in self.customers]

    async def get_customer(self, customer_id: str) -> Optional[CustomerRecord]:
        return self.customers.get(customer_id)


class MockContentClient:
    """Mock content store counting render calls"""

    def __init__(self):
        self.contents: Dict[str, Content] = {}
        self.render_calls: List[Tuple[str, Optional[str], ChannelType]] = []

    def add(self, content: Content) -> Content:
        self.contents[content.content_id] = content
        return content

    async def get_content(self, content_id: str) -> Optional[Content]:
        return _copy(self.contents.get(content_id))

    async def render(self, content_id: str, variant_id: Optional[str], channel: ChannelType) -> RenderedContent:
        content = self.contents.get(content_id)
        if content is None:
            raise ContentNotFoundError(f"Content not found: {content_id}")
        self.render_calls.append((content_id, variant_id, channel))
        variant = next((v for v in content.variants if v.variant_id == variant_id), content.variants[0])
        return RenderedContent(
            content_id=content_id,
            version=content.version,
            variant_id=variant.variant_id,
            body=f"[{channel.value}] {variant.body}",
        )


class MockChannelAdapter:
    """Mock channel adapter with per-recipient scripted outcomes"""

    def __init__(self, channel: ChannelType):
        self.channel = channel
        self.sends: List[Tuple[str, str, RenderedContent]] = []
        self.transient: Dict[str, int] = {}
        self.always_transient: Set[str] = set()
        self.failing: Set[str] = set()
        self.skipping: Set[str] = set()
        self.on_send: Optional[Callable[[str], Awaitable[None]]] = None

    @property
    def recipients(self) -> List[str]:
        return [recipient_id for recipient_id, _, _ in self.sends]

    @property
    def idempotency_keys(self) -> List[str]:
        return [key for _, key, _ in self.sends]

    def accepted(self) -> List[str]:
        return [
            recipient_id for recipient_id, _, _ in self.sends
            if recipient_id not in self.failing and recipient_id not in self.skipping
        ]

    async def send(self, recipient_id: str, content: RenderedContent, idempotency_key: str) -> DeliveryOutcome:
        if self.on_send is not None:
            await self.on_send(recipient_id)
        if recipient_id in self.always_transient:
            raise TransientChannelError(f"{self.channel.value} gateway timeout")
        if self.transient.get(recipient_id, 0) > 0:
            self.transient[recipient_id] -= 1
            raise TransientChannelError(f"{self.channel.value} gateway returned 503")

        self.sends.append((recipient_id, idempotency_key, content))
        if recipient_id in self.failing:
            return DeliveryOutcome(status=OutcomeStatus.FAILED, reason="invalid_address")
        if recipient_id in self.skipping:
            return DeliveryOutcome(status=OutcomeStatus.SKIPPED, reason="unsubscribed")
        return DeliveryOutcome(status=OutcomeStatus.ACCEPTED, provider_message_id=f"msg_{idempotency_key}")


class MockWebhookClient:
    """Mock outbound webhook client"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.failures_remaining = 0

    async def call(
        self,
        url: str,
        payload: Dict[str, Any],
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        self.calls.append({"url": url, "payload": payload, "method": method, "idempotency_key": idempotency_key})
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise WorkflowStepError(f"Webhook {url} returned 502")
        return 200


class MockEventBus:
    """Mock event bus recording published envelopes"""

    def __init__(self):
        self.published: List[Dict[str, Any]] = []

    async def publish_event(self, event: Dict[str, Any]) -> bool:
        self.published.append(event)
        return True

    async def subscribe(self, subject: str, handler: Any, durable: str) -> str:
        return durable

    async def close(self) -> None:
        pass

    def of_type(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.published if e["type"] == event_type]


# ====================
# Fixtures
# ====================


@pytest.fixture
def factory():
    """Provide test data factory"""
    return CampaignTestDataFactory()


@pytest.fixture
def clock():
    """Frozen clock at the suite's reference time"""
    return FrozenClock(REFERENCE_TIME)


@pytest.fixture
def engine_config():
    """Engine config with in-process refresh and no retry sleeps"""
    return EngineConfig(
        batch_size=1000,
        refresh_parallelism=1,
        retry_backoff_multiplier=0,
        retry_backoff_max_seconds=0,
    )


@pytest.fixture
def segment_repository():
    return MockSegmentRepository()


@pytest.fixture
def campaign_repository():
    return MockCampaignRepository()


@pytest.fixture
def automation_repository():
    return MockAutomationRepository()


@pytest.fixture
def metrics_repository():
    return MockMetricsRepository()


@pytest.fixture
def profile_client():
    return MockProfileClient()


@pytest.fixture
def content_client():
    return MockContentClient()


@pytest.fixture
def channel_adapters():
    return {channel: MockChannelAdapter(channel) for channel in ChannelType}


@pytest.fixture
def email_adapter(channel_adapters):
    return channel_adapters[ChannelType.EMAIL]


@pytest.fixture
def webhook_client():
    return MockWebhookClient()


@pytest.fixture
def event_bus():
    return MockEventBus()


@pytest.fixture
def publisher(event_bus):
    return CampaignEventPublisher(event_bus)


@pytest.fixture
def segment_service(segment_repository, profile_client, event_bus, engine_config, clock):
    """Create SegmentService with mocked dependencies"""
    return SegmentService(
        repository=segment_repository,
        profile_client=profile_client,
        event_bus=event_bus,
        config=engine_config,
        clock=clock,
    )


@pytest.fixture
def aggregator_service(metrics_repository, publisher, engine_config, clock):
    """Create AggregatorService with mocked dependencies"""
    return AggregatorService(
        repository=metrics_repository,
        publisher=publisher,
        config=engine_config,
        clock=clock,
    )


@pytest.fixture
def dispatcher(campaign_repository, segment_service, content_client, channel_adapters, publisher, engine_config, clock):
    """Create Dispatcher with mocked dependencies"""
    return Dispatcher(
        repository=campaign_repository,
        segments=segment_service,
        content_client=content_client,
        channel_adapters=channel_adapters,
        publisher=publisher,
        config=engine_config,
        clock=clock,
    )


@pytest.fixture
def campaign_service(
    campaign_repository, segment_service, content_client, dispatcher, publisher, aggregator_service, engine_config, clock
):
    """Create CampaignService with mocked dependencies"""
    return CampaignService(
        repository=campaign_repository,
        segments=segment_service,
        content_client=content_client,
        dispatcher=dispatcher,
        publisher=publisher,
        aggregator=aggregator_service,
        config=engine_config,
        clock=clock,
    )


@pytest.fixture
def automation_service(
    automation_repository, segment_service, content_client, channel_adapters, webhook_client, engine_config, clock
):
    """Create AutomationService with mocked dependencies"""
    return AutomationService(
        repository=automation_repository,
        segments=segment_service,
        content_client=content_client,
        channel_adapters=channel_adapters,
        webhook_client=webhook_client,
        config=engine_config,
        clock=clock,
    )


@pytest.fixture
def event_handler(aggregator_service, automation_service, segment_service):
    """Create CampaignEventHandler wired to every consumer"""
    return CampaignEventHandler(
        aggregator=aggregator_service,
        automation=automation_service,
        segments=segment_service,
    )


@pytest.fixture
def engine_scheduler(clock, campaign_service, automation_service, segment_service):
    """Scheduler with the production tick order, driven manually"""
    scheduler = EngineScheduler(clock=clock)
    scheduler.register("campaign_starts", campaign_service.start_due_campaigns)
    scheduler.register("campaign_dispatch", campaign_service.dispatch_active_campaigns)
    scheduler.register("workflow_resumes", automation_service.resume_due_instances)
    scheduler.register("segment_refresh", segment_service.refresh_due_segments)
    scheduler.register("segment_incremental_refresh", segment_service.refresh_changed_segments)
    return scheduler


@pytest.fixture
def approved_content(content_client, factory):
    """Approved single-variant content registered with the content store"""
    return content_client.add(factory.make_content(content_id="cnt_welcome"))


@pytest.fixture
def forward_sent_events(event_bus, aggregator_service):
    """Feed every published <channel>.sent envelope into the aggregator"""

    async def forward() -> int:
        events = [EngineEvent.from_envelope(e) for e in event_bus.published if e["type"].endswith(".sent")]
        return await aggregator_service.ingest_many(events)

    return forward
