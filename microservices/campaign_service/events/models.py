"""
Campaign Engine Event Data Models

Event type definitions and property payloads for engine events.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models import ChannelType, MetricType


# =============================================================================
# Event Type Definitions
# =============================================================================


class EngineEventType(str, Enum):
    """
    Events published by the campaign engine.

    Channel delivery events are named `<channel>.<metric>`.
    """
    # Campaign lifecycle events
    CAMPAIGN_LAUNCHED = "campaign.launched"
    CAMPAIGN_PAUSED = "campaign.paused"
    CAMPAIGN_RESUMED = "campaign.resumed"
    CAMPAIGN_COMPLETED = "campaign.completed"
    CAMPAIGN_FAILED = "campaign.failed"

    # Segment events
    SEGMENT_REFRESHED = "segment.refreshed"

    # Conversion events
    CONVERSION_TRACKED = "conversion.tracked"


class SubscribedEventType(str, Enum):
    """
    Events the engine reacts to beyond the metric events.
    """
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_CONSENT_REVOKED = "customer.consent.revoked"


class CampaignStreamConfig:
    """Consumer configuration for the engine stream"""
    SUBJECTS = [">"]
    AGGREGATOR_DURABLE = "campaign-engine-aggregator"
    AUTOMATION_DURABLE = "campaign-engine-automation"


def channel_event_type(channel: ChannelType, metric: MetricType) -> str:
    return f"{channel.value}.{metric.value}"


_METRIC_EVENT_TYPES = {
    channel_event_type(channel, metric): metric
    for channel in ChannelType
    for metric in (
        MetricType.SENT,
        MetricType.DELIVERED,
        MetricType.OPENED,
        MetricType.CLICKED,
        MetricType.BOUNCED,
    )
}
_METRIC_EVENT_TYPES[EngineEventType.CONVERSION_TRACKED.value] = MetricType.CONVERTED


def metric_for_event_type(event_type: str) -> Optional[MetricType]:
    """Rollup counter an event type contributes to, if any"""
    return _METRIC_EVENT_TYPES.get(event_type)


# =============================================================================
# Event Data Models - Published Event Properties
# =============================================================================


class CampaignLifecycleEventData(BaseModel):
    """campaign.* event properties"""
    status: str = Field(..., description="Campaign status after the transition")
    run_id: Optional[str] = Field(None, description="Current run")
    reason: Optional[str] = Field(None, description="Failure reason code")
    snapshot_version: Optional[int] = Field(None, description="Pinned snapshot version")


class SegmentRefreshedEventData(BaseModel):
    """segment.refreshed event properties"""
    segment_id: str
    version: int
    size: int
    checksum: str
    changed: bool = Field(..., description="Whether membership differs from the previous snapshot")


class MessageSentEventData(BaseModel):
    """<channel>.sent event properties"""
    batch_id: str
    run_id: str
    variant_id: Optional[str] = None
    provider_message_id: Optional[str] = None


class ConversionTrackedEventData(BaseModel):
    """conversion.tracked event properties"""
    value: Optional[Decimal] = None
    attributed_event_id: Optional[str] = None
    source_event_type: Optional[str] = None
    converted_at: Optional[datetime] = None


__all__ = [
    "EngineEventType",
    "SubscribedEventType",
    "CampaignStreamConfig",
    "channel_event_type",
    "metric_for_event_type",
    "CampaignLifecycleEventData",
    "SegmentRefreshedEventData",
    "MessageSentEventData",
    "ConversionTrackedEventData",
]
