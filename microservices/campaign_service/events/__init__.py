"""
Campaign Engine Events

Event models, publishers and inbound handlers.
"""

from .models import (
    EngineEventType,
    SubscribedEventType,
    CampaignStreamConfig,
    channel_event_type,
    metric_for_event_type,
    CampaignLifecycleEventData,
    SegmentRefreshedEventData,
    MessageSentEventData,
    ConversionTrackedEventData,
)
from .handlers import CampaignEventHandler
from .publishers import CampaignEventPublisher

__all__ = [
    # Event Types
    "EngineEventType",
    "SubscribedEventType",
    "CampaignStreamConfig",
    "channel_event_type",
    "metric_for_event_type",
    # Event Data Models
    "CampaignLifecycleEventData",
    "SegmentRefreshedEventData",
    "MessageSentEventData",
    "ConversionTrackedEventData",
    # Handler and Publisher
    "CampaignEventHandler",
    "CampaignEventPublisher",
]
