"""
Campaign Event Publishers

Publishes engine events to NATS JetStream.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from ..models import (
    Campaign,
    ChannelType,
    DispatchRecord,
    EngineEvent,
    MetricType,
    SegmentSnapshot,
    utcnow,
)
from .models import (
    CampaignLifecycleEventData,
    ConversionTrackedEventData,
    EngineEventType,
    MessageSentEventData,
    SegmentRefreshedEventData,
    channel_event_type,
)

logger = logging.getLogger(__name__)


class CampaignEventPublisher:
    """Publisher for campaign engine events"""

    def __init__(self, event_bus=None):
        self.event_bus = event_bus
        self.source = "campaign_engine"

    async def publish(self, event: EngineEvent) -> bool:
        """
        Publish an event envelope.

        Args:
            event: The event; its id is the stream dedup id

        Returns:
            True if published successfully, False otherwise
        """
        if not self.event_bus:
            logger.debug(f"Event bus not configured, skipping publish: {event.event_type}")
            return False

        try:
            envelope = event.to_envelope()
            envelope["metadata"] = {**envelope["metadata"], "source": self.source}
            published = await self.event_bus.publish_event(envelope)
            logger.debug(f"Published event: {event.event_type} [{event.event_id}]")
            return bool(published)

        except Exception as e:
            logger.error(f"Failed to publish event {event.event_type}: {e}")
            return False

    # ====================
    # Campaign Lifecycle Events
    # ====================

    async def publish_campaign_event(
        self,
        event_type: EngineEventType,
        campaign: Campaign,
        timestamp: Optional[datetime] = None,
        snapshot_version: Optional[int] = None,
    ) -> bool:
        """Publish a campaign.* lifecycle event"""
        timestamp = timestamp or utcnow()
        data = CampaignLifecycleEventData(
            status=campaign.status.value,
            run_id=campaign.current_run_id,
            reason=campaign.failure_reason,
            snapshot_version=snapshot_version,
        )
        event = EngineEvent(
            event_id=f"{campaign.campaign_id}:{event_type.value}:{timestamp.isoformat()}",
            event_type=event_type.value,
            timestamp=timestamp,
            campaign_id=campaign.campaign_id,
            properties=data.model_dump(mode="json"),
        )
        return await self.publish(event)

    # ====================
    # Segment Events
    # ====================

    async def publish_segment_refreshed(
        self,
        snapshot: SegmentSnapshot,
        changed: bool,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Publish segment.refreshed; the id is stable per (segment, version, membership)"""
        data = SegmentRefreshedEventData(
            segment_id=snapshot.segment_id,
            version=snapshot.version,
            size=snapshot.size,
            checksum=snapshot.checksum,
            changed=changed,
        )
        event = EngineEvent(
            event_id=f"seg_{snapshot.segment_id}_v{snapshot.version}_{snapshot.checksum[:12]}",
            event_type=EngineEventType.SEGMENT_REFRESHED.value,
            timestamp=timestamp or utcnow(),
            properties=data.model_dump(mode="json"),
        )
        return await self.publish(event)

    # ====================
    # Message Events
    # ====================

    async def publish_message_sent(
        self,
        record: DispatchRecord,
        channel: ChannelType,
        timestamp: Optional[datetime] = None,
    ) -> bool:
        """Publish <channel>.sent for a confirmed acceptance"""
        data = MessageSentEventData(
            batch_id=record.batch_id,
            run_id=record.run_id,
            variant_id=record.variant_id,
            provider_message_id=record.provider_message_id,
        )
        event = EngineEvent(
            event_id=f"{record.idempotency_key}:sent",
            event_type=channel_event_type(channel, MetricType.SENT),
            timestamp=timestamp or utcnow(),
            customer_id=record.recipient_id,
            campaign_id=record.campaign_id,
            properties=data.model_dump(mode="json"),
        )
        return await self.publish(event)

    # ====================
    # Conversion Events
    # ====================

    def build_conversion_event(
        self,
        conversion_id: str,
        customer_id: str,
        campaign_id: Optional[str],
        converted_at: datetime,
        value: Optional[Decimal] = None,
        attributed_event: Optional[EngineEvent] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> EngineEvent:
        """Build the conversion.tracked event for an attributed conversion"""
        data = ConversionTrackedEventData(
            value=value,
            attributed_event_id=attributed_event.event_id if attributed_event else None,
            source_event_type=attributed_event.event_type if attributed_event else None,
            converted_at=converted_at,
        )
        return EngineEvent(
            event_id=f"conv_{conversion_id}",
            event_type=EngineEventType.CONVERSION_TRACKED.value,
            timestamp=converted_at,
            customer_id=customer_id,
            campaign_id=campaign_id,
            properties={**(properties or {}), **data.model_dump(mode="json", exclude_none=True)},
        )
