"""
Event Ingest & Aggregator

Appends raw events to the event log and folds them into per-campaign,
per-day metric rollups. An event id contributes to a rollup at most once;
a bounded in-process LRU short-circuits recent duplicates before the
persisted contribution index is consulted.
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from core.config import EngineConfig

from .events.models import channel_event_type, metric_for_event_type
from .events.publishers import CampaignEventPublisher
from .models import (
    ChannelType,
    EngineEvent,
    MetricRollup,
    MetricType,
    RollupContribution,
    ensure_utc,
)
from .protocols import ClockProtocol, MetricsRepositoryProtocol
from .scheduler import SystemClock

logger = logging.getLogger(__name__)

RollupKey = Tuple[str, date]

_SENT_EVENT_TYPES = [channel_event_type(channel, MetricType.SENT) for channel in ChannelType]


def contribution_for(event: EngineEvent) -> Optional[RollupContribution]:
    """The rollup increment an event makes, or None if it counts nowhere"""
    metric = metric_for_event_type(event.event_type)
    if metric is None or not event.campaign_id:
        return None
    return RollupContribution(
        event_id=event.event_id,
        campaign_id=event.campaign_id,
        day=event.day,
        metric=metric,
    )


def fold_events(
    events: Iterable[EngineEvent],
    updated_at: Optional[datetime] = None,
) -> Dict[RollupKey, MetricRollup]:
    """
    Fold events into rollups keyed by (campaign_id, day).

    Pure and order-independent: duplicates by event id count once, and the
    result is the same for any permutation of the input.
    """
    seen = set()
    counts: Dict[RollupKey, Dict[MetricType, int]] = {}
    latest: Optional[datetime] = None

    for event in events:
        if event.event_id in seen:
            continue
        seen.add(event.event_id)
        contribution = contribution_for(event)
        if contribution is None:
            continue
        key = (contribution.campaign_id, contribution.day)
        bucket = counts.setdefault(key, {})
        bucket[contribution.metric] = bucket.get(contribution.metric, 0) + 1
        if latest is None or event.timestamp > latest:
            latest = event.timestamp

    stamp = updated_at or latest
    rollups = {}
    for (campaign_id, day), bucket in counts.items():
        rollup = MetricRollup(campaign_id=campaign_id, day=day, **{m.value: n for m, n in bucket.items()})
        if stamp is not None:
            rollup.updated_at = stamp
        rollups[(campaign_id, day)] = rollup
    return rollups


class AggregatorService:
    """Event log, idempotent rollups and conversion attribution"""

    def __init__(
        self,
        repository: MetricsRepositoryProtocol,
        publisher: Optional[CampaignEventPublisher] = None,
        config: Optional[EngineConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self.repository = repository
        self.publisher = publisher or CampaignEventPublisher()
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self._recent: "OrderedDict[str, None]" = OrderedDict()

    # ====================
    # Ingest
    # ====================

    def _seen_recently(self, event_id: str) -> bool:
        if event_id in self._recent:
            self._recent.move_to_end(event_id)
            return True
        return False

    def _remember(self, event_id: str) -> None:
        self._recent[event_id] = None
        self._recent.move_to_end(event_id)
        while len(self._recent) > self.config.dedup_window_size:
            self._recent.popitem(last=False)

    async def ingest(self, event: EngineEvent) -> bool:
        """
        Append and count one event.

        Returns:
            True if the event was new, False for a duplicate delivery
        """
        if self._seen_recently(event.event_id):
            logger.debug(f"Duplicate event {event.event_id} dropped (recent)")
            return False

        appended = await self.repository.append_event(event)
        counted = False
        contribution = contribution_for(event)
        if contribution is not None:
            counted = await self.repository.apply_contribution(contribution)

        self._remember(event.event_id)
        if not appended and not counted:
            logger.debug(f"Duplicate event {event.event_id} dropped (persisted)")
            return False
        return True

    async def ingest_many(self, events: Iterable[EngineEvent]) -> int:
        """Ingest events in order; returns how many were new"""
        accepted = 0
        for event in events:
            if await self.ingest(event):
                accepted += 1
        return accepted

    async def replay(self) -> List[MetricRollup]:
        """
        Recompute every rollup from the full event log and replace the stored ones.

        The log read and the swap happen under one repository transaction, so
        events ingested concurrently are either part of the rebuild or counted
        after it.
        """
        updated_at = self.clock.now()

        def rebuild(events: List[EngineEvent]):
            rollups = fold_events(events, updated_at=updated_at)
            contributions = {}
            for event in events:
                contribution = contribution_for(event)
                if contribution is not None:
                    contributions.setdefault(contribution.event_id, contribution)
            return [rollups[key] for key in sorted(rollups)], list(contributions.values())

        ordered, event_count = await self.repository.rebuild_rollups(rebuild)
        logger.info(f"Replayed {event_count} events into {len(ordered)} rollups")
        return ordered

    # ====================
    # Queries
    # ====================

    async def get_rollup(self, campaign_id: str, day: date) -> MetricRollup:
        """Rollup for one campaign day; zero counts when nothing was recorded"""
        rollup = await self.repository.get_rollup(campaign_id, day)
        return rollup or MetricRollup(campaign_id=campaign_id, day=day)

    async def list_rollups(self, campaign_id: Optional[str] = None) -> List[MetricRollup]:
        return await self.repository.list_rollups(campaign_id)

    async def get_campaign_totals(self, campaign_id: str) -> Dict[str, int]:
        totals = {metric.value: 0 for metric in MetricType}
        for rollup in await self.repository.list_rollups(campaign_id):
            for name, count in rollup.counts().items():
                totals[name] += count
        return totals

    # ====================
    # Conversions
    # ====================

    async def track_conversion(
        self,
        customer_id: str,
        converted_at: Optional[datetime] = None,
        value: Optional[Decimal] = None,
        conversion_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> EngineEvent:
        """
        Record a conversion, attributed to the last campaign that sent to the
        customer within the attribution window (last touch).

        A conversion with no send inside the window is logged but counts
        toward no campaign.
        """
        converted_at = ensure_utc(converted_at) if converted_at else self.clock.now()
        window_start = converted_at - timedelta(days=self.config.attribution_window_days)

        touches = await self.repository.list_events(
            customer_id=str(customer_id),
            event_types=_SENT_EVENT_TYPES,
            since=window_start,
            until=converted_at,
        )
        attributed = next((e for e in reversed(touches) if e.campaign_id), None)

        event = self.publisher.build_conversion_event(
            conversion_id=conversion_id or uuid4().hex,
            customer_id=str(customer_id),
            campaign_id=attributed.campaign_id if attributed else None,
            converted_at=converted_at,
            value=value,
            attributed_event=attributed,
            properties=properties,
        )
        if attributed:
            logger.info(f"Conversion {event.event_id} attributed to campaign {attributed.campaign_id}")
        else:
            logger.info(f"Conversion {event.event_id} for {customer_id} has no campaign touch in window")

        await self.ingest(event)
        await self.publisher.publish(event)
        return event


__all__ = ["AggregatorService", "contribution_for", "fold_events"]
