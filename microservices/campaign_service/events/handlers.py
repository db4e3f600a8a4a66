"""
Campaign Event Handlers

Handles events consumed from the engine stream. Each durable consumer has
its own entry point. Domain errors are logged and the message is acked;
infrastructure failures propagate so the bus naks and redelivers, which is
safe because ingest dedups by event id and workflow instances are keyed by
(customer, rule, event).
"""

import logging
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from ..models import EngineEvent
from ..protocols import CampaignServiceError, DataSourceUnavailableError, TransientChannelError
from .models import SubscribedEventType

logger = logging.getLogger(__name__)

# Errors that go away on their own; the message must be redelivered
RETRYABLE_ERRORS = (DataSourceUnavailableError, TransientChannelError)


def is_permanent(error: Exception) -> bool:
    """True for domain errors that redelivery would only repeat"""
    return isinstance(error, CampaignServiceError) and not isinstance(error, RETRYABLE_ERRORS)


class CampaignEventHandler:
    """Handler for campaign engine subscribed events"""

    def __init__(
        self,
        aggregator=None,
        automation=None,
        segments=None,
    ):
        self.aggregator = aggregator
        self.automation = automation
        self.segments = segments

    @staticmethod
    def _parse(event: Union[EngineEvent, Dict[str, Any]]) -> Optional[EngineEvent]:
        if isinstance(event, EngineEvent):
            return event
        try:
            return EngineEvent.from_envelope(event)
        except (KeyError, TypeError, ValidationError) as e:
            logger.error(f"Dropping malformed event envelope: {e}")
            return None

    async def handle_event(self, event: Union[EngineEvent, Dict[str, Any]]) -> None:
        """Route one event to every consumer"""
        parsed = self._parse(event)
        if parsed is None:
            return
        await self.handle_metrics_event(parsed)
        await self.handle_automation_event(parsed)

    async def handle_metrics_event(self, event: Union[EngineEvent, Dict[str, Any]]) -> None:
        """Aggregator consumer: log and count"""
        parsed = self._parse(event)
        if parsed is None or not self.aggregator:
            return
        try:
            await self.aggregator.ingest(parsed)
        except Exception as e:
            if not is_permanent(e):
                logger.warning(f"Ingest of {parsed.event_id} failed, leaving it for redelivery: {e}")
                raise
            logger.error(f"Error ingesting event {parsed.event_id}: {e}", exc_info=True)

    async def handle_automation_event(self, event: Union[EngineEvent, Dict[str, Any]]) -> None:
        """Automation consumer: customer bookkeeping, then trigger rules"""
        parsed = self._parse(event)
        if parsed is None:
            return

        handlers = {
            SubscribedEventType.CUSTOMER_UPDATED.value: self.handle_customer_updated,
            SubscribedEventType.CUSTOMER_CONSENT_REVOKED.value: self.handle_consent_revoked,
        }
        handler = handlers.get(parsed.event_type)
        if handler:
            try:
                await handler(parsed)
            except Exception as e:
                if not is_permanent(e):
                    raise
                logger.error(f"Error handling event {parsed.event_type}: {e}", exc_info=True)

        if self.automation:
            try:
                await self.automation.handle_event(parsed)
            except Exception as e:
                if not is_permanent(e):
                    logger.warning(f"Triggers for {parsed.event_id} failed, leaving it for redelivery: {e}")
                    raise
                logger.error(f"Error running triggers for {parsed.event_id}: {e}", exc_info=True)

    async def handle_customer_updated(self, event: EngineEvent) -> None:
        """
        Handle customer.updated

        Marks the customer for the next incremental refresh of dynamic
        segments. The change is stamped at consumption time, not with the
        event timestamp, so a late delivery still lands after the last
        refresh watermark.
        """
        if not event.customer_id or not self.segments:
            logger.warning(f"customer.updated {event.event_id} missing customer_id")
            return
        await self.segments.mark_customer_changed(event.customer_id)

    async def handle_consent_revoked(self, event: EngineEvent) -> None:
        """
        Handle customer.consent.revoked

        Suppresses the customer: in-flight batches skip them and the next
        refresh drops them from every snapshot.
        """
        if not event.customer_id or not self.segments:
            logger.warning(f"customer.consent.revoked {event.event_id} missing customer_id")
            return
        added = await self.segments.suppress_customer(
            event.customer_id,
            reason="consent_revoked",
            source_event_id=event.event_id,
        )
        if added:
            logger.info(f"Customer {event.customer_id} suppressed (consent revoked)")


__all__ = ["CampaignEventHandler", "RETRYABLE_ERRORS", "is_permanent"]
